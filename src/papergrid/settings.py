"""Typed AI runtime settings read from the settings table."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Protocol

from papergrid import config
from papergrid.errors import AiConfigurationError

AI_SETTING_KEYS = {
    "enabled": "ai.enabled",
    "base_url": "ai.openai.baseUrl",
    "api_key": "ai.openai.apiKey",
    "chat_model": "ai.chat.model",
    "embedding_model": "ai.embedding.model",
    "embedding_dimensions": "ai.embedding.dimensions",
    "rag_top_k": "ai.rag.topK",
    "rag_min_score": "ai.rag.minScore",
    "answer_max_tokens": "ai.answer.maxTokens",
}

DEFAULT_CHAT_MODEL = "gpt-4o-mini"
DEFAULT_EMBEDDING_MODEL = "text-embedding-3-small"
DEFAULT_EMBEDDING_DIMENSIONS = 1536
DEFAULT_RAG_TOP_K = 8
DEFAULT_RAG_MIN_SCORE = 0.2
DEFAULT_ANSWER_MAX_TOKENS = 131072


class SettingsReader(Protocol):
    def get_setting(self, key: str, default: Any = None) -> Any: ...


@dataclass(frozen=True)
class AiRuntimeSettings:
    enabled: bool = False
    base_url: str = ""
    api_key: str = ""
    chat_model: str = DEFAULT_CHAT_MODEL
    embedding_model: str = DEFAULT_EMBEDDING_MODEL
    embedding_dimensions: int = DEFAULT_EMBEDDING_DIMENSIONS
    rag_top_k: int = DEFAULT_RAG_TOP_K
    rag_min_score: float = DEFAULT_RAG_MIN_SCORE
    answer_max_tokens: int = DEFAULT_ANSWER_MAX_TOKENS

    @property
    def has_api_key(self) -> bool:
        return bool(self.api_key)


def _as_number(value: Any, fallback: float) -> float:
    if isinstance(value, bool):
        return fallback
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else fallback
    if isinstance(value, str):
        try:
            parsed = float(value)
        except ValueError:
            return fallback
        return parsed if math.isfinite(parsed) else fallback
    return fallback


def _as_bool(value: Any, fallback: bool) -> bool:
    if isinstance(value, bool):
        return value
    if value == "true":
        return True
    if value == "false":
        return False
    return fallback


def _as_str(value: Any, fallback: str) -> str:
    return value if isinstance(value, str) else fallback


def _clamp(value: float, low: float, high: float) -> float:
    return min(max(value, low), high)


def get_ai_runtime_settings(reader: SettingsReader) -> AiRuntimeSettings:
    """Read and coerce the AI settings. Called per operation; never cached."""
    keys = AI_SETTING_KEYS
    api_key = config.OPENAI_API_KEY_ENV or _as_str(reader.get_setting(keys["api_key"], ""), "").strip()
    return AiRuntimeSettings(
        enabled=_as_bool(reader.get_setting(keys["enabled"], False), False),
        base_url=_as_str(reader.get_setting(keys["base_url"], ""), "").strip(),
        api_key=api_key,
        chat_model=_as_str(reader.get_setting(keys["chat_model"]), "").strip()
        or DEFAULT_CHAT_MODEL,
        embedding_model=_as_str(reader.get_setting(keys["embedding_model"]), "").strip()
        or DEFAULT_EMBEDDING_MODEL,
        embedding_dimensions=int(_clamp(round(_as_number(
            reader.get_setting(keys["embedding_dimensions"]), DEFAULT_EMBEDDING_DIMENSIONS
        )), 1, 8192)),
        rag_top_k=int(_clamp(round(_as_number(
            reader.get_setting(keys["rag_top_k"]), DEFAULT_RAG_TOP_K
        )), 1, 50)),
        rag_min_score=_clamp(
            _as_number(reader.get_setting(keys["rag_min_score"]), DEFAULT_RAG_MIN_SCORE), 0.0, 1.0
        ),
        answer_max_tokens=int(_clamp(round(_as_number(
            reader.get_setting(keys["answer_max_tokens"]), DEFAULT_ANSWER_MAX_TOKENS
        )), 1, 262144)),
    )


def assert_ai_ready(settings: AiRuntimeSettings, require_enabled: bool = True) -> None:
    """Raise AiConfigurationError unless the provider can be called."""
    if require_enabled and not settings.enabled:
        raise AiConfigurationError("AI features are disabled")
    if not settings.has_api_key:
        raise AiConfigurationError("AI API key is not configured")
