"""LLM provider interface and OpenAI-compatible HTTP implementation."""

from __future__ import annotations

import json
import logging
import re
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from papergrid import config
from papergrid.chat.sse import aparse_sse_stream
from papergrid.errors import UpstreamProviderError
from papergrid.security import normalize_and_validate_base_url
from papergrid.settings import AiRuntimeSettings, assert_ai_ready

logger = logging.getLogger(__name__)

CHAT_TEMPERATURE = 0.2
EMBEDDING_MODEL_PATTERN = re.compile(r"(embedding|embed|bge|e5|gte|text-embedding)", re.IGNORECASE)


class EmbeddingProvider(Protocol):
    """Protocol for embedding providers."""

    async def embed(self, texts: list[str]) -> list[list[float]]:
        """Embed a list of texts, returning a list of float vectors."""
        ...


class ChatProvider(Protocol):
    """Protocol for streaming, tool-calling chat providers."""

    def stream_chat(
        self,
        messages: list[dict],
        tools: list[dict] | None = None,
        model: str | None = None,
    ) -> AsyncIterator[ChatDelta]:
        """Stream one model response as incremental deltas."""
        ...


@dataclass
class ToolCallDelta:
    """Fragment of a tool call; fragments with the same index belong together."""

    index: int
    id: str | None = None
    name: str | None = None
    arguments: str = ""


@dataclass
class ChatDelta:
    content: str = ""
    reasoning: str = ""
    tool_calls: list[ToolCallDelta] = field(default_factory=list)
    finish_reason: str | None = None


def is_embedding_model_name(model_id: str) -> bool:
    return bool(EMBEDDING_MODEL_PATTERN.search(model_id))


def extract_provider_error_message(payload: Any) -> str:
    if not isinstance(payload, dict):
        return ""
    error = payload.get("error")
    if isinstance(error, str):
        return error
    if isinstance(error, dict) and isinstance(error.get("message"), str):
        return error["message"]
    message = payload.get("message")
    return message if isinstance(message, str) else ""


def _should_retry_without_dimensions(message: str) -> bool:
    lowered = message.lower()
    return any(s in lowered for s in ("dimension", "unknown parameter", "unexpected field"))


def _as_vector(value: Any) -> list[float] | None:
    if not isinstance(value, list) or not value:
        return None
    if not all(isinstance(v, (int, float)) and not isinstance(v, bool) for v in value):
        return None
    return [float(v) for v in value]


def parse_embeddings_payload(payload: Any) -> list[list[float]]:
    """Pull vectors out of ``{"data": [{"embedding": [...]}, ...]}`` style bodies."""
    items: list = []
    if isinstance(payload, list):
        items = payload
    elif isinstance(payload, dict):
        for key in ("data", "embeddings"):
            if isinstance(payload.get(key), list):
                items = payload[key]
                break
    if items and all(isinstance(i, dict) and isinstance(i.get("index"), int) for i in items):
        items = sorted(items, key=lambda i: i["index"])

    vectors = []
    for item in items:
        vec = _as_vector(item)
        if vec is None and isinstance(item, dict):
            vec = _as_vector(item.get("embedding")) or _as_vector(item.get("vector"))
        if vec is not None:
            vectors.append(vec)
    return vectors


def _malformed(what: str) -> UpstreamProviderError:
    return UpstreamProviderError(f"Chat stream returned a malformed chunk ({what})")


def _parse_tool_call_delta(raw: Any) -> ToolCallDelta:
    if not isinstance(raw, dict):
        raise _malformed("tool call is not an object")
    fn = raw.get("function")
    if fn is None:
        fn = {}
    elif not isinstance(fn, dict):
        raise _malformed("tool call function is not an object")
    index = raw.get("index", 0)
    if isinstance(index, bool) or not isinstance(index, int):
        raise _malformed("tool call index is not an integer")
    call_id, name, arguments = raw.get("id"), fn.get("name"), fn.get("arguments")
    return ToolCallDelta(
        index=index,
        id=call_id if isinstance(call_id, str) else None,
        name=name if isinstance(name, str) else None,
        arguments=arguments if isinstance(arguments, str) else "",
    )


def _parse_chat_chunk(data: dict) -> ChatDelta | None:
    choices = data.get("choices")
    if not isinstance(choices, list) or not choices:
        return None
    choice = choices[0]
    if not isinstance(choice, dict):
        raise _malformed("choice is not an object")
    delta = choice.get("delta")
    if delta is None:
        delta = {}
    elif not isinstance(delta, dict):
        raise _malformed("delta is not an object")
    raw_calls = delta.get("tool_calls")
    if raw_calls is not None and not isinstance(raw_calls, list):
        raise _malformed("tool_calls is not a list")
    content = delta.get("content")
    reasoning = delta.get("reasoning_content") or delta.get("reasoning")
    finish_reason = choice.get("finish_reason")
    return ChatDelta(
        content=content if isinstance(content, str) else "",
        reasoning=reasoning if isinstance(reasoning, str) else "",
        tool_calls=[_parse_tool_call_delta(raw) for raw in raw_calls or []],
        finish_reason=finish_reason if isinstance(finish_reason, str) else None,
    )


class OpenAICompatibleProvider:
    """OpenAI-compatible ``/embeddings``, ``/chat/completions`` and ``/models`` client."""

    EMBED_BATCH_SIZE = 64

    def __init__(
        self,
        base_url: str,
        api_key: str,
        chat_model: str,
        embedding_model: str,
        embedding_dimensions: int | None = None,
        max_tokens: int | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url
        self._api_key = api_key
        self.chat_model = chat_model
        self.embedding_model = embedding_model
        self._embedding_dimensions = embedding_dimensions
        self._max_tokens = max_tokens
        self._transport = transport

    @classmethod
    def from_settings(
        cls,
        settings: AiRuntimeSettings,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> OpenAICompatibleProvider:
        """Build a provider, failing fast on a missing key or a rejected base URL."""
        assert_ai_ready(settings, require_enabled=False)
        return cls(
            base_url=normalize_and_validate_base_url(settings.base_url),
            api_key=settings.api_key,
            chat_model=settings.chat_model,
            embedding_model=settings.embedding_model,
            embedding_dimensions=settings.embedding_dimensions,
            max_tokens=settings.answer_max_tokens,
            transport=transport,
        )

    def _client(self, timeout: httpx.Timeout | float) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._base_url,
            headers={"Authorization": f"Bearer {self._api_key}"},
            timeout=timeout,
            follow_redirects=False,
            transport=self._transport,
        )

    # ── Embeddings ──

    async def embed(self, texts: list[str]) -> list[list[float]]:
        """Embed texts in batches of EMBED_BATCH_SIZE.

        Returns one vector per input text, in order.
        """
        if not texts:
            return []
        total_chars = sum(len(t) for t in texts)
        logger.debug("Embedding %d text(s) (%d chars) via %s", len(texts), total_chars, self.embedding_model)
        t0 = time.perf_counter()
        timeout_ms = config.EMBEDDING_TIMEOUT_MS
        vectors: list[list[float]] = []
        async with self._client(timeout_ms / 1000) as client:
            for start in range(0, len(texts), self.EMBED_BATCH_SIZE):
                batch = texts[start:start + self.EMBED_BATCH_SIZE]
                try:
                    vectors.extend(await self._embed_batch(client, batch))
                except httpx.TimeoutException as e:
                    raise UpstreamProviderError(
                        f"Embedding request timed out (>{timeout_ms}ms)"
                    ) from e
                except httpx.HTTPError as e:
                    raise UpstreamProviderError(f"Embedding request failed: {e}") from e
        logger.debug("Embed complete: %.0fms", (time.perf_counter() - t0) * 1000)
        return vectors

    async def _embed_batch(self, client: httpx.AsyncClient, batch: list[str]) -> list[list[float]]:
        body: dict[str, Any] = {
            "model": self.embedding_model,
            "input": batch,
            "encoding_format": "float",
        }
        if self._embedding_dimensions:
            body["dimensions"] = self._embedding_dimensions

        resp = await client.post("/embeddings", json=body)
        if resp.status_code >= 400 and "dimensions" in body:
            message = extract_provider_error_message(_json_or_none(resp))
            if _should_retry_without_dimensions(message):
                logger.info("Provider rejected dimensions (%s), retrying without", message)
                body.pop("dimensions")
                resp = await client.post("/embeddings", json=body)

        payload = _json_or_none(resp)
        if resp.status_code >= 400:
            message = extract_provider_error_message(payload) or f"HTTP {resp.status_code}"
            raise UpstreamProviderError(f"Embedding request failed: {message}", resp.status_code)

        vectors = parse_embeddings_payload(payload)
        if len(vectors) != len(batch):
            raise UpstreamProviderError(
                f"Embedding response has {len(vectors)} vectors for {len(batch)} inputs"
            )
        return vectors

    # ── Chat ──

    async def stream_chat(
        self,
        messages: list[dict],
        tools: list[dict] | None = None,
        model: str | None = None,
    ) -> AsyncIterator[ChatDelta]:
        """Stream a chat completion, yielding content, reasoning, and tool call deltas."""
        body: dict[str, Any] = {
            "model": model or self.chat_model,
            "messages": messages,
            "stream": True,
            "temperature": CHAT_TEMPERATURE,
        }
        if self._max_tokens:
            body["max_tokens"] = self._max_tokens
        if tools:
            body["tools"] = tools
            body["tool_choice"] = "auto"

        logger.debug("Chat via %s (%d messages, %d tools)", body["model"], len(messages), len(tools or []))
        t0 = time.perf_counter()
        timeout = httpx.Timeout(config.CHAT_TIMEOUT_MS / 1000, connect=10.0)
        async with self._client(timeout) as client:
            try:
                async with client.stream("POST", "/chat/completions", json=body) as resp:
                    if resp.status_code >= 400:
                        await resp.aread()
                        message = extract_provider_error_message(_json_or_none(resp))
                        raise UpstreamProviderError(
                            f"Chat request failed: {message or f'HTTP {resp.status_code}'}",
                            resp.status_code,
                        )
                    async for event in aparse_sse_stream(resp.aiter_bytes()):
                        data = event.data
                        if isinstance(data, dict) and data.get("raw") == "[DONE]":
                            break
                        if not isinstance(data, dict):
                            continue
                        if "error" in data:
                            message = extract_provider_error_message(data) or "stream error"
                            raise UpstreamProviderError(f"Chat stream failed: {message}")
                        delta = _parse_chat_chunk(data)
                        if delta is not None:
                            yield delta
            except httpx.TimeoutException as e:
                raise UpstreamProviderError("Chat request timed out") from e
            except httpx.HTTPError as e:
                raise UpstreamProviderError(f"Chat request failed: {e}") from e
        logger.debug("Chat stream complete: %.0fms", (time.perf_counter() - t0) * 1000)

    # ── Models ──

    async def list_models(self) -> dict:
        """List provider models, split into chat and embedding model ids."""
        try:
            async with self._client(config.MODELS_TIMEOUT_MS / 1000) as client:
                resp = await client.get("/models")
        except httpx.TimeoutException as e:
            raise UpstreamProviderError(
                f"GET /models timed out (>{config.MODELS_TIMEOUT_MS}ms)"
            ) from e
        except httpx.HTTPError as e:
            raise UpstreamProviderError(f"GET /models failed: {e}") from e

        payload = _json_or_none(resp)
        if resp.status_code >= 400:
            message = extract_provider_error_message(payload) or f"HTTP {resp.status_code}"
            raise UpstreamProviderError(f"GET /models failed: {message}", resp.status_code)

        raw_items: list = []
        if isinstance(payload, dict):
            raw_items = payload.get("data") or payload.get("models") or []
        models = []
        for item in raw_items:
            if not isinstance(item, dict):
                continue
            model_id = str(item.get("id") or "").strip()
            if not model_id:
                continue
            models.append({
                "id": model_id,
                "object": item.get("object") or "model",
                "ownedBy": item.get("owned_by") or item.get("ownedBy"),
            })
        models.sort(key=lambda m: m["id"])
        ids = [m["id"] for m in models]
        return {
            "baseUrl": self._base_url,
            "models": models,
            "chatModels": [i for i in ids if not is_embedding_model_name(i)],
            "embeddingModels": [i for i in ids if is_embedding_model_name(i)],
        }


def _json_or_none(resp: httpx.Response) -> Any:
    try:
        return resp.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None


def create_provider(settings: AiRuntimeSettings) -> OpenAICompatibleProvider:
    return OpenAICompatibleProvider.from_settings(settings)
