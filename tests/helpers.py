"""Shared test helpers: fake embedding/chat providers and post factories."""

from __future__ import annotations

import hashlib
import json
import re

from papergrid.agent.provider import ChatDelta, ToolCallDelta
from papergrid.storage.sqlite_store import PUBLISHED, Post

FAKE_DIMS = 16
_WORD = re.compile(r"[a-z0-9]+")


def _fake_embed(texts: list[str], dims: int = FAKE_DIMS) -> list[list[float]]:
    """Deterministic bag-of-words embeddings: each word bumps one md5 bucket."""
    results = []
    for t in texts:
        vec = [0.0] * dims
        for word in _WORD.findall(t.lower()):
            bucket = hashlib.md5(word.encode()).digest()[0] % dims
            vec[bucket] += 1.0
        if not any(vec):
            vec[0] = 1.0
        results.append(vec)
    return results


class FakeEmbeddingProvider:
    """Async embedding provider backed by _fake_embed; records every call."""

    def __init__(self, dims: int = FAKE_DIMS) -> None:
        self.dims = dims
        self.calls: list[list[str]] = []
        self.fail_with: Exception | None = None

    async def embed(self, texts: list[str]) -> list[list[float]]:
        self.calls.append(list(texts))
        if self.fail_with is not None:
            raise self.fail_with
        return _fake_embed(texts, self.dims)


class ScriptedChatProvider:
    """Chat provider that replays one scripted list of deltas per model call.

    Calls beyond the script get a plain "fallback" answer.
    """

    def __init__(self, steps: list[list[ChatDelta]], embedder: FakeEmbeddingProvider | None = None) -> None:
        self._steps = list(steps)
        self._embedder = embedder or FakeEmbeddingProvider()
        self.calls: list[dict] = []

    async def embed(self, texts: list[str]) -> list[list[float]]:
        return await self._embedder.embed(texts)

    async def stream_chat(self, messages, tools=None, model=None):
        self.calls.append({
            "messages": [dict(m) for m in messages],
            "tools": tools,
            "model": model,
        })
        step = self._steps.pop(0) if self._steps else _make_text_step("fallback")
        for delta in step:
            yield delta


def _make_text_step(text: str, reasoning: str | None = None) -> list[ChatDelta]:
    """A model step that streams ``text`` in two token deltas."""
    deltas = []
    if reasoning:
        deltas.append(ChatDelta(reasoning=reasoning))
    half = len(text) // 2
    deltas.append(ChatDelta(content=text[:half]))
    deltas.append(ChatDelta(content=text[half:], finish_reason="stop"))
    return deltas


def _make_tool_call_step(*calls: tuple[str, str, dict]) -> list[ChatDelta]:
    """A model step requesting tools; arguments arrive split over two deltas."""
    deltas = []
    for index, (call_id, name, args) in enumerate(calls):
        raw = json.dumps(args)
        deltas.append(ChatDelta(tool_calls=[ToolCallDelta(index=index, id=call_id, name=name, arguments=raw[:5])]))
        deltas.append(ChatDelta(tool_calls=[ToolCallDelta(index=index, arguments=raw[5:])]))
    deltas.append(ChatDelta(finish_reason="tool_calls"))
    return deltas


def make_post(post_id: str, title: str, content: str, **kwargs) -> Post:
    kwargs.setdefault("slug", post_id)
    kwargs.setdefault("status", PUBLISHED)
    kwargs.setdefault("published_at", "2024-01-01T00:00:00.000+00:00")
    return Post(id=post_id, title=title, content=content, **kwargs)
