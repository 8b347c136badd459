"""QA graph: streaming, tool-calling question answering over the site's posts."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import AsyncIterator
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Any, Literal

from papergrid.agent.provider import ChatProvider, ToolCallDelta
from papergrid.errors import ClientAbortError
from papergrid.retriever import QaCitation, Retriever
from papergrid.settings import AiRuntimeSettings
from papergrid.storage.sqlite_store import SqliteStore
from papergrid.tools.registry import build_agent_tools
from papergrid.tools.types import (
    AgentTool,
    ApprovalRequired,
    ToolContext,
    ToolDeps,
    ToolFailure,
    ToolResult,
    ToolSuccess,
    tool_result_to_json,
)

# Register tools with the global registry
import papergrid.tools  # noqa: F401, E402

logger = logging.getLogger(__name__)

MAX_ITERATIONS = 8  # model calls per turn; the last one has no tools
MAX_TOOL_RESULT_CHARS = 15000
MAX_REASONING_CHARS = 4000
HISTORY_LIMIT = 12
HISTORY_CONTENT_CHARS = 2000
DEFAULT_ANSWER = "I could not produce an answer this time, please rephrase the question."

EventName = Literal["ready", "token", "reasoning", "tool-call", "tool-result", "done"]


def build_system_prompt(include_protected: bool) -> str:
    return "\n".join([
        "You are the admin AI assistant of this blog and work through the registered tools.",
        "General-knowledge questions that need no facts from this site may be answered directly.",
        "When a question concerns facts, quotes, or numbers from the site's posts, call tools "
        "before answering.",
        "Use as little context as possible: start with query_posts(action=count or list) to see "
        "scale and candidates, then query_posts(action=get) to read one post; use "
        "list_taxonomies for categories and tags; use search_posts only for semantic search.",
        "Tool arguments must match the schema exactly: only allowed fields, correct types, exact "
        "enum values, no extra fields.",
        "Only set includeContent on query_posts(action=get) when really needed, with a small "
        "contentMaxChars (for example 1200-4000).",
        "If the user only asks for counts, categories or tags, do not read post bodies.",
        "Protected posts may be searched in this session."
        if include_protected
        else "Protected posts are off limits in this session; do not try to work around it.",
        "When protected posts are off limits, never request or infer their content.",
        'If a tool returns error "approval_required", ask the user to approve that tool call '
        "before continuing.",
        "If a tool reports an argument validation error, fix the arguments and call the same "
        "tool again; such errors are retried automatically up to 3 times.",
        'If a tool returns the error "Please build the vector index first", reply exactly that.',
        "Answer concisely. Cite sources when you used retrieved posts; say so when the answer is "
        "general knowledge.",
    ])


@dataclass
class ChatTurn:
    role: Literal["user", "assistant"]
    content: str


@dataclass
class QaInput:
    question: str
    history: list[ChatTurn] = field(default_factory=list)
    include_protected: bool = False
    approved_tool_keys: frozenset[str] = frozenset()
    model: str | None = None


@dataclass
class ChatStreamEvent:
    event: EventName
    data: dict[str, Any]


@dataclass
class _PendingToolCall:
    id: str
    name: str
    arguments: str = ""
    has_id: bool = True


@dataclass
class _ToolOutcome:
    result: ToolResult

    @property
    def is_error(self) -> bool:
        return isinstance(self.result, ToolFailure)

    @property
    def citations(self) -> list[QaCitation]:
        return self.result.citations if isinstance(self.result, ToolSuccess) else []


def normalize_history(history: list[ChatTurn]) -> list[ChatTurn]:
    turns = []
    for turn in history:
        content = turn.content.strip()
        if turn.role in ("user", "assistant") and content:
            turns.append(ChatTurn(turn.role, content[:HISTORY_CONTENT_CHARS]))
    return turns[-HISTORY_LIMIT:]


def merge_citations(citations: dict[str, QaCitation], new: list[QaCitation]) -> None:
    """Keep one citation per post, the best-scoring one."""
    for c in new:
        existing = citations.get(c.post_id)
        if existing is None or c.score > existing.score:
            citations[c.post_id] = c


def _check_abort(abort: asyncio.Event | None) -> None:
    if abort is not None and abort.is_set():
        raise ClientAbortError()


def _accumulate_tool_calls(
    pending: dict[int, list[_PendingToolCall]], deltas: list[ToolCallDelta]
) -> None:
    """Fold streamed tool-call fragments into calls, grouped by stream index.

    A fragment carrying a new id on an index that already has one starts a
    separate call on that index.
    """
    for d in deltas:
        calls = pending.setdefault(d.index, [])
        call = calls[-1] if calls else None
        if call is None or (d.id and call.has_id and d.id != call.id):
            call = _PendingToolCall(id=d.id or f"call_{d.index}_{len(calls)}", name=d.name or "")
            call.has_id = bool(d.id)
            calls.append(call)
        else:
            if d.id:
                call.id = d.id
                call.has_id = True
            if d.name:
                call.name = d.name
        call.arguments += d.arguments


def _parse_arguments(raw: str) -> dict[str, Any] | None:
    if not raw.strip():
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        return None
    return value if isinstance(value, dict) else None


class QaGraph:
    """One question-answering turn as a stream of ChatStreamEvents.

    Loop: call the model, stream its tokens and reasoning; if it asked for
    tools, run them (concurrently), feed results back and call it again.
    The final model call withdraws the tools so the turn always ends with an
    answer. The last event is ``done``.
    """

    def __init__(
        self,
        store: SqliteStore,
        retriever: Retriever,
        provider: ChatProvider,
        settings: AiRuntimeSettings,
    ) -> None:
        self._store = store
        self._retriever = retriever
        self._provider = provider
        self._settings = settings

    async def stream(
        self, qa_input: QaInput, abort: asyncio.Event | None = None
    ) -> AsyncIterator[ChatStreamEvent]:
        model = qa_input.model or self._settings.chat_model
        context = ToolContext(
            include_protected=qa_input.include_protected,
            rag_top_k=self._settings.rag_top_k,
            rag_min_score=self._settings.rag_min_score,
            approved_tool_keys=qa_input.approved_tool_keys,
        )
        tools = build_agent_tools(context, ToolDeps(store=self._store, retriever=self._retriever))
        tools_by_name = {t.name: t for t in tools}
        declarations = [t.declaration() for t in tools]

        messages: list[dict[str, Any]] = [
            {"role": "system", "content": build_system_prompt(qa_input.include_protected)},
            *({"role": t.role, "content": t.content} for t in normalize_history(qa_input.history)),
            {"role": "user", "content": qa_input.question.strip()},
        ]
        citations: dict[str, QaCitation] = {}
        streamed_text = ""
        answer = ""
        t0 = time.perf_counter()

        for iteration in range(MAX_ITERATIONS):
            _check_abort(abort)
            use_tools = iteration < MAX_ITERATIONS - 1
            if not use_tools:
                logger.info("Iteration budget spent, asking for a final answer without tools")

            step_text = ""
            pending: dict[int, list[_PendingToolCall]] = {}
            async with aclosing(
                self._provider.stream_chat(
                    messages, tools=declarations if use_tools else None, model=model
                )
            ) as deltas:
                async for delta in deltas:
                    if delta.reasoning:
                        _check_abort(abort)
                        yield ChatStreamEvent("reasoning", {"text": delta.reasoning[:MAX_REASONING_CHARS]})
                    if delta.content:
                        _check_abort(abort)
                        step_text += delta.content
                        streamed_text += delta.content
                        yield ChatStreamEvent("token", {"text": delta.content})
                    if delta.tool_calls:
                        _accumulate_tool_calls(pending, delta.tool_calls)

            calls = [c for i in sorted(pending) for c in pending[i]] if use_tools else []
            if not calls:
                answer = step_text.strip()
                break

            logger.info("Iteration %d/%d: %d tool call(s)", iteration + 1, MAX_ITERATIONS, len(calls))
            messages.append({
                "role": "assistant",
                "content": step_text or None,
                "tool_calls": [
                    {
                        "id": c.id,
                        "type": "function",
                        "function": {"name": c.name, "arguments": c.arguments or "{}"},
                    }
                    for c in calls
                ],
            })

            parsed_args = [_parse_arguments(c.arguments) for c in calls]
            for call, args in zip(calls, parsed_args):
                _check_abort(abort)
                logger.info("  -> %s(%s)", call.name, call.arguments[:200])
                yield ChatStreamEvent("tool-call", {
                    "toolCallId": call.id,
                    "toolName": call.name,
                    "args": args if args is not None else {"raw": call.arguments},
                })

            outcomes = await asyncio.gather(*(
                self._run_tool(tools_by_name, call, args) for call, args in zip(calls, parsed_args)
            ))

            for call, outcome in zip(calls, outcomes):
                merge_citations(citations, outcome.citations)
                payload: dict[str, Any] = {
                    "toolCallId": call.id,
                    "toolName": call.name,
                    "result": outcome.result.to_payload(),
                    "isError": outcome.is_error,
                }
                if outcome.citations:
                    payload["citations"] = [c.to_dict() for c in outcome.citations]
                _check_abort(abort)
                yield ChatStreamEvent("tool-result", payload)

                content = tool_result_to_json(outcome.result)
                if len(content) > MAX_TOOL_RESULT_CHARS:
                    content = content[:MAX_TOOL_RESULT_CHARS] + "\n... (truncated)"
                messages.append({"role": "tool", "tool_call_id": call.id, "content": content})

        final_answer = answer or streamed_text.strip() or DEFAULT_ANSWER
        ranked = sorted(citations.values(), key=lambda c: c.score, reverse=True)
        logger.info(
            "QA turn done: %d chars, %d citations (%.2fs)",
            len(final_answer), len(ranked), time.perf_counter() - t0,
        )
        _check_abort(abort)
        yield ChatStreamEvent("done", {
            "answer": final_answer,
            "citations": [c.to_dict() for c in ranked],
            "model": model,
        })

    async def _run_tool(
        self, tools_by_name: dict[str, AgentTool], call: _PendingToolCall, args: dict[str, Any] | None
    ) -> _ToolOutcome:
        """Run one tool call; failures become ToolFailure results for the model."""
        tool = tools_by_name.get(call.name)
        if tool is None:
            return _ToolOutcome(ToolFailure(f"Unknown tool: {call.name}"))
        if args is None:
            return _ToolOutcome(ToolFailure("Tool arguments must be a JSON object"))

        t0 = time.perf_counter()
        try:
            result = await tool.invoke(args)
        except ClientAbortError:
            raise
        except Exception as e:
            logger.error("  tool error: %s: %s", call.name, e)
            result = ToolFailure(str(e) or type(e).__name__)
        if isinstance(result, ApprovalRequired):
            logger.info("  tool %s waiting for approval", call.name)
        logger.debug("  tool done: %s (%.3fs)", call.name, time.perf_counter() - t0)
        return _ToolOutcome(result)
