"""Chat request body normalization."""

from __future__ import annotations

from typing import Any

from papergrid.agent.qa_graph import HISTORY_CONTENT_CHARS, HISTORY_LIMIT, ChatTurn, QaInput
from papergrid.errors import ChatValidationError
from papergrid.tools.approval import APPROVAL_KEY_PATTERN

MAX_QUESTION_CHARS = 1000
MAX_APPROVED_KEYS = 200

QUESTION_TOO_SHORT = "Question must be at least 1 character"
QUESTION_TOO_LONG = "Question is too long"


def _normalize_history(raw: Any) -> list[ChatTurn]:
    if not isinstance(raw, list):
        return []
    turns = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        role = item.get("role")
        content = item.get("content")
        if role not in ("user", "assistant") or not isinstance(content, str):
            continue
        content = content.strip()
        if content:
            turns.append(ChatTurn(role=role, content=content[:HISTORY_CONTENT_CHARS]))
    return turns[-HISTORY_LIMIT:]


def _normalize_approved_keys(raw: Any) -> frozenset[str]:
    if not isinstance(raw, list):
        return frozenset()
    keys = [
        item.strip().lower()
        for item in raw
        if isinstance(item, str) and APPROVAL_KEY_PATTERN.match(item.strip().lower())
    ]
    return frozenset(keys[-MAX_APPROVED_KEYS:])


def normalize_chat_request(body: Any) -> QaInput:
    """Turn an untrusted JSON body into a QaInput.

    Malformed history entries and approval keys are dropped silently; a
    missing or oversized question raises ChatValidationError.
    """
    if not isinstance(body, dict):
        body = {}
    question = body.get("question")
    question = question.strip() if isinstance(question, str) else ""
    if not question:
        raise ChatValidationError(QUESTION_TOO_SHORT)
    if len(question) > MAX_QUESTION_CHARS:
        raise ChatValidationError(QUESTION_TOO_LONG)

    model = body.get("model")
    return QaInput(
        question=question,
        history=_normalize_history(body.get("history")),
        include_protected=body.get("includeProtected") is True,
        approved_tool_keys=_normalize_approved_keys(body.get("approvedToolKeys")),
        model=model.strip() if isinstance(model, str) and model.strip() else None,
    )
