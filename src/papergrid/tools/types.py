"""Tool structs, the per-turn tool context, and the tagged tool result."""

from __future__ import annotations

import json
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Union

from pydantic import BaseModel, ValidationError

from papergrid.errors import ToolInputParsingError
from papergrid.retriever import QaCitation, Retriever
from papergrid.storage.sqlite_store import SqliteStore


@dataclass(frozen=True)
class ToolContext:
    """Authorization scope of one conversation turn."""

    include_protected: bool = False
    rag_top_k: int = 8
    rag_min_score: float = 0.2
    approved_tool_keys: frozenset[str] = frozenset()


@dataclass(frozen=True)
class ToolDeps:
    store: SqliteStore
    retriever: Retriever


# ── Results ──


@dataclass
class ApprovalRequest:
    key: str
    tool_name: str
    reason: str
    args: dict[str, Any]

    def to_dict(self) -> dict:
        return {
            "key": self.key,
            "toolName": self.tool_name,
            "reason": self.reason,
            "args": self.args,
        }


@dataclass
class ToolSuccess:
    payload: dict[str, Any]
    citations: list[QaCitation] = field(default_factory=list)

    def to_payload(self) -> dict:
        return {"ok": True, **self.payload}


@dataclass
class ToolFailure:
    error: str
    payload: dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> dict:
        return {"ok": False, **self.payload, "error": self.error}


@dataclass
class ApprovalRequired:
    request: ApprovalRequest

    def to_payload(self) -> dict:
        return {"ok": False, "error": "approval_required", "approval": self.request.to_dict()}


ToolResult = Union[ToolSuccess, ToolFailure, ApprovalRequired]


def tool_result_to_json(result: ToolResult) -> str:
    return json.dumps(result.to_payload(), ensure_ascii=False)


# ── Tools ──


@dataclass(frozen=True)
class AgentTool:
    """A callable tool: ``invoke`` takes the raw argument dict from the model."""

    name: str
    description: str
    args_model: type[BaseModel]
    invoke: Callable[[dict[str, Any]], Awaitable[ToolResult]]

    def declaration(self) -> dict:
        """OpenAI function-calling declaration."""
        schema = self.args_model.model_json_schema(by_alias=True)
        schema.pop("title", None)
        for prop in schema.get("properties", {}).values():
            prop.pop("title", None)
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": schema,
            },
        }


@dataclass(frozen=True)
class ToolApprovalPolicy:
    """Decides per call, from the parsed arguments, whether a human must approve."""

    required_when: Callable[[Any], bool]
    reason: str


@dataclass(frozen=True)
class ToolRegistration:
    key: str
    description: str
    factory: Callable[[ToolContext, ToolDeps], AgentTool]
    approval_policy: ToolApprovalPolicy | None = None


def clamp(value: int, low: int, high: int) -> int:
    return min(max(value, low), high)


def parse_tool_args(model: type[BaseModel], args: dict[str, Any]) -> Any:
    """Validate raw tool arguments, raising ToolInputParsingError on failure."""
    try:
        return model.model_validate(args)
    except ValidationError as e:
        raise ToolInputParsingError(str(e)) from e
