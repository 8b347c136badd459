"""Argument-sensitive human approval gate for tool calls."""

from __future__ import annotations

import dataclasses
import hashlib
import json
import logging
import re
from typing import Any

from papergrid.errors import ToolInputParsingError
from papergrid.tools.types import (
    AgentTool,
    ApprovalRequest,
    ApprovalRequired,
    ToolContext,
    ToolRegistration,
    ToolResult,
    parse_tool_args,
)

logger = logging.getLogger(__name__)

APPROVAL_KEY_PATTERN = re.compile(r"^[a-f0-9]{64}$")


def canonical_json(value: Any) -> str:
    """JSON with sorted keys and no whitespace; equal objects give equal text."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def build_approval_key(tool_name: str, args: dict[str, Any]) -> str:
    return hashlib.sha256(f"{tool_name}:{canonical_json(args)}".encode("utf-8")).hexdigest()


def with_approval(tool: AgentTool, registration: ToolRegistration, context: ToolContext) -> AgentTool:
    """Wrap ``tool`` so calls its policy flags return ApprovalRequired until approved.

    Arguments that do not parse pass through so the inner tool reports the
    parsing error itself.
    """
    policy = registration.approval_policy
    if policy is None:
        return tool

    async def invoke(args: dict[str, Any]) -> ToolResult:
        try:
            parsed = parse_tool_args(tool.args_model, args)
        except ToolInputParsingError:
            return await tool.invoke(args)

        if policy.required_when(parsed):
            key = build_approval_key(tool.name, args)
            if key not in context.approved_tool_keys:
                logger.info("  approval required: %s key=%s", tool.name, key[:12])
                return ApprovalRequired(
                    ApprovalRequest(key=key, tool_name=tool.name, reason=policy.reason, args=args)
                )
        return await tool.invoke(args)

    return dataclasses.replace(tool, invoke=invoke)
