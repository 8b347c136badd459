"""Retry tool calls whose arguments fail to parse."""

from __future__ import annotations

import dataclasses
import logging
from typing import Any

from papergrid.errors import ToolInputParsingError, ToolParameterRetryExceededError
from papergrid.tools.types import AgentTool, ToolResult

logger = logging.getLogger(__name__)

MAX_PARAMETER_RETRIES = 3


def with_parameter_retry(tool: AgentTool, max_retries: int = MAX_PARAMETER_RETRIES) -> AgentTool:
    """Re-invoke on ToolInputParsingError up to ``max_retries`` times.

    Any other error propagates immediately. After the last retry,
    ToolParameterRetryExceededError carries the retry count.
    """

    async def invoke(args: dict[str, Any]) -> ToolResult:
        retries = 0
        while True:
            try:
                return await tool.invoke(args)
            except ToolInputParsingError as e:
                if retries >= max_retries:
                    raise ToolParameterRetryExceededError(tool.name, retries, e) from e
                retries += 1
                logger.warning("  tool %s: bad arguments, retry %d/%d", tool.name, retries, max_retries)

    return dataclasses.replace(tool, invoke=invoke)
