"""Registry of agent tools and per-turn tool construction."""

from __future__ import annotations

import logging

from papergrid.tools.approval import with_approval
from papergrid.tools.retry import with_parameter_retry
from papergrid.tools.types import AgentTool, ToolContext, ToolDeps, ToolRegistration

logger = logging.getLogger(__name__)


class ToolRegistry:
    """Registry of tools available to the agent, in registration order."""

    def __init__(self) -> None:
        self._registrations: dict[str, ToolRegistration] = {}

    def register(self, registration: ToolRegistration) -> None:
        if registration.key in self._registrations:
            raise ValueError(f"Tool {registration.key!r} is already registered")
        self._registrations[registration.key] = registration

    def get(self, key: str) -> ToolRegistration:
        return self._registrations[key]

    @property
    def tool_names(self) -> list[str]:
        return list(self._registrations.keys())

    def build(self, context: ToolContext, deps: ToolDeps) -> list[AgentTool]:
        """Instantiate every tool for one turn: factory, then retry, then approval."""
        tools = []
        for registration in self._registrations.values():
            tool = registration.factory(context, deps)
            tool = with_parameter_retry(tool)
            tool = with_approval(tool, registration, context)
            tools.append(tool)
        logger.debug("Built %d agent tools: %s", len(tools), ", ".join(t.name for t in tools))
        return tools


# Module-level singleton; tool modules register on import (see papergrid.tools)
tool_registry = ToolRegistry()


def build_agent_tools(context: ToolContext, deps: ToolDeps) -> list[AgentTool]:
    return tool_registry.build(context, deps)
