"""list_taxonomies: category and tag lookup."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from papergrid.tools.registry import tool_registry
from papergrid.tools.types import (
    AgentTool,
    ToolContext,
    ToolDeps,
    ToolRegistration,
    ToolResult,
    ToolSuccess,
    clamp,
    parse_tool_args,
)

DEFAULT_LIMIT = 20


class ListTaxonomiesArgs(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="forbid", str_strip_whitespace=True
    )

    kind: Literal["category", "tag"] = Field(
        default="category", description="What to list: category or tag."
    )
    query: str | None = Field(
        default=None,
        description="Optional match on name or slug (and description for categories).",
    )
    limit: int | None = Field(
        default=None, json_schema_extra={"minimum": 1, "maximum": 80}, description="Max items."
    )
    include_post_count: bool = Field(
        default=True, description="Attach the number of posts per item."
    )


def create_list_taxonomies_tool(context: ToolContext, deps: ToolDeps) -> AgentTool:
    store = deps.store

    async def invoke(args: dict[str, Any]) -> ToolResult:
        params: ListTaxonomiesArgs = parse_tool_args(ListTaxonomiesArgs, args)
        limit = clamp(DEFAULT_LIMIT if params.limit is None else params.limit, 1, 80)
        query = params.query or ""
        if params.kind == "category":
            items = store.list_categories(query, limit, params.include_post_count)
        else:
            items = store.list_tags(query, limit, params.include_post_count)
        return ToolSuccess({"kind": params.kind, "total": len(items), "items": items})

    return AgentTool(
        name="list_taxonomies",
        description=(
            "List the site's categories or tags (kind=category|tag, default category), "
            "with optional keyword filter, limit, and post counts."
        ),
        args_model=ListTaxonomiesArgs,
        invoke=invoke,
    )


tool_registry.register(
    ToolRegistration(
        key="list_taxonomies",
        description="Unified category/tag listing.",
        factory=create_list_taxonomies_tool,
    )
)
