"""search_posts: semantic retrieval over published posts."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from papergrid.errors import VectorIndexNotReadyError
from papergrid.tools.registry import tool_registry
from papergrid.tools.types import (
    AgentTool,
    ToolContext,
    ToolDeps,
    ToolFailure,
    ToolRegistration,
    ToolResult,
    ToolSuccess,
    clamp,
    parse_tool_args,
)

MAX_TOP_K = 20


class SearchPostsArgs(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="forbid", str_strip_whitespace=True
    )

    query: str = Field(
        min_length=1,
        description="Search query for the site's posts; include the key facts or topic.",
    )
    top_k: int | None = Field(
        default=None,
        json_schema_extra={"minimum": 1, "maximum": MAX_TOP_K},
        description="Optional number of results; defaults to the configured top K.",
    )


def create_search_posts_tool(context: ToolContext, deps: ToolDeps) -> AgentTool:
    async def invoke(args: dict[str, Any]) -> ToolResult:
        params: SearchPostsArgs = parse_tool_args(SearchPostsArgs, args)
        top_k = clamp(context.rag_top_k if params.top_k is None else params.top_k, 1, MAX_TOP_K)
        try:
            hits = await deps.retriever.retrieve_relevant_post_chunks(
                params.query,
                top_k=top_k,
                min_score=context.rag_min_score,
                include_protected=context.include_protected,
            )
        except VectorIndexNotReadyError as e:
            return ToolFailure(str(e), {"query": params.query, "total": 0, "citations": []})

        citations = [hit.to_citation() for hit in hits]
        return ToolSuccess(
            {
                "query": params.query,
                "total": len(citations),
                "citations": [c.to_dict() for c in citations],
            },
            citations=citations,
        )

    return AgentTool(
        name="search_posts",
        description=(
            "Semantic search over the site's published posts. Call it only when the "
            "question depends on what this blog has published. Returns citations with "
            "title, url, snippet and similarity score."
        ),
        args_model=SearchPostsArgs,
        invoke=invoke,
    )


tool_registry.register(
    ToolRegistration(
        key="search_posts",
        description="Search the site's post knowledge base.",
        factory=create_search_posts_tool,
    )
)
