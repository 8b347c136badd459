"""query_posts: structured count/list/get over posts."""

from __future__ import annotations

import dataclasses
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from papergrid.storage.sqlite_store import Post, PostFilters, SqliteStore
from papergrid.tools.registry import tool_registry
from papergrid.tools.types import (
    AgentTool,
    ToolApprovalPolicy,
    ToolContext,
    ToolDeps,
    ToolFailure,
    ToolRegistration,
    ToolResult,
    ToolSuccess,
    clamp,
    parse_tool_args,
)

DEFAULT_LIST_LIMIT = 10
DEFAULT_CONTENT_MAX_CHARS = 4000
TRUNCATION_MARKER = "\n\n...[content truncated]"


class QueryPostsArgs(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="forbid", str_strip_whitespace=True
    )

    action: Literal["count", "list", "get"] = Field(
        default="list", description="count = statistics, list = paged list, get = one post."
    )
    status: Literal["ALL", "PUBLISHED", "DRAFT", "ARCHIVED"] = Field(
        default="ALL", description="Optional status filter."
    )
    locale: str | None = Field(default=None, description="Optional locale filter, e.g. en.")
    category_slug: str | None = Field(default=None, description="Optional category slug filter.")
    tag_slug: str | None = Field(default=None, description="Optional tag slug filter.")
    search: str | None = Field(
        default=None, description="Optional case-insensitive match on title or excerpt."
    )
    include_protected: bool = Field(
        default=False,
        description="Include password-protected posts; only honoured when the session allows it.",
    )
    limit: int | None = Field(
        default=None,
        json_schema_extra={"minimum": 1, "maximum": 50},
        description="Page size for action=list.",
    )
    offset: int | None = Field(
        default=None,
        json_schema_extra={"minimum": 0, "maximum": 2000},
        description="Offset for action=list.",
    )
    post_id: str | None = Field(default=None, description="For action=get; exclusive with slug.")
    slug: str | None = Field(default=None, description="For action=get; exclusive with postId.")
    include_content: bool = Field(
        default=False, description="For action=get: return the post body. Needs approval."
    )
    content_max_chars: int | None = Field(
        default=None,
        json_schema_extra={"minimum": 200, "maximum": 12000},
        description="For action=get with includeContent: maximum body characters.",
    )

    @field_validator("status", mode="before")
    @classmethod
    def _upper_status(cls, value: Any) -> Any:
        return value.strip().upper() if isinstance(value, str) else value


def _trim_content(content: str, max_chars: int) -> dict:
    if len(content) <= max_chars:
        return {"content": content, "contentChars": len(content), "contentTruncated": False}
    return {
        "content": content[:max_chars] + TRUNCATION_MARKER,
        "contentChars": len(content),
        "contentTruncated": True,
    }


def _describe_post(store: SqliteStore, post: Post, with_excerpt: bool = False) -> dict:
    category = store.get_category(post.category_id) if post.category_id else None
    item = {
        "id": post.id,
        "title": post.title,
        "slug": post.slug,
        "status": post.status,
        "locale": post.locale,
        "isProtected": post.is_protected,
        "publishedAt": post.published_at,
        "updatedAt": post.updated_at,
        "category": (
            {"id": category.id, "name": category.name, "slug": category.slug}
            if category else None
        ),
        "tags": [{"id": t.id, "name": t.name, "slug": t.slug} for t in store.get_post_tags(post.id)],
    }
    if with_excerpt:
        item["excerpt"] = post.excerpt
    return item


def create_query_posts_tool(context: ToolContext, deps: ToolDeps) -> AgentTool:
    store = deps.store

    async def invoke(args: dict[str, Any]) -> ToolResult:
        params: QueryPostsArgs = parse_tool_args(QueryPostsArgs, args)
        filters = PostFilters(
            status=params.status,
            locale=params.locale or None,
            category_slug=params.category_slug or None,
            tag_slug=params.tag_slug or None,
            search=params.search or None,
            include_protected=context.include_protected and params.include_protected,
        )
        echo = {
            "status": filters.status,
            "locale": filters.locale,
            "categorySlug": filters.category_slug,
            "tagSlug": filters.tag_slug,
            "search": filters.search,
            "includeProtected": filters.include_protected,
        }

        if params.action == "count":
            by_status = store.count_posts_by_status(filters)
            protected_count = (
                store.count_posts(filters)
                - store.count_posts(dataclasses.replace(filters, include_protected=False))
                if filters.include_protected else 0
            )
            return ToolSuccess({
                "action": "count",
                "filters": echo,
                "count": {
                    "total": store.count_posts(filters),
                    "byStatus": {
                        "published": by_status["PUBLISHED"],
                        "draft": by_status["DRAFT"],
                        "archived": by_status["ARCHIVED"],
                    },
                    "protected": protected_count,
                },
            })

        if params.action == "list":
            limit = clamp(DEFAULT_LIST_LIMIT if params.limit is None else params.limit, 1, 50)
            offset = clamp(params.offset or 0, 0, 2000)
            posts = store.list_posts(filters, limit=limit, offset=offset)
            return ToolSuccess({
                "action": "list",
                "filters": echo,
                "list": {
                    "total": store.count_posts(filters),
                    "limit": limit,
                    "offset": offset,
                    "items": [_describe_post(store, p) for p in posts],
                },
            })

        post_id = params.post_id or None
        slug = params.slug or None
        if not post_id and not slug:
            return ToolFailure(
                "action=get needs postId or slug", {"action": "get", "post": None}
            )
        if post_id and slug:
            return ToolFailure(
                "postId and slug are mutually exclusive", {"action": "get", "post": None}
            )

        post = store.get_post(post_id) if post_id else store.get_post_by_slug(slug)
        if post is None or (post.is_protected and not filters.include_protected):
            return ToolFailure(
                "Post not found or not accessible in this session",
                {"action": "get", "post": None},
            )

        item = _describe_post(store, post, with_excerpt=True)
        if params.include_content:
            max_chars = clamp(
                DEFAULT_CONTENT_MAX_CHARS
                if params.content_max_chars is None else params.content_max_chars,
                200, 12000,
            )
            item.update(_trim_content(post.content, max_chars))
        return ToolSuccess({"action": "get", "post": item})

    return AgentTool(
        name="query_posts",
        description=(
            "Structured post queries. action=count returns totals by status, action=list "
            "returns a page of posts ordered by last update, action=get returns one post "
            "by postId or slug, optionally with its body. Protected posts are excluded "
            "by default."
        ),
        args_model=QueryPostsArgs,
        invoke=invoke,
    )


tool_registry.register(
    ToolRegistration(
        key="query_posts",
        description="Unified post tool: count, list and get.",
        factory=create_query_posts_tool,
        approval_policy=ToolApprovalPolicy(
            required_when=lambda args: args.action == "get" and args.include_content,
            reason="Reading a full post body is a high-context operation and needs human approval.",
        ),
    )
)
