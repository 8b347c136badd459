"""Tests for the tool registry, approval and retry decorators, and each tool."""

from __future__ import annotations

import pytest
from pydantic import BaseModel, ConfigDict

import papergrid.tools  # noqa: F401
from papergrid.errors import ToolInputParsingError, ToolParameterRetryExceededError
from papergrid.tools.approval import (
    APPROVAL_KEY_PATTERN,
    build_approval_key,
    canonical_json,
    with_approval,
)
from papergrid.tools.query_posts import TRUNCATION_MARKER
from papergrid.tools.registry import ToolRegistry, build_agent_tools, tool_registry
from papergrid.tools.retry import MAX_PARAMETER_RETRIES, with_parameter_retry
from papergrid.tools.types import (
    AgentTool,
    ApprovalRequired,
    ToolApprovalPolicy,
    ToolContext,
    ToolDeps,
    ToolFailure,
    ToolRegistration,
    ToolSuccess,
    parse_tool_args,
)

from tests.helpers import make_post


class _EchoArgs(BaseModel):
    model_config = ConfigDict(extra="forbid")

    value: int
    sensitive: bool = False


def _echo_tool(calls: list) -> AgentTool:
    async def invoke(args):
        calls.append(args)
        params = parse_tool_args(_EchoArgs, args)
        return ToolSuccess({"value": params.value})

    return AgentTool(name="echo", description="Echo", args_model=_EchoArgs, invoke=invoke)


_ECHO_REGISTRATION = ToolRegistration(
    key="echo",
    description="Echo",
    factory=lambda context, deps: _echo_tool([]),
    approval_policy=ToolApprovalPolicy(
        required_when=lambda args: args.sensitive, reason="Sensitive echo"
    ),
)


# ── Fixtures ──


@pytest.fixture
def deps(seeded, retriever):
    return ToolDeps(store=seeded, retriever=retriever)


def _tools(deps, **context_kwargs) -> dict[str, AgentTool]:
    return {t.name: t for t in build_agent_tools(ToolContext(**context_kwargs), deps)}


# ── Registry ──


class TestRegistry:
    def test_registration_order(self):
        assert tool_registry.tool_names == ["query_posts", "list_taxonomies", "search_posts"]

    def test_duplicate_rejected(self):
        registry = ToolRegistry()
        registry.register(_ECHO_REGISTRATION)
        with pytest.raises(ValueError, match="already registered"):
            registry.register(_ECHO_REGISTRATION)

    def test_declarations(self, deps):
        tools = build_agent_tools(ToolContext(), deps)
        decl = {t.name: t.declaration() for t in tools}
        params = decl["query_posts"]["function"]["parameters"]
        assert decl["query_posts"]["type"] == "function"
        assert "postId" in params["properties"]
        assert "title" not in params
        assert "title" not in params["properties"]["action"]
        search = decl["search_posts"]["function"]["parameters"]
        assert search["required"] == ["query"]
        assert search["properties"]["topK"]


# ── Approval ──


class TestApproval:
    def test_canonical_json_order_independent(self):
        assert canonical_json({"b": 1, "a": [1, {"d": 2, "c": 3}]}) == '{"a":[1,{"c":3,"d":2}],"b":1}'

    def test_key_format_and_stability(self):
        key = build_approval_key("echo", {"value": 1, "sensitive": True})
        assert APPROVAL_KEY_PATTERN.match(key)
        assert key == build_approval_key("echo", {"sensitive": True, "value": 1})
        assert key != build_approval_key("echo", {"sensitive": True, "value": 2})
        assert key != build_approval_key("other", {"sensitive": True, "value": 1})

    async def test_not_required_passes_through(self):
        calls = []
        tool = with_approval(_echo_tool(calls), _ECHO_REGISTRATION, ToolContext())
        result = await tool.invoke({"value": 1})
        assert isinstance(result, ToolSuccess)
        assert len(calls) == 1

    async def test_required_without_key(self):
        calls = []
        tool = with_approval(_echo_tool(calls), _ECHO_REGISTRATION, ToolContext())
        args = {"value": 1, "sensitive": True}
        result = await tool.invoke(args)
        assert isinstance(result, ApprovalRequired)
        assert result.request.key == build_approval_key("echo", args)
        assert result.request.reason == "Sensitive echo"
        assert calls == []
        payload = result.to_payload()
        assert payload["error"] == "approval_required"
        assert payload["approval"]["toolName"] == "echo"

    async def test_same_args_same_key_every_time(self):
        tool = with_approval(_echo_tool([]), _ECHO_REGISTRATION, ToolContext())
        first = await tool.invoke({"value": 1, "sensitive": True})
        second = await tool.invoke({"sensitive": True, "value": 1})
        assert first.request.key == second.request.key

    async def test_approved_key_runs_tool(self):
        args = {"value": 1, "sensitive": True}
        context = ToolContext(approved_tool_keys=frozenset({build_approval_key("echo", args)}))
        calls = []
        tool = with_approval(_echo_tool(calls), _ECHO_REGISTRATION, context)
        result = await tool.invoke(args)
        assert isinstance(result, ToolSuccess)
        assert calls == [args]

    async def test_key_does_not_cover_other_args(self):
        approved = build_approval_key("echo", {"value": 1, "sensitive": True})
        context = ToolContext(approved_tool_keys=frozenset({approved}))
        tool = with_approval(_echo_tool([]), _ECHO_REGISTRATION, context)
        result = await tool.invoke({"value": 2, "sensitive": True})
        assert isinstance(result, ApprovalRequired)

    async def test_unparseable_args_reach_inner_tool(self):
        calls = []
        tool = with_approval(_echo_tool(calls), _ECHO_REGISTRATION, ToolContext())
        with pytest.raises(ToolInputParsingError):
            await tool.invoke({"value": "nope", "sensitive": True})
        assert len(calls) == 1

    def test_no_policy_returns_same_tool(self):
        tool = _echo_tool([])
        registration = ToolRegistration(key="echo", description="", factory=lambda c, d: tool)
        assert with_approval(tool, registration, ToolContext()) is tool


# ── Retry ──


class TestParameterRetry:
    async def test_success_first_try(self):
        calls = []
        tool = with_parameter_retry(_echo_tool(calls))
        result = await tool.invoke({"value": 3})
        assert result.payload == {"value": 3}
        assert len(calls) == 1

    async def test_gives_up_after_max_retries(self):
        calls = []
        tool = with_parameter_retry(_echo_tool(calls))
        with pytest.raises(ToolParameterRetryExceededError) as exc_info:
            await tool.invoke({"value": "bad"})
        assert len(calls) == MAX_PARAMETER_RETRIES + 1
        assert exc_info.value.retries == MAX_PARAMETER_RETRIES
        assert "echo" in str(exc_info.value)

    async def test_recovers_on_later_attempt(self):
        attempts = []

        async def flaky(args):
            attempts.append(args)
            if len(attempts) < 3:
                raise ToolInputParsingError("bad")
            return ToolSuccess({})

        tool = with_parameter_retry(
            AgentTool(name="flaky", description="", args_model=_EchoArgs, invoke=flaky)
        )
        assert isinstance(await tool.invoke({}), ToolSuccess)
        assert len(attempts) == 3

    async def test_other_errors_not_retried(self):
        attempts = []

        async def broken(args):
            attempts.append(args)
            raise RuntimeError("db down")

        tool = with_parameter_retry(
            AgentTool(name="broken", description="", args_model=_EchoArgs, invoke=broken)
        )
        with pytest.raises(RuntimeError):
            await tool.invoke({})
        assert len(attempts) == 1


# ── query_posts ──


class TestQueryPosts:
    async def test_count_hides_protected(self, deps):
        result = await _tools(deps)["query_posts"].invoke({"action": "count"})
        count = result.payload["count"]
        assert count["total"] == 4
        assert count["byStatus"] == {"published": 2, "draft": 1, "archived": 1}
        assert count["protected"] == 0

    async def test_count_with_protected_session(self, deps):
        tool = _tools(deps, include_protected=True)["query_posts"]
        result = await tool.invoke({"action": "count", "includeProtected": True})
        assert result.payload["count"]["total"] == 5
        assert result.payload["count"]["protected"] == 1

    async def test_include_protected_needs_session(self, deps):
        result = await _tools(deps)["query_posts"].invoke({"action": "count", "includeProtected": True})
        assert result.payload["count"]["total"] == 4
        assert result.payload["filters"]["includeProtected"] is False

    async def test_list_filters(self, deps):
        tool = _tools(deps)["query_posts"]
        result = await tool.invoke({"action": "list", "status": "published"})
        items = result.payload["list"]["items"]
        assert [i["id"] for i in items] == ["p1", "p2"]
        assert items[0]["category"]["slug"] == "programming"
        assert [t["slug"] for t in items[0]["tags"]] == ["asyncio", "python"]

        by_tag = await tool.invoke({"action": "list", "tagSlug": "japan"})
        assert [i["id"] for i in by_tag.payload["list"]["items"]] == ["p2"]

        by_search = await tool.invoke({"action": "list", "search": "KYOTO"})
        assert by_search.payload["list"]["total"] == 1

    async def test_list_paging_clamped(self, deps):
        result = await _tools(deps)["query_posts"].invoke({"action": "list", "limit": 500, "offset": 1})
        page = result.payload["list"]
        assert page["limit"] == 50
        assert page["offset"] == 1
        assert page["total"] == 4
        assert len(page["items"]) == 3

    async def test_get_by_slug_without_content(self, deps):
        result = await _tools(deps)["query_posts"].invoke({"action": "get", "slug": "p2"})
        post = result.payload["post"]
        assert post["title"] == "Travel notes from Kyoto"
        assert "content" not in post
        assert "excerpt" in post

    async def test_get_requires_exactly_one_key(self, deps):
        tool = _tools(deps)["query_posts"]
        neither = await tool.invoke({"action": "get"})
        both = await tool.invoke({"action": "get", "postId": "p1", "slug": "p1"})
        assert isinstance(neither, ToolFailure)
        assert isinstance(both, ToolFailure)
        assert "mutually exclusive" in both.error

    async def test_get_protected_hidden(self, deps):
        result = await _tools(deps)["query_posts"].invoke({"action": "get", "postId": "p3"})
        assert isinstance(result, ToolFailure)
        assert result.payload == {"action": "get", "post": None}

    async def test_get_with_content_needs_approval(self, deps):
        args = {"action": "get", "postId": "p1", "includeContent": True}
        result = await _tools(deps)["query_posts"].invoke(args)
        assert isinstance(result, ApprovalRequired)
        assert result.request.tool_name == "query_posts"

        key = build_approval_key("query_posts", args)
        approved = await _tools(deps, approved_tool_keys=frozenset({key}))["query_posts"].invoke(args)
        assert isinstance(approved, ToolSuccess)
        assert approved.payload["post"]["content"].startswith("Python asyncio")
        assert approved.payload["post"]["contentTruncated"] is False

    async def test_content_truncated(self, deps, seeded):
        seeded.upsert_post(make_post("long", "Long post", "y" * 5000))
        args = {"action": "get", "postId": "long", "includeContent": True, "contentMaxChars": 300}
        key = build_approval_key("query_posts", args)
        result = await _tools(deps, approved_tool_keys=frozenset({key}))["query_posts"].invoke(args)
        post = result.payload["post"]
        assert post["content"] == "y" * 300 + TRUNCATION_MARKER
        assert post["contentChars"] == 5000
        assert post["contentTruncated"] is True

    async def test_unknown_field_fails_parsing(self, deps):
        with pytest.raises(ToolParameterRetryExceededError):
            await _tools(deps)["query_posts"].invoke({"action": "list", "bogus": 1})

    async def test_bad_action_needs_no_approval_check(self, deps):
        with pytest.raises(ToolParameterRetryExceededError):
            await _tools(deps)["query_posts"].invoke({"action": "drop", "includeContent": True})


# ── list_taxonomies ──


class TestListTaxonomies:
    async def test_categories_default(self, deps):
        result = await _tools(deps)["list_taxonomies"].invoke({})
        assert result.payload["kind"] == "category"
        items = result.payload["items"]
        assert [i["slug"] for i in items] == ["programming", "travel"]
        assert items[0]["postCount"] == 3

    async def test_tags_query_without_counts(self, deps):
        result = await _tools(deps)["list_taxonomies"].invoke(
            {"kind": "tag", "query": "py", "includePostCount": False}
        )
        assert result.payload["items"] == [{"id": "t1", "name": "Python", "slug": "python"}]
        assert result.payload["total"] == 1

    async def test_category_description_match(self, deps):
        result = await _tools(deps)["list_taxonomies"].invoke({"query": "trips"})
        assert [i["slug"] for i in result.payload["items"]] == ["travel"]

    async def test_limit_clamped(self, deps):
        result = await _tools(deps)["list_taxonomies"].invoke({"kind": "tag", "limit": 0})
        assert result.payload["total"] == 1


# ── search_posts ──


class TestSearchPosts:
    async def test_not_ready(self, deps):
        result = await _tools(deps)["search_posts"].invoke({"query": "asyncio"})
        assert isinstance(result, ToolFailure)
        assert result.error == "Please build the vector index first"
        assert result.payload == {"query": "asyncio", "total": 0, "citations": []}

    async def test_returns_citations(self, deps, index):
        await index.rebuild_all_post_index()
        result = await _tools(deps, rag_top_k=2)["search_posts"].invoke({"query": "python asyncio"})
        assert isinstance(result, ToolSuccess)
        assert result.payload["total"] == len(result.citations)
        assert result.citations[0].post_id == "p1"
        assert all(c.post_id != "p3" for c in result.citations)
        assert result.payload["citations"][0]["url"] == "/posts/p1"

    async def test_top_k_clamped(self, deps, index):
        await index.rebuild_all_post_index()
        result = await _tools(deps)["search_posts"].invoke({"query": "python", "topK": 99})
        assert isinstance(result, ToolSuccess)
        assert result.payload["total"] <= 20

    async def test_blank_query_rejected(self, deps):
        with pytest.raises(ToolParameterRetryExceededError):
            await _tools(deps)["search_posts"].invoke({"query": "   "})
