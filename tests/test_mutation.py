"""Tests for mutation classification and the Composio argument helpers."""

import json

import pytest

from chief.agent.mutation import (
    RESULTS_FLOOR,
    canonicalise_composio_tool_slug,
    check_key_parameters,
    extract_composio_session_id,
    extract_target_page_uids,
    find_closest_tool_name,
    get_tool_approval_key,
    get_unknown_multi_execute_slugs,
    is_likely_read_only_tool_slug,
    is_potentially_mutating_tool,
    normalise_composio_multi_execute_args,
    with_composio_session_args,
)
from chief.core.errors import MalformedArgumentError
from chief.core.schema import ToolDescriptor
from chief.tools import ToolRegistry


def _multi(*slugs: str) -> dict:
    return {"tools": [{"tool_slug": slug, "arguments": {}} for slug in slugs]}


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------
def test_explicit_flag_wins_over_heuristics() -> None:
    """A declared is_mutating is final, whatever the name suggests."""

    assert is_potentially_mutating_tool("roam_delete_block", {}, ToolDescriptor(name="x", is_mutating=False)) is False
    assert is_potentially_mutating_tool("roam_search", {}, ToolDescriptor(name="x", is_mutating=True)) is True
    assert is_potentially_mutating_tool("roam_delete_block", {}, {"is_mutating": False}) is False


def test_explicit_flag_is_found_through_registry() -> None:
    """The registry supplies the descriptor when none is passed."""

    registry = ToolRegistry(native=[ToolDescriptor(name="cos_send_digest", is_mutating=False)])
    assert is_potentially_mutating_tool("cos_send_digest", {}, None, registry) is False


def test_unknown_tools_use_sensitive_tokens() -> None:
    assert is_potentially_mutating_tool("GMAIL_SEND_EMAIL") is True
    assert is_potentially_mutating_tool("NOTION_UPDATE_PAGE") is True
    assert is_potentially_mutating_tool("GMAIL_FETCH_EMAILS") is False
    assert is_potentially_mutating_tool("") is False


def test_manage_connections_depends_on_action() -> None:
    assert is_potentially_mutating_tool("COMPOSIO_MANAGE_CONNECTIONS", {"action": "list"}) is False
    assert is_potentially_mutating_tool("COMPOSIO_MANAGE_CONNECTIONS", {"action": "Status"}) is False
    assert is_potentially_mutating_tool("COMPOSIO_MANAGE_CONNECTIONS", {"action": "disconnect"}) is True
    assert is_potentially_mutating_tool("COMPOSIO_MANAGE_CONNECTIONS", {}) is True


def test_multi_execute_inspects_every_slug() -> None:
    """Only a batch made entirely of read-only slugs skips approval."""

    name = "COMPOSIO_MULTI_EXECUTE_TOOL"
    assert is_potentially_mutating_tool(name, _multi("GMAIL_FETCH_EMAILS", "GOOGLECALENDAR_EVENTS_LIST")) is False
    assert is_potentially_mutating_tool(name, _multi("GMAIL_FETCH_EMAILS", "GMAIL_SEND_EMAIL")) is True
    assert is_potentially_mutating_tool(name, {"tools": []}) is True
    assert is_potentially_mutating_tool(name, {}) is True


def test_local_mcp_execute_inspects_inner_tool() -> None:
    registry = ToolRegistry(
        native={},
        local_mcp=[
            ToolDescriptor(name="zotero_add_items", server_name="zotero", is_mutating=False),
            ToolDescriptor(name="zotero_describe_item", server_name="zotero"),
        ],
    )
    name = "LOCAL_MCP_EXECUTE"
    assert is_potentially_mutating_tool(name, {"tool_name": "zotero_add_items"}, None, registry) is False
    assert is_potentially_mutating_tool(name, {"tool_name": "zotero_describe_item"}, None, registry) is False
    assert is_potentially_mutating_tool(name, {"tool_name": "zotero_rename_tag"}, None, registry) is True
    assert is_potentially_mutating_tool(name, {}, None, registry) is True


def test_extension_tools_use_short_read_only_tokens() -> None:
    """Extension tools read with the short token list; local MCP tools with the full one."""

    registry = ToolRegistry(
        native={},
        extension=[
            ToolDescriptor(name="bt_search_tasks", source="extension"),
            ToolDescriptor(name="bt_create_task", source="extension"),
            ToolDescriptor(name="bt_describe_task", source="extension"),
        ],
        local_mcp=[ToolDescriptor(name="gh_describe_repo", server_name="github")],
    )
    assert is_potentially_mutating_tool("bt_search_tasks", {}, None, registry) is False
    assert is_potentially_mutating_tool("bt_create_task", {}, None, registry) is True
    assert is_potentially_mutating_tool("bt_describe_task", {}, None, registry) is True
    assert is_potentially_mutating_tool("gh_describe_repo", {}, None, registry) is False


def test_read_only_slug_heuristic() -> None:
    assert is_likely_read_only_tool_slug("GMAIL_FETCH_EMAILS") is True
    assert is_likely_read_only_tool_slug("GITHUB_LIST_REPOS") is True
    assert is_likely_read_only_tool_slug("GMAIL_TRASH_MESSAGE") is False
    assert is_likely_read_only_tool_slug("GMAIL_SEND_EMAIL") is False
    assert is_likely_read_only_tool_slug("SLACK_ARCHIVE") is False
    assert is_likely_read_only_tool_slug(None) is False


# ---------------------------------------------------------------------------
# Approval keys and lookups
# ---------------------------------------------------------------------------
def test_approval_key_is_scoped_to_inner_tools() -> None:
    """Approving one Composio slug must not approve another."""

    key = get_tool_approval_key("COMPOSIO_MULTI_EXECUTE_TOOL", _multi("GMAIL_SEND_EMAIL", "CAL_DELETE", "GMAIL_SEND_EMAIL"))
    assert key == "COMPOSIO_MULTI_EXECUTE_TOOL::CAL_DELETE,GMAIL_SEND_EMAIL"
    assert get_tool_approval_key("LOCAL_MCP_EXECUTE", {"tool_name": "zotero_add"}) == "LOCAL_MCP_EXECUTE::zotero_add"
    assert get_tool_approval_key("roam_update_block", {"uid": "x"}) == "roam_update_block"


def test_unknown_multi_execute_slugs() -> None:
    args = _multi("gmail_fetch_emails", "SLACK_SEND_MESSAGE", "")
    assert get_unknown_multi_execute_slugs(args, ["GMAIL_FETCH_EMAILS"]) == ["SLACK_SEND_MESSAGE"]


def test_find_closest_tool_name() -> None:
    names = ["zotero_get_collections", "zotero_get_items", "github_list_issues"]
    assert find_closest_tool_name("zotero_get_collection", names) == "zotero_get_collections"
    assert find_closest_tool_name("zotero_search", names) is None
    assert find_closest_tool_name("", names) is None


def test_target_page_uids_for_batches() -> None:
    """Batch parents and the top-level parent are resolved to page UIDs, de-duplicated."""

    pages = {"blk1": "pageA", "blk2": "pageA", "blk3": "pageB"}
    args = {"parent_uid": "blk3", "batches": [{"parent_uid": "blk1"}, {"parent_uid": "blk2"}, {}]}
    assert extract_target_page_uids("roam_create_blocks", args, pages.get) == ["pageA", "pageB"]
    assert extract_target_page_uids("roam_create_block", {"parent_uid": " blk1 "}, pages.get) == ["pageA"]
    assert extract_target_page_uids("roam_create_block", {}) == []


def test_key_parameters_reject_paths_and_names() -> None:
    tool = ToolDescriptor(
        name="zotero_get_items",
        input_schema={"type": "object", "properties": {"collection_key": {"type": "string"}, "query": {}}},
    )
    check_key_parameters(tool, {"collection_key": "NADHRMVD", "query": "a b/c"})

    with pytest.raises(MalformedArgumentError) as exc_info:
        check_key_parameters(tool, {"collection_key": "Research/ML"})
    assert exc_info.value.param == "collection_key"
    assert "looks like a path" in str(exc_info.value)


# ---------------------------------------------------------------------------
# Composio argument helpers
# ---------------------------------------------------------------------------
def test_canonicalise_slug() -> None:
    assert canonicalise_composio_tool_slug("gmail-get-events") == "GMAIL_FETCH_EMAILS"
    assert canonicalise_composio_tool_slug("gmail_fetch_email", ["GMAIL_FETCH_EMAILS"]) == "GMAIL_FETCH_EMAILS"
    assert canonicalise_composio_tool_slug("slack_send", ["GMAIL_SEND_EMAIL"]) == "SLACK_SEND"
    assert canonicalise_composio_tool_slug("") == ""


def test_normalise_top_level_slug() -> None:
    """A flat call is folded into a one-entry batch; session keys stay at the top."""

    args = {"tool_slug": "gmail_fetch_emails", "max_results": 3, "session_id": "s1"}
    result = normalise_composio_multi_execute_args(args, ["GMAIL_FETCH_EMAILS"])
    assert result == {
        "session_id": "s1",
        "tools": [{"tool_slug": "GMAIL_FETCH_EMAILS", "arguments": {"max_results": RESULTS_FLOOR}}],
    }


def test_normalise_argument_aliases_and_schema_fragments() -> None:
    args = {
        "tools": [
            {"slug": "NOTION_SEARCH", "params": {"query": "x"}},
            {"tool_slug": "GITHUB_LIST_ISSUES", "state": "open", "repo": {"type": "string"}},
            {"tool_slug": "TODOIST_GET_ACTIVE_TASKS", "arguments": {"limit": 50}, "parameters": {"limit": 1}},
        ]
    }
    tools = normalise_composio_multi_execute_args(args)["tools"]
    assert tools[0] == {"tool_slug": "NOTION_SEARCH", "arguments": {"query": "x"}}
    assert tools[1] == {"tool_slug": "GITHUB_LIST_ISSUES", "arguments": {"state": "open"}}
    assert tools[2] == {"tool_slug": "TODOIST_GET_ACTIVE_TASKS", "arguments": {"limit": 50}}


def test_normalise_leaves_unrecognised_args() -> None:
    assert normalise_composio_multi_execute_args({"foo": 1}) == {"foo": 1}
    assert normalise_composio_multi_execute_args(None) == {}


def test_extract_composio_session_id() -> None:
    assert extract_composio_session_id({"session_id": " abc "}) == "abc"
    assert extract_composio_session_id({"session": {"id": "def"}}) == "def"
    nested = {"content": [{"text": json.dumps({"session": {"id": "ghi"}})}]}
    assert extract_composio_session_id(nested) == "ghi"
    assert extract_composio_session_id({"content": [{"text": "not json"}]}) == ""
    assert extract_composio_session_id("nope") == ""


def test_with_composio_session_args() -> None:
    result = with_composio_session_args("COMPOSIO_SEARCH_TOOLS", {"query": "x"}, "s1")
    assert result == {"query": "x", "session_id": "s1", "session": {"id": "s1"}}

    kept = with_composio_session_args("COMPOSIO_SEARCH_TOOLS", {"session_id": "mine"}, "s1")
    assert kept["session_id"] == "mine"
    assert kept["session"] == {"id": "s1"}

    assert with_composio_session_args("roam_search", {"q": 1}, "s1") == {"q": 1}
    assert with_composio_session_args("COMPOSIO_SEARCH_TOOLS", {"q": 1}, "") == {"q": 1}
