"""
Mutation classification, approval keys and Composio argument helpers.

Tool names from MCP servers and extensions are usually ``snake_case``, so the read-only heuristics
match tokens between non-alphanumeric boundaries rather than ``\\b`` (which treats ``_`` as part of
a word and would miss ``zotero_get_collections``).
"""

import json
import logging
import re
from typing import (
    Any,
    Callable,
    Dict,
    FrozenSet,
    Iterable,
    List,
    Mapping,
    Optional,
)

from chief.core.errors import MalformedArgumentError
from chief.core.schema import ToolDescriptor
from chief.tools import ToolRegistry

logger = logging.getLogger(__name__)

COMPOSIO_MULTI_EXECUTE_TOOL = "COMPOSIO_MULTI_EXECUTE_TOOL"
LOCAL_MCP_EXECUTE = "LOCAL_MCP_EXECUTE"
LOCAL_MCP_ROUTE = "LOCAL_MCP_ROUTE"

# ---------------------------------------------------------------------------
# Token tables
# ---------------------------------------------------------------------------
READ_ONLY_TOKENS = ("GET", "LIST", "SEARCH", "FETCH", "STATUS", "CHECK", "READ", "QUERY", "FIND", "DESCRIBE")
READ_ONLY_TOKENS_SHORT = ("GET", "LIST", "SEARCH", "FETCH", "STATUS", "CHECK")
SENSITIVE_TOKENS = (
    "CREATE",
    "MODIFY",
    "UPDATE",
    "DELETE",
    "REMOVE",
    "SEND",
    "POST",
    "WRITE",
    "MUTATE",
    "DISCONNECT",
    "CONNECT",
    "EXECUTE",
)
SLUG_MUTATING_TOKENS = (
    "DELETE",
    "REMOVE",
    "SEND",
    "CREATE",
    "UPDATE",
    "MODIFY",
    "WRITE",
    "POST",
    "TRASH",
    "MOVE",
    "EXECUTE",
)
SLUG_READ_TOKENS = (
    "GET",
    "LIST",
    "SEARCH",
    "FIND",
    "FETCH",
    "READ",
    "QUERY",
    "LOOKUP",
    "RETRIEVE",
    "VIEW",
    "DESCRIBE",
    "DETAILS",
    "SHOW",
)
SAFE_MANAGE_CONNECTION_ACTIONS = frozenset({"list", "status", "check", "get"})


def _token_pattern(tokens: Iterable[str]) -> re.Pattern:
    return re.compile(rf"(?:^|[^a-zA-Z0-9])({'|'.join(tokens)})(?:[^a-zA-Z0-9]|$)", re.IGNORECASE)


READ_ONLY_TOKEN_PATTERN = _token_pattern(READ_ONLY_TOKENS)
READ_ONLY_TOKEN_PATTERN_SHORT = _token_pattern(READ_ONLY_TOKENS_SHORT)

# ---------------------------------------------------------------------------
# Allowlists
# ---------------------------------------------------------------------------
COMPOSIO_SAFE_MULTI_EXECUTE_SLUG_ALLOWLIST: FrozenSet[str] = frozenset(
    {
        "GOOGLECALENDAR_EVENTS_LIST",
        "GOOGLECALENDAR_CALENDARS_LIST",
        "GMAIL_FETCH_EMAILS",
        "GMAIL_DELETE_MESSAGE",
        "GMAIL_TRASH_MESSAGE",
        "GMAIL_DELETE_EMAIL",
        "GMAIL_GET_PROFILE",
        "GMAIL_LIST_LABELS",
        "GMAIL_GET_LABEL",
        "TODOIST_GET_ALL_PROJECTS",
        "TODOIST_GET_ACTIVE_TASKS",
    }
)
COMPOSIO_SLUG_ALIAS_BY_TOKEN: Dict[str, str] = {"GMAILGETEVENTS": "GMAIL_FETCH_EMAILS"}

INBOX_READ_ONLY_TOOL_ALLOWLIST: FrozenSet[str] = frozenset(
    {
        "roam_search",
        "roam_search_todos",
        "roam_find_todos",
        "roam_get_page",
        "roam_get_daily_page",
        "roam_get_block_children",
        "roam_get_block_context",
        "roam_get_page_metadata",
        "roam_get_recent_changes",
        "roam_get_backlinks",
        "roam_link_suggestions",
        "cos_get_skill",
        "cos_get_current_time",
        LOCAL_MCP_ROUTE,
    }
)

WRITE_TOOL_NAMES: FrozenSet[str] = frozenset(
    {
        "roam_create_block",
        "roam_create_blocks",
        "roam_batch_write",
        "roam_update_block",
        "roam_delete_block",
        "roam_move_block",
        "roam_create_todo",
        "roam_modify_todo",
        "cos_update_memory",
        "cos_write_draft_skill",
    }
)

# First write to a page needs consent; later writes to the same page within the TTL do not.
SCOPED_PAGE_APPROVAL_TOOLS: FrozenSet[str] = frozenset({"roam_create_block", "roam_create_blocks", "roam_batch_write"})

COMPOSIO_SLUG_PATTERN = re.compile(r"^[A-Z][A-Z0-9]*_[A-Z0-9_]+$")
KEY_PARAM_PATTERN = re.compile(r"(?:_key|_id|Key|Id)$", re.IGNORECASE)


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------
def is_likely_read_only_tool_slug(slug: Any) -> bool:
    """A Composio slug is read-only when it has a read token and no mutating token."""
    upper = str(slug or "").upper()
    if not upper:
        return False
    if any(token in upper for token in SLUG_MUTATING_TOKENS):
        return False
    return any(token in upper for token in SLUG_READ_TOKENS)


def _explicit_flag(tool: Any) -> Optional[bool]:
    if tool is None:
        return None
    flag = tool.get("is_mutating") if isinstance(tool, Mapping) else getattr(tool, "is_mutating", None)
    return flag if isinstance(flag, bool) else None


def _multi_execute_tools(args: Any) -> List[Any]:
    tools = args.get("tools") if isinstance(args, Mapping) else None
    return tools if isinstance(tools, list) else []


def is_potentially_mutating_tool(
    name: Any,
    args: Any = None,
    tool: Any = None,
    registry: ToolRegistry | None = None,
) -> bool:
    """
    Decide whether a call may change state and therefore needs approval.

    Priority: an explicit ``is_mutating`` on the resolved tool, then meta-tool argument inspection
    (``MANAGE_CONNECTIONS``, ``COMPOSIO_MULTI_EXECUTE_TOOL``, ``LOCAL_MCP_EXECUTE``), then token
    heuristics for extension and local MCP tools, and finally a sensitive-token check for anything
    unknown.
    """
    upper = str(name or "").upper()
    if not upper:
        return False

    if tool is None and registry is not None:
        tool = registry.resolve(str(name))
    flag = _explicit_flag(tool)
    if flag is not None:
        return flag

    if "MANAGE_CONNECTIONS" in upper:
        action = str((args or {}).get("action") or "").lower() if isinstance(args, Mapping) else ""
        return action not in SAFE_MANAGE_CONNECTION_ACTIONS

    if upper == COMPOSIO_MULTI_EXECUTE_TOOL:
        tools = _multi_execute_tools(args)
        if not tools:
            return True
        return not all(
            is_likely_read_only_tool_slug(t.get("tool_slug") if isinstance(t, Mapping) else None) for t in tools
        )

    if upper == LOCAL_MCP_EXECUTE:
        inner_name = str((args or {}).get("tool_name") or "") if isinstance(args, Mapping) else ""
        if not inner_name:
            return True
        inner = registry.find_local_mcp(inner_name) if registry is not None else None
        inner_flag = _explicit_flag(inner)
        if inner_flag is not None:
            return inner_flag
        return not READ_ONLY_TOKEN_PATTERN.search(inner_name)

    if registry is not None:
        if registry.is_extension_tool(upper):
            return not READ_ONLY_TOKEN_PATTERN_SHORT.search(upper)
        if registry.is_local_mcp_tool(upper):
            return not READ_ONLY_TOKEN_PATTERN.search(upper)

    return any(token in upper for token in SENSITIVE_TOKENS)


def get_tool_approval_key(name: str, args: Any) -> str:
    """
    Key approvals on the inner tool for meta tools.

    Approving ``GMAIL_SEND_EMAIL`` through the multi-execute tool must not silently approve
    ``GOOGLECALENDAR_DELETE_EVENT``.
    """
    if name == COMPOSIO_MULTI_EXECUTE_TOOL:
        slugs = sorted(
            {
                str(t.get("tool_slug"))
                for t in _multi_execute_tools(args)
                if isinstance(t, Mapping) and t.get("tool_slug")
            }
        )
        return f"{name}::{','.join(slugs)}"
    if name == LOCAL_MCP_EXECUTE:
        inner = (args or {}).get("tool_name") if isinstance(args, Mapping) else None
        return f"{name}::{inner or ''}"
    return name


def get_unknown_multi_execute_slugs(args: Any, allowlist: Iterable[str]) -> List[str]:
    allowed = {slug.upper() for slug in allowlist}
    slugs = []
    for tool in _multi_execute_tools(args):
        slug = str((tool.get("tool_slug") if isinstance(tool, Mapping) else "") or "").upper().strip()
        if slug and slug not in allowed:
            slugs.append(slug)
    return slugs


def find_closest_tool_name(query: Any, known_names: Iterable[str]) -> Optional[str]:
    """
    Suggest the known name sharing the most ``_``-separated words with *query*.

    Ties go to the candidate whose length is closest to the query.  At least two shared words are
    required, otherwise ``None``.
    """
    names = list(known_names or [])
    if not query or not names:
        return None
    query = str(query)
    query_words = [w for w in query.lower().split("_") if w]
    best_name: Optional[str] = None
    best_score = 0
    for candidate in names:
        candidate_words = [w for w in candidate.lower().split("_") if w]
        shared = sum(1 for word in query_words if word in candidate_words)
        if shared > best_score or (
            shared == best_score
            and best_name is not None
            and abs(len(candidate) - len(query)) < abs(len(best_name) - len(query))
        ):
            best_score = shared
            best_name = candidate
    return best_name if best_score >= 2 else None


def extract_target_page_uids(
    name: str,
    args: Any,
    resolve_page_uid: Callable[[str], str] | None = None,
) -> List[str]:
    """
    Page UIDs a block-creation call will write to.

    ``roam_create_blocks`` may carry ``batches`` with their own ``parent_uid``; the top-level
    ``parent_uid`` is included as well.  Block UIDs are mapped to their page through
    *resolve_page_uid* when the host provides one.
    """
    resolve = resolve_page_uid or (lambda uid: uid)
    args = args if isinstance(args, Mapping) else {}
    parent_uid = str(args.get("parent_uid") or "").strip()
    if name == "roam_create_blocks" and isinstance(args.get("batches"), list):
        uids: Dict[str, None] = {}
        for batch in args["batches"]:
            batch_uid = str((batch.get("parent_uid") if isinstance(batch, Mapping) else "") or "").strip()
            if batch_uid:
                uids[resolve(batch_uid) or batch_uid] = None
        if parent_uid:
            uids[resolve(parent_uid) or parent_uid] = None
        return list(uids)
    if parent_uid:
        return [resolve(parent_uid) or parent_uid]
    return []


def check_key_parameters(tool: ToolDescriptor, inner_args: Mapping[str, Any]) -> None:
    """
    Reject path-like or display-name values passed to identifier parameters.

    Raises
    ------
    MalformedArgumentError
        With the model-facing guidance message for the first offending parameter.
    """
    properties = (tool.input_schema or {}).get("properties") or {}
    for param in properties:
        if not KEY_PARAM_PATTERN.search(param):
            continue
        value = inner_args.get(param)
        if not isinstance(value, str):
            continue
        if "/" in value:
            kind, noun = "a path", "a path"
        elif " " in value:
            kind, noun = "a display name", "a name"
        else:
            continue
        logger.debug("Rejected %s key: %s=%r", kind, param, value)
        raise MalformedArgumentError(
            param,
            f'Parameter "{param}" received "{value}" which looks like {kind}. '
            f'This parameter expects a single alphanumeric identifier (e.g. "NADHRMVD"), not {noun}. '
            f"Check the collection tree or conversation context [Key reference: ...] for the correct key.",
        )


# ---------------------------------------------------------------------------
# Composio argument helpers
# ---------------------------------------------------------------------------
_META_KEYS = frozenset({"tool_slug", "slug", "arguments", "parameters", "params", "toolkit"})
_SCHEMA_SHAPE_KEYS = frozenset({"type", "description", "examples", "items", "properties", "required", "default", "enum"})
RESULTS_FLOOR = 10
_RESULTS_FLOOR_KEYS = ("max_results", "maxResults", "limit", "page_size", "pageSize")


def _slug_token(value: str) -> str:
    return re.sub(r"[^A-Z0-9]", "", value.upper())


def canonicalise_composio_tool_slug(
    slug: Any,
    known_slugs: Iterable[str] = (),
    aliases: Mapping[str, str] = COMPOSIO_SLUG_ALIAS_BY_TOKEN,
) -> str:
    """
    Upper-case *slug* and correct it against the known catalogue.

    Aliases win, then an exact known slug, then a known slug in the same toolkit that contains (or
    is contained in) the requested one.
    """
    raw = str(slug or "").strip().upper()
    if not raw:
        return ""
    alias = aliases.get(_slug_token(raw))
    if alias:
        return alias
    known = [s.upper() for s in known_slugs]
    if raw in known:
        return raw
    toolkit = raw.split("_", 1)[0]
    for candidate in known:
        if candidate.split("_", 1)[0] == toolkit and (candidate in raw or raw in candidate):
            logger.debug("Slug corrected: %s -> %s", raw, candidate)
            return candidate
    return raw


def _is_schema_shaped(value: Any) -> bool:
    return isinstance(value, dict) and bool(value) and all(key in _SCHEMA_SHAPE_KEYS for key in value)


def normalise_composio_multi_execute_args(args: Any, known_slugs: Iterable[str] = ()) -> Dict[str, Any]:
    """
    Fold the loose shapes models produce into ``{"tools": [{"tool_slug", "arguments"}]}``.

    Accepts a top-level ``tool_slug``/``slug``, ``params``/``parameters`` aliases for
    ``arguments`` and stray argument keys next to the slug.  Values that look like copied schema
    fragments are dropped, and tiny page sizes are raised to :data:`RESULTS_FLOOR`.
    """
    base: Dict[str, Any] = dict(args) if isinstance(args, Mapping) else {}
    tools = base.get("tools")
    if not isinstance(tools, list) or not tools:
        top_slug = base.get("tool_slug") or base.get("slug")
        if not top_slug:
            return base
        session_keys = ("session_id", "session")
        tools = [{key: value for key, value in base.items() if key != "tools" and key not in session_keys}]
        base = {key: value for key, value in base.items() if key in session_keys}
    known = list(known_slugs)

    normalised = []
    for tool in tools:
        if not isinstance(tool, Mapping):
            normalised.append(tool)
            continue
        raw_slug = tool.get("tool_slug") or tool.get("slug")
        explicit = tool.get("arguments") if isinstance(tool.get("arguments"), dict) else {}
        alternate = next(
            (tool[key] for key in ("parameters", "params") if isinstance(tool.get(key), dict)),
            {},
        )
        loose = {
            key: value
            for key, value in tool.items()
            if key not in _META_KEYS and not _is_schema_shaped(value)
        }
        merged = {**loose, **alternate, **explicit}
        for key in _RESULTS_FLOOR_KEYS:
            if key in merged:
                try:
                    value = float(merged[key])
                except (TypeError, ValueError):
                    break
                if value < RESULTS_FLOOR:
                    logger.debug("Raising %s from %s to %d", key, merged[key], RESULTS_FLOOR)
                    merged[key] = RESULTS_FLOOR
                break
        normalised.append(
            {
                "tool_slug": canonicalise_composio_tool_slug(raw_slug, known) or raw_slug,
                "arguments": merged,
            }
        )
    base["tools"] = normalised
    return base


def extract_composio_session_id(result: Any) -> str:
    """Session id from a Composio result, either top level or inside the first text block."""
    if not isinstance(result, Mapping):
        return ""
    session = result.get("session")
    direct = str(result.get("session_id") or (session.get("id") if isinstance(session, Mapping) else "") or "")
    if direct.strip():
        return direct.strip()
    content = result.get("content")
    text = content[0].get("text") if isinstance(content, list) and content and isinstance(content[0], Mapping) else None
    if not isinstance(text, str):
        return ""
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        return ""
    if not isinstance(parsed, Mapping):
        return ""
    session = parsed.get("session")
    return str(parsed.get("session_id") or (session.get("id") if isinstance(session, Mapping) else "") or "").strip()


def with_composio_session_args(name: Any, args: Any, session_id: Any) -> Dict[str, Any]:
    """Attach ``session_id`` and ``session.id`` to ``COMPOSIO_*`` calls that lack them."""
    session_id = str(session_id or "").strip()
    if not str(name or "").upper().startswith("COMPOSIO_") or not session_id:
        return args if isinstance(args, dict) else {}
    result = dict(args) if isinstance(args, Mapping) else {}
    if not str(result.get("session_id") or "").strip():
        result["session_id"] = session_id
    existing = result.get("session") if isinstance(result.get("session"), Mapping) else {}
    if not str(existing.get("id") or "").strip():
        result["session"] = {**existing, "id": session_id}
    return result
