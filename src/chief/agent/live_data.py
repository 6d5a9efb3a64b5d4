"""
Prompt-intent heuristics and external-data classification.

The live-data guard decides whether a prompt is asking about data held in an external system
(mail, calendars, MCP servers, ...).  Such turns must be answered from tool results, never from the
model's memory, and their tool results are fenced as untrusted content.
"""

import logging
import re
from typing import (
    Any,
    Dict,
    Iterable,
    List,
    Literal,
    Mapping,
    Optional,
)

from chief.agent.mutation import COMPOSIO_SLUG_PATTERN
from chief.tools import ToolRegistry

logger = logging.getLogger(__name__)

PromptIntent = Literal["memory_edit", "meta", "external_data", "general"]

# ---------------------------------------------------------------------------
# Word tables
# ---------------------------------------------------------------------------
_EXCLUSIONS = [
    # skill edits mention calendars and mail without reading them
    re.compile(r"\b(update|edit|improve|optimise|optimize|change|modify)\b.*\bskill\b"),
    re.compile(r"\bskill\b.*\b(update|edit|improve|optimise|optimize|change|modify)\b"),
    # capability questions
    re.compile(r"\bhave access to\b"),
    re.compile(r"\bare you connected to\b"),
    re.compile(r"\b(do i have|do you have|is there|are there)\b.*\btools?\b"),
    re.compile(r"\bwhat (tools?|capabilities|integrations?)\b"),
    # reflective questions about prompting or past turns
    re.compile(
        r"\b(what prompt|how should|how do i|how would|how can i|why did you|what went wrong|what happened|"
        r"could you have|would have helped|should have|better way to|best way to)\b"
    ),
    re.compile(
        r"\b(help|advice|tips?|suggest|recommendation|explain|teach)\b.*"
        r"\b(prompt|phras|ask|request|approach|strateg|technique)\b"
    ),
]

LIVE_DATA_PHRASES = (
    "most recent emails",
    "latest emails",
    "recent emails",
    "my inbox",
    "unread emails",
    "what's on my calendar",
    "whats on my calendar",
    "calendar today",
    "calendar tomorrow",
    "upcoming events",
    "my schedule",
    "connected tools",
    "connection status",
    "connected accounts",
)

READ_VERBS = (
    "what", "show", "list", "summar", "find", "fetch", "get", "check", "search", "do", "does", "have",
    "has", "any", "tell", "how", "which", "who", "where",
)
ACTION_VERBS = (
    "run", "execute", "call", "use", "delete", "remove", "archive", "trash", "reply", "send", "compose",
    "draft", "mark", "move", "update", "edit", "cancel", "reschedule", "connect", "disconnect", "create",
    "add",
)
LIVE_DATA_NOUNS = (
    "email", "emails", "inbox", "calendar", "event", "events", "schedule", "message", "messages",
    "connection", "connections", "account", "accounts", "slack", "gmail", "jira", "github",
    # generic nouns for data living in external systems
    "collection", "collections", "item", "items", "library", "libraries", "repo", "repository",
    "repositories", "issue", "issues", "paper", "papers", "article", "articles", "document",
    "documents", "file", "files", "folder", "folders", "project", "projects", "commit", "commits",
    "branch", "branches", "citation", "citations", "reference", "references",
)

CONNECTION_STATUS_PHRASES = (
    "connected tools",
    "tool connections",
    "active connections",
    "connected apps",
    "composio apps",
    "apps from composio",
    "apps in composio",
    "apps do i have from composio",
    "what composio apps",
    "what apps do i have",
    "what is connected",
    "what's connected",
    "what tools are connected",
    "summarise my current connected tools",
    "summarize my current connected tools",
    "list my connected tools",
    "show my connected tools",
    "connection status",
)

EXTERNAL_DATA_TOOL_NAMES = frozenset(
    {
        "COS_UPDATE_MEMORY",
        "COS_GET_SKILL",
        "ROAM_SEARCH",
        "ROAM_GET_PAGE",
        "ROAM_GET_DAILY_PAGE",
        "ROAM_GET_BLOCK_CHILDREN",
        "ROAM_GET_BLOCK_CONTEXT",
        "ROAM_GET_PAGE_METADATA",
        "ROAM_GET_RECENT_CHANGES",
        "ROAM_GET_BACKLINKS",
        "ROAM_SEARCH_TODOS",
        "ROAM_LINK_SUGGESTIONS",
        "ROAM_BT_SEARCH_TASKS",
        "ROAM_SEARCH_BLOCKS",
        "LOCAL_MCP_ROUTE",
        "LOCAL_MCP_EXECUTE",
    }
)
EXTERNAL_DATA_TOOL_PREFIXES = ("COMPOSIO_", "COS_CRON_")


def _has_word(text: str, word: str) -> bool:
    return re.search(rf"\b{re.escape(word)}\b", text) is not None


def server_name_nouns(server_names: Iterable[str]) -> List[str]:
    """Each server name plus its ``-``/``_`` separated parts longer than two characters."""
    nouns: List[str] = []
    for name in server_names:
        lower = str(name or "").lower()
        if not lower:
            continue
        nouns.append(lower)
        nouns.extend(part for part in re.split(r"[-_]", lower) if len(part) > 2 and part not in nouns)
    return nouns


# ---------------------------------------------------------------------------
# Intent detection
# ---------------------------------------------------------------------------
def is_likely_live_data_read_intent(
    prompt: Any,
    mcp_server_names: Iterable[str] = (),
    session_used_local_mcp: bool = False,
) -> bool:
    """
    True when *prompt* most likely asks about data in an external system.

    Requires a live-data noun plus a read or action verb, unless a known phrase matches first.
    Once the session has used a local MCP server, any substantive follow-up counts.
    """
    text = str(prompt or "").lower().strip()
    if not text:
        return False
    if any(pattern.search(text) for pattern in _EXCLUSIONS):
        return False
    if any(phrase in text for phrase in LIVE_DATA_PHRASES):
        return True

    nouns = list(LIVE_DATA_NOUNS) + server_name_nouns(mcp_server_names)
    if session_used_local_mcp and (len(text) > 30 or "?" in text):
        return True
    has_noun = any(_has_word(text, noun) for noun in nouns)
    has_verb = any(_has_word(text, verb) for verb in READ_VERBS) or any(_has_word(text, verb) for verb in ACTION_VERBS)
    return has_noun and has_verb


def is_connection_status_intent(prompt: Any) -> bool:
    text = str(prompt or "").lower()
    return bool(text) and any(phrase in text for phrase in CONNECTION_STATUS_PHRASES)


_MEMORY_SAVE_PATTERNS = [
    (re.compile(r"^(?:note|capture|idea)\s*[:\-]\s*(.+)$", re.I), "inbox"),
    (re.compile(r"^(?:save|remember|record)\s+(?:this\s+)?idea\s*[:\-]\s*(.+)$", re.I), "inbox"),
    (re.compile(r"^(?:save|remember|record)\s+(?:this\s+)?note\s*[:\-]\s*(.+)$", re.I), "inbox"),
    (re.compile(r"^(?:remember|save|note|record)\s+(?:this\s+)?lesson\s*[:\-]\s*(.+)$", re.I), "lessons"),
    (re.compile(r"^(?:remember|save|note|record)\s+(?:this\s+)?decision\s*[:\-]\s*(.+)$", re.I), "decisions"),
    (
        re.compile(r"^(?:remember|save|note|record)\s+(?:this\s+)?project(?:\s+update)?\s*[:\-]\s*(.+)$", re.I),
        "projects",
    ),
    (re.compile(r"^(?:remember|save|note|record)\s+(?:this|that)\s*[:\-]\s*(.+)$", re.I), "memory"),
]


def parse_memory_save_intent(prompt: Any) -> Optional[Dict[str, str]]:
    """
    Recognise ``note: ...``, ``remember this lesson: ...`` and similar save commands.

    Returns ``{"page", "content"}`` where page is one of inbox, lessons, decisions, projects or
    memory; ``None`` when the prompt is not a save command or the content is empty.
    """
    text = str(prompt or "").strip()
    if not text:
        return None
    for pattern, page in _MEMORY_SAVE_PATTERNS:
        match = pattern.match(text)
        if match:
            content = match.group(1).strip()
            return {"page": page, "content": content} if content else None
    return None


def classify_prompt_intent(
    prompt: Any,
    mcp_server_names: Iterable[str] = (),
    session_used_local_mcp: bool = False,
) -> PromptIntent:
    """Coarse intent used to pick the turn's guard rails."""
    if parse_memory_save_intent(prompt) is not None:
        return "memory_edit"
    if is_connection_status_intent(prompt):
        return "meta"
    if is_likely_live_data_read_intent(prompt, mcp_server_names, session_used_local_mcp):
        return "external_data"
    return "general"


# ---------------------------------------------------------------------------
# Tool-call classification
# ---------------------------------------------------------------------------
def is_external_data_tool_call(name: Any, registry: ToolRegistry | None = None) -> bool:
    """Whether a tool's result comes from outside the user's graph and must be fenced."""
    name = str(name or "")
    if not name:
        return False
    upper = name.upper()
    if upper.startswith(EXTERNAL_DATA_TOOL_PREFIXES) or upper in EXTERNAL_DATA_TOOL_NAMES:
        return True
    if registry is None:
        return False
    if registry.find_local_mcp(name) is not None:
        return True
    if any(tool.name == name for tool in registry.extension):
        return True
    return bool(COMPOSIO_SLUG_PATTERN.match(upper) and registry.get_tool_schema(upper))


def is_successful_external_tool_result(result: Any) -> bool:
    if result is None:
        return False
    if not isinstance(result, Mapping):
        return True
    error = result.get("error")
    if isinstance(error, str):
        return not error.strip()
    return not error
