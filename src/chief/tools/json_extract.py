"""
Tolerant JSON extraction from model output.

Models occasionally wrap their JSON in prose, append a sentence after the closing brace, or
concatenate several argument objects into one slot.  The helpers here walk the raw text with a
brace counter that understands JSON strings, so every balanced ``{...}`` span can be parsed on its
own.
"""

import json
import logging
import re
from typing import (
    Any,
    Dict,
    Iterable,
    List,
    Optional,
    TypedDict,
)

logger = logging.getLogger(__name__)

KEY_REFERENCE_CAP = 50


class JsonSpan(TypedDict):
    """One parsed object and its ``[start, end)`` offsets in the trimmed input."""

    parsed: Any
    start: int
    end: int


# ---------------------------------------------------------------------------
# Small helpers
# ---------------------------------------------------------------------------
def _find_matching_brace(s: str, i: int) -> int:
    """Given ``s[i] == '{'``, return the index just past its matching ``}`` or -1."""
    depth = 0
    in_string = False
    escape = False
    while i < len(s):
        ch = s[i]
        if escape:
            escape = False
        elif ch == "\\":
            escape = True
        elif ch == '"':
            in_string = not in_string
        elif not in_string:
            if ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    return i + 1
        i += 1
    return -1


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def extract_balanced_json_objects(raw: Any) -> List[JsonSpan]:
    """
    Extract every top-level balanced JSON object from *raw*.

    Parameters
    ----------
    raw:
        Arbitrary model output.  Non-string input yields an empty list.

    Returns
    -------
    list of JsonSpan
        One entry per span that parsed as JSON, in order of appearance.  Offsets refer to the
        whitespace-trimmed input.  A balanced span that fails to parse is skipped; an unbalanced
        tail stops the scan.
    """
    if not raw or not isinstance(raw, str):
        return []
    text = raw.strip()
    results: List[JsonSpan] = []
    pos = 0
    while pos < len(text):
        pos = text.find("{", pos)
        if pos < 0:
            break
        end = _find_matching_brace(text, pos)
        if end < 0:
            break  # unbalanced
        try:
            results.append(JsonSpan(parsed=json.loads(text[pos:end]), start=pos, end=end))
        except json.JSONDecodeError:
            logger.debug("Skipping malformed JSON span at %d-%d", pos, end)
        pos = end
    return results


def parse_tool_arguments(raw: Any) -> Dict[str, Any]:
    """
    Decode a tool-call ``arguments`` payload into a dict.

    Strict JSON is tried first; on failure the first balanced object in the text is used, which
    recovers arguments followed by trailing prose.  Anything else yields ``{}``.
    """
    if isinstance(raw, dict):
        return raw
    if not isinstance(raw, str) or not raw.strip():
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        spans = [span for span in extract_balanced_json_objects(raw) if isinstance(span["parsed"], dict)]
        if not spans:
            logger.warning("Could not recover tool arguments from %r", raw[:200])
            return {}
        if len(spans) > 1:
            logger.warning("Tool arguments held %d concatenated objects; using the first", len(spans))
        return spans[0]["parsed"]
    return parsed if isinstance(parsed, dict) else {}


_KEY_PATTERN = re.compile(r"\*{0,2}([^*\n(]+?)\*{0,2}\s*\(Key:\s*([A-Za-z0-9]+)\)")
_ITEM_KEY_PATTERN = re.compile(
    r"\*\*(?:Title|Name):\*\*\s*(.{1,200}?)[\n\r].*?\*\*(?:Item Key|Key):\*\*\s*`?([A-Za-z0-9]+)`?"
)
_LEADING_BULLET = re.compile(r"^[-*\s]+")


def extract_mcp_key_reference(texts: Optional[Iterable[Optional[str]]]) -> str:
    """
    Build a compact ``[Key reference: name → KEY; ...]`` line from MCP tool result texts.

    Two shapes are recognised: ``**Name** (Key: ABC123)`` and a ``**Title:** ...`` line followed
    later by ``**Item Key:** ABC123``.  Entries are de-duplicated on ``name::key`` and capped at
    :data:`KEY_REFERENCE_CAP`.  Returns an empty string when nothing matches.
    """
    if not texts:
        return ""
    entries: List[str] = []
    seen: set[str] = set()

    def _add(name: str, key: str) -> None:
        ident = f"{name}::{key}"
        if name and key and ident not in seen:
            seen.add(ident)
            entries.append(f"{name} → {key}")

    for text in texts:
        if not text or not isinstance(text, str):
            continue
        for match in _KEY_PATTERN.finditer(text):
            _add(_LEADING_BULLET.sub("", match.group(1).strip()), match.group(2))
        for match in _ITEM_KEY_PATTERN.finditer(text):
            _add(match.group(1).strip(), match.group(2))

    if not entries:
        return ""
    return f"[Key reference: {'; '.join(entries[:KEY_REFERENCE_CAP])}]"


TRUNCATION_MARKER = "…[truncated]"


def safe_json_stringify(value: Any, max_chars: int) -> str:
    """Compact JSON for a tool result, cut to *max_chars* with a visible truncation marker."""
    try:
        text = json.dumps(value, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        text = str(value or "")
    return text if len(text) <= max_chars else f"{text[:max_chars]}{TRUNCATION_MARKER}"
