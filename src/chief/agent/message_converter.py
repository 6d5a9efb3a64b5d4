"""
Conversation conversion between provider families and write detection over message history.

Used on failover: when the turn moves to a provider of another format family the whole history is
rewritten.  Tool-call IDs are remapped because providers validate them (some require short
alphanumeric IDs, others reject IDs they did not issue).
"""

import json
import logging
import string
from typing import (
    Any,
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
    Sequence,
)

from chief.agent.mutation import WRITE_TOOL_NAMES
from chief.agent.providers import format_family
from chief.tools.json_extract import parse_tool_arguments

logger = logging.getLogger(__name__)

_ID_CHARS = string.ascii_letters + string.digits
SHORT_ID_LENGTH = 9


class _IdRemapper:
    """Stable old-ID to new-ID mapping for one conversion pass."""

    def __init__(self, make_id: Callable[[int], str]) -> None:
        self._make_id = make_id
        self._ids: Dict[str, str] = {}
        self._counter = 0

    def fresh(self) -> str:
        new_id = self._make_id(self._counter)
        self._counter += 1
        return new_id

    def __call__(self, old_id: Any) -> str:
        if not old_id:
            return self.fresh()
        key = str(old_id)
        if key not in self._ids:
            self._ids[key] = self.fresh()
        return self._ids[key]


def short_alphanumeric_id(n: int) -> str:
    """Deterministic nine-character alphanumeric ID for counter value *n*."""
    new_id = "c"
    while len(new_id) < SHORT_ID_LENGTH:
        new_id += _ID_CHARS[n % len(_ID_CHARS)]
        n = n // len(_ID_CHARS) + len(new_id)
    return new_id


def _dumps(value: Any) -> str:
    return value if isinstance(value, str) else json.dumps(value, ensure_ascii=False, default=str)


# ---------------------------------------------------------------------------
# Cross-family conversion
# ---------------------------------------------------------------------------
def _anthropic_to_openai(messages: Sequence[Mapping[str, Any]]) -> List[Dict[str, Any]]:
    remap = _IdRemapper(short_alphanumeric_id)
    converted: List[Dict[str, Any]] = []
    for message in messages:
        role, content = message.get("role"), message.get("content")
        if not isinstance(content, list):
            converted.append({"role": role, "content": "" if content is None else str(content)})
            continue

        if role == "assistant":
            texts = [b.get("text") or "" for b in content if b.get("type") == "text"]
            tool_calls = [
                {
                    "id": remap(b.get("id")),
                    "type": "function",
                    "function": {"name": b.get("name") or "", "arguments": _dumps(b.get("input") or {})},
                }
                for b in content
                if b.get("type") == "tool_use"
            ]
            out: Dict[str, Any] = {"role": "assistant", "content": "\n".join(texts) if texts else None}
            if tool_calls:
                out["tool_calls"] = tool_calls
            converted.append(out)
            continue

        results = [b for b in content if b.get("type") == "tool_result"]
        for block in results:
            converted.append(
                {
                    "role": "tool",
                    "tool_call_id": remap(block.get("tool_use_id")),
                    "content": _dumps(block.get("content") if block.get("content") is not None else ""),
                }
            )
        texts = [b.get("text") or "" for b in content if b.get("type") == "text"]
        if texts or not results:
            converted.append({"role": role, "content": "\n".join(texts)})
    return converted


def _openai_to_anthropic(messages: Sequence[Mapping[str, Any]]) -> List[Dict[str, Any]]:
    remap = _IdRemapper(short_alphanumeric_id)
    converted: List[Dict[str, Any]] = []
    pending_results: List[Dict[str, Any]] = []

    def _flush_results() -> None:
        if pending_results:
            converted.append({"role": "user", "content": list(pending_results)})
            pending_results.clear()

    for message in messages:
        role = message.get("role")
        if role == "tool":
            pending_results.append(
                {
                    "type": "tool_result",
                    "tool_use_id": remap(message.get("tool_call_id")),
                    "content": _dumps(message.get("content") if message.get("content") is not None else ""),
                }
            )
            continue
        _flush_results()

        if role == "assistant":
            blocks: List[Dict[str, Any]] = []
            if message.get("content"):
                blocks.append({"type": "text", "text": str(message["content"])})
            for call in message.get("tool_calls") or []:
                function = call.get("function") or {}
                blocks.append(
                    {
                        "type": "tool_use",
                        "id": remap(call.get("id")),
                        "name": function.get("name") or "",
                        "input": parse_tool_arguments(function.get("arguments") or "{}"),
                    }
                )
            converted.append({"role": "assistant", "content": blocks})
        else:
            converted.append({"role": role, "content": message.get("content") or ""})
    _flush_results()
    return converted


def _renumber_openai(messages: Sequence[Mapping[str, Any]]) -> List[Dict[str, Any]]:
    remap = _IdRemapper(lambda n: f"call_{n}")
    converted: List[Dict[str, Any]] = []
    for message in messages:
        out = dict(message)
        if out.get("role") == "assistant" and "tool_calls" in out:
            if out["tool_calls"]:
                out["tool_calls"] = [{**call, "id": remap(call.get("id"))} for call in out["tool_calls"]]
            else:
                del out["tool_calls"]
        elif out.get("role") == "tool":
            out["tool_call_id"] = remap(out.get("tool_call_id"))
        converted.append(out)
    return converted


def convert_messages_for_provider(
    messages: Sequence[Mapping[str, Any]],
    source: str,
    target: str,
) -> List[Dict[str, Any]]:
    """
    Rewrite *messages* produced for *source* so that *target* accepts them.

    Parameters
    ----------
    messages:
        Conversation history in *source*'s format.
    source, target:
        Provider names (anthropic, openai, gemini, mistral).

    Returns
    -------
    list
        A new list; the input is never mutated.  Same provider yields shallow copies, providers of
        the same openai family get ``call_N`` IDs, and a family change rebuilds every message.
    """
    if source == target:
        return [dict(m) for m in messages]
    source_family, target_family = format_family(source), format_family(target)
    logger.debug("Converting %d messages %s -> %s", len(messages), source, target)
    if source_family == target_family:
        if target_family == "openai":
            return _renumber_openai(messages)
        return [dict(m) for m in messages]
    if source_family == "anthropic":
        return _anthropic_to_openai(messages)
    return _openai_to_anthropic(messages)


# ---------------------------------------------------------------------------
# Write detection
# ---------------------------------------------------------------------------
def _tool_calls_in(message: Mapping[str, Any]):
    """Yield ``(id, name, args)`` for every tool call an assistant message carries, in either format."""
    content = message.get("content")
    if isinstance(content, list):
        for block in content:
            if isinstance(block, Mapping) and block.get("type") == "tool_use":
                yield block.get("id"), block.get("name"), block.get("input") or {}
    for call in message.get("tool_calls") or []:
        function = call.get("function") or {}
        raw_args = function.get("arguments", call.get("arguments"))
        yield call.get("id"), function.get("name") or call.get("name"), parse_tool_arguments(raw_args or "{}")


def _tool_results_in(message: Mapping[str, Any]):
    """Yield ``(call_id, content)`` for every tool result a message carries, in either format."""
    if message.get("role") == "tool":
        yield message.get("tool_call_id"), message.get("content")
        return
    content = message.get("content")
    if message.get("role") == "user" and isinstance(content, list):
        for block in content:
            if isinstance(block, Mapping) and block.get("type") == "tool_result":
                yield block.get("tool_use_id"), block.get("content")


def _is_failed_result(raw: Any) -> bool:
    payload = _parse_payload(raw)
    if payload is None:
        return False
    error = payload.get("error")
    if isinstance(error, str) and error.strip():
        return True
    return payload.get("success") is False or payload.get("successful") is False


def detect_successful_write_tool_calls_in_messages(
    messages: Sequence[Mapping[str, Any]],
    write_tool_names: frozenset[str] = WRITE_TOOL_NAMES,
) -> List[Dict[str, Any]]:
    """
    Write tool calls in *messages* whose result came back without an error.

    A call only counts once its result is seen; a result with a non-empty ``error`` or with
    ``success``/``successful`` set to ``False`` is a failure.  Results that are not JSON objects
    (plain text, fenced or truncated output) count as success.  Each entry is
    ``{"name", "args", "fingerprint"}``; the fingerprint identifies a write so a failover provider
    can be told not to repeat it.
    """
    calls_by_id: Dict[str, tuple] = {}
    writes = []
    for message in messages:
        if message.get("role") == "assistant":
            for call_id, name, args in _tool_calls_in(message):
                call_id, name = str(call_id or "").strip(), str(name or "").strip()
                if call_id and name:
                    calls_by_id[call_id] = (name, args)
        for call_id, content in _tool_results_in(message):
            call = calls_by_id.get(str(call_id or "").strip())
            if call is None or call[0] not in write_tool_names or _is_failed_result(content):
                continue
            name, args = call
            fingerprint = f"{name}::{json.dumps(args, sort_keys=True, ensure_ascii=False, default=str)}"
            writes.append({"name": name, "args": args, "fingerprint": fingerprint})
    return writes


def _parse_payload(raw: Any) -> Optional[Mapping[str, Any]]:
    if isinstance(raw, Mapping):
        return raw
    if not isinstance(raw, str):
        return None
    try:
        parsed = json.loads(raw)
    except ValueError:
        return None
    return parsed if isinstance(parsed, Mapping) else None


def detect_written_blocks_in_messages(messages: Sequence[Mapping[str, Any]]) -> List[Dict[str, Any]]:
    """
    Blocks created by successful write results, as ``{"uids", "parent"}`` entries.

    Results that were fenced or truncated are not valid JSON and are skipped.
    """
    written = []
    for message in messages:
        for _call_id, raw in _tool_results_in(message):
            payload = _parse_payload(raw)
            if not payload or payload.get("success") is not True:
                continue
            uids = payload.get("created_uids") or payload.get("uids")
            if not isinstance(uids, list) or not uids:
                continue
            parent = payload.get("parent_uid")
            results = payload.get("results")
            if not parent and isinstance(results, list) and results and isinstance(results[0], Mapping):
                parent = results[0].get("parent_uid")
            written.append({"uids": list(uids), "parent": parent})
    return written
