"""Character-budget enforcement for the agent loop's message list."""

import logging
from typing import (
    Any,
    Dict,
    List,
    Mapping,
)

from chief.config import settings
from chief.tools.json_extract import (
    TRUNCATION_MARKER,
    safe_json_stringify,
)

logger = logging.getLogger(__name__)

MIN_CHARS_PER_TOOL_RESULT = 300
MIN_EFFECTIVE_BUDGET = 10000
_SHRINK_FACTOR = 0.65
_TRIM_PASSES = 6
_BLOCK_MEASURE_CHARS = 20000

OVER_BUDGET_MESSAGE = (
    "I gathered too much tool output to send safely in one request. Please narrow the request "
    "(for example: fewer items or a smaller date range) and retry."
)


def truncate_tool_result_text(text: Any, max_chars: int) -> str:
    """Cut *text* to roughly *max_chars*, keeping at least 120 characters and appending a marker."""
    value = str(text or "")
    if len(value) <= max_chars:
        return value
    safe_chars = max(120, max_chars - len(TRUNCATION_MARKER))
    return value[:safe_chars] + TRUNCATION_MARKER


def approximate_message_chars(message: Mapping[str, Any] | None) -> int:
    """Size estimate for one message: role, content, tool calls and tool-call id."""
    if not isinstance(message, Mapping):
        return 0
    content = message.get("content")
    if isinstance(content, str):
        content_chars = len(content)
    elif isinstance(content, list):
        content_chars = sum(len(safe_json_stringify(block, _BLOCK_MEASURE_CHARS)) for block in content)
    elif content:
        content_chars = len(safe_json_stringify(content, _BLOCK_MEASURE_CHARS))
    else:
        content_chars = 0
    tool_calls = message.get("tool_calls")
    calls_chars = (
        sum(len(safe_json_stringify(call, _BLOCK_MEASURE_CHARS)) for call in tool_calls)
        if isinstance(tool_calls, list)
        else 0
    )
    return len(str(message.get("role") or "")) + content_chars + calls_chars + len(str(message.get("tool_call_id") or ""))


def approximate_messages_chars(messages: List[Mapping[str, Any]]) -> int:
    return sum(approximate_message_chars(m) for m in messages)


def _prune_prefix(messages: List[Dict[str, Any]], budget: int, prunable: int, min_keep: int) -> int:
    sizes = [approximate_message_chars(m) for m in messages]
    total = sum(sizes)
    prunable = min(max(0, prunable), len(messages))
    while len(messages) > min_keep and total > budget and prunable > 0:
        total -= sizes.pop(0)
        messages.pop(0)
        prunable -= 1
    return prunable


def _shrink(text: str) -> str:
    if len(text) <= MIN_CHARS_PER_TOOL_RESULT:
        return text
    return truncate_tool_result_text(text, max(MIN_CHARS_PER_TOOL_RESULT, int(len(text) * _SHRINK_FACTOR)))


def _trim_tool_results(messages: List[Dict[str, Any]], budget: int) -> bool:
    """Shrink tool results by a third per pass, up to six passes, until the list fits."""
    changed = False
    for _ in range(_TRIM_PASSES):
        # block sizes are measured with a cap, so re-measure after every pass
        current = approximate_messages_chars(messages)
        if current <= budget:
            break
        for message in messages:
            if current <= budget:
                break
            if message.get("role") == "tool" and isinstance(message.get("content"), str):
                holders = [message]
            elif message.get("role") == "user" and isinstance(message.get("content"), list):
                holders = [
                    b
                    for b in message["content"]
                    if isinstance(b, dict) and b.get("type") == "tool_result" and isinstance(b.get("content"), str)
                ]
            else:
                continue
            for holder in holders:
                if current <= budget:
                    break
                existing = holder["content"]
                trimmed = _shrink(existing)
                if trimmed != existing:
                    holder["content"] = trimmed
                    current -= max(0, len(existing) - len(trimmed))
                    changed = True
    return changed


def enforce_message_budget(
    messages: List[Dict[str, Any]],
    prunable_prefix_count: int | None = None,
    budget: int | None = None,
    system_overhead_chars: int = 0,
    min_keep: int | None = None,
) -> int:
    """
    Shrink *messages* in place until it fits the character budget.

    The oldest messages in the prunable prefix (prior conversation turns) are dropped first while
    more than ``min_keep`` remain; then tool-result payloads are trimmed.

    Returns
    -------
    int
        The number of prefix messages still prunable.
    """
    base = settings.MAX_AGENT_MESSAGES_CHAR_BUDGET if budget is None else budget
    effective = max(base - system_overhead_chars, MIN_EFFECTIVE_BUDGET)
    keep = settings.MIN_AGENT_MESSAGES_TO_KEEP if min_keep is None else min_keep
    prunable = len(messages) if prunable_prefix_count is None else prunable_prefix_count
    before = len(messages)
    remaining = _prune_prefix(messages, effective, prunable, keep)
    if before != len(messages):
        logger.info("Pruned %d messages to fit the %d-char budget", before - len(messages), effective)
    if approximate_messages_chars(messages) > effective and _trim_tool_results(messages, effective):
        logger.info("Trimmed tool results to fit the %d-char budget", effective)
    return remaining


def is_over_budget(messages: List[Mapping[str, Any]], budget: int | None = None, system_overhead_chars: int = 0) -> bool:
    base = settings.MAX_AGENT_MESSAGES_CHAR_BUDGET if budget is None else budget
    return approximate_messages_chars(messages) > max(base - system_overhead_chars, MIN_EFFECTIVE_BUDGET)
