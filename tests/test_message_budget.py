"""Tests for message-list size estimation and budget enforcement."""

from chief.agent.message_budget import (
    approximate_message_chars,
    enforce_message_budget,
    is_over_budget,
    truncate_tool_result_text,
)
from chief.tools.json_extract import TRUNCATION_MARKER


def test_truncate_tool_result_text() -> None:
    assert truncate_tool_result_text("short", 200) == "short"
    assert truncate_tool_result_text(None, 10) == ""

    cut = truncate_tool_result_text("x" * 500, 200)
    assert len(cut) == 200
    assert cut.endswith(TRUNCATION_MARKER)

    # never below 120 characters of payload
    assert len(truncate_tool_result_text("x" * 500, 50)) == 120 + len(TRUNCATION_MARKER)


def test_approximate_message_chars() -> None:
    assert approximate_message_chars({"role": "user", "content": "hello"}) == 9
    assert approximate_message_chars({"role": "tool", "content": "abc", "tool_call_id": "t1"}) == 9
    assert approximate_message_chars(None) == 0
    with_calls = {"role": "assistant", "content": None, "tool_calls": [{"id": "c"}]}
    assert approximate_message_chars(with_calls) == len("assistant") + len('{"id": "c"}')


def test_prefix_pruning_respects_min_keep() -> None:
    """The oldest prunable messages go first until the list fits."""

    messages = [{"role": "user", "content": "y" * 3000} for _ in range(10)]
    remaining = enforce_message_budget(messages, prunable_prefix_count=8, budget=10000, min_keep=2)
    assert len(messages) == 3
    assert remaining == 1


def test_pruning_stops_at_prunable_prefix() -> None:
    messages = [{"role": "user", "content": "y" * 3000} for _ in range(10)]
    remaining = enforce_message_budget(messages, prunable_prefix_count=2, budget=10000, min_keep=2)
    assert len(messages) == 8
    assert remaining == 0


def test_tool_results_are_trimmed() -> None:
    messages = [
        {"role": "user", "content": "q"},
        {"role": "tool", "tool_call_id": "t", "content": "x" * 30000},
    ]
    assert is_over_budget(messages, budget=10000) is True
    enforce_message_budget(messages, budget=10000)
    content = messages[1]["content"]
    assert len(content) <= 10000
    assert content.endswith(TRUNCATION_MARKER)
    assert is_over_budget(messages, budget=10000) is False


def test_anthropic_tool_result_blocks_are_trimmed() -> None:
    messages = [
        {"role": "user", "content": "q"},
        {"role": "user", "content": [{"type": "tool_result", "tool_use_id": "t", "content": "x" * 30000}]},
    ]
    enforce_message_budget(messages, budget=10000)
    assert len(messages[1]["content"][0]["content"]) < 10000
    assert is_over_budget(messages, budget=10000) is False


def test_budget_has_a_floor() -> None:
    """System overhead can never push the effective budget below the floor."""

    messages = [{"role": "user", "content": "y" * 9000}]
    assert is_over_budget(messages, budget=12000, system_overhead_chars=11000) is False
