"""Tests for cross-provider message conversion and write detection."""

import json

from chief.agent.message_converter import (
    SHORT_ID_LENGTH,
    convert_messages_for_provider,
    detect_successful_write_tool_calls_in_messages,
    detect_written_blocks_in_messages,
    short_alphanumeric_id,
)

ANTHROPIC_HISTORY = [
    {"role": "user", "content": "find my notes on Alpha"},
    {
        "role": "assistant",
        "content": [
            {"type": "text", "text": "Searching."},
            {"type": "tool_use", "id": "tu_1", "name": "roam_search", "input": {"query": "Alpha"}},
        ],
    },
    {"role": "user", "content": [{"type": "tool_result", "tool_use_id": "tu_1", "content": "3 blocks found"}]},
    {"role": "assistant", "content": "Found three blocks."},
]


def _anthropic_triples(messages):
    calls, results = {}, {}
    for message in messages:
        if not isinstance(message["content"], list):
            continue
        for block in message["content"]:
            if block["type"] == "tool_use":
                calls[block["id"]] = (block["name"], block["input"])
            elif block["type"] == "tool_result":
                results[block["tool_use_id"]] = block["content"]
    return {(name, json.dumps(args, sort_keys=True), results.get(uid)) for uid, (name, args) in calls.items()}


def test_cross_family_round_trip_preserves_tool_calls() -> None:
    """Anthropic to OpenAI and back keeps every (name, arguments, result) triple."""

    openai = convert_messages_for_provider(ANTHROPIC_HISTORY, "anthropic", "openai")
    assert [m["role"] for m in openai] == ["user", "assistant", "tool", "assistant"]
    call = openai[1]["tool_calls"][0]
    assert call["id"] != "tu_1"
    assert openai[2]["tool_call_id"] == call["id"]
    assert json.loads(call["function"]["arguments"]) == {"query": "Alpha"}
    assert openai[1]["content"] == "Searching."

    back = convert_messages_for_provider(openai, "openai", "anthropic")
    assert [m["role"] for m in back] == ["user", "assistant", "user", "assistant"]
    tool_use = back[1]["content"][1]
    assert back[2]["content"][0]["tool_use_id"] == tool_use["id"]
    assert _anthropic_triples(back) == _anthropic_triples(ANTHROPIC_HISTORY)
    assert _anthropic_triples(back) == {("roam_search", '{"query": "Alpha"}', "3 blocks found")}


def test_conversion_does_not_mutate_input() -> None:
    snapshot = json.dumps(ANTHROPIC_HISTORY, sort_keys=True)
    convert_messages_for_provider(ANTHROPIC_HISTORY, "anthropic", "gemini")
    assert json.dumps(ANTHROPIC_HISTORY, sort_keys=True) == snapshot


def test_same_provider_returns_copies() -> None:
    messages = [{"role": "user", "content": "hi"}]
    result = convert_messages_for_provider(messages, "openai", "openai")
    assert result == messages
    assert result[0] is not messages[0]


def test_openai_family_ids_are_renumbered() -> None:
    """Moving between openai-compatible providers rewrites IDs as call_N and drops empty tool_calls."""

    messages = [
        {"role": "user", "content": "hi"},
        {"role": "assistant", "content": "", "tool_calls": []},
        {
            "role": "assistant",
            "content": None,
            "tool_calls": [
                {"id": "abc", "type": "function", "function": {"name": "a", "arguments": "{}"}},
                {"id": "def", "type": "function", "function": {"name": "b", "arguments": "{}"}},
            ],
        },
        {"role": "tool", "tool_call_id": "def", "content": "b done"},
        {"role": "tool", "tool_call_id": "abc", "content": "a done"},
    ]
    result = convert_messages_for_provider(messages, "openai", "mistral")
    assert "tool_calls" not in result[1]
    assert [c["id"] for c in result[2]["tool_calls"]] == ["call_0", "call_1"]
    assert result[3]["tool_call_id"] == "call_1"
    assert result[4]["tool_call_id"] == "call_0"
    assert messages[2]["tool_calls"][0]["id"] == "abc"


def test_openai_to_anthropic_groups_tool_results() -> None:
    messages = [
        {
            "role": "assistant",
            "content": "",
            "tool_calls": [
                {"id": "x1", "function": {"name": "a", "arguments": '{"n": 1}'}},
                {"id": "x2", "function": {"name": "b", "arguments": '{"n": 2} trailing'}},
            ],
        },
        {"role": "tool", "tool_call_id": "x1", "content": "one"},
        {"role": "tool", "tool_call_id": "x2", "content": "two"},
    ]
    result = convert_messages_for_provider(messages, "gemini", "anthropic")
    assert len(result) == 2
    assert [b["input"] for b in result[0]["content"]] == [{"n": 1}, {"n": 2}]
    assert [b["content"] for b in result[1]["content"]] == ["one", "two"]


def test_short_alphanumeric_ids() -> None:
    ids = {short_alphanumeric_id(n) for n in range(200)}
    assert len(ids) == 200
    for new_id in ids:
        assert len(new_id) == SHORT_ID_LENGTH
        assert new_id.isalnum()


# ---------------------------------------------------------------------------
# Write detection
# ---------------------------------------------------------------------------
def _anthropic_write_turn(call_id: str, name: str, args: dict, result) -> list:
    """An assistant tool_use block followed by its tool_result (omitted when *result* is None)."""

    turn = [{"role": "assistant", "content": [{"type": "tool_use", "id": call_id, "name": name, "input": args}]}]
    if result is not None:
        block = {"type": "tool_result", "tool_use_id": call_id, "content": json.dumps(result)}
        turn.append({"role": "user", "content": [block]})
    return turn


def _openai_write_turn(call_id: str, name: str, args: dict, result) -> list:
    call = {"id": call_id, "type": "function", "function": {"name": name, "arguments": json.dumps(args)}}
    turn = [{"role": "assistant", "content": "", "tool_calls": [call]}]
    if result is not None:
        turn.append({"role": "tool", "tool_call_id": call_id, "content": json.dumps(result)})
    return turn


def test_successful_writes_are_detected_in_both_families() -> None:
    messages = [
        *_anthropic_write_turn("1", "roam_create_block", {"text": "x", "parent_uid": "p"}, {"success": True}),
        *_anthropic_write_turn("2", "roam_search", {"query": "x"}, {"results": []}),
        *_openai_write_turn("3", "roam_update_block", {"uid": "u"}, {"uid": "u"}),
    ]
    writes = detect_successful_write_tool_calls_in_messages(messages)
    assert [w["name"] for w in writes] == ["roam_create_block", "roam_update_block"]
    assert writes[0]["fingerprint"] == 'roam_create_block::{"parent_uid": "p", "text": "x"}'
    assert writes[1]["args"] == {"uid": "u"}


def test_failed_and_unanswered_writes_are_not_reported() -> None:
    """An error, an explicit failure flag, or a missing result means the write did not happen."""

    for make_turn in (_anthropic_write_turn, _openai_write_turn):
        messages = [
            *make_turn("a", "roam_create_block", {"parent_uid": "p"}, {"error": "Parent block not found"}),
            *make_turn("b", "roam_update_block", {"uid": "u"}, {"success": False}),
            *make_turn("c", "cos_update_memory", {"page": "Memory"}, {"successful": False, "error": ""}),
            *make_turn("d", "roam_delete_block", {"uid": "u"}, None),
        ]
        assert detect_successful_write_tool_calls_in_messages(messages) == []


def test_blank_error_still_counts_as_success() -> None:
    messages = _openai_write_turn("a", "roam_move_block", {"uid": "u"}, {"success": True, "error": "  "})
    assert [w["name"] for w in detect_successful_write_tool_calls_in_messages(messages)] == ["roam_move_block"]


def test_success_then_failure_keeps_only_the_success() -> None:
    for make_turn in (_anthropic_write_turn, _openai_write_turn):
        messages = [
            *make_turn("ok", "roam_create_block", {"parent_uid": "p", "text": "first"}, {"success": True}),
            *make_turn("bad", "roam_create_block", {"parent_uid": "p", "text": "second"}, {"error": "Rate limited"}),
        ]
        writes = detect_successful_write_tool_calls_in_messages(messages)
        assert [w["args"]["text"] for w in writes] == ["first"]


def test_plain_text_write_result_counts_as_success() -> None:
    messages = [
        {"role": "assistant", "content": [{"type": "tool_use", "id": "t", "name": "roam_create_block", "input": {}}]},
        {"role": "user", "content": [{"type": "tool_result", "tool_use_id": "t", "content": "Created block abc"}]},
    ]
    assert len(detect_successful_write_tool_calls_in_messages(messages)) == 1


def test_detect_written_blocks() -> None:
    messages = [
        {"role": "tool", "content": json.dumps({"success": True, "created_uids": ["a1", "a2"], "parent_uid": "p"})},
        {
            "role": "user",
            "content": [
                {
                    "type": "tool_result",
                    "content": json.dumps({"success": True, "uids": ["b1"], "results": [{"parent_uid": "q"}]}),
                },
                {"type": "tool_result", "content": json.dumps({"success": False, "created_uids": ["c1"]})},
                {"type": "tool_result", "content": '<untrusted source="tool:x">{"success": true}</untrusted>'},
            ],
        },
    ]
    assert detect_written_blocks_in_messages(messages) == [
        {"uids": ["a1", "a2"], "parent": "p"},
        {"uids": ["b1"], "parent": "q"},
    ]
