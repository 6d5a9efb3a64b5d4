"""Tests for tolerant JSON extraction helpers."""

from chief.tools.json_extract import (
    KEY_REFERENCE_CAP,
    TRUNCATION_MARKER,
    extract_balanced_json_objects,
    extract_mcp_key_reference,
    parse_tool_arguments,
    safe_json_stringify,
)


def test_extract_balanced_objects_from_prose() -> None:
    spans = extract_balanced_json_objects('Here you go: {"a": 1} and then {"b": {"c": "}"}} done')
    assert [s["parsed"] for s in spans] == [{"a": 1}, {"b": {"c": "}"}}]
    assert spans[0]["start"] == 13
    assert spans[0]["end"] == 21


def test_concatenated_objects_are_both_found() -> None:
    first, second = '{"query": "x"}', '{"limit": 5}'
    assert [s["parsed"] for s in extract_balanced_json_objects(first + second)] == [{"query": "x"}, {"limit": 5}]


def test_extract_skips_malformed_and_stops_when_unbalanced() -> None:
    assert [s["parsed"] for s in extract_balanced_json_objects("{not json} {\"ok\": true}")] == [{"ok": True}]
    assert [s["parsed"] for s in extract_balanced_json_objects('{"a": 1} {"b": ')] == [{"a": 1}]
    assert extract_balanced_json_objects(None) == []
    assert extract_balanced_json_objects("") == []


def test_escaped_quotes_inside_strings() -> None:
    spans = extract_balanced_json_objects(r'{"text": "say \"{hi}\""}')
    assert spans[0]["parsed"] == {"text": 'say "{hi}"'}


def test_parse_tool_arguments() -> None:
    assert parse_tool_arguments('{"q": "x"}') == {"q": "x"}
    assert parse_tool_arguments({"q": "x"}) == {"q": "x"}
    assert parse_tool_arguments('{"q": "x"} Let me know if that helps') == {"q": "x"}
    assert parse_tool_arguments('{"q": 1}{"q": 2}') == {"q": 1}
    assert parse_tool_arguments("[1, 2]") == {}
    assert parse_tool_arguments("nonsense") == {}
    assert parse_tool_arguments("") == {}
    assert parse_tool_arguments(None) == {}


def test_mcp_key_reference() -> None:
    texts = [
        "- **Machine Learning** (Key: NADHRMVD)\n- **Reading** (Key: ABCD1234)",
        "**Title:** Attention Is All You Need\n**Item Key:** `XYZ789`",
        "- **Machine Learning** (Key: NADHRMVD)",
        None,
    ]
    assert extract_mcp_key_reference(texts) == (
        "[Key reference: Machine Learning → NADHRMVD; Reading → ABCD1234; Attention Is All You Need → XYZ789]"
    )
    assert extract_mcp_key_reference(["nothing here"]) == ""
    assert extract_mcp_key_reference(None) == ""


def test_mcp_key_reference_is_capped() -> None:
    text = "\n".join(f"**Item {n}** (Key: K{n})" for n in range(KEY_REFERENCE_CAP + 10))
    assert extract_mcp_key_reference([text]).count("→") == KEY_REFERENCE_CAP


def test_safe_json_stringify() -> None:
    assert safe_json_stringify({"a": 1}, 100) == '{"a": 1}'
    long = safe_json_stringify({"a": "x" * 100}, 20)
    assert long.endswith(TRUNCATION_MARKER)
    assert len(long) == 20 + len(TRUNCATION_MARKER)
