"""Tests for outbound PII redaction."""

from chief.security.pii import (
    is_likely_phone_number,
    luhn_check,
    scrub_pii,
    scrub_pii_from_messages,
)


def test_scrub_pii_replaces_identifiers() -> None:
    assert scrub_pii("Email sam@example.com today") == "Email [EMAIL] today"
    assert scrub_pii("Call +1 415 555 2671 after lunch") == "Call [PHONE] after lunch"
    assert scrub_pii("Card 4111111111111111 expires soon") == "Card [CREDIT_CARD] expires soon"
    assert scrub_pii("Resolver is 8.8.8.8") == "Resolver is [IP_ADDR]"


def test_scrub_pii_keeps_dates_and_loopback() -> None:
    assert scrub_pii("Due 2026-03-15") == "Due 2026-03-15"
    assert scrub_pii("Server on 127.0.0.1") == "Server on 127.0.0.1"
    assert scrub_pii("Nothing sensitive here") == "Nothing sensitive here"


def test_scrub_pii_passes_non_strings_through() -> None:
    assert scrub_pii(None) is None
    assert scrub_pii(42) == 42
    assert scrub_pii("") == ""


def test_luhn_check() -> None:
    assert luhn_check("4111 1111 1111 1111") is True
    assert luhn_check("4111111111111112") is False
    assert luhn_check("1234") is False


def test_phone_validator_rejects_dates_and_short_runs() -> None:
    assert is_likely_phone_number("12345678") is False
    assert is_likely_phone_number("20260315") is False
    assert is_likely_phone_number("2026-03-15") is False
    assert is_likely_phone_number("+1 415 555 2671") is True


def test_scrub_messages_skips_tool_results() -> None:
    """Tool output keeps its identifiers; user text in both formats is scrubbed."""

    messages = [
        {"role": "user", "content": "mail sam@example.com"},
        {"role": "tool", "tool_call_id": "call_0", "content": "owner: sam@example.com"},
        {
            "role": "user",
            "content": [
                {"type": "tool_result", "tool_use_id": "t1", "content": "calendar: sam@example.com"},
                {"type": "text", "text": "ping sam@example.com"},
            ],
        },
    ]
    result = scrub_pii_from_messages(messages)
    assert result[0]["content"] == "mail [EMAIL]"
    assert result[1]["content"] == "owner: sam@example.com"
    assert result[2]["content"][0]["content"] == "calendar: sam@example.com"
    assert result[2]["content"][1]["text"] == "ping [EMAIL]"
    assert messages[0]["content"] == "mail sam@example.com"
    assert scrub_pii_from_messages("not a list") == "not a list"
