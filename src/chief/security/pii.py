"""
PII redaction for outbound LLM requests.

User and assistant text is scrubbed before it leaves for a provider.  Tool results are exempt:
they carry identifiers (calendar IDs, account emails) the model must echo verbatim in later calls.
"""

import re
from typing import (
    Any,
    Callable,
    Dict,
    List,
    NamedTuple,
    Optional,
    Pattern,
    Sequence,
)


class PiiPattern(NamedTuple):
    pattern: Pattern[str]
    replacement: str
    min_length: Optional[int] = None
    validator: Optional[Callable[[str], bool]] = None


def luhn_check(digits: str) -> bool:
    """Luhn checksum over a 13-19 digit card number; separators are ignored."""
    cleaned = re.sub(r"[\s\-]", "", digits)
    if not re.fullmatch(r"\d{13,19}", cleaned):
        return False
    total = 0
    for idx, char in enumerate(reversed(cleaned)):
        n = int(char)
        if idx % 2 == 1:
            n *= 2
            if n > 9:
                n -= 9
        total += n
    return total % 10 == 0


def is_likely_phone_number(match: str) -> bool:
    """Reject dates, timestamps and bare digit runs that the phone pattern also matches."""
    stripped = re.sub(r"[\s.\-()]", "", match)
    if re.fullmatch(r"\d{8,9}", stripped) and not re.search(r"[+(]", match):
        return False
    # YYYYMMDD
    if re.fullmatch(r"\d{4}[01]\d[0-3]\d", stripped):
        return False
    if re.fullmatch(r"\d{2,4}[\s.\-]\d{1,2}[\s.\-]\d{2,4}", match.strip()):
        return False
    return True


_OCTET = r"(?:25[0-5]|2[0-4]\d|[01]?\d\d?)"

PII_SCRUB_PATTERNS: List[PiiPattern] = [
    PiiPattern(re.compile(r"\b[A-Za-z0-9._%+\-]+@[A-Za-z0-9.\-]+\.[A-Za-z]{2,}\b"), "[EMAIL]"),
    PiiPattern(
        re.compile(
            r"(?<![A-Za-z0-9])(?:\+?[1-9]\d{0,2}[\s.\-]?)?(?:\(?\d{2,4}\)?[\s.\-]?)?\d{3,4}[\s.\-]?\d{3,4}"
            r"(?![A-Za-z0-9])"
        ),
        "[PHONE]",
        min_length=7,
        validator=is_likely_phone_number,
    ),
    PiiPattern(re.compile(r"\b\d{3}[\s\-]\d{2}[\s\-]\d{4}\b"), "[SSN]"),
    PiiPattern(re.compile(r"\b(?:\d[\s\-]?){13,19}\b"), "[CREDIT_CARD]", validator=luhn_check),
    PiiPattern(re.compile(r"\b[A-Z]{2}\d{2}\s?[A-Z0-9]{4}\s?(?:[A-Z0-9]{4}\s?){1,7}[A-Z0-9]{1,4}\b"), "[IBAN]"),
    # Australian Medicare and tax file numbers
    PiiPattern(re.compile(r"\b[2-6]\d{3}\s?\d{5}\s?\d{1,2}\b"), "[MEDICARE]"),
    PiiPattern(re.compile(r"\b\d{3}\s?\d{3}\s?\d{2,3}\b"), "[TFN]", min_length=8),
    # loopback and LAN addresses stay
    PiiPattern(
        re.compile(
            r"\b(?!127\.0\.0\.1|0\.0\.0\.0|192\.168\.\d{1,3}\.\d{1,3}|10\.\d{1,3}\.\d{1,3}\.\d{1,3})"
            rf"{_OCTET}\.{_OCTET}\.{_OCTET}\.{_OCTET}\b"
        ),
        "[IP_ADDR]",
    ),
]


def scrub_pii(text: Any, patterns: Sequence[PiiPattern] = PII_SCRUB_PATTERNS) -> Any:
    """Replace PII in *text* with bracketed placeholders; non-strings pass through unchanged."""
    if not text or not isinstance(text, str):
        return text
    result = text
    for entry in patterns:

        def _replace(match: "re.Match[str]", entry: PiiPattern = entry) -> str:
            found = match.group(0)
            if entry.min_length and len(re.sub(r"[\s\-]", "", found)) < entry.min_length:
                return found
            if entry.validator is not None and not entry.validator(found):
                return found
            return entry.replacement

        result = entry.pattern.sub(_replace, result)
    return result


def scrub_pii_from_messages(messages: Any) -> Any:
    """
    Scrub a message list in either provider format without mutating it.

    ``role: "tool"`` messages and ``tool_result`` blocks are returned untouched.
    """
    if not isinstance(messages, list):
        return messages
    scrubbed_messages = []
    for message in messages:
        if not isinstance(message, dict) or message.get("role") == "tool":
            scrubbed_messages.append(message)
            continue
        scrubbed: Dict[str, Any] = dict(message)
        content = scrubbed.get("content")
        if isinstance(content, str):
            scrubbed["content"] = scrub_pii(content)
        elif isinstance(content, list):
            blocks = []
            for block in content:
                if not isinstance(block, dict) or block.get("type") == "tool_result":
                    blocks.append(block)
                    continue
                copy = dict(block)
                if isinstance(copy.get("text"), str):
                    copy["text"] = scrub_pii(copy["text"])
                if isinstance(copy.get("content"), str):
                    copy["content"] = scrub_pii(copy["content"])
                blocks.append(copy)
            scrubbed["content"] = blocks
        scrubbed_messages.append(scrubbed)
    return scrubbed_messages
