"""
Exception hierarchy for the orchestration core.

Only :class:`UserDeniedError` and :class:`McpNotConnectedError` are allowed to escape
``ToolDispatcher.execute_tool_call``; every other condition is turned into a structured result
payload so the model can observe it and adapt.
"""

from typing import (
    List,
    Sequence,
)


class ChiefError(RuntimeError):
    """Base class for all errors raised by the core."""


class UserDeniedError(ChiefError):
    """Raised when the user refuses an approval prompt."""

    def __init__(self, tool_name: str, message: str | None = None) -> None:
        self.tool_name = tool_name
        super().__init__(message or f"User denied execution for {tool_name}")


class McpNotConnectedError(ChiefError):
    """Raised when a tool must go through MCP transport but no client is bound."""

    def __init__(self) -> None:
        super().__init__("MCP client not connected")


class TransportError(ChiefError):
    """An LLM or MCP transport call failed.

    ``status`` carries the HTTP status when the transport knows it; the failover layer uses it to
    decide between retrying the same provider and moving to the next one.
    """

    def __init__(self, message: str, status: int | None = None, provider: str | None = None) -> None:
        self.status = status
        self.provider = provider
        super().__init__(message)


class MalformedArgumentError(ChiefError):
    """A key-shaped parameter held a path or a display name instead of an identifier."""

    def __init__(self, param: str, message: str) -> None:
        self.param = param
        super().__init__(message)


class PolicyViolationError(ChiefError):
    """A safety scanner blocked an operation."""

    def __init__(self, message: str, matched_patterns: Sequence[str] = ()) -> None:
        self.matched_patterns: List[str] = list(matched_patterns)
        super().__init__(message)


class CapExceededError(ChiefError):
    """The daily spending cap has been reached; no further LLM requests may be issued."""

    def __init__(self, cap: float, spent: float) -> None:
        self.cap = cap
        self.spent = spent
        super().__init__(f"Daily spending cap of ${cap:.2f} reached (spent ${spent:.2f} today)")


class ToolExecutionError(ChiefError):
    """Raised when a resolved tool cannot run or fails."""
