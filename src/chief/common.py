"""Common utility functions for the project."""

import inspect
import time
from enum import Enum
from typing import Any


class AnsiColors(Enum):
    """
    ANSI color codes for terminal output.
    """

    RED = "\033[91m"
    GREEN = "\033[92m"
    YELLOW = "\033[33m"
    BLUE = "\033[94m"


def colored_print(text: str, color: AnsiColors, *args: Any, **kwargs: Any) -> None:
    """
    Print text in color.

    Args:
        text: The text to print
        color: The color to use (AnsiColors enum)
        args: Additional positional arguments for print
        kwargs: Additional keyword arguments for print
    """
    print(f"{color.value}{text}\033[0m", *args, **kwargs)  # ANSI reset at the end


def now_ms() -> float:
    """Wall-clock time in epoch milliseconds."""
    return time.time() * 1000.0


async def maybe_await(value: Any) -> Any:
    """Await *value* if it is awaitable, otherwise return it unchanged.

    Host callbacks (approval prompter, MCP transport, tool ``execute`` functions) may be plain
    functions or coroutines; the core treats both the same way.
    """
    if inspect.isawaitable(value):
        return await value
    return value
