"""
chief entry point.

This file handles startup concerns (arg-parsing, env setup, logging) and launches the requested
mode: the core API, the CORS proxy, or one of the one-shot commands (route, scan, usage).
"""

import argparse
import json
import logging
import os
import sys
from pathlib import Path

from chief.common import (
    AnsiColors,
    colored_print,
)
from chief.config import settings
from chief.core.settings_store import JsonFileSettings
from chief.routing.tier_router import compute_routing_score
from chief.security.core import (
    detect_injection_patterns,
    detect_system_prompt_leakage,
)
from chief.usage.tracker import UsageTracker

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def _init_logging(level: str) -> None:
    numeric = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=numeric,
        format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
        stream=sys.stdout,
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)


def _read_text(args: argparse.Namespace) -> str:
    if args.text:
        return " ".join(args.text)
    return sys.stdin.read()


def _print_json(payload: object) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False, default=str))


def _run_route(args: argparse.Namespace) -> int:
    result = compute_routing_score(_read_text(args))
    colored_print(f"tier: {result.tier} (score {result.score:.3f})", AnsiColors.BLUE)
    _print_json(result.model_dump())
    return 0


def _run_scan(args: argparse.Namespace) -> int:
    text = _read_text(args)
    injection = detect_injection_patterns(text)
    leakage = detect_system_prompt_leakage(text)
    _print_json({"injection": injection.model_dump(), "leakage": leakage.model_dump()})
    if injection.flagged or leakage.leaked:
        colored_print("Suspicious content detected.", AnsiColors.RED)
        return 1
    return 0


def _run_usage(_args: argparse.Namespace) -> int:
    tracker = UsageTracker(JsonFileSettings(settings.SETTINGS_FILE))
    _print_json({"costs": tracker.get_cost_history_summary(), "stats_today": tracker.get_usage_stats_today()})
    return 0


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------
def main(argv: list[str] | None = None) -> None:
    """
    Main entry point for the chief application.

    This function sets up the command-line interface, initializes logging, and runs the selected
    mode.
    """
    if argv is None:
        argv = sys.argv[1:]

    parser = argparse.ArgumentParser(description="Run the chief agent orchestration core")
    parser.add_argument(
        "--mode",
        choices=["api", "proxy", "route", "scan", "usage"],
        type=str.lower,
        default="api",
        help="Serve the core API or CORS proxy, or run a one-shot command (default: api)",
    )
    parser.add_argument(
        "--log-level",
        choices=["debug", "info", "warning", "error", "critical"],
        type=str.lower,
        default=settings.LOG_LEVEL,
        help="Logging level (default from env: %(default)s)",
    )
    parser.add_argument("text", nargs="*", help="Prompt or text for route/scan (read from stdin if omitted)")
    args = parser.parse_args(argv)

    # Override log level setting with command-line argument
    settings.LOG_LEVEL = args.log_level

    _init_logging(settings.LOG_LEVEL)
    logger.debug("Settings: %s", settings.model_dump())

    if args.mode in ("api", "usage"):
        # Ensure the data directory exists and is writable
        data_dir = Path(settings.DATA_DIR)
        data_dir.mkdir(parents=True, exist_ok=True)
        if not data_dir.is_dir() or not os.access(data_dir, os.W_OK):
            logger.error("Data directory is not writable: %s", data_dir)
            sys.exit(1)

    logger.info("Starting chief [%s mode]", args.mode)

    if args.mode == "api":
        # Lazy import so one-shot commands do not build the app
        from chief.api.app import run_api  # pylint: disable=import-outside-toplevel

        run_api(host="0.0.0.0", port=settings.API_PORT, reload=settings.DEBUG)
    elif args.mode == "proxy":
        from chief.proxy.app import run_proxy  # pylint: disable=import-outside-toplevel

        run_proxy(host="0.0.0.0", port=settings.PROXY_PORT)
    elif args.mode == "route":
        sys.exit(_run_route(args))
    elif args.mode == "scan":
        sys.exit(_run_scan(args))
    else:
        sys.exit(_run_usage(args))


if __name__ == "__main__":
    main()
