"""Tests for cost history, usage counters and the daily spending cap."""

import asyncio
from datetime import (
    datetime,
    timedelta,
    timezone,
)

import pytest

from chief.core.session import Session
from chief.core.settings_store import InMemorySettings
from chief.usage.tracker import (
    COST_HISTORY_KEY,
    DAILY_SPENDING_CAP_KEY,
    USAGE_STATS_KEY,
    UsageTracker,
    flush_usage_tracking,
    parse_spending_cap,
)

NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


def _tracker(store=None, **kwargs) -> UsageTracker:
    return UsageTracker(store if store is not None else InMemorySettings(), clock=lambda: NOW, **kwargs)


def test_record_cost_entry_aggregates_per_day_and_model() -> None:
    tracker = _tracker()
    tracker.record_cost_entry("gpt-4o-mini", 1000, 200, 0.01)
    tracker.record_cost_entry("gpt-4o-mini", 500, 100, 0.02)
    tracker.record_cost_entry("claude-sonnet-4-6", 10, 10, 0.5)

    today = tracker.get_cost_history_summary()["today"]
    assert today["cost"] == pytest.approx(0.53)
    assert today["input"] == 1510
    assert today["requests"] == 3
    assert today["models"]["gpt-4o-mini"]["requests"] == 2
    assert today["models"]["gpt-4o-mini"]["output"] == 300


def test_summary_windows() -> None:
    history = {
        "days": {
            "2026-03-15": {"cost": 1.0, "input": 1, "output": 1, "requests": 1},
            "2026-03-12": {"cost": 2.0, "input": 2, "output": 2, "requests": 2},
            "2026-02-25": {"cost": 4.0, "input": 4, "output": 4, "requests": 4},
            "2026-01-01": {"cost": 8.0, "input": 8, "output": 8, "requests": 8},
        }
    }
    tracker = _tracker(InMemorySettings({COST_HISTORY_KEY: history}))
    summary = tracker.get_cost_history_summary()
    assert summary["today"]["cost"] == 1.0
    assert summary["week"]["cost"] == 3.0
    assert summary["month"]["cost"] == 7.0
    assert summary["month"]["requests"] == 7


def test_malformed_documents_load_empty() -> None:
    tracker = _tracker(InMemorySettings({COST_HISTORY_KEY: "garbage", USAGE_STATS_KEY: {"days": []}}))
    assert tracker.cost_history == {"days": {}}
    assert tracker.usage_stats == {"days": {}}


# ---------------------------------------------------------------------------
# Daily cap
# ---------------------------------------------------------------------------
def test_parse_spending_cap() -> None:
    assert parse_spending_cap("1.50") == 1.5
    assert parse_spending_cap(" 5usd") == 5.0
    assert parse_spending_cap(2) == 2.0
    assert parse_spending_cap("") is None
    assert parse_spending_cap("abc") is None
    assert parse_spending_cap("0") is None
    assert parse_spending_cap(-3) is None
    assert parse_spending_cap(True) is None


def test_daily_cap() -> None:
    store = InMemorySettings({DAILY_SPENDING_CAP_KEY: "1.50"})
    tracker = _tracker(store)
    tracker.record_cost_entry("gpt-4o", 1, 1, 1.0)
    assert tracker.is_daily_cap_exceeded() == {"exceeded": False, "cap": 1.5, "spent": 1.0}
    tracker.record_cost_entry("gpt-4o", 1, 1, 0.5)
    assert tracker.is_daily_cap_exceeded()["exceeded"] is True


def test_daily_cap_disabled() -> None:
    tracker = _tracker()
    tracker.record_cost_entry("gpt-4o", 1, 1, 100.0)
    assert tracker.is_daily_cap_exceeded() == {"exceeded": False, "cap": None, "spent": 0}


# ---------------------------------------------------------------------------
# Counters and session tokens
# ---------------------------------------------------------------------------
def test_usage_counters() -> None:
    tracker = _tracker()
    tracker.record_usage_stat("agentRuns")
    tracker.record_usage_stat("agentRuns")
    tracker.record_usage_stat("toolCall", "roam_search")
    tracker.record_usage_stat("toolCall", "roam_search")
    tracker.record_usage_stat("notACounter")

    today = tracker.get_usage_stats_today()
    assert today["agentRuns"] == 2
    assert today["memoryWriteBlocks"] == 0
    assert today["toolCalls"] == {"roam_search": 2}
    assert "notACounter" not in today


def test_session_token_usage_is_shared_with_session() -> None:
    session = Session()
    tracker = UsageTracker(InMemorySettings(), session=session)
    tracker.accumulate_session_tokens(100, 20, 0.01)
    tracker.accumulate_session_tokens(50, 10, 0.02)
    usage = session.token_usage.as_dict()
    assert usage["total_input_tokens"] == 150
    assert usage["total_requests"] == 2
    assert usage["total_cost_usd"] == pytest.approx(0.03)
    assert tracker.get_session_token_usage() is session.token_usage

    tracker.reset_session_token_usage()
    assert session.token_usage.total_requests == 0


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------
def test_flush_without_loop_persists_dirty_documents() -> None:
    store = InMemorySettings()
    tracker = _tracker(store)
    tracker.record_usage_stat("agentRuns")
    tracker.record_usage_stat("agentRuns")
    assert store.writes == []
    assert tracker.has_pending_writes is True

    tracker.flush()
    assert store.writes == [USAGE_STATS_KEY]
    assert store.get(USAGE_STATS_KEY)["days"]["2026-03-15"]["agentRuns"] == 2
    assert tracker.has_pending_writes is False

    tracker.flush()
    assert store.writes == [USAGE_STATS_KEY]


def test_flush_to_other_store() -> None:
    tracker = _tracker()
    other = InMemorySettings()
    tracker.record_cost_entry("gpt-4o", 1, 1, 0.1)
    tracker.flush(other)
    assert other.writes == [COST_HISTORY_KEY]


def test_flush_usage_tracking_tolerates_nothing_pending() -> None:
    """No tracker, or nothing pending, means no writes and no errors."""

    flush_usage_tracking(None)
    store = InMemorySettings()
    flush_usage_tracking(_tracker(store), None)
    assert store.writes == []


def test_debounced_writes_coalesce() -> None:
    """Inside an event loop several updates produce a single write per key."""

    store = InMemorySettings()

    async def _run() -> None:
        tracker = _tracker(store, debounce_seconds=0.01)
        for _ in range(3):
            tracker.record_usage_stat("approvalsGranted")
        tracker.record_cost_entry("gpt-4o", 1, 1, 0.1)
        await asyncio.sleep(0.1)

    asyncio.run(_run())
    assert sorted(store.writes) == [COST_HISTORY_KEY, USAGE_STATS_KEY]
    assert store.get(USAGE_STATS_KEY)["days"]["2026-03-15"]["approvalsGranted"] == 3


def test_old_days_are_pruned_on_persist() -> None:
    old_day = (NOW - timedelta(days=120)).strftime("%Y-%m-%d")
    store = InMemorySettings({COST_HISTORY_KEY: {"days": {old_day: {"cost": 1.0}}}})
    tracker = _tracker(store, max_days=90)
    tracker.record_cost_entry("gpt-4o", 1, 1, 0.1)
    tracker.flush()
    assert list(store.get(COST_HISTORY_KEY)["days"]) == ["2026-03-15"]
