"""
Per-day cost and usage aggregation with debounced persistence.

Two documents are kept in host settings:

- ``cost-history``: ``{"days": {"YYYY-MM-DD": {cost, input, output, requests, models: {...}}}}``
- ``usage-stats``: ``{"days": {"YYYY-MM-DD": {<counter>: n, "toolCalls": {name: n}}}}``

Writes are coalesced.  When an asyncio loop is running, one ``call_later`` timer per key fires after
the debounce window; without a loop the key just stays dirty until :meth:`UsageTracker.flush`.
"""

import asyncio
import logging
import re
from datetime import (
    datetime,
    timedelta,
    timezone,
)
from typing import (
    Any,
    Callable,
    Dict,
    Optional,
)

from chief.config import settings
from chief.core.session import (
    Session,
    SessionTokenUsage,
)
from chief.core.settings_store import HostSettings

logger = logging.getLogger(__name__)

COST_HISTORY_KEY = "cost-history"
USAGE_STATS_KEY = "usage-stats"
DAILY_SPENDING_CAP_KEY = "daily-spending-cap"

USAGE_COUNTERS = (
    "agentRuns",
    "approvalsGranted",
    "approvalsDenied",
    "injectionWarnings",
    "claimedActionFires",
    "tierEscalations",
    "memoryWriteBlocks",
)

_LEADING_FLOAT = re.compile(r"^\s*[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def date_key(moment: datetime) -> str:
    return moment.strftime("%Y-%m-%d")


def parse_spending_cap(raw: Any) -> Optional[float]:
    """Parse the configured cap; blank, unparsable, zero or negative values disable it."""
    if isinstance(raw, bool) or raw is None:
        return None
    if isinstance(raw, (int, float)):
        value = float(raw)
    else:
        match = _LEADING_FLOAT.match(str(raw))
        if not match:
            return None
        value = float(match.group(0))
    if value != value or value <= 0:  # NaN
        return None
    return value


def _empty_totals() -> Dict[str, Any]:
    return {"cost": 0.0, "input": 0, "output": 0, "requests": 0}


def _load_days_document(raw: Any) -> Dict[str, Any]:
    if isinstance(raw, dict) and isinstance(raw.get("days"), dict):
        return raw
    return {"days": {}}


class UsageTracker:
    """
    Cost history, usage counters, session token totals and the daily spending cap.

    Parameters
    ----------
    store:
        Host settings used for loading and persisting; may be ``None`` for a purely in-memory
        tracker.
    session:
        When given, session token totals are accumulated on ``session.token_usage``.
    clock:
        Returns the current time as an aware datetime; date keys are taken in UTC.
    debounce_seconds:
        Delay before a scheduled persist fires (defaults to ``USAGE_PERSIST_DEBOUNCE_SECONDS``).
    """

    def __init__(
        self,
        store: HostSettings | None = None,
        session: Session | None = None,
        clock: Callable[[], datetime] = utc_now,
        debounce_seconds: float | None = None,
        max_days: int | None = None,
    ) -> None:
        self._store = store
        self._clock = clock
        self.debounce_seconds = (
            settings.USAGE_PERSIST_DEBOUNCE_SECONDS if debounce_seconds is None else debounce_seconds
        )
        self.max_days = max_days or settings.COST_HISTORY_MAX_DAYS
        self._session_usage = session.token_usage if session is not None else SessionTokenUsage()
        self._timers: Dict[str, asyncio.TimerHandle] = {}
        self._dirty: set[str] = set()
        self.cost_history: Dict[str, Any] = {"days": {}}
        self.usage_stats: Dict[str, Any] = {"days": {}}
        self.load()

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------
    def load(self) -> None:
        """(Re)load both documents; absent or malformed values become empty histories."""
        store = self._store
        self.cost_history = _load_days_document(store.get(COST_HISTORY_KEY) if store else None)
        self.usage_stats = _load_days_document(store.get(USAGE_STATS_KEY) if store else None)

    def _today(self) -> str:
        return date_key(self._clock())

    # ------------------------------------------------------------------
    # Session tokens
    # ------------------------------------------------------------------
    def get_session_token_usage(self) -> SessionTokenUsage:
        return self._session_usage

    def accumulate_session_tokens(self, input_tokens: int, output_tokens: int, cost: float) -> None:
        usage = self._session_usage
        usage.total_input_tokens += input_tokens
        usage.total_output_tokens += output_tokens
        usage.total_requests += 1
        usage.total_cost_usd += cost

    def reset_session_token_usage(self) -> None:
        self._session_usage.reset()

    # ------------------------------------------------------------------
    # Cost history
    # ------------------------------------------------------------------
    def record_cost_entry(self, model: str, input_tokens: int, output_tokens: int, cost: float) -> None:
        """Add one LLM call to today's totals and to the per-model breakdown."""
        day = self.cost_history["days"].setdefault(self._today(), {**_empty_totals(), "models": {}})
        per_model = day.setdefault("models", {}).setdefault(model, _empty_totals())
        for bucket in (day, per_model):
            bucket["cost"] = bucket.get("cost", 0) + cost
            bucket["input"] = bucket.get("input", 0) + input_tokens
            bucket["output"] = bucket.get("output", 0) + output_tokens
            bucket["requests"] = bucket.get("requests", 0) + 1
        self._schedule_persist(COST_HISTORY_KEY)

    def is_daily_cap_exceeded(self) -> Dict[str, Any]:
        """Return ``{"exceeded", "cap", "spent"}``; a disabled cap reports ``cap=None, spent=0``."""
        cap = parse_spending_cap(self._store.get(DAILY_SPENDING_CAP_KEY) if self._store else None)
        if cap is None:
            return {"exceeded": False, "cap": None, "spent": 0}
        spent = (self.cost_history["days"].get(self._today()) or {}).get("cost", 0)
        return {"exceeded": spent >= cap, "cap": cap, "spent": spent}

    def _window_totals(self, days: int) -> Dict[str, Any]:
        totals = _empty_totals()
        now = self._clock()
        for offset in range(days):
            entry = self.cost_history["days"].get(date_key(now - timedelta(days=offset)))
            if not entry:
                continue
            for field in totals:
                totals[field] += entry.get(field, 0)
        return totals

    def get_cost_history_summary(self) -> Dict[str, Any]:
        """Aggregate today, the trailing 7 days and the trailing 30 days."""
        today = self.cost_history["days"].get(self._today()) or {**_empty_totals(), "models": {}}
        return {"today": today, "week": self._window_totals(7), "month": self._window_totals(30)}

    # ------------------------------------------------------------------
    # Usage counters
    # ------------------------------------------------------------------
    def _today_usage(self) -> Dict[str, Any]:
        day = self.usage_stats["days"].get(self._today())
        if day is None:
            day = {name: 0 for name in USAGE_COUNTERS}
            day["toolCalls"] = {}
            self.usage_stats["days"][self._today()] = day
        return day

    def record_usage_stat(self, stat: str, detail: str | None = None) -> None:
        """
        Increment a named counter, or ``toolCalls[detail]`` when *stat* is ``"toolCall"``.

        Unknown counter names are ignored (but still schedule a persist).
        """
        day = self._today_usage()
        if stat == "toolCall" and detail:
            tool_calls = day.setdefault("toolCalls", {})
            tool_calls[detail] = tool_calls.get(detail, 0) + 1
        elif isinstance(day.get(stat), (int, float)) and not isinstance(day.get(stat), bool):
            day[stat] += 1
        else:
            logger.debug("Ignoring unknown usage stat '%s'", stat)
        self._schedule_persist(USAGE_STATS_KEY)

    def get_usage_stats_today(self) -> Dict[str, Any]:
        return self._today_usage()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------
    def _prune(self, document: Dict[str, Any]) -> None:
        cutoff = date_key(self._clock() - timedelta(days=self.max_days))
        for key in [k for k in document["days"] if k < cutoff]:
            del document["days"][key]

    def _document(self, key: str) -> Dict[str, Any]:
        return self.cost_history if key == COST_HISTORY_KEY else self.usage_stats

    def _schedule_persist(self, key: str) -> None:
        self._dirty.add(key)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return  # no loop: coalesce until flush()
        handle = self._timers.pop(key, None)
        if handle is not None:
            handle.cancel()
        self._timers[key] = loop.call_later(self.debounce_seconds, self._persist, key, self._store)

    def _persist(self, key: str, store: HostSettings | None) -> None:
        self._timers.pop(key, None)
        self._dirty.discard(key)
        document = self._document(key)
        self._prune(document)
        if store is not None:
            store.set(key, document)
            logger.debug("Persisted %s (%d days)", key, len(document["days"]))

    @property
    def has_pending_writes(self) -> bool:
        return bool(self._dirty)

    def flush(self, api: HostSettings | None = None) -> None:
        """
        Cancel pending timers and persist every dirty document now.

        Writes go to *api* when given, otherwise to the tracker's own store.  Nothing happens when
        no write is pending, and a tracker without any store simply drops its dirty marks.
        """
        target = api if api is not None else self._store
        for key in sorted(self._dirty):
            handle = self._timers.pop(key, None)
            if handle is not None:
                handle.cancel()
            self._persist(key, target)


def flush_usage_tracking(tracker: UsageTracker | None, api: HostSettings | None = None) -> None:
    """Module-level flush for shutdown hooks; tolerates a missing tracker."""
    if tracker is None:
        return
    tracker.flush(api)
