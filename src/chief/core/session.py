"""
Per-conversation state.

Approval maps, the routing trajectory and token accumulators all live on an explicit
:class:`Session` so several conversations can run side by side and tests start from a clean slate.
"""

import logging
import math
from typing import (
    Any,
    Callable,
    Dict,
    Iterable,
    List,
)

from chief.common import now_ms
from chief.config import settings
from chief.core.schema import TurnOutcome

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


class ApprovalStore:
    """
    Keyed approvals with a wall-clock TTL.

    Keys are tool names, ``META_TOOL::inner`` strings or page UIDs.  An entry is valid iff
    ``0 <= now - approved_at < ttl``; anything else (expired, non-finite, or stamped in the future
    after a clock jump) is deleted on the next lookup.
    """

    def __init__(self, ttl_ms: float, now: Clock = now_ms) -> None:
        self.ttl_ms = ttl_ms
        self._now = now
        self._approved_at: Dict[str, float] = {}

    def __len__(self) -> int:
        return len(self._approved_at)

    def __contains__(self, key: object) -> bool:
        return key in self._approved_at

    def _is_fresh(self, approved_at: Any, now: float) -> bool:
        if not isinstance(approved_at, (int, float)) or not math.isfinite(approved_at):
            return False
        elapsed = now - approved_at
        return 0 <= elapsed < self.ttl_ms

    def prune(self, now: float | None = None) -> None:
        """Drop every entry that is no longer valid at *now*."""
        if now is None:
            now = self._now()
        stale = [key for key, ts in self._approved_at.items() if not self._is_fresh(ts, now)]
        for key in stale:
            del self._approved_at[key]

    def has_valid(self, key: str, now: float | None = None) -> bool:
        if now is None:
            now = self._now()
        self.prune(now)
        return self._is_fresh(self._approved_at.get(key), now)

    def remember(self, key: str, now: float | None = None) -> None:
        if now is None:
            now = self._now()
        self.prune(now)
        self._approved_at[key] = now

    def remember_many(self, keys: Iterable[str], now: float | None = None) -> None:
        if now is None:
            now = self._now()
        for key in keys:
            self._approved_at[key] = now

    def clear(self) -> None:
        self._approved_at.clear()


class SessionTokenUsage:
    """Running token / cost totals for the current session.

    The same instance is handed out for the whole session so callers observe incremental updates.
    """

    __slots__ = ("total_input_tokens", "total_output_tokens", "total_requests", "total_cost_usd")

    def __init__(self) -> None:
        self.reset()

    def reset(self) -> None:
        self.total_input_tokens = 0
        self.total_output_tokens = 0
        self.total_requests = 0
        self.total_cost_usd = 0.0

    def as_dict(self) -> Dict[str, Any]:
        return {
            "total_input_tokens": self.total_input_tokens,
            "total_output_tokens": self.total_output_tokens,
            "total_requests": self.total_requests,
            "total_cost_usd": self.total_cost_usd,
        }


class Session:
    """Mutable state for one conversation."""

    def __init__(
        self,
        now: Clock = now_ms,
        approval_ttl_ms: float | None = None,
        trajectory_max: int | None = None,
    ) -> None:
        if approval_ttl_ms is None:
            approval_ttl_ms = settings.TOOL_APPROVAL_TTL_SECONDS * 1000
        self.now = now
        self.approvals = ApprovalStore(approval_ttl_ms, now)
        self.page_approvals = ApprovalStore(approval_ttl_ms, now)
        self.trajectory: List[TurnOutcome] = []
        self.trajectory_max = trajectory_max or settings.SESSION_TRAJECTORY_MAX
        self.token_usage = SessionTokenUsage()
        self.used_local_mcp = False
        self._dry_run_armed = False

    # ------------------------------------------------------------------
    # Approvals
    # ------------------------------------------------------------------
    def has_valid_tool_approval(self, key: str) -> bool:
        return self.approvals.has_valid(key)

    def remember_tool_approval(self, key: str) -> None:
        self.approvals.remember(key)

    def clear_tool_approvals(self) -> None:
        """Forget every tool and page approval."""
        self.approvals.clear()
        self.page_approvals.clear()

    # ------------------------------------------------------------------
    # Dry run (one-shot flag armed by the host)
    # ------------------------------------------------------------------
    def arm_dry_run(self) -> None:
        self._dry_run_armed = True

    @property
    def dry_run_enabled(self) -> bool:
        return self._dry_run_armed

    def consume_dry_run(self) -> None:
        self._dry_run_armed = False

    # ------------------------------------------------------------------
    # Trajectory
    # ------------------------------------------------------------------
    def append_outcome(self, outcome: TurnOutcome) -> None:
        self.trajectory.append(outcome)
        overflow = len(self.trajectory) - self.trajectory_max
        if overflow > 0:
            del self.trajectory[:overflow]

    def reset_conversation(self) -> None:
        """Conversation reset: trajectory, approvals and MCP follow-up state are dropped."""
        self.trajectory.clear()
        self.clear_tool_approvals()
        self.used_local_mcp = False
        logger.debug("Session state reset")
