"""Tests for complexity-based tier routing."""

import pytest

from chief.core.schema import TurnOutcome
from chief.core.session import Session
from chief.routing.tier_router import (
    STRATEGY_WEIGHTS,
    TIER_THRESHOLDS,
    compute_routing_score,
    parse_skill_sources,
    record_turn_outcome,
    route_for_session,
    score_prompt_complexity,
    score_tool_count,
    score_trajectory,
    tool_count_to_score,
    validate_routing_tables,
)

WEEKLY_REVIEW = {
    "title": "Weekly Review",
    "content": (
        "- Trigger: weekly review\n"
        "- Sources\n"
        "  - roam_search — this week's notes\n"
        "  - roam_get_recent_changes — edits since Monday\n"
        "  - GOOGLECALENDAR_EVENTS_LIST — next week's events\n"
        "  - roam_search_todos — open tasks\n"
        "- Output\n"
        "  - a summary block\n"
    ),
}

HEAVY_TURN = TurnOutcome(
    tool_count=8,
    unique_tool_count=5,
    successful_unique_tool_count=3,
    iterations=9,
    tier="power",
    escalated=True,
)


def test_tables_are_consistent() -> None:
    assert sum(STRATEGY_WEIGHTS.values()) == pytest.approx(1.0)
    assert 0 < TIER_THRESHOLDS["power"] < TIER_THRESHOLDS["ludicrous"] < 1
    validate_routing_tables()


def test_inconsistent_tables_are_rejected() -> None:
    with pytest.raises(ValueError):
        validate_routing_tables(weights={"tool_count": 0.5, "prompt_complexity": 0.2, "trajectory": 0.2})
    with pytest.raises(ValueError):
        validate_routing_tables(thresholds={"power": 0.9, "ludicrous": 0.5})


# ---------------------------------------------------------------------------
# Skill sources
# ---------------------------------------------------------------------------
def test_parse_skill_sources_stops_at_dedent() -> None:
    sources = parse_skill_sources(WEEKLY_REVIEW["content"])
    assert [s["tool"] for s in sources] == [
        "roam_search",
        "roam_get_recent_changes",
        "GOOGLECALENDAR_EVENTS_LIST",
        "roam_search_todos",
    ]


def test_parse_skill_sources_without_heading() -> None:
    assert parse_skill_sources("- Steps\n  - do things") == []


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------
def test_tool_count_to_score_buckets() -> None:
    assert tool_count_to_score(0) == 0.0
    assert tool_count_to_score(2) == pytest.approx(0.3)
    assert tool_count_to_score(5) == pytest.approx(0.6)
    assert tool_count_to_score(50) == 1.0


def test_tool_count_from_keywords() -> None:
    result = score_tool_count("check my calendar and email, then find the project notes")
    assert result["matched_skill"] is None
    assert result["estimated_tools"] >= 4


def test_skill_needs_half_the_title_words() -> None:
    result = score_tool_count("give me a review of the code", [WEEKLY_REVIEW])
    assert result["matched_skill"] == "Weekly Review"
    result = score_tool_count("what is the weather", [WEEKLY_REVIEW])
    assert result["matched_skill"] is None


def test_prompt_complexity_signals() -> None:
    result = score_prompt_complexity(
        "Should I move the [[Alpha]] launch to next week or compare it with [[Beta]] first? "
        "Analyse the trade-offs thoroughly."
    )
    for signal in ("deliberation", "comparison", "multi_entity_comparison", "synthesis", "explicit_depth"):
        assert signal in result["signals"]
    assert 0 < result["score"] <= 1


def test_empty_trajectory_scores_zero() -> None:
    assert score_trajectory("hello", []) == {"score": 0.0, "signals": []}


# ---------------------------------------------------------------------------
# Composite routing
# ---------------------------------------------------------------------------
def test_skill_match_routes_to_power() -> None:
    """A matched skill with four sources clears the power threshold on its own."""

    result = compute_routing_score("run my weekly review", skill_entries=[WEEKLY_REVIEW])
    assert result.breakdown.tool_count["matched_skill"] == "Weekly Review"
    assert result.breakdown.tool_count["estimated"] == 4
    assert result.tier == "power"
    assert "skill:Weekly Review" in result.signals


def test_complex_followup_stays_on_power() -> None:
    """A short follow-up to a heavy turn keeps the power tier."""

    result = compute_routing_score("now apply those changes", trajectory=[HEAVY_TURN])
    assert result.tier == "power"
    assert "complex_followup" in result.signals
    assert "write_after_gather" in result.signals
    assert result.score >= TIER_THRESHOLDS["power"]


def test_guard_inflated_iterations_do_not_escalate() -> None:
    """Many iterations without distinct successful tools are not complexity."""

    trajectory = [
        TurnOutcome(tool_count=2, unique_tool_count=1, successful_unique_tool_count=0, iterations=4, tier="mini")
    ]
    result = compute_routing_score("thanks", trajectory=trajectory)
    assert result.tier == "mini"
    assert "complex_followup" not in result.signals


def test_simple_prompt_is_mini() -> None:
    result = compute_routing_score("hi")
    assert result.tier == "mini"
    assert 0.0 <= result.score < TIER_THRESHOLDS["power"]
    assert "staying mini" in result.reason


def test_skill_match_is_capped_at_power() -> None:
    """Even a maxed-out score stays on power when a skill drives the turn."""

    result = compute_routing_score(
        "run my weekly review",
        trajectory=[HEAVY_TURN],
        skill_entries=[WEEKLY_REVIEW],
        ludicrous_enabled=True,
        mentions_direct_mcp_server=True,
        session_used_local_mcp=True,
    )
    assert result.score >= TIER_THRESHOLDS["ludicrous"]
    assert result.tier == "power"
    assert "capped at power" in result.reason


def test_ludicrous_disabled_by_default() -> None:
    result = compute_routing_score(
        "run my weekly review",
        trajectory=[HEAVY_TURN],
        mentions_direct_mcp_server=True,
        session_used_local_mcp=True,
        ludicrous_enabled=False,
    )
    assert result.tier != "ludicrous"


def test_score_is_always_bounded() -> None:
    prompts = ["", "x" * 5000, "compare " * 200, "[[A]] [[B]] [[C]] [[D]] @e @f vs. better worse"]
    for prompt in prompts:
        result = compute_routing_score(prompt, trajectory=[HEAVY_TURN] * 3, session_used_local_mcp=True)
        assert 0.0 <= result.score <= 1.0


# ---------------------------------------------------------------------------
# Session integration
# ---------------------------------------------------------------------------
def test_record_turn_outcome_keeps_a_ring() -> None:
    session = Session(now=lambda: 42.0, trajectory_max=3)
    for count in range(5):
        record_turn_outcome(session, tool_call_count=count, iterations=1)
    assert [t.tool_count for t in session.trajectory] == [2, 3, 4]
    assert session.trajectory[-1].unique_tool_count == 4
    assert session.trajectory[-1].successful_unique_tool_count == 4
    assert session.trajectory[-1].timestamp == 42.0


def test_route_for_session_uses_session_state() -> None:
    session = Session()
    record_turn_outcome(
        session,
        tool_call_count=8,
        unique_tool_count=5,
        successful_unique_tool_count=3,
        iterations=9,
        tier="power",
        escalated=True,
    )
    session.used_local_mcp = True
    result = route_for_session(session, "now apply those changes")
    assert result.tier == "power"
    assert "mcp_session_followup" in result.signals

    session.reset_conversation()
    assert route_for_session(session, "thanks").tier == "mini"
