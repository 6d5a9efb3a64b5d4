"""
Complexity-based model tier selection.

Three independent strategies each produce a score in [0, 1]:

1. **Tool count**: how many tool calls the prompt is likely to need, taken from a matching skill's
   ``Sources`` list or estimated from keyword signals.
2. **Prompt complexity**: cheap lexical features (length, entities, temporal language, comparison,
   chaining, synthesis, ...).
3. **Trajectory**: what recent turns in this session actually cost (tools, iterations, escalations)
   and whether the current prompt is a short follow-up to a complex turn.

:func:`compute_routing_score` blends them with :data:`STRATEGY_WEIGHTS`, applies soft boosts and
picks ``mini`` / ``power`` / ``ludicrous`` against :data:`TIER_THRESHOLDS`.
"""

import logging
import re
from typing import (
    Any,
    Callable,
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
    Sequence,
    TypedDict,
)

from chief.config import settings
from chief.core.schema import (
    RoutingResult,
    ScoreBreakdown,
    Tier,
    TurnOutcome,
)
from chief.core.session import Session

logger = logging.getLogger(__name__)

TIER_THRESHOLDS: Dict[str, float] = {
    "power": settings.TIER_POWER_THRESHOLD,
    "ludicrous": settings.TIER_LUDICROUS_THRESHOLD,
}

STRATEGY_WEIGHTS: Dict[str, float] = {
    "tool_count": 0.40,
    "prompt_complexity": 0.35,
    "trajectory": 0.25,
}

SKILL_MATCH_MIN_OVERLAP = 0.5
SKILL_BOOST_THREE_TOOLS = 0.20
SKILL_BOOST_FOUR_PLUS_TOOLS = 0.25
DIRECT_MCP_MENTION_BOOST = 0.08
MCP_SESSION_FOLLOWUP_BOOST = 0.15
COMPLEX_FOLLOWUP_MIN_TRAJECTORY = 0.4
SHORT_FOLLOWUP_MAX_WORDS = 12


def validate_routing_tables(
    thresholds: Mapping[str, float] = TIER_THRESHOLDS,
    weights: Mapping[str, float] = STRATEGY_WEIGHTS,
) -> None:
    """Raise ``ValueError`` when the weights or thresholds are inconsistent."""
    total = sum(weights.values())
    if abs(total - 1.0) > 1e-3:
        raise ValueError(f"Strategy weights must sum to 1.0 (got {total:.4f})")
    power, ludicrous = thresholds["power"], thresholds["ludicrous"]
    if not (0 < power < ludicrous < 1):
        raise ValueError(f"Tier thresholds must satisfy 0 < power < ludicrous < 1 (got {power}, {ludicrous})")


validate_routing_tables()


class SkillEntry(TypedDict):
    title: str
    content: str


class SkillSource(TypedDict):
    tool: str
    description: str


SkillSourceParser = Callable[[str, Iterable[str]], Sequence[Any]]


def _word_count(text: str) -> int:
    # Mirrors a plain whitespace split: leading whitespace yields an empty first token.
    return len(re.split(r"\s+", text))


# ---------------------------------------------------------------------------
# Skill sources
# ---------------------------------------------------------------------------
_SOURCES_HEADING = re.compile(r"^\s*-?\s*Sources\s*(?:—|:)?", re.IGNORECASE)
_LEADING_WS = re.compile(r"^(\s*)")


def parse_skill_sources(content: str, known_tool_names: Iterable[str] = ()) -> List[SkillSource]:
    """
    Read the tool lines nested under a skill's ``Sources`` heading.

    Each indented line contributes the text before the first ``—`` as the tool name.  Parsing stops
    at the first non-blank line that is not indented deeper than the heading.  *known_tool_names*,
    when non-empty, is used only to log unknown sources.
    """
    known = set(known_tool_names)
    sources: List[SkillSource] = []
    in_sources = False
    source_indent = -1
    for line in str(content or "").split("\n"):
        if not in_sources:
            if _SOURCES_HEADING.search(line):
                in_sources = True
                source_indent = len(_LEADING_WS.match(line).group(1))
            continue
        indent = len(_LEADING_WS.match(line).group(1))
        stripped = line.strip()
        if indent > source_indent and stripped:
            tool_name = re.split(r"\s*—\s*", re.sub(r"^-\s*", "", stripped))[0].strip()
            if tool_name:
                if known and tool_name not in known:
                    logger.debug("Skill source '%s' is not a registered tool", tool_name)
                sources.append(SkillSource(tool=tool_name, description=stripped))
        elif stripped:
            break
    return sources


# ---------------------------------------------------------------------------
# Strategy 1: tool count
# ---------------------------------------------------------------------------
_TOOL_SIGNALS = [
    (re.compile(r"\b(calendar|schedule|meeting|events?)\b", re.I), 1),
    (re.compile(r"\b(email|gmail|inbox|messages?)\b", re.I), 1),
    (re.compile(r"\b(tasks?|todos?|overdue|due\s+(?:today|this\s+week))\b", re.I), 1),
    (re.compile(r"\b(projects?|project\s+status)\b", re.I), 2),
    (re.compile(r"\b(search|find|look\s*up)\b", re.I), 1),
    (re.compile(r"\b(create|add|make|write|save)\b", re.I), 1),
    (re.compile(r"\b(update|modify|change|edit)\b", re.I), 1),
    (re.compile(r"\b(delete|remove|cancel)\b", re.I), 1),
    (re.compile(r"\b(memory|remember|recall)\b", re.I), 1),
    (re.compile(r"\b(weather|forecast)\b", re.I), 1),
    # compound intent
    (re.compile(r"\b(and\s+then|after\s+that|also|plus)\b", re.I), 1),
    (re.compile(r"\b(compare|versus|vs\.?|trade-?offs?)\b", re.I), 1),
]


def tool_count_to_score(estimated_tools: int) -> float:
    """0 → 0.0, 1-2 → 0.1-0.3, 3-5 → 0.3-0.6, 6+ → 0.6-1.0."""
    if estimated_tools <= 0:
        return 0.0
    if estimated_tools <= 2:
        return 0.1 + (estimated_tools / 2) * 0.2
    if estimated_tools <= 5:
        return 0.3 + ((estimated_tools - 2) / 3) * 0.3
    return min(1.0, 0.6 + ((estimated_tools - 5) / 5) * 0.4)


def score_tool_count(
    prompt: str,
    skill_entries: Sequence[Mapping[str, str]] = (),
    known_tool_names: Iterable[str] = (),
    skill_source_parser: Optional[SkillSourceParser] = parse_skill_sources,
) -> Dict[str, Any]:
    """Return ``{"score", "estimated_tools", "matched_skill"}``."""
    lower = prompt.lower()
    estimated = 0
    matched_skill: Optional[str] = None

    if skill_source_parser is not None and skill_entries:
        best: Optional[Mapping[str, str]] = None
        best_score = 0.0
        for entry in skill_entries:
            title_words = [w for w in (entry.get("title") or "").lower().split() if len(w) > 2]
            if not title_words:
                continue
            overlap = sum(1 for word in title_words if word in lower)
            match_score = overlap / len(title_words)
            if match_score > best_score and match_score >= SKILL_MATCH_MIN_OVERLAP:
                best_score = match_score
                best = entry
        if best is not None:
            matched_skill = best.get("title")
            estimated = len(skill_source_parser(best.get("content") or "", known_tool_names))

    if estimated == 0:
        estimated = sum(tools for pattern, tools in _TOOL_SIGNALS if pattern.search(prompt))

    return {
        "score": tool_count_to_score(estimated),
        "estimated_tools": estimated,
        "matched_skill": matched_skill,
    }


# ---------------------------------------------------------------------------
# Strategy 2: prompt complexity
# ---------------------------------------------------------------------------
_PAGE_REF = re.compile(r"\[\[[^\]]+\]\]")
_AT_MENTION = re.compile(r"@\w+")
_PROPER_NOUN = re.compile(r"\b[A-Z][a-z]+(?:\s+[A-Z][a-z]+)*")
_TEMPORAL = [
    re.compile(r"\b(this\s+week|next\s+week|last\s+week|past\s+\d+\s+days?)\b", re.I),
    re.compile(r"\b(since|until|between|from\s+\w+\s+to)\b", re.I),
    re.compile(r"\b(yesterday|tomorrow|today|tonight|this\s+morning)\b", re.I),
    re.compile(r"\b(overdue|upcoming|deadline|due\s+(date|by|before))\b", re.I),
    re.compile(
        r"\b(january|february|march|april|may|june|july|august|september|october|november|december)\b",
        re.I,
    ),
]
_DELIBERATION = re.compile(r"\b(should\s+i|would\s+it\s+be|is\s+it\s+worth|pros?\s+and\s+cons?|trade-?offs?)\b", re.I)
_COMPARISON = re.compile(r"\b(compare|versus|vs\.?|better|worse|alternatively)\b", re.I)
_CONDITIONAL = re.compile(r"\b(if|unless|assuming|depending\s+on|in\s+case)\b", re.I)
_CHAIN_MARKER = re.compile(
    r"\b(and\s+then|after\s+that|once\s+(?:that'?s?|you'?ve?)|then\s+also|next|finally|first|second|third)\b",
    re.I,
)
_AMBIGUITY = re.compile(r"\b(not\s+sure|maybe|i\s+think|probably|might|could\s+be|vague|unclear)\b", re.I)
_SYNTHESIS = re.compile(
    r"\b(summarise|summarize|synthesise|synthesize|analyse|analyze|review|reflect|retrospective|retro)\b", re.I
)
_PLANNING = re.compile(r"\b(plan|strategy|prioriti[sz]e|roadmap|architect)\b", re.I)
_COMPOSITION = re.compile(r"\b(draft|compose|write|author)\b", re.I)
_EXPLICIT_DEPTH = re.compile(
    r"\b(don'?t\s+just|not\s+just|more\s+than\s+just|actually|thoroughly|comprehensive|in[- ]depth)\b", re.I
)


def score_prompt_complexity(prompt: str) -> Dict[str, Any]:
    """Return ``{"score", "signals"}``; the raw additive score is divided by 10 and capped at 1."""
    signals: List[str] = []
    raw = 0.0
    words = _word_count(prompt)

    if words > 100:
        raw += 2.0
        signals.append("long_prompt")
    elif words > 50:
        raw += 1.0
        signals.append("medium_prompt")
    elif words > 25:
        raw += 0.5

    entity_count = (
        len(_PAGE_REF.findall(prompt))
        + len(_AT_MENTION.findall(prompt))
        + len(_PROPER_NOUN.findall(prompt)) // 2
    )
    if entity_count >= 4:
        raw += 2.0
        signals.append("many_entities")
    elif entity_count >= 2:
        raw += 1.0
        signals.append("multiple_entities")

    temporal_hits = sum(1 for pattern in _TEMPORAL if pattern.search(prompt))
    if temporal_hits >= 2:
        raw += 1.5
        signals.append("temporal_reasoning")
    elif temporal_hits == 1:
        raw += 0.5

    if _DELIBERATION.search(prompt):
        raw += 1.5
        signals.append("deliberation")
    if _COMPARISON.search(prompt):
        raw += 1.5
        signals.append("comparison")
    if entity_count >= 2 and "comparison" in signals:
        raw += 1.5
        signals.append("multi_entity_comparison")
    if _CONDITIONAL.search(prompt):
        raw += 0.5
        signals.append("conditional")

    chain_markers = len(_CHAIN_MARKER.findall(prompt.lower()))
    if chain_markers >= 3:
        raw += 2.0
        signals.append("multi_step_chain")
    elif chain_markers >= 1:
        raw += 0.75
        signals.append("sequenced")

    if _AMBIGUITY.search(prompt):
        raw += 1.0
        signals.append("ambiguous")
    if _SYNTHESIS.search(prompt):
        raw += 1.5
        signals.append("synthesis")
    if _PLANNING.search(prompt):
        raw += 1.0
        signals.append("planning")
    if _COMPOSITION.search(prompt) and words > 15:
        raw += 0.75
        signals.append("composition")
    if _EXPLICIT_DEPTH.search(prompt):
        raw += 1.0
        signals.append("explicit_depth")

    return {"score": min(1.0, raw / 10), "signals": signals}


# ---------------------------------------------------------------------------
# Strategy 3: trajectory
# ---------------------------------------------------------------------------
_WRITE_INTENT = re.compile(r"\b(apply|do|create|make|fix|update|write|save|implement|build|set\s*up|draft)\b", re.I)


def _successful_unique(turn: TurnOutcome) -> int:
    if turn.successful_unique_tool_count is not None:
        return turn.successful_unique_tool_count
    if turn.unique_tool_count is not None:
        return turn.unique_tool_count
    return turn.tool_count


def _was_complex(turn: TurnOutcome) -> bool:
    successful = _successful_unique(turn)
    return (
        (turn.tool_count >= 4 and successful >= 2)
        or (turn.iterations >= 3 and turn.tool_count >= 2 and successful >= 2)
        or turn.tier != "mini"
    )


def score_trajectory(prompt: str, trajectory: Sequence[TurnOutcome]) -> Dict[str, Any]:
    """
    Score the session so far as a predictor for the next turn.

    Retries caused by guards inflate iteration counts without real complexity, so "complex"
    follow-ups require distinct successful tools, not just many iterations.
    """
    signals: List[str] = []
    turns = list(trajectory)
    if not turns:
        return {"score": 0.0, "signals": signals}

    weighted_sum = 0.0
    weight_total = 0.0
    for i, turn in enumerate(turns):
        weight = (i + 1) / len(turns)
        weighted_sum += turn.tool_count * weight
        weight_total += weight
    avg_tools = weighted_sum / weight_total if weight_total > 0 else 0.0
    if avg_tools >= 5:
        signals.append("high_tool_trajectory")
    elif avg_tools >= 3:
        signals.append("moderate_tool_trajectory")

    recent = turns[-3:]
    avg_iterations = sum(t.iterations for t in recent) / len(recent)
    if avg_iterations >= 4:
        signals.append("high_iteration_trajectory")

    escalations = sum(1 for t in recent if t.escalated or t.tier != "mini")
    if escalations >= 2:
        signals.append("repeated_escalation")

    last = turns[-1]
    if _word_count(prompt) <= SHORT_FOLLOWUP_MAX_WORDS and _was_complex(last):
        signals.append("complex_followup")
    if _WRITE_INTENT.search(prompt) and last.tool_count >= 3:
        signals.append("write_after_gather")

    raw = min(3.0, avg_tools * 0.5) + min(2.0, avg_iterations * 0.4) + escalations * 0.8
    if "complex_followup" in signals:
        raw += 2.0
    if "write_after_gather" in signals:
        raw += 1.5
    return {"score": min(1.0, raw / 8), "signals": signals}


def record_turn_outcome(
    session: Session,
    tool_call_count: int = 0,
    unique_tool_count: int | None = None,
    successful_unique_tool_count: int | None = None,
    iterations: int = 0,
    tier: Tier = "mini",
    escalated: bool = False,
    failed_over: bool = False,
) -> TurnOutcome:
    """Append a completed turn to the session trajectory (ring of the last N turns)."""
    unique = tool_call_count if unique_tool_count is None else unique_tool_count
    outcome = TurnOutcome(
        tool_count=tool_call_count,
        unique_tool_count=unique,
        successful_unique_tool_count=(
            unique if successful_unique_tool_count is None else successful_unique_tool_count
        ),
        iterations=iterations,
        tier=tier,
        escalated=escalated,
        failed_over=failed_over,
        timestamp=session.now(),
    )
    session.append_outcome(outcome)
    return outcome


# ---------------------------------------------------------------------------
# Composite router
# ---------------------------------------------------------------------------
def compute_routing_score(
    prompt: str,
    trajectory: Sequence[TurnOutcome] = (),
    skill_entries: Sequence[Mapping[str, str]] = (),
    known_tool_names: Iterable[str] = (),
    skill_source_parser: Optional[SkillSourceParser] = parse_skill_sources,
    ludicrous_enabled: bool | None = None,
    mentions_direct_mcp_server: bool = False,
    session_used_local_mcp: bool = False,
) -> RoutingResult:
    """
    Blend the three strategies into a routing decision.

    Parameters
    ----------
    prompt:
        The raw user message.
    trajectory:
        Recent turn outcomes, oldest first (usually ``session.trajectory``).
    skill_entries:
        ``{"title", "content"}`` mappings for the user's skills.
    ludicrous_enabled:
        Whether the top tier may be selected; defaults to ``LUDICROUS_TIER_ENABLED``.
    mentions_direct_mcp_server, session_used_local_mcp:
        Soft boosts for turns that involve local MCP servers.

    Returns
    -------
    RoutingResult
        Score in [0, 1], tier, reason, flattened signals and a per-strategy breakdown.
    """
    if ludicrous_enabled is None:
        ludicrous_enabled = settings.LUDICROUS_TIER_ENABLED
    prompt = str(prompt or "")

    tc = score_tool_count(prompt, skill_entries, known_tool_names, skill_source_parser)
    pc = score_prompt_complexity(prompt)
    tr = score_trajectory(prompt, trajectory)

    score = (
        tc["score"] * STRATEGY_WEIGHTS["tool_count"]
        + pc["score"] * STRATEGY_WEIGHTS["prompt_complexity"]
        + tr["score"] * STRATEGY_WEIGHTS["trajectory"]
    )

    # A matched multi-source skill is enough on its own to clear the power threshold.
    if tc["matched_skill"] and tc["estimated_tools"] >= 3:
        boost = SKILL_BOOST_FOUR_PLUS_TOOLS if tc["estimated_tools"] >= 4 else SKILL_BOOST_THREE_TOOLS
        score = min(1.0, score + boost)
    if mentions_direct_mcp_server:
        score = min(1.0, score + DIRECT_MCP_MENTION_BOOST)
    if session_used_local_mcp:
        score = min(1.0, score + MCP_SESSION_FOLLOWUP_BOOST)
    if "complex_followup" in tr["signals"] and tr["score"] >= COMPLEX_FOLLOWUP_MIN_TRAJECTORY:
        score = max(score, TIER_THRESHOLDS["power"])
    score = max(0.0, min(1.0, score))

    signals = [f"skill:{tc['matched_skill']}"] if tc["matched_skill"] else []
    signals += pc["signals"] + tr["signals"]
    if session_used_local_mcp:
        signals.append("mcp_session_followup")

    tier: Tier
    if ludicrous_enabled and score >= TIER_THRESHOLDS["ludicrous"]:
        # Skill-driven work follows a prescribed tool sequence; power is always enough.
        if tc["matched_skill"]:
            tier = "power"
            reason = f'skill-matched "{tc["matched_skill"]}", capped at power (score was {score:.2f})'
        else:
            tier = "ludicrous"
            reason = f"score {score:.2f} >= {TIER_THRESHOLDS['ludicrous']} (ludicrous)"
    elif score >= TIER_THRESHOLDS["power"]:
        tier = "power"
        reason = f"score {score:.2f} >= {TIER_THRESHOLDS['power']} (power)"
    else:
        tier = "mini"
        reason = f"score {score:.2f} < {TIER_THRESHOLDS['power']} (staying mini)"

    logger.debug("Routing decision: %s (%s) signals=%s", tier, reason, signals)
    return RoutingResult(
        score=score,
        tier=tier,
        reason=reason,
        signals=signals,
        breakdown=ScoreBreakdown(
            tool_count={
                "score": tc["score"],
                "estimated": tc["estimated_tools"],
                "matched_skill": tc["matched_skill"],
            },
            prompt_complexity={"score": pc["score"], "signals": pc["signals"]},
            trajectory={"score": tr["score"], "signals": tr["signals"]},
        ),
    )


def route_for_session(session: Session, prompt: str, **kwargs: Any) -> RoutingResult:
    """Route *prompt* using the session's trajectory and local-MCP follow-up state."""
    kwargs.setdefault("session_used_local_mcp", session.used_local_mcp)
    return compute_routing_score(prompt, trajectory=session.trajectory, **kwargs)
