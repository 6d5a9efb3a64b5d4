"""
LLM provider families and provider policy.

Two message-format families exist:

- ``anthropic``: assistant content is a list of ``text`` / ``tool_use`` blocks and tool results
  travel back as ``tool_result`` blocks inside one user message.
- ``openai``: assistant messages carry an optional ``tool_calls`` list and every tool result is a
  separate ``role: "tool"`` message.

Each family is a function table registered with :func:`family_op`.  The rest of the module holds
provider policy: tier model maps, cost rates, failover chains, cooldowns and retry rules.
"""

import logging
import random
import re
from dataclasses import dataclass
from typing import (
    Any,
    Callable,
    Dict,
    List,
    Literal,
    Mapping,
    Optional,
    Sequence,
    Tuple,
)

from chief.common import now_ms
from chief.config import settings
from chief.core.errors import TransportError
from chief.core.schema import (
    Tier,
    ToolCall,
)
from chief.tools.json_extract import parse_tool_arguments

logger = logging.getLogger(__name__)

Family = Literal["anthropic", "openai"]

VALID_LLM_PROVIDERS = ("anthropic", "openai", "gemini", "mistral")
_FAMILY_BY_PROVIDER: Dict[str, Family] = {
    "anthropic": "anthropic",
    "openai": "openai",
    "gemini": "openai",
    "mistral": "openai",
}


def format_family(provider: str) -> Family:
    """Message-format family for *provider*; unknown providers are treated as openai-compatible."""
    return _FAMILY_BY_PROVIDER.get(provider, "openai")


# ---------------------------------------------------------------------------
# Family function tables
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class ProviderFamily:
    """The four operations every message-format family implements."""

    name: Family
    extract_tool_calls: Callable[[Any], List[ToolCall]]
    extract_text: Callable[[Any], str]
    format_assistant: Callable[[Any], Dict[str, Any]]
    format_tool_results: Callable[[Sequence[Tuple[ToolCall, str]]], List[Dict[str, Any]]]


_FAMILY_OPS: Dict[str, Dict[str, Callable]] = {}
_FAMILY_OP_NAMES = ("extract_tool_calls", "extract_text", "format_assistant", "format_tool_results")


def family_op(family: Family, op: str) -> Callable:
    """
    Register *fn* as operation *op* of *family*.

    Raises
    ------
    ValueError
        If the operation name is unknown or already registered for the family.
    """
    if op not in _FAMILY_OP_NAMES:
        raise ValueError(f"Unknown family operation '{op}'.")
    ops = _FAMILY_OPS.setdefault(family, {})
    if op in ops:
        raise ValueError(f"Operation '{op}' is already registered for family '{family}'.")

    def wrapper(fn: Callable) -> Callable:
        ops[op] = fn
        return fn

    return wrapper


def get_family(provider: str) -> ProviderFamily:
    """Return the function table for *provider*'s format family."""
    name = format_family(provider)
    ops = _FAMILY_OPS[name]
    return ProviderFamily(name=name, **{op: ops[op] for op in _FAMILY_OP_NAMES})


def _first_message(response: Any) -> Mapping[str, Any]:
    choices = response.get("choices") if isinstance(response, Mapping) else None
    first = choices[0] if isinstance(choices, list) and choices else None
    message = first.get("message") if isinstance(first, Mapping) else None
    return message if isinstance(message, Mapping) else {}


def _blocks(response: Any) -> List[Mapping[str, Any]]:
    content = response.get("content") if isinstance(response, Mapping) else None
    return [b for b in content if isinstance(b, Mapping)] if isinstance(content, list) else []


@family_op("anthropic", "extract_tool_calls")
def _anthropic_tool_calls(response: Any) -> List[ToolCall]:
    return [
        ToolCall(id=str(block.get("id") or ""), name=str(block.get("name") or ""), arguments=block.get("input") or {})
        for block in _blocks(response)
        if block.get("type") == "tool_use"
    ]


@family_op("anthropic", "extract_text")
def _anthropic_text(response: Any) -> str:
    return "\n".join(block.get("text") or "" for block in _blocks(response) if block.get("type") == "text").strip()


@family_op("anthropic", "format_assistant")
def _anthropic_assistant(response: Any) -> Dict[str, Any]:
    content = response.get("content") if isinstance(response, Mapping) else None
    return {"role": "assistant", "content": content or []}


@family_op("anthropic", "format_tool_results")
def _anthropic_tool_results(entries: Sequence[Tuple[ToolCall, str]]) -> List[Dict[str, Any]]:
    return [
        {
            "role": "user",
            "content": [
                {"type": "tool_result", "tool_use_id": call.id, "content": content} for call, content in entries
            ],
        }
    ]


@family_op("openai", "extract_tool_calls")
def _openai_tool_calls(response: Any) -> List[ToolCall]:
    raw_calls = _first_message(response).get("tool_calls")
    calls = []
    for raw in raw_calls if isinstance(raw_calls, list) else []:
        function = raw.get("function") if isinstance(raw.get("function"), Mapping) else {}
        calls.append(
            ToolCall(
                id=str(raw.get("id") or ""),
                name=str(function.get("name") or ""),
                arguments=parse_tool_arguments(function.get("arguments") or "{}"),
            )
        )
    return calls


@family_op("openai", "extract_text")
def _openai_text(response: Any) -> str:
    return str(_first_message(response).get("content") or "").strip()


@family_op("openai", "format_assistant")
def _openai_assistant(response: Any) -> Dict[str, Any]:
    message = _first_message(response)
    result: Dict[str, Any] = {"role": "assistant", "content": message.get("content") or ""}
    tool_calls = message.get("tool_calls")
    # Some providers reject an empty tool_calls list.
    if isinstance(tool_calls, list) and tool_calls:
        result["tool_calls"] = tool_calls
    return result


@family_op("openai", "format_tool_results")
def _openai_tool_results(entries: Sequence[Tuple[ToolCall, str]]) -> List[Dict[str, Any]]:
    return [{"role": "tool", "tool_call_id": call.id, "content": content} for call, content in entries]


def extract_usage(provider: str, response: Any) -> Tuple[int, int]:
    """``(input_tokens, output_tokens)`` reported by the provider, zeros when absent."""
    usage = response.get("usage") if isinstance(response, Mapping) else None
    if not isinstance(usage, Mapping):
        return 0, 0
    if format_family(provider) == "anthropic":
        return int(usage.get("input_tokens") or 0), int(usage.get("output_tokens") or 0)
    return int(usage.get("prompt_tokens") or 0), int(usage.get("completion_tokens") or 0)


# ---------------------------------------------------------------------------
# Models and costs
# ---------------------------------------------------------------------------
DEFAULT_LLM_MODELS: Dict[str, str] = {
    "anthropic": "claude-haiku-4-5-20251001",
    "openai": "gpt-5-mini",
    "gemini": "gemini-2.5-flash",
    "mistral": "mistral-small-latest",
}
POWER_LLM_MODELS: Dict[str, str] = {
    "anthropic": "claude-sonnet-4-6",
    "openai": "gpt-4.1",
    "gemini": "gemini-3-flash-preview",
    "mistral": "mistral-medium-latest",
}
LUDICROUS_LLM_MODELS: Dict[str, str] = {
    "anthropic": "claude-opus-4-6",
    "openai": "gpt-5.2",
    "gemini": "gemini-3.1-pro-preview-customtools",
    "mistral": "mistral-large-2512",
}
TIER_MODELS: Dict[str, Dict[str, str]] = {
    "mini": DEFAULT_LLM_MODELS,
    "power": POWER_LLM_MODELS,
    "ludicrous": LUDICROUS_LLM_MODELS,
}

# USD per million tokens: (input, output)
LLM_MODEL_COSTS: Dict[str, Tuple[float, float]] = {
    "claude-haiku-4-5-20251001": (1.0, 5.0),
    "claude-sonnet-4-6": (3.0, 15.0),
    "claude-sonnet-4-5-20250929": (3.0, 15.0),
    "claude-opus-4-6": (5.0, 25.0),
    "gpt-5-mini": (0.25, 2.0),
    "gpt-4o-mini": (0.15, 0.60),
    "gpt-4o": (2.5, 10.0),
    "gpt-4.1": (2.0, 8.0),
    "gpt-5.2": (1.75, 14.0),
    "gemini-2.5-flash": (0.30, 2.50),
    "mistral-small-latest": (0.10, 0.30),
    "mistral-medium-latest": (0.40, 2.0),
    "mistral-large-2512": (0.50, 1.50),
}
FALLBACK_COST_RATES = (2.5, 10.0)


def get_model_for_tier(provider: str, tier: Tier) -> str:
    """Model for *provider* at *tier*; missing entries fall back to power, then to the anthropic mini model."""
    model = TIER_MODELS.get(tier, {}).get(provider)
    if model is None and tier == "ludicrous":
        model = POWER_LLM_MODELS.get(provider)
    return model or TIER_MODELS.get(tier, DEFAULT_LLM_MODELS).get("anthropic") or DEFAULT_LLM_MODELS["anthropic"]


def get_model_cost_rates(model: str) -> Dict[str, float]:
    input_per_m, output_per_m = LLM_MODEL_COSTS.get(model, FALLBACK_COST_RATES)
    return {"input_per_m": input_per_m, "output_per_m": output_per_m}


def compute_call_cost(model: str, input_tokens: int, output_tokens: int) -> float:
    rates = get_model_cost_rates(model)
    return (input_tokens * rates["input_per_m"] + output_tokens * rates["output_per_m"]) / 1_000_000


# ---------------------------------------------------------------------------
# Failover
# ---------------------------------------------------------------------------
FAILOVER_CHAINS: Dict[str, List[str]] = {
    "mini": ["anthropic", "openai", "gemini", "mistral"],
    "power": ["anthropic", "openai", "gemini", "mistral"],
    "ludicrous": ["anthropic", "openai", "gemini", "mistral"],
}


class ProviderCooldowns:
    """Per-provider cooldown expiries in epoch ms; expired entries are swept on every write."""

    def __init__(self, cooldown_ms: float | None = None, now: Callable[[], float] = now_ms) -> None:
        self.cooldown_ms = settings.PROVIDER_COOLDOWN_SECONDS * 1000 if cooldown_ms is None else cooldown_ms
        self._now = now
        self._expiry: Dict[str, float] = {}

    def is_provider_on_cooldown(self, provider: str) -> bool:
        expiry = self._expiry.get(provider)
        if expiry is None:
            return False
        if self._now() >= expiry:
            del self._expiry[provider]
            return False
        return True

    def set_provider_cooldown(self, provider: str) -> None:
        now = self._now()
        self._expiry[provider] = now + self.cooldown_ms
        for key in [k for k, expiry in self._expiry.items() if now >= expiry]:
            del self._expiry[key]
        logger.info("Provider %s cooling down for %.0fs", provider, self.cooldown_ms / 1000)


def get_failover_providers(
    primary: str,
    api_keys: Mapping[str, str],
    tier: Tier = "mini",
    cooldowns: ProviderCooldowns | None = None,
) -> List[str]:
    """
    Providers to try after *primary*, in chain order starting just after it.

    Providers without an API key or currently cooling down are skipped.
    """
    chain = FAILOVER_CHAINS.get(tier) or FAILOVER_CHAINS["mini"]
    if primary in chain:
        idx = chain.index(primary)
        rotated = chain[idx + 1 :] + chain[:idx]
    else:
        rotated = [p for p in chain if p != primary]
    return [
        p
        for p in rotated
        if api_keys.get(p) and (cooldowns is None or not cooldowns.is_provider_on_cooldown(p))
    ]


RETRYABLE_STATUSES = frozenset({429, 500, 502, 503, 504})
_FAILOVER_MARKERS = (
    "rate limit",
    "429",
    "error 500",
    "error 502",
    "error 503",
    "error 504",
    "timeout",
    "timed out",
    "service_tier_capacity_exceeded",
    "overloaded",
)


def should_retry_llm_status(status: Optional[int]) -> bool:
    return status in RETRYABLE_STATUSES


def is_failover_eligible_error(error: BaseException) -> bool:
    """Rate limits, gateway errors, timeouts and overload move the turn to the next provider."""
    if isinstance(error, TransportError) and error.status is not None and should_retry_llm_status(error.status):
        return True
    message = str(error).lower()
    return any(marker in message for marker in _FAILOVER_MARKERS)


def retry_delay_seconds(attempt: int, base_delay_ms: int | None = None) -> float:
    """Exponential backoff with up to 250 ms of jitter; *attempt* starts at 1."""
    base = settings.LLM_RETRY_BASE_DELAY_MS if base_delay_ms is None else base_delay_ms
    return (base * (2 ** (attempt - 1)) + random.randint(0, 250)) / 1000


# ---------------------------------------------------------------------------
# Tool filtering
# ---------------------------------------------------------------------------
_NEEDS_BT = re.compile(r"\b(tasks?|todo|project|done|overdue|due|bt_|better\s*tasks?|assign|delegate|waiting.for)\b")
_NEEDS_CRON = re.compile(r"\b(cron|schedule[ds]?|recurring|every\s+\d+\s+(min|hour)|hourly|timer|remind\s+me\s+in)\b")
_NEEDS_COMPOSIO = re.compile(r"\b(composio|connect|integration|install|deregister|connected\s+tools?)\b")


def filter_tools_by_relevance(tools: Sequence[Any], prompt: str) -> List[Any]:
    """
    Drop optional tool categories the prompt does not mention.

    Task, cron and Composio meta tools are only offered when the prompt asks for them; every other
    tool is always kept.
    """
    text = str(prompt or "").lower()
    gates = (
        ("roam_bt_", _NEEDS_BT.search(text) is not None),
        ("cos_cron_", _NEEDS_CRON.search(text) is not None),
        ("COMPOSIO_", _NEEDS_COMPOSIO.search(text) is not None),
    )
    filtered = []
    for tool in tools:
        name = tool.get("name", "") if isinstance(tool, Mapping) else getattr(tool, "name", "")
        gate = next((needed for prefix, needed in gates if name.startswith(prefix)), True)
        if gate:
            filtered.append(tool)
    if len(filtered) < len(tools):
        logger.debug("Tool filtering: %d -> %d tools", len(tools), len(filtered))
    return filtered


def tool_schemas_for_provider(provider: str, tools: Sequence[Any]) -> List[Dict[str, Any]]:
    """Render tool descriptors in the request shape each family expects."""
    rendered = []
    for tool in tools:
        name, description, schema = tool.name, tool.description, tool.input_schema
        if format_family(provider) == "anthropic":
            rendered.append({"name": name, "description": description, "input_schema": schema})
        else:
            rendered.append(
                {"type": "function", "function": {"name": name, "description": description, "parameters": schema}}
            )
    return rendered
