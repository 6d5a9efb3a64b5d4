"""
Main orchestration loop for chief.

One call to :meth:`AgentLoop.run` is one user turn:

1. route the prompt to a tier and pick that tier's model for the active provider;
2. call the LLM (retrying transient failures, failing over to the next provider when needed);
3. dispatch every tool call in order through :class:`~chief.agent.tool_executor.ToolDispatcher`;
4. feed the results back and repeat until the model answers in text or the iteration cap is hit.

This module and :class:`HttpxLlmTransport` are the only places that talk to an LLM.
"""

import asyncio
import logging
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
    Protocol,
    Sequence,
)

import httpx
from pydantic import (
    BaseModel,
    Field,
)

from chief.agent.live_data import (
    PromptIntent,
    classify_prompt_intent,
    is_external_data_tool_call,
    is_successful_external_tool_result,
)
from chief.agent.message_budget import (
    OVER_BUDGET_MESSAGE,
    enforce_message_budget,
    is_over_budget,
)
from chief.agent.message_converter import (
    convert_messages_for_provider,
    detect_successful_write_tool_calls_in_messages,
)
from chief.agent.mutation import (
    extract_composio_session_id,
    with_composio_session_args,
)
from chief.agent.providers import (
    ProviderCooldowns,
    compute_call_cost,
    extract_usage,
    filter_tools_by_relevance,
    format_family,
    get_failover_providers,
    get_family,
    get_model_for_tier,
    is_failover_eligible_error,
    retry_delay_seconds,
    should_retry_llm_status,
    tool_schemas_for_provider,
)
from chief.agent.tool_executor import ToolDispatcher
from chief.config import settings
from chief.core.errors import (
    CapExceededError,
    TransportError,
    UserDeniedError,
)
from chief.core.schema import (
    Tier,
    ToolCall,
)
from chief.routing.tier_router import (
    record_turn_outcome,
    route_for_session,
)
from chief.security.core import (
    detect_claimed_action_without_tool_call,
    wrap_untrusted_with_injection_scan,
)
from chief.security.pii import (
    scrub_pii,
    scrub_pii_from_messages,
)
from chief.tools.json_extract import safe_json_stringify
from chief.usage.tracker import UsageTracker

logger = logging.getLogger(__name__)

LLM_API_ENDPOINTS: Dict[str, str] = {
    "anthropic": "https://api.anthropic.com/v1/messages",
    "openai": "https://api.openai.com/v1/chat/completions",
    "gemini": "https://generativelanguage.googleapis.com/v1beta/openai/chat/completions",
    "mistral": "https://api.mistral.ai/v1/chat/completions",
}
ANTHROPIC_VERSION = "2023-06-01"
MAX_OUTPUT_TOKENS = 2500

MAX_ITERATIONS_MESSAGE = (
    "I stopped after reaching the tool-call limit for one request. Here is what I have so far; "
    "ask me to continue if you need more."
)
LIVE_DATA_UNVERIFIED_MESSAGE = (
    "I can't answer that reliably without checking live tools first. Please retry, and I'll fetch the "
    "real data before responding."
)

INTENT_GUIDANCE: Dict[PromptIntent, str] = {
    "external_data": (
        "This request is about data in a connected external system. Call the relevant tool and answer "
        "only from its result; never answer from memory or earlier turns."
    ),
    "memory_edit": (
        "The user asked to save something. Store it with the memory tool exactly as given and confirm "
        "only after the tool reports success."
    ),
    "meta": "The user is asking which tools are connected. Check connection status with a tool before answering.",
}


def compose_system_prompt(base: str, intent: PromptIntent) -> str:
    """Append the guidance section for *intent*; ``general`` turns use *base* unchanged."""
    guidance = INTENT_GUIDANCE.get(intent)
    if not guidance:
        return base
    section = f"## This request\n{guidance}"
    return f"{base.rstrip()}\n\n{section}" if base.strip() else section


# ---------------------------------------------------------------------------
# LLM transport
# ---------------------------------------------------------------------------
class LlmTransport(Protocol):
    """Sends one request to a provider and returns the decoded JSON response."""

    async def __call__(
        self,
        provider: str,
        model: str,
        system: str,
        messages: List[Dict[str, Any]],
        tools: List[Dict[str, Any]],
    ) -> Dict[str, Any]: ...


class HttpxLlmTransport:
    """
    Provider REST client built on :class:`httpx.AsyncClient`.

    Raises
    ------
    TransportError
        On non-2xx responses, timeouts and connection failures.  ``status`` carries the HTTP status
        when there was one.
    """

    def __init__(
        self,
        api_keys: Mapping[str, str] | None = None,
        timeout: float | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.api_keys = dict(api_keys if api_keys is not None else settings.provider_api_keys())
        self.timeout = settings.LLM_REQUEST_TIMEOUT_SECONDS if timeout is None else timeout
        self._client = client

    def _request(
        self, provider: str, model: str, system: str, messages: List[Dict[str, Any]], tools: List[Dict[str, Any]]
    ) -> tuple[Dict[str, str], Dict[str, Any]]:
        key = self.api_keys.get(provider) or ""
        if format_family(provider) == "anthropic":
            headers = {"x-api-key": key, "anthropic-version": ANTHROPIC_VERSION, "content-type": "application/json"}
            body: Dict[str, Any] = {"model": model, "max_tokens": MAX_OUTPUT_TOKENS, "system": system, "messages": messages}
        else:
            headers = {"Authorization": f"Bearer {key}", "content-type": "application/json"}
            body = {"model": model, "messages": [{"role": "system", "content": system}] + messages}
        if tools:
            body["tools"] = tools
        return headers, body

    async def __call__(
        self,
        provider: str,
        model: str,
        system: str,
        messages: List[Dict[str, Any]],
        tools: List[Dict[str, Any]],
    ) -> Dict[str, Any]:
        label = provider.capitalize()
        headers, body = self._request(provider, model, system, messages, tools)
        url = LLM_API_ENDPOINTS.get(provider, LLM_API_ENDPOINTS["openai"])
        try:
            if self._client is not None:
                response = await self._client.post(url, headers=headers, json=body, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(url, headers=headers, json=body)
        except httpx.TimeoutException as exc:
            raise TransportError(f"{label} request timeout: {exc}", provider=provider) from exc
        except httpx.HTTPError as exc:
            raise TransportError(f"{label} connection error: {exc}", provider=provider) from exc

        if response.status_code == 429:
            raise TransportError(f"{label} rate limit hit. Try again in a moment.", status=429, provider=provider)
        if response.status_code >= 400:
            raise TransportError(
                f"{label} API error {response.status_code}: {response.text[:500]}",
                status=response.status_code,
                provider=provider,
            )
        return response.json()


# ---------------------------------------------------------------------------
# Turn state and result
# ---------------------------------------------------------------------------
class AgentResult(BaseModel):
    """What a finished turn hands back to the host."""

    text: str = ""
    provider: str
    model: str
    tier: Tier = "mini"
    iterations: int = 0
    tool_calls: List[str] = Field(default_factory=list)
    failed_over: bool = False
    cost_usd: float = 0.0
    messages: List[Dict[str, Any]] = Field(default_factory=list)


class _TurnState:
    def __init__(self, provider: str, model: str, tier: Tier, system: str = "") -> None:
        self.provider = provider
        self.model = model
        self.tier = tier
        self.system = system
        self.tried = {provider}
        self.failed_over = False
        self.cost = 0.0
        self.composio_session_id: Optional[str] = None


class AgentLoop:
    """
    Drives a single session's turns.

    Parameters
    ----------
    dispatcher:
        Tool dispatcher bound to the session; its registry is also the tool catalogue offered to
        the model.
    tracker:
        Usage tracker for cost, counters and the daily cap.
    transport:
        LLM caller; defaults to :class:`HttpxLlmTransport`.
    sleep:
        Awaitable used between retries.
    """

    def __init__(
        self,
        dispatcher: ToolDispatcher,
        tracker: UsageTracker,
        transport: LlmTransport | None = None,
        provider: str | None = None,
        api_keys: Mapping[str, str] | None = None,
        system_prompt: str = "",
        cooldowns: ProviderCooldowns | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        pii_scrub: bool | None = None,
        max_iterations: int | None = None,
    ) -> None:
        self.dispatcher = dispatcher
        self.session = dispatcher.session
        self.registry = dispatcher.registry
        self.tracker = tracker
        self.api_keys = dict(api_keys if api_keys is not None else settings.provider_api_keys())
        self.transport = transport or HttpxLlmTransport(self.api_keys)
        self.provider = provider or settings.DEFAULT_PROVIDER
        self.system_prompt = system_prompt
        self.cooldowns = cooldowns or ProviderCooldowns()
        self.sleep = sleep
        self.pii_scrub = settings.PII_SCRUB_ENABLED if pii_scrub is None else pii_scrub
        self.max_iterations = max_iterations or settings.MAX_AGENT_ITERATIONS

    # ------------------------------------------------------------------
    # LLM calls
    # ------------------------------------------------------------------
    def _check_cap(self) -> None:
        cap = self.tracker.is_daily_cap_exceeded()
        if cap["exceeded"]:
            raise CapExceededError(cap["cap"], cap["spent"])

    async def _call_with_retry(self, state: _TurnState, messages: List[Dict[str, Any]], tools: Sequence[Any]) -> Dict[str, Any]:
        system, outbound = state.system, messages
        if self.pii_scrub:
            system, outbound = scrub_pii(system), scrub_pii_from_messages(messages)
        schemas = tool_schemas_for_provider(state.provider, tools)
        attempt = 0
        while True:
            attempt += 1
            try:
                return await self.transport(state.provider, state.model, system, outbound, schemas)
            except TransportError as exc:
                if attempt > settings.LLM_MAX_RETRIES or not should_retry_llm_status(exc.status):
                    raise
                delay = retry_delay_seconds(attempt)
                logger.warning(
                    "%s request failed with status %s, retrying in %.2fs (attempt %d/%d)",
                    state.provider,
                    exc.status,
                    delay,
                    attempt,
                    settings.LLM_MAX_RETRIES,
                )
                await self.sleep(delay)

    async def _request(self, state: _TurnState, messages: List[Dict[str, Any]], tools: Sequence[Any]) -> Dict[str, Any]:
        """Call the active provider, failing over along the tier's chain on eligible errors."""
        while True:
            self._check_cap()
            try:
                return await self._call_with_retry(state, messages, tools)
            except TransportError as exc:
                if not is_failover_eligible_error(exc):
                    raise
                self.cooldowns.set_provider_cooldown(state.provider)
                candidates = [
                    p
                    for p in get_failover_providers(state.provider, self.api_keys, state.tier, self.cooldowns)
                    if p not in state.tried
                ]
                if not candidates:
                    raise
                self._fail_over(state, messages, candidates[0], exc)

    def _fail_over(self, state: _TurnState, messages: List[Dict[str, Any]], target: str, error: Exception) -> None:
        logger.warning("Failing over from %s to %s: %s", state.provider, target, error)
        writes = detect_successful_write_tool_calls_in_messages(messages)
        messages[:] = convert_messages_for_provider(messages, state.provider, target)
        if writes:
            names = ", ".join(sorted({w["name"] for w in writes}))
            notice = (
                f"Note: the previous model already completed these write operations in this turn "
                f"({names}). Do NOT repeat them; continue from where it left off."
            )
            messages.append({"role": "user", "content": notice})
        state.tried.add(target)
        state.provider = target
        state.model = get_model_for_tier(target, state.tier)
        state.failed_over = True

    def _record_cost(self, state: _TurnState, response: Dict[str, Any]) -> None:
        input_tokens, output_tokens = extract_usage(state.provider, response)
        cost = compute_call_cost(state.model, input_tokens, output_tokens)
        state.cost += cost
        self.tracker.record_cost_entry(state.model, input_tokens, output_tokens, cost)
        self.tracker.accumulate_session_tokens(input_tokens, output_tokens, cost)

    # ------------------------------------------------------------------
    # Tool results
    # ------------------------------------------------------------------
    def format_tool_result_content(self, name: str, result: Any) -> str:
        """Serialise a result for the model, fencing data that came from outside the graph."""
        text = safe_json_stringify(result, settings.MAX_TOOL_RESULT_CHARS)
        if is_external_data_tool_call(name, self.registry):
            return wrap_untrusted_with_injection_scan(f"tool:{name}", text, self.tracker.record_usage_stat)
        return text

    async def _run_tool_call(self, state: _TurnState, call: ToolCall, read_only: bool) -> Any:
        self.tracker.record_usage_stat("toolCall", call.name)
        args = with_composio_session_args(call.name, call.arguments, state.composio_session_id)
        try:
            result = await self.dispatcher.execute_tool_call(call.name, args, read_only=read_only)
        except UserDeniedError as exc:
            return {"error": str(exc)}
        session_id = extract_composio_session_id(result)
        if session_id:
            state.composio_session_id = session_id
        return result

    # ------------------------------------------------------------------
    # Turn
    # ------------------------------------------------------------------
    async def run(self, prompt: str, prior_messages: Sequence[Mapping[str, Any]] = (), read_only: bool = False) -> AgentResult:
        """
        Run one user turn to completion.

        Raises
        ------
        CapExceededError
            If the daily spending cap is reached before any LLM request.
        TransportError
            If every provider in the failover chain fails.
        """
        self.tracker.record_usage_stat("agentRuns")
        routing = route_for_session(
            self.session,
            prompt,
            known_tool_names=[t.name for t in self.registry.all_tools()],
            session_used_local_mcp=self.session.used_local_mcp,
        )
        if routing.tier != "mini":
            self.tracker.record_usage_stat("tierEscalations")
        intent = classify_prompt_intent(prompt, self.registry.local_mcp_servers(), self.session.used_local_mcp)
        state = _TurnState(
            self.provider,
            get_model_for_tier(self.provider, routing.tier),
            routing.tier,
            compose_system_prompt(self.system_prompt, intent),
        )
        logger.info("Turn routed to %s (%s) score=%.3f intent=%s", routing.tier, state.model, routing.score, intent)

        messages: List[Dict[str, Any]] = [dict(m) for m in prior_messages]
        messages.append({"role": "user", "content": prompt})
        prunable = len(prior_messages)
        tools = filter_tools_by_relevance(self.registry.all_tools(), prompt)

        called: List[str] = []
        successful: set[str] = set()
        saw_external_result = False
        text = ""
        iterations = 0
        while iterations < self.max_iterations:
            iterations += 1
            prunable = enforce_message_budget(messages, prunable, system_overhead_chars=len(state.system))
            if is_over_budget(messages, system_overhead_chars=len(state.system)):
                text = OVER_BUDGET_MESSAGE
                break
            response = await self._request(state, messages, tools)
            self._record_cost(state, response)

            family = get_family(state.provider)
            calls = family.extract_tool_calls(response)
            messages.append(family.format_assistant(response))
            if not calls:
                text = family.extract_text(response)
                if intent == "external_data" and not saw_external_result:
                    logger.info("Reply blocked: live-data question answered without a successful external tool result")
                    text = LIVE_DATA_UNVERIFIED_MESSAGE
                break

            results = []
            for call in calls:
                result = await self._run_tool_call(state, call, read_only)
                called.append(call.name)
                if is_successful_external_tool_result(result):
                    successful.add(call.name)
                    if is_external_data_tool_call(call.name, self.registry):
                        saw_external_result = True
                results.append((call, self.format_tool_result_content(call.name, result)))
            messages.extend(family.format_tool_results(results))
        else:
            logger.warning("Agent loop hit the %d-iteration cap", self.max_iterations)
            text = MAX_ITERATIONS_MESSAGE

        if not called and detect_claimed_action_without_tool_call(text, self.registry.all_tools()).detected:
            self.tracker.record_usage_stat("claimedActionFires")
            logger.info("Reply claims an action but no tool was called this turn")

        record_turn_outcome(
            self.session,
            tool_call_count=len(called),
            unique_tool_count=len(set(called)),
            successful_unique_tool_count=len(successful),
            iterations=iterations,
            tier=routing.tier,
            escalated=routing.tier != "mini",
            failed_over=state.failed_over,
        )
        return AgentResult(
            text=text,
            provider=state.provider,
            model=state.model,
            tier=routing.tier,
            iterations=iterations,
            tool_calls=called,
            failed_over=state.failed_over,
            cost_usd=state.cost,
            messages=messages,
        )
