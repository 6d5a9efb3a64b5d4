"""
Schema definitions shared by the dispatcher, the router and the agent loop.

These data models serve as the contract between the model-facing message formats, the
orchestration loop, and individual tools.  We keep them separate from runtime logic so they can be
imported anywhere without side-effects.
"""

from typing import (
    Any,
    Callable,
    Dict,
    List,
    Literal,
    Optional,
)

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
)

ToolSource = Literal["native", "extension", "meta", "local-mcp", "composio"]
Tier = Literal["mini", "power", "ludicrous"]


class ToolDescriptor(BaseModel):
    """A callable tool exposed to the model."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str = Field(..., description="Tool name as the model sees it")
    description: str = ""
    input_schema: Dict[str, Any] = Field(default_factory=lambda: {"type": "object", "properties": {}})
    # Tri-state: True / False / None (unknown, fall back to heuristics)
    is_mutating: Optional[bool] = None
    source: ToolSource = "native"
    server_name: Optional[str] = None
    # None means the call is dispatched over MCP transport
    execute: Optional[Callable[..., Any]] = Field(default=None, exclude=True)


class ToolCall(BaseModel):
    """One model-issued invocation."""

    id: str = ""
    name: str = Field(..., description="Tool name requested by the model")
    arguments: Dict[str, Any] = Field(default_factory=dict, description="Tool arguments")


class TurnOutcome(BaseModel):
    """Outcome of a completed turn, kept in the session trajectory."""

    tool_count: int = 0
    unique_tool_count: Optional[int] = None
    successful_unique_tool_count: Optional[int] = None
    iterations: int = 1
    tier: Tier = "mini"
    escalated: bool = False
    failed_over: bool = False
    timestamp: float = 0.0


class ScoreBreakdown(BaseModel):
    """Per-strategy detail attached to a routing decision."""

    tool_count: Dict[str, Any] = Field(default_factory=dict)
    prompt_complexity: Dict[str, Any] = Field(default_factory=dict)
    trajectory: Dict[str, Any] = Field(default_factory=dict)


class RoutingResult(BaseModel):
    """Composite routing decision for a single turn."""

    score: float
    tier: Tier
    reason: str
    signals: List[str] = Field(default_factory=list)
    breakdown: ScoreBreakdown = Field(default_factory=ScoreBreakdown)
