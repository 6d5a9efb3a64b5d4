"""
Pydantic models for chief API requests and responses.
This module defines the request and response schemas used by the core API.
"""

from typing import (
    List,
    Optional,
    Sequence,
)

from pydantic import (
    BaseModel,
    Field,
)

from chief.core.schema import (
    Tier,
    TurnOutcome,
)
from chief.security.core import (
    InjectionScan,
    LeakageScan,
)


# ---------------------------------------------------------------------------
# Pydantic request / response schema
# ---------------------------------------------------------------------------
class SessionResponse(BaseModel):
    """Response with session information."""

    session_id: str
    trajectory: Sequence[TurnOutcome] = Field(default_factory=list)
    used_local_mcp: bool = False


class SkillEntryModel(BaseModel):
    title: str
    content: str = ""


class RouteRequest(BaseModel):
    """Prompt to score for a session."""

    prompt: str = Field(..., description="User prompt for the upcoming turn")
    session_id: Optional[str] = Field(None, description="Session whose trajectory is used")
    skills: List[SkillEntryModel] = Field(default_factory=list)
    known_tool_names: List[str] = Field(default_factory=list)
    ludicrous_enabled: Optional[bool] = None
    mentions_direct_mcp_server: bool = False


class OutcomeRequest(BaseModel):
    """A completed turn reported by the host."""

    tool_call_count: int = Field(0, ge=0)
    unique_tool_count: Optional[int] = Field(None, ge=0)
    successful_unique_tool_count: Optional[int] = Field(None, ge=0)
    iterations: int = Field(0, ge=0)
    tier: Tier = "mini"
    escalated: bool = False
    failed_over: bool = False


class ScanRequest(BaseModel):
    text: str


class ScanResponse(BaseModel):
    injection: InjectionScan
    leakage: LeakageScan


class MemoryGuardRequest(BaseModel):
    content: str
    page: str
    action: str = "append"


class HrefRequest(BaseModel):
    href: str


class HrefResponse(BaseModel):
    href: str
    safe: bool
