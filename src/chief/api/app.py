"""
Core API backend for chief.

This module exposes the orchestration core to hosts that do not embed it directly.
It exposes the following endpoints:
- **GET /health**  - liveness probe for health checks.
- **POST /sessions** - create a new session, returns a session ID.
- **GET /sessions** - list all active sessions.
- **DELETE /sessions/{id}** - reset a session's conversation state.
- **POST /route** - score a prompt and pick the model tier.
- **POST /sessions/{id}/outcomes** - record a completed turn.
- **POST /security/scan** - injection and system-prompt leakage checks.
- **POST /security/memory-guard** - decide whether a memory write is allowed.
- **POST /security/href** - sanitise a markdown link target.
- **GET /usage** - cost history summary.
"""

import logging
import uuid
from contextlib import asynccontextmanager
from typing import (
    AsyncIterator,
    Dict,
    List,
)

from fastapi import (
    FastAPI,
    HTTPException,
)

from chief.api.models import (
    HrefRequest,
    HrefResponse,
    MemoryGuardRequest,
    OutcomeRequest,
    RouteRequest,
    ScanRequest,
    ScanResponse,
    SessionResponse,
)
from chief.common import (
    AnsiColors,
    colored_print,
)
from chief.config import settings
from chief.core.schema import (
    RoutingResult,
    TurnOutcome,
)
from chief.core.session import Session
from chief.core.settings_store import JsonFileSettings
from chief.routing.tier_router import (
    compute_routing_score,
    record_turn_outcome,
    route_for_session,
)
from chief.security.core import (
    MemoryGuardResult,
    detect_injection_patterns,
    detect_system_prompt_leakage,
    guard_memory_write_core,
    sanitise_markdown_href,
)
from chief.usage.tracker import UsageTracker

logger = logging.getLogger(__name__)

# Session storage (in-memory; sessions do not survive a restart)
sessions: Dict[str, Session] = {}

tracker = UsageTracker(JsonFileSettings(settings.SETTINGS_FILE))


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    """Flush pending usage writes on shutdown."""
    yield
    tracker.flush()


app = FastAPI(lifespan=lifespan, title="chief API", version="0.1.0", description="Agent orchestration core API")


# ---------------------------------------------------------------------------
# Helper functions
# ---------------------------------------------------------------------------
def get_session(session_id: str) -> Session:
    """Return the session or raise a 404."""
    session = sessions.get(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail=f"Unknown session '{session_id}'")
    return session


def _session_response(session_id: str, session: Session) -> SessionResponse:
    return SessionResponse(
        session_id=session_id, trajectory=list(session.trajectory), used_local_mcp=session.used_local_mcp
    )


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------
@app.get("/health", summary="Health check")
async def health() -> dict[str, str]:
    """Return a simple liveness payload."""
    return {"status": "ok"}


@app.post("/sessions", response_model=SessionResponse, summary="Create a new session")
async def create_session() -> SessionResponse:
    session_id = str(uuid.uuid4())
    sessions[session_id] = Session()
    logger.info("Created session %s", session_id)
    return _session_response(session_id, sessions[session_id])


@app.get("/sessions", response_model=List[str], summary="List active sessions")
async def list_sessions() -> List[str]:
    return list(sessions.keys())


@app.get("/sessions/{session_id}", response_model=SessionResponse, summary="Inspect a session")
async def read_session(session_id: str) -> SessionResponse:
    return _session_response(session_id, get_session(session_id))


@app.delete("/sessions/{session_id}", response_model=SessionResponse, summary="Reset a session")
async def reset_session(session_id: str) -> SessionResponse:
    """Drop the trajectory, approvals and local-MCP follow-up state."""
    session = get_session(session_id)
    session.reset_conversation()
    return _session_response(session_id, session)


@app.post("/route", response_model=RoutingResult, summary="Pick the model tier for a prompt")
async def route(req: RouteRequest) -> RoutingResult:
    """Score a prompt; with a session ID the session's trajectory is taken into account."""
    kwargs = {
        "skill_entries": [skill.model_dump() for skill in req.skills],
        "known_tool_names": req.known_tool_names,
        "ludicrous_enabled": req.ludicrous_enabled,
        "mentions_direct_mcp_server": req.mentions_direct_mcp_server,
    }
    if req.session_id:
        return route_for_session(get_session(req.session_id), req.prompt, **kwargs)
    return compute_routing_score(req.prompt, **kwargs)


@app.post("/sessions/{session_id}/outcomes", response_model=TurnOutcome, summary="Record a turn outcome")
async def record_outcome(session_id: str, req: OutcomeRequest) -> TurnOutcome:
    return record_turn_outcome(get_session(session_id), **req.model_dump())


@app.post("/security/scan", response_model=ScanResponse, summary="Scan text for injection and leakage")
async def security_scan(req: ScanRequest) -> ScanResponse:
    return ScanResponse(injection=detect_injection_patterns(req.text), leakage=detect_system_prompt_leakage(req.text))


@app.post("/security/memory-guard", response_model=MemoryGuardResult, summary="Check a memory write")
async def memory_guard(req: MemoryGuardRequest) -> MemoryGuardResult:
    return guard_memory_write_core(req.content, req.page, req.action, tracker.record_usage_stat)


@app.post("/security/href", response_model=HrefResponse, summary="Sanitise a markdown link target")
async def sanitise_href(req: HrefRequest) -> HrefResponse:
    href = sanitise_markdown_href(req.href)
    return HrefResponse(href=href, safe=href != "#")


@app.get("/usage", summary="Cost history summary")
async def usage() -> dict:
    return tracker.get_cost_history_summary()


# ---------------------------------------------------------------------------
# Public helper to launch the API (imported by main.py)
# ---------------------------------------------------------------------------
def run_api(host: str = "0.0.0.0", port: int = 8000, reload: bool = False, log_level: str | None = None) -> None:
    """Start a uvicorn server hosting *app*.

    Parameters
    ----------
    host, port:
        Bind address for the HTTP server.
    reload:
        If *True*, enable auto-reload (useful in development).
    log_level:
        Logging level to use (default from settings if not provided).
    """

    # Lazy import - keeps uvicorn an optional dependency at pkg-import time
    import uvicorn  # pylint: disable=import-outside-toplevel

    if log_level is None:
        log_level = settings.LOG_LEVEL

    logger.info("Starting chief API at %s:%d (reload=%s, log_level=%s)", host, port, reload, log_level)
    colored_print(f"chief API is running at http://localhost:{port}.", AnsiColors.GREEN)
    uvicorn.run(
        "chief.api.app:app",
        host=host,
        port=port,
        reload=reload,
        log_level=log_level,
    )


# ---------------------------------------------------------------------------
# `python -m chief.api.app` helper
# ---------------------------------------------------------------------------
if __name__ == "__main__":
    run_api(reload=True)
