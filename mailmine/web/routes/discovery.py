"""Discovery session routes.

Routes:
- POST /discover/start                 - Start (or return) the user's active session
- GET  /discover/sessions              - List a user's sessions
- GET  /discover/progress              - Day ledger rows for a user
- GET  /discover/{session_id}          - Status report
- POST /discover/{session_id}/pause    - Pause the walk
- POST /discover/{session_id}/resume   - Resume a paused session
- POST /discover/{session_id}/cancel   - Complete the session
- POST /discover/{session_id}/top-up   - Add discovery budget
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from mailmine.engine import DiscoveryEngine
from mailmine.models import DiscoverySession, ProgressEntry, SessionStatusReport
from mailmine.web.dependencies import get_discovery_engine
from mailmine.web.models import StartDiscoveryRequest, TopUpRequest

router = APIRouter(prefix="/discover", tags=["discovery"])


@router.post("/start", response_model=SessionStatusReport)
async def start_discovery(
    body: StartDiscoveryRequest,
    engine: DiscoveryEngine = Depends(get_discovery_engine),
):
    return await engine.start(
        body.user_id,
        discovery_budget=body.discovery_budget,
        training_budget=body.training_budget,
        mode=body.mode,
    )


@router.get("/sessions", response_model=list[DiscoverySession])
async def list_sessions(
    user_id: str = Query(..., min_length=1),
    engine: DiscoveryEngine = Depends(get_discovery_engine),
):
    return await engine.list_sessions(user_id)


@router.get("/progress", response_model=list[ProgressEntry])
async def list_progress(
    user_id: str = Query(..., min_length=1),
    session_id: str | None = Query(default=None),
    engine: DiscoveryEngine = Depends(get_discovery_engine),
):
    return await engine.list_progress(user_id, session_id)


@router.get("/{session_id}", response_model=SessionStatusReport)
async def session_status(
    session_id: str, engine: DiscoveryEngine = Depends(get_discovery_engine)
):
    return await engine.status(session_id)


@router.post("/{session_id}/pause", response_model=SessionStatusReport)
async def pause_discovery(
    session_id: str, engine: DiscoveryEngine = Depends(get_discovery_engine)
):
    return await engine.pause(session_id)


@router.post("/{session_id}/resume", response_model=SessionStatusReport)
async def resume_discovery(
    session_id: str, engine: DiscoveryEngine = Depends(get_discovery_engine)
):
    return await engine.resume(session_id)


@router.post("/{session_id}/cancel", response_model=SessionStatusReport)
async def cancel_discovery(
    session_id: str, engine: DiscoveryEngine = Depends(get_discovery_engine)
):
    return await engine.cancel(session_id)


@router.post("/{session_id}/top-up", response_model=SessionStatusReport)
async def top_up_discovery(
    session_id: str,
    body: TopUpRequest,
    engine: DiscoveryEngine = Depends(get_discovery_engine),
):
    return await engine.top_up_discovery(session_id, body.amount)
