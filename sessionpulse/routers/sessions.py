"""API router exposing the current session snapshot."""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from sessionpulse.models import SessionSummary
from sessionpulse.registry import SessionRegistry

sessions_router = APIRouter(prefix="/api/sessions", tags=["sessions"])

_STATUSES = {"working", "waiting", "idle"}


def get_registry(request: Request) -> SessionRegistry:
    return request.app.state.registry


@sessions_router.get("", response_model=list[SessionSummary])
async def list_sessions(
    status: Optional[str] = Query(None, description="working | waiting | idle"),
    registry: SessionRegistry = Depends(get_registry),
):
    """List observed sessions, most recently active first."""
    if status is not None and status not in _STATUSES:
        raise HTTPException(status_code=400, detail=f"Unknown status filter: {status}")
    sessions = [
        SessionSummary.from_state(session)
        for session in registry.get_all()
        if status is None or session.status.status == status
    ]
    sessions.sort(key=lambda s: s.lastActivityAt or s.startedAt, reverse=True)
    return sessions


@sessions_router.get("/{session_id}", response_model=SessionSummary)
async def get_session(
    session_id: str,
    registry: SessionRegistry = Depends(get_registry),
):
    session = registry.get(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return SessionSummary.from_state(session)
