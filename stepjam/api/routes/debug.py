"""
Live-session introspection endpoints.

Read-only views of running session actors for operators: version, hash,
presence, connections and invariant status.  Disabled entirely when
``STEPJAM_DEBUG_ROUTES_ENABLED=false``.
"""
from __future__ import annotations

from typing import Any

from fastapi import APIRouter, HTTPException, Request
from slowapi import Limiter
from slowapi.util import get_remote_address

from stepjam.config import settings
from stepjam.live.actor import SessionActor
from stepjam.live.manager import get_session_manager

router = APIRouter()

limiter = Limiter(key_func=get_remote_address)


def _require_enabled() -> None:
    if not settings.debug_routes_enabled:
        raise HTTPException(status_code=404, detail="Not found")


def _summary(actor: SessionActor) -> dict[str, Any]:
    return {
        "sessionId": actor.session_id,
        "version": actor.store.version,
        "stateHash": actor.store.state_hash(),
        "players": len(actor.presence),
        "connections": actor.connection_count,
        "immutable": actor.immutable,
        "savePending": actor.save_pending,
    }


@router.get("/debug/sessions")
@limiter.limit("60/minute")
async def list_live_sessions(request: Request) -> dict[str, Any]:
    """Summaries of every live session."""
    _require_enabled()
    manager = get_session_manager()
    sessions = []
    for session_id in manager.session_ids():
        actor = manager.get(session_id)
        if actor is not None:
            sessions.append(_summary(actor))
    return {"sessions": sessions, "count": len(sessions)}


@router.get("/debug/sessions/{session_id}")
@limiter.limit("60/minute")
async def get_live_session(request: Request, session_id: str) -> dict[str, Any]:
    """Full state, presence and invariant report for one live session."""
    _require_enabled()
    actor = get_session_manager().get(session_id)
    if actor is None:
        raise HTTPException(status_code=404, detail=f"Session {session_id} is not live")

    detail = _summary(actor)
    detail.update({
        "state": actor.store.snapshot().model_dump(by_alias=True, mode="json"),
        "playerList": [
            p.model_dump(by_alias=True, mode="json") for p in actor.presence.list_active()
        ],
        "playingPlayerIds": actor.playing_player_ids,
        "invariantViolations": actor.store.find_violations(),
        "dirty": actor.dirty,
    })
    return detail
