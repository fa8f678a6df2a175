"""Health check endpoints."""
from __future__ import annotations

from typing import Any

from fastapi import APIRouter

from stepjam.config import settings
from stepjam.live.manager import get_session_manager

router = APIRouter()


@router.get("/health")
async def health_check() -> dict[str, Any]:
    """Basic health check."""
    return {
        "status": "ok",
        "service": settings.app_name,
        "version": settings.app_version,
        "liveSessions": get_session_manager().live_count,
    }
