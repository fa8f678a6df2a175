"""
StepJam Live API

FastAPI application serving real-time collaborative step-sequencer sessions.
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from collections.abc import AsyncIterator
from typing import Awaitable, Callable

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded

from stepjam.config import settings
from stepjam.api.routes import debug, health, live
from stepjam.db import close_db, init_db
from stepjam.live.manager import (
    SessionManager,
    get_session_manager,
    reset_session_manager,
    set_session_manager,
)
from stepjam.services.session_repository import SqlSessionRepository


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all HTTP responses (WebSocket scopes pass through)."""

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        response = await call_next(request)

        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Permissions-Policy"] = (
            "accelerometer=(), camera=(), geolocation=(), "
            "gyroscope=(), magnetometer=(), microphone=(), "
            "payment=(), usb=()"
        )

        return response


# Configure logging
logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Rate limiter - uses IP address as key
limiter = Limiter(key_func=get_remote_address)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan handler."""
    logger.info(f"Starting {settings.app_name} v{settings.app_version}")
    logger.info(
        f"Presence: stale after {settings.stale_connection_threshold_ms}ms, "
        f"sweep every {settings.prune_check_interval_ms}ms"
    )

    # Durable storage is optional: without a database URL sessions live
    # in process memory and vanish on restart.
    if settings.database_url:
        try:
            await init_db()
        except Exception as e:
            logger.error(f"Failed to initialize database: {e}")
            raise
        set_session_manager(SessionManager(SqlSessionRepository()))
    else:
        logger.warning("No STEPJAM_DATABASE_URL configured, sessions are kept in memory")

    manager = get_session_manager()

    yield

    # Cleanup
    logger.info("Shutting down...")
    await manager.shutdown()
    reset_session_manager()
    await close_db()


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="StepJam Live — real-time collaborative step sequencing.",
    lifespan=lifespan,
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
    openapi_url="/openapi.json" if settings.debug else None,
)

# Add rate limiter to app state and exception handler
app.state.limiter = limiter
app.add_exception_handler(
    RateLimitExceeded,
    _rate_limit_exceeded_handler,  # type: ignore[arg-type]  # slowapi handler signature is (Request, RateLimitExceeded) not (Request, Exception)
)

# Security headers middleware (added first, runs last)
app.add_middleware(SecurityHeadersMiddleware)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health.router, prefix="/api", tags=["health"])
app.include_router(live.router, prefix="/api", tags=["live"])
app.include_router(debug.router, prefix="/api", tags=["debug"])


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint with service info."""
    return {
        "service": settings.app_name,
        "version": settings.app_version,
        "websocket": "/api/sessions/{session_id}/ws",
    }
