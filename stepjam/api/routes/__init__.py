"""API route modules."""
from __future__ import annotations

from stepjam.api.routes import debug, health, live

__all__ = ["debug", "health", "live"]
