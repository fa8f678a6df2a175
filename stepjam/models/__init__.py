"""Pydantic models for StepJam Live."""
from __future__ import annotations

from stepjam.models.base import CamelModel
from stepjam.models.session import (
    CursorPosition,
    ParameterLock,
    Player,
    SessionState,
    Track,
)

__all__ = [
    "CamelModel",
    "CursorPosition",
    "ParameterLock",
    "Player",
    "SessionState",
    "Track",
]
