"""Database module for StepJam Live."""
from stepjam.db.database import (
    AsyncSessionLocal,
    Base,
    close_db,
    init_db,
)
from stepjam.db.models import LiveSessionRecord

__all__ = [
    "AsyncSessionLocal",
    "Base",
    "LiveSessionRecord",
    "close_db",
    "init_db",
]
