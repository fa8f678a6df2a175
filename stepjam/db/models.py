"""
SQLAlchemy ORM models for StepJam Live.

Tables:
- live_sessions: last durable state of each session, as canonical JSON
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import Boolean, DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import JSON

from stepjam.db.database import Base


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(timezone.utc)


class LiveSessionRecord(Base):
    """
    Durable copy of one session's musical content.

    Written by the session actor on debounce and on eviction; read once
    when the actor is created.  ``immutable`` marks a published session:
    the actor still serves it but refuses every mutation.
    """
    __tablename__ = "live_sessions"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)

    # SessionState in its camelCase wire form
    state: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    immutable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        onupdate=utc_now,
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<LiveSessionRecord {self.id} v{self.version}>"
