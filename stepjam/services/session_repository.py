"""
Session persistence collaborator.

The live engine only ever needs two things from durable storage: load a
session when its actor is created, and hand back the final state when the
actor saves.  Everything else about sessions (CRUD, remix, publish) lives
outside this service.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from stepjam.db.database import AsyncSessionLocal
from stepjam.db.models import LiveSessionRecord, utc_now
from stepjam.models.session import SessionState

logger = logging.getLogger(__name__)


@dataclass
class StoredSession:
    """Durable state as handed to a new session actor."""

    session_id: str
    state: SessionState
    immutable: bool = False


class SessionRepository(Protocol):
    async def load(self, session_id: str) -> Optional[StoredSession]: ...

    async def save(self, session_id: str, state: SessionState) -> None: ...


class InMemorySessionRepository:
    """Process-local repository, used when no database is configured and in tests."""

    def __init__(self) -> None:
        self._sessions: dict[str, StoredSession] = {}
        self.save_count = 0

    def put(self, session_id: str, state: SessionState, *, immutable: bool = False) -> None:
        """Seed a session directly."""
        self._sessions[session_id] = StoredSession(
            session_id=session_id,
            state=state.model_copy(deep=True),
            immutable=immutable,
        )

    async def load(self, session_id: str) -> Optional[StoredSession]:
        stored = self._sessions.get(session_id)
        if stored is None:
            return None
        return StoredSession(
            session_id=session_id,
            state=stored.state.model_copy(deep=True),
            immutable=stored.immutable,
        )

    async def save(self, session_id: str, state: SessionState) -> None:
        existing = self._sessions.get(session_id)
        if existing is not None and existing.immutable:
            logger.warning(f"⚠️ Refusing to overwrite published session {session_id}")
            return
        self.put(session_id, state)
        self.save_count += 1


class SqlSessionRepository:
    """SQLAlchemy-backed repository over the ``live_sessions`` table."""

    def __init__(self, session_factory: Optional[Callable[[], AsyncSession]] = None) -> None:
        self._session_factory = session_factory or AsyncSessionLocal

    async def load(self, session_id: str) -> Optional[StoredSession]:
        async with self._session_factory() as db:
            record = await db.get(LiveSessionRecord, session_id)
            if record is None:
                return None
            return StoredSession(
                session_id=session_id,
                state=SessionState.model_validate(record.state),
                immutable=record.immutable,
            )

    async def save(self, session_id: str, state: SessionState) -> None:
        payload = state.model_dump(by_alias=True, mode="json")
        async with self._session_factory() as db:
            record = await db.get(LiveSessionRecord, session_id)
            if record is None:
                db.add(LiveSessionRecord(
                    id=session_id,
                    state=payload,
                    version=state.version,
                ))
            elif record.immutable:
                logger.warning(f"⚠️ Refusing to overwrite published session {session_id}")
                return
            else:
                record.state = payload
                record.version = state.version
                record.updated_at = utc_now()
            await db.commit()
        logger.debug(f"💾 Saved session {session_id} at v{state.version}")

    async def put(self, session_id: str, state: SessionState, *, immutable: bool = False) -> None:
        """Seed or overwrite a session row, including the immutable flag."""
        async with self._session_factory() as db:
            record = await db.get(LiveSessionRecord, session_id)
            payload = state.model_dump(by_alias=True, mode="json")
            if record is None:
                db.add(LiveSessionRecord(
                    id=session_id,
                    state=payload,
                    version=state.version,
                    immutable=immutable,
                ))
            else:
                record.state = payload
                record.version = state.version
                record.immutable = immutable
            await db.commit()
