"""
Session manager — maps live session ids to their actors.

Creation and eviction are serialized by one ``asyncio.Lock``; everything
else about a session happens inside its actor.  Actors are created on the
first connection (hydrated from the repository) and evicted once the last
connection has been gone for ``eviction_grace_seconds``.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from stepjam.config import Settings, settings as default_settings
from stepjam.core.clock import MsClock, ServerClock, wall_clock_ms
from stepjam.core.state_store import SessionStateStore
from stepjam.live.actor import ConnectionOpened, SessionActor
from stepjam.live.connection import LiveConnection
from stepjam.services.session_repository import (
    InMemorySessionRepository,
    SessionRepository,
)

logger = logging.getLogger(__name__)


class SessionManager:
    """
    Registry of running session actors.

    Usage:
        manager = SessionManager(repository)
        actor = await manager.connect("abc", connection)
        ...
        await manager.shutdown()
    """

    def __init__(
        self,
        repository: Optional[SessionRepository] = None,
        *,
        settings: Optional[Settings] = None,
        clock_source: MsClock = wall_clock_ms,
    ) -> None:
        self.repository: SessionRepository = repository or InMemorySessionRepository()
        self._settings = settings or default_settings
        self._clock_source = clock_source
        self._actors: dict[str, SessionActor] = {}
        self._lock = asyncio.Lock()
        self._evictions: set[asyncio.Task[None]] = set()

    # ── Lookup ───────────────────────────────────────────────────────────

    def get(self, session_id: str) -> Optional[SessionActor]:
        return self._actors.get(session_id)

    def session_ids(self) -> list[str]:
        return sorted(self._actors)

    @property
    def live_count(self) -> int:
        return len(self._actors)

    # ── Creation ─────────────────────────────────────────────────────────

    async def get_or_create(self, session_id: str) -> SessionActor:
        """Return the running actor for ``session_id``, hydrating one if needed."""
        async with self._lock:
            return await self._get_or_create_locked(session_id)

    async def connect(self, session_id: str, connection: LiveConnection) -> SessionActor:
        """Attach a connection to its session's actor.

        The actor lookup and the ``ConnectionOpened`` hand-off happen under
        the manager lock, so a concurrent eviction cannot stop the actor in
        between.
        """
        async with self._lock:
            actor = await self._get_or_create_locked(session_id)
            actor.submit(ConnectionOpened(connection))
            return actor

    async def _get_or_create_locked(self, session_id: str) -> SessionActor:
        actor = self._actors.get(session_id)
        if actor is not None and actor.is_running:
            return actor

        stored = await self.repository.load(session_id)
        clock = ServerClock(self._clock_source)
        store = SessionStateStore.hydrate(
            stored.state if stored else None,
            step_count=self._settings.step_count,
            clock=clock.now,
            session_id=session_id,
        )
        actor = SessionActor(
            session_id,
            store,
            repository=self.repository,
            clock=clock,
            immutable=stored.immutable if stored else False,
            settings=self._settings,
            on_idle=self._on_actor_idle,
            on_failed=self._on_actor_failed,
        )
        actor.start()
        self._actors[session_id] = actor
        logger.info(
            f"🆕 Session {session_id} {'hydrated' if stored else 'created'} "
            f"({self.live_count} live)"
        )
        return actor

    # ── Eviction ─────────────────────────────────────────────────────────

    def _on_actor_idle(self, actor: SessionActor) -> None:
        task = asyncio.create_task(self.evict(actor.session_id, actor))
        self._evictions.add(task)
        task.add_done_callback(self._evictions.discard)

    def _on_actor_failed(self, actor: SessionActor) -> None:
        if self._actors.get(actor.session_id) is actor:
            del self._actors[actor.session_id]
            logger.warning(f"⚠️ Session {actor.session_id} dropped after fatal error")

    async def evict(self, session_id: str, actor: Optional[SessionActor] = None) -> bool:
        """Save and stop an idle actor. Returns ``False`` if it was not evicted."""
        async with self._lock:
            current = self._actors.get(session_id)
            if current is None or (actor is not None and current is not actor):
                return False
            if not current.is_idle():
                logger.debug(f"Eviction of {session_id} skipped: connection arrived")
                return False
            del self._actors[session_id]
        await current.stop(save=True)
        logger.info(f"📦 Session {session_id} evicted ({self.live_count} live)")
        return True

    async def shutdown(self) -> None:
        """Stop every actor, saving unsaved changes."""
        async with self._lock:
            actors = list(self._actors.values())
            self._actors.clear()
        for actor in actors:
            await actor.stop(save=True)
        if self._evictions:
            await asyncio.gather(*self._evictions, return_exceptions=True)
        logger.info(f"Session manager shut down ({len(actors)} session(s) stopped)")


# Global instance
_manager: Optional[SessionManager] = None


def get_session_manager() -> SessionManager:
    """Get the global session manager, creating an in-memory one if needed."""
    global _manager
    if _manager is None:
        _manager = SessionManager()
    return _manager


def set_session_manager(manager: Optional[SessionManager]) -> None:
    """Install the global session manager (application startup, tests)."""
    global _manager
    _manager = manager


def reset_session_manager() -> None:
    """Drop the global session manager (tests)."""
    set_session_manager(None)
