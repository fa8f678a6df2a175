"""
Session actor — the single coordinator for one live session.

Every input (connection opened, frame received, connection closed, prune
timer, save timer) becomes an event on the actor's mailbox.  One task
consumes the mailbox and handles events strictly in arrival order, so the
store and presence registry have exactly one writer and need no locks.

Handlers never await.  Network output goes through each connection's
outbox; persistence is spawned as a background task; timers only enqueue
events.

Lifecycle:
    start() → [events…] → stop()            (eviction: manager saves + stops)
    start() → [events…] → FatalActorError   (every socket closed with 1011,
                                             actor dropped from the manager)
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Coroutine, Optional, Union

from stepjam.config import Settings, settings as default_settings
from stepjam.core.clock import ServerClock
from stepjam.core.clock_sync import respond_to_clock_sync
from stepjam.core.errors import (
    FatalActorError,
    MutationValidationError,
    TransportError,
)
from stepjam.core.presence import PresenceRegistry
from stepjam.core.reconciliation import build_snapshot, check_state_hash
from stepjam.core.state_store import SessionStateStore
from stepjam.live.connection import (
    CLEAN_CLOSE_CODES,
    CLOSE_INTERNAL_ERROR,
    CLOSE_PRESENCE_EXPIRED,
    CLOSE_SESSION_FULL,
    LiveConnection,
)
from stepjam.protocol import messages as m
from stepjam.protocol.emitter import (
    SESSION_PUBLISHED,
    ProtocolSerializationError,
    decode_frame,
    emit,
    parse_client_message,
)
from stepjam.protocol.registry import is_mutation_type
from stepjam.services.session_repository import SessionRepository

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════
# Mailbox events
# ═══════════════════════════════════════════════════════════════════════


@dataclass
class ConnectionOpened:
    connection: LiveConnection


@dataclass
class MessageReceived:
    connection_id: str
    frame: Union[str, bytes]


@dataclass
class ConnectionClosed:
    connection_id: str
    close_code: int = 1000

    @property
    def clean(self) -> bool:
        return self.close_code in CLEAN_CLOSE_CODES


@dataclass
class PruneTick:
    pass


@dataclass
class SaveTick:
    pass


@dataclass
class EvictionTick:
    pass


@dataclass
class _Stop:
    pass


ActorEvent = Union[
    ConnectionOpened,
    MessageReceived,
    ConnectionClosed,
    PruneTick,
    SaveTick,
    EvictionTick,
    _Stop,
]


class SessionActor:
    """
    Owns the store, presence and connections of one session.

    Usage:
        actor = SessionActor("abc", store, repository=repo)
        actor.start()
        actor.submit(ConnectionOpened(connection))
        await actor.drain()
        await actor.stop()
    """

    def __init__(
        self,
        session_id: str,
        store: SessionStateStore,
        *,
        repository: Optional[SessionRepository] = None,
        clock: Optional[ServerClock] = None,
        immutable: bool = False,
        settings: Optional[Settings] = None,
        on_idle: Optional[Callable[["SessionActor"], None]] = None,
        on_failed: Optional[Callable[["SessionActor"], None]] = None,
    ) -> None:
        self.session_id = session_id
        self.store = store
        self.immutable = immutable
        self._settings = settings or default_settings
        self._repository = repository
        self._clock = clock or ServerClock()
        self.presence = PresenceRegistry(
            clock=self._clock.now,
            stale_threshold_ms=self._settings.stale_connection_threshold_ms,
        )
        self._on_idle = on_idle
        self._on_failed = on_failed

        self._mailbox: asyncio.Queue[ActorEvent] = asyncio.Queue()
        self._connections: dict[str, LiveConnection] = {}
        self._playing: set[str] = set()
        self._pending_opens = 0
        self._seq = 0

        self._task: Optional[asyncio.Task[None]] = None
        self._prune_task: Optional[asyncio.Task[None]] = None
        self._save_handle: Optional[asyncio.TimerHandle] = None
        self._eviction_handle: Optional[asyncio.TimerHandle] = None
        self._background: set[asyncio.Task[None]] = set()

        self.dirty = False
        self.failed = False
        self._stopped = False

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> None:
        """Start the mailbox consumer and the prune timer."""
        if self._task is not None:
            return
        self._task = asyncio.create_task(self._run(), name=f"session-actor-{self.session_id}")
        self._prune_task = asyncio.create_task(
            self._prune_loop(), name=f"session-prune-{self.session_id}"
        )
        logger.info(f"🎛️ Session actor started: {self.session_id} (v{self.store.version})")

    def submit(self, event: ActorEvent) -> None:
        """Enqueue an event. Ignored once the actor has stopped."""
        if self._stopped:
            logger.debug(f"Dropping {type(event).__name__} for stopped actor {self.session_id}")
            return
        if isinstance(event, ConnectionOpened):
            self._pending_opens += 1
        self._mailbox.put_nowait(event)

    async def drain(self) -> None:
        """Wait until every event submitted so far has been handled."""
        await self._mailbox.join()

    async def stop(self, *, save: bool = True) -> None:
        """Stop the actor, optionally persisting unsaved changes first."""
        if self._stopped:
            return
        self._mailbox.put_nowait(_Stop())
        self._stopped = True
        if self._task is not None:
            await self._task
        self._cancel_timers()
        for connection in list(self._connections.values()):
            connection.request_close(1001, "Session closed")
        self._connections.clear()
        if save:
            await self._persist()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        logger.info(f"🛑 Session actor stopped: {self.session_id}")

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._stopped

    def is_idle(self) -> bool:
        """No attached connections and no queued connection about to attach.

        Timer ticks and frames from detached connections do not count.
        """
        return not self._connections and self._pending_opens == 0

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    @property
    def save_pending(self) -> bool:
        return self._save_handle is not None

    @property
    def playing_player_ids(self) -> list[str]:
        return sorted(self._playing)

    def has_capacity_for(self, player_id: str) -> bool:
        """Would a connection for ``player_id`` fit under the player limit?"""
        players = {c.player_id for c in self._connections.values()}
        return player_id in players or len(players) < self._settings.max_players_per_session

    def _cancel_timers(self) -> None:
        if self._prune_task is not None:
            self._prune_task.cancel()
            self._prune_task = None
        if self._save_handle is not None:
            self._save_handle.cancel()
            self._save_handle = None
        if self._eviction_handle is not None:
            self._eviction_handle.cancel()
            self._eviction_handle = None

    async def _run(self) -> None:
        while True:
            event = await self._mailbox.get()
            try:
                if isinstance(event, _Stop):
                    return
                if self.failed:
                    continue
                self._handle(event)
            except FatalActorError as exc:
                self._fail(exc)
                return
            except Exception as exc:
                logger.exception(f"❌ Unhandled error in session {self.session_id}: {exc}")
                self._fail(FatalActorError(str(exc)))
                return
            finally:
                self._mailbox.task_done()

    async def _prune_loop(self) -> None:
        interval = self._settings.prune_check_interval_ms / 1000
        while True:
            await asyncio.sleep(interval)
            self.submit(PruneTick())

    def _fail(self, exc: FatalActorError) -> None:
        """Terminate the session: close every socket and detach from the manager."""
        logger.error(f"💥 Session {self.session_id} failed: {exc}")
        self.failed = True
        self._stopped = True
        self._cancel_timers()
        for connection in list(self._connections.values()):
            connection.request_close(CLOSE_INTERNAL_ERROR, "Session error")
        self._connections.clear()
        # Drain whatever is still queued so drain() callers are released.
        while not self._mailbox.empty():
            self._mailbox.get_nowait()
            self._mailbox.task_done()
        if self._on_failed is not None:
            self._on_failed(self)

    # =========================================================================
    # Dispatch
    # =========================================================================

    def _handle(self, event: ActorEvent) -> None:
        if isinstance(event, ConnectionOpened):
            self._pending_opens -= 1
            self._on_connection_opened(event.connection)
        elif isinstance(event, MessageReceived):
            self._on_message(event.connection_id, event.frame)
        elif isinstance(event, ConnectionClosed):
            self._on_connection_closed(event)
        elif isinstance(event, PruneTick):
            self._on_prune()
        elif isinstance(event, SaveTick):
            self._on_save()
        elif isinstance(event, EvictionTick):
            self._on_eviction_tick()

    # ── Outbound helpers ─────────────────────────────────────────────────

    def _send(self, connection: LiveConnection, message: m.ServerMessage) -> None:
        try:
            connection.send(message)
        except TransportError as exc:
            logger.debug(f"Send dropped: {exc}")

    def _broadcast(self, message: m.ServerMessage, *, exclude: Optional[str] = None) -> None:
        """Stamp the next session seq on ``message`` and fan it out."""
        self._seq += 1
        message.seq = self._seq
        frame = emit(message)
        for connection in self._connections.values():
            if connection.connection_id == exclude or not connection.is_open:
                continue
            try:
                connection.enqueue(frame)
            except TransportError as exc:
                logger.debug(f"Broadcast dropped: {exc}")

    def _player_has_other_connection(self, player_id: str, connection_id: str) -> bool:
        return any(
            c.player_id == player_id and c.connection_id != connection_id
            for c in self._connections.values()
        )

    # ── Connection lifecycle ─────────────────────────────────────────────

    def _on_connection_opened(self, connection: LiveConnection) -> None:
        if not self.has_capacity_for(connection.player_id):
            logger.warning(
                f"🚫 Session {self.session_id} full, refusing player {connection.player_id[:8]}"
            )
            connection.request_close(CLOSE_SESSION_FULL, "Session full")
            return

        if self._eviction_handle is not None:
            self._eviction_handle.cancel()
            self._eviction_handle = None

        connection.open()
        self._connections[connection.connection_id] = connection
        player = self.presence.register(
            connection.player_id, name=connection.name, color=connection.color
        )
        self._send(connection, self._snapshot_for(connection.player_id))
        self._broadcast(m.PlayerJoined(player=player), exclude=connection.connection_id)
        logger.info(
            f"🔌 {player.name} joined {self.session_id} "
            f"({len(self._connections)} connection(s))"
        )

    def _on_connection_closed(self, event: ConnectionClosed) -> None:
        connection = self._connections.pop(event.connection_id, None)
        if connection is None:
            return
        player_id = connection.player_id

        if event.clean:
            if not self._player_has_other_connection(player_id, connection.connection_id):
                if self.presence.remove(player_id) is not None:
                    self._player_departed(player_id, reason="disconnect")
        else:
            logger.info(
                f"🔌 Unclean close for {player_id[:8]} in {self.session_id} "
                f"(code {event.close_code}); presence left to the sweep"
            )

        if not self._connections:
            self._schedule_eviction()

    def _player_departed(self, player_id: str, *, reason: str) -> None:
        """Announce a player already removed from presence."""
        if player_id in self._playing:
            self._playing.discard(player_id)
            self._broadcast(m.PlaybackStopped(player_id=player_id))
        self._broadcast(m.PlayerLeft(player_id=player_id, reason=reason))

    # ── Inbound messages ─────────────────────────────────────────────────

    def _on_message(self, connection_id: str, frame: Union[str, bytes]) -> None:
        connection = self._connections.get(connection_id)
        if connection is None:
            return

        self.presence.touch(connection.player_id)

        try:
            data = decode_frame(frame, self._settings.max_message_bytes)
            message = parse_client_message(data)
        except ProtocolSerializationError as exc:
            self._reject_malformed(connection, exc)
            return

        if isinstance(message, m.Mutation):
            self._on_mutation(connection, message)
        elif isinstance(message, m.ClockSyncRequest):
            self._send(connection, respond_to_clock_sync(message, self._clock))
        elif isinstance(message, m.StateHashRequest):
            self._send(connection, check_state_hash(self.store, message.hash))
        elif isinstance(message, m.RequestSnapshot):
            self._send(connection, self._snapshot_for(connection.player_id))
        elif isinstance(message, m.Ping):
            self._send(connection, m.Pong())
        elif isinstance(message, m.CursorMove):
            player = self.presence.get(connection.player_id)
            self._broadcast(
                m.CursorMoved(
                    player_id=connection.player_id,
                    position=message.position,
                    color=player.color if player else "",
                    name=player.name if player else "",
                ),
                exclude=connection_id,
            )
        elif isinstance(message, m.Play):
            self._playing.add(connection.player_id)
            self._broadcast(
                m.PlaybackStarted(
                    player_id=connection.player_id,
                    start_time=self._clock.now(),
                    tempo=self.store.tempo,
                )
            )
        elif isinstance(message, m.Stop):
            self._playing.discard(connection.player_id)
            self._broadcast(m.PlaybackStopped(player_id=connection.player_id))

    def _reject_malformed(self, connection: LiveConnection, exc: ProtocolSerializationError) -> None:
        logger.debug(f"Rejected frame from {connection.player_id[:8]}: {exc}")
        if exc.message_type and is_mutation_type(exc.message_type) and exc.field:
            self._send(
                connection,
                m.MutationRejected(
                    mutation_type=exc.message_type,
                    field=exc.field,
                    message=str(exc),
                    client_seq=exc.seq,
                ),
            )
            return
        self._send(connection, m.ErrorMessage(message=str(exc), code=exc.code))

    def _on_mutation(self, connection: LiveConnection, mutation: m.Mutation) -> None:
        if self.immutable:
            self._send(
                connection,
                m.ErrorMessage(
                    message="Session is published and cannot be edited",
                    code=SESSION_PUBLISHED,
                ),
            )
            return

        try:
            result = self.store.apply_mutation(mutation, connection.player_id)
        except MutationValidationError as exc:
            self._send(
                connection,
                m.MutationRejected(
                    mutation_type=mutation.type,
                    field=exc.field,
                    message=exc.message,
                    client_seq=mutation.seq,
                ),
            )
            return

        self._broadcast(result.event, exclude=connection.connection_id)
        self._send(
            connection,
            m.MutationAck(
                mutation_type=result.mutation_type,
                version=result.version,
                client_seq=mutation.seq,
            ),
        )
        self.dirty = True
        self._schedule_save()

    def _snapshot_for(self, player_id: str) -> m.SnapshotMessage:
        return build_snapshot(
            self.store,
            self.presence,
            player_id,
            self._clock.now(),
            immutable=self.immutable,
            playing_player_ids=self._playing,
        )

    # ── Timers ───────────────────────────────────────────────────────────

    def _on_prune(self) -> None:
        stale = self.presence.prune_stale(self._clock.now())
        if not stale:
            return
        for connection_id, connection in list(self._connections.items()):
            if connection.player_id in stale:
                connection.request_close(CLOSE_PRESENCE_EXPIRED, "Presence expired")
                del self._connections[connection_id]
        for player_id in sorted(stale):
            self._player_departed(player_id, reason="stale")
        if not self._connections:
            self._schedule_eviction()

    def _schedule_save(self) -> None:
        if self._repository is None:
            return
        if self._save_handle is not None:
            self._save_handle.cancel()
        loop = asyncio.get_running_loop()
        self._save_handle = loop.call_later(
            self._settings.save_debounce_seconds, self.submit, SaveTick()
        )

    def _on_save(self) -> None:
        self._save_handle = None
        self._spawn(self._persist())

    def _schedule_eviction(self) -> None:
        if self._eviction_handle is not None:
            return
        loop = asyncio.get_running_loop()
        self._eviction_handle = loop.call_later(
            self._settings.eviction_grace_seconds, self.submit, EvictionTick()
        )
        logger.debug(
            f"Session {self.session_id} idle; eviction in {self._settings.eviction_grace_seconds}s"
        )

    def _on_eviction_tick(self) -> None:
        self._eviction_handle = None
        if self._connections:
            return
        if self._on_idle is not None:
            self._on_idle(self)

    # ── Persistence ──────────────────────────────────────────────────────

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _persist(self) -> None:
        """Hand the current state to the repository. Errors are logged, not retried."""
        if self._repository is None or not self.dirty:
            return
        state = self.store.snapshot()
        self.dirty = False
        try:
            await self._repository.save(self.session_id, state)
            logger.debug(f"💾 Session {self.session_id} saved at v{state.version}")
        except Exception as exc:
            logger.error(f"❌ Failed to save session {self.session_id}: {exc}")
