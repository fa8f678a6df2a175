"""
Live connection — one client socket attached to a session actor.

The actor never awaits network I/O.  It hands serialized frames to the
connection's bounded outbox; a per-connection writer task drains the
outbox onto the transport.  A slow or dead client therefore fills its
own queue and loses messages (healed later by the hash check) instead
of stalling the session.

Architecture:
    SessionActor → connection.send(msg) → outbox → run_writer() → transport
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional, Protocol

from stepjam.config import settings
from stepjam.core.errors import TransportError
from stepjam.live.state_machine import ConnectionState, assert_transition, can_send
from stepjam.protocol.emitter import emit
from stepjam.protocol.messages import ServerMessage

logger = logging.getLogger(__name__)

# WebSocket close codes used by the live session endpoint.
CLOSE_NORMAL = 1000
CLOSE_GOING_AWAY = 1001
CLOSE_INTERNAL_ERROR = 1011
CLOSE_PRESENCE_EXPIRED = 4001
CLOSE_SESSION_FULL = 4003

CLEAN_CLOSE_CODES: frozenset[int] = frozenset({CLOSE_NORMAL, CLOSE_GOING_AWAY})


class Transport(Protocol):
    """The slice of a WebSocket the connection needs.

    Starlette's ``WebSocket`` satisfies this directly.
    """

    async def send_text(self, data: str) -> None: ...

    async def close(self, code: int = 1000, reason: Optional[str] = None) -> None: ...


class LiveConnection:
    """
    Per-client connection state, outbox and writer.

    Usage:
        connection = LiveConnection("c-1", "player-1", websocket)
        writer = asyncio.create_task(connection.run_writer())
        ...
        connection.finish()
        await writer
    """

    def __init__(
        self,
        connection_id: str,
        player_id: str,
        transport: Transport,
        *,
        name: Optional[str] = None,
        color: Optional[str] = None,
        queue_size: Optional[int] = None,
    ) -> None:
        self.connection_id = connection_id
        self.player_id = player_id
        self.name = name
        self.color = color
        self._transport = transport
        self._state = ConnectionState.CONNECTING
        self._queue_size = queue_size if queue_size is not None else settings.outbound_queue_size
        # Unbounded at the asyncio level so the close sentinel always fits;
        # the size limit is enforced in enqueue().
        self.outbox: asyncio.Queue[Optional[str]] = asyncio.Queue()
        self._close_code: Optional[int] = None
        self._close_reason: str = ""
        self.dropped = 0

    # ── State ────────────────────────────────────────────────────────────

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_open(self) -> bool:
        return can_send(self._state)

    @property
    def close_code(self) -> Optional[int]:
        return self._close_code

    def _transition(self, to_state: ConnectionState) -> None:
        assert_transition(self._state, to_state)
        logger.debug(
            f"Connection {self.connection_id[:8]}: {self._state.value} → {to_state.value}"
        )
        self._state = to_state

    def open(self) -> None:
        """Admit the connection (CONNECTING → OPEN)."""
        self._transition(ConnectionState.OPEN)

    def mark_closed(self) -> None:
        """Release the connection. Safe to call more than once."""
        if self._state == ConnectionState.CLOSED:
            return
        if self._state == ConnectionState.OPEN:
            self._transition(ConnectionState.CLOSING)
        self._transition(ConnectionState.CLOSED)

    # ── Outbound ─────────────────────────────────────────────────────────

    def send(self, message: ServerMessage) -> bool:
        """Serialize and queue one message. See ``enqueue``."""
        return self.enqueue(emit(message))

    def enqueue(self, frame: str) -> bool:
        """Queue a serialized frame for the writer.

        Returns ``False`` if the outbox is full and the frame was dropped.
        Raises ``TransportError`` if the connection is not open.
        """
        if not self.is_open:
            raise TransportError(
                f"Connection {self.connection_id} is {self._state.value}, cannot send"
            )
        if self.outbox.qsize() >= self._queue_size:
            self.dropped += 1
            logger.warning(
                f"⚠️ Outbox full for connection {self.connection_id[:8]} "
                f"(player {self.player_id[:8]}), dropping message"
            )
            return False
        self.outbox.put_nowait(frame)
        return True

    def drain_outbox(self) -> list[str]:
        """Pop every queued frame without sending (diagnostics and tests)."""
        frames: list[str] = []
        while not self.outbox.empty():
            frame = self.outbox.get_nowait()
            if frame is not None:
                frames.append(frame)
        return frames

    # ── Close ────────────────────────────────────────────────────────────

    def request_close(self, code: int = CLOSE_NORMAL, reason: str = "") -> None:
        """Ask the writer to flush the outbox and close the transport with ``code``."""
        if self._state in (ConnectionState.CLOSING, ConnectionState.CLOSED):
            return
        self._close_code = code
        self._close_reason = reason
        if self._state == ConnectionState.OPEN:
            self._transition(ConnectionState.CLOSING)
        else:
            self._transition(ConnectionState.CLOSED)
        self.outbox.put_nowait(None)

    def finish(self) -> None:
        """Stop the writer after the peer went away. No close frame is sent."""
        if self._state == ConnectionState.OPEN:
            self._transition(ConnectionState.CLOSING)
        self.outbox.put_nowait(None)

    async def run_writer(self) -> None:
        """Drain the outbox onto the transport until the close sentinel."""
        try:
            while True:
                frame = await self.outbox.get()
                if frame is None:
                    break
                await self._transport.send_text(frame)
        except Exception as exc:
            logger.debug(f"Writer for {self.connection_id[:8]} stopped: {exc}")
        finally:
            if self._close_code is not None:
                try:
                    await self._transport.close(code=self._close_code, reason=self._close_reason)
                except Exception as exc:
                    logger.debug(f"Close for {self.connection_id[:8]} failed: {exc}")
            self.mark_closed()
