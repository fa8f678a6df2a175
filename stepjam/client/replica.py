"""
Client-side session replica.

The replica is what a client renders from.  Local edits apply immediately
(speculatively) through the same store logic the server uses, then go out
as mutation messages.  Server traffic folds back in:

    snapshot            → replace everything, drop pending edits
    differential event  → apply absolute values, adopt the event version
    mutation_ack        → edit confirmed, adopt the server version
    mutation_rejected   → edit refused, request a snapshot to roll it back
    state_mismatch      → record the divergence, request a snapshot

``receive()`` returns the messages the client should send in response, so
the replica itself never touches a socket.
"""
from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any, Optional

from stepjam.config import DEFAULT_STEP_COUNT
from stepjam.core.clock import MsClock, wall_clock_ms
from stepjam.core.clock_sync import ClockSyncEstimator
from stepjam.core.errors import DivergenceError
from stepjam.core.state_store import SessionStateStore
from stepjam.models.session import Player, SessionState
from stepjam.protocol import messages as m
from stepjam.protocol.emitter import parse_server_message
from stepjam.protocol.version import PROTOCOL_VERSION, is_compatible

logger = logging.getLogger(__name__)


def _wire(message: m.ClientMessage) -> dict[str, Any]:
    return message.model_dump(by_alias=True, exclude_none=True, mode="json")


class SessionReplica:
    """Speculative local copy of one session's state."""

    def __init__(
        self,
        player_id: str,
        *,
        step_count: int = DEFAULT_STEP_COUNT,
        clock: MsClock = wall_clock_ms,
    ) -> None:
        self.player_id = player_id
        self.store = SessionStateStore(step_count=step_count, clock=clock)
        self.clock_sync = ClockSyncEstimator()
        self.players: dict[str, Player] = {}
        self.playing: set[str] = set()
        self.immutable = False
        self.has_snapshot = False
        self.last_divergence: Optional[DivergenceError] = None
        self.protocol_compatible = True
        self._clock = clock
        self._next_seq = 0
        self._pending: dict[int, m.Mutation] = {}

    # ── Read access ──────────────────────────────────────────────────────

    @property
    def state(self) -> SessionState:
        return self.store.snapshot()

    @property
    def version(self) -> int:
        return self.store.version

    @property
    def pending_seqs(self) -> list[int]:
        return sorted(self._pending)

    def state_hash(self) -> str:
        return self.store.state_hash()

    # ── Outbound ─────────────────────────────────────────────────────────

    def apply_local(self, mutation: m.Mutation) -> dict[str, Any]:
        """Apply an edit speculatively and return the wire message to send.

        Raises ``MutationValidationError`` if the edit is invalid locally;
        nothing is sent in that case.
        """
        self.store.apply_mutation(mutation, self.player_id)
        self._next_seq += 1
        outbound = mutation.model_copy(update={"seq": self._next_seq})
        self._pending[self._next_seq] = outbound
        return _wire(outbound)

    def state_hash_message(self) -> dict[str, Any]:
        return _wire(m.StateHashRequest(hash=self.state_hash()))

    def clock_sync_message(self) -> dict[str, Any]:
        return _wire(m.ClockSyncRequest(client_time=self._clock()))

    def verify(self, server_hash: str) -> None:
        """Raise ``DivergenceError`` if the local hash differs from ``server_hash``."""
        local_hash = self.state_hash()
        if local_hash != server_hash:
            raise DivergenceError(local_hash, server_hash)

    # ── Inbound ──────────────────────────────────────────────────────────

    def receive(self, data: Mapping[str, Any]) -> list[dict[str, Any]]:
        """Fold one server message into the replica. Returns replies to send."""
        message = parse_server_message(data)

        if isinstance(message, m.SnapshotMessage):
            self._apply_snapshot(message)
        elif isinstance(message, m.MutationEvent):
            self.store.apply_event(message)
        elif isinstance(message, m.MutationAck):
            if message.client_seq is not None:
                self._pending.pop(message.client_seq, None)
            self.store.adopt_version(message.version)
        elif isinstance(message, m.MutationRejected):
            if message.client_seq is not None:
                self._pending.pop(message.client_seq, None)
            logger.info(f"Edit rejected ({message.field}): {message.message}")
            return [_wire(m.RequestSnapshot())]
        elif isinstance(message, m.StateHashMatch):
            self.last_divergence = None
        elif isinstance(message, m.StateMismatch):
            try:
                self.verify(message.server_hash)
            except DivergenceError as exc:
                self.last_divergence = exc
                logger.warning(f"{exc}; requesting snapshot")
            return [_wire(m.RequestSnapshot())]
        elif isinstance(message, m.PlayerJoined):
            self.players[message.player.player_id] = message.player
        elif isinstance(message, m.PlayerLeft):
            self.players.pop(message.player_id, None)
            self.playing.discard(message.player_id)
        elif isinstance(message, m.PlaybackStarted):
            self.playing.add(message.player_id)
        elif isinstance(message, m.PlaybackStopped):
            self.playing.discard(message.player_id)
        elif isinstance(message, m.ClockSyncResponse):
            self.clock_sync.record(message, self._clock())
        return []

    def _apply_snapshot(self, snapshot: m.SnapshotMessage) -> None:
        self.protocol_compatible = is_compatible(snapshot.protocol_version)
        if not self.protocol_compatible:
            logger.warning(
                f"Server speaks protocol {snapshot.protocol_version}, "
                f"this client speaks {PROTOCOL_VERSION}; edits may be misread"
            )
        self.store.replace(snapshot.state)
        self._pending.clear()
        # The server may have minted the id when none was supplied.
        self.player_id = snapshot.player_id
        self.players = {p.player_id: p for p in snapshot.players}
        self.playing = set(snapshot.playing_player_ids)
        self.immutable = snapshot.immutable
        self.has_snapshot = True
        self.last_divergence = None
