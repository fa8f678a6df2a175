"""Live session wire messages — single source of truth for the WebSocket format.

Every frame in either direction is a JSON object discriminated by ``type``.
Raw dicts never leave the server: the actor builds typed ServerMessage
subclasses and the emitter serializes them.

Wire format rules:
  - All keys are camelCase (via CamelModel alias_generator)
  - Client messages may carry ``seq`` (client counter, echoed as ``clientSeq``)
  - Server broadcasts carry ``seq`` (per-session counter, injected by the actor)
  - JSON serialization uses model_dump(by_alias=True, exclude_none=True)

Extra fields policy:
  - Client messages use extra="ignore": old clients send fields we dropped.
  - Server messages use extra="forbid": strict outbound contract.
"""

from __future__ import annotations

from typing import Literal

from pydantic import ConfigDict

from stepjam.models.base import CamelModel
from stepjam.models.session import (
    CursorPosition,
    ParameterLock,
    Player,
    SessionState,
    Track,
)
from stepjam.protocol.version import PROTOCOL_VERSION


# ═══════════════════════════════════════════════════════════════════════
# Client → server
# ═══════════════════════════════════════════════════════════════════════


class ClientMessage(CamelModel):
    """Base class for everything a client may send."""

    model_config = ConfigDict(extra="ignore")

    type: str
    seq: int | None = None


class ClockSyncRequest(ClientMessage):
    type: Literal["clock_sync_request"] = "clock_sync_request"
    client_time: float


class StateHashRequest(ClientMessage):
    """Client's canonical hash of its local replica."""

    type: Literal["state_hash"] = "state_hash"
    hash: str


class RequestSnapshot(ClientMessage):
    type: Literal["request_snapshot"] = "request_snapshot"


class Ping(ClientMessage):
    """Keepalive. Idle clients must send one well inside the staleness window."""

    type: Literal["ping"] = "ping"


class CursorMove(ClientMessage):
    type: Literal["cursor_move"] = "cursor_move"
    position: CursorPosition


class Play(ClientMessage):
    type: Literal["play"] = "play"


class Stop(ClientMessage):
    type: Literal["stop"] = "stop"


class Mutation(ClientMessage):
    """Base class for state-mutating client messages.

    Numeric payloads are typed loosely (``float``) so that out-of-domain
    values reach the store and are rejected there with a field name,
    instead of failing generic parsing.
    """


class ToggleStep(Mutation):
    type: Literal["toggle_step"] = "toggle_step"
    track_id: str
    step: int


class SetParameterLock(Mutation):
    type: Literal["set_parameter_lock"] = "set_parameter_lock"
    track_id: str
    step: int
    lock: ParameterLock


class ClearParameterLock(Mutation):
    type: Literal["clear_parameter_lock"] = "clear_parameter_lock"
    track_id: str
    step: int


class AddTrack(Mutation):
    type: Literal["add_track"] = "add_track"
    track: Track


class DeleteTrack(Mutation):
    type: Literal["delete_track"] = "delete_track"
    track_id: str


class ReorderTrack(Mutation):
    type: Literal["reorder_track"] = "reorder_track"
    track_id: str
    to_index: int


class ClearTrack(Mutation):
    """Turn every step off and drop every parameter lock on one track."""

    type: Literal["clear_track"] = "clear_track"
    track_id: str


class SetTrackVolume(Mutation):
    type: Literal["set_track_volume"] = "set_track_volume"
    track_id: str
    volume: float


class MuteTrack(Mutation):
    type: Literal["mute_track"] = "mute_track"
    track_id: str
    muted: bool


class SetTrackTranspose(Mutation):
    type: Literal["set_track_transpose"] = "set_track_transpose"
    track_id: str
    transpose: float


class SetTrackSample(Mutation):
    type: Literal["set_track_sample"] = "set_track_sample"
    track_id: str
    sample_id: str
    name: str | None = None


class SetTempo(Mutation):
    type: Literal["set_tempo"] = "set_tempo"
    tempo: float


class SetSwing(Mutation):
    type: Literal["set_swing"] = "set_swing"
    swing: float


# ═══════════════════════════════════════════════════════════════════════
# Server → client
# ═══════════════════════════════════════════════════════════════════════


class ServerMessage(CamelModel):
    """Base class for everything the server sends.

    ``seq`` defaults to -1 (sentinel); the actor overwrites it with the
    session's monotonic broadcast counter.
    """

    model_config = ConfigDict(extra="forbid")

    type: str
    seq: int = -1


class SnapshotMessage(ServerMessage):
    """Complete authoritative state plus presence, for join and full resync."""

    type: Literal["snapshot"] = "snapshot"
    state: SessionState
    players: list[Player]
    player_id: str
    snapshot_timestamp: int
    immutable: bool = False
    playing_player_ids: list[str] = []
    protocol_version: int = PROTOCOL_VERSION


class ClockSyncResponse(ServerMessage):
    type: Literal["clock_sync_response"] = "clock_sync_response"
    client_time: float
    server_time: int


class StateHashMatch(ServerMessage):
    type: Literal["state_hash_match"] = "state_hash_match"


class StateMismatch(ServerMessage):
    """Client hash differs; the client should follow with ``request_snapshot``."""

    type: Literal["state_mismatch"] = "state_mismatch"
    server_hash: str


class Pong(ServerMessage):
    type: Literal["pong"] = "pong"


class PlayerJoined(ServerMessage):
    type: Literal["player_joined"] = "player_joined"
    player: Player


class PlayerLeft(ServerMessage):
    type: Literal["player_left"] = "player_left"
    player_id: str
    reason: Literal["disconnect", "stale"] = "disconnect"


class CursorMoved(ServerMessage):
    type: Literal["cursor_moved"] = "cursor_moved"
    player_id: str
    position: CursorPosition
    color: str = ""
    name: str = ""


class PlaybackStarted(ServerMessage):
    type: Literal["playback_started"] = "playback_started"
    player_id: str
    start_time: int
    tempo: int


class PlaybackStopped(ServerMessage):
    type: Literal["playback_stopped"] = "playback_stopped"
    player_id: str


class MutationAck(ServerMessage):
    """Sent only to the originator of an accepted mutation."""

    type: Literal["mutation_ack"] = "mutation_ack"
    mutation_type: str
    version: int
    client_seq: int | None = None


class MutationRejected(ServerMessage):
    """Sent only to the originator of a rejected mutation. Never broadcast."""

    type: Literal["mutation_rejected"] = "mutation_rejected"
    mutation_type: str
    field: str
    message: str
    client_seq: int | None = None


class ErrorMessage(ServerMessage):
    type: Literal["error"] = "error"
    message: str
    code: str | None = None


# ── Differential mutation events ─────────────────────────────────────────
#
# Each carries absolute post-mutation values so a replica can apply it
# idempotently, plus the version it produced.


class MutationEvent(ServerMessage):
    player_id: str
    version: int
    server_time: int


class StepToggled(MutationEvent):
    type: Literal["step_toggled"] = "step_toggled"
    track_id: str
    step: int
    value: bool


class ParameterLockSet(MutationEvent):
    type: Literal["parameter_lock_set"] = "parameter_lock_set"
    track_id: str
    step: int
    lock: ParameterLock


class ParameterLockCleared(MutationEvent):
    type: Literal["parameter_lock_cleared"] = "parameter_lock_cleared"
    track_id: str
    step: int


class TrackAdded(MutationEvent):
    type: Literal["track_added"] = "track_added"
    track: Track


class TrackDeleted(MutationEvent):
    type: Literal["track_deleted"] = "track_deleted"
    track_id: str


class TrackReordered(MutationEvent):
    type: Literal["track_reordered"] = "track_reordered"
    track_id: str
    from_index: int
    to_index: int


class TrackCleared(MutationEvent):
    type: Literal["track_cleared"] = "track_cleared"
    track_id: str


class TrackVolumeSet(MutationEvent):
    type: Literal["track_volume_set"] = "track_volume_set"
    track_id: str
    volume: float


class TrackMuted(MutationEvent):
    type: Literal["track_muted"] = "track_muted"
    track_id: str
    muted: bool


class TrackTransposeSet(MutationEvent):
    type: Literal["track_transpose_set"] = "track_transpose_set"
    track_id: str
    transpose: int


class TrackSampleSet(MutationEvent):
    type: Literal["track_sample_set"] = "track_sample_set"
    track_id: str
    sample_id: str
    name: str


class TempoChanged(MutationEvent):
    type: Literal["tempo_changed"] = "tempo_changed"
    tempo: int


class SwingChanged(MutationEvent):
    type: Literal["swing_changed"] = "swing_changed"
    swing: float
