"""Message registry — canonical mapping of ``type`` strings to model classes.

Invariants:
  - Every message the server can emit has an entry in SERVER_MESSAGE_REGISTRY.
  - Every message a client may send has an entry in CLIENT_MESSAGE_REGISTRY.
  - Unknown types cannot be emitted or parsed.
  - Registries are frozen at import time. No runtime mutation.
"""

from __future__ import annotations

from typing import Type

from stepjam.protocol.messages import (
    AddTrack,
    ClearParameterLock,
    ClearTrack,
    ClientMessage,
    ClockSyncRequest,
    ClockSyncResponse,
    CursorMove,
    CursorMoved,
    DeleteTrack,
    ErrorMessage,
    MuteTrack,
    Mutation,
    MutationAck,
    MutationEvent,
    MutationRejected,
    ParameterLockCleared,
    ParameterLockSet,
    Ping,
    Play,
    PlaybackStarted,
    PlaybackStopped,
    PlayerJoined,
    PlayerLeft,
    Pong,
    ReorderTrack,
    RequestSnapshot,
    ServerMessage,
    SetParameterLock,
    SetSwing,
    SetTempo,
    SetTrackSample,
    SetTrackTranspose,
    SetTrackVolume,
    SnapshotMessage,
    StateHashMatch,
    StateHashRequest,
    StateMismatch,
    StepToggled,
    Stop,
    SwingChanged,
    TempoChanged,
    ToggleStep,
    TrackAdded,
    TrackCleared,
    TrackDeleted,
    TrackMuted,
    TrackReordered,
    TrackSampleSet,
    TrackTransposeSet,
    TrackVolumeSet,
)

MUTATION_REGISTRY: dict[str, Type[Mutation]] = {
    "toggle_step": ToggleStep,
    "set_parameter_lock": SetParameterLock,
    "clear_parameter_lock": ClearParameterLock,
    "add_track": AddTrack,
    "delete_track": DeleteTrack,
    "reorder_track": ReorderTrack,
    "clear_track": ClearTrack,
    "set_track_volume": SetTrackVolume,
    "mute_track": MuteTrack,
    "set_track_transpose": SetTrackTranspose,
    "set_track_sample": SetTrackSample,
    "set_tempo": SetTempo,
    "set_swing": SetSwing,
}

CLIENT_MESSAGE_REGISTRY: dict[str, Type[ClientMessage]] = {
    "clock_sync_request": ClockSyncRequest,
    "state_hash": StateHashRequest,
    "request_snapshot": RequestSnapshot,
    "ping": Ping,
    "cursor_move": CursorMove,
    "play": Play,
    "stop": Stop,
    **MUTATION_REGISTRY,
}

MUTATION_EVENT_REGISTRY: dict[str, Type[MutationEvent]] = {
    "step_toggled": StepToggled,
    "parameter_lock_set": ParameterLockSet,
    "parameter_lock_cleared": ParameterLockCleared,
    "track_added": TrackAdded,
    "track_deleted": TrackDeleted,
    "track_reordered": TrackReordered,
    "track_cleared": TrackCleared,
    "track_volume_set": TrackVolumeSet,
    "track_muted": TrackMuted,
    "track_transpose_set": TrackTransposeSet,
    "track_sample_set": TrackSampleSet,
    "tempo_changed": TempoChanged,
    "swing_changed": SwingChanged,
}

SERVER_MESSAGE_REGISTRY: dict[str, Type[ServerMessage]] = {
    "snapshot": SnapshotMessage,
    "clock_sync_response": ClockSyncResponse,
    "state_hash_match": StateHashMatch,
    "state_mismatch": StateMismatch,
    "pong": Pong,
    "player_joined": PlayerJoined,
    "player_left": PlayerLeft,
    "cursor_moved": CursorMoved,
    "playback_started": PlaybackStarted,
    "playback_stopped": PlaybackStopped,
    "mutation_ack": MutationAck,
    "mutation_rejected": MutationRejected,
    "error": ErrorMessage,
    **MUTATION_EVENT_REGISTRY,
}

MUTATION_TYPES: frozenset[str] = frozenset(MUTATION_REGISTRY.keys())
ALL_CLIENT_TYPES: frozenset[str] = frozenset(CLIENT_MESSAGE_REGISTRY.keys())
ALL_SERVER_TYPES: frozenset[str] = frozenset(SERVER_MESSAGE_REGISTRY.keys())


def is_mutation_type(message_type: str) -> bool:
    """Return ``True`` when ``message_type`` names a state mutation."""
    return message_type in MUTATION_REGISTRY


def is_known_client_message(message_type: str) -> bool:
    return message_type in CLIENT_MESSAGE_REGISTRY
