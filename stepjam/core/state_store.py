"""
Authoritative session state store for StepJam Live.

One store per live session id, owned by that session's actor.  Clients
never touch it directly: they send mutations, the actor applies them here
in arrival order, and the resulting differential events fan out to every
other connection.

Key principles:
1. Every accepted mutation bumps ``version`` by exactly one.
2. Rejections raise ``MutationValidationError`` before anything changes.
3. Events carry absolute post-mutation values, so replicas can apply
   them idempotently (``apply_event``).
4. Readers only ever get deep copies (``snapshot``).

Architecture:
    SessionStateStore (single writer, versioned)
        └── SessionState (tracks, tempo, swing, version)
        └── EventLog (bounded, append-only mutation history)
"""

from __future__ import annotations

import logging
import math
from collections import deque
from dataclasses import dataclass
from typing import Callable, Optional

from stepjam.config import (
    DEFAULT_STEP_COUNT,
    MAX_PLOCK_PITCH,
    MAX_SWING,
    MAX_TEMPO,
    MAX_TRACKS,
    MAX_TRANSPOSE,
    MAX_VOLUME,
    MIN_PLOCK_PITCH,
    MIN_SWING,
    MIN_TEMPO,
    MIN_TRANSPOSE,
    MIN_VOLUME,
)
from stepjam.core.canonical_hash import compute_state_hash
from stepjam.core.clock import MsClock, wall_clock_ms
from stepjam.core.errors import FatalActorError, MutationValidationError
from stepjam.core.invariants import find_violations, repair_state
from stepjam.models.session import ParameterLock, SessionState, Track
from stepjam.protocol import messages as m

logger = logging.getLogger(__name__)

EVENT_LOG_SIZE = 256


@dataclass(frozen=True)
class MutationResult:
    """Outcome of one accepted mutation."""

    event: m.MutationEvent
    version: int
    mutation_type: str


class SessionStateStore:
    """
    Versioned, single-writer store for one session's musical content.

    Usage:
        store = SessionStateStore.hydrate(persisted_state)
        result = store.apply_mutation(ToggleStep(track_id="kick", step=4), "player-1")
        broadcast(result.event)
    """

    def __init__(
        self,
        state: Optional[SessionState] = None,
        *,
        step_count: int = DEFAULT_STEP_COUNT,
        max_tracks: int = MAX_TRACKS,
        clock: MsClock = wall_clock_ms,
        event_log_size: int = EVENT_LOG_SIZE,
        check_invariants: bool = True,
    ) -> None:
        self._state = state.model_copy(deep=True) if state is not None else SessionState()
        self._step_count = step_count
        self._max_tracks = max_tracks
        self._clock = clock
        self._events: deque[m.MutationEvent] = deque(maxlen=event_log_size)
        self._check_invariants = check_invariants

        self._handlers: dict[type[m.Mutation], Callable[[m.Mutation], dict[str, object]]] = {
            m.ToggleStep: self._toggle_step,
            m.SetParameterLock: self._set_parameter_lock,
            m.ClearParameterLock: self._clear_parameter_lock,
            m.AddTrack: self._add_track,
            m.DeleteTrack: self._delete_track,
            m.ReorderTrack: self._reorder_track,
            m.ClearTrack: self._clear_track,
            m.SetTrackVolume: self._set_track_volume,
            m.MuteTrack: self._mute_track,
            m.SetTrackTranspose: self._set_track_transpose,
            m.SetTrackSample: self._set_track_sample,
            m.SetTempo: self._set_tempo,
            m.SetSwing: self._set_swing,
        }

    @classmethod
    def hydrate(
        cls,
        state: Optional[SessionState],
        *,
        step_count: int = DEFAULT_STEP_COUNT,
        max_tracks: int = MAX_TRACKS,
        clock: MsClock = wall_clock_ms,
        session_id: str = "",
    ) -> "SessionStateStore":
        """Build a store from persisted state, repairing it if needed."""
        if state is None:
            return cls(step_count=step_count, max_tracks=max_tracks, clock=clock)

        violations = find_violations(state, step_count, max_tracks)
        if violations:
            logger.warning(
                f"⚠️ Persisted session {session_id} violates {len(violations)} invariant(s); repairing"
            )
            state, repairs = repair_state(state, step_count, max_tracks)
            for repair in repairs:
                logger.warning(f"🔧 [{session_id}] {repair}")
        return cls(state, step_count=step_count, max_tracks=max_tracks, clock=clock)

    # =========================================================================
    # Read access
    # =========================================================================

    @property
    def version(self) -> int:
        return self._state.version

    @property
    def step_count(self) -> int:
        return self._step_count

    @property
    def tempo(self) -> int:
        return self._state.tempo

    def snapshot(self) -> SessionState:
        """Deep copy of the current state."""
        return self._state.model_copy(deep=True)

    def state_hash(self) -> str:
        return compute_state_hash(self._state, self._step_count)

    def find_violations(self) -> list[str]:
        return find_violations(self._state, self._step_count, self._max_tracks)

    def get_events_since(self, version: int) -> Optional[list[m.MutationEvent]]:
        """Events with ``version`` greater than the given one.

        Returns ``None`` when the log no longer reaches back that far; the
        caller must fall back to a full snapshot.
        """
        if version >= self._state.version:
            return []
        if not self._events or self._events[0].version > version + 1:
            return None
        return [e.model_copy(deep=True) for e in self._events if e.version > version]

    # =========================================================================
    # Mutations (authoritative path)
    # =========================================================================

    def apply_mutation(self, mutation: m.Mutation, from_player_id: str) -> MutationResult:
        """Validate and apply one mutation.

        Raises ``MutationValidationError`` on rejection (state untouched) and
        ``FatalActorError`` if the result breaks an invariant.
        """
        handler = self._handlers.get(type(mutation))
        if handler is None:
            raise MutationValidationError("type", f"Unsupported mutation '{mutation.type}'")

        previous_version = self._state.version
        payload = handler(mutation)
        self._state.version = previous_version + 1

        self._verify(previous_version)

        event_class = _EVENT_FOR_MUTATION[type(mutation)]
        event = event_class(
            player_id=from_player_id,
            version=self._state.version,
            server_time=self._clock(),
            **payload,
        )
        self._events.append(event)
        return MutationResult(
            event=event.model_copy(deep=True),
            version=self._state.version,
            mutation_type=mutation.type,
        )

    def _verify(self, previous_version: int) -> None:
        if self._state.version != previous_version + 1:
            raise FatalActorError(
                f"Version did not advance by one ({previous_version} -> {self._state.version})"
            )
        if not self._check_invariants:
            return
        violations = self.find_violations()
        if violations:
            raise FatalActorError(f"Invariant violated: {'; '.join(violations)}")

    # ── Validation helpers ───────────────────────────────────────────────

    def _track(self, track_id: str) -> Track:
        for track in self._state.tracks:
            if track.id == track_id:
                return track
        raise MutationValidationError("trackId", f"Unknown track '{track_id}'")

    def _index_of(self, track_id: str) -> int:
        for index, track in enumerate(self._state.tracks):
            if track.id == track_id:
                return index
        raise MutationValidationError("trackId", f"Unknown track '{track_id}'")

    def _check_step(self, step: int) -> None:
        if not 0 <= step < self._step_count:
            raise MutationValidationError(
                "step", f"Step {step} outside [0, {self._step_count})"
            )

    @staticmethod
    def _check_range(field: str, value: float, low: float, high: float) -> float:
        if not math.isfinite(value) or not low <= value <= high:
            raise MutationValidationError(field, f"{value} outside [{low}, {high}]")
        return value

    @staticmethod
    def _check_integer(field: str, value: float) -> int:
        if not math.isfinite(value) or float(value) != int(value):
            raise MutationValidationError(field, f"{value} is not an integer")
        return int(value)

    @staticmethod
    def _check_text(field: str, value: str) -> str:
        try:
            value.encode("utf-8")
        except UnicodeEncodeError:
            raise MutationValidationError(field, "Text is not valid UTF-8") from None
        return value

    def _validated_lock(self, lock: ParameterLock, field: str = "lock") -> ParameterLock:
        if lock.is_empty():
            raise MutationValidationError(field, "Lock must set pitch or volume")
        if lock.pitch is not None:
            self._check_range(f"{field}.pitch", lock.pitch, MIN_PLOCK_PITCH, MAX_PLOCK_PITCH)
        if lock.volume is not None:
            self._check_range(f"{field}.volume", lock.volume, MIN_VOLUME, MAX_VOLUME)
        return ParameterLock(pitch=lock.pitch, volume=lock.volume)

    # ── Handlers ─────────────────────────────────────────────────────────
    #
    # Each handler validates fully before touching state, then returns the
    # event payload (absolute values).

    def _toggle_step(self, mutation: m.ToggleStep) -> dict[str, object]:
        track = self._track(mutation.track_id)
        self._check_step(mutation.step)
        track.steps[mutation.step] = not track.steps[mutation.step]
        return {"track_id": track.id, "step": mutation.step, "value": track.steps[mutation.step]}

    def _set_parameter_lock(self, mutation: m.SetParameterLock) -> dict[str, object]:
        track = self._track(mutation.track_id)
        self._check_step(mutation.step)
        lock = self._validated_lock(mutation.lock)
        track.parameter_locks[mutation.step] = lock
        return {"track_id": track.id, "step": mutation.step, "lock": lock.model_copy()}

    def _clear_parameter_lock(self, mutation: m.ClearParameterLock) -> dict[str, object]:
        track = self._track(mutation.track_id)
        self._check_step(mutation.step)
        track.parameter_locks[mutation.step] = None
        return {"track_id": track.id, "step": mutation.step}

    def _add_track(self, mutation: m.AddTrack) -> dict[str, object]:
        incoming = mutation.track
        self._check_text("track.id", incoming.id)
        self._check_text("track.name", incoming.name)
        self._check_text("track.sampleId", incoming.sample_id)
        if any(t.id == incoming.id for t in self._state.tracks):
            raise MutationValidationError("track.id", f"Track '{incoming.id}' already exists")
        if len(self._state.tracks) >= self._max_tracks:
            raise MutationValidationError("track", f"Session already has {self._max_tracks} tracks")
        if len(incoming.steps) != self._step_count:
            raise MutationValidationError(
                "track.steps", f"Expected {self._step_count} steps, got {len(incoming.steps)}"
            )
        if len(incoming.parameter_locks) != self._step_count:
            raise MutationValidationError(
                "track.parameterLocks",
                f"Expected {self._step_count} lock slots, got {len(incoming.parameter_locks)}",
            )
        self._check_range("track.volume", incoming.volume, MIN_VOLUME, MAX_VOLUME)
        self._check_range("track.transpose", incoming.transpose, MIN_TRANSPOSE, MAX_TRANSPOSE)
        locks = [
            self._validated_lock(lock, f"track.parameterLocks.{i}") if lock is not None else None
            for i, lock in enumerate(incoming.parameter_locks)
        ]

        track = incoming.model_copy(deep=True)
        track.parameter_locks = locks
        self._state.tracks.append(track)
        return {"track": track.model_copy(deep=True)}

    def _delete_track(self, mutation: m.DeleteTrack) -> dict[str, object]:
        index = self._index_of(mutation.track_id)
        del self._state.tracks[index]
        return {"track_id": mutation.track_id}

    def _reorder_track(self, mutation: m.ReorderTrack) -> dict[str, object]:
        from_index = self._index_of(mutation.track_id)
        if not 0 <= mutation.to_index < len(self._state.tracks):
            raise MutationValidationError(
                "toIndex", f"Index {mutation.to_index} outside [0, {len(self._state.tracks)})"
            )
        track = self._state.tracks.pop(from_index)
        self._state.tracks.insert(mutation.to_index, track)
        return {
            "track_id": track.id,
            "from_index": from_index,
            "to_index": mutation.to_index,
        }

    def _clear_track(self, mutation: m.ClearTrack) -> dict[str, object]:
        track = self._track(mutation.track_id)
        track.steps = [False] * self._step_count
        track.parameter_locks = [None] * self._step_count
        return {"track_id": track.id}

    def _set_track_volume(self, mutation: m.SetTrackVolume) -> dict[str, object]:
        track = self._track(mutation.track_id)
        volume = self._check_range("volume", mutation.volume, MIN_VOLUME, MAX_VOLUME)
        track.volume = float(volume)
        return {"track_id": track.id, "volume": track.volume}

    def _mute_track(self, mutation: m.MuteTrack) -> dict[str, object]:
        track = self._track(mutation.track_id)
        track.muted = mutation.muted
        return {"track_id": track.id, "muted": track.muted}

    def _set_track_transpose(self, mutation: m.SetTrackTranspose) -> dict[str, object]:
        track = self._track(mutation.track_id)
        transpose = self._check_integer("transpose", mutation.transpose)
        self._check_range("transpose", transpose, MIN_TRANSPOSE, MAX_TRANSPOSE)
        track.transpose = transpose
        return {"track_id": track.id, "transpose": transpose}

    def _set_track_sample(self, mutation: m.SetTrackSample) -> dict[str, object]:
        track = self._track(mutation.track_id)
        if not mutation.sample_id:
            raise MutationValidationError("sampleId", "Sample id must not be empty")
        self._check_text("sampleId", mutation.sample_id)
        if mutation.name is not None:
            self._check_text("name", mutation.name)
        track.sample_id = mutation.sample_id
        if mutation.name is not None:
            track.name = mutation.name
        return {"track_id": track.id, "sample_id": track.sample_id, "name": track.name}

    def _set_tempo(self, mutation: m.SetTempo) -> dict[str, object]:
        tempo = self._check_integer("tempo", mutation.tempo)
        self._check_range("tempo", tempo, MIN_TEMPO, MAX_TEMPO)
        self._state.tempo = tempo
        return {"tempo": tempo}

    def _set_swing(self, mutation: m.SetSwing) -> dict[str, object]:
        swing = self._check_range("swing", mutation.swing, MIN_SWING, MAX_SWING)
        self._state.swing = float(swing)
        return {"swing": self._state.swing}

    # =========================================================================
    # Replica path
    # =========================================================================

    def apply_event(self, event: m.MutationEvent) -> None:
        """Apply a server event to a replica and adopt its version.

        Events carry absolute values, so re-applying one is harmless.  An
        event for a track this replica does not have is skipped; the next
        hash check detects the gap and a snapshot heals it.
        """
        try:
            self._apply_event_values(event)
        except MutationValidationError as exc:
            logger.debug(f"Skipping {event.type} on replica: {exc}")
        self._state.version = event.version

    def _apply_event_values(self, event: m.MutationEvent) -> None:
        if isinstance(event, m.StepToggled):
            self._check_step(event.step)
            self._track(event.track_id).steps[event.step] = event.value
        elif isinstance(event, m.ParameterLockSet):
            self._check_step(event.step)
            self._track(event.track_id).parameter_locks[event.step] = event.lock.model_copy()
        elif isinstance(event, m.ParameterLockCleared):
            self._check_step(event.step)
            self._track(event.track_id).parameter_locks[event.step] = None
        elif isinstance(event, m.TrackAdded):
            track = event.track.model_copy(deep=True)
            for index, existing in enumerate(self._state.tracks):
                if existing.id == track.id:
                    self._state.tracks[index] = track
                    break
            else:
                self._state.tracks.append(track)
        elif isinstance(event, m.TrackDeleted):
            self._state.tracks = [t for t in self._state.tracks if t.id != event.track_id]
        elif isinstance(event, m.TrackReordered):
            index = self._index_of(event.track_id)
            track = self._state.tracks.pop(index)
            to_index = min(max(event.to_index, 0), len(self._state.tracks))
            self._state.tracks.insert(to_index, track)
        elif isinstance(event, m.TrackCleared):
            track = self._track(event.track_id)
            track.steps = [False] * self._step_count
            track.parameter_locks = [None] * self._step_count
        elif isinstance(event, m.TrackVolumeSet):
            self._track(event.track_id).volume = event.volume
        elif isinstance(event, m.TrackMuted):
            self._track(event.track_id).muted = event.muted
        elif isinstance(event, m.TrackTransposeSet):
            self._track(event.track_id).transpose = event.transpose
        elif isinstance(event, m.TrackSampleSet):
            track = self._track(event.track_id)
            track.sample_id = event.sample_id
            track.name = event.name
        elif isinstance(event, m.TempoChanged):
            self._state.tempo = event.tempo
        elif isinstance(event, m.SwingChanged):
            self._state.swing = event.swing
        else:
            raise MutationValidationError("type", f"Unsupported event '{event.type}'")

    def adopt_version(self, version: int) -> None:
        """Take the server's version for an acknowledged local mutation."""
        self._state.version = version

    def replace(self, state: SessionState) -> None:
        """Swap in a full snapshot (replica resync). Clears the event log."""
        self._state = state.model_copy(deep=True)
        self._events.clear()


_EVENT_FOR_MUTATION: dict[type[m.Mutation], type[m.MutationEvent]] = {
    m.ToggleStep: m.StepToggled,
    m.SetParameterLock: m.ParameterLockSet,
    m.ClearParameterLock: m.ParameterLockCleared,
    m.AddTrack: m.TrackAdded,
    m.DeleteTrack: m.TrackDeleted,
    m.ReorderTrack: m.TrackReordered,
    m.ClearTrack: m.TrackCleared,
    m.SetTrackVolume: m.TrackVolumeSet,
    m.MuteTrack: m.TrackMuted,
    m.SetTrackTranspose: m.TrackTransposeSet,
    m.SetTrackSample: m.TrackSampleSet,
    m.SetTempo: m.TempoChanged,
    m.SetSwing: m.SwingChanged,
}
