"""Session state invariants — detection and best-effort repair.

``find_violations`` is run by the store after every accepted mutation;
any hit there is a bug and stops the actor.  ``repair_state`` is only
used on hydrate, where persisted data may predate a bounds change or
have been written by an older build.
"""
from __future__ import annotations

import logging
import math

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
from stepjam.models.session import ParameterLock, SessionState

logger = logging.getLogger(__name__)


def _in_range(value: float, low: float, high: float) -> bool:
    return math.isfinite(value) and low <= value <= high


def _lock_violations(lock: ParameterLock) -> list[str]:
    problems: list[str] = []
    if lock.is_empty():
        problems.append("empty lock")
    if lock.pitch is not None and not MIN_PLOCK_PITCH <= lock.pitch <= MAX_PLOCK_PITCH:
        problems.append(f"pitch {lock.pitch} out of range")
    if lock.volume is not None and not _in_range(lock.volume, MIN_VOLUME, MAX_VOLUME):
        problems.append(f"volume {lock.volume} out of range")
    return problems


def find_violations(
    state: SessionState,
    step_count: int = DEFAULT_STEP_COUNT,
    max_tracks: int = MAX_TRACKS,
) -> list[str]:
    """Return a human-readable list of invariant violations (empty = valid)."""
    violations: list[str] = []

    if state.version < 0:
        violations.append(f"negative version {state.version}")
    if len(state.tracks) > max_tracks:
        violations.append(f"{len(state.tracks)} tracks exceeds max {max_tracks}")
    if not MIN_TEMPO <= state.tempo <= MAX_TEMPO:
        violations.append(f"tempo {state.tempo} out of range")
    if not _in_range(state.swing, MIN_SWING, MAX_SWING):
        violations.append(f"swing {state.swing} out of range")

    seen: set[str] = set()
    for track in state.tracks:
        if track.id in seen:
            violations.append(f"duplicate track id {track.id!r}")
        seen.add(track.id)

        if len(track.steps) != step_count:
            violations.append(
                f"track {track.id!r} has {len(track.steps)} steps, expected {step_count}"
            )
        if len(track.parameter_locks) != step_count:
            violations.append(
                f"track {track.id!r} has {len(track.parameter_locks)} lock slots, "
                f"expected {step_count}"
            )
        if not _in_range(track.volume, MIN_VOLUME, MAX_VOLUME):
            violations.append(f"track {track.id!r} volume {track.volume} out of range")
        if not MIN_TRANSPOSE <= track.transpose <= MAX_TRANSPOSE:
            violations.append(f"track {track.id!r} transpose {track.transpose} out of range")
        for index, lock in enumerate(track.parameter_locks):
            if lock is None:
                continue
            for problem in _lock_violations(lock):
                violations.append(f"track {track.id!r} step {index}: {problem}")

    return violations


def _clamp(value: float, low: float, high: float) -> float:
    if not math.isfinite(value):
        return low
    return max(low, min(high, value))


def repair_state(
    state: SessionState,
    step_count: int = DEFAULT_STEP_COUNT,
    max_tracks: int = MAX_TRACKS,
) -> tuple[SessionState, list[str]]:
    """Return a repaired deep copy of ``state`` and the repairs applied.

    Duplicate track ids keep their first occurrence.  Step and lock arrays
    are truncated or padded.  Out-of-range scalars are clamped and invalid
    locks are dropped.  ``version`` is preserved.
    """
    repaired = state.model_copy(deep=True)
    repairs: list[str] = []

    seen: set[str] = set()
    unique_tracks = []
    for track in repaired.tracks:
        if track.id in seen:
            repairs.append(f"dropped duplicate track {track.id!r}")
            continue
        seen.add(track.id)
        unique_tracks.append(track)
    if len(unique_tracks) > max_tracks:
        repairs.append(f"truncated {len(unique_tracks)} tracks to {max_tracks}")
        unique_tracks = unique_tracks[:max_tracks]
    repaired.tracks = unique_tracks

    for track in repaired.tracks:
        if len(track.steps) != step_count:
            repairs.append(f"resized steps of {track.id!r} from {len(track.steps)}")
            track.steps = (track.steps + [False] * step_count)[:step_count]
        if len(track.parameter_locks) != step_count:
            repairs.append(f"resized lock slots of {track.id!r}")
            track.parameter_locks = (track.parameter_locks + [None] * step_count)[:step_count]

        volume = _clamp(track.volume, MIN_VOLUME, MAX_VOLUME)
        if volume != track.volume:
            repairs.append(f"clamped volume of {track.id!r}")
            track.volume = volume
        transpose = int(_clamp(track.transpose, MIN_TRANSPOSE, MAX_TRANSPOSE))
        if transpose != track.transpose:
            repairs.append(f"clamped transpose of {track.id!r}")
            track.transpose = transpose

        for index, lock in enumerate(track.parameter_locks):
            if lock is not None and _lock_violations(lock):
                repairs.append(f"dropped invalid lock on {track.id!r} step {index}")
                track.parameter_locks[index] = None

    tempo = int(_clamp(repaired.tempo, MIN_TEMPO, MAX_TEMPO))
    if tempo != repaired.tempo:
        repairs.append(f"clamped tempo {repaired.tempo} to {tempo}")
        repaired.tempo = tempo
    swing = _clamp(repaired.swing, MIN_SWING, MAX_SWING)
    if swing != repaired.swing:
        repairs.append(f"clamped swing {repaired.swing} to {swing}")
        repaired.swing = swing
    if repaired.version < 0:
        repairs.append("reset negative version to 0")
        repaired.version = 0

    return repaired, repairs
