"""Deterministic session-state hashing for divergence detection.

Rules:
  - Musical content participates: tracks (in order), tempo, swing.
  - ``version`` is excluded; a speculative replica cannot know it.
  - Step arrays are normalized to the canonical step count
    (truncated, or padded with ``False`` / ``null``).
  - Lock objects are normalized to ``{"pitch": int|null, "volume": float|null}``;
    an empty lock is ``null``.
  - Floats are rounded to 6 decimal places and ``-0.0`` becomes ``0.0``.
  - Serialization is canonical: sorted keys, no whitespace, UTF-8.
  - Hash is SHA-256, truncated to 16 hex chars.

Client and server must agree on every rule above or their hashes will
never match.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any, Optional

from stepjam.config import DEFAULT_STEP_COUNT
from stepjam.models.session import ParameterLock, SessionState, Track

HASH_LENGTH = 16
FLOAT_PRECISION = 6


def _canonical_float(value: float) -> float:
    return round(float(value), FLOAT_PRECISION) + 0.0


def _canonical_lock(lock: Optional[ParameterLock]) -> Optional[dict[str, Any]]:
    if lock is None or lock.is_empty():
        return None
    return {
        "pitch": int(lock.pitch) if lock.pitch is not None else None,
        "volume": _canonical_float(lock.volume) if lock.volume is not None else None,
    }


def canonical_track(track: Track, step_count: int = DEFAULT_STEP_COUNT) -> dict[str, Any]:
    """Normalize one track into its hashable dict form."""
    steps = [bool(s) for s in track.steps[:step_count]]
    steps += [False] * (step_count - len(steps))

    locks = [_canonical_lock(lock) for lock in track.parameter_locks[:step_count]]
    locks += [None] * (step_count - len(locks))

    return {
        "id": track.id,
        "name": track.name,
        "sampleId": track.sample_id,
        "steps": steps,
        "parameterLocks": locks,
        "volume": _canonical_float(track.volume),
        "muted": bool(track.muted),
        "transpose": int(track.transpose),
    }


def canonical_state(state: SessionState, step_count: int = DEFAULT_STEP_COUNT) -> dict[str, Any]:
    return {
        "tracks": [canonical_track(t, step_count) for t in state.tracks],
        "tempo": int(state.tempo),
        "swing": _canonical_float(state.swing),
    }


def canonical_json(state: SessionState, step_count: int = DEFAULT_STEP_COUNT) -> str:
    """Canonical serialization: sorted keys, no whitespace."""
    return json.dumps(
        canonical_state(state, step_count),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    )


def compute_state_hash(state: SessionState, step_count: int = DEFAULT_STEP_COUNT) -> str:
    """16-char SHA-256 digest of the canonical serialization."""
    serialized = canonical_json(state, step_count)
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()[:HASH_LENGTH]
