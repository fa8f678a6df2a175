"""Session data model — tracks, steps, parameter locks, players.

These are the shapes that travel on the wire (camelCase) and that the
authoritative store holds.  Range checks live in the store and the
invariant checker, not here: a persisted session with an out-of-range
value must still load so it can be repaired.
"""
from __future__ import annotations

from pydantic import ConfigDict, Field

from stepjam.config import DEFAULT_STEP_COUNT, DEFAULT_SWING, DEFAULT_TEMPO
from stepjam.models.base import CamelModel


class ParameterLock(CamelModel):
    """Per-step override of pitch and/or volume.

    ``pitch`` is a semitone delta; ``volume`` is a multiplier on the track
    volume.  At least one of the two must be set for a lock to be stored.
    """

    model_config = ConfigDict(extra="ignore")

    pitch: int | None = None
    volume: float | None = None

    def is_empty(self) -> bool:
        return self.pitch is None and self.volume is None


class Track(CamelModel):
    """One instrument lane with a fixed-length step sequence."""

    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1)
    name: str = ""
    sample_id: str = ""
    steps: list[bool] = Field(default_factory=lambda: [False] * DEFAULT_STEP_COUNT)
    parameter_locks: list[ParameterLock | None] = Field(
        default_factory=lambda: [None] * DEFAULT_STEP_COUNT
    )
    volume: float = 1.0
    muted: bool = False
    transpose: int = 0


class SessionState(CamelModel):
    """Authoritative musical content for one session.

    ``version`` increases by exactly one on every accepted mutation.
    """

    model_config = ConfigDict(extra="ignore")

    tracks: list[Track] = Field(default_factory=list)
    tempo: int = DEFAULT_TEMPO
    swing: float = DEFAULT_SWING
    version: int = 0


class Player(CamelModel):
    """Presence entry for one connected player.

    ``name`` and ``color`` are display-only and are not carried across
    reconnects; ``connected_at`` and ``last_seen_at`` are server
    timestamps in epoch milliseconds.
    """

    player_id: str
    connected_at: int
    last_seen_at: int
    name: str = ""
    color: str = ""


class CursorPosition(CamelModel):
    """Pointer position over the grid, as percentages of the container."""

    model_config = ConfigDict(extra="ignore")

    x: float = Field(ge=0, le=100)
    y: float = Field(ge=0, le=100)
    track_id: str | None = None
    step: int | None = None
