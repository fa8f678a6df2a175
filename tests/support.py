"""Shared test helpers: fake clock, state builders, transport doubles."""
import json
from typing import Any, Optional

from stepjam.config import Settings
from stepjam.live.connection import LiveConnection
from stepjam.models.session import SessionState, Track

T0 = 1_700_000_000_000


class FakeClock:
    """Injectable millisecond clock."""

    def __init__(self, start: int = T0) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> int:
        self.now += ms
        return self.now


def make_track(track_id: str, name: str = "", sample_id: str = "", **overrides: Any) -> Track:
    return Track(
        id=track_id,
        name=name or track_id.title(),
        sample_id=sample_id or f"{track_id}-808",
        **overrides,
    )


def make_state(**overrides: Any) -> SessionState:
    """Two-track session: kick and snare, 16 steps, 120 BPM."""
    fields: dict[str, Any] = {
        "tracks": [make_track("kick"), make_track("snare")],
        "tempo": 120,
        "swing": 0.0,
        "version": 0,
    }
    fields.update(overrides)
    return SessionState(**fields)


def make_settings(**overrides: Any) -> Settings:
    """Settings tuned for fast tests (short timers, small limits)."""
    fields: dict[str, Any] = {
        "save_debounce_seconds": 0.05,
        "eviction_grace_seconds": 0.05,
        "max_players_per_session": 10,
        "outbound_queue_size": 64,
    }
    fields.update(overrides)
    return Settings(**fields)


class RecordingTransport:
    """Stands in for a WebSocket: records frames and the close code."""

    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []
        self.closed_with: Optional[int] = None

    async def send_text(self, data: str) -> None:
        self.sent.append(json.loads(data))

    async def close(self, code: int = 1000, reason: Optional[str] = None) -> None:
        self.closed_with = code


def make_connection(connection_id: str, player_id: str, **kwargs: Any) -> LiveConnection:
    kwargs.setdefault("queue_size", 64)
    return LiveConnection(connection_id, player_id, RecordingTransport(), **kwargs)


def frames(connection: LiveConnection) -> list[dict[str, Any]]:
    """Pop and decode everything queued for a connection."""
    return [json.loads(f) for f in connection.drain_outbox()]


def of_type(messages: list[dict[str, Any]], message_type: str) -> list[dict[str, Any]]:
    return [msg for msg in messages if msg["type"] == message_type]
