"""Presence registry — time-decayed liveness cache for one session.

A player entry exists while the server believes a connection for it is
alive.  Close events are not trusted to arrive (mobile sockets die
silently), so entries decay: every inbound message refreshes
``last_seen_at`` and a periodic sweep removes anything idle for longer
than the staleness threshold.

The registry is owned by exactly one session actor and is never touched
from another task, so it takes no locks.
"""
from __future__ import annotations

import logging
from typing import Optional

from stepjam.config import STALE_CONNECTION_THRESHOLD_MS
from stepjam.core.clock import MsClock, wall_clock_ms
from stepjam.core.identity import identity_for
from stepjam.models.session import Player

logger = logging.getLogger(__name__)


class PresenceRegistry:
    """Set of live players keyed by player id."""

    def __init__(
        self,
        clock: MsClock = wall_clock_ms,
        stale_threshold_ms: int = STALE_CONNECTION_THRESHOLD_MS,
    ) -> None:
        self._clock = clock
        self._stale_threshold_ms = stale_threshold_ms
        self._players: dict[str, Player] = {}

    # ── Mutations ─────────────────────────────────────────────────────

    def register(
        self,
        player_id: str,
        *,
        name: Optional[str] = None,
        color: Optional[str] = None,
    ) -> Player:
        """Create or refresh a presence entry.

        Idempotent: a second call for the same id only advances
        ``last_seen_at`` (and replaces display metadata when supplied);
        ``connected_at`` is preserved.
        """
        now = self._clock()
        existing = self._players.get(player_id)
        if existing is not None:
            existing.last_seen_at = now
            if name:
                existing.name = name
            if color:
                existing.color = color
            return existing.model_copy()

        identity = identity_for(player_id)
        player = Player(
            player_id=player_id,
            connected_at=now,
            last_seen_at=now,
            name=name or identity.name,
            color=color or identity.color,
        )
        self._players[player_id] = player
        logger.debug(f"👤 Registered player {player_id[:8]} ({player.name})")
        return player.model_copy()

    def touch(self, player_id: str) -> bool:
        """Refresh ``last_seen_at``. Returns ``False`` for unknown players."""
        player = self._players.get(player_id)
        if player is None:
            return False
        player.last_seen_at = self._clock()
        return True

    def remove(self, player_id: str) -> Optional[Player]:
        """Drop a player on clean disconnect. Returns the removed entry."""
        player = self._players.pop(player_id, None)
        if player is not None:
            logger.debug(f"👋 Removed player {player_id[:8]}")
        return player

    def prune_stale(self, now: Optional[int] = None) -> set[str]:
        """Remove and return every player idle for longer than the threshold."""
        if now is None:
            now = self._clock()
        stale = {
            pid
            for pid, player in self._players.items()
            if now - player.last_seen_at > self._stale_threshold_ms
        }
        for pid in stale:
            del self._players[pid]
        if stale:
            logger.info(f"🧹 Pruned {len(stale)} stale player(s)")
        return stale

    # ── Queries ───────────────────────────────────────────────────────

    def get(self, player_id: str) -> Optional[Player]:
        player = self._players.get(player_id)
        return player.model_copy() if player is not None else None

    def list_active(self) -> list[Player]:
        """Players ordered by ``connected_at`` then ``player_id``."""
        ordered = sorted(
            self._players.values(),
            key=lambda p: (p.connected_at, p.player_id),
        )
        return [p.model_copy() for p in ordered]

    @property
    def stale_threshold_ms(self) -> int:
        return self._stale_threshold_ms

    def __contains__(self, player_id: object) -> bool:
        return player_id in self._players

    def __len__(self) -> int:
        return len(self._players)
