"""Persisted per-session player identity for clients.

A client keeps one opaque player id per session in whatever key/value
storage it has (browser localStorage, a JSON file, a dict in tests) and
reuses it on every reconnect, so the server can recognize a returning
player.  This is identification, not authentication.
"""
from __future__ import annotations

import logging
import uuid
from collections.abc import MutableMapping

logger = logging.getLogger(__name__)

STORAGE_KEY_PREFIX = "stepjam:player-id:"


def storage_key(session_id: str) -> str:
    return f"{STORAGE_KEY_PREFIX}{session_id}"


class PlayerIdentityProvider:
    """Get-or-create player ids backed by a mutable mapping."""

    def __init__(self, storage: MutableMapping[str, str]) -> None:
        self._storage = storage

    def get_or_create(self, session_id: str) -> str:
        """Return the stored id for ``session_id``, minting a UUID4 the first time."""
        key = storage_key(session_id)
        existing = self._storage.get(key)
        if existing:
            return existing
        player_id = str(uuid.uuid4())
        self._storage[key] = player_id
        logger.debug(f"Minted player id {player_id[:8]} for session {session_id}")
        return player_id

    def forget(self, session_id: str) -> None:
        self._storage.pop(storage_key(session_id), None)
