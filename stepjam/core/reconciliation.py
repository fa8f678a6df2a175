"""Server half of the reconciliation protocol.

    client → state_hash{hash}
    server → state_hash_match{}              (hashes agree)
           | state_mismatch{serverHash}      (client follows with request_snapshot)
    client → request_snapshot{}
    server → snapshot{state, players, ...}   (client replaces its state wholesale)

Snapshots are the only consistency backstop: there is no merge or
operational transform, unacknowledged speculative edits are discarded.
"""
from __future__ import annotations

import logging
from collections.abc import Iterable

from stepjam.core.presence import PresenceRegistry
from stepjam.core.state_store import SessionStateStore
from stepjam.protocol.messages import SnapshotMessage, StateHashMatch, StateMismatch

logger = logging.getLogger(__name__)


def check_state_hash(
    store: SessionStateStore,
    client_hash: str,
) -> StateHashMatch | StateMismatch:
    """Compare a client's hash with the authoritative one."""
    server_hash = store.state_hash()
    if client_hash == server_hash:
        return StateHashMatch()
    logger.info(f"🔀 State hash mismatch: client={client_hash} server={server_hash}")
    return StateMismatch(server_hash=server_hash)


def build_snapshot(
    store: SessionStateStore,
    presence: PresenceRegistry,
    player_id: str,
    now: int,
    *,
    immutable: bool = False,
    playing_player_ids: Iterable[str] = (),
) -> SnapshotMessage:
    """Full authoritative state plus presence for one recipient."""
    return SnapshotMessage(
        state=store.snapshot(),
        players=presence.list_active(),
        player_id=player_id,
        snapshot_timestamp=now,
        immutable=immutable,
        playing_player_ids=sorted(playing_player_ids),
    )
