"""Client-side helpers: persisted identity and the speculative session replica."""
from __future__ import annotations

from stepjam.client.identity import PlayerIdentityProvider
from stepjam.client.replica import SessionReplica

__all__ = ["PlayerIdentityProvider", "SessionReplica"]
