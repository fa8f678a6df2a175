"""Exception taxonomy for live sessions.

Recoverable errors (validation, divergence, transport) are handled where
they occur and never take the session down. ``FatalActorError`` is the
only one that terminates a session actor.
"""
from __future__ import annotations


class LiveSessionError(Exception):
    """Base class for all live-session errors."""


class MutationValidationError(LiveSessionError):
    """A mutation was rejected by the authoritative store.

    Reported to the sender only, as ``mutation_rejected``. The store's
    version is not bumped and nothing is broadcast.
    """

    def __init__(self, field: str, message: str) -> None:
        self.field = field
        self.message = message
        super().__init__(f"{field}: {message}")


class DivergenceError(LiveSessionError):
    """A replica's canonical hash differs from the server's."""

    def __init__(self, client_hash: str, server_hash: str) -> None:
        self.client_hash = client_hash
        self.server_hash = server_hash
        super().__init__(
            f"Replica diverged: local={client_hash} server={server_hash}"
        )


class TransportError(LiveSessionError):
    """Send attempted on a connection that is not open."""


class InvalidTransitionError(LiveSessionError):
    """Raised when a connection state transition violates the state machine."""

    def __init__(self, from_state: str, to_state: str) -> None:
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Invalid transition: {from_state} → {to_state}")


class FatalActorError(LiveSessionError):
    """Invariant violated inside a session actor; the actor must stop."""
