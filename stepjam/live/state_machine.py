"""
Connection State Machine.

Explicit state transitions for one client connection.
Never set a connection's state directly; always go through assert_transition().

States:
    CONNECTING — Transport accepted; not yet admitted by the session actor
    OPEN       — Admitted; snapshot sent; messages flow both ways
    CLOSING    — Close requested; outbound queue draining
    CLOSED     — Transport released; terminal

Invariants:
    1. Only OPEN connections accept outbound messages.
    2. CONNECTING → CLOSED is the refused/failed handshake path.
    3. CLOSED is final.
"""

from __future__ import annotations

import logging
from enum import Enum

from stepjam.core.errors import InvalidTransitionError

logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    """Canonical connection lifecycle states."""

    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


# Allowed transitions: from_state -> set of valid to_states.
_TRANSITIONS: dict[ConnectionState, frozenset[ConnectionState]] = {
    ConnectionState.CONNECTING: frozenset({
        ConnectionState.OPEN,
        ConnectionState.CLOSED,
    }),
    ConnectionState.OPEN: frozenset({
        ConnectionState.CLOSING,
    }),
    ConnectionState.CLOSING: frozenset({
        ConnectionState.CLOSED,
    }),
    ConnectionState.CLOSED: frozenset(),
}


def assert_transition(
    from_state: ConnectionState,
    to_state: ConnectionState,
) -> None:
    """
    Validate that a state transition is allowed.

    Raises InvalidTransitionError if the transition violates the state machine.
    """
    allowed = _TRANSITIONS.get(from_state, frozenset())
    if to_state not in allowed:
        raise InvalidTransitionError(from_state.value, to_state.value)


def is_terminal(state: ConnectionState) -> bool:
    return state == ConnectionState.CLOSED


def can_send(state: ConnectionState) -> bool:
    """Check if outbound messages may be queued in the given state."""
    return state == ConnectionState.OPEN
