"""Tests for the connection state machine and LiveConnection outbox/writer."""
from __future__ import annotations

import asyncio
import logging

import pytest

from stepjam.core.errors import InvalidTransitionError, TransportError
from stepjam.live.connection import (
    CLOSE_PRESENCE_EXPIRED,
    CLOSE_SESSION_FULL,
    LiveConnection,
)
from stepjam.live.state_machine import (
    ConnectionState,
    assert_transition,
    can_send,
    is_terminal,
)
from stepjam.protocol.messages import Pong

from support import RecordingTransport, frames, make_connection


# =============================================================================
# State machine
# =============================================================================


class TestStateMachine:
    @pytest.mark.parametrize(
        "from_state,to_state",
        [
            (ConnectionState.CONNECTING, ConnectionState.OPEN),
            (ConnectionState.CONNECTING, ConnectionState.CLOSED),
            (ConnectionState.OPEN, ConnectionState.CLOSING),
            (ConnectionState.CLOSING, ConnectionState.CLOSED),
        ],
    )
    def test_valid_transitions(self, from_state: ConnectionState, to_state: ConnectionState) -> None:
        assert_transition(from_state, to_state)

    @pytest.mark.parametrize(
        "from_state,to_state",
        [
            (ConnectionState.OPEN, ConnectionState.CONNECTING),
            (ConnectionState.OPEN, ConnectionState.CLOSED),
            (ConnectionState.CLOSED, ConnectionState.OPEN),
            (ConnectionState.CLOSING, ConnectionState.OPEN),
        ],
    )
    def test_invalid_transitions(self, from_state: ConnectionState, to_state: ConnectionState) -> None:
        with pytest.raises(InvalidTransitionError) as excinfo:
            assert_transition(from_state, to_state)
        assert excinfo.value.from_state == from_state.value
        assert excinfo.value.to_state == to_state.value

    def test_helpers(self) -> None:
        assert can_send(ConnectionState.OPEN)
        assert not can_send(ConnectionState.CONNECTING)
        assert not can_send(ConnectionState.CLOSING)
        assert is_terminal(ConnectionState.CLOSED)
        assert not is_terminal(ConnectionState.CLOSING)


# =============================================================================
# Outbox
# =============================================================================


class TestOutbox:
    def test_send_requires_open(self) -> None:
        conn = make_connection("c1", "alice")
        with pytest.raises(TransportError):
            conn.send(Pong())
        conn.open()
        assert conn.send(Pong()) is True
        assert frames(conn) == [{"type": "pong", "seq": -1}]

    def test_full_outbox_drops_and_logs(self, caplog: pytest.LogCaptureFixture) -> None:
        conn = make_connection("c1", "alice", queue_size=2)
        conn.open()
        with caplog.at_level(logging.WARNING):
            results = [conn.enqueue(f"frame-{i}") for i in range(4)]

        assert results == [True, True, False, False]
        assert conn.dropped == 2
        assert conn.drain_outbox() == ["frame-0", "frame-1"]
        assert "Outbox full" in caplog.text

    def test_send_after_close_request_raises(self) -> None:
        conn = make_connection("c1", "alice")
        conn.open()
        conn.request_close(CLOSE_PRESENCE_EXPIRED)
        assert conn.state == ConnectionState.CLOSING
        with pytest.raises(TransportError):
            conn.send(Pong())


# =============================================================================
# Close handling
# =============================================================================


class TestClose:
    def test_refusing_a_connecting_socket_goes_straight_to_closed(self) -> None:
        conn = make_connection("c1", "alice")
        conn.request_close(CLOSE_SESSION_FULL)
        assert conn.state == ConnectionState.CLOSED
        assert conn.close_code == CLOSE_SESSION_FULL

    def test_request_close_is_idempotent(self) -> None:
        conn = make_connection("c1", "alice")
        conn.open()
        conn.request_close(CLOSE_PRESENCE_EXPIRED)
        conn.request_close(1000)
        assert conn.close_code == CLOSE_PRESENCE_EXPIRED

    def test_mark_closed_from_open(self) -> None:
        conn = make_connection("c1", "alice")
        conn.open()
        conn.mark_closed()
        conn.mark_closed()
        assert conn.state == ConnectionState.CLOSED


# =============================================================================
# Writer
# =============================================================================


class TestWriter:
    async def test_flushes_queued_frames_then_closes_with_code(self) -> None:
        transport = RecordingTransport()
        conn = LiveConnection("c1", "alice", transport, queue_size=8)
        conn.open()
        conn.send(Pong())
        conn.request_close(CLOSE_PRESENCE_EXPIRED, "Presence expired")

        await asyncio.wait_for(conn.run_writer(), timeout=1)

        assert transport.sent == [{"type": "pong", "seq": -1}]
        assert transport.closed_with == CLOSE_PRESENCE_EXPIRED
        assert conn.state == ConnectionState.CLOSED

    async def test_finish_stops_without_close_frame(self) -> None:
        transport = RecordingTransport()
        conn = LiveConnection("c1", "alice", transport, queue_size=8)
        conn.open()
        writer = asyncio.create_task(conn.run_writer())
        conn.send(Pong())
        conn.finish()

        await asyncio.wait_for(writer, timeout=1)

        assert len(transport.sent) == 1
        assert transport.closed_with is None
        assert conn.state == ConnectionState.CLOSED

    async def test_transport_failure_ends_writer_quietly(self) -> None:
        class BrokenTransport(RecordingTransport):
            async def send_text(self, data: str) -> None:
                raise ConnectionResetError("peer gone")

        conn = LiveConnection("c1", "alice", BrokenTransport(), queue_size=8)
        conn.open()
        conn.send(Pong())

        await asyncio.wait_for(conn.run_writer(), timeout=1)

        assert conn.state == ConnectionState.CLOSED
