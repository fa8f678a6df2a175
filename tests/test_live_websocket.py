"""End-to-end tests for the live session WebSocket endpoint."""
from __future__ import annotations

import uuid

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from stepjam.live.manager import SessionManager, set_session_manager
from stepjam.main import app
from stepjam.services.session_repository import InMemorySessionRepository

from support import make_settings, make_state

WS = "/api/sessions/{}/ws"


@pytest.fixture
def repository() -> InMemorySessionRepository:
    repo = InMemorySessionRepository()
    repo.put("jam", make_state())
    return repo


@pytest.fixture
def live_client(repository: InMemorySessionRepository):
    """TestClient with a manager installed before startup (one event loop for all sockets)."""
    set_session_manager(SessionManager(repository, settings=make_settings(max_players_per_session=2)))
    with TestClient(app) as client:
        yield client


def test_join_edit_and_leave(live_client: TestClient) -> None:
    with live_client.websocket_connect(WS.format("jam") + "?playerId=alice&name=Alice") as alice:
        snapshot = alice.receive_json()
        assert snapshot["type"] == "snapshot"
        assert snapshot["playerId"] == "alice"
        assert [t["id"] for t in snapshot["state"]["tracks"]] == ["kick", "snare"]

        with live_client.websocket_connect(WS.format("jam") + "?playerId=bob") as bob:
            assert bob.receive_json()["type"] == "snapshot"
            joined = alice.receive_json()
            assert joined["type"] == "player_joined"
            assert joined["player"]["playerId"] == "bob"

            alice.send_json({"type": "toggle_step", "trackId": "kick", "step": 4, "seq": 1})
            ack = alice.receive_json()
            assert ack == {
                "type": "mutation_ack",
                "seq": -1,
                "mutationType": "toggle_step",
                "version": 1,
                "clientSeq": 1,
            }
            event = bob.receive_json()
            assert event["type"] == "step_toggled"
            assert event["value"] is True
            assert event["version"] == 1

        left = alice.receive_json()
        assert left["type"] == "player_left"
        assert left["playerId"] == "bob"
        assert left["reason"] == "disconnect"


def test_missing_player_id_is_generated(live_client: TestClient) -> None:
    with live_client.websocket_connect(WS.format("jam")) as ws:
        snapshot = ws.receive_json()
        assert uuid.UUID(snapshot["playerId"]).version == 4


def test_full_session_refused_with_4003(live_client: TestClient) -> None:
    with live_client.websocket_connect(WS.format("jam") + "?playerId=alice") as alice:
        alice.receive_json()
        with live_client.websocket_connect(WS.format("jam") + "?playerId=bob") as bob:
            bob.receive_json()
            with pytest.raises(WebSocketDisconnect) as excinfo:
                with live_client.websocket_connect(WS.format("jam") + "?playerId=carol"):
                    pass
            assert excinfo.value.code == 4003


def test_protocol_errors_do_not_drop_the_socket(live_client: TestClient) -> None:
    with live_client.websocket_connect(WS.format("jam") + "?playerId=alice") as ws:
        ws.receive_json()

        ws.send_text("{not json")
        assert ws.receive_json()["code"] == "INVALID_JSON"

        ws.send_text("x" * (64 * 1024 + 1))
        assert ws.receive_json()["code"] == "MESSAGE_TOO_LARGE"

        ws.send_json({"type": "set_tempo", "tempo": 1000, "seq": 4})
        rejected = ws.receive_json()
        assert rejected["type"] == "mutation_rejected"
        assert rejected["field"] == "tempo"

        ws.send_json({"type": "ping"})
        assert ws.receive_json()["type"] == "pong"


def test_hash_check_over_the_wire(live_client: TestClient) -> None:
    with live_client.websocket_connect(WS.format("jam") + "?playerId=alice") as ws:
        ws.receive_json()
        ws.send_json({"type": "state_hash", "hash": "0000000000000000"})
        mismatch = ws.receive_json()
        assert mismatch["type"] == "state_mismatch"
        assert len(mismatch["serverHash"]) == 16

        ws.send_json({"type": "state_hash", "hash": mismatch["serverHash"]})
        assert ws.receive_json()["type"] == "state_hash_match"


def test_published_session_refuses_mutations(live_client: TestClient, repository: InMemorySessionRepository) -> None:
    repository.put("demo", make_state(), immutable=True)
    with live_client.websocket_connect(WS.format("demo") + "?playerId=alice") as ws:
        assert ws.receive_json()["immutable"] is True
        ws.send_json({"type": "set_swing", "swing": 50})
        error = ws.receive_json()
        assert error["type"] == "error"
        assert error["code"] == "SESSION_PUBLISHED"
