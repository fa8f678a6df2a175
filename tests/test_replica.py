"""Client replica tests, including convergence against a live session actor."""
from __future__ import annotations

import json
import logging
from typing import Any

import pytest
import pytest_asyncio

from stepjam.core.canonical_hash import canonical_json
from stepjam.core.clock import ServerClock
from stepjam.core.errors import DivergenceError, MutationValidationError
from stepjam.core.state_store import SessionStateStore
from stepjam.live.actor import ConnectionOpened, MessageReceived, SessionActor
from stepjam.live.connection import LiveConnection
from stepjam.client.replica import SessionReplica
from stepjam.models.session import ParameterLock
from stepjam.protocol import messages as m
from stepjam.protocol.emitter import serialize_message
from stepjam.protocol.version import PROTOCOL_VERSION

from support import FakeClock, frames, make_connection, make_settings, make_state, make_track


def _snapshot(state=None, player_id: str = "alice", **kwargs: Any) -> dict[str, Any]:
    return serialize_message(
        m.SnapshotMessage(
            state=state or make_state(),
            players=[],
            player_id=player_id,
            snapshot_timestamp=0,
            **kwargs,
        )
    )


# =============================================================================
# Unit behaviour
# =============================================================================


class TestReplica:
    def test_snapshot_replaces_state(self) -> None:
        replica = SessionReplica("alice", clock=FakeClock())
        replica.receive(_snapshot(make_state(tempo=99, version=7), playing_player_ids=["bob"]))
        assert replica.has_snapshot
        assert replica.version == 7
        assert replica.state.tempo == 99
        assert replica.playing == {"bob"}

    def test_snapshot_adopts_server_player_id(self) -> None:
        replica = SessionReplica("", clock=FakeClock())
        replica.receive(_snapshot(player_id="minted-id"))
        assert replica.player_id == "minted-id"

    def test_snapshot_from_other_protocol_revision_warns(self, caplog: pytest.LogCaptureFixture) -> None:
        replica = SessionReplica("alice", clock=FakeClock())
        replica.receive(_snapshot())
        assert replica.protocol_compatible

        with caplog.at_level(logging.WARNING):
            replica.receive(_snapshot(make_state(tempo=99), protocol_version=PROTOCOL_VERSION + 1))

        assert not replica.protocol_compatible
        assert replica.state.tempo == 99
        assert f"Server speaks protocol {PROTOCOL_VERSION + 1}" in caplog.text

    def test_local_edit_applies_immediately_with_seq(self) -> None:
        replica = SessionReplica("alice", clock=FakeClock())
        replica.receive(_snapshot())

        first = replica.apply_local(m.ToggleStep(track_id="kick", step=0))
        second = replica.apply_local(m.SetTempo(tempo=130))

        assert first == {"type": "toggle_step", "seq": 1, "trackId": "kick", "step": 0}
        assert second["seq"] == 2
        assert replica.state.tracks[0].steps[0] is True
        assert replica.state.tempo == 130
        assert replica.pending_seqs == [1, 2]

    def test_invalid_local_edit_is_not_sent(self) -> None:
        replica = SessionReplica("alice", clock=FakeClock())
        replica.receive(_snapshot())
        with pytest.raises(MutationValidationError):
            replica.apply_local(m.SetTempo(tempo=10))
        assert replica.pending_seqs == []

    def test_ack_clears_pending_and_adopts_version(self) -> None:
        replica = SessionReplica("alice", clock=FakeClock())
        replica.receive(_snapshot(make_state(version=4)))
        replica.apply_local(m.ToggleStep(track_id="kick", step=0))

        replies = replica.receive(
            serialize_message(m.MutationAck(mutation_type="toggle_step", version=9, client_seq=1))
        )
        assert replies == []
        assert replica.pending_seqs == []
        assert replica.version == 9

    def test_rejection_requests_snapshot(self) -> None:
        replica = SessionReplica("alice", clock=FakeClock())
        replica.receive(_snapshot())
        replica.apply_local(m.ToggleStep(track_id="kick", step=0))

        replies = replica.receive(
            serialize_message(
                m.MutationRejected(
                    mutation_type="toggle_step", field="trackId", message="gone", client_seq=1
                )
            )
        )
        assert replies == [{"type": "request_snapshot"}]
        assert replica.pending_seqs == []

    def test_mismatch_records_divergence_and_requests_snapshot(self) -> None:
        replica = SessionReplica("alice", clock=FakeClock())
        replica.receive(_snapshot())
        replies = replica.receive(serialize_message(m.StateMismatch(server_hash="0" * 16)))
        assert replies == [{"type": "request_snapshot"}]
        assert isinstance(replica.last_divergence, DivergenceError)
        assert replica.last_divergence.server_hash == "0" * 16

    def test_verify(self) -> None:
        replica = SessionReplica("alice", clock=FakeClock())
        replica.receive(_snapshot())
        replica.verify(replica.state_hash())
        with pytest.raises(DivergenceError):
            replica.verify("ffffffffffffffff")

    def test_presence_and_playback_tracking(self) -> None:
        replica = SessionReplica("alice", clock=FakeClock())
        replica.receive(_snapshot())
        bob = {"playerId": "bob", "connectedAt": 1, "lastSeenAt": 1, "name": "Bob", "color": "#fff"}
        replica.receive({"type": "player_joined", "seq": 1, "player": bob})
        replica.receive({"type": "playback_started", "seq": 2, "playerId": "bob", "startTime": 5, "tempo": 120})
        assert set(replica.players) == {"bob"}
        assert replica.playing == {"bob"}

        replica.receive({"type": "player_left", "seq": 3, "playerId": "bob", "reason": "stale"})
        assert replica.players == {}
        assert replica.playing == set()

    def test_clock_sync_feeds_estimator(self) -> None:
        clock = FakeClock(1_000)
        replica = SessionReplica("alice", clock=clock)
        request = replica.clock_sync_message()
        assert request == {"type": "clock_sync_request", "clientTime": 1_000}
        clock.advance(100)
        replica.receive({"type": "clock_sync_response", "seq": -1, "clientTime": 1_000, "serverTime": 6_050})
        assert replica.clock_sync.offset == 5_000


# =============================================================================
# Convergence through a session actor
# =============================================================================


@pytest_asyncio.fixture
async def actor(fake_clock: FakeClock):
    store = SessionStateStore(make_state(), clock=fake_clock)
    actor = SessionActor("jam", store, clock=ServerClock(fake_clock), settings=make_settings())
    actor.start()
    yield actor
    await actor.stop(save=False)


class Client:
    """A replica wired to an in-process connection."""

    def __init__(self, actor: SessionActor, player_id: str) -> None:
        self.actor = actor
        self.connection: LiveConnection = make_connection(f"c-{player_id}", player_id)
        self.replica = SessionReplica(player_id, clock=FakeClock())

    async def send(self, payload: dict[str, Any]) -> None:
        self.actor.submit(MessageReceived(self.connection.connection_id, json.dumps(payload)))
        await self.actor.drain()

    async def pump(self) -> None:
        """Deliver queued server frames and send back any replies."""
        while True:
            pending = frames(self.connection)
            if not pending:
                return
            for frame in pending:
                for reply in self.replica.receive(frame):
                    await self.send(reply)


async def _connect(actor: SessionActor, player_id: str) -> Client:
    client = Client(actor, player_id)
    actor.submit(ConnectionOpened(client.connection))
    await actor.drain()
    await client.pump()
    return client


class TestConvergence:
    async def test_replicas_converge_byte_for_byte(self, actor: SessionActor) -> None:
        alice = await _connect(actor, "alice")
        bob = await _connect(actor, "bob")

        edits = [
            (alice, m.ToggleStep(track_id="kick", step=4)),
            (bob, m.SetParameterLock(track_id="kick", step=4, lock=ParameterLock(pitch=7))),
            (alice, m.AddTrack(track=make_track("hat"))),
            (bob, m.ReorderTrack(track_id="hat", to_index=0)),
            (alice, m.SetSwing(swing=20)),
            (bob, m.SetTrackVolume(track_id="snare", volume=0.5)),
        ]
        for client, mutation in edits:
            await client.send(client.replica.apply_local(mutation))
            await alice.pump()
            await bob.pump()

        server = actor.store.snapshot()
        for client in (alice, bob):
            assert client.replica.pending_seqs == []
            assert client.replica.version == actor.store.version == len(edits)
            assert canonical_json(client.replica.state) == canonical_json(server)
            await client.send(client.replica.state_hash_message())
            assert frames(client.connection)[0]["type"] == "state_hash_match"

    async def test_rejected_speculative_edit_rolls_back_via_snapshot(self, actor: SessionActor) -> None:
        alice = await _connect(actor, "alice")
        bob = await _connect(actor, "bob")

        # bob deletes the snare; alice edits it before hearing about it
        await bob.send(bob.replica.apply_local(m.DeleteTrack(track_id="snare")))
        await bob.pump()
        await alice.send(alice.replica.apply_local(m.ToggleStep(track_id="snare", step=1)))
        await alice.pump()

        assert [t.id for t in alice.replica.state.tracks] == ["kick"]
        assert alice.replica.state_hash() == actor.store.state_hash()

    async def test_divergent_replica_heals_after_hash_check(self, actor: SessionActor) -> None:
        alice = await _connect(actor, "alice")
        alice.replica.store._state.tempo = 61

        await alice.send(alice.replica.state_hash_message())
        await alice.pump()

        assert alice.replica.state.tempo == 120
        assert alice.replica.state_hash() == actor.store.state_hash()
        assert alice.replica.last_divergence is None
