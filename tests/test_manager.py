"""Tests for SessionManager: hydration, eviction, failure, shutdown."""
from __future__ import annotations

import asyncio
import json

import pytest

from stepjam.live.actor import ConnectionClosed, ConnectionOpened, MessageReceived, PruneTick, SaveTick
from stepjam.live.manager import (
    SessionManager,
    get_session_manager,
    reset_session_manager,
    set_session_manager,
)
from stepjam.models.session import SessionState
from stepjam.services.session_repository import InMemorySessionRepository

from support import FakeClock, frames, make_connection, make_settings, make_state


@pytest.fixture
def manager(repository: InMemorySessionRepository, fake_clock: FakeClock) -> SessionManager:
    return SessionManager(repository, settings=make_settings(), clock_source=fake_clock)


async def _wait_until(predicate, timeout: float = 1.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


class TestCreation:
    async def test_new_session_starts_empty(self, manager: SessionManager) -> None:
        actor = await manager.get_or_create("fresh")
        try:
            assert actor.store.version == 0
            assert actor.store.snapshot().tracks == []
            assert manager.session_ids() == ["fresh"]
            assert manager.live_count == 1
        finally:
            await manager.shutdown()

    async def test_same_actor_returned_while_running(self, manager: SessionManager) -> None:
        first = await manager.get_or_create("jam")
        second = await manager.get_or_create("jam")
        assert first is second
        await manager.shutdown()

    async def test_hydrates_from_repository(self, manager: SessionManager, repository: InMemorySessionRepository) -> None:
        repository.put("jam", make_state(tempo=95, version=12))
        actor = await manager.get_or_create("jam")
        assert actor.store.version == 12
        assert actor.store.tempo == 95
        assert not actor.immutable
        await manager.shutdown()

    async def test_published_session_is_immutable(self, manager: SessionManager, repository: InMemorySessionRepository) -> None:
        repository.put("demo", make_state(), immutable=True)
        connection = make_connection("c1", "alice")
        actor = await manager.connect("demo", connection)
        await actor.drain()

        assert actor.immutable
        assert frames(connection)[0]["immutable"] is True
        await manager.shutdown()

    async def test_hydrate_repairs_invalid_state(self, manager: SessionManager, repository: InMemorySessionRepository) -> None:
        repository.put("broken", SessionState(tempo=999, swing=250))
        actor = await manager.get_or_create("broken")
        assert actor.store.find_violations() == []
        assert actor.store.tempo == 180
        await manager.shutdown()


class TestEviction:
    async def test_idle_session_is_saved_and_evicted(self, manager: SessionManager, repository: InMemorySessionRepository) -> None:
        repository.put("jam", make_state())
        connection = make_connection("c1", "alice")
        actor = await manager.connect("jam", connection)
        actor.submit(MessageReceived("c1", json.dumps({"type": "set_swing", "swing": 40})))
        actor.submit(ConnectionClosed("c1", 1000))
        await actor.drain()

        await _wait_until(lambda: manager.get("jam") is None)
        await _wait_until(lambda: not manager._evictions)

        stored = await repository.load("jam")
        assert stored is not None
        assert stored.state.swing == 40
        assert stored.state.version == 1
        assert not actor.is_running
        await manager.shutdown()

    async def test_reconnect_after_eviction_rehydrates(self, manager: SessionManager, repository: InMemorySessionRepository) -> None:
        first = await manager.connect("jam", make_connection("c1", "alice"))
        first.submit(MessageReceived("c1", json.dumps({"type": "set_tempo", "tempo": 150})))
        first.submit(ConnectionClosed("c1", 1000))
        await first.drain()
        await _wait_until(lambda: manager.get("jam") is None)
        await _wait_until(lambda: not manager._evictions)

        second = await manager.connect("jam", make_connection("c2", "alice"))
        await second.drain()
        assert second is not first
        assert second.store.tempo == 150
        await manager.shutdown()

    async def test_evict_refuses_busy_actor(self, manager: SessionManager) -> None:
        actor = await manager.connect("jam", make_connection("c1", "alice"))
        await actor.drain()
        assert await manager.evict("jam") is False
        assert manager.get("jam") is actor
        await manager.shutdown()

    async def test_queued_timer_ticks_do_not_block_eviction(self, manager: SessionManager) -> None:
        actor = await manager.get_or_create("jam")
        actor.submit(PruneTick())
        actor.submit(SaveTick())

        assert await manager.evict("jam") is True
        assert manager.get("jam") is None
        assert not actor.is_running

    async def test_queued_connection_blocks_eviction(self, manager: SessionManager) -> None:
        actor = await manager.get_or_create("jam")
        actor.submit(ConnectionOpened(make_connection("c1", "alice")))

        assert await manager.evict("jam") is False
        await actor.drain()
        assert actor.connection_count == 1
        await manager.shutdown()

    async def test_evict_ignores_replaced_actor(self, manager: SessionManager) -> None:
        actor = await manager.get_or_create("jam")
        other = await manager.get_or_create("other")
        assert await manager.evict("jam", other) is False
        assert manager.get("jam") is actor
        await manager.shutdown()


class TestFailure:
    async def test_failed_actor_is_dropped_and_recreated(self, manager: SessionManager, repository: InMemorySessionRepository) -> None:
        repository.put("jam", make_state())
        connection = make_connection("c1", "alice")
        actor = await manager.connect("jam", connection)
        await actor.drain()
        actor.store._state.tempo = 999

        actor.submit(MessageReceived("c1", json.dumps({"type": "toggle_step", "trackId": "kick", "step": 0})))
        await actor.drain()

        assert actor.failed
        assert connection.close_code == 1011
        assert manager.get("jam") is None

        replacement = await manager.get_or_create("jam")
        assert replacement is not actor
        assert replacement.store.tempo == 120
        await manager.shutdown()


class TestShutdown:
    async def test_shutdown_saves_every_session(self, repository: InMemorySessionRepository, fake_clock: FakeClock) -> None:
        manager = SessionManager(
            repository,
            settings=make_settings(save_debounce_seconds=30, eviction_grace_seconds=30),
            clock_source=fake_clock,
        )
        for session_id in ("a", "b"):
            repository.put(session_id, make_state())
            actor = await manager.connect(session_id, make_connection(f"c-{session_id}", "alice"))
            actor.submit(MessageReceived(f"c-{session_id}", json.dumps({"type": "set_tempo", "tempo": 100})))
            await actor.drain()

        await manager.shutdown()

        assert manager.live_count == 0
        for session_id in ("a", "b"):
            stored = await repository.load(session_id)
            assert stored is not None and stored.state.tempo == 100


def test_global_manager_accessors() -> None:
    created = get_session_manager()
    assert get_session_manager() is created
    replacement = SessionManager()
    set_session_manager(replacement)
    assert get_session_manager() is replacement
    reset_session_manager()
    assert get_session_manager() is not replacement
