"""Pytest configuration and fixtures."""
import logging

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from stepjam.config import Settings
from stepjam.db import database
from stepjam.db.database import Base
from stepjam.live.manager import reset_session_manager
from stepjam.main import app
from stepjam.models.session import ParameterLock, SessionState
from stepjam.services.session_repository import InMemorySessionRepository

from support import FakeClock, make_settings, make_state


def pytest_configure(config):
    """Ensure asyncio_mode is auto so async fixtures work when pyproject is not in cwd."""
    if hasattr(config.option, "asyncio_mode") and config.option.asyncio_mode is None:
        config.option.asyncio_mode = "auto"
    logging.getLogger("httpcore").setLevel(logging.CRITICAL)


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture(autouse=True)
def _reset_session_manager():
    """Drop the global SessionManager between tests to prevent cross-test pollution."""
    reset_session_manager()
    yield
    reset_session_manager()


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def session_state() -> SessionState:
    return make_state()


@pytest.fixture
def locked_state() -> SessionState:
    """Kick has step 0 on and a pitch lock on step 2."""
    state = make_state()
    state.tracks[0].steps[0] = True
    state.tracks[0].parameter_locks[2] = ParameterLock(pitch=3)
    return state


@pytest.fixture
def repository() -> InMemorySessionRepository:
    return InMemorySessionRepository()


@pytest.fixture
def test_settings() -> Settings:
    return make_settings()


@pytest_asyncio.fixture
async def db_session():
    """Create an in-memory test database session."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async_session_factory = async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    # Inject so SqlSessionRepository's AsyncSessionLocal() uses the test DB
    old_engine = database._engine
    old_factory = database._async_session_factory
    database._engine = engine
    database._async_session_factory = async_session_factory
    try:
        async with async_session_factory() as session:
            yield session
    finally:
        database._engine = old_engine
        database._async_session_factory = old_factory
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture
async def client():
    """Async HTTP test client (lifespan not run; the manager is created lazily)."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
