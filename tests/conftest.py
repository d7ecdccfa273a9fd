"""Pytest configuration and fixtures."""
import logging
from collections.abc import AsyncIterator
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
import pytest_asyncio


def pytest_configure(config):
    """Ensure asyncio_mode is auto so async fixtures work when pyproject is not in cwd."""
    if hasattr(config.option, "asyncio_mode") and config.option.asyncio_mode is None:
        config.option.asyncio_mode = "auto"
    logging.getLogger("httpcore").setLevel(logging.CRITICAL)


from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
)

from tunesmith.main import app
from tunesmith.api.routes.music import limiter
from tunesmith.db import database
from tunesmith.db.database import Base
from tunesmith.services.orchestrator import GenerationOrchestrator, get_orchestrator
from tunesmith.services.resilience import CircuitBreaker, reset_circuit_breaker


class FakeClock:
    """Monotonic clock whose ``sleep`` advances time instantly."""

    def __init__(self, start: float = 0.0):
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture(autouse=True)
def _reset_circuit_breaker():
    """The breaker is process-wide; every test starts with a closed one."""
    reset_circuit_breaker()
    yield
    reset_circuit_breaker()


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest_asyncio.fixture
async def session_factory(tmp_path) -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    """File-backed SQLite database, injected as the app's session factory.

    A file (not ``:memory:``) so concurrent sessions from background tasks
    see each other's committed rows without sharing one connection.
    """
    engine = database.build_engine(f"sqlite+aiosqlite:///{tmp_path / 'tunesmith-test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
    old_engine = database._engine
    old_factory = database._async_session_factory
    database._engine = engine
    database._async_session_factory = factory
    try:
        yield factory
    finally:
        database._engine = old_engine
        database._async_session_factory = old_factory
        await engine.dispose()


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncIterator[AsyncSession]:
    async with session_factory() as session:
        yield session


# -----------------------------------------------------------------------------
# Collaborator doubles for the orchestrator
# -----------------------------------------------------------------------------

@pytest.fixture
def provider() -> MagicMock:
    """Provider double: submit returns "T1"; tests set wait_for_completion."""
    p = MagicMock()
    p.configured = True
    p.clock = MagicMock(return_value=0.0)
    p.breaker = CircuitBreaker()
    p.submit = AsyncMock(return_value="T1")
    p.wait_for_completion = AsyncMock()
    return p


@pytest.fixture
def lyrics() -> MagicMock:
    client = MagicMock()
    client.configured = True
    client.draft_lyrics = AsyncMock(return_value="[verse]\nsleep now little one")
    client.describe_track = AsyncMock(return_value="A soft piano lullaby that drifts to sleep.")
    return client


@pytest.fixture
def storage() -> MagicMock:
    s = MagicMock()
    s.configured = True
    s.upload = AsyncMock(side_effect=lambda data, key, **kw: f"https://cdn.example.com/{key}")
    s.make_public = AsyncMock()
    s.exists = AsyncMock(return_value=True)
    return s


@pytest.fixture
def download_client() -> MagicMock:
    """Downloader double returning a small MP3 body."""
    d = MagicMock()
    d.get = AsyncMock(return_value=httpx.Response(200, content=b"ID3" + b"\x00" * 2048))
    return d


@pytest_asyncio.fixture
async def orchestrator(
    provider, lyrics, storage, download_client, session_factory
) -> AsyncIterator[GenerationOrchestrator]:
    orch = GenerationOrchestrator(
        provider=provider,
        lyrics=lyrics,
        storage=storage,
        session_factory=session_factory,
        download_client=download_client,
    )
    yield orch
    await orch.shutdown()


@pytest_asyncio.fixture
async def client(orchestrator) -> AsyncIterator[AsyncClient]:
    """Async test client wired to the test database and orchestrator doubles."""
    limiter.reset()
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    transport = ASGITransport(app=app)
    try:
        async with AsyncClient(transport=transport, base_url="http://test") as ac:
            yield ac
    finally:
        app.dependency_overrides.clear()
