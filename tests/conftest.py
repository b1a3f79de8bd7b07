"""Test fixtures — a throwaway database and an in-process change broker per test.

Learn: Testing pattern for async SQLAlchemy + FastAPI without external services:

1. Each test gets its own SQLite file (aiosqlite) under tmp_path, with
   the schema created by init_models(). Separate sessions get separate
   connections, so concurrent requests behave like they do on Postgres.
2. The MemoryChangeBroker stands in for Redis: services publish to it
   and sync clients subscribe to it, all inside the test's event loop.
3. The FastAPI app gets a session-per-request override of get_db and the
   broker on app.state, exactly where the lifespan would put them.
"""

import os

os.environ.setdefault("REVIEWSYNC_ENVIRONMENT", "test")
os.environ.setdefault("REVIEWSYNC_CHANGE_STREAM_BACKEND", "memory")
os.environ.setdefault("REVIEWSYNC_DATABASE_URL", "sqlite+aiosqlite://")

import asyncio
import uuid

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from reviewsync.db.engine import build_engine, get_db, init_models
from reviewsync.main import app
from reviewsync.realtime.memory import MemoryChangeBroker
from reviewsync.services.review_service import ReviewService
from reviewsync.sync.api import ReviewSyncApi
from reviewsync.sync.channel import Backoff, ChangeEventChannel
from reviewsync.sync.session import SyncSession


@pytest_asyncio.fixture()
async def engine(tmp_path):
    eng = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'reviewsync.db'}")
    await init_models(eng)
    yield eng
    await eng.dispose()


@pytest.fixture()
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture()
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture()
def broker():
    return MemoryChangeBroker()


# ─── Users ───────────────────────────────────────────────


@pytest.fixture()
def owner_id():
    """The author: owns the content and submits it."""
    return uuid.uuid4()


@pytest.fixture()
def reviewer_id():
    return uuid.uuid4()


@pytest.fixture()
def org_id():
    return uuid.uuid4()


def as_user(user_id, mutation_id=None) -> dict:
    headers = {"X-User-Id": str(user_id)}
    if mutation_id:
        headers["X-Mutation-Id"] = mutation_id
    return headers


# ─── Content ─────────────────────────────────────────────


@pytest_asyncio.fixture()
async def submitted(db_session, broker, owner_id, reviewer_id, org_id):
    """A content item whose version 1 the owner has submitted to the reviewer."""
    svc = ReviewService(db_session, broker)
    item = await svc.create_content_item(
        org_id=org_id,
        owner_id=owner_id,
        title="Spring campaign landing page",
        body="Save 20% this spring.",
        project_id=uuid.uuid4(),
    )
    version = (await svc.list_versions(item.id))[0]
    await svc.submit_version(item.id, version.id, actor_id=owner_id, reviewer_ids=[reviewer_id])
    return item, version


# ─── HTTP ────────────────────────────────────────────────


@pytest_asyncio.fixture()
async def client(session_factory, broker):
    """HTTP client with a session per request and the broker as change stream."""

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.state.publisher = broker
    app.state.transport = broker

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture()
def fast_channels(broker):
    """Channel factory with millisecond backoff for registry tests."""

    def factory(request):
        return ChangeEventChannel(broker, request, backoff=Backoff(0.001, 0.01), handshake_timeout=1.0)

    return factory


@pytest_asyncio.fixture()
async def make_session(client, broker, fast_channels):
    """Build SyncSessions that talk to the test app; all closed at teardown."""
    sessions = []

    async def make(user_id) -> SyncSession:
        api = ReviewSyncApi(user_id, "http://test", transport=ASGITransport(app=app))
        session = SyncSession(user_id, transport=broker, api=api, channel_factory=fast_channels)
        sessions.append((session, api))
        return await session.start()

    yield make

    for session, api in sessions:
        await session.close()
        await api.aclose()


# ─── Helpers ─────────────────────────────────────────────


@pytest.fixture()
def eventually():
    """Await a condition that becomes true after some event loop turns."""

    async def wait(predicate, timeout: float = 2.0):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met in time")
            await asyncio.sleep(0.005)

    return wait
