"""Shared test fixtures: one temp-file SQLite DB, recreated for every test."""
from __future__ import annotations

import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from tests.helpers import ADMIN_KEY, TestSession, test_engine

from config.settings import settings
from src.db.tables import Base
from src.db.engine import get_session, get_session_factory
from src.services.tracking_queue import TrackingQueue, get_tracking_queue


async def override_get_session():
    async with TestSession() as session:
        yield session


def override_get_session_factory():
    return TestSession


# Import app and override BEFORE any test module imports app
from src.api.main import app  # noqa: E402

app.dependency_overrides[get_session] = override_get_session
app.dependency_overrides[get_session_factory] = override_get_session_factory


@pytest_asyncio.fixture
async def tracking():
    """A fresh tracking queue per test with fast retries."""
    queue = TrackingQueue(workers=4, maxsize=1000, max_retries=3, backoff_seconds=0.01)
    app.dependency_overrides[get_tracking_queue] = lambda: queue
    yield queue
    await queue.stop()
    app.dependency_overrides.pop(get_tracking_queue, None)


@pytest_asyncio.fixture(autouse=True)
async def setup_db(monkeypatch):
    """Create tables before each test, drop after."""
    import src.db.affiliate_tables  # noqa: F401

    monkeypatch.setattr(settings, "ADMIN_API_KEY", ADMIN_KEY)
    monkeypatch.setattr(settings, "CONVERSION_WEBHOOK_SECRET", "")

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest_asyncio.fixture
async def client(tracking):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
