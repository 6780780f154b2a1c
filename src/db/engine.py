"""Async SQLAlchemy engine + session factory.

SQLite (dev/test) waits on its write lock so concurrent tracking writers
serialise; PostgreSQL (prod) gets a pooled asyncpg engine.
"""
from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from config.settings import settings

_ASYNC_DRIVERS = (
    ("postgresql://", "postgresql+asyncpg://"),
    ("sqlite://", "sqlite+aiosqlite://"),
)


def database_url(url: str | None = None, sync: bool = False) -> str:
    """DATABASE_URL with the async driver the app needs, or the plain sync one Alembic needs."""
    url = url or settings.DATABASE_URL
    for plain, driver in _ASYNC_DRIVERS:
        if sync and url.startswith(driver):
            return plain + url[len(driver):]
        if not sync and url.startswith(plain):
            return driver + url[len(plain):]
    return url


def _engine_options(url: str) -> dict:
    if url.startswith("sqlite"):
        # Tracking workers block on the write lock for up to 30s instead of failing
        return {"connect_args": {"timeout": 30}}
    return {
        "pool_size": 10,
        "max_overflow": 20,
        "pool_timeout": 30,
        "pool_recycle": 1800,  # 30 min
        "pool_pre_ping": True,
    }


_db_url = database_url()
engine = create_async_engine(_db_url, echo=False, **_engine_options(_db_url))

async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def get_session() -> AsyncSession:
    """Dependency for FastAPI: one session per request."""
    async with async_session() as session:
        yield session


def get_session_factory() -> async_sessionmaker:
    """Dependency for FastAPI: the factory tracking jobs open their own sessions from."""
    return async_session
