"""Test database + seeding helpers shared by the test modules."""
from __future__ import annotations

import os
import tempfile
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

# A throwaway file DB: concurrent tracking writers need a real SQLite file
TEST_DIR = tempfile.mkdtemp(prefix="linkvault-tests-")
TEST_DB_URL = f"sqlite+aiosqlite:///{os.path.join(TEST_DIR, 'test.db')}"
os.environ["DATABASE_URL"] = TEST_DB_URL

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import NullPool  # noqa: E402

from config.settings import settings  # noqa: E402
from src.db.affiliate_tables import ClickEventRow, ConversionEventRow  # noqa: E402
from src.db.tables import AffiliateLinkRow, utcnow  # noqa: E402

test_engine = create_async_engine(
    TEST_DB_URL,
    echo=False,
    poolclass=NullPool,
    connect_args={"timeout": 30},
)
TestSession = async_sessionmaker(test_engine, expire_on_commit=False, class_=AsyncSession)

ADMIN_KEY = "test-admin-key"
ADMIN_HEADERS = {"X-Admin-Key": ADMIN_KEY}


@asynccontextmanager
async def get_test_session():
    """Context manager for seeding data in tests."""
    async with TestSession() as session:
        yield session


def short_url(code: str) -> str:
    return f"{settings.PUBLIC_BASE_URL}/l/{code}"


async def seed_link(
    code: str,
    product_id: str = "prod-1",
    original_url: Optional[str] = None,
    priority: int = 0,
    commission: float = 0.05,
    platform: str = "amazon",
    is_active: bool = True,
    link_id: Optional[str] = None,
) -> str:
    """Insert one affiliate link and return its id."""
    link_id = link_id or str(uuid.uuid4())
    async with TestSession() as session:
        session.add(AffiliateLinkRow(
            id=link_id,
            product_id=product_id,
            platform=platform,
            original_url=original_url or f"https://merchant.example/{code}",
            shortened_url=short_url(code),
            commission=commission,
            priority=priority,
            is_active=is_active,
        ))
        await session.commit()
    return link_id


async def seed_event(
    link_id: Optional[str],
    product_id: str = "prod-1",
    event_type: str = "click",
    session_id: Optional[str] = "sess-1",
    timestamp: Optional[datetime] = None,
    referrer: Optional[str] = None,
    user_agent: Optional[str] = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) Chrome/120.0",
    ip_address: Optional[str] = "203.0.113.7",
    device: str = "desktop",
) -> str:
    """Insert a raw click/view event (no counter side effects)."""
    event_id = str(uuid.uuid4())
    async with TestSession() as session:
        session.add(ClickEventRow(
            id=event_id,
            link_id=link_id,
            product_id=product_id,
            event_type=event_type,
            session_id=session_id,
            ip_address=ip_address,
            user_agent=user_agent,
            referrer=referrer,
            device=device,
            timestamp=timestamp or utcnow(),
        ))
        await session.commit()
    return event_id


async def seed_conversion(
    link_id: str,
    product_id: str = "prod-1",
    order_value: float = 100.0,
    status: str = "CONFIRMED",
    click_id: Optional[str] = None,
    timestamp: Optional[datetime] = None,
    platform: str = "amazon",
) -> str:
    """Insert a raw conversion row (no counter side effects)."""
    conversion_id = str(uuid.uuid4())
    async with TestSession() as session:
        session.add(ConversionEventRow(
            id=conversion_id,
            link_id=link_id,
            product_id=product_id,
            click_id=click_id,
            platform=platform,
            order_value=order_value,
            commission=order_value * 0.05,
            status=status,
            is_attributed=click_id is not None,
            timestamp=timestamp or utcnow(),
        ))
        await session.commit()
    return conversion_id
