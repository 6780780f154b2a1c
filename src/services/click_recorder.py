"""
Click & view recording.

Each call opens its own session from the factory and writes, in a single
transaction, the immutable event row plus the counter increments it implies.
Runs on the tracking queue, never inline with the redirect response.
"""
from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from src.db.repository import AnalyticsRepository
from src.db.tables import utcnow
from src.errors import PersistenceFailure
from src.models.link import EventType
from src.services.request_context import RequestContext

logger = logging.getLogger(__name__)


async def record_click(
    session_factory: async_sessionmaker,
    link_id: str,
    product_id: str,
    ctx: RequestContext,
) -> str:
    """Store one click and bump link + product counters. Returns the event id."""
    return await _record_event(session_factory, EventType.CLICK, link_id, product_id, ctx)


async def record_view(
    session_factory: async_sessionmaker,
    product_id: str,
    ctx: RequestContext,
    link_id: Optional[str] = None,
) -> str:
    """Store one product view and bump the product's view counter."""
    return await _record_event(session_factory, EventType.VIEW, link_id, product_id, ctx)


async def _record_event(
    session_factory: async_sessionmaker,
    event_type: EventType,
    link_id: Optional[str],
    product_id: str,
    ctx: RequestContext,
) -> str:
    try:
        async with session_factory() as session:
            async with session.begin():
                repo = AnalyticsRepository(session)
                event = await repo.add_event(
                    link_id=link_id,
                    product_id=product_id,
                    event_type=event_type.value,
                    session_id=ctx.session_id,
                    ip_address=ctx.ip_address,
                    user_agent=ctx.user_agent,
                    referrer=ctx.referrer,
                    device=ctx.device,
                    browser=ctx.browser,
                    os=ctx.os,
                    timestamp=utcnow(),
                )
                if event_type == EventType.CLICK:
                    await repo.increment_link(link_id, clicks=1)
                    await repo.increment_product(product_id, clicks=1)
                else:
                    await repo.increment_product(product_id, views=1)
                event_id = event.id
    except SQLAlchemyError as exc:
        logger.warning("Failed to record %s for product %s: %s", event_type.value, product_id, exc)
        raise PersistenceFailure(f"could not record {event_type.value} event") from exc

    logger.debug("Recorded %s %s (link=%s product=%s)", event_type.value, event_id, link_id, product_id)
    return event_id
