"""Scheduled link health checks using APScheduler."""
from __future__ import annotations

import logging
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from src.services.link_health import batch_health_check
from src.db.engine import async_session
from config.settings import settings

logger = logging.getLogger(__name__)

scheduler = AsyncIOScheduler()


async def scheduled_health_check():
    """Probe every active link and deactivate the broken ones."""
    logger.info("Scheduled link health check starting...")
    try:
        summary = await batch_health_check(async_session, batch_size=settings.HEALTH_CHECK_BATCH_SIZE)
        logger.info(
            f"Scheduled health check complete: {summary['totalChecked']} checked, "
            f"{summary['unhealthy']} deactivated"
        )
    except Exception:
        logger.exception("Scheduled health check failed")


def start_scheduler(interval_hours: float = settings.HEALTH_CHECK_INTERVAL_HOURS):
    """Start the background scheduler for periodic health checks."""
    scheduler.add_job(
        scheduled_health_check,
        trigger=IntervalTrigger(hours=interval_hours),
        id="link_health_check",
        name="Periodic link health check",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    scheduler.start()
    logger.info(f"Scheduler started, checking links every {interval_hours}h")


def stop_scheduler():
    """Gracefully shut down the scheduler."""
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
