"""
Outbound link health checks.

Every active link's original URL is probed with a HEAD request (redirects
followed). Links answering with a non-2xx/3xx status, a connection error or
no answer inside HEALTH_CHECK_TIMEOUT_SECONDS are reported unhealthy and
deactivated.

Batches of HEALTH_CHECK_BATCH_SIZE links run one after the other; inside a
batch at most HEALTH_CHECK_CONCURRENCY probes are in flight. A timeout is a
failed result, never retried inline.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Optional, Sequence

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config.settings import settings
from src.db.repository import AnalyticsRepository
from src.db.tables import utcnow
from src.errors import UpstreamTimeout

logger = logging.getLogger(__name__)

USER_AGENT = "Mozilla/5.0 (compatible; LinkVault-Pro/1.0; +https://linkvault.pro/bot)"


@dataclass(frozen=True)
class LinkValidation:
    is_valid: bool
    status: int
    response_time_ms: int
    redirect_url: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class LinkHealth:
    link_id: str
    is_healthy: bool
    status: int
    response_time_ms: int
    last_checked: str
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "linkId": self.link_id,
            "isHealthy": self.is_healthy,
            "status": self.status,
            "responseTime": self.response_time_ms,
            "lastChecked": self.last_checked,
            "error": self.error,
        }


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


async def _probe(client: httpx.AsyncClient, url: str, timeout: float) -> httpx.Response:
    try:
        return await asyncio.wait_for(
            client.head(url, headers={"User-Agent": USER_AGENT}, follow_redirects=True),
            timeout=timeout,
        )
    except (httpx.TimeoutException, asyncio.TimeoutError) as exc:
        raise UpstreamTimeout(f"HEAD {url} exceeded {timeout}s") from exc


async def validate_link(
    client: httpx.AsyncClient,
    url: str,
    timeout: Optional[float] = None,
) -> LinkValidation:
    """Probe one URL. Never raises; failures come back as an invalid result."""
    timeout = timeout or settings.HEALTH_CHECK_TIMEOUT_SECONDS
    started = time.monotonic()
    try:
        response = await _probe(client, url, timeout)
    except UpstreamTimeout:
        return LinkValidation(is_valid=False, status=0, response_time_ms=_elapsed_ms(started), error="timeout")
    except httpx.HTTPError as exc:
        return LinkValidation(
            is_valid=False, status=0, response_time_ms=_elapsed_ms(started),
            error=str(exc) or exc.__class__.__name__,
        )

    final_url = str(response.url)
    return LinkValidation(
        is_valid=response.is_success or response.is_redirect,
        status=response.status_code,
        response_time_ms=_elapsed_ms(started),
        redirect_url=final_url if final_url != url else None,
    )


async def check_links(
    links: Sequence,
    client: httpx.AsyncClient,
    concurrency: Optional[int] = None,
) -> list[LinkHealth]:
    """Probe ``links`` (rows with ``id`` and ``original_url``) with bounded concurrency."""
    semaphore = asyncio.Semaphore(concurrency or settings.HEALTH_CHECK_CONCURRENCY)

    async def check(link) -> LinkHealth:
        async with semaphore:
            result = await validate_link(client, link.original_url)
        return LinkHealth(
            link_id=link.id,
            is_healthy=result.is_valid,
            status=result.status,
            response_time_ms=result.response_time_ms,
            last_checked=utcnow().isoformat(),
            error=result.error,
        )

    return list(await asyncio.gather(*(check(link) for link in links)))


def summarize(results: Sequence[LinkHealth]) -> dict:
    healthy = sum(1 for r in results if r.is_healthy)
    return {
        "totalChecked": len(results),
        "healthy": healthy,
        "unhealthy": len(results) - healthy,
        "averageResponseTime": (
            round(sum(r.response_time_ms for r in results) / len(results)) if results else 0
        ),
    }


async def perform_health_check(
    session: AsyncSession,
    link_ids: Sequence[str],
    client: Optional[httpx.AsyncClient] = None,
) -> list[LinkHealth]:
    """Check the given links and deactivate the unhealthy ones."""
    repo = AnalyticsRepository(session)
    links = sorted(await repo.get_links(link_ids), key=lambda link: link.id)
    if not links:
        return []

    if client is None:
        async with httpx.AsyncClient(timeout=settings.HEALTH_CHECK_TIMEOUT_SECONDS) as owned:
            results = await check_links(links, owned)
    else:
        results = await check_links(links, client)

    unhealthy = [r.link_id for r in results if not r.is_healthy]
    if unhealthy:
        await repo.deactivate_links(unhealthy)
        await session.commit()
        logger.warning("Deactivated %d unhealthy link(s): %s", len(unhealthy), ", ".join(unhealthy))
    return results


async def batch_health_check(
    session_factory: async_sessionmaker,
    batch_size: Optional[int] = None,
    product_id: Optional[str] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> dict:
    """Walk every active link in fixed-size batches, one batch at a time."""
    batch_size = batch_size or settings.HEALTH_CHECK_BATCH_SIZE
    all_results: list[LinkHealth] = []
    offset = 0

    while True:
        async with session_factory() as session:
            repo = AnalyticsRepository(session)
            link_ids = await repo.list_active_link_ids(product_id=product_id, offset=offset, limit=batch_size)
            if not link_ids:
                break
            results = await perform_health_check(session, link_ids, client=client)
        all_results.extend(results)
        # Deactivated links drop out of the active listing
        offset += sum(1 for r in results if r.is_healthy)
        if len(link_ids) < batch_size:
            break

    summary = summarize(all_results)
    logger.info(
        "Batch health check done: %d checked, %d unhealthy",
        summary["totalChecked"], summary["unhealthy"],
    )
    return summary
