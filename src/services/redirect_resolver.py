"""
Short-code → outbound URL resolution.

Flow:
  GET /l/{short_code} →
  look up the active link by its shortened URL →
  (≥2 active links for the product) run the device-aware rotation selector on a fresh
  analytics snapshot →
  302 to the chosen link's original URL

The resolver never raises. A missing or inactive code resolves to the 404
page; a failure after the short link was found falls back to that link's own
URL; a failure before that falls back to the error page.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from src.db.repository import AnalyticsRepository, config_to_settings
from src.services.rotation import RandomSource, select_link

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RedirectDecision:
    target_url: str
    link_id: Optional[str] = None
    product_id: Optional[str] = None
    rotated: bool = False

    @property
    def trackable(self) -> bool:
        return self.link_id is not None and self.product_id is not None


def short_url_for(short_code: str) -> str:
    return f"{settings.PUBLIC_BASE_URL}/l/{short_code}"


def not_found_url() -> str:
    return f"{settings.PUBLIC_BASE_URL}/404"


def error_url() -> str:
    return f"{settings.PUBLIC_BASE_URL}/error"


async def resolve_redirect(
    session: AsyncSession,
    short_code: str,
    rng: Optional[RandomSource] = None,
    device: Optional[str] = None,
) -> RedirectDecision:
    """Decide where a short link should send this visitor (``device`` feeds targeting)."""
    repo = AnalyticsRepository(session)

    try:
        link = await repo.get_active_link_by_short_url(short_url_for(short_code))
    except Exception:
        logger.exception("Short link lookup failed for %s", short_code)
        return RedirectDecision(target_url=error_url())

    if link is None:
        logger.info("Short link %s not found or inactive", short_code)
        return RedirectDecision(target_url=not_found_url())

    fallback = RedirectDecision(
        target_url=link.original_url, link_id=link.id, product_id=link.product_id
    )
    try:
        snapshots = await repo.load_snapshots(link.product_id)
        if len(snapshots) < 2:
            return fallback

        config = config_to_settings(await repo.get_rotation_config(link.product_id))
        chosen = select_link(snapshots, config, rng=rng, device=device)
        return RedirectDecision(
            target_url=chosen.original_url,
            link_id=chosen.id,
            product_id=chosen.product_id,
            rotated=True,
        )
    except Exception:
        logger.exception("Rotation failed for %s, serving the short link's own URL", short_code)
        return fallback
