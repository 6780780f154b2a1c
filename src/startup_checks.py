"""Startup validation: catch misconfigurations before the app serves traffic."""
from __future__ import annotations

import logging
import sys

from config.settings import settings

logger = logging.getLogger(__name__)


def validate_settings() -> list[str]:
    """Validate configuration. Returns list of warnings (empty = all good).

    Raises SystemExit for values the redirect or attribution paths cannot run with.
    """
    warnings: list[str] = []
    is_prod = settings.DATABASE_URL and "sqlite" not in settings.DATABASE_URL

    # Critical: modelling ratios and windows must be usable
    errors: list[str] = []
    if not 0.0 <= settings.ADD_TO_CART_RATIO <= 1.0:
        errors.append(f"ADD_TO_CART_RATIO must be between 0 and 1 (got {settings.ADD_TO_CART_RATIO})")
    if settings.ATTRIBUTION_WINDOW_HOURS <= 0:
        errors.append("ATTRIBUTION_WINDOW_HOURS must be positive")
    if settings.TRACKING_WORKERS <= 0 or settings.TRACKING_QUEUE_SIZE <= 0:
        errors.append("TRACKING_WORKERS and TRACKING_QUEUE_SIZE must be positive")
    if settings.HEALTH_CHECK_TIMEOUT_SECONDS <= 0:
        errors.append("HEALTH_CHECK_TIMEOUT_SECONDS must be positive")
    if not settings.PUBLIC_BASE_URL.startswith(("http://", "https://")):
        errors.append("PUBLIC_BASE_URL must be an absolute http(s) URL")
    for e in errors:
        logger.critical(e)
    if errors:
        sys.exit(1)

    if is_prod and "*" in settings.CORS_ORIGINS:
        warnings.append("CORS_ORIGINS is set to * (restrict in production)")

    if not settings.ADMIN_API_KEY:
        warnings.append("ADMIN_API_KEY not set; admin endpoints will answer 503")

    if not settings.CONVERSION_WEBHOOK_SECRET:
        warnings.append("CONVERSION_WEBHOOK_SECRET not set; conversion webhooks are accepted unsigned")

    for w in warnings:
        logger.warning("⚠️  %s", w)

    if not warnings:
        logger.info("✅ All startup checks passed")

    return warnings
