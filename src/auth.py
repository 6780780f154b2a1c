"""Admin gating for configuration, reporting and health-check endpoints."""
from __future__ import annotations

import hmac

from fastapi import Header, HTTPException, status

from config.settings import settings


def require_admin(x_admin_key: str | None = Header(None)) -> None:
    """Verify the X-Admin-Key header (timing-safe).

    503 when no ADMIN_API_KEY is configured, 403 for a missing or wrong key.
    """
    expected = settings.ADMIN_API_KEY
    if not expected:
        raise HTTPException(status.HTTP_503_SERVICE_UNAVAILABLE, "Admin endpoints disabled")
    if not x_admin_key or not hmac.compare_digest(x_admin_key, expected):
        raise HTTPException(status.HTTP_403_FORBIDDEN, "Invalid admin key")
