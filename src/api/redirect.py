"""
Short-link redirect endpoint.

GET /l/{short_code} always answers 302. The click for the chosen link is
handed to the tracking queue and written after (or while) the response goes
out; nothing about tracking can delay or fail the redirect.
"""
from __future__ import annotations

import functools
import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config.settings import settings
from src.db.engine import get_session, get_session_factory
from src.services.click_recorder import record_click
from src.services.redirect_resolver import error_url, resolve_redirect
from src.services.request_context import build_request_context
from src.services.tracking_queue import TrackingQueue, get_tracking_queue

router = APIRouter(tags=["Redirect"])
logger = logging.getLogger(__name__)

SESSION_COOKIE_MAX_AGE = 30 * 24 * 3600  # 30 days


@router.get("/l/{short_code}")
async def redirect_short_link(
    short_code: str,
    request: Request,
    session: AsyncSession = Depends(get_session),
    session_factory: async_sessionmaker = Depends(get_session_factory),
    queue: TrackingQueue = Depends(get_tracking_queue),
):
    """Resolve a short link (rotating across the product's links) and redirect."""
    try:
        ctx = build_request_context(request)
        decision = await resolve_redirect(session, short_code, device=ctx.device)
    except Exception:
        logger.exception("Redirect resolution crashed for %s", short_code)
        return RedirectResponse(url=error_url(), status_code=302)

    response = RedirectResponse(url=decision.target_url, status_code=302)
    if decision.trackable:
        queue.submit(
            f"click:{decision.link_id}",
            functools.partial(record_click, session_factory, decision.link_id, decision.product_id, ctx),
        )
        if ctx.new_session:
            response.set_cookie(
                settings.SESSION_COOKIE_NAME,
                ctx.session_id,
                max_age=SESSION_COOKIE_MAX_AGE,
                httponly=True,
                samesite="lax",
            )
    return response
