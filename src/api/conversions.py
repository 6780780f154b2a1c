"""
Conversion ingestion and product-view tracking endpoints.

Merchant networks (or an import job) POST purchases to /conversions. When
CONVERSION_WEBHOOK_SECRET is configured, the raw body must carry a matching
HMAC-SHA256 hex digest in X-LinkVault-Signature.
"""
from __future__ import annotations

import dataclasses
import functools
import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config.settings import settings
from src.auth import require_admin
from src.db.engine import get_session, get_session_factory
from src.models.link import ConversionSignal, ConversionStatusUpdate, ViewEventRequest
from src.services.attribution import record_conversion, update_conversion_status, verify_webhook_signature
from src.services.click_recorder import record_view
from src.services.request_context import build_request_context
from src.services.tracking_queue import TrackingQueue, get_tracking_queue

router = APIRouter(tags=["Conversions"])
logger = logging.getLogger(__name__)


@router.post("/conversions", status_code=status.HTTP_201_CREATED)
async def ingest_conversion(
    signal: ConversionSignal,
    request: Request,
    session: AsyncSession = Depends(get_session),
    x_linkvault_signature: str | None = Header(None),
):
    """Attribute a merchant conversion to the click that led to it."""
    if settings.CONVERSION_WEBHOOK_SECRET:
        payload = await request.body()
        if not verify_webhook_signature(payload, x_linkvault_signature or "", settings.CONVERSION_WEBHOOK_SECRET):
            logger.warning("Rejected conversion webhook with bad signature")
            raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid signature")

    result = await record_conversion(session, signal)
    return {"success": True, "data": result.to_dict()}


@router.patch("/conversions/{conversion_id}/status", dependencies=[Depends(require_admin)])
async def change_conversion_status(
    conversion_id: str,
    req: ConversionStatusUpdate,
    session: AsyncSession = Depends(get_session),
):
    """Confirm or reject a pending conversion."""
    result = await update_conversion_status(session, conversion_id, req.status)
    return {"success": True, "data": result.to_dict()}


@router.post("/events/view", status_code=status.HTTP_202_ACCEPTED)
async def track_product_view(
    req: ViewEventRequest,
    request: Request,
    session_factory: async_sessionmaker = Depends(get_session_factory),
    queue: TrackingQueue = Depends(get_tracking_queue),
):
    """Queue a product-view event for the funnel's Product Views step."""
    ctx = build_request_context(request)
    if req.session_id:
        ctx = dataclasses.replace(ctx, session_id=req.session_id, new_session=False)

    accepted = queue.submit(
        f"view:{req.product_id}",
        functools.partial(record_view, session_factory, req.product_id, ctx, link_id=req.link_id),
    )
    return {"accepted": accepted, "sessionId": ctx.session_id}
