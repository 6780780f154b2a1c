"""
Link management endpoints: rotation config, health checks, per-link analytics.

All admin-gated (X-Admin-Key).
"""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Query
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.auth import require_admin
from src.db.affiliate_tables import ClickEventRow
from src.db.engine import get_session
from src.db.repository import AnalyticsRepository, config_to_settings
from src.errors import NotFoundError, ValidationError
from src.models.link import (
    EventType, HealthCheckRequest, RotationConfigRequest, RotationSettings, RotationStrategy,
)
from src.services import link_health
from src.services.funnel import referrer_domain
from src.services.rotation import preview_weights

router = APIRouter(prefix="/links", tags=["Links"], dependencies=[Depends(require_admin)])
logger = logging.getLogger(__name__)


def _link_payload(snapshot) -> dict:
    return {
        "id": snapshot.id,
        "platform": snapshot.platform,
        "originalUrl": snapshot.original_url,
        "shortenedUrl": snapshot.shortened_url,
        "commission": snapshot.commission,
        "priority": snapshot.priority,
        "analytics": snapshot.analytics_dict(),
    }


@router.post("/rotation")
async def configure_rotation(
    req: RotationConfigRequest,
    session: AsyncSession = Depends(get_session),
):
    """Create or replace a product's rotation config."""
    repo = AnalyticsRepository(session)
    snapshots = await repo.load_snapshots(req.product_id)
    if len(snapshots) < 2:
        raise ValidationError(
            "At least 2 active affiliate links are required for rotation", field="productId"
        )

    if req.strategy == RotationStrategy.WEIGHTED:
        if not req.weights:
            raise ValidationError("Weights are required for weighted strategy", field="weights")
        known = {s.id for s in snapshots}
        unknown = sorted(set(req.weights) - known)
        if unknown:
            raise ValidationError(
                f"Weights reference links that are not active for this product: {', '.join(unknown)}",
                field="weights",
            )

    if req.device_targeting:
        known = {s.id for s in snapshots}
        unknown = sorted(set(req.device_targeting) - known)
        if unknown:
            raise ValidationError(
                f"Device targeting references links that are not active for this product: {', '.join(unknown)}",
                field="deviceTargeting",
            )

    row = await repo.save_rotation_config(
        product_id=req.product_id,
        strategy=req.strategy,
        weights=req.weights,
        traffic_split=req.traffic_split,
        test_duration_days=req.test_duration,
        device_targeting=req.device_targeting,
    )
    await session.commit()
    logger.info("Rotation config for %s set to %s", req.product_id, req.strategy.value)

    effective = RotationSettings(
        strategy=req.strategy,
        weights=req.weights or {},
        traffic_split=req.traffic_split,
        device_targeting=req.device_targeting or {},
    )
    return {
        "success": True,
        "data": {
            "productId": req.product_id,
            "strategy": req.strategy.value,
            "weights": preview_weights(snapshots, effective),
            "trafficSplit": req.traffic_split,
            "testDuration": req.test_duration,
            "deviceTargeting": effective.device_targeting,
            "expiresAt": row.expires_at.isoformat() if row.expires_at else None,
            "totalLinks": len(snapshots),
        },
    }


@router.get("/rotation")
async def get_rotation(
    product_id: str = Query(..., alias="productId", min_length=1),
    session: AsyncSession = Depends(get_session),
):
    """Current link set with each link's analytics snapshot."""
    repo = AnalyticsRepository(session)
    snapshots = await repo.load_snapshots(product_id)
    if not snapshots:
        raise NotFoundError("No active affiliate links found for this product")

    config_row = await repo.get_rotation_config(product_id)
    config = config_to_settings(config_row)
    warnings = []
    if config.strategy == RotationStrategy.WEIGHTED:
        unweighted = sorted(s.id for s in snapshots if s.id not in config.weights)
        if unweighted:
            warnings.append(
                f"Links without a configured weight: {', '.join(unweighted)}; "
                "traffic is split equally until the weights are updated"
            )
    return {
        "success": True,
        "data": {
            "productId": product_id,
            "totalLinks": len(snapshots),
            "strategy": config.strategy.value,
            "trafficSplit": config.traffic_split,
            "deviceTargeting": config.device_targeting,
            "configured": config_row is not None,
            "weights": preview_weights(snapshots, config),
            "warnings": warnings,
            "links": [_link_payload(s) for s in snapshots],
        },
    }


@router.post("/health-check")
async def health_check_links(
    req: HealthCheckRequest,
    session: AsyncSession = Depends(get_session),
):
    """Check links (explicit ids, or active links by product and/or platform) and deactivate broken ones."""
    if req.link_ids:
        link_ids = req.link_ids
    else:
        repo = AnalyticsRepository(session)
        link_ids = await repo.list_active_link_ids(
            product_id=req.product_id, platform=req.platform, limit=req.batch_size
        )

    if not link_ids:
        return {"success": True, "data": {"message": "No links found to check", "results": []}}

    results = await link_health.perform_health_check(session, link_ids)
    return {
        "success": True,
        "data": {
            "summary": link_health.summarize(results),
            "results": [r.to_dict() for r in results],
        },
    }


@router.get("/{link_id}/analytics")
async def link_analytics(
    link_id: str,
    session: AsyncSession = Depends(get_session),
):
    """Canonical counters for one link plus device and referrer breakdowns."""
    repo = AnalyticsRepository(session)
    snapshot = await repo.load_snapshot(link_id)
    if snapshot is None:
        raise NotFoundError(f"Link {link_id} not found")

    click_filter = (ClickEventRow.link_id == link_id, ClickEventRow.event_type == EventType.CLICK.value)
    devices = (await session.execute(
        select(ClickEventRow.device, func.count())
        .where(*click_filter)
        .group_by(ClickEventRow.device)
        .order_by(ClickEventRow.device)
    )).all()
    referrers = (await session.execute(
        select(ClickEventRow.referrer).where(*click_filter)
    )).scalars().all()

    by_referrer: dict[str, int] = {}
    for referrer in referrers:
        domain = referrer_domain(referrer) or "direct"
        by_referrer[domain] = by_referrer.get(domain, 0) + 1

    return {
        "success": True,
        "data": {
            **_link_payload(snapshot),
            "productId": snapshot.product_id,
            "isActive": snapshot.is_active,
            "devices": {device or "unknown": count for device, count in devices},
            "referrers": dict(sorted(by_referrer.items(), key=lambda kv: (-kv[1], kv[0]))),
        },
    }
