"""Funnel and report endpoints for the admin dashboard."""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from fastapi.responses import Response
from sqlalchemy.ext.asyncio import AsyncSession

from src.auth import require_admin
from src.db.engine import get_session
from src.models.link import FunnelRequest, ReportFormat, ReportRequest
from src.services.funnel import build_funnel
from src.services.reports import generate_report, to_csv

router = APIRouter(prefix="/analytics", tags=["Analytics"], dependencies=[Depends(require_admin)])
logger = logging.getLogger(__name__)


@router.post("/funnel")
async def funnel_analysis(
    req: FunnelRequest,
    session: AsyncSession = Depends(get_session),
):
    """Funnel steps, conversion rates, behaviour, segments and bottlenecks."""
    return await build_funnel(session, req.date_range.start, req.date_range.end, req.segment)


@router.post("/reports")
async def analytics_report(
    req: ReportRequest,
    session: AsyncSession = Depends(get_session),
):
    report = await generate_report(session, req)
    if req.format == ReportFormat.CSV:
        filename = f"analytics-report-{req.report_type.value}-{req.date_range.start.date().isoformat()}.csv"
        return Response(
            content=to_csv(report["data"]),
            media_type="text/csv",
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )
    return report
