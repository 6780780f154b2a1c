"""
Analytics reports over the event store.

Report types:
  performance  time series (or product/source buckets) with every metric
  products     per-product totals, highest revenue first
  traffic      clicks and unique visitors per referrer source (and device)
  conversion   funnel steps + adjacent conversion rates
  custom       time series restricted to the requested metrics

Buckets: day (YYYY-MM-DD), week (ISO week, keyed by its Monday), month
(YYYY-MM), product (product id), source (referrer domain or "Direct").
REJECTED conversions never count towards conversions or revenue.
"""
from __future__ import annotations

import csv
import io
import logging
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from src.db.filters import ClickFilter, ConversionFilter
from src.db.repository import AnalyticsRepository
from src.db.tables import to_naive_utc
from src.models.link import (
    REPORT_METRICS, ConversionStatus, EventType, GroupBy, ReportRequest, ReportType,
)
from src.services import funnel

logger = logging.getLogger(__name__)

DEFAULT_CUSTOM_METRICS = ("clicks", "conversions", "revenue", "conversionRate")
DIRECT = "Direct"


def traffic_source(event) -> str:
    return funnel.referrer_domain(getattr(event, "referrer", None)) or DIRECT


def bucket_key(when: datetime, group_by: GroupBy) -> str:
    if group_by == GroupBy.WEEK:
        monday = when.date() - timedelta(days=when.weekday())
        return monday.isoformat()
    if group_by == GroupBy.MONTH:
        return f"{when.year:04d}-{when.month:02d}"
    return when.date().isoformat()


def _metrics(events: Sequence, conversions: Sequence) -> dict:
    clicks = sum(1 for e in events if e.event_type == EventType.CLICK.value)
    views = sum(1 for e in events if e.event_type == EventType.VIEW.value)
    revenue = sum(c.order_value for c in conversions)
    count = len(conversions)
    return {
        "clicks": clicks,
        "views": views,
        "conversions": count,
        "revenue": round(revenue, 2),
        "conversionRate": round(count / clicks * 100, 2) if clicks else 0.0,
        "averageOrderValue": round(revenue / count, 2) if count else 0.0,
    }


def _project(row: dict, metrics: Sequence[str]) -> dict:
    return {k: v for k, v in row.items() if k not in REPORT_METRICS or k in metrics}


def _group(
    events: Sequence,
    conversions: Sequence,
    group_by: GroupBy,
) -> tuple[str, dict[str, tuple[list, list]]]:
    """Bucket events and conversions under one key function. Returns (label, buckets)."""
    click_sources = {e.id: traffic_source(e) for e in events}

    if group_by == GroupBy.PRODUCT:
        label = "productId"
        event_key: Callable = lambda e: e.product_id
        conversion_key: Callable = lambda c: c.product_id
    elif group_by == GroupBy.SOURCE:
        label = "source"
        event_key = traffic_source
        conversion_key = lambda c: click_sources.get(c.click_id, DIRECT)
    else:
        label = "period"
        event_key = lambda e: bucket_key(e.timestamp, group_by)
        conversion_key = lambda c: bucket_key(c.timestamp, group_by)

    buckets: dict[str, tuple[list, list]] = defaultdict(lambda: ([], []))
    for event in events:
        buckets[event_key(event)][0].append(event)
    for conversion in conversions:
        buckets[conversion_key(conversion)][1].append(conversion)
    return label, dict(sorted(buckets.items()))


def performance_report(events, conversions, group_by: GroupBy, metrics: Sequence[str] = REPORT_METRICS) -> list[dict]:
    label, buckets = _group(events, conversions, group_by)
    return [
        _project({label: key, **_metrics(bucket_events, bucket_conversions)}, metrics)
        for key, (bucket_events, bucket_conversions) in buckets.items()
    ]


def product_report(events, conversions) -> list[dict]:
    _, buckets = _group(events, conversions, GroupBy.PRODUCT)
    rows = [
        {"productId": key, **_metrics(bucket_events, bucket_conversions)}
        for key, (bucket_events, bucket_conversions) in buckets.items()
    ]
    return sorted(rows, key=lambda row: (-row["revenue"], row["productId"]))


def traffic_report(events, group_by: Optional[GroupBy]) -> list[dict]:
    sources: dict[str, dict] = {}
    for event in events:
        if event.event_type != EventType.CLICK.value:
            continue
        source = traffic_source(event)
        device = "Mobile" if funnel.is_mobile(event) else "Desktop"
        key = source if group_by == GroupBy.SOURCE else f"{source} - {device}"
        entry = sources.setdefault(key, {"clicks": 0, "users": set()})
        entry["clicks"] += 1
        entry["users"].add(funnel.visitor_key(event))

    rows = [
        {
            "source": key,
            "clicks": data["clicks"],
            "uniqueUsers": len(data["users"]),
            "clicksPerUser": round(data["clicks"] / len(data["users"]), 2),
        }
        for key, data in sources.items()
    ]
    return sorted(rows, key=lambda row: (-row["clicks"], row["source"]))


def conversion_report(events, conversions) -> dict:
    steps = funnel.calculate_steps(
        events, conversions,
        counted_statuses=(ConversionStatus.PENDING, ConversionStatus.CONFIRMED),
    )
    return {
        "funnelSteps": steps,
        "conversionRates": funnel.calculate_conversion_rates(steps),
        **funnel.summarize(steps),
    }


def summarize_rows(data) -> dict:
    if not isinstance(data, list):
        return {"totalRecords": 1}
    total_clicks = sum(row.get("clicks", 0) for row in data)
    total_conversions = sum(row.get("conversions", 0) for row in data)
    total_revenue = round(sum(row.get("revenue", 0.0) for row in data), 2)
    return {
        "totalRecords": len(data),
        "totalClicks": total_clicks,
        "totalConversions": total_conversions,
        "totalRevenue": total_revenue,
        "overallConversionRate": round(total_conversions / total_clicks * 100, 2) if total_clicks else 0.0,
        "averageOrderValue": round(total_revenue / total_conversions, 2) if total_conversions else 0.0,
    }


def to_csv(data) -> str:
    """Flat CSV of a report's rows (the funnel steps for conversion reports)."""
    if isinstance(data, dict):
        data = data.get("funnelSteps", [data])
    if not data:
        return ""
    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=list(data[0].keys()), lineterminator="\n")
    writer.writeheader()
    writer.writerows(data)
    return buffer.getvalue()


def _apply_filters(events: list, conversions: list, req: ReportRequest) -> tuple[list, list]:
    filters = req.filters
    if filters is None or not (filters.traffic_sources or filters.devices):
        return events, conversions

    sources = {s.lower() for s in filters.traffic_sources or []}
    devices = {d.lower() for d in filters.devices or []}

    def keep(event) -> bool:
        if sources and not any(s in traffic_source(event).lower() for s in sources):
            return False
        if devices and (event.device or "").lower() not in devices:
            return False
        return True

    kept = [e for e in events if keep(e)]
    click_ids = {e.id for e in kept}
    link_ids = {e.link_id for e in kept if e.link_id}

    def keep_conversion(conversion) -> bool:
        if conversion.click_id:
            return conversion.click_id in click_ids
        return conversion.link_id in link_ids

    return kept, [c for c in conversions if keep_conversion(c)]


def build_report(events: list, conversions: list, req: ReportRequest):
    """Report body for already-loaded rows."""
    events, conversions = _apply_filters(events, conversions, req)
    group_by = req.group_by or GroupBy.DAY

    if req.report_type == ReportType.PRODUCTS:
        return product_report(events, conversions)
    if req.report_type == ReportType.TRAFFIC:
        return traffic_report(events, req.group_by)
    if req.report_type == ReportType.CONVERSION:
        return conversion_report(events, conversions)
    if req.report_type == ReportType.CUSTOM:
        return performance_report(events, conversions, group_by, req.metrics or DEFAULT_CUSTOM_METRICS)
    return performance_report(events, conversions, group_by, req.metrics or REPORT_METRICS)


async def generate_report(session: AsyncSession, req: ReportRequest) -> dict:
    """Load the filtered event set and build the report envelope."""
    start = to_naive_utc(req.date_range.start)
    end = to_naive_utc(req.date_range.end)
    product_ids = tuple(req.filters.product_ids or ()) if req.filters else ()
    link_ids = tuple(req.filters.link_ids or ()) if req.filters else ()

    repo = AnalyticsRepository(session)
    events = await repo.list_events(
        ClickFilter(start=start, end=end, product_ids=product_ids, link_ids=link_ids)
    )
    conversions = await repo.list_conversions(
        ConversionFilter(
            start=start, end=end, product_ids=product_ids, link_ids=link_ids,
            statuses=(ConversionStatus.PENDING, ConversionStatus.CONFIRMED),
        )
    )

    data = build_report(events, conversions, req)
    logger.info(
        "Built %s report (%d events, %d conversions)",
        req.report_type.value, len(events), len(conversions),
    )
    return {
        "reportType": req.report_type.value,
        "dateRange": {"start": start.isoformat(), "end": end.isoformat()},
        "groupBy": req.group_by.value if req.group_by else None,
        "generatedAt": datetime.now(timezone.utc).isoformat(),
        "data": data,
        "summary": summarize_rows(data),
    }
