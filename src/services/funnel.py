"""
Conversion funnel analysis.

Turns the raw click/view event stream plus conversions for a date range into:
  steps            Visitors → Product Views → Clicks → Add to Cart → Conversions
  conversionRates  rate/dropOff for every adjacent step pair
  userBehavior     session duration, bounce rate, pages per session, return visitors
  segmentAnalysis  visitors/conversions/revenue per traffic segment
  bottlenecks      adjacent pairs below BOTTLENECK_THRESHOLD, from a fixed catalog
  summary          overall and click-to-conversion rates

Everything except ``build_funnel`` is pure and takes already-loaded rows
(anything with the ClickEventRow / ConversionEventRow attributes), ordered by
(timestamp, id). Identical input gives identical output.
"""
from __future__ import annotations

import math
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterable, Optional, Sequence
from urllib.parse import urlparse

from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from src.db.filters import ClickFilter, ConversionFilter
from src.db.repository import AnalyticsRepository
from src.db.tables import to_naive_utc
from src.errors import ValidationError
from src.models.link import ConversionStatus, EventType

VISITORS = "Visitors"
PRODUCT_VIEWS = "Product Views"
CLICKS = "Clicks"
ADD_TO_CART = "Add to Cart"
CONVERSIONS = "Conversions"

STEP_DESCRIPTIONS = (
    (VISITORS, "Total unique visitors"),
    (PRODUCT_VIEWS, "Users who viewed products"),
    (CLICKS, "Users who clicked affiliate links"),
    (ADD_TO_CART, "Users who added items to cart"),
    (CONVERSIONS, "Users who completed purchase"),
)

BOTTLENECK_THRESHOLD = 20.0

BOTTLENECK_CATALOG = {
    (VISITORS, PRODUCT_VIEWS): (
        "high",
        "Low product discovery rate",
        "Improve homepage design and navigation to highlight popular products",
    ),
    (PRODUCT_VIEWS, CLICKS): (
        "high",
        "Low click-through rate on product pages",
        "Optimize product descriptions, images, and call-to-action buttons",
    ),
    (CLICKS, ADD_TO_CART): (
        "medium",
        "Users not adding products to cart after clicking",
        "Improve affiliate link targeting and product relevance",
    ),
    (ADD_TO_CART, CONVERSIONS): (
        "high",
        "High cart abandonment rate",
        "Simplify checkout process and address common abandonment reasons",
    ),
}

HEALTHY_FUNNEL = {
    "step": "Overall Funnel",
    "issue": "Conversion rates are within normal ranges",
    "impact": "low",
    "recommendation": "Continue monitoring and consider A/B testing key elements",
}


# ── Segments ────────────────────────────────────────────────────────────────

def referrer_domain(referrer: Optional[str]) -> str:
    if not referrer:
        return ""
    parsed = urlparse(referrer if "//" in referrer else f"//{referrer}")
    return (parsed.hostname or "").lower()


def _referrer_has(*needles: str) -> Callable[[object], bool]:
    def predicate(event) -> bool:
        domain = referrer_domain(event.referrer)
        return any(needle in domain for needle in needles)
    return predicate


def _is_direct(event) -> bool:
    return referrer_domain(event.referrer) in ("", "direct")


def is_mobile(event) -> bool:
    return "mobile" in (event.user_agent or "").lower()


@dataclass(frozen=True)
class Segment:
    key: str
    name: str
    matches: Callable[[object], bool]


SEGMENTS = (
    Segment("organic", "Organic Search", _referrer_has("google", "bing")),
    Segment("social", "Social Media", _referrer_has("facebook", "twitter")),
    Segment("direct", "Direct Traffic", _is_direct),
    Segment("mobile", "Mobile Users", is_mobile),
    Segment("desktop", "Desktop Users", lambda event: not is_mobile(event)),
)
SEGMENTS_BY_KEY = {segment.key: segment for segment in SEGMENTS}


def get_segment(key: Optional[str]) -> Optional[Segment]:
    """``None`` for "all"; ValidationError for anything unknown."""
    if not key or key == "all":
        return None
    try:
        return SEGMENTS_BY_KEY[key]
    except KeyError:
        raise ValidationError(
            f"Unknown segment '{key}' (expected one of: all, {', '.join(SEGMENTS_BY_KEY)})",
            field="segment",
        ) from None


def visitor_key(event) -> str:
    return event.session_id or event.ip_address or event.id


def conversions_in_segment(conversions: Sequence, events: Sequence, segment: Segment) -> list:
    """Conversions whose attributed click (or, unattributed, whose link) is in the segment."""
    segment_click_ids = {e.id for e in events if segment.matches(e)}
    segment_link_ids = {e.link_id for e in events if e.link_id and segment.matches(e)}
    out = []
    for conversion in conversions:
        if conversion.click_id:
            if conversion.click_id in segment_click_ids:
                out.append(conversion)
        elif conversion.link_id in segment_link_ids:
            out.append(conversion)
    return out


# ── Steps & rates ───────────────────────────────────────────────────────────

def _pct(numerator: float, denominator: float) -> float:
    return round(numerator / denominator * 100, 2) if denominator > 0 else 0.0


def calculate_steps(
    events: Sequence,
    conversions: Sequence,
    add_to_cart_ratio: Optional[float] = None,
    counted_statuses: tuple[ConversionStatus, ...] = (ConversionStatus.CONFIRMED,),
) -> list[dict]:
    """Funnel steps with each value clamped to the one before it."""
    ratio = settings.ADD_TO_CART_RATIO if add_to_cart_ratio is None else add_to_cart_ratio

    visitors = len({visitor_key(e) for e in events})
    views = [e for e in events if e.event_type == EventType.VIEW.value]
    clicks = [e for e in events if e.event_type == EventType.CLICK.value]

    # A click implies its session saw the product even when no view was tracked
    viewed_sessions = {visitor_key(e) for e in views}
    implicit_views = len({visitor_key(e) for e in clicks} - viewed_sessions)
    product_views = len(views) + implicit_views

    add_to_cart = math.ceil(round(len(clicks) * ratio, 6))
    counted = {status.value for status in counted_statuses}
    confirmed = sum(1 for c in conversions if c.status in counted)

    raw = (visitors, product_views, len(clicks), add_to_cart, confirmed)
    steps = []
    previous = None
    for (name, description), value in zip(STEP_DESCRIPTIONS, raw):
        clamped = value if previous is None else min(value, previous)
        steps.append({"name": name, "description": description, "value": clamped})
        previous = clamped
    return steps


def calculate_conversion_rates(steps: Sequence[dict]) -> list[dict]:
    rates = []
    for current, following in zip(steps, steps[1:]):
        rate = _pct(following["value"], current["value"])
        rates.append({
            "from": current["name"],
            "to": following["name"],
            "rate": rate,
            "dropOff": round(100 - rate, 2),
        })
    return rates


def identify_bottlenecks(conversion_rates: Iterable[dict]) -> list[dict]:
    """Catalog entry for every adjacent pair under the threshold; never empty."""
    bottlenecks = []
    for rate in conversion_rates:
        if rate["rate"] >= BOTTLENECK_THRESHOLD:
            continue
        entry = BOTTLENECK_CATALOG.get((rate["from"], rate["to"]))
        if entry is None:
            continue
        impact, issue, recommendation = entry
        bottlenecks.append({
            "step": f"{rate['from']} → {rate['to']}",
            "issue": issue,
            "impact": impact,
            "recommendation": recommendation,
        })
    return bottlenecks or [dict(HEALTHY_FUNNEL)]


def summarize(steps: Sequence[dict]) -> dict:
    values = {step["name"]: step["value"] for step in steps}
    return {
        "overallConversionRate": _pct(values[CONVERSIONS], values[VISITORS]),
        "clickToConversionRate": _pct(values[CONVERSIONS], values[CLICKS]),
    }


# ── Behaviour & segments ────────────────────────────────────────────────────

def analyze_user_behavior(events: Sequence) -> dict:
    sessions: dict[str, list] = defaultdict(list)
    for event in events:
        sessions[visitor_key(event)].append(event)

    total = len(sessions)
    if total == 0:
        return {"averageTimeOnSite": 0, "bounceRate": 0.0, "pagesPerSession": 0.0, "returnVisitorRate": 0.0}

    durations = []
    for session_events in sessions.values():
        stamps = [e.timestamp for e in session_events]
        durations.append((max(stamps) - min(stamps)).total_seconds())
    bounces = sum(1 for session_events in sessions.values() if len(session_events) == 1)

    sessions_per_ip: dict[str, set] = defaultdict(set)
    for key, session_events in sessions.items():
        for event in session_events:
            if event.ip_address:
                sessions_per_ip[event.ip_address].add(key)
    returning = sum(1 for keys in sessions_per_ip.values() if len(keys) > 1)

    return {
        "averageTimeOnSite": round(sum(durations) / total),
        "bounceRate": _pct(bounces, total),
        "pagesPerSession": round(len(events) / total, 2),
        "returnVisitorRate": _pct(returning, len(sessions_per_ip)),
    }


def analyze_segments(events: Sequence, conversions: Sequence) -> list[dict]:
    """Per-segment visitors/conversions/revenue; empty segments are dropped."""
    confirmed = [c for c in conversions if c.status == ConversionStatus.CONFIRMED.value]
    out = []
    for segment in SEGMENTS:
        segment_events = [e for e in events if segment.matches(e)]
        visitors = len({visitor_key(e) for e in segment_events})
        if visitors == 0:
            continue
        matched = conversions_in_segment(confirmed, segment_events, segment)
        out.append({
            "segment": segment.name,
            "visitors": visitors,
            "conversions": len(matched),
            "conversionRate": _pct(len(matched), visitors),
            "revenue": round(sum(c.order_value for c in matched), 2),
        })
    return out


def analyze_funnel(events: Sequence, conversions: Sequence, segment: Optional[Segment] = None) -> dict:
    """Full funnel report for an already-loaded event set."""
    if segment is not None:
        events = [e for e in events if segment.matches(e)]
        conversions = conversions_in_segment(conversions, events, segment)

    steps = calculate_steps(events, conversions)
    rates = calculate_conversion_rates(steps)
    return {
        "steps": steps,
        "conversionRates": rates,
        "userBehavior": analyze_user_behavior(events),
        "segmentAnalysis": analyze_segments(events, conversions),
        "bottlenecks": identify_bottlenecks(rates),
        "summary": summarize(steps),
    }


async def build_funnel(
    session: AsyncSession,
    start: datetime,
    end: datetime,
    segment_key: str = "all",
) -> dict:
    segment = get_segment(segment_key)
    start, end = to_naive_utc(start), to_naive_utc(end)
    repo = AnalyticsRepository(session)
    events = await repo.list_events(ClickFilter(start=start, end=end))
    conversions = await repo.list_conversions(ConversionFilter(start=start, end=end))
    return analyze_funnel(events, conversions, segment)
