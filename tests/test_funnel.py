"""Tests for funnel analysis."""
import json
import random
from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest

from src.db.tables import utcnow
from src.errors import ValidationError
from src.services.funnel import (
    HEALTHY_FUNNEL,
    analyze_funnel,
    analyze_segments,
    analyze_user_behavior,
    calculate_conversion_rates,
    calculate_steps,
    get_segment,
    identify_bottlenecks,
)
from tests.helpers import ADMIN_HEADERS, seed_conversion, seed_event, seed_link

T0 = datetime(2026, 3, 2, 12, 0, 0)
MOBILE_UA = "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) Mobile/15E148 Safari/604.1"
DESKTOP_UA = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) Chrome/120.0"


def event(n, event_type="click", session="s1", minutes=0, referrer=None, ua=DESKTOP_UA, ip="203.0.113.1"):
    return SimpleNamespace(
        id=f"e{n}",
        link_id="l1",
        product_id="p1",
        event_type=event_type,
        session_id=session,
        ip_address=ip,
        user_agent=ua,
        referrer=referrer,
        device="desktop",
        timestamp=T0 + timedelta(minutes=minutes),
    )


def conversion(n, click_id=None, status="CONFIRMED", value=100.0):
    return SimpleNamespace(
        id=f"c{n}", link_id="l1", product_id="p1", click_id=click_id,
        status=status, order_value=value, timestamp=T0,
    )


def _values(steps):
    return [step["value"] for step in steps]


# ── Steps ───────────────────────────────────────────────────────────────────

def test_steps_for_a_small_event_set():
    events = [
        event(1, "view", session="a"),
        event(2, "click", session="a", minutes=1),
        event(3, "click", session="b"),
        event(4, "view", session="c"),
    ]
    steps = calculate_steps(events, [conversion(1, click_id="e2")], add_to_cart_ratio=0.3)
    # 3 visitors; 2 tracked views + session b's implicit view; 2 clicks; ceil(0.6)
    assert _values(steps) == [3, 3, 2, 1, 1]
    assert [s["name"] for s in steps] == [
        "Visitors", "Product Views", "Clicks", "Add to Cart", "Conversions",
    ]


def test_only_confirmed_conversions_count_by_default():
    events = [event(1), event(2, session="s2")]
    conversions = [conversion(1), conversion(2, status="PENDING"), conversion(3, status="REJECTED")]
    assert _values(calculate_steps(events, conversions))[-1] == 1


def test_steps_are_monotonically_non_increasing():
    rng = random.Random(99)
    for _ in range(50):
        events = [
            event(i, rng.choice(["click", "view"]), session=f"s{rng.randint(0, 5)}", minutes=i)
            for i in range(rng.randint(0, 30))
        ]
        conversions = [conversion(i) for i in range(rng.randint(0, 40))]
        values = _values(calculate_steps(events, conversions, add_to_cart_ratio=rng.random()))
        assert all(a >= b for a, b in zip(values, values[1:]))
        assert all(v >= 0 for v in values)


def test_conversion_rates_and_drop_off():
    steps = [
        {"name": "Visitors", "value": 200},
        {"name": "Product Views", "value": 100},
        {"name": "Clicks", "value": 0},
        {"name": "Add to Cart", "value": 0},
        {"name": "Conversions", "value": 0},
    ]
    rates = calculate_conversion_rates(steps)
    assert rates[0] == {"from": "Visitors", "to": "Product Views", "rate": 50.0, "dropOff": 50.0}
    # Zero denominator is 0%, never a division error
    assert rates[2]["rate"] == 0.0
    assert rates[2]["dropOff"] == 100.0


# ── Bottlenecks ─────────────────────────────────────────────────────────────

def _rates(*values):
    names = ["Visitors", "Product Views", "Clicks", "Add to Cart", "Conversions"]
    return [
        {"from": a, "to": b, "rate": rate, "dropOff": round(100 - rate, 2)}
        for a, b, rate in zip(names, names[1:], values)
    ]


def test_single_bottleneck_between_clicks_and_cart():
    bottlenecks = identify_bottlenecks(_rates(50.0, 40.0, 15.0, 30.0))
    assert bottlenecks == [{
        "step": "Clicks → Add to Cart",
        "issue": "Users not adding products to cart after clicking",
        "impact": "medium",
        "recommendation": "Improve affiliate link targeting and product relevance",
    }]


def test_threshold_is_exclusive():
    assert identify_bottlenecks(_rates(20.0, 20.0, 20.0, 20.0)) == [HEALTHY_FUNNEL]


def test_several_bottlenecks_keep_step_order():
    bottlenecks = identify_bottlenecks(_rates(5.0, 40.0, 15.0, 1.0))
    assert [b["step"] for b in bottlenecks] == [
        "Visitors → Product Views",
        "Clicks → Add to Cart",
        "Add to Cart → Conversions",
    ]
    assert [b["impact"] for b in bottlenecks] == ["high", "medium", "high"]


# ── Behaviour & segments ────────────────────────────────────────────────────

def test_user_behavior():
    events = [
        event(1, "view", session="a", minutes=0, ip="1.1.1.1"),
        event(2, "click", session="a", minutes=4, ip="1.1.1.1"),
        event(3, "click", session="b", minutes=0, ip="1.1.1.1"),
        event(4, "click", session="c", minutes=0, ip="2.2.2.2"),
    ]
    behavior = analyze_user_behavior(events)
    assert behavior == {
        "averageTimeOnSite": 80,  # (240 + 0 + 0) / 3
        "bounceRate": 66.67,
        "pagesPerSession": 1.33,
        "returnVisitorRate": 50.0,
    }


def test_user_behavior_empty():
    assert analyze_user_behavior([])["bounceRate"] == 0.0


def test_segments_drop_empty_and_attribute_revenue():
    events = [
        event(1, session="g", referrer="https://www.google.com/search?q=x", ua=MOBILE_UA),
        event(2, session="d"),
    ]
    conversions = [conversion(1, click_id="e1", value=30.0)]
    segments = {row["segment"]: row for row in analyze_segments(events, conversions)}

    assert set(segments) == {"Organic Search", "Direct Traffic", "Mobile Users", "Desktop Users"}
    assert segments["Organic Search"]["conversions"] == 1
    assert segments["Organic Search"]["revenue"] == 30.0
    assert segments["Mobile Users"]["conversionRate"] == 100.0
    assert segments["Direct Traffic"]["conversions"] == 0


def test_unknown_segment_raises():
    with pytest.raises(ValidationError):
        get_segment("martians")
    assert get_segment("all") is None
    assert get_segment("mobile").name == "Mobile Users"


def test_segment_filters_the_whole_funnel():
    events = [
        event(1, session="m", ua=MOBILE_UA),
        event(2, session="d1"),
        event(3, session="d2"),
    ]
    report = analyze_funnel(events, [conversion(1, click_id="e2")], get_segment("mobile"))
    assert report["steps"][0]["value"] == 1
    assert report["steps"][-1]["value"] == 0


def test_analysis_is_deterministic():
    events = [event(i, "click" if i % 3 else "view", session=f"s{i % 4}", minutes=i) for i in range(20)]
    conversions = [conversion(1, click_id="e1"), conversion(2, click_id="e2", status="PENDING")]
    first = json.dumps(analyze_funnel(events, conversions), sort_keys=True)
    second = json.dumps(analyze_funnel(events, conversions), sort_keys=True)
    assert first == second


# ── Endpoint ────────────────────────────────────────────────────────────────

def _range():
    now = utcnow()
    return {"start": (now - timedelta(days=1)).isoformat(), "end": (now + timedelta(days=1)).isoformat()}


@pytest.mark.asyncio
async def test_funnel_endpoint(client):
    link_id = await seed_link("f")
    click_id = await seed_event(link_id, session_id="v1")
    await seed_event(link_id, event_type="view", session_id="v2")
    await seed_conversion(link_id, click_id=click_id)

    resp = await client.post("/analytics/funnel", json={"dateRange": _range()}, headers=ADMIN_HEADERS)
    assert resp.status_code == 200
    body = resp.json()
    assert set(body) == {"steps", "conversionRates", "userBehavior", "segmentAnalysis", "bottlenecks", "summary"}
    assert [s["value"] for s in body["steps"]] == [2, 2, 1, 1, 1]


@pytest.mark.asyncio
async def test_funnel_endpoint_rejects_unknown_segment(client):
    resp = await client.post(
        "/analytics/funnel", json={"dateRange": _range(), "segment": "martians"}, headers=ADMIN_HEADERS
    )
    assert resp.status_code == 400
    assert resp.json()["details"][0]["field"] == "segment"


@pytest.mark.asyncio
async def test_funnel_endpoint_rejects_inverted_range(client):
    now = utcnow()
    bad = {"start": now.isoformat(), "end": (now - timedelta(days=1)).isoformat()}
    resp = await client.post("/analytics/funnel", json={"dateRange": bad}, headers=ADMIN_HEADERS)
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_funnel_endpoint_requires_admin(client):
    resp = await client.post("/analytics/funnel", json={"dateRange": _range()})
    assert resp.status_code == 403
