"""Tests for the short-link redirect path and click recording."""
import asyncio
from collections import Counter

import pytest
from sqlalchemy import select

from config.settings import settings
from src.db.affiliate_tables import ClickEventRow, ProductAnalyticsRow
from src.db.repository import AnalyticsRepository
from src.db.tables import RotationConfigRow, utcnow
from src.services.click_recorder import record_click, record_view
from src.services.request_context import RequestContext
from tests.helpers import TestSession, get_test_session, seed_link


async def _link_clicks(link_id):
    async with get_test_session() as session:
        stats = await AnalyticsRepository(session).get_link_analytics(link_id)
        return stats.total_clicks if stats else 0


async def _set_rotation(product_id, strategy, weights=None, traffic_split=1.0, device_targeting=None):
    async with get_test_session() as session:
        session.add(RotationConfigRow(
            product_id=product_id,
            strategy=strategy,
            weights=weights,
            traffic_split=traffic_split,
            device_targeting=device_targeting,
            test_duration_days=30,
            created_at=utcnow(),
            updated_at=utcnow(),
        ))
        await session.commit()


# ── Redirects ───────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_single_link_redirects_to_its_url(client, tracking):
    link_id = await seed_link("abc123", original_url="https://amazon.example/dp/B01")

    resp = await client.get("/l/abc123")
    assert resp.status_code == 302
    assert resp.headers["location"] == "https://amazon.example/dp/B01"
    assert settings.SESSION_COOKIE_NAME in resp.headers.get("set-cookie", "")

    await tracking.drain()
    assert await _link_clicks(link_id) == 1


@pytest.mark.asyncio
async def test_unknown_code_goes_to_404_page(client, tracking):
    resp = await client.get("/l/nope")
    assert resp.status_code == 302
    assert resp.headers["location"] == f"{settings.PUBLIC_BASE_URL}/404"
    await tracking.drain()
    assert tracking.processed == 0


@pytest.mark.asyncio
async def test_inactive_link_goes_to_404_page(client):
    await seed_link("gone", is_active=False)
    resp = await client.get("/l/gone")
    assert resp.headers["location"] == f"{settings.PUBLIC_BASE_URL}/404"


@pytest.mark.asyncio
async def test_existing_session_cookie_is_reused(client, tracking):
    await seed_link("abc123")
    cookie = f"{settings.SESSION_COOKIE_NAME}=returning-visitor"

    resp = await client.get("/l/abc123", headers={"Cookie": cookie})
    assert "set-cookie" not in resp.headers

    await tracking.drain()
    async with get_test_session() as session:
        event = (await session.execute(select(ClickEventRow))).scalar_one()
    assert event.session_id == "returning-visitor"


@pytest.mark.asyncio
async def test_weighted_rotation_sends_all_traffic_to_the_weighted_link(client, tracking):
    a = await seed_link("link-a", original_url="https://a.example/p", priority=10)
    b = await seed_link("link-b", original_url="https://b.example/p", priority=5)
    await _set_rotation("prod-1", "weighted", weights={a: 0.0, b: 1.0})

    locations = Counter()
    for _ in range(10):
        resp = await client.get("/l/link-a")
        locations[resp.headers["location"]] += 1
    assert locations == {"https://b.example/p": 10}

    await tracking.drain()
    assert await _link_clicks(b) == 10
    assert await _link_clicks(a) == 0


IPHONE_UA = "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) Mobile/15E148"
DESKTOP_UA = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) Chrome/120.0"


@pytest.mark.asyncio
async def test_device_targeting_routes_by_visitor_device(client, tracking):
    app = await seed_link("app", original_url="https://app.example/p", priority=10)
    web = await seed_link("web", original_url="https://web.example/p", priority=5)
    await _set_rotation("prod-1", "random", device_targeting={app: ["mobile"], web: ["desktop"]})

    for _ in range(5):
        resp = await client.get("/l/web", headers={"User-Agent": IPHONE_UA})
        assert resp.headers["location"] == "https://app.example/p"
        resp = await client.get("/l/app", headers={"User-Agent": DESKTOP_UA})
        assert resp.headers["location"] == "https://web.example/p"

    await tracking.drain()
    assert await _link_clicks(app) == 5
    assert await _link_clicks(web) == 5


@pytest.mark.asyncio
async def test_device_targeting_without_a_match_rotates_over_all_links(client, tracking):
    app = await seed_link("app", original_url="https://app.example/p", priority=10)
    web = await seed_link("web", original_url="https://web.example/p", priority=5)
    await _set_rotation("prod-1", "round_robin", device_targeting={app: ["tablet"], web: ["tablet"]})

    seen = set()
    for _ in range(2):
        resp = await client.get("/l/app", headers={"User-Agent": IPHONE_UA})
        seen.add(resp.headers["location"])
        await tracking.drain()
    assert seen == {"https://app.example/p", "https://web.example/p"}


@pytest.mark.asyncio
async def test_round_robin_alternates_between_links(client, tracking):
    await seed_link("link-a", original_url="https://a.example/p", priority=10)
    await seed_link("link-b", original_url="https://b.example/p", priority=5)
    await _set_rotation("prod-1", "round_robin")

    seen = []
    for _ in range(4):
        resp = await client.get("/l/link-b")
        seen.append(resp.headers["location"])
        # Cursor is the click total, so wait for each click to land
        await tracking.drain()
    assert seen == [
        "https://a.example/p",
        "https://b.example/p",
        "https://a.example/p",
        "https://b.example/p",
    ]


@pytest.mark.asyncio
async def test_rotation_failure_serves_the_short_links_own_url(client, monkeypatch, tracking):
    await seed_link("link-a", original_url="https://a.example/p")
    await seed_link("link-b", original_url="https://b.example/p")

    async def broken(self, product_id):
        raise RuntimeError("analytics store unavailable")

    monkeypatch.setattr(AnalyticsRepository, "load_snapshots", broken)
    resp = await client.get("/l/link-b")
    assert resp.status_code == 302
    assert resp.headers["location"] == "https://b.example/p"


@pytest.mark.asyncio
async def test_lookup_failure_goes_to_error_page(client, monkeypatch):
    await seed_link("link-a")

    async def broken(self, shortened_url):
        raise RuntimeError("connection refused")

    monkeypatch.setattr(AnalyticsRepository, "get_active_link_by_short_url", broken)
    resp = await client.get("/l/link-a")
    assert resp.status_code == 302
    assert resp.headers["location"] == f"{settings.PUBLIC_BASE_URL}/error"


@pytest.mark.asyncio
async def test_tracking_failure_does_not_affect_redirect(client, monkeypatch, tracking):
    await seed_link("abc123", original_url="https://amazon.example/dp/B01")

    async def broken(self, *args, **kwargs):
        raise RuntimeError("disk full")

    monkeypatch.setattr(AnalyticsRepository, "increment_link", broken)
    resp = await client.get("/l/abc123")
    assert resp.status_code == 302
    assert resp.headers["location"] == "https://amazon.example/dp/B01"

    await tracking.drain()
    assert len(tracking.dead_letters) == 1
    assert tracking.dead_letters[0].name.startswith("click:")


# ── Click recorder ──────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_concurrent_clicks_are_all_counted():
    link_id = await seed_link("hot")
    ctx = RequestContext(session_id="s", ip_address="203.0.113.1")
    k = 50

    await asyncio.gather(*(record_click(TestSession, link_id, "prod-1", ctx) for _ in range(k)))

    assert await _link_clicks(link_id) == k
    async with get_test_session() as session:
        product = await AnalyticsRepository(session).get_product_analytics("prod-1")
        events = (await session.execute(select(ClickEventRow))).scalars().all()
    assert product.clicks == k
    assert len(events) == k


@pytest.mark.asyncio
async def test_record_view_bumps_product_views_only():
    ctx = RequestContext(session_id="viewer")
    event_id = await record_view(TestSession, "prod-9", ctx)

    async with get_test_session() as session:
        event = await session.get(ClickEventRow, event_id)
        product = await session.get(ProductAnalyticsRow, "prod-9")
    assert event.event_type == "view"
    assert event.link_id is None
    assert (product.views, product.clicks) == (1, 0)


@pytest.mark.asyncio
async def test_view_endpoint_queues_a_view(client, tracking):
    resp = await client.post("/events/view", json={"productId": "prod-1", "sessionId": "s-42"})
    assert resp.status_code == 202
    assert resp.json() == {"accepted": True, "sessionId": "s-42"}

    await tracking.drain()
    async with get_test_session() as session:
        event = (await session.execute(select(ClickEventRow))).scalar_one()
    assert (event.event_type, event.session_id) == ("view", "s-42")
