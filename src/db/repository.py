"""Event store repository: link lookups, event writes and atomic counters.

Counter updates are always a single ``UPDATE ... SET x = x + n`` statement
(derived columns recomputed from the new values in the same statement), so
concurrent click and conversion writers never lose increments.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional, Sequence

from sqlalchemy import Float, case, cast, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.db.affiliate_tables import (
    ClickEventRow, ConversionEventRow, LinkAnalyticsRow, ProductAnalyticsRow,
)
from src.db.filters import ClickFilter, ConversionFilter
from src.db.tables import AffiliateLinkRow, RotationConfigRow, utcnow
from src.models.link import EventType, LinkSnapshot, RotationSettings, RotationStrategy


def _row_to_snapshot(link: AffiliateLinkRow, stats: Optional[LinkAnalyticsRow]) -> LinkSnapshot:
    """Convert a link row (+ optional analytics row) to a selector snapshot."""
    return LinkSnapshot(
        id=link.id,
        product_id=link.product_id,
        platform=link.platform,
        original_url=link.original_url,
        shortened_url=link.shortened_url,
        commission=link.commission or 0.0,
        priority=link.priority or 0,
        is_active=bool(link.is_active),
        total_clicks=stats.total_clicks if stats else 0,
        total_conversions=stats.total_conversions if stats else 0,
        total_revenue=stats.total_revenue if stats else 0.0,
        conversion_rate=stats.conversion_rate if stats else 0.0,
        average_order_value=stats.average_order_value if stats else 0.0,
    )


def config_to_settings(row: Optional[RotationConfigRow]) -> RotationSettings:
    """Rotation settings for a stored config; the default when none exists."""
    if row is None:
        return RotationSettings()
    return RotationSettings(
        strategy=RotationStrategy(row.strategy),
        weights=dict(row.weights or {}),
        traffic_split=row.traffic_split if row.traffic_split is not None else 1.0,
        device_targeting=dict(row.device_targeting or {}),
    )


class AnalyticsRepository:
    """Async event-store access backed by SQLAlchemy."""

    def __init__(self, session: AsyncSession):
        self.session = session

    # ── Links ───────────────────────────────────────────────────────────────

    async def get_link(self, link_id: str) -> Optional[AffiliateLinkRow]:
        return await self.session.get(AffiliateLinkRow, link_id)

    async def get_active_link_by_short_url(self, shortened_url: str) -> Optional[AffiliateLinkRow]:
        stmt = select(AffiliateLinkRow).where(
            AffiliateLinkRow.shortened_url == shortened_url,
            AffiliateLinkRow.is_active.is_(True),
        )
        return (await self.session.execute(stmt)).scalar_one_or_none()

    async def list_active_links(self, product_id: str) -> list[AffiliateLinkRow]:
        stmt = (
            select(AffiliateLinkRow)
            .where(AffiliateLinkRow.product_id == product_id, AffiliateLinkRow.is_active.is_(True))
            .order_by(AffiliateLinkRow.priority.desc(), AffiliateLinkRow.id)
        )
        return list((await self.session.execute(stmt)).scalars().all())

    async def load_snapshots(self, product_id: str) -> list[LinkSnapshot]:
        """Fresh read of a product's active links joined with their counters."""
        stmt = (
            select(AffiliateLinkRow, LinkAnalyticsRow)
            .outerjoin(LinkAnalyticsRow, LinkAnalyticsRow.link_id == AffiliateLinkRow.id)
            .where(AffiliateLinkRow.product_id == product_id, AffiliateLinkRow.is_active.is_(True))
            .order_by(AffiliateLinkRow.priority.desc(), AffiliateLinkRow.id)
        )
        rows = (await self.session.execute(stmt)).all()
        return [_row_to_snapshot(link, stats) for link, stats in rows]

    async def load_snapshot(self, link_id: str) -> Optional[LinkSnapshot]:
        stmt = (
            select(AffiliateLinkRow, LinkAnalyticsRow)
            .outerjoin(LinkAnalyticsRow, LinkAnalyticsRow.link_id == AffiliateLinkRow.id)
            .where(AffiliateLinkRow.id == link_id)
        )
        row = (await self.session.execute(stmt)).first()
        return _row_to_snapshot(row[0], row[1]) if row else None

    async def list_active_link_ids(
        self,
        product_id: Optional[str] = None,
        platform: Optional[str] = None,
        offset: int = 0,
        limit: int = 50,
    ) -> list[str]:
        stmt = select(AffiliateLinkRow.id).where(AffiliateLinkRow.is_active.is_(True))
        if product_id:
            stmt = stmt.where(AffiliateLinkRow.product_id == product_id)
        if platform:
            stmt = stmt.where(AffiliateLinkRow.platform == platform)
        stmt = stmt.order_by(AffiliateLinkRow.id).offset(offset).limit(limit)
        return list((await self.session.execute(stmt)).scalars().all())

    async def get_links(self, link_ids: Sequence[str]) -> list[AffiliateLinkRow]:
        if not link_ids:
            return []
        stmt = select(AffiliateLinkRow).where(AffiliateLinkRow.id.in_(list(link_ids)))
        return list((await self.session.execute(stmt)).scalars().all())

    async def deactivate_links(self, link_ids: Sequence[str]) -> int:
        if not link_ids:
            return 0
        result = await self.session.execute(
            update(AffiliateLinkRow)
            .where(AffiliateLinkRow.id.in_(list(link_ids)))
            .values(is_active=False, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    # ── Rotation config ─────────────────────────────────────────────────────

    async def get_rotation_config(self, product_id: str) -> Optional[RotationConfigRow]:
        return await self.session.get(RotationConfigRow, product_id)

    async def save_rotation_config(
        self,
        product_id: str,
        strategy: RotationStrategy,
        weights: Optional[dict[str, float]],
        traffic_split: float,
        test_duration_days: int,
        device_targeting: Optional[dict[str, list[str]]] = None,
    ) -> RotationConfigRow:
        """Create or replace the product's rotation config."""
        now = utcnow()
        row = await self.get_rotation_config(product_id)
        if row is None:
            row = RotationConfigRow(product_id=product_id, created_at=now)
            self.session.add(row)
        row.strategy = strategy.value
        row.weights = weights
        row.traffic_split = traffic_split
        row.device_targeting = device_targeting
        row.test_duration_days = test_duration_days
        row.updated_at = now
        row.expires_at = now + timedelta(days=test_duration_days)
        await self.session.flush()
        return row

    # ── Events ──────────────────────────────────────────────────────────────

    async def add_event(self, **fields) -> ClickEventRow:
        row = ClickEventRow(**fields)
        self.session.add(row)
        await self.session.flush()
        return row

    async def get_click(self, click_id: str) -> Optional[ClickEventRow]:
        return await self.session.get(ClickEventRow, click_id)

    async def latest_click(
        self,
        link_ids: Sequence[str],
        since: datetime,
        until: datetime,
        session_id: Optional[str] = None,
    ) -> Optional[ClickEventRow]:
        """Most recent click on any of ``link_ids`` inside [since, until]."""
        stmt = select(ClickEventRow).where(
            ClickEventRow.link_id.in_(list(link_ids)),
            ClickEventRow.event_type == EventType.CLICK.value,
            ClickEventRow.timestamp >= since,
            ClickEventRow.timestamp <= until,
        )
        if session_id:
            stmt = stmt.where(ClickEventRow.session_id == session_id)
        stmt = stmt.order_by(ClickEventRow.timestamp.desc(), ClickEventRow.id.desc()).limit(1)
        return (await self.session.execute(stmt)).scalar_one_or_none()

    async def list_events(self, flt: ClickFilter) -> list[ClickEventRow]:
        stmt = select(ClickEventRow).where(*flt.clauses()).order_by(
            ClickEventRow.timestamp, ClickEventRow.id
        )
        return list((await self.session.execute(stmt)).scalars().all())

    async def list_conversions(self, flt: ConversionFilter) -> list[ConversionEventRow]:
        stmt = select(ConversionEventRow).where(*flt.clauses()).order_by(
            ConversionEventRow.timestamp, ConversionEventRow.id
        )
        return list((await self.session.execute(stmt)).scalars().all())

    async def find_conversion_by_order(self, platform: str, external_order_id: str) -> Optional[ConversionEventRow]:
        stmt = select(ConversionEventRow).where(
            ConversionEventRow.platform == platform,
            ConversionEventRow.external_order_id == external_order_id,
        )
        return (await self.session.execute(stmt)).scalar_one_or_none()

    async def get_conversion(self, conversion_id: str) -> Optional[ConversionEventRow]:
        return await self.session.get(ConversionEventRow, conversion_id)

    async def transition_conversion(self, conversion_id: str, from_status: str, to_status: str) -> bool:
        """Compare-and-set the status; False when the row was no longer ``from_status``."""
        stmt = (
            update(ConversionEventRow)
            .where(ConversionEventRow.id == conversion_id, ConversionEventRow.status == from_status)
            .values(status=to_status, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def add_conversion(self, row: ConversionEventRow) -> ConversionEventRow:
        self.session.add(row)
        await self.session.flush()
        return row

    # ── Atomic counters ─────────────────────────────────────────────────────

    def _insert_ignore(self, table, **values):
        """``INSERT ... ON CONFLICT DO NOTHING`` for the session's dialect."""
        if self.session.get_bind().dialect.name == "postgresql":
            from sqlalchemy.dialects.postgresql import insert
        else:
            from sqlalchemy.dialects.sqlite import insert
        return insert(table).values(**values).on_conflict_do_nothing()

    async def increment_link(
        self,
        link_id: str,
        clicks: int = 0,
        conversions: int = 0,
        revenue: float = 0.0,
    ) -> None:
        """Atomically bump a link's counters and recompute its derived rates."""
        await self.session.execute(self._insert_ignore(
            LinkAnalyticsRow.__table__,
            link_id=link_id, total_clicks=0, total_conversions=0, total_revenue=0.0,
            conversion_rate=0.0, average_order_value=0.0, last_updated=utcnow(),
        ))
        new_clicks = LinkAnalyticsRow.total_clicks + clicks
        new_conversions = LinkAnalyticsRow.total_conversions + conversions
        new_revenue = LinkAnalyticsRow.total_revenue + revenue
        await self.session.execute(
            update(LinkAnalyticsRow)
            .where(LinkAnalyticsRow.link_id == link_id)
            .values(
                total_clicks=new_clicks,
                total_conversions=new_conversions,
                total_revenue=new_revenue,
                conversion_rate=case(
                    (new_clicks > 0, cast(new_conversions, Float) * 100.0 / cast(new_clicks, Float)),
                    else_=0.0,
                ),
                average_order_value=case(
                    (new_conversions > 0, cast(new_revenue, Float) / cast(new_conversions, Float)),
                    else_=0.0,
                ),
                last_updated=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )

    async def increment_product(
        self,
        product_id: str,
        views: int = 0,
        clicks: int = 0,
        conversions: int = 0,
        revenue: float = 0.0,
    ) -> None:
        """Atomically bump a product's counters."""
        await self.session.execute(self._insert_ignore(
            ProductAnalyticsRow.__table__,
            product_id=product_id, views=0, clicks=0, conversions=0, revenue=0.0,
            last_updated=utcnow(),
        ))
        await self.session.execute(
            update(ProductAnalyticsRow)
            .where(ProductAnalyticsRow.product_id == product_id)
            .values(
                views=ProductAnalyticsRow.views + views,
                clicks=ProductAnalyticsRow.clicks + clicks,
                conversions=ProductAnalyticsRow.conversions + conversions,
                revenue=ProductAnalyticsRow.revenue + revenue,
                last_updated=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )

    async def get_link_analytics(self, link_id: str) -> Optional[LinkAnalyticsRow]:
        # populate_existing: counters change underneath us via UPDATE statements
        stmt = (
            select(LinkAnalyticsRow)
            .where(LinkAnalyticsRow.link_id == link_id)
            .execution_options(populate_existing=True)
        )
        return (await self.session.execute(stmt)).scalar_one_or_none()

    async def get_product_analytics(self, product_id: str) -> Optional[ProductAnalyticsRow]:
        stmt = (
            select(ProductAnalyticsRow)
            .where(ProductAnalyticsRow.product_id == product_id)
            .execution_options(populate_existing=True)
        )
        return (await self.session.execute(stmt)).scalar_one_or_none()
