"""
Conversion attribution.

Merchant purchase signals arrive via webhook (or import) and are attributed
to the most recent click inside the lookback window (last-click). The
(platform, external order id) pair is the idempotency key: a replayed signal
is rejected with ``DuplicateConversion`` and counters are left alone.

Counter effects:
  new conversion     link/product conversions += 1, revenue += order_value
  PENDING → REJECTED the same amounts are subtracted again
  PENDING → CONFIRMED no counter change
"""
from __future__ import annotations

import hashlib
import hmac
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from src.db.affiliate_tables import ClickEventRow, ConversionEventRow
from src.db.repository import AnalyticsRepository
from src.db.tables import AffiliateLinkRow, to_naive_utc, utcnow
from src.errors import DuplicateConversion, NotFoundError, PersistenceFailure, ValidationError
from src.models.link import ConversionSignal, ConversionStatus

logger = logging.getLogger(__name__)

_TRANSITIONS = {
    ConversionStatus.PENDING: {ConversionStatus.CONFIRMED, ConversionStatus.REJECTED},
}


@dataclass(frozen=True)
class AttributionResult:
    conversion_id: str
    link_id: str
    product_id: str
    click_id: Optional[str]
    is_attributed: bool
    order_value: float
    commission: float
    currency: str
    status: str
    time_to_conversion_seconds: Optional[int]

    def to_dict(self) -> dict:
        return {
            "conversionId": self.conversion_id,
            "linkId": self.link_id,
            "productId": self.product_id,
            "clickId": self.click_id,
            "isAttributed": self.is_attributed,
            "orderValue": round(self.order_value, 2),
            "commission": round(self.commission, 2),
            "currency": self.currency,
            "status": self.status,
            "timeToConversionSeconds": self.time_to_conversion_seconds,
        }


def _result(row: ConversionEventRow) -> AttributionResult:
    return AttributionResult(
        conversion_id=row.id,
        link_id=row.link_id,
        product_id=row.product_id,
        click_id=row.click_id,
        is_attributed=bool(row.is_attributed),
        order_value=row.order_value,
        commission=row.commission,
        currency=row.currency,
        status=row.status,
        time_to_conversion_seconds=row.time_to_conversion_seconds,
    )


async def _find_click(
    repo: AnalyticsRepository,
    signal: ConversionSignal,
    occurred_at,
    window_hours: int,
) -> tuple[Optional[ClickEventRow], Optional[AffiliateLinkRow]]:
    """Resolve (attributed click, link the conversion belongs to)."""
    if signal.click_id:
        click = await repo.get_click(signal.click_id)
        if click is None or click.link_id is None:
            raise NotFoundError(f"Click {signal.click_id} not found")
        link = await repo.get_link(click.link_id)
        if link is None:
            raise NotFoundError(f"Link {click.link_id} not found")
        return click, link

    link: Optional[AffiliateLinkRow] = None
    if signal.link_id:
        link = await repo.get_link(signal.link_id)
        if link is None:
            raise NotFoundError(f"Link {signal.link_id} not found")
        candidate_ids = [link.id]
    else:
        product_links = await repo.list_active_links(signal.product_id)
        candidate_ids = [row.id for row in product_links]
        if not candidate_ids:
            raise NotFoundError(f"No links found for product {signal.product_id}")

    since = occurred_at - timedelta(hours=window_hours)
    click = await repo.latest_click(candidate_ids, since, occurred_at, session_id=signal.session_id)

    if click is not None:
        if link is None or link.id != click.link_id:
            link = await repo.get_link(click.link_id)
        return click, link
    if link is None:
        raise NotFoundError(
            f"No click within {window_hours}h to attribute product {signal.product_id} conversion to"
        )
    return None, link


async def record_conversion(
    session: AsyncSession,
    signal: ConversionSignal,
    window_hours: Optional[int] = None,
) -> AttributionResult:
    """Attribute and store one merchant conversion, then bump counters.

    Commits on success. Raises NotFoundError, DuplicateConversion or
    PersistenceFailure; the session is rolled back on any of them.
    """
    window_hours = window_hours or settings.ATTRIBUTION_WINDOW_HOURS
    occurred_at = to_naive_utc(signal.occurred_at) or utcnow()
    repo = AnalyticsRepository(session)
    platform = None

    try:
        click, link = await _find_click(repo, signal, occurred_at, window_hours)
        platform = link.platform

        if signal.external_order_id:
            existing = await repo.find_conversion_by_order(link.platform, signal.external_order_id)
            if existing is not None:
                raise DuplicateConversion(
                    f"Conversion for order {signal.external_order_id} already recorded",
                    conversion_id=existing.id,
                )

        commission = signal.commission
        if commission is None:
            commission = signal.order_value * (link.commission or 0.0)

        row = ConversionEventRow(
            link_id=link.id,
            product_id=link.product_id,
            click_id=click.id if click else None,
            platform=link.platform,
            order_value=signal.order_value,
            commission=commission,
            currency=signal.currency,
            status=signal.status.value,
            external_order_id=signal.external_order_id,
            is_attributed=click is not None,
            time_to_conversion_seconds=(
                max(int((occurred_at - click.timestamp).total_seconds()), 0) if click else None
            ),
            timestamp=occurred_at,
        )
        await repo.add_conversion(row)

        if signal.status != ConversionStatus.REJECTED:
            await repo.increment_link(link.id, conversions=1, revenue=signal.order_value)
            await repo.increment_product(link.product_id, conversions=1, revenue=signal.order_value)

        await session.commit()
    except IntegrityError as exc:
        # Lost a race with a concurrent replay of the same order
        await session.rollback()
        existing = None
        if platform and signal.external_order_id:
            existing = await repo.find_conversion_by_order(platform, signal.external_order_id)
        if existing is not None:
            raise DuplicateConversion(
                f"Conversion for order {signal.external_order_id} already recorded",
                conversion_id=existing.id,
            ) from exc
        logger.error("Conversion insert failed: %s", exc)
        raise PersistenceFailure("could not store conversion") from exc
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.error("Conversion insert failed: %s", exc)
        raise PersistenceFailure("could not store conversion") from exc
    except Exception:
        await session.rollback()
        raise

    logger.info(
        "Conversion %s recorded for link %s (attributed=%s, value=%.2f %s)",
        row.id, row.link_id, row.is_attributed, row.order_value, row.currency,
    )
    return _result(row)


async def update_conversion_status(
    session: AsyncSession,
    conversion_id: str,
    status: ConversionStatus,
) -> AttributionResult:
    """Move a PENDING conversion to CONFIRMED or REJECTED."""
    repo = AnalyticsRepository(session)
    row = await repo.get_conversion(conversion_id)
    if row is None:
        raise NotFoundError(f"Conversion {conversion_id} not found")

    current = ConversionStatus(row.status)
    if status == current:
        return _result(row)
    if status not in _TRANSITIONS.get(current, set()):
        raise ValidationError(
            f"Cannot change conversion status from {current.value} to {status.value}",
            field="status",
        )

    # Only the writer whose conditional UPDATE lands may touch the counters
    try:
        moved = await repo.transition_conversion(conversion_id, current.value, status.value)
        if moved and status == ConversionStatus.REJECTED:
            await repo.increment_link(row.link_id, conversions=-1, revenue=-row.order_value)
            await repo.increment_product(row.product_id, conversions=-1, revenue=-row.order_value)
        await session.commit()
        await session.refresh(row)
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.error("Status update failed for conversion %s: %s", conversion_id, exc)
        raise PersistenceFailure("could not update conversion status") from exc

    if not moved:
        latest = ConversionStatus(row.status)
        if latest != status:
            raise ValidationError(
                f"Cannot change conversion status from {latest.value} to {status.value}",
                field="status",
            )
        logger.info("Conversion %s already %s", conversion_id, status.value)
        return _result(row)

    logger.info("Conversion %s moved %s → %s", conversion_id, current.value, status.value)
    return _result(row)


def verify_webhook_signature(
    payload: bytes,
    signature: str,
    secret: str,
) -> bool:
    """Verify the HMAC-SHA256 hex digest a conversion webhook was signed with."""
    if not signature:
        return False
    expected = hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature.strip().lower())
