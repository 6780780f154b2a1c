"""SQLAlchemy ORM models for affiliate links and their rotation configuration."""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    Column, String, Integer, Float, DateTime, Boolean, JSON, Index
)
from sqlalchemy.orm import DeclarativeBase


def utcnow() -> datetime:
    """Naive UTC timestamp; all event-store datetimes are stored naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalise an incoming datetime to the stored representation."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    pass


class AffiliateLinkRow(Base):
    """One outbound, trackable merchant URL for a product on a platform.

    Links are deactivated (is_active=False) rather than deleted once they
    have analytics history.
    """
    __tablename__ = "affiliate_links"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    product_id = Column(String(36), nullable=False, index=True)
    platform = Column(String(50), nullable=False, index=True)  # amazon, shopee, lazada, ...
    original_url = Column(String(2000), nullable=False)
    shortened_url = Column(String(500), nullable=False, unique=True)
    commission = Column(Float, nullable=False, default=0.0)  # fraction 0..1
    priority = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True, index=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_links_product_active", "product_id", "is_active"),
    )


class RotationConfigRow(Base):
    """Per-product traffic distribution across its active links."""
    __tablename__ = "rotation_configs"

    product_id = Column(String(36), primary_key=True)
    strategy = Column(String(30), nullable=False)
    weights = Column(JSON, nullable=True)  # {link_id: fraction}
    traffic_split = Column(Float, nullable=False, default=1.0)
    device_targeting = Column(JSON, nullable=True)  # {link_id: [device, ...]}
    test_duration_days = Column(Integer, nullable=False, default=30)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
    expires_at = Column(DateTime, nullable=True)  # informational only
