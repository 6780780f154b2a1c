"""
Database tables for click/view tracking, conversion attribution and the
aggregate counters maintained by atomic increments.
"""
import uuid

from sqlalchemy import (
    Column, Integer, String, Float, DateTime, Boolean, ForeignKey, Index, UniqueConstraint
)
from sqlalchemy.orm import relationship

from src.db.tables import Base, utcnow


class ClickEventRow(Base):
    """One row per resolved redirect (``click``) or tracked product view (``view``)."""
    __tablename__ = "click_events"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    link_id = Column(String(36), ForeignKey("affiliate_links.id"), nullable=True, index=True)
    product_id = Column(String(36), nullable=False, index=True)
    event_type = Column(String(10), nullable=False, default="click")
    session_id = Column(String(64), nullable=True, index=True)
    ip_address = Column(String(45), nullable=True)  # IPv6 support
    user_agent = Column(String(500), nullable=True)
    referrer = Column(String(1000), nullable=True)
    device = Column(String(20), nullable=True)
    browser = Column(String(30), nullable=True)
    os = Column(String(30), nullable=True)
    timestamp = Column(DateTime, default=utcnow, nullable=False, index=True)

    conversions = relationship("ConversionEventRow", back_populates="click")

    # Composite index for last-click attribution lookups
    __table_args__ = (
        Index("idx_click_attribution", "link_id", "session_id", "timestamp"),
        Index("idx_click_type_ts", "event_type", "timestamp"),
    )


class ConversionEventRow(Base):
    """A merchant-reported purchase attributed to a link (and click when known)."""
    __tablename__ = "conversion_events"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    link_id = Column(String(36), ForeignKey("affiliate_links.id"), nullable=False, index=True)
    product_id = Column(String(36), nullable=False, index=True)
    click_id = Column(String(36), ForeignKey("click_events.id"), nullable=True)  # NULL if unattributed
    platform = Column(String(50), nullable=False)
    order_value = Column(Float, nullable=False)
    commission = Column(Float, nullable=False)
    currency = Column(String(3), nullable=False, default="USD")
    status = Column(String(10), nullable=False, default="PENDING")
    external_order_id = Column(String(100), nullable=True)
    is_attributed = Column(Boolean, default=False, nullable=False)
    time_to_conversion_seconds = Column(Integer, nullable=True)
    timestamp = Column(DateTime, default=utcnow, nullable=False, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    click = relationship("ClickEventRow", back_populates="conversions")

    __table_args__ = (
        # Merchant order ids are only unique within a merchant platform
        UniqueConstraint("platform", "external_order_id", name="uq_conversion_platform_order"),
        Index("idx_conversion_link_ts", "link_id", "timestamp"),
    )


class LinkAnalyticsRow(Base):
    """Aggregate counters for one link. Written only via single-statement increments."""
    __tablename__ = "link_analytics"

    link_id = Column(String(36), ForeignKey("affiliate_links.id"), primary_key=True)
    total_clicks = Column(Integer, nullable=False, default=0)
    total_conversions = Column(Integer, nullable=False, default=0)
    total_revenue = Column(Float, nullable=False, default=0.0)
    conversion_rate = Column(Float, nullable=False, default=0.0)  # derived, percent
    average_order_value = Column(Float, nullable=False, default=0.0)  # derived
    last_updated = Column(DateTime, default=utcnow, nullable=False)


class ProductAnalyticsRow(Base):
    """Aggregate counters for one product. Same atomicity contract as links."""
    __tablename__ = "product_analytics"

    product_id = Column(String(36), primary_key=True)
    views = Column(Integer, nullable=False, default=0)
    clicks = Column(Integer, nullable=False, default=0)
    conversions = Column(Integer, nullable=False, default=0)
    revenue = Column(Float, nullable=False, default=0.0)
    last_updated = Column(DateTime, default=utcnow, nullable=False)
