"""Affiliate links, rotation configs, click/conversion events and counters.

Revision ID: 4f9c2e7a1b30
Revises:
Create Date: 2026-10-18
"""
from alembic import op
import sqlalchemy as sa

revision = "4f9c2e7a1b30"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "affiliate_links",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("product_id", sa.String(36), nullable=False, index=True),
        sa.Column("platform", sa.String(50), nullable=False, index=True),
        sa.Column("original_url", sa.String(2000), nullable=False),
        sa.Column("shortened_url", sa.String(500), nullable=False, unique=True),
        sa.Column("commission", sa.Float, nullable=False, server_default="0"),
        sa.Column("priority", sa.Integer, nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true(), index=True),
        sa.Column("created_at", sa.DateTime, nullable=False),
        sa.Column("updated_at", sa.DateTime, nullable=False),
    )
    op.create_index("ix_links_product_active", "affiliate_links", ["product_id", "is_active"])

    op.create_table(
        "rotation_configs",
        sa.Column("product_id", sa.String(36), primary_key=True),
        sa.Column("strategy", sa.String(30), nullable=False),
        sa.Column("weights", sa.JSON, nullable=True),
        sa.Column("traffic_split", sa.Float, nullable=False, server_default="1"),
        sa.Column("device_targeting", sa.JSON, nullable=True),
        sa.Column("test_duration_days", sa.Integer, nullable=False, server_default="30"),
        sa.Column("created_at", sa.DateTime, nullable=False),
        sa.Column("updated_at", sa.DateTime, nullable=False),
        sa.Column("expires_at", sa.DateTime, nullable=True),
    )

    op.create_table(
        "click_events",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("link_id", sa.String(36), sa.ForeignKey("affiliate_links.id"), nullable=True, index=True),
        sa.Column("product_id", sa.String(36), nullable=False, index=True),
        sa.Column("event_type", sa.String(10), nullable=False, server_default="click"),
        sa.Column("session_id", sa.String(64), nullable=True, index=True),
        sa.Column("ip_address", sa.String(45), nullable=True),
        sa.Column("user_agent", sa.String(500), nullable=True),
        sa.Column("referrer", sa.String(1000), nullable=True),
        sa.Column("device", sa.String(20), nullable=True),
        sa.Column("browser", sa.String(30), nullable=True),
        sa.Column("os", sa.String(30), nullable=True),
        sa.Column("timestamp", sa.DateTime, nullable=False, index=True),
    )
    op.create_index("idx_click_attribution", "click_events", ["link_id", "session_id", "timestamp"])
    op.create_index("idx_click_type_ts", "click_events", ["event_type", "timestamp"])

    op.create_table(
        "conversion_events",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("link_id", sa.String(36), sa.ForeignKey("affiliate_links.id"), nullable=False, index=True),
        sa.Column("product_id", sa.String(36), nullable=False, index=True),
        sa.Column("click_id", sa.String(36), sa.ForeignKey("click_events.id"), nullable=True),
        sa.Column("platform", sa.String(50), nullable=False),
        sa.Column("order_value", sa.Float, nullable=False),
        sa.Column("commission", sa.Float, nullable=False),
        sa.Column("currency", sa.String(3), nullable=False, server_default="USD"),
        sa.Column("status", sa.String(10), nullable=False, server_default="PENDING"),
        sa.Column("external_order_id", sa.String(100), nullable=True),
        sa.Column("is_attributed", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("time_to_conversion_seconds", sa.Integer, nullable=True),
        sa.Column("timestamp", sa.DateTime, nullable=False, index=True),
        sa.Column("updated_at", sa.DateTime, nullable=False),
        sa.UniqueConstraint("platform", "external_order_id", name="uq_conversion_platform_order"),
    )
    op.create_index("idx_conversion_link_ts", "conversion_events", ["link_id", "timestamp"])

    op.create_table(
        "link_analytics",
        sa.Column("link_id", sa.String(36), sa.ForeignKey("affiliate_links.id"), primary_key=True),
        sa.Column("total_clicks", sa.Integer, nullable=False, server_default="0"),
        sa.Column("total_conversions", sa.Integer, nullable=False, server_default="0"),
        sa.Column("total_revenue", sa.Float, nullable=False, server_default="0"),
        sa.Column("conversion_rate", sa.Float, nullable=False, server_default="0"),
        sa.Column("average_order_value", sa.Float, nullable=False, server_default="0"),
        sa.Column("last_updated", sa.DateTime, nullable=False),
    )

    op.create_table(
        "product_analytics",
        sa.Column("product_id", sa.String(36), primary_key=True),
        sa.Column("views", sa.Integer, nullable=False, server_default="0"),
        sa.Column("clicks", sa.Integer, nullable=False, server_default="0"),
        sa.Column("conversions", sa.Integer, nullable=False, server_default="0"),
        sa.Column("revenue", sa.Float, nullable=False, server_default="0"),
        sa.Column("last_updated", sa.DateTime, nullable=False),
    )


def downgrade() -> None:
    op.drop_table("product_analytics")
    op.drop_table("link_analytics")
    op.drop_index("idx_conversion_link_ts", table_name="conversion_events")
    op.drop_table("conversion_events")
    op.drop_index("idx_click_type_ts", table_name="click_events")
    op.drop_index("idx_click_attribution", table_name="click_events")
    op.drop_table("click_events")
    op.drop_table("rotation_configs")
    op.drop_index("ix_links_product_active", table_name="affiliate_links")
    op.drop_table("affiliate_links")
