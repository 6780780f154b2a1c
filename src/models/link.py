"""Link rotation, tracking and reporting schemas."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class RotationStrategy(str, Enum):
    ROUND_ROBIN = "round_robin"
    WEIGHTED = "weighted"
    PERFORMANCE_BASED = "performance_based"
    RANDOM = "random"


class ConversionStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    REJECTED = "REJECTED"


class EventType(str, Enum):
    CLICK = "click"
    VIEW = "view"


DEVICE_CLASSES = ("mobile", "tablet", "desktop")


@dataclass(frozen=True)
class LinkSnapshot:
    """An active link joined with its analytics counters at read time."""
    id: str
    product_id: str
    platform: str
    original_url: str
    shortened_url: str
    commission: float = 0.0
    priority: int = 0
    is_active: bool = True
    total_clicks: int = 0
    total_conversions: int = 0
    total_revenue: float = 0.0
    conversion_rate: float = 0.0
    average_order_value: float = 0.0

    def analytics_dict(self) -> dict:
        return {
            "totalClicks": self.total_clicks,
            "totalConversions": self.total_conversions,
            "totalRevenue": round(self.total_revenue, 2),
            "conversionRate": round(self.conversion_rate, 4),
            "averageOrderValue": round(self.average_order_value, 2),
        }


@dataclass(frozen=True)
class RotationSettings:
    """What the selector needs from a product's rotation config."""
    strategy: RotationStrategy = RotationStrategy.PERFORMANCE_BASED
    weights: dict[str, float] = field(default_factory=dict)
    traffic_split: float = 1.0
    device_targeting: dict[str, list[str]] = field(default_factory=dict)  # link_id -> devices


class _CamelModel(BaseModel):
    """Accepts the camelCase keys the admin UI sends as well as snake_case."""
    model_config = ConfigDict(populate_by_name=True)


class RotationConfigRequest(_CamelModel):
    product_id: str = Field(..., alias="productId", min_length=1, max_length=36)
    strategy: RotationStrategy
    weights: Optional[dict[str, float]] = None
    test_duration: int = Field(30, alias="testDuration", ge=1, le=365)  # days
    traffic_split: float = Field(1.0, alias="trafficSplit", ge=0.1, le=1.0)
    device_targeting: Optional[dict[str, list[str]]] = Field(None, alias="deviceTargeting")

    @field_validator("weights")
    @classmethod
    def _weights_in_range(cls, v: Optional[dict[str, float]]) -> Optional[dict[str, float]]:
        if v is None:
            return v
        for link_id, weight in v.items():
            if not 0.0 <= weight <= 1.0:
                raise ValueError(f"weight for {link_id} must be between 0 and 1")
        return v

    @field_validator("device_targeting")
    @classmethod
    def _known_devices(cls, v: Optional[dict[str, list[str]]]) -> Optional[dict[str, list[str]]]:
        if v is None:
            return v
        for link_id, devices in v.items():
            unknown = sorted(set(devices) - set(DEVICE_CLASSES))
            if unknown:
                raise ValueError(f"unknown devices for {link_id}: {', '.join(unknown)}")
        return v


class ConversionSignal(_CamelModel):
    """A merchant conversion as posted by a network webhook or import job."""
    link_id: Optional[str] = Field(None, alias="linkId", max_length=36)
    product_id: Optional[str] = Field(None, alias="productId", max_length=36)
    click_id: Optional[str] = Field(None, alias="clickId", max_length=36)
    session_id: Optional[str] = Field(None, alias="sessionId", max_length=64)
    order_value: float = Field(..., alias="orderValue", gt=0)
    commission: Optional[float] = Field(None, ge=0)
    currency: str = Field("USD", min_length=3, max_length=3)
    status: ConversionStatus = ConversionStatus.PENDING
    external_order_id: Optional[str] = Field(None, alias="externalOrderId", max_length=100)
    occurred_at: Optional[datetime] = Field(None, alias="occurredAt")

    @model_validator(mode="after")
    def _needs_a_target(self) -> "ConversionSignal":
        if not (self.link_id or self.product_id or self.click_id):
            raise ValueError("one of linkId, productId or clickId is required")
        self.currency = self.currency.upper()
        return self


class ConversionStatusUpdate(BaseModel):
    status: ConversionStatus


class ViewEventRequest(_CamelModel):
    product_id: str = Field(..., alias="productId", min_length=1, max_length=36)
    link_id: Optional[str] = Field(None, alias="linkId", max_length=36)
    session_id: Optional[str] = Field(None, alias="sessionId", max_length=64)


class DateRange(BaseModel):
    start: datetime
    end: datetime

    @model_validator(mode="after")
    def _ordered(self) -> "DateRange":
        if self.start > self.end:
            raise ValueError("start must be before or equal to end")
        return self


class FunnelRequest(_CamelModel):
    date_range: DateRange = Field(..., alias="dateRange")
    segment: str = "all"


class ReportType(str, Enum):
    PERFORMANCE = "performance"
    PRODUCTS = "products"
    TRAFFIC = "traffic"
    CONVERSION = "conversion"
    CUSTOM = "custom"


class GroupBy(str, Enum):
    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    PRODUCT = "product"
    SOURCE = "source"


class ReportFormat(str, Enum):
    JSON = "json"
    CSV = "csv"


REPORT_METRICS = ("clicks", "views", "conversions", "revenue", "conversionRate", "averageOrderValue")


class ReportFilters(_CamelModel):
    product_ids: Optional[list[str]] = Field(None, alias="productIds")
    link_ids: Optional[list[str]] = Field(None, alias="linkIds")
    traffic_sources: Optional[list[str]] = Field(None, alias="trafficSources")
    devices: Optional[list[str]] = None


class ReportRequest(_CamelModel):
    report_type: ReportType = Field(..., alias="reportType")
    date_range: DateRange = Field(..., alias="dateRange")
    metrics: Optional[list[str]] = None
    filters: Optional[ReportFilters] = None
    group_by: Optional[GroupBy] = Field(None, alias="groupBy")
    format: ReportFormat = ReportFormat.JSON

    @field_validator("metrics")
    @classmethod
    def _known_metrics(cls, v: Optional[list[str]]) -> Optional[list[str]]:
        if v is None:
            return v
        unknown = [m for m in v if m not in REPORT_METRICS]
        if unknown:
            raise ValueError(f"unknown metrics: {', '.join(unknown)}")
        return v


class HealthCheckRequest(_CamelModel):
    link_ids: Optional[list[str]] = Field(None, alias="linkIds")
    product_id: Optional[str] = Field(None, alias="productId")
    platform: Optional[str] = Field(None, alias="platformId", max_length=50)
    batch_size: int = Field(50, alias="batchSize", ge=1, le=100)
