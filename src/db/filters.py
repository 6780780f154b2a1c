"""Typed query filters for the event tables.

Each filter builds SQLAlchemy clauses against its own table only, so API
input never reaches SQL as raw strings.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import ColumnElement

from src.db.affiliate_tables import ClickEventRow, ConversionEventRow
from src.models.link import ConversionStatus, EventType


@dataclass(frozen=True)
class ClickFilter:
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    product_ids: tuple[str, ...] = ()
    link_ids: tuple[str, ...] = ()
    event_type: Optional[EventType] = None
    session_id: Optional[str] = None

    def clauses(self) -> list[ColumnElement[bool]]:
        out: list[ColumnElement[bool]] = []
        if self.start is not None:
            out.append(ClickEventRow.timestamp >= self.start)
        if self.end is not None:
            out.append(ClickEventRow.timestamp <= self.end)
        if self.product_ids:
            out.append(ClickEventRow.product_id.in_(self.product_ids))
        if self.link_ids:
            out.append(ClickEventRow.link_id.in_(self.link_ids))
        if self.event_type is not None:
            out.append(ClickEventRow.event_type == self.event_type.value)
        if self.session_id is not None:
            out.append(ClickEventRow.session_id == self.session_id)
        return out


@dataclass(frozen=True)
class ConversionFilter:
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    product_ids: tuple[str, ...] = ()
    link_ids: tuple[str, ...] = ()
    statuses: tuple[ConversionStatus, ...] = ()

    def clauses(self) -> list[ColumnElement[bool]]:
        out: list[ColumnElement[bool]] = []
        if self.start is not None:
            out.append(ConversionEventRow.timestamp >= self.start)
        if self.end is not None:
            out.append(ConversionEventRow.timestamp <= self.end)
        if self.product_ids:
            out.append(ConversionEventRow.product_id.in_(self.product_ids))
        if self.link_ids:
            out.append(ConversionEventRow.link_id.in_(self.link_ids))
        if self.statuses:
            out.append(ConversionEventRow.status.in_([s.value for s in self.statuses]))
        return out
