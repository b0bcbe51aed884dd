"""Filtering and pagination over ship records.

Filters are optional and AND-composed:
  - mmsi: exact match
  - geographic box: lat in [lat_min, lat_max] AND lon in [lon_min, lon_max],
    only when all four bounds are supplied
  - speed, course, timestamp ranges: only when both bounds are supplied

All bounds are inclusive. Results are ordered by MMSI so that pages are
stable across calls against the same registry state. Pages past the end
yield an empty slice rather than an error.
"""
from __future__ import annotations

import math
from datetime import datetime
from typing import Any, Iterable, Optional

from pydantic import BaseModel, Field, field_validator

from shipfeed.modules.normalize import parse_timestamp_flexible
from shipfeed.modules.registry import ConnectionState, ShipRecord

DEFAULT_LIMIT = 100

DISCONNECTED_MESSAGE = (
    "Upstream AIS feed is currently disconnected; "
    "data reflects the last successful connection time."
)


class ShipQuery(BaseModel):
    mmsi: Optional[str] = None
    lat_min: Optional[float] = None
    lat_max: Optional[float] = None
    lon_min: Optional[float] = None
    lon_max: Optional[float] = None
    speed_min: Optional[float] = None
    speed_max: Optional[float] = None
    course_min: Optional[float] = None
    course_max: Optional[float] = None
    timestamp_min: Optional[datetime] = None
    timestamp_max: Optional[datetime] = None
    page: int = Field(1, ge=1)
    limit: int = Field(DEFAULT_LIMIT, ge=1)

    @field_validator("timestamp_min", "timestamp_max", mode="before")
    @classmethod
    def _parse_timestamp(cls, v):
        if v is None or v == "":
            return None
        parsed = parse_timestamp_flexible(v)
        if parsed is None:
            raise ValueError(f"Unparseable timestamp: {v!r}")
        return parsed

    @property
    def has_geo_box(self) -> bool:
        return None not in (self.lat_min, self.lat_max, self.lon_min, self.lon_max)

    @property
    def has_speed_range(self) -> bool:
        return self.speed_min is not None and self.speed_max is not None

    @property
    def has_course_range(self) -> bool:
        return self.course_min is not None and self.course_max is not None

    @property
    def has_timestamp_range(self) -> bool:
        return self.timestamp_min is not None and self.timestamp_max is not None

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit


def matches(record: ShipRecord, query: ShipQuery) -> bool:
    if query.mmsi is not None and record.mmsi != query.mmsi:
        return False
    if query.has_geo_box:
        if not (query.lat_min <= record.lat <= query.lat_max):
            return False
        if not (query.lon_min <= record.lon <= query.lon_max):
            return False
    if query.has_speed_range and not (query.speed_min <= record.speed <= query.speed_max):
        return False
    if query.has_course_range and not (query.course_min <= record.course <= query.course_max):
        return False
    if query.has_timestamp_range and not (
        query.timestamp_min <= record.timestamp <= query.timestamp_max
    ):
        return False
    return True


def filter_records(records: Iterable[ShipRecord], query: ShipQuery) -> list[ShipRecord]:
    """Apply every supplied filter and sort by MMSI."""
    result = [r for r in records if matches(r, query)]
    result.sort(key=lambda r: r.mmsi)
    return result


def total_pages(total: int, limit: int) -> int:
    return math.ceil(total / limit) if limit > 0 else 0


def build_envelope(
    page_records: list[ShipRecord],
    total: int,
    query: ShipQuery,
    state: ConnectionState,
) -> dict[str, Any]:
    """Compose the response body around one page of results."""
    is_connected, last_connected_at = state.snapshot()
    body: dict[str, Any] = {
        "data": [r.to_dict() for r in page_records],
        "isConnected": is_connected,
        "lastConnectionTimestamp": last_connected_at.isoformat() if last_connected_at else None,
        "totalResults": total,
        "currentPage": query.page,
        "totalPages": total_pages(total, query.limit),
    }
    if not is_connected:
        body["message"] = DISCONNECTED_MESSAGE
    return body


def query_ships(
    records: Iterable[ShipRecord],
    query: ShipQuery,
    state: ConnectionState,
) -> dict[str, Any]:
    """Filter, sort and paginate a registry snapshot into a response envelope."""
    filtered = filter_records(records, query)
    page = filtered[query.offset:query.offset + query.limit]
    return build_envelope(page, len(filtered), query, state)
