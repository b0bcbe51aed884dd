"""Tests for filtering, pagination and the response envelope (query_engine.py)."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from shipfeed.modules.query_engine import (
    DISCONNECTED_MESSAGE,
    ShipQuery,
    filter_records,
    query_ships,
    total_pages,
)
from shipfeed.modules.registry import ConnectionState, ShipRecord

T0 = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def _record(mmsi, lat=0.0, lon=0.0, speed=0.0, course=0.0, timestamp=T0):
    return ShipRecord(mmsi=mmsi, lat=lat, lon=lon, speed=speed, course=course, timestamp=timestamp)


def _connected():
    state = ConnectionState()
    state.mark_connected(T0)
    return state


FLEET = [
    _record("000000005", lat=10.0, lon=10.0, speed=12.0, course=270.0),
    _record("000000003", lat=-5.0, lon=40.0, speed=0.0, course=0.0),
    _record("000000001", lat=0.0, lon=0.0, speed=10.0, course=90.0, timestamp=T0 - timedelta(hours=2)),
    _record("000000004", lat=20.0, lon=-20.0, speed=5.5, course=180.0),
    _record("000000002", lat=50.0, lon=5.0, speed=25.0, course=45.0, timestamp=T0 + timedelta(hours=1)),
]


class TestFilters:
    def test_no_filters_returns_all_sorted_by_mmsi(self):
        result = filter_records(FLEET, ShipQuery())
        assert [r.mmsi for r in result] == [
            "000000001", "000000002", "000000003", "000000004", "000000005",
        ]

    def test_mmsi_exact_match(self):
        assert [r.mmsi for r in filter_records(FLEET, ShipQuery(mmsi="000000004"))] == ["000000004"]

    def test_speed_range_inclusive(self):
        """speed 0..10 keeps the boundary values 0 and 10 and drops 12 and 25."""
        result = filter_records(FLEET, ShipQuery(speed_min=0, speed_max=10))
        assert [r.speed for r in result] == [10.0, 0.0, 5.5]

    def test_speed_range_needs_both_bounds(self):
        assert len(filter_records(FLEET, ShipQuery(speed_min=20))) == 5

    def test_geo_box(self):
        q = ShipQuery(lat_min=-10, lat_max=15, lon_min=-5, lon_max=45)
        assert [r.mmsi for r in filter_records(FLEET, q)] == ["000000001", "000000003", "000000005"]

    def test_partial_geo_box_ignored(self):
        q = ShipQuery(lat_min=-10, lat_max=15, lon_min=-5)
        assert len(filter_records(FLEET, q)) == 5

    def test_course_range(self):
        q = ShipQuery(course_min=90, course_max=180)
        assert [r.mmsi for r in filter_records(FLEET, q)] == ["000000001", "000000004"]

    def test_timestamp_range(self):
        q = ShipQuery(timestamp_min=T0, timestamp_max=T0 + timedelta(hours=1))
        assert [r.mmsi for r in filter_records(FLEET, q)] == [
            "000000002", "000000003", "000000004", "000000005",
        ]

    def test_timestamp_strings_parsed(self):
        q = ShipQuery(timestamp_min="2024-01-01T10:00:00Z", timestamp_max="2024-01-01T10:00:00Z")
        assert [r.mmsi for r in filter_records(FLEET, q)] == ["000000001"]

    def test_filters_compose_with_and(self):
        q = ShipQuery(speed_min=0, speed_max=10, lat_min=-10, lat_max=15, lon_min=-5, lon_max=45)
        assert [r.mmsi for r in filter_records(FLEET, q)] == ["000000001", "000000003"]

    def test_no_match_is_empty_not_error(self):
        assert filter_records(FLEET, ShipQuery(mmsi="999999999")) == []


class TestQueryValidation:
    def test_unparseable_timestamp_rejected(self):
        with pytest.raises(ValidationError):
            ShipQuery(timestamp_min="not-a-date")

    def test_page_must_be_positive(self):
        with pytest.raises(ValidationError):
            ShipQuery(page=0)

    def test_limit_must_be_positive(self):
        with pytest.raises(ValidationError):
            ShipQuery(limit=0)

    def test_offset(self):
        assert ShipQuery(page=3, limit=10).offset == 20


class TestPagination:
    @pytest.mark.parametrize("limit", [1, 2, 3, 5, 7])
    def test_pages_concatenate_to_full_result(self, limit):
        full = query_ships(FLEET, ShipQuery(limit=100), _connected())["data"]
        pages = []
        body = query_ships(FLEET, ShipQuery(page=1, limit=limit), _connected())
        for page in range(1, body["totalPages"] + 1):
            pages.extend(query_ships(FLEET, ShipQuery(page=page, limit=limit), _connected())["data"])
        assert pages == full
        assert body["totalPages"] == total_pages(5, limit)

    def test_page_past_end_is_empty(self):
        body = query_ships(FLEET, ShipQuery(page=4, limit=2), _connected())
        assert body["data"] == []
        assert body["totalResults"] == 5
        assert body["totalPages"] == 3
        assert body["currentPage"] == 4

    def test_total_pages(self):
        assert total_pages(0, 10) == 0
        assert total_pages(10, 10) == 1
        assert total_pages(11, 10) == 2

    def test_repeated_query_is_identical(self):
        q = ShipQuery(speed_min=0, speed_max=20, limit=2)
        assert query_ships(FLEET, q, _connected()) == query_ships(FLEET, q, _connected())


class TestEnvelope:
    def test_connected_envelope(self):
        body = query_ships(FLEET, ShipQuery(limit=2), _connected())
        assert body["isConnected"] is True
        assert body["lastConnectionTimestamp"] == T0.isoformat()
        assert "message" not in body
        assert body["data"][0] == {
            "mmsi": "000000001",
            "lat": 0.0,
            "lon": 0.0,
            "speed": 10.0,
            "course": 90.0,
            "timestamp": (T0 - timedelta(hours=2)).isoformat(),
        }

    def test_disconnected_still_serves_data(self):
        state = _connected()
        state.mark_disconnected()
        body = query_ships(FLEET, ShipQuery(), state)
        assert body["isConnected"] is False
        assert body["lastConnectionTimestamp"] == T0.isoformat()
        assert body["message"] == DISCONNECTED_MESSAGE
        assert len(body["data"]) == 5

    def test_never_connected(self):
        body = query_ships([], ShipQuery(), ConnectionState())
        assert body["lastConnectionTimestamp"] is None
        assert body["totalPages"] == 0
        assert body["data"] == []
