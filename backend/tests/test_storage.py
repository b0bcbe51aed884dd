"""Tests for SqlShipStorage against in-memory SQLite."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from shipfeed.exceptions import StorageError
from shipfeed.modules.query_engine import ShipQuery
from shipfeed.modules.registry import ShipRecord
from shipfeed.modules.storage import SqlShipStorage

T0 = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def _record(mmsi="123456789", lat=10.0, lon=20.0, speed=5.0, course=90.0, timestamp=T0):
    return ShipRecord(mmsi=mmsi, lat=lat, lon=lon, speed=speed, course=course, timestamp=timestamp)


def _broken_factory():
    session = MagicMock()
    session.execute.side_effect = OperationalError("SELECT 1", {}, Exception("database is locked"))
    return lambda: session


class TestUpsertAndLoad:
    def test_empty_table(self, storage):
        assert storage.get_all() == []

    def test_roundtrip_preserves_utc_timestamp(self, storage):
        storage.upsert_batch([_record()])
        [loaded] = storage.get_all()
        assert loaded == _record()
        assert loaded.timestamp.tzinfo == timezone.utc

    def test_upsert_overwrites_all_fields(self, storage):
        storage.upsert_batch([_record()])
        newer = _record(lat=11.0, lon=21.0, speed=0.0, course=0.0, timestamp=T0 + timedelta(minutes=5))
        storage.upsert_batch([newer])
        assert storage.get_all() == [newer]

    def test_returns_count_written(self, storage):
        written = storage.upsert_batch([_record("111111111"), _record("222222222")])
        assert written == 2
        assert storage.upsert_batch([]) == 0

    def test_large_batch_is_chunked(self, storage):
        records = [_record(f"{i:09d}") for i in range(1200)]
        assert storage.upsert_batch(records) == 1200
        assert storage.count()[0] == 1200

    def test_get_all_ordered_by_mmsi(self, storage):
        storage.upsert_batch([_record("300000000"), _record("100000000"), _record("200000000")])
        assert [r.mmsi for r in storage.get_all()] == ["100000000", "200000000", "300000000"]


class TestDeleteOlderThan:
    def test_strictly_older_deleted(self, storage):
        storage.upsert_batch([
            _record("000000001", timestamp=T0 - timedelta(seconds=1)),
            _record("000000002", timestamp=T0),
            _record("000000003", timestamp=T0 + timedelta(hours=1)),
        ])
        assert storage.delete_older_than(T0) == 1
        assert [r.mmsi for r in storage.get_all()] == ["000000002", "000000003"]

    def test_nothing_to_delete(self, storage):
        assert storage.delete_older_than(T0) == 0


class TestQuery:
    def test_filtered_page_and_total(self, storage):
        storage.upsert_batch([_record(f"{i:09d}", speed=float(i)) for i in range(1, 11)])
        records, total = storage.query(ShipQuery(speed_min=3, speed_max=8, page=2, limit=4))
        assert total == 6
        assert [r.mmsi for r in records] == ["000000007", "000000008"]

    def test_geo_and_timestamp_filters(self, storage):
        storage.upsert_batch([
            _record("000000001", lat=0.0, lon=0.0),
            _record("000000002", lat=50.0, lon=0.0),
            _record("000000003", lat=1.0, lon=1.0, timestamp=T0 - timedelta(days=1)),
        ])
        q = ShipQuery(lat_min=-5, lat_max=5, lon_min=-5, lon_max=5, timestamp_min=T0, timestamp_max=T0)
        records, total = storage.query(q)
        assert total == 1
        assert records[0].mmsi == "000000001"

    def test_count_reports_newest(self, storage):
        storage.upsert_batch([_record("000000001"), _record("000000002", timestamp=T0 + timedelta(hours=3))])
        total, newest = storage.count()
        assert total == 2
        assert newest == T0 + timedelta(hours=3)


class TestErrors:
    def test_get_all_wraps_database_errors(self):
        with pytest.raises(StorageError) as exc_info:
            SqlShipStorage(_broken_factory()).get_all()
        assert exc_info.value.operation == "get_all"

    def test_delete_wraps_database_errors(self):
        with pytest.raises(StorageError):
            SqlShipStorage(_broken_factory()).delete_older_than(T0)

    def test_query_wraps_database_errors(self):
        with pytest.raises(StorageError):
            SqlShipStorage(_broken_factory()).query(ShipQuery())

    def test_upsert_rejects_unsupported_dialect(self):
        session = MagicMock()
        session.get_bind.return_value.dialect.name = "mysql"
        with pytest.raises(StorageError) as exc_info:
            SqlShipStorage(lambda: session).upsert_batch([_record()])
        assert exc_info.value.operation == "upsert_batch"
        assert "mysql" in str(exc_info.value)
        session.execute.assert_not_called()
        session.close.assert_called_once()
