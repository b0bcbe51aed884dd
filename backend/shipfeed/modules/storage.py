"""Durable storage for the ship registry.

The rest of the service only relies on the three-operation ``ShipStorage``
contract (get_all / upsert_batch / delete_older_than). ``SqlShipStorage`` is
the SQLAlchemy realisation over the ``ship_positions`` table; sqlite and
postgresql both get a native ``INSERT ... ON CONFLICT (mmsi) DO UPDATE``.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Protocol

from sqlalchemy import delete, func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from shipfeed.exceptions import StorageError
from shipfeed.models.ship_position import ShipPosition
from shipfeed.modules.query_engine import ShipQuery
from shipfeed.modules.registry import ShipRecord

logger = logging.getLogger(__name__)

# 7 columns per row; older sqlite builds cap a statement at 999 parameters
_UPSERT_CHUNK_SIZE = 100

# Dialects with a native INSERT ... ON CONFLICT DO UPDATE
_UPSERT_INSERTS = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}


class ShipStorage(Protocol):
    def get_all(self) -> list[ShipRecord]:
        ...

    def upsert_batch(self, records: list[ShipRecord]) -> int:
        ...

    def delete_older_than(self, threshold: datetime) -> int:
        ...


def _to_naive_utc(ts: datetime) -> datetime:
    if ts.tzinfo is None:
        return ts
    return ts.astimezone(timezone.utc).replace(tzinfo=None)


def _to_record(row: ShipPosition) -> ShipRecord:
    return ShipRecord(
        mmsi=row.mmsi,
        lat=row.lat,
        lon=row.lon,
        speed=row.speed,
        course=row.course,
        timestamp=row.timestamp_utc.replace(tzinfo=timezone.utc),
    )


def _to_row(record: ShipRecord, now: datetime) -> dict:
    return {
        "mmsi": record.mmsi,
        "lat": record.lat,
        "lon": record.lon,
        "speed": record.speed,
        "course": record.course,
        "timestamp_utc": _to_naive_utc(record.timestamp),
        "updated_at": now,
    }


class SqlShipStorage:
    """ShipStorage backed by a SQLAlchemy session factory."""

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def get_all(self) -> list[ShipRecord]:
        db = self._session_factory()
        try:
            rows = db.execute(select(ShipPosition).order_by(ShipPosition.mmsi)).scalars().all()
            return [_to_record(r) for r in rows]
        except SQLAlchemyError as exc:
            raise StorageError(f"Loading ship positions failed: {exc}", operation="get_all") from exc
        finally:
            db.close()

    def upsert_batch(self, records: list[ShipRecord]) -> int:
        """Insert or overwrite all fields of each record, keyed by MMSI."""
        if not records:
            return 0

        now = datetime.now(timezone.utc).replace(tzinfo=None)
        rows = [_to_row(r, now) for r in records]

        db = self._session_factory()
        try:
            dialect = db.get_bind().dialect.name
            insert = _UPSERT_INSERTS.get(dialect)
            if insert is None:
                raise StorageError(
                    f"Unsupported database dialect for upsert: {dialect}",
                    operation="upsert_batch",
                )
            for start in range(0, len(rows), _UPSERT_CHUNK_SIZE):
                chunk = rows[start:start + _UPSERT_CHUNK_SIZE]
                stmt = insert(ShipPosition).values(chunk)
                stmt = stmt.on_conflict_do_update(
                    index_elements=["mmsi"],
                    set_={
                        "lat": stmt.excluded.lat,
                        "lon": stmt.excluded.lon,
                        "speed": stmt.excluded.speed,
                        "course": stmt.excluded.course,
                        "timestamp_utc": stmt.excluded.timestamp_utc,
                        "updated_at": stmt.excluded.updated_at,
                    },
                )
                db.execute(stmt)
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            raise StorageError(f"Upserting {len(rows)} ship positions failed: {exc}", operation="upsert_batch") from exc
        finally:
            db.close()
        return len(rows)

    def delete_older_than(self, threshold: datetime) -> int:
        """Delete rows whose reporting time precedes ``threshold``."""
        db = self._session_factory()
        try:
            result = db.execute(
                delete(ShipPosition).where(ShipPosition.timestamp_utc < _to_naive_utc(threshold))
            )
            db.commit()
            return result.rowcount or 0
        except SQLAlchemyError as exc:
            db.rollback()
            raise StorageError(f"Retention delete failed: {exc}", operation="delete_older_than") from exc
        finally:
            db.close()

    def query(self, query: ShipQuery) -> tuple[list[ShipRecord], int]:
        """Filtered page straight from the table, ordered by MMSI.

        Same predicates as ``query_engine.filter_records``; returns the page
        and the total filtered count.
        """
        conditions = []
        if query.mmsi is not None:
            conditions.append(ShipPosition.mmsi == query.mmsi)
        if query.has_geo_box:
            conditions.append(ShipPosition.lat.between(query.lat_min, query.lat_max))
            conditions.append(ShipPosition.lon.between(query.lon_min, query.lon_max))
        if query.has_speed_range:
            conditions.append(ShipPosition.speed.between(query.speed_min, query.speed_max))
        if query.has_course_range:
            conditions.append(ShipPosition.course.between(query.course_min, query.course_max))
        if query.has_timestamp_range:
            conditions.append(ShipPosition.timestamp_utc.between(
                _to_naive_utc(query.timestamp_min), _to_naive_utc(query.timestamp_max),
            ))

        db = self._session_factory()
        try:
            total = db.execute(
                select(func.count()).select_from(ShipPosition).where(*conditions)
            ).scalar_one()
            rows = db.execute(
                select(ShipPosition)
                .where(*conditions)
                .order_by(ShipPosition.mmsi)
                .offset(query.offset)
                .limit(query.limit)
            ).scalars().all()
            return [_to_record(r) for r in rows], total
        except SQLAlchemyError as exc:
            raise StorageError(f"Querying ship positions failed: {exc}", operation="query") from exc
        finally:
            db.close()

    def count(self) -> tuple[int, datetime | None]:
        """Row count and newest reporting time."""
        db = self._session_factory()
        try:
            total, newest = db.execute(
                select(func.count(ShipPosition.mmsi), func.max(ShipPosition.timestamp_utc))
            ).one()
        except SQLAlchemyError as exc:
            raise StorageError(f"Counting ship positions failed: {exc}", operation="count") from exc
        finally:
            db.close()
        if newest is not None:
            newest = newest.replace(tzinfo=timezone.utc)
        return total, newest
