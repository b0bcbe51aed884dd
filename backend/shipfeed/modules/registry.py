"""In-memory latest-state registry for observed vessels.

One ``ShipRecord`` per MMSI. The registry is written by the stream client and
read concurrently by the flusher, the retention sweeper and API requests
(which FastAPI runs on a threadpool), so every operation takes a single
``threading.Lock``. Records are frozen dataclasses: a reader holding a record
can never observe a half-applied update.

Updates are merge-updates: fields missing from a partial report keep their
previously stored value. Incoming timestamps are not compared against the
stored one, so a late report for an older time still overwrites.

The registry also tracks a *pending* set of MMSIs changed since the last
successful flush, so that persistence can be incremental.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Iterable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ShipRecord:
    """Latest known state of one vessel."""
    mmsi: str
    lat: float
    lon: float
    speed: float
    course: float
    timestamp: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "mmsi": self.mmsi,
            "lat": self.lat,
            "lon": self.lon,
            "speed": self.speed,
            "course": self.course,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class ShipUpdate:
    """A (possibly partial) position report. ``None`` means "not reported"."""
    mmsi: str
    lat: float | None = None
    lon: float | None = None
    speed: float | None = None
    course: float | None = None
    timestamp: datetime | None = None

    @classmethod
    def from_record(cls, record: ShipRecord) -> ShipUpdate:
        return cls(
            mmsi=record.mmsi,
            lat=record.lat,
            lon=record.lon,
            speed=record.speed,
            course=record.course,
            timestamp=record.timestamp,
        )

    def changes(self) -> dict[str, Any]:
        """Fields actually carried by this update."""
        return {
            name: value
            for name, value in (
                ("lat", self.lat),
                ("lon", self.lon),
                ("speed", self.speed),
                ("course", self.course),
                ("timestamp", self.timestamp),
            )
            if value is not None
        }


def _merge(existing: ShipRecord | None, update: ShipUpdate) -> ShipRecord:
    if existing is not None:
        return replace(existing, **update.changes())

    missing = [
        name for name in ("lat", "lon", "timestamp")
        if getattr(update, name) is None
    ]
    if missing:
        raise ValueError(
            f"First report for MMSI {update.mmsi} lacks {', '.join(missing)}"
        )
    return ShipRecord(
        mmsi=update.mmsi,
        lat=update.lat,
        lon=update.lon,
        speed=update.speed if update.speed is not None else 0.0,
        course=update.course if update.course is not None else 0.0,
        timestamp=update.timestamp,
    )


class ConnectionState:
    """Upstream connection status shared between the stream client and readers.

    ``last_connected_at`` only moves on a successful connect; a disconnect
    clears ``is_connected`` and leaves the timestamp alone.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._is_connected = False
        self._last_connected_at: datetime | None = None

    @property
    def is_connected(self) -> bool:
        return self._is_connected

    @property
    def last_connected_at(self) -> datetime | None:
        return self._last_connected_at

    def mark_connected(self, now: datetime | None = None) -> None:
        with self._lock:
            self._is_connected = True
            self._last_connected_at = now or datetime.now(timezone.utc)

    def mark_disconnected(self) -> None:
        with self._lock:
            self._is_connected = False

    def snapshot(self) -> tuple[bool, datetime | None]:
        """Consistent (is_connected, last_connected_at) pair."""
        with self._lock:
            return self._is_connected, self._last_connected_at


class Registry:
    """Thread-safe mapping of MMSI -> latest ShipRecord."""

    def __init__(self) -> None:
        self._records: dict[str, ShipRecord] = {}
        self._pending: set[str] = set()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def upsert(self, update: ShipUpdate | ShipRecord) -> ShipRecord:
        """Merge an update into the stored record and mark it pending.

        Raises ValueError when the first report for an MMSI has no position
        or timestamp.
        """
        if isinstance(update, ShipRecord):
            update = ShipUpdate.from_record(update)
        with self._lock:
            merged = _merge(self._records.get(update.mmsi), update)
            self._records[update.mmsi] = merged
            self._pending.add(update.mmsi)
        return merged

    def get(self, mmsi: str) -> ShipRecord | None:
        with self._lock:
            return self._records.get(mmsi)

    def snapshot(self) -> list[ShipRecord]:
        """Point-in-time copy of every record, in insertion order."""
        with self._lock:
            return list(self._records.values())

    def delete_older_than(self, threshold: datetime) -> int:
        """Remove records with ``timestamp < threshold``. Returns count removed."""
        with self._lock:
            stale = [
                mmsi for mmsi, record in self._records.items()
                if record.timestamp < threshold
            ]
            for mmsi in stale:
                del self._records[mmsi]
                self._pending.discard(mmsi)
        return len(stale)

    def drain_pending(self) -> list[ShipRecord]:
        """Take and clear the pending set, returning the current records for it.

        An upsert landing after the drain re-marks its MMSI, so the change is
        picked up by the next drain.
        """
        with self._lock:
            records = [
                self._records[mmsi] for mmsi in self._pending
                if mmsi in self._records
            ]
            self._pending = set()
        return records

    def restore_pending(self, mmsis: Iterable[str]) -> None:
        """Re-mark MMSIs as pending after a failed flush."""
        with self._lock:
            self._pending.update(m for m in mmsis if m in self._records)

    def hydrate(self, records: Iterable[ShipRecord]) -> int:
        """Load records restored from storage.

        Hydrated records are already durable, so they are not marked pending.
        Records already present (live data that beat the restore) win.
        """
        loaded = 0
        with self._lock:
            for record in records:
                if record.mmsi in self._records:
                    continue
                self._records[record.mmsi] = record
                loaded += 1
        logger.info("Registry hydrated with %d records from storage", loaded)
        return loaded
