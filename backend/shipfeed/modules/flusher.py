"""Periodic persistence of the registry to durable storage.

Each cycle drains the registry's pending set (MMSIs changed since the last
successful flush) and writes those records in one batched upsert. Storage
I/O runs in a worker thread so the event loop, and with it message
handling, never waits on the database. A failed cycle puts the drained MMSIs
back into the pending set for the next tick; it never stops the loop.
"""
from __future__ import annotations

import asyncio
import logging
import time

from shipfeed.modules.registry import Registry
from shipfeed.modules.storage import ShipStorage

logger = logging.getLogger(__name__)


class Flusher:
    def __init__(self, registry: Registry, storage: ShipStorage, interval_seconds: float = 300.0):
        self.registry = registry
        self.storage = storage
        self.interval_seconds = interval_seconds
        self._stats = {
            "flushes": 0,
            "records_flushed": 0,
            "flush_errors": 0,
            "last_flush_at": None,
        }

    @property
    def stats(self) -> dict:
        return dict(self._stats)

    async def flush_once(self) -> int:
        """Write pending records to storage. Returns the number written (0 on failure)."""
        records = self.registry.drain_pending()
        if not records:
            logger.debug("Flush: nothing pending")
            return 0

        try:
            written = await asyncio.to_thread(self.storage.upsert_batch, records)
        except Exception as exc:
            self.registry.restore_pending(r.mmsi for r in records)
            self._stats["flush_errors"] += 1
            logger.error("Flush of %d records failed, will retry next cycle: %s", len(records), exc)
            return 0
        except BaseException:
            # cancelled mid-write: the records may not have landed
            self.registry.restore_pending(r.mmsi for r in records)
            logger.warning("Flush of %d records interrupted, kept pending", len(records))
            raise

        self._stats["flushes"] += 1
        self._stats["records_flushed"] += written
        self._stats["last_flush_at"] = time.time()
        logger.info("Flushed %d ship records to storage", written)
        return written

    async def run(self) -> None:
        """Flush every ``interval_seconds`` until cancelled."""
        logger.info("Flusher started (interval=%ss)", self.interval_seconds)
        while True:
            await asyncio.sleep(self.interval_seconds)
            await self.flush_once()
