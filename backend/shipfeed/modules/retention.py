"""Age-based retention for stored and cached ship records.

Every tick deletes records whose reporting time is older than the retention
horizon (24h by default). Deletion is unconditional: no grace window, no
soft delete. Records exactly at the threshold are kept.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone

from shipfeed.modules.registry import Registry
from shipfeed.modules.storage import ShipStorage

logger = logging.getLogger(__name__)


class RetentionSweeper:
    def __init__(
        self,
        registry: Registry,
        storage: ShipStorage,
        interval_seconds: float = 3600.0,
        retention_hours: float = 24.0,
        prune_memory: bool = True,
    ):
        self.registry = registry
        self.storage = storage
        self.interval_seconds = interval_seconds
        self.retention = timedelta(hours=retention_hours)
        self.prune_memory = prune_memory
        self._stats = {
            "sweeps": 0,
            "storage_deleted": 0,
            "memory_deleted": 0,
            "sweep_errors": 0,
        }

    @property
    def stats(self) -> dict:
        return dict(self._stats)

    def threshold(self, now: datetime | None = None) -> datetime:
        return (now or datetime.now(timezone.utc)) - self.retention

    async def sweep_once(self, now: datetime | None = None) -> dict:
        """Run one retention pass.

        A storage failure is logged and reported in the result; in-memory
        pruning still runs so the registry stays bounded.
        """
        threshold = self.threshold(now)
        result = {"threshold": threshold, "storage_deleted": 0, "memory_deleted": 0, "error": None}

        try:
            result["storage_deleted"] = await asyncio.to_thread(self.storage.delete_older_than, threshold)
        except Exception as exc:
            self._stats["sweep_errors"] += 1
            result["error"] = str(exc)
            logger.error("Retention sweep of storage failed, will retry next cycle: %s", exc)

        if self.prune_memory:
            result["memory_deleted"] = self.registry.delete_older_than(threshold)

        self._stats["sweeps"] += 1
        self._stats["storage_deleted"] += result["storage_deleted"]
        self._stats["memory_deleted"] += result["memory_deleted"]
        if result["storage_deleted"] or result["memory_deleted"]:
            logger.info(
                "Retention: removed %d stored and %d cached records older than %s",
                result["storage_deleted"], result["memory_deleted"], threshold.isoformat(),
            )
        return result

    async def run(self) -> None:
        """Sweep every ``interval_seconds`` until cancelled."""
        logger.info(
            "Retention sweeper started (interval=%ss, horizon=%s)",
            self.interval_seconds, self.retention,
        )
        while True:
            await asyncio.sleep(self.interval_seconds)
            await self.sweep_once()
