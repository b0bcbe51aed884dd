"""ShipFeedService — owns the registry, connection state and background tasks.

One instance per process, created in the FastAPI lifespan (or by the CLI)
and handed to the API layer through ``app.state.service``.

Lifecycle:
    service = ShipFeedService.from_settings()
    await service.start()     # hydrate, then stream + flush + sweep tasks
    ...
    await service.stop()      # stop stream, cancel loops, final flush
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any

from shipfeed.config import settings as default_settings
from shipfeed.modules.aisstream_client import StreamClient
from shipfeed.modules.flusher import Flusher
from shipfeed.modules.registry import ConnectionState, Registry
from shipfeed.modules.retention import RetentionSweeper
from shipfeed.modules.storage import ShipStorage, SqlShipStorage

logger = logging.getLogger(__name__)

# Grace period for the stream task to exit after stop() before it is cancelled
_STOP_TIMEOUT_SECONDS = 5.0


class ShipFeedService:
    def __init__(
        self,
        storage: ShipStorage,
        api_key: str | None,
        bounding_boxes: list[list[list[float]]],
        ws_url: str = "wss://stream.aisstream.io/v0/stream",
        reconnect_delay: float = 1.0,
        max_reconnect_delay: float = 60.0,
        flush_interval: float = 300.0,
        retention_interval: float = 3600.0,
        retention_hours: float = 24.0,
        prune_memory: bool = True,
        hydrate_on_startup: bool = True,
        stream_enabled: bool = True,
        connect: Any = None,
    ):
        self.registry = Registry()
        self.state = ConnectionState()
        self.storage = storage
        self.hydrate_on_startup = hydrate_on_startup
        self.stream_enabled = stream_enabled and bool(api_key)

        self.stream_client = StreamClient(
            self.registry,
            self.state,
            api_key=api_key or "",
            bounding_boxes=bounding_boxes,
            ws_url=ws_url,
            reconnect_delay=reconnect_delay,
            max_reconnect_delay=max_reconnect_delay,
            connect=connect,
        )
        self.flusher = Flusher(self.registry, storage, interval_seconds=flush_interval)
        self.sweeper = RetentionSweeper(
            self.registry,
            storage,
            interval_seconds=retention_interval,
            retention_hours=retention_hours,
            prune_memory=prune_memory,
        )
        self._tasks: dict[str, asyncio.Task] = {}
        self._started = False

    @classmethod
    def from_settings(cls, settings=None, storage: ShipStorage | None = None, **overrides) -> ShipFeedService:
        settings = settings or default_settings
        if storage is None:
            from shipfeed.database import SessionLocal
            storage = SqlShipStorage(SessionLocal)
        kwargs = dict(
            storage=storage,
            api_key=settings.AISSTREAM_API_KEY,
            bounding_boxes=settings.AISSTREAM_BOUNDING_BOXES,
            ws_url=settings.AISSTREAM_WS_URL,
            reconnect_delay=settings.AISSTREAM_RECONNECT_DELAY,
            max_reconnect_delay=settings.AISSTREAM_MAX_RECONNECT_DELAY,
            flush_interval=settings.FLUSH_INTERVAL_SECONDS,
            retention_interval=settings.RETENTION_INTERVAL_SECONDS,
            retention_hours=settings.RETENTION_HOURS,
            prune_memory=settings.RETENTION_PRUNE_MEMORY,
            hydrate_on_startup=settings.HYDRATE_ON_STARTUP,
            stream_enabled=settings.STREAM_ENABLED,
        )
        kwargs.update(overrides)
        return cls(**kwargs)

    @property
    def bounding_boxes(self) -> list[list[list[float]]]:
        return self.stream_client.bounding_boxes

    @property
    def running(self) -> bool:
        return self._started

    async def hydrate(self) -> int:
        """Restore the registry from storage. Failures are logged, not raised."""
        try:
            records = await asyncio.to_thread(self.storage.get_all)
        except Exception as exc:
            logger.error("Could not hydrate registry from storage: %s", exc)
            return 0
        return self.registry.hydrate(records)

    async def start(self) -> None:
        if self._started:
            return
        if self.hydrate_on_startup:
            await self.hydrate()

        if self.stream_enabled:
            self._tasks["stream"] = asyncio.create_task(self.stream_client.run(), name="ais-stream")
        else:
            logger.warning("AIS streaming disabled (no AISSTREAM_API_KEY or STREAM_ENABLED=false) — serving stored data only")
        self._tasks["flush"] = asyncio.create_task(self.flusher.run(), name="flusher")
        self._tasks["sweep"] = asyncio.create_task(self.sweeper.run(), name="retention")
        self._started = True
        logger.info("ShipFeed service started")

    async def update_bounding_boxes(self, bounding_boxes: list[list[list[float]]]) -> None:
        await self.stream_client.update_bounding_boxes(bounding_boxes)

    async def stop(self) -> None:
        """Stop streaming and periodic loops, then flush once more."""
        if not self._started:
            return
        self._started = False

        await self.stream_client.stop()
        stream_task = self._tasks.pop("stream", None)
        if stream_task is not None:
            try:
                await asyncio.wait_for(stream_task, timeout=_STOP_TIMEOUT_SECONDS)
            except asyncio.TimeoutError:
                logger.warning("Stream task did not stop in time; cancelled")
            except asyncio.CancelledError:
                pass
            except Exception as exc:
                logger.error("Stream task ended with an error: %s", exc)

        for task in self._tasks.values():
            task.cancel()
        await asyncio.gather(*self._tasks.values(), return_exceptions=True)
        self._tasks.clear()

        written = await self.flusher.flush_once()
        logger.info("ShipFeed service stopped (final flush wrote %d records)", written)

    def status(self) -> dict[str, Any]:
        is_connected, last_connected_at = self.state.snapshot()
        return {
            "running": self._started,
            "stream_enabled": self.stream_enabled,
            "is_connected": is_connected,
            "last_connected_at": last_connected_at.isoformat() if last_connected_at else None,
            "bounding_boxes": self.bounding_boxes,
            "registry": {
                "ships": len(self.registry),
                "pending": self.registry.pending_count,
            },
            "stream": self.stream_client.stats,
            "flush": self.flusher.stats,
            "retention": self.sweeper.stats,
        }
