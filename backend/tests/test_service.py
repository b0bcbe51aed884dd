"""Tests for ShipFeedService lifecycle: hydrate, background tasks, shutdown flush."""
from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import MagicMock

from shipfeed.exceptions import StorageError
from shipfeed.modules.registry import ShipRecord
from shipfeed.modules.service import ShipFeedService

T0 = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
BOXES = [[[-38.88, 31.03], [-20.88, 42.74]]]


def _record(mmsi="123456789", lat=10.0):
    return ShipRecord(mmsi=mmsi, lat=lat, lon=20.0, speed=5.0, course=90.0, timestamp=T0)


class _HeldSocket:
    def __init__(self):
        self.sent = []
        self.closed = asyncio.Event()

    async def send(self, data):
        self.sent.append(data)

    async def close(self):
        self.closed.set()

    def __aiter__(self):
        return self._iter()

    async def _iter(self):
        await self.closed.wait()
        return
        yield


def test_start_hydrates_registry(service, storage):
    storage.upsert_batch([_record("111111111"), _record("222222222")])

    async def scenario():
        await service.start()
        try:
            return len(service.registry), service.registry.pending_count, service.running
        finally:
            await service.stop()

    count, pending, running = asyncio.run(scenario())
    assert count == 2
    assert pending == 0
    assert running is True
    assert service.running is False


def test_hydrate_can_be_disabled(storage):
    storage.upsert_batch([_record()])
    service = ShipFeedService(storage=storage, api_key=None, bounding_boxes=BOXES, hydrate_on_startup=False)

    async def scenario():
        await service.start()
        await service.stop()

    asyncio.run(scenario())
    assert len(service.registry) == 0


def test_hydrate_failure_is_not_fatal():
    storage = MagicMock()
    storage.get_all.side_effect = StorageError("no such table", operation="get_all")
    storage.upsert_batch.side_effect = lambda records: len(records)
    service = ShipFeedService(storage=storage, api_key=None, bounding_boxes=BOXES)

    assert asyncio.run(service.hydrate()) == 0


def test_stop_flushes_pending_records(service, storage):
    async def scenario():
        await service.start()
        service.registry.upsert(_record(lat=42.0))
        await service.stop()

    asyncio.run(scenario())
    assert [r.lat for r in storage.get_all()] == [42.0]
    assert service.registry.pending_count == 0


def test_stop_without_start_is_noop(service, storage):
    service.registry.upsert(_record())
    asyncio.run(service.stop())
    assert storage.get_all() == []


def test_stream_not_started_without_api_key(service):
    async def scenario():
        await service.start()
        names = set(service._tasks)
        await service.stop()
        return names

    assert asyncio.run(scenario()) == {"flush", "sweep"}
    assert service.stream_enabled is False


def test_stream_runs_and_stops_with_service(storage):
    sockets = []

    async def connect(url):
        ws = _HeldSocket()
        sockets.append(ws)
        return ws

    service = ShipFeedService(storage=storage, api_key="key", bounding_boxes=BOXES, connect=connect)

    async def scenario():
        await service.start()
        for _ in range(200):
            if service.state.is_connected:
                break
            await asyncio.sleep(0.005)
        connected = service.state.is_connected
        await service.update_bounding_boxes([[[0.0, 0.0], [1.0, 1.0]]])
        for _ in range(200):
            if len(sockets) == 2 and service.state.is_connected:
                break
            await asyncio.sleep(0.005)
        await service.stop()
        return connected

    assert asyncio.run(scenario()) is True
    assert len(sockets) == 2
    assert all(ws.closed.is_set() for ws in sockets)
    assert service.state.is_connected is False
    assert service.bounding_boxes == [[[0.0, 0.0], [1.0, 1.0]]]


def test_status_shape(service):
    service.registry.upsert(_record())
    status = service.status()
    assert status["is_connected"] is False
    assert status["last_connected_at"] is None
    assert status["registry"] == {"ships": 1, "pending": 1}
    assert status["bounding_boxes"] == BOXES
    assert {"stream", "flush", "retention"} <= set(status)


def test_from_settings_uses_configuration(storage):
    settings = SimpleNamespace(
        AISSTREAM_API_KEY="abc",
        AISSTREAM_BOUNDING_BOXES=BOXES,
        AISSTREAM_WS_URL="wss://example.test/stream",
        AISSTREAM_RECONNECT_DELAY=2.0,
        AISSTREAM_MAX_RECONNECT_DELAY=30.0,
        FLUSH_INTERVAL_SECONDS=60.0,
        RETENTION_INTERVAL_SECONDS=600.0,
        RETENTION_HOURS=12.0,
        RETENTION_PRUNE_MEMORY=False,
        HYDRATE_ON_STARTUP=False,
        STREAM_ENABLED=True,
    )
    service = ShipFeedService.from_settings(settings, storage=storage, flush_interval=5.0)

    assert service.stream_enabled is True
    assert service.stream_client.ws_url == "wss://example.test/stream"
    assert service.stream_client.reconnect_delay == 2.0
    assert service.flusher.interval_seconds == 5.0
    assert service.sweeper.interval_seconds == 600.0
    assert service.sweeper.prune_memory is False
    assert service.hydrate_on_startup is False
