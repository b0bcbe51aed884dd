"""aisstream.io WebSocket client — real-time AIS position streaming.

Connects to wss://stream.aisstream.io/v0/stream, subscribes to
PositionReport messages for a set of bounding boxes and merges every decoded
report into the shared Registry.

The transport side only produces typed events onto an ``asyncio.Queue``:

    Opened            handshake sent, subscription active
    Decoded(update)   one position report decoded from a frame
    Closed(reason)    socket closed (cleanly or by the peer)
    Failed(error)     connect or read failed

and a single receiver applies them in order via ``apply_event``. The
reconnect/backoff policy lives in ``run`` and can be exercised with a fake
``connect`` callable, no network needed.

Usage:
    client = StreamClient(registry, state, api_key, boxes)
    task = asyncio.create_task(client.run())
    ...
    await client.stop()
"""
from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Union

import websockets

from shipfeed.modules.normalize import decode_message, map_position_report
from shipfeed.modules.registry import ConnectionState, Registry, ShipUpdate

logger = logging.getLogger(__name__)

DEFAULT_WS_URL = "wss://stream.aisstream.io/v0/stream"

# aisstream drops connections that do not subscribe within 3 seconds
_OPEN_TIMEOUT_SECONDS = 10

_TRANSPORT_ERRORS = (
    websockets.ConnectionClosed,
    websockets.WebSocketException,
    OSError,
    asyncio.TimeoutError,
)


@dataclass(frozen=True)
class Opened:
    pass


@dataclass(frozen=True)
class Decoded:
    update: ShipUpdate


@dataclass(frozen=True)
class Closed:
    reason: str = ""


@dataclass(frozen=True)
class Failed:
    error: BaseException


StreamEvent = Union[Opened, Decoded, Closed, Failed]


def build_subscription(api_key: str, bounding_boxes: list[list[list[float]]]) -> dict[str, Any]:
    """Subscription handshake sent once per successful connection."""
    return {
        "APIKey": api_key,
        "BoundingBoxes": bounding_boxes,
        "FilterMessageTypes": ["PositionReport"],
    }


class StreamClient:
    """Owns the single upstream aisstream.io subscription."""

    def __init__(
        self,
        registry: Registry,
        state: ConnectionState,
        api_key: str,
        bounding_boxes: list[list[list[float]]],
        ws_url: str = DEFAULT_WS_URL,
        reconnect_delay: float = 1.0,
        max_reconnect_delay: float = 60.0,
        connect: Callable[..., Awaitable[Any]] | None = None,
    ):
        self.registry = registry
        self.state = state
        self.api_key = api_key
        self.bounding_boxes = [list(b) for b in bounding_boxes]
        self.ws_url = ws_url
        self.reconnect_delay = reconnect_delay
        self.max_reconnect_delay = max(max_reconnect_delay, reconnect_delay)
        self._connect = connect or self._default_connect

        self._ws: Any = None
        self._stopping = False
        self._force_reconnect = False
        self._wake = asyncio.Event()
        self._failures = 0
        # set once the current connection has delivered a position report
        self._healthy = False

        self._stats: dict[str, int] = {
            "messages_received": 0,
            "position_reports": 0,
            "decode_errors": 0,
            "rejected_reports": 0,
            "connections": 0,
            "reconnects": 0,
            "errors": 0,
        }

    @staticmethod
    async def _default_connect(url: str) -> Any:
        return await websockets.connect(url, open_timeout=_OPEN_TIMEOUT_SECONDS)

    @property
    def stats(self) -> dict[str, int]:
        return dict(self._stats)

    def next_delay(self) -> float:
        """Backoff before the next reconnect attempt (capped exponential).

        A connection only counts as successful once it has delivered a
        position report; one that is accepted and then dropped straight away
        (rejected key, server error) keeps growing the delay.
        """
        exponent = max(self._failures - 1, 0)
        return min(self.reconnect_delay * (2 ** exponent), self.max_reconnect_delay)

    # ------------------------------------------------------------------
    # Message handling
    # ------------------------------------------------------------------

    def handle_message(self, raw: str | bytes) -> Decoded | None:
        """Decode one frame into an event for the receiver.

        Returns None for malformed or non-position messages; malformed ones
        are logged and counted, never raised.
        """
        self._stats["messages_received"] += 1
        try:
            msg = decode_message(raw)
        except ValueError as exc:
            self._stats["decode_errors"] += 1
            logger.warning("Discarding undecodable aisstream message: %s", exc)
            return None
        logger.debug("Message received from AIS stream: %s", msg)
        update = map_position_report(msg)
        return Decoded(update) if update is not None else None

    def apply_event(self, event: StreamEvent) -> None:
        if isinstance(event, Opened):
            self.state.mark_connected(datetime.now(timezone.utc))
            self._healthy = False
            self._stats["connections"] += 1
            logger.info(
                "Connected to aisstream.io — streaming %d bounding boxes",
                len(self.bounding_boxes),
            )
        elif isinstance(event, Decoded):
            try:
                self.registry.upsert(event.update)
            except ValueError as exc:
                self._stats["rejected_reports"] += 1
                logger.debug("Rejected position report: %s", exc)
                return
            self._stats["position_reports"] += 1
            self._healthy = True
        elif isinstance(event, Closed):
            self.state.mark_disconnected()
            if self._healthy:
                self._failures = 0
            elif not (self._force_reconnect or self._stopping):
                self._failures += 1
            self._healthy = False
            logger.info("aisstream.io connection closed%s", f" ({event.reason})" if event.reason else "")
        elif isinstance(event, Failed):
            self.state.mark_disconnected()
            self._failures = 1 if self._healthy else self._failures + 1
            self._healthy = False
            self._stats["errors"] += 1
            logger.warning("aisstream.io connection error: %s", event.error)

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def _close_current(self) -> None:
        ws, self._ws = self._ws, None
        if ws is None:
            return
        try:
            await ws.close()
        except _TRANSPORT_ERRORS as exc:
            logger.debug("Error closing previous aisstream connection: %s", exc)

    async def _open(self) -> Any:
        """Open a new connection and send the subscription handshake.

        Any previous connection is closed first so at most one is live.
        """
        await self._close_current()
        ws = await self._connect(self.ws_url)
        self._ws = ws
        # this handshake carries the current boxes, so an update made while
        # connecting needs no extra cycle
        self._force_reconnect = False
        await ws.send(json.dumps(build_subscription(self.api_key, self.bounding_boxes)))
        return ws

    async def _pump(self, ws: Any, queue: asyncio.Queue) -> None:
        """Transport reader: turn socket activity into events."""
        queue.put_nowait(Opened())
        try:
            async for raw in ws:
                event = self.handle_message(raw)
                if event is not None:
                    queue.put_nowait(event)
        except websockets.ConnectionClosed as exc:
            queue.put_nowait(Closed(str(exc)))
        except (websockets.WebSocketException, OSError) as exc:
            queue.put_nowait(Failed(exc))
        else:
            queue.put_nowait(Closed())

    async def _receive(self, queue: asyncio.Queue) -> None:
        """Receiver: apply events in order until the connection ends."""
        while True:
            event = await queue.get()
            self.apply_event(event)
            if isinstance(event, (Closed, Failed)):
                return

    async def _sleep_before_reconnect(self, delay: float) -> None:
        self._wake.clear()
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    async def run(self) -> None:
        """Keep one subscription alive until ``stop()`` is called."""
        while not self._stopping:
            try:
                ws = await self._open()
            except _TRANSPORT_ERRORS as exc:
                self.apply_event(Failed(exc))
            else:
                if self._stopping:
                    await self._close_current()
                    break
                queue: asyncio.Queue = asyncio.Queue()
                reader = asyncio.create_task(self._pump(ws, queue))
                try:
                    await self._receive(queue)
                finally:
                    if not reader.done():
                        reader.cancel()
                    await asyncio.gather(reader, return_exceptions=True)
                    if self._ws is ws:
                        await self._close_current()

            if self._stopping:
                break

            if self._force_reconnect:
                self._force_reconnect = False
                logger.info("Reconnecting to apply new bounding boxes")
            else:
                delay = self.next_delay()
                logger.warning("aisstream.io disconnected, reconnecting in %.1fs", delay)
                await self._sleep_before_reconnect(delay)
                if self._stopping:
                    break
                self._force_reconnect = False
            self._stats["reconnects"] += 1

        self.state.mark_disconnected()
        logger.info("aisstream.io client stopped")

    async def update_bounding_boxes(self, bounding_boxes: list[list[list[float]]]) -> None:
        """Replace the subscription filter and force an immediate reconnect.

        aisstream has no in-place filter update, so the socket is cycled.
        """
        self.bounding_boxes = [list(b) for b in bounding_boxes]
        self._force_reconnect = True
        logger.info("Bounding boxes updated: %s", self.bounding_boxes)
        self._wake.set()
        await self._close_current()

    async def stop(self) -> None:
        """Stop streaming: no reconnect is scheduled after this."""
        self._stopping = True
        self._wake.set()
        await self._close_current()
