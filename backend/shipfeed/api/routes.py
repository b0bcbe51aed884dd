from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from shipfeed.config import settings
from shipfeed.exceptions import BoundingBoxError
from shipfeed.modules.normalize import normalize_mmsi
from shipfeed.modules.query_engine import ShipQuery, build_envelope, query_ships
from shipfeed.modules.service import ShipFeedService
from shipfeed.schemas.bounding_box import BoundingBoxResponse, parse_bounding_box_request
from shipfeed.schemas.error import ErrorResponse

logger = logging.getLogger(__name__)

router = APIRouter()


def get_service(request: Request) -> ShipFeedService:
    service = getattr(request.app.state, "service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Service not started")
    return service


# ---------------------------------------------------------------------------
# Ships
# ---------------------------------------------------------------------------

@router.get("/ships", tags=["ships"], responses={500: {"model": ErrorResponse}})
def list_ships(
    mmsi: Optional[str] = Query(None),
    lat_min: Optional[float] = Query(None, alias="latMin"),
    lat_max: Optional[float] = Query(None, alias="latMax"),
    lon_min: Optional[float] = Query(None, alias="lonMin"),
    lon_max: Optional[float] = Query(None, alias="lonMax"),
    speed_min: Optional[float] = Query(None, alias="speedMin"),
    speed_max: Optional[float] = Query(None, alias="speedMax"),
    course_min: Optional[float] = Query(None, alias="courseMin"),
    course_max: Optional[float] = Query(None, alias="courseMax"),
    timestamp_min: Optional[str] = Query(None, alias="timestampMin"),
    timestamp_max: Optional[str] = Query(None, alias="timestampMax"),
    page: int = Query(1, ge=1),
    limit: Optional[int] = Query(None, ge=1),
    source: str = Query("memory", pattern="^(memory|storage)$"),
    service: ShipFeedService = Depends(get_service),
):
    """Filtered, paginated latest positions.

    Served from the in-memory registry by default; ``source=storage`` reads
    the persisted table instead. Data is served while the upstream feed is
    down, flagged by ``isConnected`` and ``message``.
    """
    if mmsi is not None:
        mmsi = normalize_mmsi(mmsi) or mmsi.strip()
    query = ShipQuery(
        mmsi=mmsi,
        lat_min=lat_min,
        lat_max=lat_max,
        lon_min=lon_min,
        lon_max=lon_max,
        speed_min=speed_min,
        speed_max=speed_max,
        course_min=course_min,
        course_max=course_max,
        timestamp_min=timestamp_min,
        timestamp_max=timestamp_max,
        page=page,
        limit=min(limit or settings.DEFAULT_QUERY_LIMIT, settings.MAX_QUERY_LIMIT),
    )

    if source == "storage":
        # StorageError propagates to the 500 handler in main
        records, total = service.storage.query(query)
        return build_envelope(records, total, query, service.state)

    return query_ships(service.registry.snapshot(), query, service.state)


@router.get("/ships/{mmsi}", tags=["ships"])
def get_ship(mmsi: str, service: ShipFeedService = Depends(get_service)):
    record = service.registry.get(normalize_mmsi(mmsi) or mmsi)
    if record is None:
        raise HTTPException(status_code=404, detail="Ship not found")
    is_connected, last_connected_at = service.state.snapshot()
    return {
        **record.to_dict(),
        "isConnected": is_connected,
        "lastConnectionTimestamp": last_connected_at.isoformat() if last_connected_at else None,
    }


# ---------------------------------------------------------------------------
# Subscription filter
# ---------------------------------------------------------------------------

@router.get("/bounding-box", response_model=BoundingBoxResponse, tags=["stream"])
def get_bounding_box(service: ShipFeedService = Depends(get_service)):
    return {"boundingBoxes": service.bounding_boxes}


@router.put("/bounding-box", response_model=BoundingBoxResponse, tags=["stream"])
async def update_bounding_box(request: Request, service: ShipFeedService = Depends(get_service)):
    """Replace the upstream subscription filter and force a reconnect.

    Malformed input is rejected with 400 and the live subscription is left
    untouched.
    """
    try:
        payload = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Request body must be valid JSON")
    try:
        boxes = parse_bounding_box_request(payload)
    except BoundingBoxError as exc:
        raise HTTPException(status_code=400, detail=str(exc))

    await service.update_bounding_boxes(boxes)
    logger.info("Subscription bounding boxes replaced via API (%d boxes)", len(boxes))
    return {"boundingBoxes": service.bounding_boxes}


# ---------------------------------------------------------------------------
# Status
# ---------------------------------------------------------------------------

@router.get("/status", tags=["stream"])
def get_status(service: ShipFeedService = Depends(get_service)):
    return service.status()
