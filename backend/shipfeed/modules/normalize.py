"""Decoding of aisstream.io messages into registry updates."""
from __future__ import annotations

import json
import logging
import re
from datetime import datetime, timezone
from typing import Any

from shipfeed.modules.registry import ShipUpdate

logger = logging.getLogger(__name__)

_COMMON_TIMESTAMP_FORMATS = [
    "%Y-%m-%d %H:%M:%S",
    "%Y/%m/%d %H:%M:%S",
    "%m/%d/%Y %H:%M:%S",
]

# AIS "not available" sentinels
_SOG_NOT_AVAILABLE = 102.2
_COG_NOT_AVAILABLE = 360.0


def normalize_mmsi(raw: Any) -> str | None:
    """Return the MMSI as a 9-digit string, or None if it is not one.

    Integer MMSIs lose their leading zeros upstream, so shorter values are
    left-padded.
    """
    if raw is None or isinstance(raw, bool):
        return None
    mmsi = str(raw).strip()
    if not mmsi.isdigit():
        return None
    mmsi = mmsi.zfill(9)
    if not re.fullmatch(r"\d{9}", mmsi):
        return None
    return mmsi


def _as_utc(ts: datetime) -> datetime:
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def parse_timestamp_flexible(ts: Any) -> datetime | None:
    """Parse a timestamp from various formats into an aware UTC datetime.

    Supports: ISO 8601, Unix epoch, a few strftime formats and the Go-style
    layout aisstream uses in ``MetaData.time_utc``
    ("2024-12-29 18:22:32.318353 +0000 UTC"). Returns None if parsing fails.
    """
    if isinstance(ts, datetime):
        return _as_utc(ts)

    if isinstance(ts, (int, float)) and not isinstance(ts, bool) and ts > 1_000_000_000:
        try:
            return datetime.fromtimestamp(ts, tz=timezone.utc)
        except (OSError, ValueError, OverflowError):
            return None

    if not isinstance(ts, str):
        return None

    ts_str = ts.strip()
    if not ts_str:
        return None

    if ts_str.endswith(" UTC"):
        cleaned = ts_str[:-4].strip()
        # Go prints up to nanoseconds; strptime only takes microseconds
        cleaned = re.sub(r"(\.\d{6})\d+", r"\1", cleaned)
        for go_fmt in (
            "%Y-%m-%d %H:%M:%S.%f %z",
            "%Y-%m-%d %H:%M:%S %z",
        ):
            try:
                return _as_utc(datetime.strptime(cleaned, go_fmt))
            except ValueError:
                continue
        return None

    try:
        return _as_utc(datetime.fromisoformat(ts_str.replace("Z", "+00:00")))
    except ValueError:
        pass

    for fmt in _COMMON_TIMESTAMP_FORMATS:
        try:
            return datetime.strptime(ts_str, fmt).replace(tzinfo=timezone.utc)
        except ValueError:
            continue

    return None


def _optional_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def decode_message(raw: str | bytes) -> dict[str, Any]:
    """Decode one raw WebSocket frame.

    Raises ValueError (json.JSONDecodeError) on malformed payloads and on
    well-formed JSON that is not an object.
    """
    msg = json.loads(raw)
    if not isinstance(msg, dict):
        raise ValueError(f"Expected a JSON object, got {type(msg).__name__}")
    return msg


def map_position_report(msg: dict[str, Any]) -> ShipUpdate | None:
    """Map an aisstream PositionReport message to a ShipUpdate.

    Returns None for messages without a PositionReport payload and for
    reports that cannot be attributed (no MMSI) or placed (bad coordinates
    or timestamp). Missing Sog/Cog stay None here; the registry fills them
    with 0 for a vessel's first record and keeps prior values otherwise.
    """
    message = msg.get("Message")
    if not isinstance(message, dict):
        return None
    report = message.get("PositionReport")
    if not isinstance(report, dict) or not report:
        return None

    meta = msg.get("MetaData") or {}
    if not isinstance(meta, dict):
        return None

    mmsi = normalize_mmsi(meta.get("MMSI_String") or meta.get("MMSI") or report.get("UserID"))
    if mmsi is None:
        logger.debug("Position report without usable MMSI: %r", meta.get("MMSI_String"))
        return None

    lat = _optional_float(report.get("Latitude"))
    if lat is None:
        lat = _optional_float(meta.get("latitude"))
    lon = _optional_float(report.get("Longitude"))
    if lon is None:
        lon = _optional_float(meta.get("longitude"))
    if lat is not None and not (-90 <= lat <= 90):
        logger.debug("Dropping report for %s: latitude out of range (%s)", mmsi, lat)
        return None
    if lon is not None and not (-180 <= lon <= 180):
        logger.debug("Dropping report for %s: longitude out of range (%s)", mmsi, lon)
        return None

    ts = parse_timestamp_flexible(meta.get("time_utc"))
    if ts is None:
        logger.debug("Dropping report for %s: unparseable time_utc %r", mmsi, meta.get("time_utc"))
        return None

    sog = _optional_float(report.get("Sog"))
    if sog is not None and sog >= _SOG_NOT_AVAILABLE:
        sog = None

    cog = _optional_float(report.get("Cog"))
    if cog is not None and cog >= _COG_NOT_AVAILABLE:
        cog = None

    return ShipUpdate(
        mmsi=mmsi,
        lat=lat,
        lon=lon,
        speed=sog,
        course=cog,
        timestamp=ts,
    )
