"""ShipPosition entity — latest persisted position per vessel."""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import Float, String, DateTime, CheckConstraint
from sqlalchemy.orm import Mapped, mapped_column
from shipfeed.models.base import Base


class ShipPosition(Base):
    __tablename__ = "ship_positions"
    __table_args__ = (
        CheckConstraint("lat >= -90 AND lat <= 90", name="ck_ship_lat_bounds"),
        CheckConstraint("lon >= -180 AND lon <= 180", name="ck_ship_lon_bounds"),
    )

    mmsi: Mapped[str] = mapped_column(String(9), primary_key=True)
    lat: Mapped[float] = mapped_column(Float, nullable=False)
    lon: Mapped[float] = mapped_column(Float, nullable=False)
    speed: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    course: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    # Reporting time from upstream, stored naive UTC
    timestamp_utc: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
