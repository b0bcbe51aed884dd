"""Pydantic schemas for the bounding-box administrative endpoint.

A box is two ``[lat, lon]`` corner points. The request body carries either a
list of boxes (``boundingBoxes``) or a single one (``boundingBox``).
"""
from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from shipfeed.exceptions import BoundingBoxError

BoundingBox = list[list[float]]


def validate_box(box: Any) -> BoundingBox:
    if not isinstance(box, (list, tuple)) or len(box) != 2:
        raise ValueError("a bounding box must be exactly two [lat, lon] points")
    points = []
    for point in box:
        if not isinstance(point, (list, tuple)) or len(point) != 2:
            raise ValueError("each corner must be a [lat, lon] pair")
        lat, lon = point
        if isinstance(lat, bool) or isinstance(lon, bool) or not all(isinstance(v, (int, float)) for v in (lat, lon)):
            raise ValueError("coordinates must be numbers")
        if not -90 <= lat <= 90:
            raise ValueError(f"latitude {lat} out of range [-90, 90]")
        if not -180 <= lon <= 180:
            raise ValueError(f"longitude {lon} out of range [-180, 180]")
        points.append([float(lat), float(lon)])
    return points


class BoundingBoxUpdateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    bounding_boxes: Optional[list[Any]] = Field(None, alias="boundingBoxes")
    bounding_box: Optional[Any] = Field(None, alias="boundingBox")

    @field_validator("bounding_boxes")
    @classmethod
    def _check_boxes(cls, v):
        if v is None:
            return v
        if not v:
            raise ValueError("boundingBoxes must not be empty")
        return [validate_box(b) for b in v]

    @field_validator("bounding_box")
    @classmethod
    def _check_box(cls, v):
        if v is None:
            return v
        return validate_box(v)

    @model_validator(mode="after")
    def _require_one(self):
        if self.bounding_boxes is None and self.bounding_box is None:
            raise ValueError("body must contain boundingBoxes or boundingBox")
        return self

    def boxes(self) -> list[BoundingBox]:
        if self.bounding_boxes is not None:
            return self.bounding_boxes
        return [self.bounding_box]


class BoundingBoxResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    bounding_boxes: list[BoundingBox] = Field(alias="boundingBoxes")


def parse_bounding_box_request(payload: Any) -> list[BoundingBox]:
    """Validate a raw request body and return the boxes to subscribe to.

    Raises BoundingBoxError on any malformed input.
    """
    if not isinstance(payload, dict):
        raise BoundingBoxError("request body must be a JSON object")
    try:
        request = BoundingBoxUpdateRequest.model_validate(payload)
    except ValidationError as exc:
        messages = "; ".join(err["msg"] for err in exc.errors())
        raise BoundingBoxError(f"Invalid bounding box: {messages}") from exc
    return request.boxes()
