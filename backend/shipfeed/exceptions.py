"""Exception hierarchy for shipfeed."""
from __future__ import annotations


class ShipFeedError(Exception):
    """Base exception for all shipfeed errors."""


class StorageError(ShipFeedError):
    """Durable storage read/write failure."""

    def __init__(self, message: str, *, operation: str = "") -> None:
        self.operation = operation
        super().__init__(message)


class BoundingBoxError(ShipFeedError, ValueError):
    """Malformed bounding box supplied by a caller."""


class FatalInitError(ShipFeedError):
    """Storage could not be initialised at startup."""
