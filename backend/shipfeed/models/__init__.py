"""Import all models to register them with SQLAlchemy metadata."""
from shipfeed.models.base import Base
from shipfeed.models.ship_position import ShipPosition
