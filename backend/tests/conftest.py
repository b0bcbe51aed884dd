"""Shared test fixtures: in-memory storage, a non-streaming service and an API client."""
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from shipfeed.main import app
from shipfeed.models import Base
from shipfeed.modules.service import ShipFeedService
from shipfeed.modules.storage import SqlShipStorage


@pytest.fixture
def session_factory():
    """Session factory bound to a fresh in-memory SQLite database."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    yield factory
    engine.dispose()


@pytest.fixture
def storage(session_factory):
    return SqlShipStorage(session_factory)


@pytest.fixture
def service(storage):
    """ShipFeedService over in-memory storage with streaming disabled."""
    return ShipFeedService(
        storage=storage,
        api_key=None,
        bounding_boxes=[[[-38.88, 31.03], [-20.88, 42.74]]],
        stream_enabled=False,
    )


@pytest.fixture
def api_client(service):
    """TestClient with the service attached directly (lifespan not run)."""
    app.state.service = service
    client = TestClient(app, raise_server_exceptions=False)
    yield client
    del app.state.service
