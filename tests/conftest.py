"""Shared test fixtures."""

from collections.abc import Generator
from datetime import UTC, datetime

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

import pillwatch.database as db_module
from pillwatch.database import get_session
from pillwatch.main import app
from pillwatch.scanner.base import Advertisement


@pytest.fixture
def engine():
    """In-memory SQLite engine with all tables created.

    StaticPool ensures every session uses the same connection,
    so the in-memory database is shared across the test.
    """
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(eng)
    return eng


@pytest.fixture
def session(engine) -> Generator[Session, None, None]:
    with Session(engine) as s:
        yield s


@pytest.fixture
def client(engine) -> Generator[TestClient, None, None]:
    """FastAPI TestClient with overridden DB engine and session."""
    # Patch the module-level engine so lifespan's init_db() and the
    # adherence monitor's sessions both use the test engine.
    original_engine = db_module.engine
    db_module.engine = engine

    def _override_session() -> Generator[Session, None, None]:
        with Session(engine) as s:
            yield s

    app.dependency_overrides[get_session] = _override_session
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
    db_module.engine = original_engine


def make_advertisement(
    beacon_id: str = "C3:1F:6A:00:00:01",
    rssi: int = -40,
    sensor: int | None = 20,
    name: str | None = "PillBox",
) -> Advertisement:
    """Build an advertisement whose vendor payload starts with the sensor byte."""
    return Advertisement(
        beacon_id=beacon_id,
        name=name,
        rssi=rssi,
        manufacturer_data=None if sensor is None else bytes([sensor, 0x00]),
        timestamp=datetime.now(UTC),
        source="mock",
    )
