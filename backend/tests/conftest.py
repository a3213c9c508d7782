from __future__ import annotations

import datetime as dt
import os
import tempfile
from pathlib import Path
from typing import Generator

_TEST_DATA_DIR = tempfile.mkdtemp(prefix="siteclock-tests-")
os.environ.setdefault("SC_SQLITE_PATH", str(Path(_TEST_DATA_DIR) / "import.db"))
os.environ["TZ"] = "UTC"

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from siteclock import models
from siteclock.database import build_engine, build_session_factory, get_db
from siteclock.engine import ClockEngine
from siteclock.geofence import GeoPoint
from siteclock.ledger import SessionLedger
from siteclock.location import PushLocationSource
from siteclock.main import create_app
from siteclock.models import EntryKind, TimeClockEntry, WorkLocation, new_id
from siteclock.services import WorkLocationDirectory

SF_CENTER = GeoPoint(37.7749, -122.4194)


@pytest.fixture(scope="function")
def engine(tmp_path: Path):
    engine = build_engine(f"sqlite:///{tmp_path / 'test.db'}")
    models.Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture(scope="function")
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture(scope="function")
def session(session_factory) -> Generator[Session, None, None]:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def ledger(session_factory) -> SessionLedger:
    return SessionLedger(session_factory)


@pytest.fixture()
def location_source() -> PushLocationSource:
    return PushLocationSource(history_size=10)


@pytest.fixture()
def directory(session_factory) -> WorkLocationDirectory:
    return WorkLocationDirectory(session_factory)


@pytest.fixture()
def clock(ledger, directory, location_source) -> ClockEngine:
    return ClockEngine(ledger, directory, location_source, location_timeout=0.5)


@pytest.fixture()
def office(session: Session) -> WorkLocation:
    location = WorkLocation(
        id="L1",
        name="Main Office",
        address="123 Main St, San Francisco, CA",
        latitude=SF_CENTER.latitude,
        longitude=SF_CENTER.longitude,
        radius_m=100.0,
    )
    session.add(location)
    session.commit()
    return location


@pytest.fixture()
def make_entry():
    def _make(
        user_id: str,
        kind: EntryKind,
        timestamp: dt.datetime,
        *,
        location_id: str = "L1",
        location_name: str = "Main Office",
        automatic: bool = False,
        notes: str = "",
    ) -> TimeClockEntry:
        return TimeClockEntry(
            id=new_id(),
            user_id=user_id,
            timestamp=timestamp,
            kind=kind,
            work_location_id=location_id,
            work_location_name=location_name,
            latitude=SF_CENTER.latitude,
            longitude=SF_CENTER.longitude,
            notes=notes,
            is_automatic=automatic,
        )

    return _make


@pytest.fixture(scope="function")
def client(engine, session_factory) -> Generator[TestClient, None, None]:
    app = create_app(session_factory, bind=engine)

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture()
def sample_day() -> dt.date:
    return dt.date(2024, 1, 1)
