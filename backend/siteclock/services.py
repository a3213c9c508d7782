from __future__ import annotations

import datetime as dt
from collections import defaultdict
from typing import Any, Dict, List, Optional

from fastapi import HTTPException, status
from sqlalchemy.orm import Session

from .config import settings
from .database import SessionFactory, db_session
from .ledger import MS_PER_HOUR, SessionLedger
from .logging import get_logger
from .models import WorkLocation, new_id
from .utils import day_bounds, local_day

logger = get_logger(__name__)

SAMPLE_LOCATIONS = (
    {
        "id": "location_1",
        "name": "Main Office",
        "address": "123 Main St, San Francisco, CA",
        "latitude": 37.7749,
        "longitude": -122.4194,
        "radius_m": 100.0,
    },
    {
        "id": "location_2",
        "name": "Project Site - Johnson Residence",
        "address": "456 Oak Ave, San Francisco, CA",
        "latitude": 37.7833,
        "longitude": -122.4167,
        "radius_m": 50.0,
        "project_id": "project_2",
    },
    {
        "id": "location_3",
        "name": "Warehouse",
        "address": "789 Industrial Blvd, Oakland, CA",
        "latitude": 37.8044,
        "longitude": -122.2711,
        "radius_m": 150.0,
    },
)


def _validate_geometry(latitude: float, longitude: float, radius_m: float) -> None:
    if not -90.0 <= latitude <= 90.0:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Latitude must be between -90 and 90")
    if not -180.0 <= longitude <= 180.0:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Longitude must be between -180 and 180")
    if radius_m <= 0:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Radius must be greater than zero")


def create_work_location(
    db: Session,
    name: str,
    latitude: float,
    longitude: float,
    radius_m: Optional[float] = None,
    address: str = "",
    project_id: Optional[str] = None,
    is_active: bool = True,
    location_id: Optional[str] = None,
) -> WorkLocation:
    radius = settings.default_radius_m if radius_m is None else radius_m
    _validate_geometry(latitude, longitude, radius)
    if not name or not name.strip():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Name must not be empty")
    if location_id and db.get(WorkLocation, location_id) is not None:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Work location id already exists")
    location = WorkLocation(
        id=location_id or new_id(),
        name=name.strip(),
        address=address or "",
        latitude=latitude,
        longitude=longitude,
        radius_m=radius,
        project_id=project_id,
        is_active=is_active,
    )
    db.add(location)
    db.commit()
    db.refresh(location)
    logger.info("work_location_created", work_location_id=location.id, name=location.name)
    return location


def list_work_locations(db: Session, active_only: bool = False) -> List[WorkLocation]:
    query = db.query(WorkLocation)
    if active_only:
        query = query.filter(WorkLocation.is_active.is_(True))
    # Creation order is the geofence match order.
    return query.order_by(WorkLocation.created_at.asc(), WorkLocation.id.asc()).all()


def get_work_location(db: Session, location_id: str) -> WorkLocation:
    location = db.get(WorkLocation, location_id)
    if not location:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Work location not found")
    return location


def update_work_location(db: Session, location_id: str, changes: Dict[str, Any]) -> WorkLocation:
    location = get_work_location(db, location_id)
    latitude = changes.get("latitude") if changes.get("latitude") is not None else location.latitude
    longitude = changes.get("longitude") if changes.get("longitude") is not None else location.longitude
    radius = changes.get("radius_m") if changes.get("radius_m") is not None else location.radius_m
    _validate_geometry(latitude, longitude, radius)
    location.latitude = latitude
    location.longitude = longitude
    location.radius_m = radius
    if "name" in changes and changes["name"] is not None:
        if not changes["name"].strip():
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Name must not be empty")
        location.name = changes["name"].strip()
    if "address" in changes:
        location.address = changes["address"] or ""
    if "project_id" in changes:
        location.project_id = changes["project_id"]
    if "is_active" in changes and changes["is_active"] is not None:
        location.is_active = bool(changes["is_active"])
    db.add(location)
    db.commit()
    db.refresh(location)
    logger.info("work_location_updated", work_location_id=location.id)
    return location


def deactivate_work_location(db: Session, location_id: str) -> WorkLocation:
    # Entries keep the denormalized name, so locations are never hard deleted.
    location = get_work_location(db, location_id)
    location.is_active = False
    db.add(location)
    db.commit()
    db.refresh(location)
    logger.info("work_location_deactivated", work_location_id=location.id)
    return location


def seed_sample_locations(db: Session) -> List[WorkLocation]:
    created: List[WorkLocation] = []
    for sample in SAMPLE_LOCATIONS:
        if db.get(WorkLocation, sample["id"]) is not None:
            continue
        location = WorkLocation(is_active=True, **sample)
        db.add(location)
        created.append(location)
    db.commit()
    if created:
        logger.info("sample_locations_seeded", count=len(created))
    return created


class WorkLocationDirectory:
    """Read access to work locations for the clock engine."""

    def __init__(self, session_factory: SessionFactory):
        self._session_factory = session_factory

    def active(self) -> List[WorkLocation]:
        with db_session(self._session_factory) as db:
            return list_work_locations(db, active_only=True)

    def get(self, work_location_id: str) -> Optional[WorkLocation]:
        with db_session(self._session_factory) as db:
            return db.get(WorkLocation, work_location_id)


def daily_hours(
    ledger: SessionLedger,
    user_id: str,
    start_day: dt.date,
    end_day: dt.date,
) -> List[Dict[str, Any]]:
    """Closed session time per local day; open sessions count as zero."""
    if end_day < start_day:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="End date must not precede start date")
    range_start, _ = day_bounds(start_day)
    _, range_end = day_bounds(end_day)
    totals: Dict[dt.date, Dict[str, int]] = defaultdict(lambda: {"work_ms": 0, "sessions": 0, "open": 0})
    for session in ledger.sessions_in_range(user_id, range_start, range_end):
        day = local_day(session.session_date)
        totals[day]["sessions"] += 1
        if session.is_open:
            totals[day]["open"] += 1
            continue
        totals[day]["work_ms"] += session.duration_ms or 0
    summaries: List[Dict[str, Any]] = []
    current = start_day
    while current <= end_day:
        day_totals = totals.get(current, {"work_ms": 0, "sessions": 0, "open": 0})
        summaries.append(
            {
                "day": current,
                "work_ms": day_totals["work_ms"],
                "hours": day_totals["work_ms"] / MS_PER_HOUR,
                "session_count": day_totals["sessions"],
                "open_sessions": day_totals["open"],
            }
        )
        current += dt.timedelta(days=1)
    return summaries
