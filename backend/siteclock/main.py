from __future__ import annotations

import datetime as dt
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from . import commands, models
from .config import settings
from .database import SessionFactory, SessionLocal, db_session, engine, get_db
from .engine import ClockEngine
from .errors import (
    AlreadyClockedInError,
    ClockError,
    InvalidDurationError,
    LocationUnavailableError,
    NotClockedInError,
    PersistenceError,
    UnknownWorkLocationError,
)
from .events import ActivityFeed, ClockNotice, QueuedListener
from .geofence import GeoPoint, LocationFix
from .ledger import SessionLedger
from .location import PushLocationSource
from .logging import configure_logging, get_logger
from .schemas import (
    ActivityResponse,
    ClockInRequest,
    ClockOutRequest,
    CommandRequest,
    CommandResponse,
    HoursResponse,
    LocationUpdateRequest,
    LocationUpdateResponse,
    TimeClockEntryResponse,
    TimeClockSessionResponse,
    TimeClockStatusResponse,
    WorkLocationCreateRequest,
    WorkLocationResponse,
    WorkLocationUpdateRequest,
)
from .services import (
    WorkLocationDirectory,
    create_work_location,
    daily_hours,
    deactivate_work_location,
    get_work_location,
    list_work_locations,
    seed_sample_locations,
    update_work_location,
)
from .utils import day_bounds, ensure_utc, now

configure_logging(settings.log_level)
logger = get_logger(__name__)

ERROR_STATUS = {
    AlreadyClockedInError: status.HTTP_409_CONFLICT,
    NotClockedInError: status.HTTP_409_CONFLICT,
    InvalidDurationError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    LocationUnavailableError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    UnknownWorkLocationError: status.HTTP_404_NOT_FOUND,
    PersistenceError: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def _status_code_for(exc: ClockError) -> int:
    for error_type, code in ERROR_STATUS.items():
        if isinstance(exc, error_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def _clock(request: Request) -> ClockEngine:
    return request.app.state.clock


def _locations(request: Request) -> PushLocationSource:
    return request.app.state.location_source


def _status_response(clock: ClockEngine, user_id: str) -> TimeClockStatusResponse:
    current = clock.status(user_id)
    return TimeClockStatusResponse(
        user_id=user_id,
        state=clock.state(user_id).value,
        is_clocked_in=current.is_clocked_in,
        current_work_location_id=current.current_work_location_id,
        current_work_location_name=current.current_work_location_name,
        current_project_id=current.current_project_id,
        last_clock_in_time=current.last_clock_in_time,
        current_session_id=current.current_session_id,
        current_session_duration_ms=current.elapsed_ms(),
    )


def _notice_response(clock: ClockEngine, user_id: str, notice: Optional[ClockNotice]) -> LocationUpdateResponse:
    return LocationUpdateResponse(
        event=notice.event.value if notice else None,
        session=TimeClockSessionResponse.model_validate(notice.session) if notice else None,
        status=_status_response(clock, user_id),
    )


def _point(latitude: Optional[float], longitude: Optional[float]) -> Optional[GeoPoint]:
    if latitude is None or longitude is None:
        return None
    return GeoPoint(latitude, longitude)


def create_app(session_factory: SessionFactory = SessionLocal, bind: Engine = engine) -> FastAPI:
    models.Base.metadata.create_all(bind=bind)
    if settings.seed_sample_locations:
        with db_session(session_factory) as db:
            seed_sample_locations(db)

    ledger = SessionLedger(session_factory)
    directory = WorkLocationDirectory(session_factory)
    location_source = PushLocationSource(history_size=settings.location_history_size)
    clock = ClockEngine(
        ledger,
        directory,
        location_source,
        tie_break=settings.geofence_tie_break,
        location_timeout=settings.location_timeout_seconds,
    )
    activity_feed = ActivityFeed(settings.activity_feed_size)
    activity_listener = QueuedListener(activity_feed, maxsize=settings.event_queue_size, name="activity_feed")
    clock.add_listener(activity_listener)

    app = FastAPI(title=settings.app_name)
    app.state.ledger = ledger
    app.state.directory = directory
    app.state.location_source = location_source
    app.state.clock = clock
    app.state.activity_feed = activity_feed
    app.state.activity_listener = activity_listener
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ClockError)
    async def clock_error_handler(_request: Request, exc: ClockError) -> JSONResponse:
        return JSONResponse({"detail": exc.message, "error": exc.code}, status_code=_status_code_for(exc))

    _register_routes(app)
    logger.info("startup_complete", environment=settings.environment, tie_break=settings.geofence_tie_break)
    return app


def _register_routes(app: FastAPI) -> None:
    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    # ------------------------------------------------------------------
    # Clock
    # ------------------------------------------------------------------
    @app.post("/clock-in", response_model=TimeClockSessionResponse, status_code=status.HTTP_201_CREATED)
    def clock_in(payload: ClockInRequest, request: Request) -> TimeClockSessionResponse:
        notice = _clock(request).clock_in(
            payload.user_id,
            payload.work_location_id,
            point=_point(payload.latitude, payload.longitude),
            project_id=payload.project_id,
            notes=payload.notes,
            timestamp=payload.timestamp,
        )
        return notice.session

    @app.post("/clock-out", response_model=TimeClockSessionResponse)
    def clock_out(payload: ClockOutRequest, request: Request) -> TimeClockSessionResponse:
        notice = _clock(request).clock_out(
            payload.user_id,
            point=_point(payload.latitude, payload.longitude),
            notes=payload.notes,
            timestamp=payload.timestamp,
        )
        return notice.session

    @app.post("/location", response_model=LocationUpdateResponse)
    def location_update(payload: LocationUpdateRequest, request: Request) -> LocationUpdateResponse:
        clock = _clock(request)
        fix = LocationFix(
            point=GeoPoint(payload.latitude, payload.longitude),
            timestamp=ensure_utc(payload.timestamp) if payload.timestamp else now(),
        )
        _locations(request).publish(payload.user_id, fix)
        notice = clock.handle_location_update(payload.user_id, fix.point, fix.timestamp)
        return _notice_response(clock, payload.user_id, notice)

    @app.post("/location/{user_id}/refresh", response_model=LocationUpdateResponse)
    def location_refresh(
        user_id: str,
        request: Request,
        timeout: Optional[float] = Query(default=None, gt=0, le=60),
    ) -> LocationUpdateResponse:
        clock = _clock(request)
        notice = clock.refresh_location(user_id, timeout)
        return _notice_response(clock, user_id, notice)

    @app.post("/commands", response_model=CommandResponse)
    def run_command(payload: CommandRequest, request: Request) -> CommandResponse:
        clock = _clock(request)
        result = commands.execute(clock, payload.user_id, payload.text, request.app.state.directory)
        if result is None:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Command not recognised")
        command, notice = result
        return CommandResponse(
            command=command.value,
            event=notice.event.value,
            session=TimeClockSessionResponse.model_validate(notice.session),
            status=_status_response(clock, payload.user_id),
        )

    @app.get("/status/{user_id}", response_model=TimeClockStatusResponse)
    def clock_status(user_id: str, request: Request) -> TimeClockStatusResponse:
        return _status_response(_clock(request), user_id)

    @app.get("/events/{user_id}", response_model=list[ActivityResponse])
    def activity(user_id: str, request: Request) -> list[ActivityResponse]:
        return [
            ActivityResponse(
                event=notice.event.value,
                session_id=notice.session.id,
                work_location_id=notice.entry.work_location_id,
                work_location_name=notice.entry.work_location_name,
                timestamp=notice.entry.timestamp,
                is_automatic=notice.entry.is_automatic,
            )
            for notice in request.app.state.activity_feed.recent(user_id)
        ]

    @app.get("/sessions/{user_id}", response_model=list[TimeClockSessionResponse])
    def sessions(
        user_id: str,
        request: Request,
        from_date: Optional[dt.date] = None,
        to_date: Optional[dt.date] = None,
    ) -> list[TimeClockSessionResponse]:
        ledger = _clock(request).ledger
        if from_date is None and to_date is None:
            return ledger.sessions_for(user_id)
        start, _ = day_bounds(from_date or to_date)
        _, end = day_bounds(to_date or from_date)
        if end < start:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="End date must not precede start date")
        return ledger.sessions_in_range(user_id, start, end)

    @app.get("/entries/{user_id}", response_model=list[TimeClockEntryResponse])
    def entries(user_id: str, request: Request) -> list[TimeClockEntryResponse]:
        return _clock(request).ledger.entries_for(user_id)

    @app.get("/hours/{user_id}", response_model=HoursResponse)
    def hours(user_id: str, from_date: dt.date, to_date: dt.date, request: Request) -> HoursResponse:
        ledger = _clock(request).ledger
        days = daily_hours(ledger, user_id, from_date, to_date)
        start, _ = day_bounds(from_date)
        _, end = day_bounds(to_date)
        return HoursResponse(
            user_id=user_id,
            from_date=from_date,
            to_date=to_date,
            total_hours=ledger.total_hours(user_id, start, end),
            days=days,
        )

    # ------------------------------------------------------------------
    # Work locations
    # ------------------------------------------------------------------
    @app.get("/locations", response_model=list[WorkLocationResponse])
    def locations_list(active_only: bool = False, db: Session = Depends(get_db)) -> list[WorkLocationResponse]:
        return list_work_locations(db, active_only=active_only)

    @app.post("/locations", response_model=WorkLocationResponse, status_code=status.HTTP_201_CREATED)
    def locations_create(payload: WorkLocationCreateRequest, db: Session = Depends(get_db)) -> WorkLocationResponse:
        return create_work_location(
            db,
            payload.name,
            payload.latitude,
            payload.longitude,
            payload.radius_m,
            payload.address,
            payload.project_id,
            payload.is_active,
            payload.id,
        )

    @app.get("/locations/{location_id}", response_model=WorkLocationResponse)
    def locations_get(location_id: str, db: Session = Depends(get_db)) -> WorkLocationResponse:
        return get_work_location(db, location_id)

    @app.patch("/locations/{location_id}", response_model=WorkLocationResponse)
    def locations_update(
        location_id: str,
        payload: WorkLocationUpdateRequest,
        db: Session = Depends(get_db),
    ) -> WorkLocationResponse:
        changes = payload.model_dump(exclude_unset=True)
        return update_work_location(db, location_id, changes)

    @app.delete("/locations/{location_id}", status_code=status.HTTP_204_NO_CONTENT)
    def locations_delete(location_id: str, db: Session = Depends(get_db)) -> Response:
        deactivate_work_location(db, location_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)


app = create_app()
