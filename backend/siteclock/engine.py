"""Clock state machine driven by location fixes and manual commands."""

from __future__ import annotations

import datetime as dt
import enum
from threading import Lock
from typing import Dict, List, Optional, Protocol, Sequence

from .errors import (
    AlreadyClockedInError,
    ClockError,
    LocationUnavailableError,
    NotClockedInError,
    UnknownWorkLocationError,
)
from .events import ClockListener, ClockNotice, TimeClockEvent
from .geofence import GeoPoint, LocationFix, contains, match
from .ledger import SessionLedger, TimeClockStatus
from .location import LocationRequest, LocationSource
from .logging import get_logger
from .models import EntryKind, TimeClockEntry, TimeClockSession, WorkLocation, new_id
from .utils import ensure_utc, now

logger = get_logger(__name__)


class ClockState(str, enum.Enum):
    OUT = "OUT"
    IN = "IN"


class LocationDirectory(Protocol):
    def active(self) -> Sequence[WorkLocation]:
        ...

    def get(self, work_location_id: str) -> Optional[WorkLocation]:
        ...


class ClockEngine:
    """Decides clock transitions and records them through the ledger.

    Every decision for a user is taken under the ledger's lock for that
    user, so a stale automatic fix and a manual command can never both open a
    session. Waiting for a fresh location fix happens outside that lock.
    """

    def __init__(
        self,
        ledger: SessionLedger,
        directory: LocationDirectory,
        location_source: LocationSource,
        *,
        tie_break: str = "first",
        location_timeout: float = 10.0,
    ):
        self._ledger = ledger
        self._directory = directory
        self._location_source = location_source
        self._tie_break = tie_break
        self._location_timeout = location_timeout
        self._listeners: List[ClockListener] = []
        self._listeners_lock = Lock()
        self._last_fix: Dict[str, dt.datetime] = {}
        self._requests_lock = Lock()
        self._in_flight: Dict[str, LocationRequest] = {}

    @property
    def ledger(self) -> SessionLedger:
        return self._ledger

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------
    def add_listener(self, listener: ClockListener) -> None:
        with self._listeners_lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: ClockListener) -> None:
        with self._listeners_lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def _emit(
        self,
        user_id: str,
        event: TimeClockEvent,
        entry: TimeClockEntry,
        session: TimeClockSession,
    ) -> ClockNotice:
        notice = ClockNotice(
            user_id=user_id,
            event=event,
            entry=entry,
            session=session,
            status=self._ledger.status_for(user_id),
        )
        logger.info(
            "clock_event",
            user_id=user_id,
            clock_event=event.value,
            session_id=session.id,
            work_location_id=entry.work_location_id,
        )
        with self._listeners_lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(notice)
            except Exception:
                logger.exception("listener_failed", user_id=user_id, clock_event=event.value)
        return notice

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------
    def status(self, user_id: str) -> TimeClockStatus:
        return self._ledger.status_for(user_id)

    def state(self, user_id: str) -> ClockState:
        return ClockState.IN if self.status(user_id).is_clocked_in else ClockState.OUT

    def last_known_fix(self, user_id: str) -> Optional[LocationFix]:
        return self._location_source.get_last_known(user_id)

    def forget_user(self, user_id: str) -> bool:
        """Drop the per-user fix watermark and cached status of an idle user.

        Users with an open session or a pending location request are kept.
        After forgetting, the next fix is accepted whatever its timestamp.
        """
        with self._ledger.user_lock(user_id):
            with self._requests_lock:
                if user_id in self._in_flight:
                    return False
            if self._ledger.refresh_status(user_id).is_clocked_in:
                return False
            self._last_fix.pop(user_id, None)
            self._ledger.invalidate_status(user_id)
        logger.info("user_state_forgotten", user_id=user_id)
        return True

    # ------------------------------------------------------------------
    # Manual commands
    # ------------------------------------------------------------------
    def clock_in(
        self,
        user_id: str,
        work_location_id: str,
        point: Optional[GeoPoint] = None,
        project_id: Optional[str] = None,
        notes: str = "",
        timestamp: Optional[dt.datetime] = None,
    ) -> ClockNotice:
        location = self._directory.get(work_location_id)
        if location is None or not location.is_active:
            raise UnknownWorkLocationError(f"Unknown work location: {work_location_id}", user_id=user_id)
        with self._ledger.user_lock(user_id):
            point = self._resolve_point(user_id, point)
            entry = self._build_entry(
                user_id,
                EntryKind.CLOCK_IN,
                location.id,
                location.name,
                point,
                project_id or location.project_id,
                notes,
                automatic=False,
                timestamp=timestamp,
            )
            try:
                session = self._ledger.open_session(user_id, entry)
            except ClockError as exc:
                logger.warning("manual_clock_in_rejected", user_id=user_id, reason=exc.code)
                raise
            return self._emit(user_id, TimeClockEvent.MANUAL_CLOCK_IN, entry, session)

    def clock_out(
        self,
        user_id: str,
        point: Optional[GeoPoint] = None,
        notes: str = "",
        timestamp: Optional[dt.datetime] = None,
    ) -> ClockNotice:
        with self._ledger.user_lock(user_id):
            # The store decides; the cached status may lag behind another ledger.
            status = self._ledger.refresh_status(user_id)
            if not status.is_clocked_in:
                logger.warning("manual_clock_out_rejected", user_id=user_id, reason=NotClockedInError.code)
                raise NotClockedInError(f"User {user_id} is not clocked in", user_id=user_id)
            point = self._resolve_point(user_id, point)
            entry = self._clock_out_entry(user_id, status, point, notes, automatic=False, timestamp=timestamp)
            try:
                session = self._ledger.close_session(user_id, entry)
            except ClockError as exc:
                logger.warning("manual_clock_out_rejected", user_id=user_id, reason=exc.code)
                raise
            return self._emit(user_id, TimeClockEvent.MANUAL_CLOCK_OUT, entry, session)

    # ------------------------------------------------------------------
    # Automatic transitions
    # ------------------------------------------------------------------
    def handle_location_update(
        self,
        user_id: str,
        point: GeoPoint,
        timestamp: Optional[dt.datetime] = None,
    ) -> Optional[ClockNotice]:
        fix_time = ensure_utc(timestamp) if timestamp else now()
        regions = list(self._directory.active())
        with self._ledger.user_lock(user_id):
            last_fix = self._last_fix.get(user_id)
            if last_fix is not None and fix_time <= last_fix:
                logger.info(
                    "stale_fix_ignored",
                    user_id=user_id,
                    fix_time=fix_time.isoformat(),
                    last_fix=last_fix.isoformat(),
                )
                return None
            self._last_fix[user_id] = fix_time

            try:
                return self._apply_fix(user_id, point, fix_time, regions)
            except (AlreadyClockedInError, NotClockedInError) as exc:
                # The ledger has resynced its status from the store; decide
                # once more against it.
                logger.info("automatic_transition_retried", user_id=user_id, reason=exc.code)
                return self._apply_fix(user_id, point, fix_time, regions)

    def _apply_fix(
        self,
        user_id: str,
        point: GeoPoint,
        fix_time: dt.datetime,
        regions: Sequence[WorkLocation],
    ) -> Optional[ClockNotice]:
        status = self._ledger.status_for(user_id)
        if status.is_clocked_in:
            current = next((r for r in regions if r.id == status.current_work_location_id), None)
            if current is not None and contains(current, point):
                return None
            # Leaving the current site only clocks out; entering another
            # site needs a later fix.
            entry = self._clock_out_entry(user_id, status, point, "", automatic=True, timestamp=fix_time)
            session = self._ledger.close_session(user_id, entry)
            return self._emit(user_id, TimeClockEvent.LEFT_WORK_LOCATION, entry, session)

        region = match(point, regions, self._tie_break)
        if region is None:
            return None
        entry = self._build_entry(
            user_id,
            EntryKind.CLOCK_IN,
            region.id,
            region.name,
            point,
            region.project_id,
            "",
            automatic=True,
            timestamp=fix_time,
        )
        session = self._ledger.open_session(user_id, entry)
        return self._emit(user_id, TimeClockEvent.ENTERED_WORK_LOCATION, entry, session)

    def refresh_location(self, user_id: str, timeout: Optional[float] = None) -> Optional[ClockNotice]:
        """Ask for a fresh fix and apply it.

        A timeout is logged and skipped. A request superseded by a newer one
        for the same user returns None without applying anything.
        """
        request = self._location_source.request_update(user_id, timeout or self._location_timeout)
        with self._requests_lock:
            previous = self._in_flight.get(user_id)
            self._in_flight[user_id] = request
        if previous is not None:
            previous.cancel()
            logger.info("location_request_superseded", user_id=user_id)

        try:
            fix = request.wait()
        finally:
            with self._requests_lock:
                if self._in_flight.get(user_id) is request:
                    del self._in_flight[user_id]

        if request.cancelled:
            return None
        if fix is None:
            logger.info("location_unavailable", user_id=user_id, timeout=timeout or self._location_timeout)
            return None
        return self.handle_location_update(user_id, fix.point, fix.timestamp)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _resolve_point(self, user_id: str, point: Optional[GeoPoint]) -> GeoPoint:
        if point is not None:
            return point
        fix = self._location_source.get_last_known(user_id)
        if fix is None:
            raise LocationUnavailableError(f"No location available for user {user_id}", user_id=user_id)
        return fix.point

    def _clock_out_entry(
        self,
        user_id: str,
        status: TimeClockStatus,
        point: GeoPoint,
        notes: str,
        *,
        automatic: bool,
        timestamp: Optional[dt.datetime],
    ) -> TimeClockEntry:
        return self._build_entry(
            user_id,
            EntryKind.CLOCK_OUT,
            status.current_work_location_id or "",
            status.current_work_location_name or "",
            point,
            status.current_project_id,
            notes,
            automatic=automatic,
            timestamp=timestamp,
        )

    @staticmethod
    def _build_entry(
        user_id: str,
        kind: EntryKind,
        work_location_id: str,
        work_location_name: str,
        point: GeoPoint,
        project_id: Optional[str],
        notes: str,
        *,
        automatic: bool,
        timestamp: Optional[dt.datetime],
    ) -> TimeClockEntry:
        return TimeClockEntry(
            id=new_id(),
            user_id=user_id,
            timestamp=ensure_utc(timestamp) if timestamp else now(),
            kind=kind,
            work_location_id=work_location_id,
            work_location_name=work_location_name,
            latitude=point.latitude,
            longitude=point.longitude,
            project_id=project_id,
            notes=notes or "",
            is_automatic=automatic,
        )
