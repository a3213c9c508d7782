"""Authoritative record of clock entries and work sessions."""

from __future__ import annotations

import datetime as dt
from contextlib import contextmanager
from dataclasses import dataclass
from threading import Lock, RLock
from typing import Dict, Iterator, List, Optional

from sqlalchemy import and_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from .database import SessionFactory, db_session
from .errors import AlreadyClockedInError, InvalidDurationError, NotClockedInError, PersistenceError
from .logging import get_logger
from .models import EntryKind, TimeClockEntry, TimeClockSession, new_id
from .utils import ensure_utc

logger = get_logger(__name__)

MS_PER_HOUR = 3_600_000
OPEN_SESSION_INDEX = "ux_time_clock_sessions_one_open_per_user"


def _is_open_session_conflict(exc: IntegrityError) -> bool:
    message = str(exc.orig)
    return OPEN_SESSION_INDEX in message or "time_clock_sessions.user_id" in message


@dataclass(frozen=True, slots=True)
class TimeClockStatus:
    """Snapshot of a user's clock state, derived from the open session."""

    is_clocked_in: bool = False
    current_work_location_id: Optional[str] = None
    current_work_location_name: Optional[str] = None
    current_project_id: Optional[str] = None
    last_clock_in_time: Optional[dt.datetime] = None
    current_session_id: Optional[str] = None

    @classmethod
    def from_session(cls, session: Optional[TimeClockSession]) -> "TimeClockStatus":
        if session is None or not session.is_open:
            return cls()
        return cls(
            is_clocked_in=True,
            current_work_location_id=session.work_location_id,
            current_work_location_name=session.work_location_name,
            current_project_id=session.project_id,
            last_clock_in_time=session.clock_in_entry.timestamp_utc,
            current_session_id=session.id,
        )

    def elapsed_ms(self, at: Optional[dt.datetime] = None) -> Optional[int]:
        if not self.is_clocked_in or self.last_clock_in_time is None:
            return None
        reference = at or dt.datetime.now(dt.timezone.utc)
        return max(int((reference - self.last_clock_in_time).total_seconds() * 1000), 0)


CLOCKED_OUT = TimeClockStatus()


class SessionLedger:
    """Stores entries and sessions and guards the one-open-session rule.

    Mutations for a user run under that user's lock; different users never
    share a lock. The status cache is only written after the database
    transaction committed.
    """

    def __init__(self, session_factory: SessionFactory):
        self._session_factory = session_factory
        self._registry_lock = Lock()
        self._user_locks: Dict[str, RLock] = {}
        self._status: Dict[str, TimeClockStatus] = {}

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------
    def _lock_for(self, user_id: str) -> RLock:
        with self._registry_lock:
            lock = self._user_locks.get(user_id)
            if lock is None:
                lock = RLock()
                self._user_locks[user_id] = lock
            return lock

    @contextmanager
    def user_lock(self, user_id: str) -> Iterator[None]:
        lock = self._lock_for(user_id)
        with lock:
            yield

    @contextmanager
    def _transaction(self, user_id: str, operation: str) -> Iterator[Session]:
        try:
            with db_session(self._session_factory) as session:
                yield session
        except IntegrityError as exc:
            if operation == "open_session" and _is_open_session_conflict(exc):
                raise AlreadyClockedInError(
                    f"User {user_id} already has an open session", user_id=user_id
                ) from exc
            raise PersistenceError(f"Could not {operation.replace('_', ' ')}: {exc.orig}", user_id=user_id) from exc
        except SQLAlchemyError as exc:
            logger.error("ledger_write_failed", user_id=user_id, operation=operation, error=str(exc))
            raise PersistenceError(f"Could not {operation.replace('_', ' ')}: {exc}", user_id=user_id) from exc

    @contextmanager
    def _resync_on_conflict(self, user_id: str) -> Iterator[None]:
        # Another ledger on the same database may have changed the user's
        # open session; the store wins over the cache.
        try:
            yield
        except (AlreadyClockedInError, NotClockedInError) as exc:
            status = self.refresh_status(user_id)
            logger.info("status_resynced", user_id=user_id, reason=exc.code, is_clocked_in=status.is_clocked_in)
            raise

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------
    def open_session(self, user_id: str, entry: TimeClockEntry) -> TimeClockSession:
        self._check_entry(user_id, entry, EntryKind.CLOCK_IN)
        with self.user_lock(user_id):
            with self._resync_on_conflict(user_id), self._transaction(user_id, "open_session") as db:
                if self._query_open_session(db, user_id) is not None:
                    raise AlreadyClockedInError(f"User {user_id} is already clocked in", user_id=user_id)
                db.add(entry)
                session = TimeClockSession(
                    id=new_id(),
                    user_id=user_id,
                    clock_in_entry_id=entry.id,
                    work_location_id=entry.work_location_id,
                    work_location_name=entry.work_location_name,
                    project_id=entry.project_id,
                    session_date=entry.timestamp,
                    notes=entry.notes or "",
                )
                session.clock_in_entry = entry
                session.clock_out_entry = None
                db.add(session)
            status = TimeClockStatus.from_session(session)
            self._status[user_id] = status
        logger.info(
            "session_opened",
            user_id=user_id,
            session_id=session.id,
            work_location_id=session.work_location_id,
            automatic=entry.is_automatic,
        )
        return session

    def close_session(self, user_id: str, entry: TimeClockEntry) -> TimeClockSession:
        self._check_entry(user_id, entry, EntryKind.CLOCK_OUT)
        with self.user_lock(user_id):
            with self._resync_on_conflict(user_id), self._transaction(user_id, "close_session") as db:
                session = self._query_open_session(db, user_id)
                if session is None:
                    raise NotClockedInError(f"User {user_id} is not clocked in", user_id=user_id)
                clock_in = session.clock_in_entry.timestamp_utc
                if entry.timestamp_utc < clock_in:
                    logger.warning(
                        "clock_out_before_clock_in",
                        user_id=user_id,
                        session_id=session.id,
                        clock_in=clock_in.isoformat(),
                        clock_out=entry.timestamp_utc.isoformat(),
                    )
                    raise InvalidDurationError(
                        f"Clock-out at {entry.timestamp_utc.isoformat()} precedes clock-in at {clock_in.isoformat()}",
                        user_id=user_id,
                    )
                db.add(entry)
                session.mark_closed(entry)
                db.add(session)
            self._status[user_id] = CLOCKED_OUT
        logger.info(
            "session_closed",
            user_id=user_id,
            session_id=session.id,
            duration_ms=session.duration_ms,
            automatic=entry.is_automatic,
        )
        return session

    @staticmethod
    def _check_entry(user_id: str, entry: TimeClockEntry, kind: EntryKind) -> None:
        if entry.user_id != user_id:
            raise ValueError(f"Entry belongs to {entry.user_id}, not {user_id}")
        if entry.kind != kind:
            raise ValueError(f"Expected a {kind.value} entry, got {entry.kind}")
        if entry.id is None:
            entry.id = new_id()
        if entry.timestamp is None:
            entry.timestamp = dt.datetime.now(dt.timezone.utc)
        else:
            entry.timestamp = ensure_utc(entry.timestamp)
        if entry.notes is None:
            entry.notes = ""
        if entry.is_automatic is None:
            entry.is_automatic = True

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    @staticmethod
    def _query_open_session(db: Session, user_id: str) -> Optional[TimeClockSession]:
        return (
            db.query(TimeClockSession)
            .filter(
                and_(
                    TimeClockSession.user_id == user_id,
                    TimeClockSession.clock_out_entry_id.is_(None),
                )
            )
            .one_or_none()
        )

    def find_open_session(self, user_id: str) -> Optional[TimeClockSession]:
        with db_session(self._session_factory) as db:
            return self._query_open_session(db, user_id)

    def entries_for(self, user_id: str) -> List[TimeClockEntry]:
        with db_session(self._session_factory) as db:
            return (
                db.query(TimeClockEntry)
                .filter(TimeClockEntry.user_id == user_id)
                .order_by(TimeClockEntry.timestamp.asc(), TimeClockEntry.recorded_at.asc())
                .all()
            )

    def sessions_for(self, user_id: str) -> List[TimeClockSession]:
        with db_session(self._session_factory) as db:
            return (
                db.query(TimeClockSession)
                .filter(TimeClockSession.user_id == user_id)
                .order_by(TimeClockSession.session_date.asc())
                .all()
            )

    def sessions_in_range(self, user_id: str, start: dt.datetime, end: dt.datetime) -> List[TimeClockSession]:
        start_utc = ensure_utc(start)
        end_utc = ensure_utc(end)
        with db_session(self._session_factory) as db:
            return (
                db.query(TimeClockSession)
                .filter(
                    and_(
                        TimeClockSession.user_id == user_id,
                        TimeClockSession.session_date >= start_utc,
                        TimeClockSession.session_date <= end_utc,
                    )
                )
                .order_by(TimeClockSession.session_date.asc())
                .all()
            )

    def total_hours(self, user_id: str, start: dt.datetime, end: dt.datetime) -> float:
        sessions = self.sessions_in_range(user_id, start, end)
        total_ms = sum(session.duration_ms or 0 for session in sessions if not session.is_open)
        return total_ms / MS_PER_HOUR

    def status_for(self, user_id: str) -> TimeClockStatus:
        with self.user_lock(user_id):
            status = self._status.get(user_id)
            if status is None:
                status = TimeClockStatus.from_session(self.find_open_session(user_id))
                self._status[user_id] = status
            return status

    def refresh_status(self, user_id: str) -> TimeClockStatus:
        """Rebuild the cached status from the stored open session."""
        with self.user_lock(user_id):
            status = TimeClockStatus.from_session(self.find_open_session(user_id))
            self._status[user_id] = status
            return status

    def invalidate_status(self, user_id: str) -> None:
        with self.user_lock(user_id):
            self._status.pop(user_id, None)

    def count_open_sessions(self, user_id: str) -> int:
        with db_session(self._session_factory) as db:
            return (
                db.query(TimeClockSession)
                .filter(
                    TimeClockSession.user_id == user_id,
                    TimeClockSession.clock_out_entry_id.is_(None),
                )
                .count()
            )
