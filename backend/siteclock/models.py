from __future__ import annotations

import datetime as dt
import enum
import uuid

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    event,
    text,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()

UTC = dt.timezone.utc


def utcnow() -> dt.datetime:
    return dt.datetime.now(UTC)


def new_id() -> str:
    return str(uuid.uuid4())


def _as_utc(value: dt.datetime) -> dt.datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class EntryKind(str, enum.Enum):
    CLOCK_IN = "CLOCK_IN"
    CLOCK_OUT = "CLOCK_OUT"


class WorkLocation(Base):
    __tablename__ = "work_locations"

    id = Column(String(64), primary_key=True, default=new_id)
    name = Column(String(200), nullable=False)
    address = Column(String(255), nullable=False, default="")
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    radius_m = Column(Float, nullable=False, default=100.0)
    project_id = Column(String(64), nullable=True, index=True)
    is_active = Column(Boolean, nullable=False, default=True, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)


class TimeClockEntry(Base):
    """Append-only record of a single clock transition."""

    __tablename__ = "time_clock_entries"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(64), nullable=False, index=True)
    timestamp = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)
    kind = Column(Enum(EntryKind, native_enum=False, length=16), nullable=False)
    work_location_id = Column(String(64), nullable=False)
    work_location_name = Column(String(200), nullable=False)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    project_id = Column(String(64), nullable=True)
    notes = Column(Text, nullable=False, default="")
    is_automatic = Column(Boolean, nullable=False, default=True)
    recorded_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    @property
    def timestamp_utc(self) -> dt.datetime:
        return _as_utc(self.timestamp)


class TimeClockSession(Base):
    __tablename__ = "time_clock_sessions"
    __table_args__ = (
        Index(
            "ux_time_clock_sessions_one_open_per_user",
            "user_id",
            unique=True,
            sqlite_where=text("clock_out_entry_id IS NULL"),
            postgresql_where=text("clock_out_entry_id IS NULL"),
        ),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(64), nullable=False, index=True)
    clock_in_entry_id = Column(String(36), ForeignKey("time_clock_entries.id"), nullable=False, unique=True)
    clock_out_entry_id = Column(String(36), ForeignKey("time_clock_entries.id"), nullable=True, unique=True)
    duration_ms = Column(Integer, nullable=True)
    work_location_id = Column(String(64), nullable=False)
    work_location_name = Column(String(200), nullable=False)
    project_id = Column(String(64), nullable=True)
    session_date = Column(DateTime(timezone=True), nullable=False, index=True)
    notes = Column(Text, nullable=False, default="")

    clock_in_entry = relationship("TimeClockEntry", foreign_keys=[clock_in_entry_id], lazy="joined")
    clock_out_entry = relationship("TimeClockEntry", foreign_keys=[clock_out_entry_id], lazy="joined")

    @property
    def is_open(self) -> bool:
        return self.clock_out_entry_id is None

    def mark_closed(self, entry: TimeClockEntry) -> None:
        clock_in = self.clock_in_entry.timestamp_utc
        delta = entry.timestamp_utc - clock_in
        self.clock_out_entry = entry
        self.clock_out_entry_id = entry.id
        self.duration_ms = int(round(delta.total_seconds() * 1000))
        if entry.notes:
            self.notes = f"{self.notes}\n{entry.notes}" if self.notes else entry.notes


@event.listens_for(TimeClockEntry, "before_update")
def _reject_entry_update(_mapper, _connection, target: TimeClockEntry) -> None:
    raise ValueError(f"Time clock entry {target.id} is immutable")


@event.listens_for(TimeClockEntry, "before_delete")
def _reject_entry_delete(_mapper, _connection, target: TimeClockEntry) -> None:
    raise ValueError(f"Time clock entry {target.id} cannot be deleted")
