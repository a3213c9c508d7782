from __future__ import annotations

import datetime as dt
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_serializer, model_validator


def _serialize_datetime(value: dt.datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=dt.timezone.utc)
    else:
        value = value.astimezone(dt.timezone.utc)
    return value.isoformat()


def _optional_datetime(value: Optional[dt.datetime]) -> Optional[str]:
    return _serialize_datetime(value) if value else None


class _CoordinatesMixin(BaseModel):
    @field_validator("latitude", check_fields=False)
    @classmethod
    def _check_latitude(cls, value: Optional[float]) -> Optional[float]:
        if value is not None and not -90.0 <= value <= 90.0:
            raise ValueError("latitude must be between -90 and 90")
        return value

    @field_validator("longitude", check_fields=False)
    @classmethod
    def _check_longitude(cls, value: Optional[float]) -> Optional[float]:
        if value is not None and not -180.0 <= value <= 180.0:
            raise ValueError("longitude must be between -180 and 180")
        return value


class WorkLocationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: str
    name: str
    address: str
    latitude: float
    longitude: float
    radius_m: float
    project_id: Optional[str]
    is_active: bool


class WorkLocationCreateRequest(_CoordinatesMixin):
    id: Optional[str] = None
    name: str
    address: str = ""
    latitude: float
    longitude: float
    radius_m: Optional[float] = None
    project_id: Optional[str] = None
    is_active: bool = True


class WorkLocationUpdateRequest(_CoordinatesMixin):
    name: Optional[str] = None
    address: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    radius_m: Optional[float] = None
    project_id: Optional[str] = None
    is_active: Optional[bool] = None


class TimeClockEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: str
    user_id: str
    timestamp: dt.datetime
    kind: str
    work_location_id: str
    work_location_name: str
    latitude: float
    longitude: float
    project_id: Optional[str]
    notes: str
    is_automatic: bool

    @field_validator("kind", mode="before")
    @classmethod
    def _kind_value(cls, value: Any) -> str:
        return getattr(value, "value", value)

    @model_serializer(mode="plain", when_used="json")
    def _serialize(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "timestamp": _serialize_datetime(self.timestamp),
            "kind": self.kind,
            "work_location_id": self.work_location_id,
            "work_location_name": self.work_location_name,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "project_id": self.project_id,
            "notes": self.notes,
            "is_automatic": self.is_automatic,
        }


class TimeClockSessionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: str
    user_id: str
    clock_in_entry: TimeClockEntryResponse
    clock_out_entry: Optional[TimeClockEntryResponse] = None
    duration_ms: Optional[int] = None
    work_location_id: str
    work_location_name: str
    project_id: Optional[str]
    session_date: dt.datetime
    notes: str

    @model_serializer(mode="plain", when_used="json")
    def _serialize(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "clock_in_entry": self.clock_in_entry._serialize(),
            "clock_out_entry": self.clock_out_entry._serialize() if self.clock_out_entry else None,
            "duration_ms": self.duration_ms,
            "work_location_id": self.work_location_id,
            "work_location_name": self.work_location_name,
            "project_id": self.project_id,
            "session_date": _serialize_datetime(self.session_date),
            "notes": self.notes,
            "is_open": self.clock_out_entry is None,
        }


class TimeClockStatusResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    user_id: str
    state: str
    is_clocked_in: bool
    current_work_location_id: Optional[str] = None
    current_work_location_name: Optional[str] = None
    current_project_id: Optional[str] = None
    last_clock_in_time: Optional[dt.datetime] = None
    current_session_id: Optional[str] = None
    current_session_duration_ms: Optional[int] = None

    @model_serializer(mode="plain", when_used="json")
    def _serialize(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "state": self.state,
            "is_clocked_in": self.is_clocked_in,
            "current_work_location_id": self.current_work_location_id,
            "current_work_location_name": self.current_work_location_name,
            "current_project_id": self.current_project_id,
            "last_clock_in_time": _optional_datetime(self.last_clock_in_time),
            "current_session_id": self.current_session_id,
            "current_session_duration_ms": self.current_session_duration_ms,
        }


class ClockInRequest(_CoordinatesMixin):
    user_id: str = Field(min_length=1)
    work_location_id: str
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    project_id: Optional[str] = None
    notes: str = ""
    timestamp: Optional[dt.datetime] = None

    @model_validator(mode="after")
    def _coordinates_together(self) -> "ClockInRequest":
        if (self.latitude is None) != (self.longitude is None):
            raise ValueError("latitude and longitude must be given together")
        return self


class ClockOutRequest(_CoordinatesMixin):
    user_id: str = Field(min_length=1)
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    notes: str = ""
    timestamp: Optional[dt.datetime] = None

    @model_validator(mode="after")
    def _coordinates_together(self) -> "ClockOutRequest":
        if (self.latitude is None) != (self.longitude is None):
            raise ValueError("latitude and longitude must be given together")
        return self


class LocationUpdateRequest(_CoordinatesMixin):
    user_id: str = Field(min_length=1)
    latitude: float
    longitude: float
    timestamp: Optional[dt.datetime] = None


class LocationUpdateResponse(BaseModel):
    event: Optional[str] = None
    session: Optional[TimeClockSessionResponse] = None
    status: TimeClockStatusResponse


class CommandRequest(BaseModel):
    user_id: str = Field(min_length=1)
    text: str


class CommandResponse(BaseModel):
    command: str
    event: str
    session: TimeClockSessionResponse
    status: TimeClockStatusResponse


class ActivityResponse(BaseModel):
    event: str
    session_id: str
    work_location_id: str
    work_location_name: str
    timestamp: dt.datetime
    is_automatic: bool

    @model_serializer(mode="plain", when_used="json")
    def _serialize(self) -> dict[str, Any]:
        return {
            "event": self.event,
            "session_id": self.session_id,
            "work_location_id": self.work_location_id,
            "work_location_name": self.work_location_name,
            "timestamp": _serialize_datetime(self.timestamp),
            "is_automatic": self.is_automatic,
        }


class DayHoursResponse(BaseModel):
    day: dt.date
    work_ms: int
    hours: float
    session_count: int
    open_sessions: int


class HoursResponse(BaseModel):
    user_id: str
    from_date: dt.date
    to_date: dt.date
    total_hours: float
    days: List[DayHoursResponse]


class ErrorResponse(BaseModel):
    detail: str
    error: str
