"""Datamodelle für den SiteClock-Client."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional


@dataclass(slots=True)
class ClockStatus:
    """Darstellung des aktuellen Stempelstatus."""

    user_id: str
    is_clocked_in: bool
    work_location_id: Optional[str] = None
    work_location_name: Optional[str] = None
    project_id: Optional[str] = None
    clocked_in_at: Optional[datetime] = None
    session_id: Optional[str] = None
    duration_ms: Optional[int] = None


@dataclass(slots=True)
class SessionRecord:
    """Eine Arbeitssitzung zwischen Ein- und Ausstempeln."""

    session_id: str
    work_location_id: str
    work_location_name: str
    clocked_in_at: datetime
    clocked_out_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    project_id: Optional[str] = None
    notes: str = ""
    automatic: bool = False

    @property
    def is_open(self) -> bool:
        return self.clocked_out_at is None

    @property
    def duration_minutes(self) -> int:
        return int((self.duration_ms or 0) / 60000)


@dataclass(slots=True)
class ClockResult:
    """Ergebnis einer Standortmeldung oder eines Sprachbefehls."""

    status: ClockStatus
    event: Optional[str] = None
    command: Optional[str] = None
    session: Optional[SessionRecord] = None


__all__ = ["ClockStatus", "SessionRecord", "ClockResult"]
