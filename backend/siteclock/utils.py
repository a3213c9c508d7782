from __future__ import annotations

import datetime as dt
from typing import Optional, Tuple
from zoneinfo import ZoneInfo

from .config import settings

UTC = dt.timezone.utc
LOCAL_TZ = ZoneInfo(settings.timezone)


def now() -> dt.datetime:
    return dt.datetime.now(UTC)


def ensure_utc(value: dt.datetime) -> dt.datetime:
    """Interpret naive values as local wall-clock time and convert to UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=LOCAL_TZ)
    return value.astimezone(UTC)


def from_db_datetime(value: Optional[dt.datetime]) -> Optional[dt.datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def day_bounds(day: dt.date) -> Tuple[dt.datetime, dt.datetime]:
    """UTC bounds of a local calendar day, both inclusive."""
    start_local = dt.datetime.combine(day, dt.time.min, tzinfo=LOCAL_TZ)
    end_local = dt.datetime.combine(day, dt.time.max, tzinfo=LOCAL_TZ)
    return start_local.astimezone(UTC), end_local.astimezone(UTC)


def local_day(value: dt.datetime) -> dt.date:
    return from_db_datetime(value).astimezone(LOCAL_TZ).date()
