"""Circular geofence lookup for work locations."""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field
from math import atan2, cos, radians, sin, sqrt
from typing import Iterable, Optional, Protocol, TypeVar

EARTH_RADIUS_M = 6371000.0


@dataclass(frozen=True, slots=True)
class GeoPoint:
    latitude: float
    longitude: float

    def __post_init__(self) -> None:
        if not -90.0 <= self.latitude <= 90.0:
            raise ValueError(f"latitude out of range: {self.latitude}")
        if not -180.0 <= self.longitude <= 180.0:
            raise ValueError(f"longitude out of range: {self.longitude}")


@dataclass(frozen=True, slots=True)
class LocationFix:
    """A point together with the wall-clock time it was observed."""

    point: GeoPoint
    timestamp: dt.datetime = field(default_factory=lambda: dt.datetime.now(dt.timezone.utc))


class Region(Protocol):
    latitude: float
    longitude: float
    radius_m: float
    is_active: bool


R = TypeVar("R", bound=Region)


def distance_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in meters using the haversine formula."""
    lat1_rad = radians(lat1)
    lat2_rad = radians(lat2)
    delta_lat = radians(lat2 - lat1)
    delta_lon = radians(lon2 - lon1)

    a = sin(delta_lat / 2) ** 2 + cos(lat1_rad) * cos(lat2_rad) * sin(delta_lon / 2) ** 2
    # Rounding can push a just past 1 for nearly antipodal points.
    a = min(1.0, max(0.0, a))
    c = 2 * atan2(sqrt(a), sqrt(1 - a))
    return EARTH_RADIUS_M * c


def distance_to(region: Region, point: GeoPoint) -> float:
    return distance_m(region.latitude, region.longitude, point.latitude, point.longitude)


def contains(region: Region, point: GeoPoint) -> bool:
    # Boundary inclusive.
    return distance_to(region, point) <= region.radius_m


def match(point: GeoPoint, regions: Iterable[R], tie_break: str = "first") -> Optional[R]:
    """Return the active region containing ``point``.

    With ``tie_break="first"`` the first containing region in iteration order
    wins. With ``"nearest"`` the containing region whose center is closest to
    the point wins; equal distances keep iteration order.
    """
    if tie_break not in ("first", "nearest"):
        raise ValueError(f"Unknown tie-break policy: {tie_break}")
    best: Optional[R] = None
    best_distance = 0.0
    for region in regions:
        if not region.is_active:
            continue
        distance = distance_to(region, point)
        if distance > region.radius_m:
            continue
        if tie_break == "first":
            return region
        if best is None or distance < best_distance:
            best = region
            best_distance = distance
    return best
