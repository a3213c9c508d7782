from __future__ import annotations


class ClockError(Exception):
    """Base class for failures surfaced by the clock subsystem."""

    code = "clock_error"

    def __init__(self, message: str, *, user_id: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.user_id = user_id


class AlreadyClockedInError(ClockError):
    """A clock-in was attempted while the user already has an open session."""

    code = "already_clocked_in"


class NotClockedInError(ClockError):
    """A clock-out was attempted without an open session."""

    code = "not_clocked_in"


class InvalidDurationError(ClockError):
    """Clock-out timestamp precedes the clock-in timestamp of the open session."""

    code = "invalid_duration"


class LocationUnavailableError(ClockError):
    """No location fix could be obtained within the timeout."""

    code = "location_unavailable"


class UnknownWorkLocationError(ClockError):
    code = "unknown_work_location"


class PersistenceError(ClockError):
    """The backing store rejected a write."""

    code = "persistence_error"
