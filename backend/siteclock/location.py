"""Location fixes pushed by field devices.

Devices publish fixes; the clock engine either consumes a published fix
directly or asks for a fresh one and waits for the next publish, bounded by a
timeout. A newer request for the same user cancels the older one.
"""

from __future__ import annotations

import time
from collections import deque
from threading import Condition
from typing import Deque, Dict, List, Optional, Protocol

from .geofence import LocationFix
from .logging import get_logger

logger = get_logger(__name__)


class LocationRequest(Protocol):
    cancelled: bool

    def wait(self) -> Optional[LocationFix]:
        ...

    def cancel(self) -> None:
        ...


class LocationSource(Protocol):
    def get_last_known(self, user_id: str) -> Optional[LocationFix]:
        ...

    def request_update(self, user_id: str, timeout: float) -> LocationRequest:
        ...


class PendingFix:
    """A single outstanding request for the next fix of one user."""

    def __init__(self, source: "PushLocationSource", user_id: str, after_seq: int, timeout: float):
        self._source = source
        self.user_id = user_id
        self.after_seq = after_seq
        self.timeout = timeout
        self.cancelled = False

    def wait(self) -> Optional[LocationFix]:
        return self._source._await_fix(self)

    def cancel(self) -> None:
        self._source._cancel(self)


class PushLocationSource:
    def __init__(self, history_size: int = 100):
        self._condition = Condition()
        self._history: Dict[str, Deque[LocationFix]] = {}
        self._seq: Dict[str, int] = {}
        self._history_size = history_size

    def publish(self, user_id: str, fix: LocationFix) -> None:
        with self._condition:
            history = self._history.get(user_id)
            if history is None:
                history = deque(maxlen=self._history_size)
                self._history[user_id] = history
            history.append(fix)
            self._seq[user_id] = self._seq.get(user_id, 0) + 1
            self._condition.notify_all()
        logger.debug("location_published", user_id=user_id, latitude=fix.point.latitude, longitude=fix.point.longitude)

    def get_last_known(self, user_id: str) -> Optional[LocationFix]:
        with self._condition:
            history = self._history.get(user_id)
            return history[-1] if history else None

    def history(self, user_id: str) -> List[LocationFix]:
        with self._condition:
            return list(self._history.get(user_id, ()))

    def request_update(self, user_id: str, timeout: float) -> PendingFix:
        with self._condition:
            return PendingFix(self, user_id, self._seq.get(user_id, 0), timeout)

    def _await_fix(self, request: PendingFix) -> Optional[LocationFix]:
        deadline = time.monotonic() + request.timeout
        with self._condition:
            while True:
                if request.cancelled:
                    return None
                if self._seq.get(request.user_id, 0) > request.after_seq:
                    return self._history[request.user_id][-1]
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return None
                self._condition.wait(remaining)

    def _cancel(self, request: PendingFix) -> None:
        with self._condition:
            request.cancelled = True
            self._condition.notify_all()
