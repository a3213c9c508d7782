from __future__ import annotations

import enum
from collections import deque
from dataclasses import dataclass
from queue import Full, Queue
from threading import Lock, Thread
from typing import Callable, Deque, Dict, List, Optional

from .ledger import TimeClockStatus
from .logging import get_logger
from .models import TimeClockEntry, TimeClockSession

logger = get_logger(__name__)


class TimeClockEvent(str, enum.Enum):
    ENTERED_WORK_LOCATION = "ENTERED_WORK_LOCATION"
    LEFT_WORK_LOCATION = "LEFT_WORK_LOCATION"
    MANUAL_CLOCK_IN = "MANUAL_CLOCK_IN"
    MANUAL_CLOCK_OUT = "MANUAL_CLOCK_OUT"


@dataclass(frozen=True, slots=True)
class ClockNotice:
    """What observers receive after a successful transition."""

    user_id: str
    event: TimeClockEvent
    entry: TimeClockEntry
    session: TimeClockSession
    status: TimeClockStatus


ClockListener = Callable[[ClockNotice], None]

_STOP = object()


class QueuedListener:
    """Deliver notices to a slow listener from a dedicated worker thread.

    The queue is bounded; when it is full the notice is dropped and logged so
    a stalled listener never holds up a clock transition.
    """

    def __init__(self, listener: ClockListener, maxsize: int = 100, name: Optional[str] = None):
        self._listener = listener
        self._queue: "Queue[object]" = Queue(maxsize=maxsize)
        self._name = name or getattr(listener, "__name__", "listener")
        self._thread = Thread(target=self._run, name=f"clock-listener-{self._name}", daemon=True)
        self._thread.start()

    def __call__(self, notice: ClockNotice) -> None:
        try:
            self._queue.put_nowait(notice)
        except Full:
            logger.warning(
                "listener_queue_full",
                listener=self._name,
                user_id=notice.user_id,
                clock_event=notice.event.value,
            )

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                self._listener(item)  # type: ignore[arg-type]
            except Exception:
                logger.exception("listener_failed", listener=self._name)
            finally:
                self._queue.task_done()

    def join(self) -> None:
        """Block until every queued notice was delivered."""
        self._queue.join()

    def close(self, timeout: Optional[float] = None) -> None:
        self._queue.put(_STOP)
        self._thread.join(timeout)


class ActivityFeed:
    """Keeps the most recent notices per user for clients that poll."""

    def __init__(self, size: int = 50):
        self._size = size
        self._lock = Lock()
        self._notices: Dict[str, Deque[ClockNotice]] = {}

    def __call__(self, notice: ClockNotice) -> None:
        with self._lock:
            notices = self._notices.get(notice.user_id)
            if notices is None:
                notices = deque(maxlen=self._size)
                self._notices[notice.user_id] = notices
            notices.append(notice)

    def recent(self, user_id: str) -> List[ClockNotice]:
        """Newest first."""
        with self._lock:
            return list(reversed(self._notices.get(user_id, ())))
