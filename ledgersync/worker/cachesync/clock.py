"""
Clock abstraction

Every component that stamps or compares time receives a Clock so that lease
expiry, backoff windows and cache validity can be driven deterministically in
tests. All timestamps are naive UTC, matching the database columns.
"""

import threading
from datetime import datetime, timedelta, timezone


class Clock:
    """Source of the current UTC time"""

    def now(self) -> datetime:
        raise NotImplementedError


class SystemClock(Clock):
    """Wall-clock time"""

    def now(self) -> datetime:
        return datetime.now(timezone.utc).replace(tzinfo=None)


class FixedClock(Clock):
    """
    Manually advanced clock for tests and replays.

    Thread-safe so that worker pools can share one instance.
    """

    def __init__(self, start: datetime = datetime(2024, 1, 1)):
        self._now = start
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def advance(self, seconds: float = 0, **kwargs) -> datetime:
        with self._lock:
            self._now = self._now + timedelta(seconds=seconds, **kwargs)
            return self._now

    def set(self, when: datetime):
        with self._lock:
            self._now = when
