"""
Injectable time source.

Every entitlement decision takes `now` from a Clock so that reconciliation
and guard checks can be exercised at arbitrary instants in tests.
"""

from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Optional


class Clock:
    """Abstract time source returning timezone-aware UTC datetimes."""

    def now(self) -> datetime:
        raise NotImplementedError


class SystemClock(Clock):
    """Wall-clock time."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FixedClock(Clock):
    """
    Manually controlled clock for tests and replays.

    Usage:
        clock = FixedClock(datetime(2024, 1, 10, tzinfo=timezone.utc))
        clock.advance(days=2)
    """

    def __init__(self, instant: datetime):
        self._lock = Lock()
        self._instant = _ensure_utc(instant)

    def now(self) -> datetime:
        with self._lock:
            return self._instant

    def set(self, instant: datetime) -> None:
        with self._lock:
            self._instant = _ensure_utc(instant)

    def advance(self, **delta) -> datetime:
        """Move the clock forward by timedelta(**delta) and return the new instant."""
        with self._lock:
            self._instant = self._instant + timedelta(**delta)
            return self._instant


def _ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


_default_clock: Optional[Clock] = None


def get_clock() -> Clock:
    """Return the process-wide clock (SystemClock unless overridden)."""
    global _default_clock
    if _default_clock is None:
        _default_clock = SystemClock()
    return _default_clock


def set_clock(clock: Optional[Clock]) -> None:
    """Override the process-wide clock (for tests only)."""
    global _default_clock
    _default_clock = clock
