# /chatflow/utils/clock.py

import time
from datetime import datetime, timedelta, timezone


class Clock:
    """Wall clock for deadlines plus a monotonic clock for budgets."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def monotonic(self) -> float:
        return time.monotonic()


class FrozenClock(Clock):
    """Manually advanced clock, used by tests and replay tooling."""

    def __init__(self, start: datetime | None = None):
        self._now = start or datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)
        self._mono = 0.0

    def now(self) -> datetime:
        return self._now

    def monotonic(self) -> float:
        return self._mono

    def advance(self, **kwargs) -> datetime:
        delta = timedelta(**kwargs)
        self._now += delta
        self._mono += delta.total_seconds()
        return self._now


def ensure_utc(value: datetime | None) -> datetime | None:
    """Mongo hands back naive datetimes; treat them as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


system_clock = Clock()
