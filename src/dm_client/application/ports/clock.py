from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Protocol

_TICK = timedelta(microseconds=1)


class Clock(Protocol):
    """Source of timezone-aware UTC timestamps."""

    def now(self) -> datetime: ...


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class MonotonicClock:
    """Wraps a clock so that consecutive readings strictly increase.

    Timestamps that order a message log go through one of these; a reading
    equal to or behind the previous one is moved one microsecond past it.
    """

    def __init__(self, clock: Clock | None = None) -> None:
        self._clock = clock or SystemClock()
        self._last: datetime | None = None

    def now(self) -> datetime:
        current = self._clock.now()
        if self._last is not None and current <= self._last:
            current = self._last + _TICK
        self._last = current
        return current
