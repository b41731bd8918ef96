"""
Clock -- injectable time source.

Due dates, overdue checks, workflow codes and rule effective windows all
read the current time through a Clock, so no workflow code calls
``datetime.now()`` directly.  ``SystemClock`` is the production source;
``DeterministicClock`` lets tests walk a workflow past its due date.

Every value a Clock returns is timezone-aware UTC, matching the
``UTCDateTime`` columns it is compared against.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone

DEFAULT_TEST_EPOCH = datetime(2024, 1, 15, 9, 0, 0, tzinfo=timezone.utc)


class Clock(ABC):
    """Source of the current time, injected into every service."""

    @abstractmethod
    def now(self) -> datetime:
        """Current timezone-aware UTC time."""
        ...


class SystemClock(Clock):

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class DeterministicClock(Clock):
    """
    Clock that only moves when told to.

    ``now()`` is stable between calls.  ``advance()`` moves it forward by
    seconds and/or days, ``tick()`` by one second, and ``set_time()``
    jumps to an absolute instant.
    """

    def __init__(self, fixed_time: datetime | None = None):
        self._current = _as_utc(fixed_time or DEFAULT_TEST_EPOCH)

    def now(self) -> datetime:
        return self._current

    def set_time(self, time: datetime) -> None:
        self._current = _as_utc(time)

    def advance(self, seconds: int = 1, *, days: int = 0) -> None:
        self._current += timedelta(days=days, seconds=seconds)

    def tick(self) -> datetime:
        self.advance(1)
        return self._current


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        raise ValueError(f"Clock times must be timezone-aware: {value!r}")
    return value.astimezone(timezone.utc)
