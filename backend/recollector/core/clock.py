"""Clock provider.

All token timestamps are derived from a ``Clock`` so issuance and validation
can be made deterministic in tests. Times are timezone-aware UTC and truncated
to whole seconds, matching the NumericDate resolution JWT claims carry.
"""

from datetime import UTC, datetime, timedelta
from enum import Enum


class TimeUnit(str, Enum):
    """Units accepted by ``Clock.adjust``."""

    SECONDS = "seconds"
    MINUTES = "minutes"
    HOURS = "hours"


class Clock:
    """Wall clock backed by the system time."""

    def now(self) -> datetime:
        """Current UTC instant at whole-second resolution."""
        return datetime.now(UTC).replace(microsecond=0)

    @staticmethod
    def adjust(base: datetime | None, amount: int, unit: TimeUnit | None) -> datetime | None:
        """Return ``base`` shifted by ``amount`` of ``unit``.

        ``base`` is returned unchanged when it or ``unit`` is None.
        """
        if base is None or unit is None:
            return base
        return base + timedelta(**{unit.value: amount})


class FrozenClock(Clock):
    """Clock that only moves when told to. Used by tests."""

    def __init__(self, start: datetime | None = None):
        start = start or datetime(2024, 1, 1, tzinfo=UTC)
        if start.tzinfo is None:
            start = start.replace(tzinfo=UTC)
        self._now = start.replace(microsecond=0)

    def now(self) -> datetime:
        return self._now

    def advance(self, amount: int = 1, unit: TimeUnit = TimeUnit.SECONDS) -> datetime:
        self._now = self.adjust(self._now, amount, unit)
        return self._now

    def set(self, value: datetime) -> None:
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        self._now = value.replace(microsecond=0)
