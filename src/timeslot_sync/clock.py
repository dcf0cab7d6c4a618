"""
Wall-clock sources. Everything that reads "now" takes a Clock.
"""

import datetime
from typing import Protocol


class Clock(Protocol):
    def now(self) -> datetime.datetime: ...


class SystemClock:
    """Timezone-aware UTC wall clock."""

    def now(self) -> datetime.datetime:
        return datetime.datetime.now(datetime.timezone.utc)


class FixedClock:
    """A clock that only moves when told to."""

    def __init__(self, instant: datetime.datetime):
        if instant.tzinfo is None:
            raise ValueError("FixedClock requires a timezone-aware datetime")
        self.instant = instant

    def now(self) -> datetime.datetime:
        return self.instant

    def set(self, instant: datetime.datetime):
        self.instant = instant

    def advance(self, delta: datetime.timedelta | None = None, **kwargs):
        """Move forward by ``delta`` or by timedelta keyword arguments."""
        self.instant += delta if delta is not None else datetime.timedelta(**kwargs)
