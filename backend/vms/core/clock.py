"""Injected clock.

"Today" is never read from a global inside the services: every service and
scheduled job receives a clock, so recalculation can run against any date.
Times are naive wall-clock values in the venue's timezone.
"""

from datetime import date, datetime, timedelta
from typing import Optional, Protocol
from zoneinfo import ZoneInfo

from vms.core.config import settings


class Clock(Protocol):
    def now(self) -> datetime: ...

    def today(self) -> date: ...


class SystemClock:
    """Wall clock of the venue timezone."""

    def __init__(self, timezone: Optional[str] = None):
        self.tz = ZoneInfo(timezone or settings.timezone)

    def now(self) -> datetime:
        return datetime.now(self.tz).replace(tzinfo=None, microsecond=0)

    def today(self) -> date:
        return self.now().date()


class FixedClock:
    """Clock pinned to a given instant; used by tests and as-of recalculation."""

    def __init__(self, current: datetime):
        self.current = current

    @classmethod
    def on(cls, day: date, hour: int = 9, minute: int = 0) -> "FixedClock":
        return cls(datetime(day.year, day.month, day.day, hour, minute))

    def now(self) -> datetime:
        return self.current

    def today(self) -> date:
        return self.current.date()

    def advance(self, **kwargs) -> None:
        self.current = self.current + timedelta(**kwargs)

    def set(self, current: datetime) -> None:
        self.current = current
