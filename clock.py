"""Wall-clock sources.

The core only ever compares times-of-day inside one calendar date, so
clocks hand out naive datetimes already expressed in the clinic's zone.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo


class Clock:
    def now(self) -> datetime:
        raise NotImplementedError


class SystemClock(Clock):
    def __init__(self, timezone: Optional[str] = None) -> None:
        self.tz = ZoneInfo(timezone) if timezone else None

    def now(self) -> datetime:
        if self.tz is None:
            return datetime.now()
        return datetime.now(self.tz).replace(tzinfo=None)


class FixedClock(Clock):
    """Clock that only moves when told to."""

    def __init__(self, now: datetime) -> None:
        self._now = now

    def now(self) -> datetime:
        return self._now

    def set(self, now: datetime) -> None:
        self._now = now

    def advance(self, **kwargs) -> datetime:
        self._now = self._now + timedelta(**kwargs)
        return self._now
