"""Clock abstraction and local-day window helpers."""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, tzinfo
from typing import Protocol


class Clock(Protocol):
    def now(self) -> datetime:
        """Return the current time as a timezone-aware datetime."""
        ...


class SystemClock:
    """Wall clock in the host's local timezone (or an explicit one)."""

    def __init__(self, tz: tzinfo | None = None) -> None:
        self._tz = tz

    def now(self) -> datetime:
        if self._tz is not None:
            return datetime.now(self._tz)
        return datetime.now().astimezone()


def start_of_day(moment: datetime) -> datetime:
    """Return local midnight of the day containing *moment* (same tzinfo)."""
    return datetime.combine(moment.date(), time.min, tzinfo=moment.tzinfo)


def local_day_window(moment: datetime) -> tuple[datetime, datetime]:
    """Return ``[start-of-day, start-of-next-day)`` for the day containing *moment*."""
    day_start = start_of_day(moment)
    next_day = moment.date() + timedelta(days=1)
    return day_start, datetime.combine(next_day, time.min, tzinfo=moment.tzinfo)


def midnight_of(day: date, tz: tzinfo | None) -> datetime:
    return datetime.combine(day, time.min, tzinfo=tz)
