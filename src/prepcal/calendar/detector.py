"""Today's-meetings view derived from the synchronizer's stored events."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta

from prepcal.calendar.models import CalendarEvent, Meeting, TodaysMeetingsResult
from prepcal.core.clock import Clock, SystemClock, local_day_window

logger = logging.getLogger(__name__)

DEFAULT_DETECTION_TTL = timedelta(minutes=5)

EventReader = Callable[[], Awaitable[list[CalendarEvent]]]


def overlaps_window(event: CalendarEvent, window_start: datetime, window_end: datetime) -> bool:
    """True when *event* starts inside ``[window_start, window_end)`` or spans ``window_start``."""
    if window_start <= event.start_date < window_end:
        return True
    return event.start_date < window_start < event.end_date


class MeetingDetector:
    """Filter stored events to today's meetings and cache the result briefly.

    The detector only reads stored events; it never triggers an extraction.
    Callers that change the stored events call :meth:`invalidate_cache`.
    """

    def __init__(
        self,
        read_events: EventReader,
        *,
        clock: Clock | None = None,
        ttl: timedelta = DEFAULT_DETECTION_TTL,
    ) -> None:
        self._read_events = read_events
        self._clock = clock or SystemClock()
        self._ttl = ttl
        self._cached: TodaysMeetingsResult | None = None
        self._cached_at: datetime | None = None

    async def get_todays_meetings(self) -> TodaysMeetingsResult:
        now = self._clock.now()
        if self._cached is not None and self._cached_at is not None:
            if now - self._cached_at < self._ttl and self._cached_at.date() == now.date():
                return self._cached

        try:
            events = await self._read_events()
        except Exception:
            logger.exception("Failed to read stored events; reporting no meetings")
            return TodaysMeetingsResult(meetings=[], total_meetings=0, detected_at=now)

        window_start, window_end = local_day_window(now)
        meetings = [
            Meeting(**event.model_dump())
            for event in events
            if overlaps_window(event, window_start, window_end)
        ]
        meetings.sort(key=lambda meeting: meeting.start_date)

        result = TodaysMeetingsResult(
            meetings=meetings, total_meetings=len(meetings), detected_at=now
        )
        self._cached = result
        self._cached_at = now
        logger.debug("Detected %d meetings for today", result.total_meetings)
        return result

    async def has_todays_meetings(self) -> bool:
        result = await self.get_todays_meetings()
        return result.total_meetings > 0

    def invalidate_cache(self) -> None:
        self._cached = None
        self._cached_at = None
