"""``.ics`` file import source."""

from __future__ import annotations

import asyncio
import logging
import os
import uuid
from datetime import date, datetime, timedelta, tzinfo
from pathlib import Path, PurePath
from typing import Any

from icalendar import Calendar

from prepcal.calendar.errors import CalendarError, CalendarErrorCode
from prepcal.calendar.models import (
    UNTITLED_EVENT,
    CalendarEvent,
    CalendarImportResult,
    EventSource,
    RecordError,
)
from prepcal.core.clock import Clock, SystemClock, local_day_window, midnight_of

logger = logging.getLogger(__name__)

ICS_EXTENSION = ".ics"
MAX_ICS_FILE_BYTES = 10 * 1024 * 1024
_ONE_DAY = timedelta(hours=24)


class FileImportAdapter:
    """Validate and parse a user-supplied calendar file, keeping today's events."""

    def __init__(self, *, clock: Clock | None = None, base_dir: Path | None = None) -> None:
        self._clock = clock or SystemClock()
        self._base_dir = base_dir

    def validate_path(self, file_path: str | os.PathLike[str]) -> Path:
        """Return the resolved path, or raise ``INVALID_FILE``.

        Checks run in order: path traversal, extension, existence, size.
        """
        raw = os.fspath(file_path)
        base = os.path.abspath(self._base_dir or os.getcwd())
        resolved = os.path.abspath(os.path.join(base, raw))

        try:
            relative = os.path.relpath(resolved, base)
        except ValueError as exc:
            raise CalendarError("Path traversal not allowed", CalendarErrorCode.INVALID_FILE) from exc

        if relative.startswith("..") or os.path.isabs(relative):
            raise CalendarError("Path traversal not allowed", CalendarErrorCode.INVALID_FILE)
        if ".." in PurePath(relative).parts or ".." in PurePath(raw).parts:
            raise CalendarError("Path traversal not allowed", CalendarErrorCode.INVALID_FILE)

        if not raw.lower().endswith(ICS_EXTENSION):
            raise CalendarError(
                "File must be an .ics calendar file", CalendarErrorCode.INVALID_FILE
            )

        path = Path(resolved)
        if not path.is_file():
            raise CalendarError("File does not exist", CalendarErrorCode.INVALID_FILE)

        if path.stat().st_size > MAX_ICS_FILE_BYTES:
            raise CalendarError("ICS file too large (max 10MB)", CalendarErrorCode.INVALID_FILE)

        return path

    async def import_file(self, file_path: str | os.PathLike[str]) -> CalendarImportResult:
        path = self.validate_path(file_path)
        now = self._clock.now()
        events, errors = await asyncio.to_thread(self._parse_file, path, now)
        logger.info("Imported %d of today's events from %s", len(events), path.name)
        return CalendarImportResult.build(
            events,
            source=EventSource.file,
            imported_at=self._clock.now(),
            errors=errors,
        )

    def _parse_file(
        self, path: Path, now: datetime
    ) -> tuple[list[CalendarEvent], list[RecordError]]:
        try:
            calendar = Calendar.from_ical(path.read_bytes())
        except (OSError, ValueError) as exc:
            raise CalendarError(
                f"Failed to parse ICS file: {exc}", CalendarErrorCode.PARSE_ERROR
            ) from exc
        return parse_calendar_events(calendar, now=now)


def parse_calendar_events(
    calendar: Calendar, *, now: datetime
) -> tuple[list[CalendarEvent], list[RecordError]]:
    """Return the VEVENTs of *calendar* whose start falls on *now*'s local day."""
    tz = now.tzinfo
    day_start, day_end = local_day_window(now)
    events: list[CalendarEvent] = []
    errors: list[RecordError] = []

    for component in calendar.walk("VEVENT"):
        try:
            event = _component_to_event(component, tz)
        except (KeyError, TypeError, ValueError) as exc:
            uid = str(component.get("UID", "")) or None
            logger.warning("Failed to parse ICS event %s: %s", uid or "<no uid>", exc)
            errors.append(RecordError(record=uid, error=str(exc)))
            continue
        if day_start <= event.start_date < day_end:
            events.append(event)

    return events, errors


def _component_to_event(component: Any, tz: tzinfo | None) -> CalendarEvent:
    dtstart = component.get("DTSTART")
    if dtstart is None:
        raise ValueError("VEVENT is missing DTSTART")
    raw_start = dtstart.dt
    start = _to_local_datetime(raw_start, tz)

    dtend = component.get("DTEND")
    duration = component.get("DURATION")
    if dtend is not None:
        end = _to_local_datetime(dtend.dt, tz)
    elif duration is not None:
        end = start + duration.dt
    elif _is_date_only(raw_start):
        end = start + _ONE_DAY
    else:
        end = start

    description = _optional_text(component.get("DESCRIPTION"))
    location = _optional_text(component.get("LOCATION"))
    return CalendarEvent(
        id=f"ics-{uuid.uuid4()}",
        title=_optional_text(component.get("SUMMARY")) or UNTITLED_EVENT,
        description=description,
        start_date=start,
        end_date=end,
        location=location,
        attendees=_attendees(component.get("ATTENDEE")),
        is_all_day=is_all_day(raw_start, start, end),
        source=EventSource.file,
    )


def is_all_day(raw_start: date | datetime, start: datetime, end: datetime) -> bool:
    """An event is all-day when it starts on a bare date, or lasts exactly 24h from midnight."""
    if _is_date_only(raw_start):
        return True
    starts_at_midnight = start.hour == 0 and start.minute == 0 and start.second == 0
    return end - start == _ONE_DAY and starts_at_midnight


def _is_date_only(value: date | datetime) -> bool:
    return isinstance(value, date) and not isinstance(value, datetime)


def _to_local_datetime(value: date | datetime, tz: tzinfo | None) -> datetime:
    if _is_date_only(value):
        return midnight_of(value, tz)
    if value.tzinfo is None:
        # Floating time: interpret in the local zone.
        return value.replace(tzinfo=tz) if tz is not None else value.astimezone()
    return value.astimezone(tz)


def _optional_text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _attendees(value: Any) -> list[str]:
    if value is None:
        return []
    entries = value if isinstance(value, list) else [value]
    attendees: list[str] = []
    for entry in entries:
        text = str(entry).strip()
        if text.lower().startswith("mailto:"):
            text = text[len("mailto:") :]
        if text:
            attendees.append(text)
    return attendees
