"""Grammar for the flattened text the scripting bridge prints.

AppleScript returns a list as a single line: every item is rendered and the
items are joined with ``", "``. Each item the calendar scripts build is a
fixed number of fields joined by a delimiter::

    OUTPUT   := RECORD (", " RECORD)*
    RECORD   := FIELD DELIM FIELD DELIM ... DELIM LAST
    FIELD    := zero or more characters, none of them DELIM
    LAST     := zero or more characters, none of them ","

Titles and calendar names may contain commas, so the output is tokenized in
two tiers:

1. Primary: find every ``RECORD`` that starts at the beginning of the input
   or right after ``", "`` and is followed by ``", "`` or the end of the
   input. Only ``LAST`` is comma-free, which lets earlier fields carry
   commas (the rendered dates always do).
2. Fallback, used only when the primary rule matches nothing: split the
   output on ``", "``.

Text left between primary matches is reported, not parsed.

Each candidate is then split on ``DELIM``. Candidates with too few fields
are reported as :class:`RecordError` and skipped. A name that contains both
a comma and the delimiter can still be split in the wrong place; that is a
known limitation of the bridge format.
"""

from __future__ import annotations

import logging
import re
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, tzinfo

from dateutil import parser as date_parser

from prepcal.calendar.errors import CalendarError, CalendarErrorCode
from prepcal.calendar.models import (
    UNTITLED_EVENT,
    CalendarEvent,
    CalendarMetadata,
    CalendarType,
    EventSource,
    RecordError,
)

logger = logging.getLogger(__name__)

RECORD_SEPARATOR = ", "
EVENT_FIELD_DELIMITER = "|"
DISCOVERY_FIELD_DELIMITER = "|||"

_WEEKDAY_PREFIX = re.compile(r"^[A-Za-z]+,\s*")
_DOTTED_TIME = re.compile(r"(\d{1,2})\.(\d{2})\.(\d{2})$")


@dataclass(frozen=True)
class BridgeRecordGrammar:
    """Two-tier tokenizer for records made of ``field_count`` delimited fields."""

    field_delimiter: str
    field_count: int

    @property
    def pattern(self) -> re.Pattern[str]:
        delim = re.escape(self.field_delimiter)
        field = f"(?:(?!{delim}).)*"
        last = r"[^,]*"
        body = delim.join([field] * (self.field_count - 1) + [last])
        separator = re.escape(RECORD_SEPARATOR)
        anchor = rf"(?:\A|(?<={separator}))"
        terminator = rf"(?:{separator}|\Z)"
        return re.compile(f"{anchor}({body}){terminator}", re.DOTALL)

    def tokenize(self, output: str) -> tuple[list[str], list[str]]:
        """Return ``(candidates, unmatched)``.

        ``unmatched`` holds the non-blank text between primary matches; it is
        always empty when the fallback split is used.
        """
        text = output.strip()
        if not text:
            return [], []

        candidates: list[str] = []
        unmatched: list[str] = []
        position = 0
        for match in self.pattern.finditer(text):
            gap = text[position : match.start()].strip().strip(",").strip()
            if gap:
                unmatched.append(gap)
            candidates.append(match.group(1))
            position = match.end()
        if candidates:
            tail = text[position:].strip().strip(",").strip()
            if tail:
                unmatched.append(tail)
            return candidates, unmatched

        logger.debug("Primary bridge grammar matched nothing; falling back to naive split")
        return text.split(RECORD_SEPARATOR), []

    def candidates(self, output: str) -> list[str]:
        """Return raw record strings, applying the fallback split when needed."""
        return self.tokenize(output)[0]

    def split_fields(self, record: str) -> list[str] | None:
        """Split one record into exactly ``field_count`` fields, or ``None`` if too short."""
        parts = record.split(self.field_delimiter)
        if len(parts) < self.field_count:
            return None
        return parts[: self.field_count]


EVENT_GRAMMAR = BridgeRecordGrammar(field_delimiter=EVENT_FIELD_DELIMITER, field_count=4)
DISCOVERY_GRAMMAR = BridgeRecordGrammar(field_delimiter=DISCOVERY_FIELD_DELIMITER, field_count=4)


def parse_bridge_date(value: str, *, tz: tzinfo | None = None) -> datetime:
    """Parse an AppleScript date such as ``"Tuesday, 6 January 2026 at 09.30.00"``.

    The weekday prefix is removed, ``" at "`` becomes a space and a dotted
    time becomes colon-separated before generic parsing. The result is
    made timezone-aware in *tz* (or the host's local zone).

    Raises:
        CalendarError: with ``PARSE_ERROR`` when the string cannot be parsed.
    """
    cleaned = _WEEKDAY_PREFIX.sub("", value.strip()).replace(" at ", " ")
    cleaned = _DOTTED_TIME.sub(r"\1:\2:\3", cleaned)
    try:
        parsed = date_parser.parse(cleaned)
    except (ValueError, OverflowError) as exc:
        raise CalendarError(
            f"Failed to parse AppleScript date: {value}", CalendarErrorCode.PARSE_ERROR
        ) from exc

    if parsed.tzinfo is not None:
        return parsed
    if tz is not None:
        return parsed.replace(tzinfo=tz)
    return parsed.astimezone()


def _native_event_id() -> str:
    return f"applescript-{uuid.uuid4()}"


def parse_event_output(
    output: str,
    *,
    tz: tzinfo | None = None,
    id_factory: Callable[[], str] = _native_event_id,
) -> tuple[list[CalendarEvent], list[RecordError]]:
    """Turn extraction output into canonical events.

    Malformed records, including those whose dates do not parse, are skipped
    and returned as diagnostics; nothing is raised for the batch.
    """
    events: list[CalendarEvent] = []
    errors: list[RecordError] = []

    candidates, unmatched = EVENT_GRAMMAR.tokenize(output)
    for text in unmatched:
        logger.debug("Skipped unrecognized bridge output: %r", text)
        errors.append(RecordError(record=text, error="Unrecognized event record"))

    for record in candidates:
        fields = EVENT_GRAMMAR.split_fields(record)
        if fields is None:
            logger.debug("Skipped bridge record with too few fields: %r", record)
            errors.append(RecordError(record=record, error="Record has fewer than 4 fields"))
            continue

        title, start_raw, end_raw, calendar_name = (part.strip() for part in fields)
        try:
            event = CalendarEvent(
                id=id_factory(),
                title=title or UNTITLED_EVENT,
                start_date=parse_bridge_date(start_raw, tz=tz),
                end_date=parse_bridge_date(end_raw, tz=tz),
                is_all_day=False,
                source=EventSource.native,
                calendar_name=calendar_name or None,
            )
        except CalendarError as exc:
            logger.debug("Skipped bridge record with bad date: %s (record=%r)", exc, record)
            errors.append(RecordError(record=record, error=str(exc)))
            continue
        except ValueError as exc:
            logger.debug("Skipped invalid bridge record: %s (record=%r)", exc, record)
            errors.append(RecordError(record=record, error=str(exc)))
            continue
        events.append(event)

    return events, errors


def parse_discovery_output(output: str) -> tuple[list[CalendarMetadata], list[RecordError]]:
    """Turn discovery output into calendar metadata plus itemized errors."""
    calendars: list[CalendarMetadata] = []
    errors: list[RecordError] = []

    entries, unmatched = DISCOVERY_GRAMMAR.tokenize(output)
    for text in unmatched:
        errors.append(RecordError(record=text, error="Unrecognized calendar entry"))

    for entry in entries:
        fields = DISCOVERY_GRAMMAR.split_fields(entry)
        if fields is None:
            errors.append(RecordError(record=entry, error="Calendar entry has fewer than 4 fields"))
            continue

        name, writable, _description, color = (part.strip() for part in fields)
        if not name:
            errors.append(RecordError(record=entry, error="Calendar entry has an empty name"))
            continue

        calendars.append(
            CalendarMetadata(
                uid=name,
                name=name,
                title=name,
                type=CalendarType.local if writable == "true" else CalendarType.subscribed,
                is_visible=True,
                color=color or None,
            )
        )

    return calendars, errors
