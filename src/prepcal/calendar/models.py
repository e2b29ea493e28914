"""Canonical calendar models shared by the adapters, synchronizer and detector."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, model_validator

UNTITLED_EVENT = "Untitled Event"


class EventSource(StrEnum):
    """Which adapter produced an event."""

    native = "native"
    file = "file"
    cloud = "cloud"


class CalendarType(StrEnum):
    """Calendar kinds reported by discovery."""

    local = "local"
    subscribed = "subscribed"
    exchange = "exchange"
    caldav = "caldav"
    unknown = "unknown"


class CalendarEvent(BaseModel):
    """Canonical event shape shared across all sources.

    Events are immutable value objects; a new extraction replaces them wholesale.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = Field(min_length=1)
    title: str
    description: str | None = None
    start_date: datetime
    end_date: datetime
    location: str | None = None
    attendees: list[str] = Field(default_factory=list)
    is_all_day: bool = False
    source: EventSource
    calendar_name: str | None = None

    @model_validator(mode="after")
    def _validate_interval(self) -> CalendarEvent:
        if self.end_date < self.start_date:
            raise ValueError("end_date must not be earlier than start_date")
        return self


class Meeting(CalendarEvent):
    """A calendar event surfaced as one of today's meetings."""

    brief_generated: bool = False


class RecordError(BaseModel):
    """Diagnostic for a malformed record that was skipped without aborting the batch."""

    record: str | None = None
    error: str


class CalendarImportResult(BaseModel):
    """Outcome of a single adapter extraction."""

    events: list[CalendarEvent] = Field(default_factory=list)
    total_events: int = 0
    imported_at: datetime
    source: EventSource
    errors: list[RecordError] | None = None

    @classmethod
    def build(
        cls,
        events: list[CalendarEvent],
        *,
        source: EventSource,
        imported_at: datetime,
        errors: list[RecordError] | None = None,
    ) -> CalendarImportResult:
        return cls(
            events=events,
            total_events=len(events),
            imported_at=imported_at,
            source=source,
            errors=errors or None,
        )


class CalendarMetadata(BaseModel):
    """A calendar found by discovery.

    For the native source the display name doubles as ``uid`` because the
    scripting bridge exposes no stable identifier.
    """

    uid: str
    name: str
    title: str
    color: str | None = None
    type: CalendarType = CalendarType.unknown
    is_visible: bool = True
    event_count: int | None = None


class CalendarDiscoveryResult(BaseModel):
    calendars: list[CalendarMetadata] = Field(default_factory=list)
    total_calendars: int = 0
    discovered_at: datetime
    errors: list[RecordError] | None = None


class CalendarSelection(BaseModel):
    """Persisted calendar selection for the native source."""

    selected_calendar_uids: list[str] = Field(default_factory=list)
    last_discovery: datetime | None = None
    discovery_cache: list[CalendarMetadata] = Field(default_factory=list)
    auto_select_new: bool = True


class SyncStatus(BaseModel):
    is_enabled: bool = False
    last_sync_time: datetime | None = None
    next_sync_time: datetime | None = None
    is_running: bool = False
    error: str | None = None


class SyncResult(BaseModel):
    """Outcome of one synchronization attempt; ``error`` is always present."""

    success: bool
    events_count: int = 0
    sync_time: datetime
    error: str | None = None


class TodaysMeetingsResult(BaseModel):
    meetings: list[Meeting] = Field(default_factory=list)
    total_meetings: int = 0
    detected_at: datetime
