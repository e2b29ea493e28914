"""Calendar acquisition: source adapters, synchronizer, meeting detector and scheduler."""

from prepcal.calendar.detector import MeetingDetector
from prepcal.calendar.errors import CalendarError, CalendarErrorCode, CloudCalendarError
from prepcal.calendar.models import (
    CalendarEvent,
    CalendarImportResult,
    Meeting,
    SyncResult,
    SyncStatus,
    TodaysMeetingsResult,
)
from prepcal.calendar.scheduler import CalendarSyncScheduler
from prepcal.calendar.synchronizer import CalendarSynchronizer

__all__ = [
    "CalendarError",
    "CalendarErrorCode",
    "CalendarEvent",
    "CalendarImportResult",
    "CalendarSyncScheduler",
    "CalendarSynchronizer",
    "CloudCalendarError",
    "Meeting",
    "MeetingDetector",
    "SyncResult",
    "SyncStatus",
    "TodaysMeetingsResult",
]
