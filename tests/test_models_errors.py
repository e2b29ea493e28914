"""Tests for the canonical calendar models and error helpers."""

from __future__ import annotations

from datetime import UTC, datetime

import httpx
import pytest
from pydantic import ValidationError

from prepcal.calendar.errors import (
    CalendarError,
    CalendarErrorCode,
    CloudCalendarError,
    redact_credential_values,
    safe_google_error_message,
    sanitize_error_message,
)
from prepcal.calendar.models import (
    CalendarEvent,
    CalendarImportResult,
    CalendarSelection,
    EventSource,
    Meeting,
    RecordError,
)

pytestmark = pytest.mark.unit

START = datetime(2026, 1, 6, 9, tzinfo=UTC)
END = datetime(2026, 1, 6, 10, tzinfo=UTC)


# ============================================================================
# Models
# ============================================================================


class TestCalendarEvent:
    def test_defaults(self):
        event = CalendarEvent(
            id="x", title="T", start_date=START, end_date=END, source=EventSource.native
        )
        assert event.attendees == []
        assert event.is_all_day is False
        assert event.calendar_name is None

    def test_end_before_start_rejected(self):
        with pytest.raises(ValidationError, match="end_date"):
            CalendarEvent(
                id="x", title="T", start_date=END, end_date=START, source=EventSource.native
            )

    def test_zero_length_allowed(self):
        event = CalendarEvent(
            id="x", title="T", start_date=START, end_date=START, source=EventSource.file
        )
        assert event.end_date == event.start_date

    def test_empty_id_rejected(self):
        with pytest.raises(ValidationError):
            CalendarEvent(id="", title="T", start_date=START, end_date=END, source="cloud")

    def test_events_are_immutable(self):
        event = CalendarEvent(
            id="x", title="T", start_date=START, end_date=END, source=EventSource.native
        )
        with pytest.raises(ValidationError):
            event.title = "changed"

    def test_meeting_extends_event(self):
        event = CalendarEvent(
            id="x", title="T", start_date=START, end_date=END, source=EventSource.native
        )
        meeting = Meeting(**event.model_dump())
        assert meeting.brief_generated is False
        assert meeting.id == "x"


class TestImportResult:
    def test_build_counts_and_drops_empty_errors(self):
        result = CalendarImportResult.build([], source=EventSource.file, imported_at=START)
        assert result.total_events == 0
        assert result.errors is None

    def test_build_keeps_errors(self):
        result = CalendarImportResult.build(
            [],
            source=EventSource.file,
            imported_at=START,
            errors=[RecordError(record="r", error="bad")],
        )
        assert result.errors == [RecordError(record="r", error="bad")]

    def test_selection_defaults(self):
        selection = CalendarSelection()
        assert selection.selected_calendar_uids == []
        assert selection.auto_select_new is True
        assert selection.last_discovery is None


# ============================================================================
# Errors
# ============================================================================


class TestCalendarError:
    def test_carries_code_and_message(self):
        error = CalendarError("boom", CalendarErrorCode.TIMEOUT)
        assert error.code == CalendarErrorCode.TIMEOUT
        assert error.message == "boom"
        assert str(error) == "boom"
        assert "TIMEOUT" in repr(error)

    def test_cloud_error_is_calendar_error(self):
        error = CloudCalendarError("nope", CalendarErrorCode.RATE_LIMITED, status_code=429)
        assert isinstance(error, CalendarError)
        assert error.status_code == 429

    def test_cloud_error_sanitizes_message(self):
        error = CloudCalendarError("failed\n  with   access_token=abc123 " + "x" * 300)
        assert "abc123" not in error.message
        assert "\n" not in error.message
        assert len(error.message) == 200
        assert error.code == CalendarErrorCode.API_ERROR


class TestRedaction:
    @pytest.mark.parametrize(
        "message",
        [
            "client_secret=shh",
            'payload {"refresh_token": "shh"}',
            "token: shh",
            "Authorization: Bearer shh",
        ],
    )
    def test_secret_values_redacted(self, message):
        redacted = redact_credential_values(message)
        assert "shh" not in redacted
        assert "[REDACTED]" in redacted

    def test_clean_message_unchanged(self):
        assert redact_credential_values("quota exceeded") == "quota exceeded"

    def test_sanitize_collapses_whitespace(self):
        assert sanitize_error_message("a\n\tb   c") == "a b c"


class TestSafeGoogleErrorMessage:
    def test_structured_error_message(self):
        response = httpx.Response(403, json={"error": {"message": "Forbidden   resource"}})
        assert safe_google_error_message(response) == "Forbidden resource"

    def test_oauth_error_with_description(self):
        response = httpx.Response(
            400, json={"error": "invalid_grant", "error_description": "Token revoked"}
        )
        assert safe_google_error_message(response) == "invalid_grant: Token revoked"

    def test_plain_text_body(self):
        assert safe_google_error_message(httpx.Response(502, text="Bad gateway")) == "Bad gateway"

    def test_empty_body(self):
        assert (
            safe_google_error_message(httpx.Response(500))
            == "Request failed without an error payload"
        )
