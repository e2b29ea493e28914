"""Typed calendar errors shared by every event source.

Adapters raise :class:`CalendarError` with a :class:`CalendarErrorCode`; the
cloud adapter raises the :class:`CloudCalendarError` subclass so callers can
also inspect the HTTP status that triggered it.
"""

from __future__ import annotations

import re
from enum import StrEnum

import httpx

_MAX_ERROR_MESSAGE_LENGTH = 200


class CalendarErrorCode(StrEnum):
    """Error kinds surfaced at the adapter/synchronizer boundary."""

    PLATFORM_UNSUPPORTED = "PLATFORM_UNSUPPORTED"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    TIMEOUT = "TIMEOUT"
    PARSE_ERROR = "PARSE_ERROR"
    INVALID_FILE = "INVALID_FILE"
    AUTH_FAILED = "AUTH_FAILED"
    API_ERROR = "API_ERROR"
    RATE_LIMITED = "RATE_LIMITED"


class CalendarError(RuntimeError):
    """Base error raised by calendar adapters and the synchronizer."""

    def __init__(self, message: str, code: CalendarErrorCode) -> None:
        self.message = message
        self.code = code
        super().__init__(message)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code.value!r}, message={self.message!r})"


class CloudCalendarError(CalendarError):
    """Raised by the Google Calendar adapter."""

    def __init__(
        self,
        message: str,
        code: CalendarErrorCode = CalendarErrorCode.API_ERROR,
        *,
        status_code: int | None = None,
    ) -> None:
        self.status_code = status_code
        super().__init__(sanitize_error_message(message), code)


def safe_google_error_message(response: httpx.Response) -> str:
    """Extract a short, single-line error description from a Google response."""
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error_payload = payload.get("error")
        if isinstance(error_payload, dict):
            message = error_payload.get("message")
            if isinstance(message, str) and message.strip():
                return " ".join(message.split())[:_MAX_ERROR_MESSAGE_LENGTH]
        if isinstance(error_payload, str) and error_payload.strip():
            description = payload.get("error_description")
            if isinstance(description, str) and description.strip():
                error_payload = f"{error_payload}: {description}"
            return " ".join(error_payload.split())[:_MAX_ERROR_MESSAGE_LENGTH]

    raw_text = response.text.strip()
    if raw_text:
        return " ".join(raw_text.split())[:_MAX_ERROR_MESSAGE_LENGTH]
    return "Request failed without an error payload"


def redact_credential_values(message: str) -> str:
    """Redact OAuth secrets that may have leaked into an error message."""
    redacted = message
    # key=value style pairs
    redacted = re.sub(
        r"(?i)\b(client_secret|refresh_token|access_token|token)\s*=\s*([^\s,;]+)",
        r"\1=[REDACTED]",
        redacted,
    )
    # JSON/Python dict style quoted values
    redacted = re.sub(
        r"""(?i)(['"]?(?:client_secret|refresh_token|access_token|token)['"]?\s*:\s*)(['"]).*?\2""",
        r'\1"[REDACTED]"',
        redacted,
    )
    # key: value style pairs
    redacted = re.sub(
        r"(?i)\b(client_secret|refresh_token|access_token|token)\s*:\s*([^\s,;]+)",
        r"\1: [REDACTED]",
        redacted,
    )
    # Bearer headers
    redacted = re.sub(r"(?i)\bBearer\s+[^\s,;]+", "Bearer [REDACTED]", redacted)
    return redacted


def sanitize_error_message(message: str) -> str:
    """Redact credentials, collapse whitespace and truncate to 200 characters."""
    return " ".join(redact_credential_values(message).split())[:_MAX_ERROR_MESSAGE_LENGTH]
