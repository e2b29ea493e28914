"""Google Calendar source backed by an OAuth refresh token."""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, date, datetime, timedelta, tzinfo
from typing import Any

import httpx
from opentelemetry import trace
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from prepcal.calendar.errors import (
    CalendarErrorCode,
    CloudCalendarError,
    safe_google_error_message,
)
from prepcal.calendar.models import (
    UNTITLED_EVENT,
    CalendarEvent,
    CalendarImportResult,
    EventSource,
    RecordError,
)
from prepcal.core.clock import Clock, SystemClock, local_day_window, midnight_of

logger = logging.getLogger(__name__)

GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
GOOGLE_CALENDAR_NAME = "Google Calendar"

# Retry on 429 Too Many Requests and 503 Service Unavailable with capped
# exponential backoff; a numeric Retry-After header on 429 takes precedence.
RATE_LIMIT_RETRY_STATUS_CODES = {429, 503}
RATE_LIMIT_MAX_RETRIES = 3
RATE_LIMIT_BASE_BACKOFF_SECONDS = 1.0
RATE_LIMIT_MAX_BACKOFF_SECONDS = 30.0
DEFAULT_MAX_RESULTS = 250

# Access tokens are renewed a minute before Google expires them.
DEFAULT_TOKEN_LIFETIME_SECONDS = 3600
TOKEN_RENEWAL_MARGIN_SECONDS = 60
MIN_TOKEN_USE_SECONDS = 30


class GoogleOAuthCredentials(BaseModel):
    """OAuth client credentials required for refresh-token exchange."""

    model_config = ConfigDict(extra="forbid")

    client_id: str = Field(min_length=1)
    client_secret: str = Field(min_length=1)
    refresh_token: str = Field(min_length=1)

    @field_validator("client_id", "client_secret", "refresh_token")
    @classmethod
    def _normalize_non_empty(cls, value: str, info: ValidationInfo) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError(f"{info.field_name} must be a non-empty string")
        return normalized


class AccessToken(BaseModel):
    """A bearer token from the token endpoint and the moment it should be renewed."""

    model_config = ConfigDict(frozen=True)

    value: str
    renew_at: datetime

    @classmethod
    def from_token_response(cls, payload: Any, *, issued_at: datetime) -> AccessToken:
        value = payload.get("access_token") if isinstance(payload, dict) else None
        if not isinstance(value, str) or not value.strip():
            raise CloudCalendarError(
                "Google OAuth token response is missing a non-empty access_token",
                CalendarErrorCode.AUTH_FAILED,
            )
        lifetime = payload.get("expires_in")
        if isinstance(lifetime, bool) or not isinstance(lifetime, int | float) or lifetime <= 0:
            lifetime = DEFAULT_TOKEN_LIFETIME_SECONDS
        lead = max(lifetime - TOKEN_RENEWAL_MARGIN_SECONDS, MIN_TOKEN_USE_SECONDS)
        return cls(value=value.strip(), renew_at=issued_at + timedelta(seconds=lead))

    def usable_at(self, moment: datetime) -> bool:
        return moment < self.renew_at


def google_rfc3339(value: datetime) -> str:
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return normalized.astimezone(UTC).isoformat().replace("+00:00", "Z")


def parse_google_datetime(value: str) -> datetime:
    normalized = value.strip()
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError as exc:
        raise ValueError(f"Google Calendar returned an invalid dateTime: {value}") from exc
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


def _parse_boundary(payload: Any, tz: tzinfo | None) -> tuple[datetime, bool]:
    """Return ``(moment, is_date_only)`` for a Google ``start``/``end`` object."""
    if not isinstance(payload, dict):
        raise ValueError("Google Calendar event boundary is missing")
    date_time = payload.get("dateTime")
    if isinstance(date_time, str) and date_time.strip():
        parsed = parse_google_datetime(date_time)
        return (parsed.astimezone(tz) if tz is not None else parsed.astimezone()), False
    day = payload.get("date")
    if isinstance(day, str) and day.strip():
        return midnight_of(date.fromisoformat(day.strip()), tz or _local_tz()), True
    raise ValueError("Google Calendar event boundary has neither dateTime nor date")


def _local_tz() -> tzinfo | None:
    return datetime.now().astimezone().tzinfo


def _optional_text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    return normalized or None


def google_event_to_calendar_event(
    payload: dict[str, Any], *, tz: tzinfo | None = None
) -> CalendarEvent | None:
    """Map a Google event resource to a canonical event; ``None`` when it has no id."""
    event_id = payload.get("id")
    if not isinstance(event_id, str) or not event_id.strip():
        return None

    start, start_is_date = _parse_boundary(payload.get("start"), tz)
    end, _ = _parse_boundary(payload.get("end", payload.get("start")), tz)

    attendees: list[str] = []
    raw_attendees = payload.get("attendees")
    if isinstance(raw_attendees, list):
        for attendee in raw_attendees:
            if isinstance(attendee, dict):
                email = _optional_text(attendee.get("email"))
                if email:
                    attendees.append(email)

    return CalendarEvent(
        id=f"google-{event_id.strip()}",
        title=_optional_text(payload.get("summary")) or UNTITLED_EVENT,
        description=_optional_text(payload.get("description")),
        start_date=start,
        end_date=max(start, end),
        location=_optional_text(payload.get("location")),
        attendees=attendees,
        is_all_day=start_is_date,
        source=EventSource.cloud,
        calendar_name=GOOGLE_CALENDAR_NAME,
    )


class CloudApiAdapter:
    """Fetch events from the user's primary Google calendar."""

    def __init__(
        self,
        credentials: GoogleOAuthCredentials,
        *,
        http_client: httpx.AsyncClient | None = None,
        clock: Clock | None = None,
        calendar_id: str = "primary",
    ) -> None:
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=30.0)
        self._credentials = credentials
        self._clock = clock or SystemClock()
        self._calendar_id = calendar_id
        self._token: AccessToken | None = None
        self._token_lock = asyncio.Lock()

    @property
    def name(self) -> str:
        return "google"

    async def fetch_events(
        self,
        time_min: datetime | None = None,
        time_max: datetime | None = None,
        *,
        max_results: int = DEFAULT_MAX_RESULTS,
    ) -> CalendarImportResult:
        """Fetch events in ``[time_min, time_max)``; defaults to today's local window."""
        now = self._clock.now()
        if time_min is None or time_max is None:
            day_start, day_end = local_day_window(now)
            time_min = time_min or day_start
            time_max = time_max or day_end

        tracer = trace.get_tracer("prepcal")
        with tracer.start_as_current_span("prepcal.calendar.cloud.fetch_events") as span:
            span.set_attribute("calendar.id", self._calendar_id)
            payload = await self._request_json(
                "GET",
                f"{GOOGLE_CALENDAR_API_BASE_URL}/calendars/{self._calendar_id}/events",
                params={
                    "timeMin": google_rfc3339(time_min),
                    "timeMax": google_rfc3339(time_max),
                    "maxResults": min(max(max_results, 1), DEFAULT_MAX_RESULTS),
                    "singleEvents": True,
                    "orderBy": "startTime",
                },
            )
            items = payload.get("items", [])
            if not isinstance(items, list):
                raise CloudCalendarError(
                    "Google Calendar events response has a non-list items field",
                    CalendarErrorCode.API_ERROR,
                )

            events: list[CalendarEvent] = []
            errors: list[RecordError] = []
            for item in items:
                if not isinstance(item, dict):
                    continue
                try:
                    event = google_event_to_calendar_event(item, tz=now.tzinfo)
                except ValueError as exc:
                    logger.warning("Skipped malformed Google event %s: %s", item.get("id"), exc)
                    errors.append(RecordError(record=str(item.get("id")), error=str(exc)))
                    continue
                if event is not None:
                    events.append(event)
            span.set_attribute("calendar.events", len(events))

        logger.info("Fetched %d Google Calendar events", len(events))
        return CalendarImportResult.build(
            events, source=EventSource.cloud, imported_at=self._clock.now(), errors=errors
        )

    async def test_connection(self) -> bool:
        """Return True when the stored credentials can list calendars."""
        try:
            await self._request_json(
                "GET",
                f"{GOOGLE_CALENDAR_API_BASE_URL}/users/me/calendarList",
                params={"maxResults": 1},
            )
        except CloudCalendarError as exc:
            logger.info("Google Calendar connection test failed: %s", exc)
            return False
        return True

    async def get_user_info(self) -> dict[str, str | None]:
        payload = await self._request_json("GET", GOOGLE_USERINFO_URL)
        return {
            "email": _optional_text(payload.get("email")) or "",
            "name": _optional_text(payload.get("name")),
        }

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()

    async def _request_json(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        response = await self._request_with_retry(method, url, params=params)

        if response.status_code == 401:
            raise CloudCalendarError(
                f"Authentication failed: {safe_google_error_message(response)}",
                CalendarErrorCode.AUTH_FAILED,
                status_code=401,
            )
        if response.status_code in RATE_LIMIT_RETRY_STATUS_CODES:
            raise CloudCalendarError(
                f"Rate limit exceeded after {RATE_LIMIT_MAX_RETRIES} retries: "
                f"{safe_google_error_message(response)}",
                CalendarErrorCode.RATE_LIMITED,
                status_code=response.status_code,
            )
        if response.status_code < 200 or response.status_code >= 300:
            raise CloudCalendarError(
                f"Google Calendar API request failed ({response.status_code}): "
                f"{safe_google_error_message(response)}",
                CalendarErrorCode.API_ERROR,
                status_code=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise CloudCalendarError(
                "Google Calendar API returned invalid JSON for a successful response",
                CalendarErrorCode.API_ERROR,
            ) from exc
        if not isinstance(payload, dict):
            raise CloudCalendarError(
                "Google Calendar API returned an unexpected JSON payload shape",
                CalendarErrorCode.API_ERROR,
            )
        return payload

    async def _request_with_retry(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None,
    ) -> httpx.Response:
        response = await self._request_once(method, url, params=params, force_refresh=False)

        if response.status_code == 401:
            response = await self._request_once(method, url, params=params, force_refresh=True)

        retry = 0
        while (
            response.status_code in RATE_LIMIT_RETRY_STATUS_CODES and retry < RATE_LIMIT_MAX_RETRIES
        ):
            backoff = min(
                RATE_LIMIT_BASE_BACKOFF_SECONDS * (2**retry), RATE_LIMIT_MAX_BACKOFF_SECONDS
            )
            # For 429 responses, respect the Retry-After header when present.
            if response.status_code == 429:
                retry_after_header = response.headers.get("Retry-After")
                if retry_after_header is not None:
                    try:
                        backoff = min(float(retry_after_header), RATE_LIMIT_MAX_BACKOFF_SECONDS)
                    except ValueError:
                        pass
            logger.warning(
                "Calendar API rate-limited (status=%d), retrying in %.1fs (attempt %d/%d)",
                response.status_code,
                backoff,
                retry + 1,
                RATE_LIMIT_MAX_RETRIES,
            )
            await asyncio.sleep(backoff)
            response = await self._request_once(method, url, params=params, force_refresh=False)
            retry += 1

        return response

    async def _request_once(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None,
        force_refresh: bool,
    ) -> httpx.Response:
        access_token = await self._bearer_token(renew=force_refresh)
        try:
            return await self._http_client.request(
                method,
                url,
                params=params,
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.HTTPError as exc:
            raise CloudCalendarError(
                f"Google Calendar request failed: {exc}", CalendarErrorCode.API_ERROR
            ) from exc

    async def _bearer_token(self, *, renew: bool = False) -> str:
        """Return a usable access token, exchanging the refresh token when needed."""
        async with self._token_lock:
            token = self._token
            if renew or token is None or not token.usable_at(self._clock.now()):
                token = await self._exchange_refresh_token()
                self._token = token
            return token.value

    async def _exchange_refresh_token(self) -> AccessToken:
        form = self._credentials.model_dump() | {"grant_type": "refresh_token"}
        try:
            response = await self._http_client.post(
                GOOGLE_OAUTH_TOKEN_URL, data=form, headers={"Accept": "application/json"}
            )
        except httpx.HTTPError as exc:
            raise CloudCalendarError(
                f"Google OAuth token refresh request failed: {exc}",
                CalendarErrorCode.AUTH_FAILED,
            ) from exc

        if not response.is_success:
            raise CloudCalendarError(
                f"Google OAuth token refresh failed ({response.status_code}): "
                f"{safe_google_error_message(response)}",
                CalendarErrorCode.AUTH_FAILED,
                status_code=response.status_code,
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise CloudCalendarError(
                "Google OAuth token endpoint returned invalid JSON",
                CalendarErrorCode.AUTH_FAILED,
            ) from exc

        logger.debug("Exchanged refresh token for a new Google access token")
        return AccessToken.from_token_response(payload, issued_at=self._clock.now())
