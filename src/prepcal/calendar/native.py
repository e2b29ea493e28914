"""Native desktop calendar source (macOS Calendar via the scripting bridge)."""

from __future__ import annotations

import logging
import sys
import time
from datetime import tzinfo

from prepcal.calendar.bridge_output import parse_discovery_output, parse_event_output
from prepcal.calendar.errors import CalendarError, CalendarErrorCode
from prepcal.calendar.models import CalendarDiscoveryResult, CalendarImportResult, EventSource
from prepcal.calendar.script_runner import (
    DISCOVERY_TIMEOUT_SECONDS,
    EXTRACTION_TIMEOUT_SECONDS,
    OsascriptRunner,
    ScriptPermissionError,
    ScriptRunner,
    ScriptRunnerError,
    ScriptTimeoutError,
    looks_like_permission_error,
    staged_script,
)
from prepcal.core.clock import Clock, SystemClock

logger = logging.getLogger(__name__)

PERMISSION_DENIED_MESSAGE = (
    "Calendar access permission required. Please grant access in "
    "System Settings > Privacy & Security > Calendars"
)

_PROBE_SCRIPT = 'tell application "Calendar" to return "test"'

_DAY_WINDOW_PREAMBLE = """\
  set todayStart to current date
  set time of todayStart to 0
  set todayEnd to todayStart + 1 * days
"""

_COLLECT_EVENTS = """\
      set dayEvents to (events of {calendar} whose start date ≥ todayStart and start date < todayEnd)
      repeat with evt in dayEvents
        try
          set eventTitle to summary of evt
          set eventStart to start date of evt as string
          set eventEnd to end date of evt as string
          set end of allEvents to (eventTitle & "|" & eventStart & "|" & eventEnd & "|" & {label})
        end try
      end repeat
"""

DISCOVERY_SCRIPT = """\
tell application "Calendar"
  set calendarList to {}
  repeat with cal in calendars
    try
      set calName to name of cal
      set calWritable to writable of cal
      set calDescription to description of cal
      set calColor to color of cal
      set end of calendarList to (calName & "|||" & calWritable & "|||" & calDescription & "|||" & calColor)
    end try
  end repeat
  return calendarList
end tell
"""


def quote_applescript_string(value: str) -> str:
    """Render *value* as an AppleScript string literal."""
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def build_extraction_script(selected_names: list[str] | None = None) -> str:
    """Build the script that lists today's events.

    With a non-empty *selected_names* only those calendars are queried; a
    missing calendar is skipped inside the script. Otherwise every calendar
    is queried.
    """
    if selected_names:
        names = ", ".join(quote_applescript_string(name) for name in selected_names)
        collect = _COLLECT_EVENTS.format(calendar="targetCal", label="selectedName")
        return (
            'tell application "Calendar"\n'
            f"{_DAY_WINDOW_PREAMBLE}\n"
            f"  set selectedNames to {{{names}}}\n"
            "  set allEvents to {}\n"
            "  repeat with selectedName in selectedNames\n"
            "    try\n"
            "      set targetCal to calendar selectedName\n"
            f"{collect}"
            "    on error\n"
            "      -- calendar not found\n"
            "    end try\n"
            "  end repeat\n"
            "  return allEvents\n"
            "end tell\n"
        )

    collect = _COLLECT_EVENTS.format(calendar="cal", label="calName")
    return (
        'tell application "Calendar"\n'
        f"{_DAY_WINDOW_PREAMBLE}\n"
        "  set allEvents to {}\n"
        "  repeat with cal in calendars\n"
        "    try\n"
        "      set calName to name of cal\n"
        f"{collect}"
        "    end try\n"
        "  end repeat\n"
        "  return allEvents\n"
        "end tell\n"
    )


class NativeScriptAdapter:
    """Extract today's events and discover calendars from the desktop calendar app."""

    def __init__(
        self,
        runner: ScriptRunner | None = None,
        *,
        clock: Clock | None = None,
        tz: tzinfo | None = None,
        platform: str | None = None,
        extraction_timeout: float = EXTRACTION_TIMEOUT_SECONDS,
        discovery_timeout: float = DISCOVERY_TIMEOUT_SECONDS,
    ) -> None:
        self._runner = runner or OsascriptRunner()
        self._clock = clock or SystemClock(tz)
        self._tz = tz
        self._platform = platform or sys.platform
        self._extraction_timeout = extraction_timeout
        self._discovery_timeout = discovery_timeout

    def is_supported(self) -> bool:
        return self._platform == "darwin"

    def _require_supported(self) -> None:
        if not self.is_supported():
            raise CalendarError(
                "AppleScript not available on this platform",
                CalendarErrorCode.PLATFORM_UNSUPPORTED,
            )

    async def check_permissions(self) -> None:
        """Probe the bridge; raise ``PERMISSION_DENIED`` if access is not granted.

        Extraction and discovery map permission failures themselves, so this
        probe is only needed before the first extraction (e.g. onboarding).
        """
        self._require_supported()
        try:
            await self._run(_PROBE_SCRIPT, self._discovery_timeout, prefix="calendar-probe")
        except ScriptRunnerError as exc:
            raise self._map_runner_error(exc, action="AppleScript execution failed") from exc

    async def extract(self, selected_names: list[str] | None = None) -> CalendarImportResult:
        self._require_supported()
        script = build_extraction_script(selected_names)
        logger.info(
            "Executing AppleScript for calendar extraction (calendars=%s)",
            len(selected_names) if selected_names else "all",
        )
        started = time.monotonic()
        try:
            output = await self._run(script, self._extraction_timeout, prefix="calendar-script")
        except ScriptTimeoutError as exc:
            raise CalendarError(
                f"Calendar extraction timed out after {self._extraction_timeout:.0f} seconds. "
                "This can happen with very large calendars. Try using ICS file import instead.",
                CalendarErrorCode.TIMEOUT,
            ) from exc
        except ScriptRunnerError as exc:
            raise self._map_runner_error(exc, action="Failed to extract calendar events") from exc

        logger.info("AppleScript completed in %dms", int((time.monotonic() - started) * 1000))
        events, errors = parse_event_output(output, tz=self._tz)
        if errors:
            logger.warning("Skipped %d malformed calendar record(s)", len(errors))
        logger.info("Parsed %d events from AppleScript", len(events))
        return CalendarImportResult.build(
            events,
            source=EventSource.native,
            imported_at=self._clock.now(),
            errors=errors,
        )

    async def discover_calendars(self) -> CalendarDiscoveryResult:
        self._require_supported()
        try:
            output = await self._run(
                DISCOVERY_SCRIPT, self._discovery_timeout, prefix="calendar-discovery"
            )
        except ScriptTimeoutError as exc:
            raise CalendarError(
                f"Calendar discovery timed out after {self._discovery_timeout:.0f} seconds",
                CalendarErrorCode.TIMEOUT,
            ) from exc
        except ScriptRunnerError as exc:
            raise self._map_runner_error(exc, action="Failed to discover calendars") from exc

        calendars, errors = parse_discovery_output(output)
        for error in errors:
            logger.warning("Calendar discovery entry skipped: %s (%r)", error.error, error.record)
        return CalendarDiscoveryResult(
            calendars=calendars,
            total_calendars=len(calendars),
            discovered_at=self._clock.now(),
            errors=errors or None,
        )

    async def _run(self, body: str, timeout: float, *, prefix: str) -> str:
        with staged_script(body, prefix=prefix) as script_path:
            return await self._runner.run(script_path, timeout)

    @staticmethod
    def _map_runner_error(exc: ScriptRunnerError, *, action: str) -> CalendarError:
        if isinstance(exc, ScriptTimeoutError):
            return CalendarError(f"{action}: {exc}", CalendarErrorCode.TIMEOUT)
        if isinstance(exc, ScriptPermissionError) or looks_like_permission_error(str(exc)):
            return CalendarError(PERMISSION_DENIED_MESSAGE, CalendarErrorCode.PERMISSION_DENIED)
        return CalendarError(f"{action}: {exc}", CalendarErrorCode.PARSE_ERROR)
