"""Calendar synchronizer: coalesced, cached extraction over the source adapters.

Concurrent :meth:`CalendarSynchronizer.extract` calls share one
``asyncio.Task``; each caller awaits it through :func:`asyncio.shield` so a
cancelled caller never cancels the extraction other callers are waiting on.
The task clears the in-flight handle in its own ``finally`` block, before any
waiter is resumed, so the next call always sees clean state.

A successful extraction is served from the store for ``freshness_ttl``
without touching the adapter again. :meth:`invalidate_cache` resets only that
timestamp.

The stored event set is not transactional: :meth:`clear_events` racing an
extraction that is about to persist is last-writer-wins.
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Callable
from datetime import datetime, timedelta

from opentelemetry import trace

from prepcal.calendar.errors import CalendarError, CalendarErrorCode
from prepcal.calendar.google import CloudApiAdapter
from prepcal.calendar.ics import FileImportAdapter
from prepcal.calendar.models import (
    CalendarDiscoveryResult,
    CalendarEvent,
    CalendarImportResult,
    CalendarSelection,
    EventSource,
    RecordError,
)
from prepcal.calendar.native import NativeScriptAdapter
from prepcal.core.clock import Clock, SystemClock
from prepcal.core.settings import SettingsStore

logger = logging.getLogger(__name__)

DEFAULT_FRESHNESS_TTL = timedelta(minutes=2)

CloudAdapterFactory = Callable[[str], CloudApiAdapter]


class CalendarSynchronizer:
    """Orchestrates the adapters, caches extractions and persists events."""

    def __init__(
        self,
        store: SettingsStore,
        *,
        native: NativeScriptAdapter | None = None,
        file_adapter: FileImportAdapter | None = None,
        cloud_factory: CloudAdapterFactory | None = None,
        clock: Clock | None = None,
        freshness_ttl: timedelta = DEFAULT_FRESHNESS_TTL,
    ) -> None:
        self._store = store
        self._clock = clock or SystemClock()
        self._native = native or NativeScriptAdapter(clock=self._clock)
        self._file_adapter = file_adapter or FileImportAdapter(clock=self._clock)
        self._cloud_factory = cloud_factory
        self._cloud: CloudApiAdapter | None = None
        self._cloud_token: str | None = None
        self._freshness_ttl = freshness_ttl
        self._in_flight: asyncio.Task[CalendarImportResult] | None = None
        self._last_extraction: datetime | None = None

    # ------------------------------------------------------------------
    # Native extraction
    # ------------------------------------------------------------------

    @property
    def last_extraction(self) -> datetime | None:
        return self._last_extraction

    def is_native_source_supported(self) -> bool:
        return self._native.is_supported()

    def is_extracting(self) -> bool:
        return self._in_flight is not None

    async def extract(self, selected_names: list[str] | None = None) -> CalendarImportResult:
        """Extract today's events from the native source.

        Callers arriving while an extraction runs receive that extraction's
        result (or error). Within the freshness window the stored events are
        returned without invoking the adapter.
        """
        if not self._native.is_supported():
            raise CalendarError(
                "AppleScript not available on this platform",
                CalendarErrorCode.PLATFORM_UNSUPPORTED,
            )

        if self._in_flight is not None:
            logger.debug("Extraction already in progress, joining the pending result")
            return await asyncio.shield(self._in_flight)

        if self._is_fresh():
            assert self._last_extraction is not None
            events = await self._store.get_events()
            return CalendarImportResult.build(
                events, source=EventSource.native, imported_at=self._last_extraction
            )

        task = asyncio.create_task(self._run_extraction(selected_names))
        self._in_flight = task
        return await asyncio.shield(task)

    def _is_fresh(self) -> bool:
        if self._last_extraction is None:
            return False
        return self._clock.now() - self._last_extraction < self._freshness_ttl

    async def _run_extraction(self, selected_names: list[str] | None) -> CalendarImportResult:
        tracer = trace.get_tracer("prepcal")
        try:
            with tracer.start_as_current_span("prepcal.calendar.extract") as span:
                span.set_attribute(
                    "calendar.selected", len(selected_names) if selected_names else 0
                )
                result = await self._native.extract(selected_names)
                await self._persist(result.events)
                self._last_extraction = self._clock.now()
                span.set_attribute("calendar.events", result.total_events)
                return result
        finally:
            self._in_flight = None

    async def invalidate_cache(self) -> None:
        self._last_extraction = None

    # ------------------------------------------------------------------
    # Stored events
    # ------------------------------------------------------------------

    async def get_stored_events(self) -> list[CalendarEvent]:
        return await self._store.get_events()

    async def clear_events(self) -> None:
        await self._store.set_events([])

    async def _persist(self, events: list[CalendarEvent]) -> None:
        await self._store.set_events(events)
        await self._store.set_last_calendar_sync(self._clock.now())

    # ------------------------------------------------------------------
    # Discovery and selection
    # ------------------------------------------------------------------

    async def discover_calendars(self) -> CalendarDiscoveryResult:
        """Discover native calendars and refresh the persisted selection cache.

        With ``auto_select_new`` set and an explicit selection in place,
        calendars that were absent from the previous discovery are added to
        the selection. An empty selection already means every calendar.
        """
        result = await self._native.discover_calendars()

        selection = await self._store.get_calendar_selection()
        previously_known = {calendar.uid for calendar in selection.discovery_cache}
        selected = list(selection.selected_calendar_uids)
        if selection.auto_select_new and selected and previously_known:
            for calendar in result.calendars:
                if calendar.uid not in previously_known and calendar.uid not in selected:
                    logger.info("Auto-selecting newly discovered calendar %r", calendar.uid)
                    selected.append(calendar.uid)

        await self._store.set_calendar_selection(
            selection.model_copy(
                update={
                    "selected_calendar_uids": selected,
                    "last_discovery": result.discovered_at,
                    "discovery_cache": result.calendars,
                }
            )
        )
        logger.info("Discovered %d calendars", result.total_calendars)
        return result

    async def get_calendar_selection(self) -> CalendarSelection:
        return await self._store.get_calendar_selection()

    async def set_calendar_selection(self, selection: CalendarSelection) -> None:
        await self._store.set_calendar_selection(selection)
        # A different selection yields a different event set.
        self._last_extraction = None

    # ------------------------------------------------------------------
    # File and cloud sources
    # ------------------------------------------------------------------

    async def import_file(self, file_path: str | os.PathLike[str]) -> CalendarImportResult:
        result = await self._file_adapter.import_file(file_path)
        await self._persist(result.events)
        self._last_extraction = None
        return result

    async def fetch_cloud_events(
        self,
        time_min: datetime | None = None,
        time_max: datetime | None = None,
    ) -> CalendarImportResult:
        cloud = await self._cloud_adapter()
        if cloud is None:
            raise CalendarError(
                "Google Calendar is not connected", CalendarErrorCode.AUTH_FAILED
            )
        result = await cloud.fetch_events(time_min, time_max)
        await self._persist(result.events)
        self._last_extraction = None
        return result

    async def _cloud_adapter(self) -> CloudApiAdapter | None:
        if self._cloud_factory is None:
            return None
        refresh_token = await self._store.get_google_calendar_refresh_token()
        if not refresh_token:
            return None
        if self._cloud is None or refresh_token != self._cloud_token:
            if self._cloud is not None:
                await self._cloud.aclose()
            self._cloud = self._cloud_factory(refresh_token)
            self._cloud_token = refresh_token
        return self._cloud

    async def _cloud_connected(self) -> bool:
        if self._cloud_factory is None:
            return False
        return await self._store.get_google_calendar_connected()

    # ------------------------------------------------------------------
    # Automatic sync
    # ------------------------------------------------------------------

    async def _native_connected(self, selection: CalendarSelection) -> bool:
        if not self._native.is_supported():
            return False
        return bool(selection.selected_calendar_uids) or selection.auto_select_new

    async def has_connected_calendars(self) -> bool:
        selection = await self._store.get_calendar_selection()
        if await self._native_connected(selection):
            return True
        return await self._cloud_connected()

    async def perform_automatic_sync(self) -> CalendarImportResult:
        """Sync every connected source and persist the union of their events."""
        selection = await self._store.get_calendar_selection()
        native_connected = await self._native_connected(selection)
        cloud = await self._cloud_adapter()

        events: list[CalendarEvent] = []
        errors: list[RecordError] = []
        source = EventSource.native
        if native_connected:
            # A scheduled sync must reach the adapter even inside the freshness window.
            await self.invalidate_cache()
            native_result = await self.extract(selection.selected_calendar_uids or None)
            events.extend(native_result.events)
            errors.extend(native_result.errors or [])
        if cloud is not None:
            cloud_result = await cloud.fetch_events()
            events.extend(cloud_result.events)
            errors.extend(cloud_result.errors or [])
            if not native_connected:
                source = EventSource.cloud

        if cloud is not None:
            # Stored events now include cloud events; the native shortcut no longer applies.
            await self._persist(events)
            self._last_extraction = None

        logger.info(
            "Automatic sync collected %d events (native=%s, cloud=%s)",
            len(events),
            native_connected,
            cloud is not None,
        )
        return CalendarImportResult.build(
            events, source=source, imported_at=self._clock.now(), errors=errors
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def dispose(self) -> None:
        task = self._in_flight
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        self._in_flight = None
        if self._cloud is not None:
            await self._cloud.aclose()
            self._cloud = None
            self._cloud_token = None
