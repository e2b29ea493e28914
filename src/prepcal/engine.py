"""Composition root: builds the calendar components from configuration."""

from __future__ import annotations

import logging
import os
from datetime import datetime, timedelta
from pathlib import Path

from prepcal.calendar.detector import MeetingDetector
from prepcal.calendar.google import CloudApiAdapter, GoogleOAuthCredentials
from prepcal.calendar.ics import FileImportAdapter
from prepcal.calendar.models import (
    CalendarDiscoveryResult,
    CalendarEvent,
    CalendarImportResult,
    CalendarSelection,
    SyncResult,
    SyncStatus,
    TodaysMeetingsResult,
)
from prepcal.calendar.native import NativeScriptAdapter
from prepcal.calendar.scheduler import CalendarSyncScheduler
from prepcal.calendar.script_runner import ScriptRunner
from prepcal.calendar.synchronizer import CalendarSynchronizer, CloudAdapterFactory
from prepcal.config import GoogleConfig, PrepcalConfig, StorageBackend
from prepcal.core.clock import Clock, SystemClock
from prepcal.core.power import PowerSignal, WallClockResumeDetector
from prepcal.core.settings import (
    InMemorySettingsStore,
    JsonFileSettingsStore,
    PostgresSettingsStore,
    SettingsStore,
)

logger = logging.getLogger(__name__)


async def open_settings_store(config: PrepcalConfig) -> SettingsStore:
    storage = config.storage
    if storage.backend is StorageBackend.MEMORY:
        return InMemorySettingsStore()
    if storage.backend is StorageBackend.POSTGRES:
        assert storage.dsn is not None
        return await PostgresSettingsStore.connect(storage.dsn)
    return JsonFileSettingsStore(Path(storage.path))


def google_adapter_factory(
    google: GoogleConfig, *, clock: Clock | None = None
) -> CloudAdapterFactory | None:
    """Return a refresh-token → adapter factory, or ``None`` without client credentials."""
    if not google.is_configured:
        return None
    assert google.client_id is not None and google.client_secret is not None
    client_id, client_secret = google.client_id, google.client_secret

    def build(refresh_token: str) -> CloudApiAdapter:
        credentials = GoogleOAuthCredentials(
            client_id=client_id,
            client_secret=client_secret,
            refresh_token=refresh_token,
        )
        return CloudApiAdapter(credentials, clock=clock, calendar_id=google.calendar_id)

    return build


class CalendarEngine:
    """Owns the synchronizer, detector and scheduler and their shared resources.

    :meth:`dispose` must be called by the owning process on shutdown.
    """

    def __init__(
        self,
        store: SettingsStore,
        synchronizer: CalendarSynchronizer,
        detector: MeetingDetector,
        scheduler: CalendarSyncScheduler,
        *,
        power_signal: PowerSignal,
        resume_detector: WallClockResumeDetector | None = None,
    ) -> None:
        self.store = store
        self.synchronizer = synchronizer
        self.detector = detector
        self.scheduler = scheduler
        self.power_signal = power_signal
        self.resume_detector = resume_detector
        self._disposed = False

    @classmethod
    async def from_config(
        cls,
        config: PrepcalConfig,
        *,
        store: SettingsStore | None = None,
        runner: ScriptRunner | None = None,
        clock: Clock | None = None,
        platform: str | None = None,
    ) -> CalendarEngine:
        clock = clock or SystemClock()
        store = store or await open_settings_store(config)
        power_signal = PowerSignal()

        synchronizer = CalendarSynchronizer(
            store,
            native=NativeScriptAdapter(runner, clock=clock, platform=platform),
            file_adapter=FileImportAdapter(clock=clock),
            cloud_factory=google_adapter_factory(config.google, clock=clock),
            clock=clock,
            freshness_ttl=timedelta(seconds=config.cache.extraction_ttl_s),
        )
        detector = MeetingDetector(
            synchronizer.get_stored_events,
            clock=clock,
            ttl=timedelta(seconds=config.cache.detection_ttl_s),
        )
        scheduler = CalendarSyncScheduler(
            synchronizer,
            power_signal=power_signal,
            detector=detector,
            clock=clock,
            cron=config.sync.cron,
            resume_delay=config.sync.resume_delay_s,
            last_sync_time=await store.get_last_calendar_sync(),
        )
        resume_detector = WallClockResumeDetector(
            power_signal,
            interval=config.sync.resume_check_interval_s,
            threshold=config.sync.resume_threshold_s,
        )
        return cls(
            store,
            synchronizer,
            detector,
            scheduler,
            power_signal=power_signal,
            resume_detector=resume_detector,
        )

    # -- synchronizer surface ------------------------------------------------

    async def extract(self, selected_names: list[str] | None = None) -> CalendarImportResult:
        result = await self.synchronizer.extract(selected_names)
        self.detector.invalidate_cache()
        return result

    async def discover_calendars(self) -> CalendarDiscoveryResult:
        return await self.synchronizer.discover_calendars()

    async def get_stored_events(self) -> list[CalendarEvent]:
        return await self.synchronizer.get_stored_events()

    async def clear_events(self) -> None:
        await self.synchronizer.clear_events()
        self.detector.invalidate_cache()

    async def invalidate_cache(self) -> None:
        await self.synchronizer.invalidate_cache()

    def is_native_source_supported(self) -> bool:
        return self.synchronizer.is_native_source_supported()

    async def import_file(self, file_path: str | os.PathLike[str]) -> CalendarImportResult:
        result = await self.synchronizer.import_file(file_path)
        self.detector.invalidate_cache()
        return result

    async def fetch_cloud_events(
        self, time_min: datetime | None = None, time_max: datetime | None = None
    ) -> CalendarImportResult:
        result = await self.synchronizer.fetch_cloud_events(time_min, time_max)
        self.detector.invalidate_cache()
        return result

    async def get_calendar_selection(self) -> CalendarSelection:
        return await self.synchronizer.get_calendar_selection()

    async def set_calendar_selection(self, selection: CalendarSelection) -> None:
        await self.synchronizer.set_calendar_selection(selection)

    async def connect_google_calendar(self, refresh_token: str) -> None:
        await self.store.set_google_calendar_credentials(refresh_token)

    async def disconnect_google_calendar(self) -> None:
        await self.store.set_google_calendar_credentials(None)

    # -- detector surface ----------------------------------------------------

    async def get_todays_meetings(self) -> TodaysMeetingsResult:
        return await self.detector.get_todays_meetings()

    async def has_todays_meetings(self) -> bool:
        return await self.detector.has_todays_meetings()

    # -- scheduler surface ---------------------------------------------------

    async def start_daily_sync(self) -> None:
        await self.scheduler.start_daily_sync()
        if self.resume_detector is not None:
            self.resume_detector.start()

    async def stop_daily_sync(self) -> None:
        await self.scheduler.stop_daily_sync()
        if self.resume_detector is not None:
            await self.resume_detector.stop()

    async def perform_manual_sync(self) -> SyncResult:
        return await self.scheduler.perform_manual_sync()

    async def get_sync_status(self) -> SyncStatus:
        return await self.scheduler.get_sync_status()

    # -- lifecycle -----------------------------------------------------------

    async def dispose(self) -> None:
        """Stop timers, cancel in-flight work and release the store. Idempotent."""
        if self._disposed:
            return
        self._disposed = True
        if self.resume_detector is not None:
            await self.resume_detector.stop()
        await self.scheduler.dispose()
        await self.synchronizer.dispose()
        if isinstance(self.store, PostgresSettingsStore):
            await self.store.close()
        logger.info("Calendar engine disposed")
