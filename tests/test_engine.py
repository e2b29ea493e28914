"""Tests for CalendarEngine wiring and lifecycle."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from prepcal.calendar.models import CalendarEvent, EventSource
from prepcal.config import (
    CacheConfig,
    GoogleConfig,
    PrepcalConfig,
    StorageBackend,
    StorageConfig,
    SyncConfig,
)
from prepcal.core.settings import InMemorySettingsStore, JsonFileSettingsStore
from prepcal.engine import CalendarEngine, google_adapter_factory, open_settings_store

pytestmark = pytest.mark.unit

OUTPUT = "Standup|Tuesday, 6 January 2026 at 09.30.00|Tuesday, 6 January 2026 at 09.45.00|Work"


@pytest.fixture
async def engine(store, runner, clock):
    engine = await CalendarEngine.from_config(
        PrepcalConfig(), store=store, runner=runner, clock=clock, platform="darwin"
    )
    yield engine
    await engine.dispose()


# ============================================================================
# Construction
# ============================================================================


class TestConstruction:
    async def test_open_memory_store(self):
        config = PrepcalConfig(storage=StorageConfig(backend=StorageBackend.MEMORY))
        assert isinstance(await open_settings_store(config), InMemorySettingsStore)

    async def test_open_json_store(self, tmp_path: Path):
        path = tmp_path / "settings.json"
        config = PrepcalConfig(storage=StorageConfig(backend=StorageBackend.JSON, path=str(path)))
        store = await open_settings_store(config)
        assert isinstance(store, JsonFileSettingsStore)
        assert store.path == path

    def test_google_factory_requires_client_credentials(self):
        assert google_adapter_factory(GoogleConfig()) is None

    async def test_google_factory_builds_adapter(self):
        factory = google_adapter_factory(
            GoogleConfig(client_id="id", client_secret="secret", calendar_id="team")
        )
        assert factory is not None
        adapter = factory("refresh")
        assert adapter._calendar_id == "team"
        await adapter.aclose()

    async def test_config_values_reach_components(self, store, runner, clock):
        config = PrepcalConfig(
            sync=SyncConfig(cron="15 7 * * *", resume_delay_s=1.0),
            cache=CacheConfig(extraction_ttl_s=30, detection_ttl_s=60),
        )
        last_sync = clock.now() - timedelta(hours=3)
        await store.set_last_calendar_sync(last_sync)

        engine = await CalendarEngine.from_config(
            config, store=store, runner=runner, clock=clock, platform="darwin"
        )
        try:
            status = await engine.get_sync_status()
            assert status.last_sync_time == last_sync
            assert engine.synchronizer._freshness_ttl == timedelta(seconds=30)
            assert engine.detector._ttl == timedelta(seconds=60)
            assert engine.scheduler._cron == "15 7 * * *"
        finally:
            await engine.dispose()


# ============================================================================
# Delegation
# ============================================================================


class TestDelegation:
    async def test_extract_refreshes_todays_meetings(self, engine, runner):
        assert (await engine.get_todays_meetings()).total_meetings == 0

        runner.output = OUTPUT
        await engine.extract()

        meetings = await engine.get_todays_meetings()
        assert [m.title for m in meetings.meetings] == ["Standup"]
        assert await engine.has_todays_meetings() is True

    async def test_clear_events_refreshes_todays_meetings(self, engine, store):
        await store.set_events(
            [
                CalendarEvent(
                    id="x",
                    title="Lunch",
                    start_date=datetime(2026, 1, 6, 12, tzinfo=UTC),
                    end_date=datetime(2026, 1, 6, 13, tzinfo=UTC),
                    source=EventSource.file,
                )
            ]
        )
        assert await engine.has_todays_meetings() is True

        await engine.clear_events()

        assert await engine.has_todays_meetings() is False

    async def test_manual_sync_updates_status(self, engine, runner, clock):
        runner.output = OUTPUT

        result = await engine.perform_manual_sync()

        assert result.success is True
        assert result.events_count == 1
        assert (await engine.get_sync_status()).last_sync_time == clock.now()

    async def test_google_connection_round_trip(self, engine, store):
        await engine.connect_google_calendar("refresh")
        assert await store.get_google_calendar_connected() is True
        await engine.disconnect_google_calendar()
        assert await store.get_google_calendar_connected() is False

    async def test_native_support_reported(self, engine):
        assert engine.is_native_source_supported() is True


# ============================================================================
# Lifecycle
# ============================================================================


class TestLifecycle:
    async def test_start_and_stop_daily_sync(self, engine):
        await engine.start_daily_sync()
        assert (await engine.get_sync_status()).is_enabled is True
        assert engine.power_signal.subscriber_count == 1
        assert engine.resume_detector is not None
        assert engine.resume_detector._task is not None

        await engine.stop_daily_sync()
        assert (await engine.get_sync_status()).is_enabled is False
        assert engine.resume_detector._task is None

    async def test_dispose_is_idempotent(self, engine):
        await engine.start_daily_sync()
        await engine.dispose()
        await engine.dispose()
        assert engine.power_signal.subscriber_count == 0
