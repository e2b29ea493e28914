"""Tests for CalendarSynchronizer: coalescing, freshness, discovery and sources."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock

import pytest

from prepcal.calendar.errors import CalendarError, CalendarErrorCode
from prepcal.calendar.ics import FileImportAdapter
from prepcal.calendar.models import (
    CalendarEvent,
    CalendarImportResult,
    CalendarMetadata,
    CalendarSelection,
    EventSource,
)
from prepcal.calendar.native import NativeScriptAdapter
from prepcal.calendar.script_runner import ScriptTimeoutError
from prepcal.calendar.synchronizer import CalendarSynchronizer

pytestmark = pytest.mark.unit

OUTPUT = (
    "Standup|Tuesday, 6 January 2026 at 09.30.00|Tuesday, 6 January 2026 at 09.45.00|Work"
)


async def _wait_for_runner(runner, calls: int = 1) -> None:
    while runner.call_count < calls:
        await asyncio.sleep(0)


def _cloud_event(event_id: str = "google-1") -> CalendarEvent:
    return CalendarEvent(
        id=event_id,
        title="Cloud sync",
        start_date=datetime(2026, 1, 6, 15, tzinfo=UTC),
        end_date=datetime(2026, 1, 6, 16, tzinfo=UTC),
        source=EventSource.cloud,
        calendar_name="Google Calendar",
    )


def _fake_cloud(clock, events=None):
    cloud = MagicMock()
    cloud.fetch_events = AsyncMock(
        return_value=CalendarImportResult.build(
            events if events is not None else [_cloud_event()],
            source=EventSource.cloud,
            imported_at=clock.now(),
        )
    )
    cloud.aclose = AsyncMock()
    return cloud


# ============================================================================
# Coalescing
# ============================================================================


class TestCoalescing:
    async def test_concurrent_extracts_share_one_run(self, synchronizer, runner):
        runner.output = OUTPUT
        runner.gate = asyncio.Event()

        callers = [asyncio.create_task(synchronizer.extract()) for _ in range(5)]
        await _wait_for_runner(runner)
        assert synchronizer.is_extracting() is True

        runner.gate.set()
        results = await asyncio.gather(*callers)

        assert runner.call_count == 1
        assert all(result is results[0] for result in results)
        assert synchronizer.is_extracting() is False

    async def test_failure_is_shared_and_clears_in_flight(self, synchronizer, runner):
        runner.error = ScriptTimeoutError("timed out")
        runner.gate = asyncio.Event()

        callers = [asyncio.create_task(synchronizer.extract()) for _ in range(3)]
        await _wait_for_runner(runner)
        runner.gate.set()
        results = await asyncio.gather(*callers, return_exceptions=True)

        assert runner.call_count == 1
        assert all(isinstance(r, CalendarError) for r in results)
        assert all(r.code == CalendarErrorCode.TIMEOUT for r in results)
        assert synchronizer.is_extracting() is False
        assert synchronizer.last_extraction is None

        runner.error = None
        runner.gate = None
        await synchronizer.extract()
        assert runner.call_count == 2

    async def test_cancelled_caller_does_not_cancel_shared_run(self, synchronizer, runner):
        runner.output = OUTPUT
        runner.gate = asyncio.Event()

        first = asyncio.create_task(synchronizer.extract())
        second = asyncio.create_task(synchronizer.extract())
        await _wait_for_runner(runner)

        first.cancel()
        await asyncio.gather(first, return_exceptions=True)
        runner.gate.set()

        result = await second
        assert result.total_events == 1
        assert first.cancelled()

    async def test_unsupported_platform_raises_before_joining(self, store, runner, clock):
        native = NativeScriptAdapter(runner, clock=clock, platform="win32")
        synchronizer = CalendarSynchronizer(store, native=native, clock=clock)

        with pytest.raises(CalendarError) as exc_info:
            await synchronizer.extract()
        assert exc_info.value.code == CalendarErrorCode.PLATFORM_UNSUPPORTED


# ============================================================================
# Freshness
# ============================================================================


class TestFreshness:
    async def test_fresh_result_served_from_store(self, synchronizer, runner, clock, store):
        runner.output = OUTPUT
        first = await synchronizer.extract()
        extracted_at = synchronizer.last_extraction

        clock.advance(seconds=90)
        second = await synchronizer.extract()

        assert runner.call_count == 1
        assert second.imported_at == extracted_at
        assert [e.id for e in second.events] == [e.id for e in first.events]
        assert await store.get_last_calendar_sync() == extracted_at

    async def test_stale_after_two_minutes(self, synchronizer, runner, clock):
        await synchronizer.extract()
        clock.advance(minutes=2)
        await synchronizer.extract()
        assert runner.call_count == 2

    async def test_invalidate_forces_new_run(self, synchronizer, runner):
        await synchronizer.extract()
        await synchronizer.invalidate_cache()
        await synchronizer.extract()
        assert runner.call_count == 2

    async def test_selection_change_resets_freshness(self, synchronizer, runner):
        await synchronizer.extract()
        await synchronizer.set_calendar_selection(
            CalendarSelection(selected_calendar_uids=["Work"])
        )
        await synchronizer.extract(["Work"])
        assert runner.call_count == 2

    async def test_events_persisted_and_cleared(self, synchronizer, runner):
        runner.output = OUTPUT
        await synchronizer.extract()
        assert [e.title for e in await synchronizer.get_stored_events()] == ["Standup"]

        await synchronizer.clear_events()
        assert await synchronizer.get_stored_events() == []


# ============================================================================
# Discovery and selection
# ============================================================================


class TestDiscovery:
    async def test_first_discovery_populates_cache_only(self, synchronizer, runner, clock):
        runner.output = "Work|||true|||x|||blue, Home|||true|||x|||red"

        result = await synchronizer.discover_calendars()

        selection = await synchronizer.get_calendar_selection()
        assert result.total_calendars == 2
        assert [c.uid for c in selection.discovery_cache] == ["Work", "Home"]
        assert selection.selected_calendar_uids == []
        assert selection.last_discovery == clock.now()

    async def test_new_calendars_auto_selected(self, synchronizer, runner, store):
        await store.set_calendar_selection(
            CalendarSelection(
                selected_calendar_uids=["Work"],
                discovery_cache=[
                    CalendarMetadata(uid="Work", name="Work", title="Work"),
                    CalendarMetadata(uid="Home", name="Home", title="Home"),
                ],
            )
        )
        runner.output = "Work|||true|||x|||blue, Home|||true|||x|||red, Team|||false|||x|||green"

        await synchronizer.discover_calendars()

        selection = await store.get_calendar_selection()
        assert selection.selected_calendar_uids == ["Work", "Team"]

    async def test_auto_select_disabled(self, synchronizer, runner, store):
        await store.set_calendar_selection(
            CalendarSelection(
                selected_calendar_uids=["Work"],
                auto_select_new=False,
                discovery_cache=[CalendarMetadata(uid="Work", name="Work", title="Work")],
            )
        )
        runner.output = "Work|||true|||x|||blue, Team|||false|||x|||green"

        await synchronizer.discover_calendars()

        assert (await store.get_calendar_selection()).selected_calendar_uids == ["Work"]


# ============================================================================
# File and cloud sources
# ============================================================================


class TestOtherSources:
    async def test_import_file_persists_and_resets_freshness(
        self, store, native_adapter, clock, tmp_path, runner
    ):
        (tmp_path / "today.ics").write_text(
            "BEGIN:VCALENDAR\r\nVERSION:2.0\r\nPRODID:-//t//EN\r\n"
            "BEGIN:VEVENT\r\nUID:1\r\nSUMMARY:Imported\r\nDTSTART:20260106T110000Z\r\n"
            "END:VEVENT\r\nEND:VCALENDAR\r\n"
        )
        synchronizer = CalendarSynchronizer(
            store,
            native=native_adapter,
            file_adapter=FileImportAdapter(clock=clock, base_dir=tmp_path),
            clock=clock,
        )
        await synchronizer.extract()

        result = await synchronizer.import_file("today.ics")

        assert result.source == EventSource.file
        assert [e.title for e in await store.get_events()] == ["Imported"]
        assert synchronizer.last_extraction is None

    async def test_fetch_cloud_without_connection_is_auth_failed(self, synchronizer):
        with pytest.raises(CalendarError) as exc_info:
            await synchronizer.fetch_cloud_events()
        assert exc_info.value.code == CalendarErrorCode.AUTH_FAILED

    async def test_cloud_adapter_built_once_per_token(self, store, native_adapter, clock):
        cloud = _fake_cloud(clock)
        factory = MagicMock(return_value=cloud)
        synchronizer = CalendarSynchronizer(
            store, native=native_adapter, cloud_factory=factory, clock=clock
        )
        await store.set_google_calendar_credentials("refresh-1")

        await synchronizer.fetch_cloud_events()
        await synchronizer.fetch_cloud_events()

        factory.assert_called_once_with("refresh-1")
        assert [e.id for e in await store.get_events()] == ["google-1"]

        await store.set_google_calendar_credentials("refresh-2")
        await synchronizer.fetch_cloud_events()
        assert factory.call_count == 2
        cloud.aclose.assert_awaited_once()


    async def test_fetch_cloud_resets_native_freshness(self, store, native_adapter, runner, clock):
        runner.output = OUTPUT
        synchronizer = CalendarSynchronizer(
            store,
            native=native_adapter,
            cloud_factory=lambda token: _fake_cloud(clock),
            clock=clock,
        )
        await store.set_google_calendar_credentials("refresh")
        await synchronizer.extract()

        await synchronizer.fetch_cloud_events()

        assert synchronizer.last_extraction is None
        result = await synchronizer.extract()
        assert runner.call_count == 2
        assert [e.source for e in result.events] == [EventSource.native]

# ============================================================================
# Automatic sync and connection state
# ============================================================================


class TestAutomaticSync:
    async def test_has_connected_calendars(self, store, runner, clock):
        native = NativeScriptAdapter(runner, clock=clock, platform="linux")
        synchronizer = CalendarSynchronizer(
            store, native=native, cloud_factory=lambda token: _fake_cloud(clock), clock=clock
        )
        assert await synchronizer.has_connected_calendars() is False

        await store.set_google_calendar_credentials("refresh")
        assert await synchronizer.has_connected_calendars() is True

    async def test_native_connected_by_default_on_supported_platform(self, synchronizer):
        assert await synchronizer.has_connected_calendars() is True

    async def test_native_only_sync_bypasses_freshness(self, synchronizer, runner):
        runner.output = OUTPUT
        await synchronizer.extract()

        result = await synchronizer.perform_automatic_sync()

        assert runner.call_count == 2
        assert result.total_events == 1
        assert result.source == EventSource.native

    async def test_native_and_cloud_union_persisted(self, store, native_adapter, runner, clock):
        runner.output = OUTPUT
        synchronizer = CalendarSynchronizer(
            store,
            native=native_adapter,
            cloud_factory=lambda token: _fake_cloud(clock),
            clock=clock,
        )
        await store.set_google_calendar_credentials("refresh")

        result = await synchronizer.perform_automatic_sync()

        assert result.total_events == 2
        stored = await store.get_events()
        assert sorted(e.source for e in stored) == [EventSource.cloud, EventSource.native]
        assert synchronizer.last_extraction is None

    async def test_dispose_cancels_in_flight_and_closes_cloud(
        self, store, native_adapter, runner, clock
    ):
        cloud = _fake_cloud(clock)
        synchronizer = CalendarSynchronizer(
            store, native=native_adapter, cloud_factory=lambda token: cloud, clock=clock
        )
        await store.set_google_calendar_credentials("refresh")
        await synchronizer.fetch_cloud_events()

        runner.gate = asyncio.Event()
        caller = asyncio.create_task(synchronizer.extract())
        await _wait_for_runner(runner)

        await synchronizer.dispose()

        assert synchronizer.is_extracting() is False
        cloud.aclose.assert_awaited_once()
        with pytest.raises(asyncio.CancelledError):
            await caller
