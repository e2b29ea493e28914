"""Daily calendar sync scheduling with manual sync and resume handling.

One recurring job runs the automatic sync at the times given by a cron
expression (``0 6 * * *`` by default). Timers do not fire while the host is
asleep, so the scheduler listens on a :class:`~prepcal.core.power.PowerSignal`
and, after a resume that skipped today's run, re-arms the job and syncs after
a short stabilization delay.

Every sync attempt goes through one running flag that is acquired and
released by :meth:`CalendarSyncScheduler._running`; an attempt that finds it
set returns immediately with ``"Sync already in progress"``.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable, Coroutine, Iterator
from datetime import datetime, timedelta
from typing import Any, Protocol

from croniter import croniter
from opentelemetry import trace

from prepcal.calendar.detector import MeetingDetector
from prepcal.calendar.models import CalendarImportResult, SyncResult, SyncStatus
from prepcal.core.clock import Clock, SystemClock, start_of_day
from prepcal.core.power import PowerSignal

logger = logging.getLogger(__name__)

DEFAULT_SYNC_CRON = "0 6 * * *"
DEFAULT_RESUME_DELAY_SECONDS = 5.0

SYNC_ALREADY_RUNNING = "Sync already in progress"
NO_CALENDARS_CONNECTED = "No calendars connected"


class SyncSource(Protocol):
    async def has_connected_calendars(self) -> bool: ...

    async def perform_automatic_sync(self) -> CalendarImportResult: ...


def next_cron_time(cron: str, now: datetime) -> datetime:
    """Return the first time strictly after *now* matching *cron* (same tzinfo)."""
    return croniter(cron, now).get_next(datetime)


def scheduled_time_today(cron: str, now: datetime) -> datetime | None:
    """Return the first run of *cron* on *now*'s local day, or ``None`` if there is none."""
    first = croniter(cron, start_of_day(now) - timedelta(seconds=1)).get_next(datetime)
    if first.date() != now.date():
        return None
    return first


class CalendarSyncScheduler:
    def __init__(
        self,
        source: SyncSource,
        *,
        power_signal: PowerSignal | None = None,
        detector: MeetingDetector | None = None,
        clock: Clock | None = None,
        cron: str = DEFAULT_SYNC_CRON,
        resume_delay: float = DEFAULT_RESUME_DELAY_SECONDS,
        last_sync_time: datetime | None = None,
    ) -> None:
        if not croniter.is_valid(cron):
            raise ValueError(f"Invalid cron expression: {cron!r}")
        self._source = source
        self._power_signal = power_signal
        self._detector = detector
        self._clock = clock or SystemClock()
        self._cron = cron
        self._resume_delay = resume_delay

        self._is_enabled = False
        self._is_running = False
        self._last_sync_time = last_sync_time
        self._last_error: str | None = None
        self._job: asyncio.Task[None] | None = None
        self._background: set[asyncio.Task[Any]] = set()
        self._unsubscribe: Callable[[], None] | None = None

    # ------------------------------------------------------------------
    # Daily job
    # ------------------------------------------------------------------

    @property
    def is_enabled(self) -> bool:
        return self._is_enabled

    async def start_daily_sync(self) -> None:
        """Enable the daily job. Calling it again while enabled does nothing."""
        if self._is_enabled:
            return

        self._is_enabled = True
        self._last_error = None
        self._register_job()

        if self._power_signal is not None and self._unsubscribe is None:
            self._unsubscribe = self._power_signal.subscribe(self.handle_resume)

        now = self._clock.now()
        if self._last_sync_time is None or self._last_sync_time.date() != now.date():
            logger.info("No calendar sync yet today; starting initial sync in the background")
            self._spawn(self._perform_sync(), name="prepcal-initial-sync")

        logger.info("Daily calendar sync enabled (cron=%s)", self._cron)

    async def stop_daily_sync(self) -> None:
        self._is_enabled = False
        job, self._job = self._job, None
        pending = [task for task in (job, *self._background) if task is not None]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._background.clear()

    def _register_job(self) -> None:
        if self._job is not None and not self._job.done():
            self._job.cancel()
        self._job = asyncio.create_task(self._job_loop(), name="prepcal-daily-sync")

    async def _job_loop(self) -> None:
        while True:
            now = self._clock.now()
            next_run = next_cron_time(self._cron, now)
            delay = max((next_run - now).total_seconds(), 0.0)
            logger.debug("Next scheduled calendar sync at %s", next_run.isoformat())
            await asyncio.sleep(delay)
            await self._perform_sync()

    def _spawn(self, coro: Coroutine[Any, Any, Any], *, name: str) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    # ------------------------------------------------------------------
    # Resume handling
    # ------------------------------------------------------------------

    def handle_resume(self) -> None:
        """PowerSignal callback: re-arm and catch up on a missed run."""
        if not self._is_enabled:
            return

        now = self._clock.now()
        scheduled = scheduled_time_today(self._cron, now)
        missed_run = (
            scheduled is not None
            and now > scheduled
            and self._last_sync_time is not None
            and self._last_sync_time < scheduled
        )
        # Sleep suspended the job's timer; recompute it from the wall clock.
        self._register_job()

        if self._last_sync_time is None or missed_run:
            logger.info(
                "System resumed after a missed sync; syncing in %.0fs", self._resume_delay
            )
            self._spawn(self._delayed_sync(self._resume_delay), name="prepcal-resume-sync")

    async def _delayed_sync(self, delay: float) -> None:
        await asyncio.sleep(delay)
        await self._perform_sync()

    # ------------------------------------------------------------------
    # Sync attempts
    # ------------------------------------------------------------------

    @contextlib.contextmanager
    def _running(self) -> Iterator[None]:
        self._is_running = True
        try:
            yield
        finally:
            self._is_running = False

    async def perform_manual_sync(self) -> SyncResult:
        return await self._perform_sync()

    async def _perform_sync(self) -> SyncResult:
        sync_time = self._clock.now()
        if self._is_running:
            return SyncResult(success=False, sync_time=sync_time, error=SYNC_ALREADY_RUNNING)

        tracer = trace.get_tracer("prepcal")
        with self._running(), tracer.start_as_current_span("prepcal.calendar.sync") as span:
            self._last_error = None
            try:
                if not await self._source.has_connected_calendars():
                    span.set_attribute("calendar.connected", False)
                    return SyncResult(
                        success=True, sync_time=sync_time, error=NO_CALENDARS_CONNECTED
                    )

                result = await self._source.perform_automatic_sync()
            except Exception as exc:
                message = str(exc) or "Unknown sync error"
                logger.warning("Calendar sync failed: %s", message)
                span.record_exception(exc)
                self._last_error = message
                return SyncResult(success=False, sync_time=sync_time, error=message)

            self._last_sync_time = sync_time
            if self._detector is not None:
                self._detector.invalidate_cache()
            span.set_attribute("calendar.events", result.total_events)
            logger.info("Calendar sync completed with %d events", result.total_events)
            return SyncResult(
                success=True, events_count=result.total_events, sync_time=sync_time, error=None
            )

    # ------------------------------------------------------------------
    # Status and lifecycle
    # ------------------------------------------------------------------

    async def get_sync_status(self) -> SyncStatus:
        next_sync_time = None
        if self._is_enabled and self._job is not None:
            next_sync_time = next_cron_time(self._cron, self._clock.now())
        return SyncStatus(
            is_enabled=self._is_enabled,
            last_sync_time=self._last_sync_time,
            next_sync_time=next_sync_time,
            is_running=self._is_running,
            error=self._last_error,
        )

    async def dispose(self) -> None:
        await self.stop_daily_sync()
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
