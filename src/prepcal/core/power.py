"""System resume notifications.

:class:`PowerSignal` is a tiny publish/subscribe hub for the "system resumed"
event. :class:`WallClockResumeDetector` feeds it on hosts without a native
power API: while the host sleeps the monotonic clock stalls but wall-clock
time keeps moving, so a wall-clock jump larger than the polling interval
plus ``threshold`` means the host was suspended.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable

logger = logging.getLogger(__name__)

ResumeCallback = Callable[[], None]


class PowerSignal:
    def __init__(self) -> None:
        self._callbacks: list[ResumeCallback] = []

    def subscribe(self, callback: ResumeCallback) -> Callable[[], None]:
        """Register *callback*; the returned function removes it again."""
        self._callbacks.append(callback)

        def unsubscribe() -> None:
            try:
                self._callbacks.remove(callback)
            except ValueError:
                logger.debug("Resume callback already unsubscribed")

        return unsubscribe

    @property
    def subscriber_count(self) -> int:
        return len(self._callbacks)

    def emit(self) -> None:
        for callback in list(self._callbacks):
            try:
                callback()
            except Exception:
                logger.exception("Resume callback %r failed", callback)


class WallClockResumeDetector:
    """Poll the clocks and emit on *signal* when a suspend gap is detected."""

    def __init__(
        self,
        signal: PowerSignal,
        *,
        interval: float = 10.0,
        threshold: float = 30.0,
        wall_clock: Callable[[], float] = time.time,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._signal = signal
        self._interval = interval
        self._threshold = threshold
        self._wall_clock = wall_clock
        self._monotonic = monotonic
        self._task: asyncio.Task[None] | None = None
        self._last_wall = wall_clock()
        self._last_mono = monotonic()

    def check(self) -> bool:
        """Compare clock progress since the last check; emit and return True on a gap."""
        wall, mono = self._wall_clock(), self._monotonic()
        drift = (wall - self._last_wall) - (mono - self._last_mono)
        self._last_wall, self._last_mono = wall, mono
        if drift > self._threshold:
            logger.info("Detected system resume (wall clock advanced %.0fs past monotonic)", drift)
            self._signal.emit()
            return True
        return False

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._last_wall, self._last_mono = self._wall_clock(), self._monotonic()
        self._task = asyncio.create_task(self._loop(), name="prepcal-resume-detector")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)
        self._task = None

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            self.check()
