"""
Timers

Watchdog: one-shot timeout on the event loop, used by the scheduler to
abandon a transaction the transport never answers.

ScheduledLoop: fires an async callback at fixed intervals, accounting for
callback execution time so the period does not drift.

Usage:
    watchdog = Watchdog(3.0, on_expired)
    watchdog.start()      # (re)arm
    watchdog.stop()       # disarm

    loop = ScheduledLoop(30.0, report_status, name="status")
    await loop.start()
    loop.stop()
"""

import asyncio
import time
from typing import Awaitable, Callable

from .logging_setup import get_service_logger

logger = get_service_logger("timers")


class Watchdog:
    """
    Single-shot timer bound to the running event loop.

    Attributes:
        timeout: Seconds before the callback fires
    """

    def __init__(self, timeout_seconds: float, callback: Callable[[], None]):
        self.timeout = timeout_seconds
        self.callback = callback
        self._handle: asyncio.TimerHandle | None = None

    @property
    def armed(self) -> bool:
        return self._handle is not None

    def start(self) -> None:
        """Arm (or re-arm) the watchdog"""
        self.stop()
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(self.timeout, self._fire)

    def stop(self) -> None:
        """Disarm the watchdog (no-op if not armed)"""
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self) -> None:
        self._handle = None
        self.callback()


class ScheduledLoop:
    """
    Precise interval scheduler that accounts for execution time.

    The next iteration is scheduled relative to the planned schedule,
    not relative to when the callback finished. Missed intervals are
    skipped rather than queued up.

    Attributes:
        interval: The interval in seconds between executions
        callback: Async function to call each interval
        skipped_count: Number of intervals skipped (to catch up)
    """

    def __init__(
        self,
        interval_seconds: float,
        callback: Callable[[], Awaitable[None]],
        name: str = "unnamed",
    ):
        self.interval = interval_seconds
        self.callback = callback
        self.name = name

        self._next_run: float = 0
        self._running = False
        self._task: asyncio.Task | None = None

        self._skipped_count: int = 0
        self._execution_count: int = 0
        self._last_execution_time: float = 0

    async def start(self) -> None:
        """Start the scheduled loop in a background task."""
        if self._running:
            return

        self._running = True
        self._task = asyncio.create_task(self._run())

    def stop(self) -> None:
        """Stop the scheduled loop."""
        self._running = False
        if self._task:
            self._task.cancel()
            self._task = None

    async def _run(self) -> None:
        """Main loop that fires callback at exact intervals."""
        self._next_run = time.monotonic() + self.interval

        while self._running:
            sleep_duration = self._next_run - time.monotonic()
            if sleep_duration > 0:
                try:
                    await asyncio.sleep(sleep_duration)
                except asyncio.CancelledError:
                    break

            if not self._running:
                break

            try:
                start = time.monotonic()
                await self.callback()
                self._last_execution_time = time.monotonic() - start
                self._execution_count += 1
            except Exception as e:
                logger.error(f"Scheduled callback '{self.name}' error: {e}")

            # Skip missed intervals to catch up (don't queue up missed executions)
            now = time.monotonic()
            skipped = 0
            while self._next_run <= now:
                self._next_run += self.interval
                skipped += 1

            # First skip is expected (the one we just executed)
            if skipped > 1:
                self._skipped_count += skipped - 1
                logger.warning(
                    f"Scheduler '{self.name}' skipped {skipped - 1} intervals "
                    f"(execution took {self._last_execution_time:.3f}s)"
                )

    @property
    def skipped_count(self) -> int:
        """Number of intervals skipped to catch up."""
        return self._skipped_count

    @property
    def execution_count(self) -> int:
        """Total number of successful executions."""
        return self._execution_count

    def get_stats(self) -> dict:
        """Get loop statistics for observability."""
        return {
            "name": self.name,
            "interval_s": self.interval,
            "execution_count": self._execution_count,
            "skipped_count": self._skipped_count,
            "last_execution_s": round(self._last_execution_time, 3),
        }
