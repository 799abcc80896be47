"""
Unified Scheduler for Interval and Cron Execution

Provides two loop types sharing one execution guard:
- IntervalLoop fires at exact wall-clock interval boundaries, tracking
  drift and skipping missed intervals (collection path).
- CronLoop fires at the next time matching a cron expression
  (config-sync and upload paths).

Every loop is non-reentrant: a tick, scheduled or manual, that fires
while the previous tick of the same loop is still running is skipped
and counted instead of queued.

Usage:
    loop = CronLoop("*/5 * * * *", upload_tick, name="upload")
    await loop.start()
    ...
    await loop.run_now()   # manual trigger, honours the same guard
    loop.stop()
"""

import asyncio
import time
from datetime import datetime, timezone
from typing import Awaitable, Callable

from croniter import croniter

from .exceptions import ConfigError
from .logging_setup import get_service_logger

logger = get_service_logger("scheduler")


class _GuardedLoop:
    """Execution guard and metrics shared by all loop types."""

    def __init__(self, callback: Callable[[], Awaitable[None]], name: str):
        self.callback = callback
        self.name = name

        self._running = False
        self._task: asyncio.Task | None = None
        self._busy = asyncio.Lock()

        self._execution_count: int = 0
        self._overlap_skipped: int = 0
        self._error_count: int = 0
        self._last_execution_time: float = 0
        self._last_run_at: datetime | None = None

    @property
    def is_running(self) -> bool:
        """True while the background task is active."""
        return self._running

    @property
    def is_busy(self) -> bool:
        """True while a tick is executing."""
        return self._busy.locked()

    async def run_now(self) -> bool:
        """
        Execute one tick immediately.

        Returns:
            False if skipped because a tick of this loop is already running
        """
        if self._busy.locked():
            self._overlap_skipped += 1
            logger.warning(
                f"Loop '{self.name}' tick skipped: previous tick still running",
                extra={"loop": self.name, "overlap_skipped": self._overlap_skipped},
            )
            return False

        async with self._busy:
            start = time.monotonic()
            try:
                await self.callback()
                self._execution_count += 1
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._error_count += 1
                logger.error(f"Scheduled callback '{self.name}' error: {e}", exc_info=True)
            finally:
                self._last_execution_time = time.monotonic() - start
                self._last_run_at = datetime.now(timezone.utc)
        return True

    async def start(self) -> None:
        """Start the loop in a background task."""
        if self._running:
            return

        self._running = True
        self._task = asyncio.create_task(self._run(), name=f"loop-{self.name}")

    def stop(self) -> None:
        """Stop the loop. An in-flight tick is cancelled."""
        self._running = False
        if self._task:
            self._task.cancel()
            self._task = None

    async def _run(self) -> None:
        raise NotImplementedError

    @property
    def execution_count(self) -> int:
        """Total number of completed executions."""
        return self._execution_count

    @property
    def overlap_skipped(self) -> int:
        """Ticks skipped because the previous tick was still running."""
        return self._overlap_skipped

    @property
    def last_execution_time(self) -> float:
        """Duration of last callback execution in seconds."""
        return self._last_execution_time

    def get_stats(self) -> dict:
        return {
            "name": self.name,
            "running": self._running,
            "busy": self.is_busy,
            "execution_count": self._execution_count,
            "error_count": self._error_count,
            "overlap_skipped": self._overlap_skipped,
            "last_execution_s": round(self._last_execution_time, 3),
            "last_run_at": self._last_run_at.isoformat() if self._last_run_at else None,
        }


class IntervalLoop(_GuardedLoop):
    """
    Fires every `interval_seconds` on wall-clock boundaries.

    Ticks are scheduled against the boundary grid, so callback time does
    not accumulate. Boundaries that pass while a tick runs are dropped
    and counted, never queued.
    """

    # Larger lateness is a clock step (NTP after boot, resume), not drift
    CLOCK_JUMP_S = 30

    def __init__(
        self,
        interval_seconds: float,
        callback: Callable[[], Awaitable[None]],
        name: str = "unnamed",
    ):
        super().__init__(callback, name)
        self.interval = interval_seconds

        self._drift_total: float = 0
        self._last_drift_ms: float = 0
        self._missed_intervals: int = 0

    def _boundary_after(self, now: float) -> float:
        return (now // self.interval + 1) * self.interval

    async def _run(self) -> None:
        due = self._boundary_after(time.time())

        while self._running:
            try:
                await asyncio.sleep(max(0.0, due - time.time()))
            except asyncio.CancelledError:
                break
            if not self._running:
                break

            self._record_lateness(time.time() - due)
            await self.run_now()

            following = max(self._boundary_after(time.time()), due + self.interval)
            missed = int(round((following - due) / self.interval)) - 1
            if missed > 0:
                self._missed_intervals += missed
                logger.warning(
                    f"Loop '{self.name}' missed {missed} intervals "
                    f"(tick took {self._last_execution_time:.3f}s)",
                    extra={"loop": self.name, "missed": missed},
                )
            due = following

    def _record_lateness(self, lateness: float) -> None:
        if lateness > self.CLOCK_JUMP_S:
            logger.info(f"Loop '{self.name}' clock jump of {lateness:.0f}s, realigning")
            self._last_drift_ms = 0
            return
        self._drift_total += max(0.0, lateness)
        self._last_drift_ms = lateness * 1000

    def get_stats(self) -> dict:
        stats = super().get_stats()
        stats.update({
            "interval_s": self.interval,
            "drift_total_s": round(self._drift_total, 3),
            "drift_last_ms": round(self._last_drift_ms, 1),
            "missed_intervals": self._missed_intervals,
        })
        return stats


class CronLoop(_GuardedLoop):
    """Fires the callback each time the cron expression matches."""

    def __init__(
        self,
        expression: str,
        callback: Callable[[], Awaitable[None]],
        name: str = "unnamed",
    ):
        super().__init__(callback, name)
        self._validate(expression)
        self.expression = expression
        self._next_fire: datetime | None = None
        self._wakeup = asyncio.Event()

    @staticmethod
    def _validate(expression: str) -> None:
        if not croniter.is_valid(expression):
            raise ConfigError(f"Invalid cron expression: '{expression}'")

    def next_fire_time(self, after: datetime | None = None) -> datetime:
        """Next matching time strictly after `after` (default now)."""
        base = after or datetime.now(timezone.utc)
        return croniter(self.expression, base).get_next(datetime)

    async def _run(self) -> None:
        while self._running:
            self._next_fire = self.next_fire_time()
            delay = (self._next_fire - datetime.now(timezone.utc)).total_seconds()
            if delay > 0:
                try:
                    await asyncio.wait_for(self._wakeup.wait(), timeout=delay)
                except asyncio.TimeoutError:
                    pass
                except asyncio.CancelledError:
                    break

            if not self._running:
                break

            if self._wakeup.is_set():
                # Expression changed while waiting; compute the next fire time again
                self._wakeup.clear()
                continue

            await self.run_now()

    async def reschedule(self, expression: str) -> None:
        """Switch to a new expression, restarting the timer if running."""
        self._validate(expression)
        if expression == self.expression:
            return

        old = self.expression
        self.expression = expression
        logger.info(
            f"Loop '{self.name}' rescheduled: '{old}' -> '{expression}'",
            extra={"loop": self.name, "cron": expression},
        )
        self._wakeup.set()

    def get_stats(self) -> dict:
        stats = super().get_stats()
        stats.update({
            "cron": self.expression,
            "next_fire_at": self._next_fire.isoformat() if self._next_fire else None,
        })
        return stats


class SchedulerGroup:
    """
    Manage multiple loops together.

    Provides a single interface to start/stop loops and aggregate
    their statistics.
    """

    def __init__(self):
        self._loops: dict[str, _GuardedLoop] = {}

    def add(self, loop: _GuardedLoop) -> _GuardedLoop:
        """Add a loop to the group."""
        self._loops[loop.name] = loop
        return loop

    async def start_all(self) -> None:
        for loop in self._loops.values():
            await loop.start()

    def stop_all(self) -> None:
        for loop in self._loops.values():
            loop.stop()

    def get_stats(self) -> dict:
        return {name: loop.get_stats() for name, loop in self._loops.items()}

    def get(self, name: str) -> _GuardedLoop | None:
        return self._loops.get(name)
