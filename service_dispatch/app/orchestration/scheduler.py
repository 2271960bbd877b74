"""
Fixed-interval scheduler with at most one run in flight.
"""

import asyncio
import threading
from typing import Any, Awaitable, Callable, Dict, Optional

from shared.logging import get_logger
from shared.metrics import MetricsCollector


class DispatchScheduler:
    """Fires ``run`` every ``interval`` seconds unless a run is still going.

    Overlapping ticks are dropped, never queued.
    """

    def __init__(self,
                 run: Callable[[], Awaitable[Any]],
                 interval: float = 60.0,
                 initial_delay: float = 0.0,
                 metrics: Optional[MetricsCollector] = None):
        self._run = run
        self.interval = interval
        self.initial_delay = initial_delay
        self.metrics = metrics
        self.logger = get_logger("dispatch.scheduler")

        self.ticks_skipped = 0
        self.runs_started = 0
        self.runs_failed = 0
        self.last_result: Any = None
        self.last_error: Optional[str] = None

        self._lock = threading.Lock()
        self._run_task: Optional[asyncio.Task] = None
        self._loop_task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._lock.locked()

    def tick(self) -> bool:
        """Start a run unless one is in flight; returns whether it started."""
        if not self._lock.acquire(blocking=False):
            self.ticks_skipped += 1
            if self.metrics is not None:
                self.metrics.increment_counter("scheduler_ticks_skipped_total")
            self.logger.info("Previous run still in progress, skipping tick", ticks_skipped=self.ticks_skipped)
            return False

        try:
            self._run_task = asyncio.get_running_loop().create_task(self._execute())
        except BaseException:
            self._lock.release()
            raise

        self.runs_started += 1
        return True

    async def _execute(self) -> None:
        try:
            self.last_result = await self._run()
            self.last_error = None
        except Exception as e:
            self.runs_failed += 1
            self.last_error = str(e) or type(e).__name__
            self.logger.error("Scheduled run failed", error=self.last_error)
        finally:
            self._lock.release()

    async def wait_idle(self) -> None:
        """Wait for the in-flight run, if any."""
        task = self._run_task
        if task is not None and not task.done():
            await asyncio.wait({task})

    async def _loop(self) -> None:
        if self.initial_delay > 0:
            await asyncio.sleep(self.initial_delay)
        while True:
            self.tick()
            await asyncio.sleep(self.interval)

    def start(self) -> None:
        if self._loop_task is not None:
            return
        self._loop_task = asyncio.create_task(self._loop())
        self.logger.info("Scheduler started", interval=self.interval, initial_delay=self.initial_delay)

    async def stop(self) -> None:
        """Stop ticking and let the in-flight run finish."""
        if self._loop_task is not None:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None
        await self.wait_idle()
        self.logger.info("Scheduler stopped")

    def get_state(self) -> Dict[str, Any]:
        last_result = self.last_result
        if hasattr(last_result, "to_dict"):
            last_result = last_result.to_dict()
        return {
            "running": self.running,
            "interval": self.interval,
            "runs_started": self.runs_started,
            "runs_failed": self.runs_failed,
            "ticks_skipped": self.ticks_skipped,
            "last_result": last_result,
            "last_error": self.last_error
        }
