"""
In-process rate limiter for outbound calls.

Two budgets are enforced together:

- a concurrency budget: at most ``max_concurrent_calls`` calls in flight;
- a period budget: at most ``limit_for_period`` calls started per
  ``refresh_period`` seconds (fixed window).

Callers queue for at most ``timeout`` seconds; past that a ``RateLimitError``
is raised and the call must not be attempted.
"""

import asyncio
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Dict

from shared.logging import get_logger
from shared.errors import RateLimitError


class RateLimiter:
    """Concurrency plus calls-per-period limiter for one downstream endpoint."""

    def __init__(self,
                 name: str = "default",
                 max_concurrent_calls: int = 10,
                 limit_for_period: int = 50,
                 refresh_period: float = 1.0,
                 timeout: float = 5.0,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep):
        self.name = name
        self.max_concurrent_calls = max_concurrent_calls
        self.limit_for_period = limit_for_period
        self.refresh_period = refresh_period
        self.timeout = timeout
        self.logger = get_logger(f"rate_limiter.{name}")

        self._clock = clock
        self._sleep = sleep
        self._semaphore = asyncio.Semaphore(max_concurrent_calls)
        self._in_flight = 0
        self._window_start = clock()
        self._permits_used = 0
        self._rejected_count = 0

    async def _acquire_slot(self) -> None:
        if not self._semaphore.locked():
            await self._semaphore.acquire()
            return
        try:
            await asyncio.wait_for(self._semaphore.acquire(), timeout=self.timeout)
        except asyncio.TimeoutError:
            self._rejected_count += 1
            self.logger.warning(
                "Concurrent call budget exhausted",
                max_concurrent_calls=self.max_concurrent_calls,
                timeout=self.timeout
            )
            raise RateLimitError(
                f"Rate limiter '{self.name}': no call slot within {self.timeout}s",
                details={"max_concurrent_calls": self.max_concurrent_calls}
            )

    async def _acquire_period_permit(self, deadline: float) -> None:
        while True:
            now = self._clock()
            if now - self._window_start >= self.refresh_period:
                self._window_start = now
                self._permits_used = 0

            if self._permits_used < self.limit_for_period:
                self._permits_used += 1
                return

            wait = self._window_start + self.refresh_period - now
            if now + wait > deadline:
                self._rejected_count += 1
                self.logger.warning(
                    "Call rate budget exhausted",
                    limit_for_period=self.limit_for_period,
                    refresh_period=self.refresh_period
                )
                raise RateLimitError(
                    f"Rate limiter '{self.name}': no permit within {self.timeout}s",
                    details={"limit_for_period": self.limit_for_period}
                )
            await self._sleep(wait)

    @asynccontextmanager
    async def permit(self) -> AsyncIterator[None]:
        """Hold one call slot and one period permit for the duration of the block."""
        deadline = self._clock() + self.timeout
        await self._acquire_slot()
        self._in_flight += 1
        try:
            await self._acquire_period_permit(deadline)
            yield
        finally:
            self._in_flight -= 1
            self._semaphore.release()

    def get_state(self) -> Dict[str, Any]:
        """Get current limiter state."""
        return {
            "name": self.name,
            "in_flight": self._in_flight,
            "max_concurrent_calls": self.max_concurrent_calls,
            "permits_used": self._permits_used,
            "limit_for_period": self.limit_for_period,
            "rejected_count": self._rejected_count
        }
