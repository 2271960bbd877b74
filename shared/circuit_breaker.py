"""
Circuit breaker pattern implementation for resilient service calls.

The breaker keeps a count-based sliding window of the most recent call
results. It opens once the window holds at least ``minimum_calls`` results
and the failure rate reaches ``failure_rate_threshold`` percent, rejects
calls for ``open_duration`` seconds, then admits up to
``half_open_max_calls`` probes. The first probe to succeed closes the
breaker; a failed probe opens it again.
"""

import asyncio
import threading
import time
from collections import deque
from enum import Enum
from typing import Deque, Dict, Any, Optional, Callable, Awaitable

from shared.logging import get_logger


class CircuitBreakerState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"      # Normal operation
    OPEN = "open"          # Failing, requests blocked
    HALF_OPEN = "half_open"  # Testing if service recovered


class CircuitBreakerOpenException(Exception):
    """Exception raised when circuit breaker is open."""
    pass


class CircuitBreaker:
    """Sliding-window circuit breaker shared by all calls to one endpoint."""

    def __init__(self,
                 name: str = "default",
                 failure_rate_threshold: float = 50.0,
                 sliding_window_size: int = 100,
                 minimum_calls: int = 10,
                 open_duration: float = 60.0,
                 half_open_max_calls: int = 1,
                 clock: Callable[[], float] = time.monotonic):
        if not 0 < failure_rate_threshold <= 100:
            raise ValueError("failure_rate_threshold must be in (0, 100]")
        self.name = name
        self.failure_rate_threshold = failure_rate_threshold
        self.sliding_window_size = sliding_window_size
        self.minimum_calls = min(minimum_calls, sliding_window_size)
        self.open_duration = open_duration
        self.half_open_max_calls = half_open_max_calls
        self.logger = get_logger(f"circuit_breaker.{name}")

        self._clock = clock
        self._lock = threading.Lock()
        self._state = CircuitBreakerState.CLOSED
        self._window: Deque[bool] = deque(maxlen=sliding_window_size)
        self._opened_at = 0.0
        self._half_open_calls = 0
        self._rejected_count = 0

    @property
    def state(self) -> CircuitBreakerState:
        with self._lock:
            self._maybe_half_open()
            return self._state

    def _maybe_half_open(self) -> None:
        if (self._state == CircuitBreakerState.OPEN
                and self._clock() - self._opened_at >= self.open_duration):
            self._state = CircuitBreakerState.HALF_OPEN
            self._half_open_calls = 0
            self.logger.info("Circuit breaker transitioning to half-open")

    def _open(self) -> None:
        self._state = CircuitBreakerState.OPEN
        self._opened_at = self._clock()
        self._half_open_calls = 0

    def _failure_rate(self) -> float:
        if not self._window:
            return 0.0
        return sum(self._window) * 100.0 / len(self._window)

    def allow_request(self) -> bool:
        """Reserve permission for one call."""
        with self._lock:
            self._maybe_half_open()

            if self._state == CircuitBreakerState.CLOSED:
                return True

            if self._state == CircuitBreakerState.HALF_OPEN:
                if self._half_open_calls < self.half_open_max_calls:
                    self._half_open_calls += 1
                    return True

            self._rejected_count += 1
            return False

    def release(self) -> None:
        """Give back a half-open slot reserved by a call that produced no result."""
        with self._lock:
            if self._state == CircuitBreakerState.HALF_OPEN and self._half_open_calls > 0:
                self._half_open_calls -= 1

    def record_success(self) -> None:
        """Record a successful call."""
        with self._lock:
            if self._state == CircuitBreakerState.HALF_OPEN:
                self._state = CircuitBreakerState.CLOSED
                self._window.clear()
                self._half_open_calls = 0
                self.logger.info("Circuit breaker reset to CLOSED after successful probe")
                return

            if self._state == CircuitBreakerState.CLOSED:
                self._window.append(False)

    def record_failure(self) -> None:
        """Record a failed call."""
        with self._lock:
            if self._state == CircuitBreakerState.HALF_OPEN:
                self._open()
                self.logger.warning("Circuit breaker probe failed, re-opening")
                return

            if self._state != CircuitBreakerState.CLOSED:
                return

            self._window.append(True)
            if len(self._window) < self.minimum_calls:
                return

            failure_rate = self._failure_rate()
            if failure_rate >= self.failure_rate_threshold:
                self._open()
                self.logger.warning(
                    "Circuit breaker opened due to failures",
                    failure_rate=round(failure_rate, 2),
                    threshold=self.failure_rate_threshold,
                    window=len(self._window)
                )

    async def call(self,
                   func: Callable[..., Awaitable[Any]],
                   *args,
                   is_failure: Optional[Callable[[Any], bool]] = None,
                   **kwargs) -> Any:
        """Execute function with circuit breaker protection.

        Exceptions always count as failures; ``is_failure`` lets callers that
        report errors as return values classify the result.
        """
        if not self.allow_request():
            raise CircuitBreakerOpenException(
                f"Circuit breaker '{self.name}' is OPEN - blocking call"
            )

        try:
            result = await func(*args, **kwargs)
        except asyncio.CancelledError:
            self.release()
            raise
        except Exception:
            self.record_failure()
            raise

        if is_failure is not None and is_failure(result):
            self.record_failure()
        else:
            self.record_success()
        return result

    def get_state(self) -> Dict[str, Any]:
        """Get current circuit breaker state."""
        with self._lock:
            self._maybe_half_open()
            return {
                "name": self.name,
                "state": self._state.value,
                "window_size": len(self._window),
                "failure_rate": round(self._failure_rate(), 2),
                "failure_rate_threshold": self.failure_rate_threshold,
                "minimum_calls": self.minimum_calls,
                "open_duration": self.open_duration,
                "rejected_count": self._rejected_count
            }

    def is_open(self) -> bool:
        """Check if circuit breaker is in OPEN state."""
        return self.state == CircuitBreakerState.OPEN


class CircuitBreakerManager:
    """Manager for multiple circuit breakers."""

    def __init__(self):
        self.circuit_breakers: Dict[str, CircuitBreaker] = {}
        self.logger = get_logger("circuit_breaker_manager")

    def get_circuit_breaker(self, name: str, **kwargs) -> CircuitBreaker:
        """Get or create a circuit breaker."""
        if name not in self.circuit_breakers:
            self.circuit_breakers[name] = CircuitBreaker(name=name, **kwargs)
            self.logger.info("Created circuit breaker", name=name)

        return self.circuit_breakers[name]

    def get_all_states(self) -> Dict[str, Dict[str, Any]]:
        """Get states of all circuit breakers."""
        return {
            name: cb.get_state()
            for name, cb in self.circuit_breakers.items()
        }

