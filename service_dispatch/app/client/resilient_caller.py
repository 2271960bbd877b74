"""
Policy-wrapped outbound call to the processing API.

Layers, outermost first:

1. rate limiter      - queue for a call slot and a period permit
2. circuit breaker   - fail fast while the endpoint is unhealthy
3. retry             - repeat retryable outcomes with exponential backoff
4. single attempt    - timeout-bound credential + request + interpretation
"""

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, Optional

from shared.logging import get_logger
from shared.metrics import MetricsCollector
from shared.errors import RateLimitError
from shared.circuit_breaker import CircuitBreaker, CircuitBreakerOpenException, CircuitBreakerState
from shared.rate_limiter import RateLimiter
from shared.retry import RetryConfig, retry_until
from ..domain.models import CallOutcome, ErrorKind, WorkItem


Attempt = Callable[[WorkItem], Awaitable[CallOutcome]]


def _breaker_failure(outcome: CallOutcome) -> bool:
    # A permanent failure is still an answer from a healthy endpoint
    return outcome.is_retryable


class ResilientCaller:
    """Executes one outbound call under the fixed policy stack."""

    def __init__(self,
                 attempt: Attempt,
                 circuit_breaker: CircuitBreaker,
                 rate_limiter: RateLimiter,
                 retry_config: RetryConfig,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
                 metrics: Optional[MetricsCollector] = None):
        self._attempt = attempt
        self.circuit_breaker = circuit_breaker
        self.rate_limiter = rate_limiter
        self.retry_config = retry_config
        self.metrics = metrics
        self.logger = get_logger("dispatch.resilient_caller")
        self._sleep = sleep

    async def call(self, item: WorkItem) -> CallOutcome:
        """Deliver ``item``; infrastructure failures are reported as outcomes."""
        started = time.perf_counter()

        try:
            async with self.rate_limiter.permit():
                outcome = await self._through_breaker(item)
        except RateLimitError as e:
            outcome = CallOutcome.retryable(e.message, ErrorKind.RATE_LIMITED)

        self._observe(outcome, time.perf_counter() - started)
        if not outcome.is_success:
            self.logger.warning(
                "Processing API call failed",
                item_id=item.id,
                outcome=outcome.kind.value,
                error_kind=outcome.error_kind.value if outcome.error_kind else None,
                attempts=outcome.attempts,
                reason=outcome.reason
            )
        return outcome

    async def _through_breaker(self, item: WorkItem) -> CallOutcome:
        try:
            return await self.circuit_breaker.call(
                self._with_retry,
                item,
                is_failure=_breaker_failure
            )
        except CircuitBreakerOpenException as e:
            return CallOutcome.retryable(str(e), ErrorKind.CIRCUIT_OPEN).with_attempts(0)

    async def _with_retry(self, item: WorkItem) -> CallOutcome:
        outcome, attempts = await retry_until(
            lambda: self._attempt(item),
            should_retry=lambda result: result.is_retryable,
            config=self.retry_config,
            sleep=self._sleep,
            name="processing_api"
        )
        return outcome.with_attempts(attempts)

    def _observe(self, outcome: CallOutcome, duration: float) -> None:
        if self.metrics is None:
            return
        self.metrics.observe_histogram("external_call_duration_seconds", duration, outcome=outcome.kind.value)
        breaker_open = self.circuit_breaker.state != CircuitBreakerState.CLOSED
        self.metrics.set_gauge("circuit_breaker_open", 1.0 if breaker_open else 0.0, name=self.circuit_breaker.name)

    def get_state(self) -> Dict[str, Any]:
        return {
            "circuit_breaker": self.circuit_breaker.get_state(),
            "rate_limiter": self.rate_limiter.get_state(),
            "retry": {
                "max_attempts": self.retry_config.max_attempts,
                "base_delay": self.retry_config.base_delay,
                "max_delay": self.retry_config.max_delay
            }
        }
