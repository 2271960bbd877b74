"""
Invoice dispatch service.
"""

from typing import Any, Dict, Optional

from fastapi import Query

from shared.base_service import BaseService
from shared.config import DispatchConfig, get_config
from shared.circuit_breaker import CircuitBreakerManager
from shared.rate_limiter import RateLimiter
from shared.retry import RetryConfig

from .client.processing_client import ProcessingApiClient
from .client.resilient_caller import ResilientCaller
from .credentials.lease import CredentialLease
from .kafka.consumer import KafkaConsumerManager
from .kafka.dead_letter import KafkaDeadLetterSink, LocalDeadLetterSink
from .kafka.dispatcher import Dispatcher
from .kafka.handler import InvoiceMessageHandler
from .kafka.producer import KafkaProducerManager
from .orchestration.orchestrator import Orchestrator
from .orchestration.scheduler import DispatchScheduler
from .persistence.pending import InMemoryPendingWorkRepository, PendingWorkRepository
from .persistence.postgres import PostgresPendingWorkRepository


class DispatchService(BaseService):
    """Dispatch service implementation."""

    def __init__(self,
                 config: Optional[DispatchConfig] = None,
                 repository: Optional[PendingWorkRepository] = None):
        super().__init__("dispatch", config or get_config())
        cfg = self.config

        # Outbound call stack
        self.lease = CredentialLease(
            token_url=cfg.token_url,
            client_id=cfg.client_id,
            username=cfg.username,
            password=cfg.password.get_secret_value(),
            refresh_skew=cfg.refresh_skew_seconds,
            timeout=cfg.token_timeout_seconds,
            metrics=self.metrics
        )
        self.api_client = ProcessingApiClient(
            base_url=cfg.external_api_base_url,
            lease=self.lease,
            timeout=cfg.external_api_timeout_seconds
        )
        self.circuit_breakers = CircuitBreakerManager()
        self.caller = ResilientCaller(
            attempt=self.api_client.attempt,
            circuit_breaker=self.circuit_breakers.get_circuit_breaker(
                "processing_api",
                failure_rate_threshold=cfg.breaker_failure_rate_threshold,
                sliding_window_size=cfg.breaker_sliding_window_size,
                minimum_calls=cfg.breaker_minimum_calls,
                open_duration=cfg.breaker_open_duration_seconds,
                half_open_max_calls=cfg.breaker_half_open_max_calls
            ),
            rate_limiter=RateLimiter(
                "processing_api",
                max_concurrent_calls=cfg.rate_limit_max_concurrent_calls,
                limit_for_period=cfg.rate_limit_for_period,
                refresh_period=cfg.rate_limit_refresh_period_seconds,
                timeout=cfg.rate_limit_timeout_seconds
            ),
            retry_config=RetryConfig(
                max_attempts=cfg.retry_max_attempts,
                base_delay=cfg.retry_base_delay_seconds,
                max_delay=cfg.retry_max_delay_seconds,
                exponential_base=cfg.retry_multiplier,
                jitter=cfg.retry_jitter
            ),
            metrics=self.metrics
        )

        # Channel
        self.kafka_producer = KafkaProducerManager(
            bootstrap_servers=cfg.kafka_bootstrap,
            send_timeout=cfg.send_timeout_seconds
        )
        self.local_dead_letters = LocalDeadLetterSink(cfg.local_dead_letter_path)
        self.dead_letter_sink = KafkaDeadLetterSink(
            self.kafka_producer,
            cfg.dead_letter_topic,
            timeout=cfg.dead_letter_timeout_seconds,
            metrics=self.metrics
        )
        self.dispatcher = Dispatcher(
            self.kafka_producer,
            cfg.processing_topic,
            self.local_dead_letters,
            retry_config=RetryConfig(
                max_attempts=cfg.publish_max_attempts,
                base_delay=cfg.publish_retry_delay_seconds,
                jitter=0.0
            ),
            send_timeout=cfg.send_timeout_seconds,
            metrics=self.metrics
        )
        self.handler = InvoiceMessageHandler(
            self.caller,
            self.dead_letter_sink,
            dead_letter_timeout=cfg.dead_letter_timeout_seconds,
            metrics=self.metrics
        )
        self.kafka_consumer = KafkaConsumerManager(
            bootstrap_servers=cfg.kafka_bootstrap,
            group_id=cfg.consumer_group,
            topic=cfg.processing_topic,
            handler=self.handler,
            dead_letter_sink=self.dead_letter_sink,
            concurrency=cfg.consumer_concurrency
        )

        # Orchestration
        if repository is None:
            if cfg.postgres_dsn:
                repository = PostgresPendingWorkRepository(cfg.postgres_dsn)
            else:
                self.logger.warning("No postgres_dsn configured, using an empty in-memory repository")
                repository = InMemoryPendingWorkRepository()
        self.repository = repository
        self.orchestrator = Orchestrator(
            self.repository,
            self.dispatcher,
            lease=self.lease if cfg.credential_preflight else None,
            group_concurrency=cfg.group_concurrency,
            metrics=self.metrics
        )
        self.scheduler = DispatchScheduler(
            self.orchestrator.run_once,
            interval=cfg.schedule_interval_seconds,
            initial_delay=cfg.schedule_initial_delay_seconds,
            metrics=self.metrics
        )

        self._setup_dispatch_routes()
        self.app.state.dispatch_service = self

    async def on_startup(self):
        if isinstance(self.repository, PostgresPendingWorkRepository):
            await self.repository.start()
        await self.kafka_producer.start()
        await self.kafka_consumer.start(start_loop=True)
        self.lease.start_background_refresh(self.config.refresh_check_interval_seconds)
        self.scheduler.start()

    async def on_shutdown(self):
        await self.scheduler.stop()
        await self.lease.stop_background_refresh()
        await self.kafka_consumer.stop()
        await self.kafka_producer.stop()
        if isinstance(self.repository, PostgresPendingWorkRepository):
            await self.repository.stop()

    def _setup_dispatch_routes(self):
        """Set up dispatch-specific routes."""

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": "dispatch",
                "message": "Invoice Dispatch Service",
                "version": "1.0.0",
                "topics": {
                    "processing": self.config.processing_topic,
                    "dead_letter": self.config.dead_letter_topic
                }
            }

        @self.app.post("/dispatch/run")
        async def trigger_run():
            """Trigger one orchestration run unless one is in flight."""
            started = self.scheduler.tick()
            return {
                "started": started,
                "scheduler": self.scheduler.get_state()
            }

        @self.app.get("/dispatch/dead-letters/local")
        async def local_dead_letters(limit: int = Query(100, ge=1, le=1000)):
            """Items the dispatcher could not publish."""
            entries = self.local_dead_letters.recent(limit)
            return {
                "count": len(entries),
                "entries": entries
            }

    async def _check_dependencies(self) -> Dict[str, Any]:
        credential = self.lease.current
        return {
            "processing_api": self.caller.get_state(),
            "credential": {
                "held": credential is not None,
                "refresh_count": self.lease.refresh_count
            },
            "consumer": self.kafka_consumer.get_state(),
            "scheduler": self.scheduler.get_state()
        }


def create_app():
    """Create dispatch service application."""
    service = DispatchService()
    return service.app


def main():
    """Run the dispatch service."""
    DispatchService().run()


if __name__ == "__main__":
    main()
