"""
Integration tests for the complete dispatch flow.

The whole pipeline runs in-process: the orchestrator publishes through an
in-memory producer, and the consumer processes the resulting poll batch
against mocked identity and processing endpoints.
"""

import pytest
from unittest.mock import AsyncMock, MagicMock

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from service_dispatch.app.client.processing_client import ProcessingApiClient
from service_dispatch.app.client.resilient_caller import ResilientCaller
from service_dispatch.app.credentials.lease import CredentialLease
from service_dispatch.app.kafka.consumer import KafkaConsumerManager
from service_dispatch.app.kafka.dead_letter import KafkaDeadLetterSink, LocalDeadLetterSink
from service_dispatch.app.kafka.dispatcher import Dispatcher
from service_dispatch.app.kafka.handler import InvoiceMessageHandler
from service_dispatch.app.orchestration.orchestrator import Orchestrator
from service_dispatch.app.persistence.pending import InMemoryPendingWorkRepository
from shared.circuit_breaker import CircuitBreaker
from shared.metrics import MetricsCollector
from shared.rate_limiter import RateLimiter
from shared.retry import RetryConfig
from shared.test_helpers import FakeKafkaProducer, MockIdentityProvider, MockProcessingApi, TestDataFactory


PROCESSING_TOPIC = "invoice.processing"
DEAD_LETTER_TOPIC = "invoice.dlq"


class DispatchPipeline:
    """Wires every component the way the service does, minus the network."""

    def __init__(self, rows, identity=None, api=None, producer=None, preflight=True):
        self.identity = identity or MockIdentityProvider()
        self.api = api or MockProcessingApi()
        self.producer = producer or FakeKafkaProducer()
        self.metrics = MetricsCollector("dispatch-integration")
        self.repository = InMemoryPendingWorkRepository(rows)
        self.local_sink = LocalDeadLetterSink()

        self.lease = CredentialLease(
            token_url="http://identity.test/token",
            client_id="invoice-dispatch",
            username="dispatch",
            password="secret",
            timeout=1.0,
            transport=self.identity.transport(),
            metrics=self.metrics
        )
        client = ProcessingApiClient(
            "http://processing.test/api/invoices",
            self.lease,
            timeout=1.0,
            transport=self.api.transport()
        )
        self.caller = ResilientCaller(
            attempt=client.attempt,
            circuit_breaker=CircuitBreaker("processing_api", sliding_window_size=100, minimum_calls=10),
            rate_limiter=RateLimiter("processing_api", max_concurrent_calls=10, limit_for_period=100),
            retry_config=RetryConfig(max_attempts=3, base_delay=1.0, jitter=0.0),
            sleep=AsyncMock(),
            metrics=self.metrics
        )
        self.dispatcher = Dispatcher(
            self.producer,
            PROCESSING_TOPIC,
            self.local_sink,
            retry_config=RetryConfig(max_attempts=3, base_delay=0.0, jitter=0.0),
            sleep=AsyncMock(),
            metrics=self.metrics
        )
        self.orchestrator = Orchestrator(
            self.repository,
            self.dispatcher,
            lease=self.lease if preflight else None,
            metrics=self.metrics
        )
        dead_letter_sink = KafkaDeadLetterSink(self.producer, DEAD_LETTER_TOPIC, timeout=1.0, metrics=self.metrics)
        handler = InvoiceMessageHandler(self.caller, dead_letter_sink, metrics=self.metrics)
        self.consumer = KafkaConsumerManager(
            "localhost:9092", "invoice-dispatch", PROCESSING_TOPIC, handler, dead_letter_sink
        )
        self.consumer.consumer = MagicMock()

    async def run(self):
        outcome = await self.orchestrator.run_once()
        await self.consumer.process_batch(self.producer.poll_batch(PROCESSING_TOPIC))
        return outcome

    @property
    def commits(self):
        return self.consumer.consumer.commit.call_count

    def dead_letters(self):
        return self.producer.messages(DEAD_LETTER_TOPIC)


class TestDispatchFlow:
    """End-to-end dispatch scenarios."""

    @pytest.mark.asyncio
    async def test_all_items_processed(self):
        pipeline = DispatchPipeline(TestDataFactory.create_pending_rows(count=10))

        outcome = await pipeline.run()

        assert outcome.ok
        assert outcome.groups == 2
        assert outcome.dispatched == 10
        assert sorted(pipeline.api.calls) == [f"INV{i:04d}" for i in range(1, 11)]
        assert pipeline.commits == 10
        assert pipeline.dead_letters() == []
        assert pipeline.identity.requests == 1
        assert set(pipeline.api.authorizations) == {"Bearer token-1"}

    @pytest.mark.asyncio
    async def test_persistent_retry_status_is_dead_lettered(self):
        api = MockProcessingApi(statuses={"INV0003": ["NO_WS1"]})
        pipeline = DispatchPipeline(TestDataFactory.create_pending_rows(count=10), api=api)

        await pipeline.run()

        dead_letters = pipeline.dead_letters()
        assert len(dead_letters) == 1
        record = dead_letters[0]
        assert record["original_item"]["id"] == "INV0003"
        assert record["attempts"] == 3
        assert record["failure_type"] == "RemoteRetryable"
        assert "NO_WS1" in record["failure_reason"]
        assert record["original_topic"] == PROCESSING_TOPIC
        assert api.calls.count("INV0003") == 3
        assert pipeline.commits == 10
        assert pipeline.metrics.registry.get_sample_value(
            "messages_processed_total", {"outcome": "dead_lettered"}
        ) == 1

    @pytest.mark.asyncio
    async def test_transient_status_recovers(self):
        api = MockProcessingApi(statuses={"INV0002": ["NO_ZIP", "COMPLETED"]})
        pipeline = DispatchPipeline(TestDataFactory.create_pending_rows(count=4), api=api)

        await pipeline.run()

        assert api.calls.count("INV0002") == 2
        assert pipeline.dead_letters() == []
        assert pipeline.commits == 4

    @pytest.mark.asyncio
    async def test_unknown_status_is_dead_lettered_without_retry(self):
        api = MockProcessingApi(statuses={"INV0001": ["ARCHIVED"]})
        pipeline = DispatchPipeline(TestDataFactory.create_pending_rows(count=2), api=api)

        await pipeline.run()

        dead_letters = pipeline.dead_letters()
        assert [record["original_item"]["id"] for record in dead_letters] == ["INV0001"]
        assert dead_letters[0]["attempts"] == 1
        assert dead_letters[0]["failure_type"] == "RemotePermanent"
        assert api.calls.count("INV0001") == 1

    @pytest.mark.asyncio
    async def test_rejected_account_skips_dispatch(self):
        pipeline = DispatchPipeline(
            TestDataFactory.create_pending_rows(count=10),
            identity=MockIdentityProvider(status_code=401)
        )

        outcome = await pipeline.run()

        assert set(outcome.group_errors) == {"Pichincha", "Guayas"}
        assert outcome.dispatched == 0
        assert pipeline.producer.messages(PROCESSING_TOPIC) == []
        assert pipeline.api.calls == []
        assert pipeline.commits == 0

    @pytest.mark.asyncio
    async def test_rejected_account_without_preflight_dead_letters(self):
        pipeline = DispatchPipeline(
            TestDataFactory.create_pending_rows(count=2),
            identity=MockIdentityProvider(status_code=401),
            preflight=False
        )

        await pipeline.run()

        dead_letters = pipeline.dead_letters()
        assert len(dead_letters) == 2
        assert {record["failure_type"] for record in dead_letters} == {"AuthRejected"}
        assert pipeline.api.calls == []
        assert pipeline.commits == 2

    @pytest.mark.asyncio
    async def test_nothing_pending(self):
        pipeline = DispatchPipeline([])

        outcome = await pipeline.run()

        assert outcome.pending == 0
        assert pipeline.producer.calls == 0
        assert pipeline.identity.requests == 0
        assert pipeline.commits == 0

    @pytest.mark.asyncio
    async def test_broker_down_keeps_items_locally(self):
        producer = FakeKafkaProducer(fail_topics=[PROCESSING_TOPIC])
        pipeline = DispatchPipeline(TestDataFactory.create_pending_rows(count=4), producer=producer)

        outcome = await pipeline.run()

        assert len(outcome.failed_items) == 4
        assert len(pipeline.local_sink) == 4
        assert pipeline.api.calls == []

    @pytest.mark.asyncio
    async def test_second_run_after_completion_finds_nothing(self):
        pipeline = DispatchPipeline(TestDataFactory.create_pending_rows(count=3))

        await pipeline.run()
        for item_id in pipeline.api.calls:
            pipeline.repository.set_status(item_id, "COMPLETED")
        outcome = await pipeline.orchestrator.run_once()

        assert outcome.pending == 0
        assert len(pipeline.producer.messages(PROCESSING_TOPIC)) == 3
