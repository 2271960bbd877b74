"""
Unit tests for the invoice message handler.
"""

import asyncio
import json
import pytest
from unittest.mock import AsyncMock, MagicMock

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from service_dispatch.app.domain.models import CallOutcome, ErrorKind, MessageSource, WorkItem
from service_dispatch.app.kafka.dead_letter import KafkaDeadLetterSink
from service_dispatch.app.kafka.handler import InvoiceMessageHandler
from shared.errors import ChannelUnavailable
from shared.metrics import MetricsCollector
from shared.test_helpers import FakeAck, FakeKafkaProducer


class TestInvoiceMessageHandler:
    """Test cases for InvoiceMessageHandler."""

    @pytest.fixture
    def item(self):
        return WorkItem(id="INV0001", group_key="Pichincha")

    @pytest.fixture
    def source(self):
        return MessageSource(topic="invoice.processing", partition=1, offset=17)

    @pytest.fixture
    def producer(self):
        return FakeKafkaProducer()

    @pytest.fixture
    def metrics(self):
        return MetricsCollector("dispatch-test")

    @pytest.fixture
    def sink(self, producer, metrics):
        return KafkaDeadLetterSink(producer, "invoice.dlq", timeout=1.0, metrics=metrics)

    def make_handler(self, outcome, sink, metrics=None, timeout=1.0):
        caller = MagicMock()
        caller.call = AsyncMock(return_value=outcome)
        return InvoiceMessageHandler(caller, sink, dead_letter_timeout=timeout, metrics=metrics)

    @pytest.mark.asyncio
    async def test_success_commits(self, item, source, sink, producer, metrics):
        handler = self.make_handler(CallOutcome.success(), sink, metrics)
        ack = FakeAck()

        assert await handler.on_message(item, ack, source) is True

        assert ack.commits == 1
        assert producer.records["invoice.dlq"] == []
        assert metrics.registry.get_sample_value("messages_processed_total", {"outcome": "success"}) == 1.0

    @pytest.mark.asyncio
    async def test_exhausted_failure_is_dead_lettered_then_committed(self, item, source, sink, producer, metrics):
        outcome = CallOutcome.retryable("Document status requires retry: NO_WS1").with_attempts(3)
        handler = self.make_handler(outcome, sink, metrics)
        ack = FakeAck()

        assert await handler.on_message(item, ack, source) is True

        assert ack.commits == 1
        records = producer.messages("invoice.dlq")
        assert len(records) == 1
        record = records[0]
        assert record["original_item"]["id"] == "INV0001"
        assert record["failure_type"] == "RemoteRetryable"
        assert record["failure_reason"].endswith("NO_WS1")
        assert record["attempts"] == 3
        assert record["original_topic"] == "invoice.processing"
        assert record["original_partition"] == 1
        assert record["original_channel_offset"] == 17
        assert producer.records["invoice.dlq"][0].key == b"INV0001"
        assert metrics.registry.get_sample_value("dead_letters_total", {"failure_type": "RemoteRetryable"}) == 1.0

    @pytest.mark.asyncio
    async def test_permanent_failure_is_dead_lettered(self, item, source, sink, producer):
        handler = self.make_handler(CallOutcome.permanent("Unrecognized document status: 'X'"), sink)
        ack = FakeAck()

        assert await handler.on_message(item, ack, source) is True

        assert producer.messages("invoice.dlq")[0]["failure_type"] == "RemotePermanent"
        assert ack.commits == 1

    @pytest.mark.asyncio
    async def test_circuit_open_is_dead_lettered(self, item, source, sink, producer):
        outcome = CallOutcome.retryable("Circuit breaker is OPEN", ErrorKind.CIRCUIT_OPEN).with_attempts(0)
        handler = self.make_handler(outcome, sink)

        assert await handler.on_message(item, FakeAck(), source) is True

        assert producer.messages("invoice.dlq")[0]["failure_type"] == "CircuitOpen"

    @pytest.mark.asyncio
    async def test_failed_dead_letter_write_leaves_ack(self, item, source, metrics):
        producer = FakeKafkaProducer(fail_topics=["invoice.dlq"])
        sink = KafkaDeadLetterSink(producer, "invoice.dlq", metrics=metrics)
        handler = self.make_handler(CallOutcome.retryable("NO_ZIP"), sink, metrics)
        ack = FakeAck()

        assert await handler.on_message(item, ack, source) is False

        assert ack.commits == 0
        assert metrics.registry.get_sample_value("messages_processed_total", {"outcome": "redeliver"}) == 1.0

    @pytest.mark.asyncio
    async def test_slow_dead_letter_write_leaves_ack(self, item, source):
        sink = MagicMock()

        async def never_confirms(record):
            await asyncio.sleep(1)

        sink.write = never_confirms
        handler = self.make_handler(CallOutcome.retryable("NO_ZIP"), sink, timeout=0.05)
        ack = FakeAck()

        assert await handler.on_message(item, ack, source) is False
        assert ack.commits == 0

    @pytest.mark.asyncio
    async def test_dead_letter_is_written_before_commit(self, item, source):
        order = []
        sink = MagicMock()
        sink.write = AsyncMock(side_effect=lambda record: order.append("dead_letter"))
        ack = MagicMock()
        ack.commit = AsyncMock(side_effect=lambda: order.append("commit"))
        handler = self.make_handler(CallOutcome.retryable("NO_WS2"), sink)

        await handler.on_message(item, ack, source)

        assert order == ["dead_letter", "commit"]

    @pytest.mark.asyncio
    async def test_commit_failure_reports_unacked(self, item, source, sink):
        handler = self.make_handler(CallOutcome.success(), sink)

        assert await handler.on_message(item, FakeAck(fail=True), source) is False
