"""
Tests for the dead-letter replay script.
"""

import json
import pytest
from unittest.mock import MagicMock, patch

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..'))
sys.path.append(os.path.join(os.path.dirname(__file__), '..', 'scripts'))

from replay_dead_letters import plan_replay, replay
from service_dispatch.app.domain.models import CallOutcome, DeadLetterRecord
from shared.test_helpers import TestDataFactory


def dead_letter_value(item_id):
    item = TestDataFactory.create_work_item(item_id)
    record = DeadLetterRecord.from_outcome(item, CallOutcome.retryable("Document status requires retry: NO_WS1").with_attempts(3))
    return json.dumps(record.model_dump(mode="json")).encode()


UNDECODABLE = json.dumps({"failure_type": "Undeserializable", "payload": "not-json"}).encode()


class TestPlanReplay:
    """Test cases for plan_replay."""

    def test_splits_replayable_and_skipped(self):
        items, skipped = plan_replay([dead_letter_value("INV1"), UNDECODABLE, b"garbage", dead_letter_value("INV2")])

        assert [item.id for item in items] == ["INV1", "INV2"]
        assert len(skipped) == 2
        assert skipped[1]["payload"] == "garbage"

    def test_limit(self):
        values = [dead_letter_value(f"INV{i}") for i in range(5)]

        items, skipped = plan_replay(values, limit=2)

        assert [item.id for item in items] == ["INV0", "INV1"]
        assert skipped == []


class TestReplay:
    """Test cases for replay."""

    @pytest.fixture
    def mock_consumer(self):
        consumer = MagicMock()
        consumer.__iter__.return_value = iter([
            MagicMock(value=dead_letter_value("INV1")),
            MagicMock(value=UNDECODABLE)
        ])
        return consumer

    @pytest.mark.asyncio
    async def test_replay_publishes_and_commits(self, mock_consumer):
        with patch('kafka.KafkaConsumer', return_value=mock_consumer), \
             patch('kafka.KafkaProducer') as mock_producer_class:
            future = MagicMock()
            future.get.return_value = MagicMock(partition=0, offset=7)
            mock_producer_class.return_value.send.return_value = future

            summary = await replay(
                bootstrap="localhost:9092",
                dead_letter_topic="invoice.dlq",
                processing_topic="invoice.processing",
                group_id="invoice-dlq-replay",
                limit=None,
                idle_ms=100,
                dry_run=False
            )

        assert summary["read"] == 2
        assert summary["replayed"] == 1
        assert summary["item_ids"] == ["INV1"]
        args, kwargs = mock_producer_class.return_value.send.call_args
        assert args == ("invoice.processing",)
        assert kwargs["key"] == "INV1"
        mock_consumer.commit.assert_called_once()
        mock_consumer.close.assert_called_once()

    @pytest.mark.asyncio
    async def test_dry_run_publishes_nothing(self, mock_consumer):
        with patch('kafka.KafkaConsumer', return_value=mock_consumer), \
             patch('kafka.KafkaProducer') as mock_producer_class:
            summary = await replay(
                bootstrap="localhost:9092",
                dead_letter_topic="invoice.dlq",
                processing_topic="invoice.processing",
                group_id="invoice-dlq-replay",
                limit=None,
                idle_ms=100,
                dry_run=True
            )

        assert summary["replayable"] == 1
        assert summary["replayed"] == 0
        mock_producer_class.assert_not_called()
        mock_consumer.commit.assert_not_called()
        mock_consumer.close.assert_called_once()
