"""
Kafka consumer for the dispatch service.

Offsets are committed manually, one message at a time, once the handler has
settled the message. Partitions of a poll batch are processed concurrently
up to a limit; messages of one partition are processed in order.
"""

import asyncio
import functools
import json
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import kafka
from kafka.errors import KafkaError
from kafka.structs import OffsetAndMetadata, TopicPartition

from shared.logging import get_logger
from shared.errors import ChannelUnavailable, DispatchException
from ..domain.models import MessageSource, WorkItem, utcnow
from .dead_letter import KafkaDeadLetterSink
from .handler import InvoiceMessageHandler


@dataclass
class KafkaMessage:
    """Kafka message wrapper."""
    topic: str
    partition: int
    offset: int
    key: Optional[bytes]
    value: bytes
    timestamp: Optional[int]


class KafkaAck:
    """Ack handle bound to one consumed message."""

    def __init__(self, manager: "KafkaConsumerManager", message: KafkaMessage):
        self._manager = manager
        self._message = message
        self.committed = False

    async def commit(self) -> None:
        await self._manager.commit(self._message.topic, self._message.partition, self._message.offset)
        self.committed = True


class KafkaConsumerManager:
    """Polls the processing topic and feeds work items to the handler."""

    def __init__(self,
                 bootstrap_servers: str,
                 group_id: str,
                 topic: str,
                 handler: InvoiceMessageHandler,
                 dead_letter_sink: KafkaDeadLetterSink,
                 concurrency: int = 3,
                 poll_timeout_ms: int = 1000,
                 max_poll_records: int = 100):
        self.bootstrap_servers = bootstrap_servers
        self.group_id = group_id
        self.topic = topic
        self.handler = handler
        self.dead_letter_sink = dead_letter_sink
        self.concurrency = concurrency
        self.poll_timeout_ms = poll_timeout_ms
        self.max_poll_records = max_poll_records
        self.logger = get_logger("dispatch.kafka.consumer")
        self.consumer: Optional[kafka.KafkaConsumer] = None
        self.running = False
        self.messages_seen = 0
        self._semaphore = asyncio.Semaphore(concurrency)
        self._consumer_task: Optional[asyncio.Task] = None
        # KafkaConsumer is not thread-safe; every call goes through one thread
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="kafka-consumer")

    async def _run(self, func, *args, **kwargs):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, functools.partial(func, *args, **kwargs))

    async def start(self, start_loop: bool = False):
        """Start the Kafka consumer."""
        try:
            self.consumer = kafka.KafkaConsumer(
                self.topic,
                bootstrap_servers=self.bootstrap_servers,
                group_id=self.group_id,
                value_deserializer=lambda x: x,
                key_deserializer=lambda x: x,
                auto_offset_reset='earliest',
                enable_auto_commit=False,
                max_poll_records=self.max_poll_records,
                session_timeout_ms=30000,
                heartbeat_interval_ms=10000
            )

            self.running = True
            if start_loop:
                self._consumer_task = asyncio.create_task(self._consume_loop())
            self.logger.info("Kafka consumer started", group_id=self.group_id, topic=self.topic)

        except Exception as e:
            self.logger.error("Failed to start Kafka consumer", error=str(e))
            raise DispatchException("KAFKA_CONSUMER_START_FAILED", str(e))

    async def stop(self):
        """Stop the Kafka consumer."""
        self.running = False
        if self._consumer_task:
            self._consumer_task.cancel()
            try:
                await self._consumer_task
            except asyncio.CancelledError:
                pass
            self._consumer_task = None

        if self.consumer:
            await self._run(self.consumer.close)
            self.consumer = None
            self.logger.info("Kafka consumer stopped")

        self._executor.shutdown(wait=False)

    async def commit(self, topic: str, partition: int, offset: int) -> None:
        """Commit the position just after ``offset``."""
        if not self.consumer:
            raise DispatchException("KAFKA_CONSUMER_NOT_STARTED", "Consumer not started")

        tp = TopicPartition(topic, partition)
        try:
            await self._run(self.consumer.commit, {tp: OffsetAndMetadata(offset + 1, "", -1)})
        except KafkaError as e:
            raise ChannelUnavailable(
                f"Offset commit failed for {topic}[{partition}]@{offset}: {e}",
                details={"topic": topic, "partition": partition, "offset": offset}
            ) from e

    async def seek(self, topic: str, partition: int, offset: int) -> None:
        """Rewind a partition so ``offset`` is delivered again."""
        await self._run(self.consumer.seek, TopicPartition(topic, partition), offset)
        self.logger.warning("Partition rewound for redelivery", topic=topic, partition=partition, offset=offset)

    @staticmethod
    def decode(value: bytes) -> WorkItem:
        """Raises ``ValueError`` for anything that is not a work item."""
        if value is None:
            raise ValueError("Empty message value")
        return WorkItem.model_validate(json.loads(value))

    async def process_batch(self, batch: Dict[Any, List[Any]]) -> None:
        """Process one poll result."""
        await asyncio.gather(*(
            self._process_partition(tp, records) for tp, records in batch.items() if records
        ))

    async def _process_partition(self, tp, records: List[Any]) -> None:
        async with self._semaphore:
            for record in records:
                message = KafkaMessage(
                    topic=record.topic,
                    partition=record.partition,
                    offset=record.offset,
                    key=record.key,
                    value=record.value,
                    timestamp=record.timestamp
                )
                self.messages_seen += 1

                try:
                    acked = await self._process_message(message)
                except Exception as e:
                    self.logger.error(
                        "Error processing message",
                        topic=message.topic,
                        partition=message.partition,
                        offset=message.offset,
                        error=str(e)
                    )
                    acked = False

                if not acked:
                    # Later records of this partition wait for the redelivery
                    await self.seek(message.topic, message.partition, message.offset)
                    return

    async def _process_message(self, message: KafkaMessage) -> bool:
        ack = KafkaAck(self, message)
        try:
            item = self.decode(message.value)
        except ValueError as e:
            return await self._dead_letter_undecodable(message, ack, e)

        source = MessageSource(topic=message.topic, partition=message.partition, offset=message.offset)
        return await self.handler.on_message(item, ack, source)

    async def _dead_letter_undecodable(self, message: KafkaMessage, ack: KafkaAck, error: Exception) -> bool:
        key = message.key.decode("utf-8", errors="replace") if message.key else None
        payload = {
            "timestamp": utcnow().isoformat(),
            "original_topic": message.topic,
            "original_partition": message.partition,
            "original_channel_offset": message.offset,
            "payload": message.value.decode("utf-8", errors="replace") if message.value else None,
            "failure_reason": str(error),
            "failure_type": "Undeserializable"
        }
        self.logger.error(
            "Undecodable message",
            topic=message.topic,
            partition=message.partition,
            offset=message.offset,
            error=str(error)
        )

        try:
            await self.dead_letter_sink.write_raw(payload, key=key)
            await ack.commit()
        except ChannelUnavailable as e:
            self.logger.error("Could not settle undecodable message", offset=message.offset, error=e.message)
            return False
        return True

    async def _consume_loop(self):
        """Main consumption loop."""
        while self.running:
            try:
                if not self.consumer:
                    await asyncio.sleep(1)
                    continue

                batch = await self._run(self.consumer.poll, timeout_ms=self.poll_timeout_ms)

                if not batch or not isinstance(batch, dict):
                    await asyncio.sleep(0)
                    continue

                await self.process_batch(batch)

            except KafkaError as e:
                self.logger.error("Kafka error in consume loop", error=str(e))
                await asyncio.sleep(5)

            except asyncio.CancelledError:
                break

            except Exception as e:
                self.logger.error("Unexpected error in consume loop", error=str(e))
                await asyncio.sleep(1)

    def get_state(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "topic": self.topic,
            "group_id": self.group_id,
            "concurrency": self.concurrency,
            "messages_seen": self.messages_seen
        }

    def is_running(self) -> bool:
        """Check if consumer is running."""
        return self.running
