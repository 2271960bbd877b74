"""
Producer side of the pipeline: puts work items on the processing topic.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from shared.logging import get_logger
from shared.metrics import MetricsCollector
from shared.errors import ChannelUnavailable
from shared.retry import RetryConfig, RetryError, retry_on_exception
from ..domain.models import WorkItem
from .dead_letter import LocalDeadLetterSink
from .producer import KafkaProducerManager


@dataclass(frozen=True)
class PublishReceipt:
    """Broker confirmation for an enqueued item."""

    item_id: str
    topic: str
    partition: int
    offset: int
    attempts: int = 1


class Dispatcher:
    """Publishes work items keyed by item id, with local retry."""

    def __init__(self,
                 producer: KafkaProducerManager,
                 topic: str,
                 local_sink: LocalDeadLetterSink,
                 retry_config: Optional[RetryConfig] = None,
                 send_timeout: float = 5.0,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
                 metrics: Optional[MetricsCollector] = None):
        self.producer = producer
        self.topic = topic
        self.local_sink = local_sink
        self.retry_config = retry_config or RetryConfig(max_attempts=3, base_delay=1.0, jitter=0.0)
        self.send_timeout = send_timeout
        self.metrics = metrics
        self.logger = get_logger("dispatch.dispatcher")
        self._sleep = sleep

    async def enqueue(self, item: WorkItem) -> PublishReceipt:
        """Publish ``item`` to the processing topic.

        Raises ``ChannelUnavailable`` once every publish attempt has failed;
        the item is then kept in the local dead-letter sink.
        """
        attempts = 0

        @retry_on_exception((ChannelUnavailable,), config=self.retry_config, sleep=self._sleep)
        async def publish():
            nonlocal attempts
            attempts += 1
            return await self.producer.publish(
                self.topic,
                item.model_dump(mode="json"),
                key=item.channel_key(),
                timeout=self.send_timeout
            )

        try:
            metadata = await publish()
        except RetryError as e:
            self._record("failed")
            self.local_sink.append(item, str(e.last_exception))
            raise ChannelUnavailable(
                f"Could not publish item {item.id} after {e.attempts} attempts",
                details={"item_id": item.id, "topic": self.topic, "attempts": e.attempts}
            ) from e.last_exception

        self._record("published")
        self.logger.info(
            "Item enqueued",
            item_id=item.id,
            group_key=item.group_key,
            partition=metadata.partition,
            offset=metadata.offset,
            attempts=attempts
        )
        return PublishReceipt(
            item_id=item.id,
            topic=self.topic,
            partition=metadata.partition,
            offset=metadata.offset,
            attempts=attempts
        )

    def _record(self, result: str) -> None:
        if self.metrics is not None:
            self.metrics.increment_counter("items_enqueued_total", result=result)
