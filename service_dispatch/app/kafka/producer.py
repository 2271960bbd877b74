"""
Kafka producer for the dispatch service.
"""

import asyncio
import json
from typing import Any, Dict, Optional

import kafka
from kafka.errors import KafkaError

from shared.logging import get_logger
from shared.errors import ChannelUnavailable, DispatchException


class KafkaProducerManager:
    """Manages the Kafka producer shared by the dispatcher and dead-letter sink."""

    def __init__(self, bootstrap_servers: str, send_timeout: float = 5.0):
        self.bootstrap_servers = bootstrap_servers
        self.send_timeout = send_timeout
        self.logger = get_logger("dispatch.kafka.producer")
        self.producer: Optional[kafka.KafkaProducer] = None

    async def start(self):
        """Start the Kafka producer."""
        try:
            self.producer = kafka.KafkaProducer(
                bootstrap_servers=self.bootstrap_servers,
                value_serializer=lambda x: json.dumps(x).encode('utf-8'),
                key_serializer=lambda x: x.encode('utf-8') if x else None,
                acks='all',
                retries=3,
                linger_ms=10,
                compression_type='gzip'
            )

            self.logger.info("Kafka producer started")

        except Exception as e:
            self.logger.error("Failed to start Kafka producer", error=str(e))
            raise DispatchException("KAFKA_PRODUCER_START_FAILED", str(e))

    async def stop(self):
        """Flush and stop the Kafka producer."""
        if self.producer:
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, self.producer.flush)
            await loop.run_in_executor(None, self.producer.close)
            self.producer = None
            self.logger.info("Kafka producer stopped")

    def _send_blocking(self, topic: str, value: Dict[str, Any], key: Optional[str], timeout: float):
        future = self.producer.send(topic, value=value, key=key)
        return future.get(timeout=timeout)

    async def publish(self,
                      topic: str,
                      value: Dict[str, Any],
                      key: Optional[str] = None,
                      timeout: Optional[float] = None):
        """Publish ``value`` and wait for broker confirmation.

        Returns the record metadata. Raises ``ChannelUnavailable`` when the
        broker does not confirm within ``timeout`` seconds.
        """
        if not self.producer:
            raise ChannelUnavailable("Producer not started", details={"topic": topic})

        timeout = timeout if timeout is not None else self.send_timeout
        loop = asyncio.get_running_loop()

        try:
            metadata = await loop.run_in_executor(None, self._send_blocking, topic, value, key, timeout)
        except KafkaError as e:
            self.logger.error("Kafka error sending message", topic=topic, key=key, error=str(e))
            raise ChannelUnavailable(
                f"Kafka error publishing to {topic}: {e}",
                details={"topic": topic}
            ) from e

        self.logger.debug(
            "Message sent successfully",
            topic=topic,
            key=key,
            partition=metadata.partition,
            offset=metadata.offset
        )
        return metadata
