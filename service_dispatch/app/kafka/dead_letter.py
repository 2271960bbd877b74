"""
Dead-letter sinks.

``KafkaDeadLetterSink`` is the durable destination for messages whose
processing failed for good. ``LocalDeadLetterSink`` keeps items that could
not even be published to the processing topic.
"""

import json
import threading
from collections import deque
from pathlib import Path
from typing import Any, Deque, Dict, List, Optional

from shared.logging import get_logger
from shared.metrics import MetricsCollector
from ..domain.models import DeadLetterRecord, WorkItem, utcnow
from .producer import KafkaProducerManager


class KafkaDeadLetterSink:
    """Publishes dead-letter records and waits for broker confirmation."""

    def __init__(self,
                 producer: KafkaProducerManager,
                 topic: str,
                 timeout: float = 10.0,
                 metrics: Optional[MetricsCollector] = None):
        self.producer = producer
        self.topic = topic
        self.timeout = timeout
        self.metrics = metrics
        self.logger = get_logger("dispatch.kafka.dead_letter")

    async def write(self, record: DeadLetterRecord) -> None:
        """Durably record ``record``; raises ``ChannelUnavailable`` otherwise."""
        await self.producer.publish(
            self.topic,
            record.model_dump(mode="json"),
            key=record.original_item.channel_key(),
            timeout=self.timeout
        )
        if self.metrics is not None:
            self.metrics.increment_counter("dead_letters_total", failure_type=record.failure_type)
        self.logger.warning(
            "Dead letter recorded",
            topic=self.topic,
            item_id=record.original_item.id,
            failure_type=record.failure_type,
            attempts=record.attempts,
            reason=record.failure_reason
        )

    async def write_raw(self, payload: Dict[str, Any], key: Optional[str] = None) -> None:
        """Record a message that could not be decoded into a work item."""
        await self.producer.publish(self.topic, payload, key=key, timeout=self.timeout)
        if self.metrics is not None:
            self.metrics.increment_counter("dead_letters_total", failure_type="Undeserializable")
        self.logger.warning("Undecodable message dead-lettered", topic=self.topic, key=key)


class LocalDeadLetterSink:
    """Bounded in-process record of items the dispatcher failed to publish.

    Entries are optionally appended to a JSON-lines file so they survive a
    restart.
    """

    def __init__(self, path: Optional[str] = None, max_entries: int = 1000):
        self.path = Path(path) if path else None
        self.logger = get_logger("dispatch.local_dead_letter")
        self._entries: Deque[Dict[str, Any]] = deque(maxlen=max_entries)
        self._lock = threading.Lock()

    def append(self, item: WorkItem, reason: str) -> Dict[str, Any]:
        entry = {
            "item": item.model_dump(mode="json"),
            "reason": reason,
            "timestamp": utcnow().isoformat()
        }
        with self._lock:
            self._entries.append(entry)
            if self.path is not None:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with self.path.open("a", encoding="utf-8") as fh:
                    fh.write(json.dumps(entry) + "\n")

        self.logger.error("Item kept in local dead-letter sink", item_id=item.id, reason=reason)
        return entry

    def recent(self, limit: int = 100) -> List[Dict[str, Any]]:
        """Most recent entries, newest last."""
        with self._lock:
            entries = list(self._entries)
        return entries[-limit:] if limit > 0 else []

    def __len__(self) -> int:
        return len(self._entries)
