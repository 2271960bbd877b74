"""
Consumer side of the pipeline: turns one delivered work item into an outcome
and acknowledges it.
"""

import asyncio
from typing import Optional, Protocol

from shared.logging import get_logger, set_item_id
from shared.metrics import MetricsCollector
from shared.errors import ChannelUnavailable
from ..client.resilient_caller import ResilientCaller
from ..domain.models import DeadLetterRecord, MessageSource, WorkItem
from .dead_letter import KafkaDeadLetterSink


class AckHandle(Protocol):
    """Commits the consumed offset of one message."""

    async def commit(self) -> None:
        ...


class InvoiceMessageHandler:
    """Delivers consumed work items and acknowledges them.

    A message is acknowledged only after it either succeeded or its
    dead-letter record was confirmed by the broker. Anything else leaves the
    ack uncommitted so the message is delivered again.
    """

    def __init__(self,
                 caller: ResilientCaller,
                 dead_letter_sink: KafkaDeadLetterSink,
                 dead_letter_timeout: float = 10.0,
                 metrics: Optional[MetricsCollector] = None):
        self.caller = caller
        self.dead_letter_sink = dead_letter_sink
        self.dead_letter_timeout = dead_letter_timeout
        self.metrics = metrics
        self.logger = get_logger("dispatch.handler")

    async def on_message(self,
                         item: WorkItem,
                         ack: AckHandle,
                         source: Optional[MessageSource] = None) -> bool:
        """Process ``item``; returns True when its ack was committed."""
        set_item_id(item.id)
        try:
            outcome = await self.caller.call(item)

            if outcome.is_success:
                return await self._commit(ack, item, "success")

            record = DeadLetterRecord.from_outcome(item, outcome, source)
            try:
                await asyncio.wait_for(self.dead_letter_sink.write(record), timeout=self.dead_letter_timeout)
            except (ChannelUnavailable, asyncio.TimeoutError) as e:
                self.logger.error(
                    "Dead-letter write failed, leaving message unacknowledged",
                    item_id=item.id,
                    failure_type=record.failure_type,
                    error=str(e) or type(e).__name__
                )
                self._record("redeliver")
                return False

            return await self._commit(ack, item, "dead_lettered")
        finally:
            set_item_id(None)

    async def _commit(self, ack: AckHandle, item: WorkItem, outcome: str) -> bool:
        try:
            await ack.commit()
        except ChannelUnavailable as e:
            self.logger.error("Offset commit failed", item_id=item.id, error=e.message)
            self._record("redeliver")
            return False

        self._record(outcome)
        self.logger.info("Message acknowledged", item_id=item.id, outcome=outcome)
        return True

    def _record(self, outcome: str) -> None:
        if self.metrics is not None:
            self.metrics.increment_counter("messages_processed_total", outcome=outcome)
