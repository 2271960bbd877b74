#!/usr/bin/env python3
"""
Replay dead-lettered invoices onto the processing topic.

Reads dead-letter records from the dead-letter topic with a dedicated
consumer group, and re-publishes the original work items so the dispatch
consumer picks them up again. Records that never decoded into a work item
are reported and left alone.
"""

import argparse
import asyncio
import json
from typing import Any, Dict, Iterable, List, Optional, Tuple
import sys
import os

sys.path.append(os.path.join(os.path.dirname(__file__), '..'))

import kafka  # noqa: E402

from service_dispatch.app.domain.models import DeadLetterRecord, WorkItem  # noqa: E402
from service_dispatch.app.kafka.producer import KafkaProducerManager  # noqa: E402


def plan_replay(values: Iterable[bytes], limit: Optional[int] = None) -> Tuple[List[WorkItem], List[Dict[str, Any]]]:
    """Split raw dead-letter values into replayable items and skipped entries."""
    items: List[WorkItem] = []
    skipped: List[Dict[str, Any]] = []

    for raw in values:
        if limit is not None and len(items) >= limit:
            break
        try:
            record = DeadLetterRecord.model_validate(json.loads(raw))
        except ValueError as exc:
            skipped.append({"reason": str(exc).splitlines()[0], "payload": raw.decode("utf-8", errors="replace")[:200]})
            continue
        items.append(record.original_item)

    return items, skipped


def _read_dead_letters(bootstrap: str, topic: str, group_id: str, idle_ms: int) -> Tuple[kafka.KafkaConsumer, List[bytes]]:
    consumer = kafka.KafkaConsumer(
        topic,
        bootstrap_servers=bootstrap,
        group_id=group_id,
        auto_offset_reset="earliest",
        enable_auto_commit=False,
        consumer_timeout_ms=idle_ms,
    )
    return consumer, [message.value for message in consumer]


async def replay(
    *,
    bootstrap: str,
    dead_letter_topic: str,
    processing_topic: str,
    group_id: str,
    limit: Optional[int],
    idle_ms: int,
    dry_run: bool,
) -> dict:
    """Execute the replay and return the summary."""
    loop = asyncio.get_running_loop()
    consumer, values = await loop.run_in_executor(
        None, _read_dead_letters, bootstrap, dead_letter_topic, group_id, idle_ms
    )

    items, skipped = plan_replay(values, limit)
    replayed = 0

    try:
        if not dry_run and items:
            producer = KafkaProducerManager(bootstrap)
            await producer.start()
            try:
                for item in items:
                    await producer.publish(processing_topic, item.model_dump(mode="json"), key=item.channel_key())
                    replayed += 1
            finally:
                await producer.stop()
            # Only a complete replay moves the group past these records
            if limit is None:
                await loop.run_in_executor(None, consumer.commit)
    finally:
        await loop.run_in_executor(None, consumer.close)

    return {
        "read": len(values),
        "replayable": len(items),
        "replayed": replayed,
        "skipped": skipped,
        "item_ids": [item.id for item in items],
    }


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Replay dead-lettered invoices onto the processing topic.")
    parser.add_argument("--bootstrap", default=os.getenv("DISPATCH_KAFKA_BOOTSTRAP", "localhost:9092"), help="Kafka bootstrap servers")
    parser.add_argument("--dead-letter-topic", default=os.getenv("DISPATCH_DEAD_LETTER_TOPIC", "invoice.dlq"), help="Dead-letter topic to read")
    parser.add_argument("--processing-topic", default=os.getenv("DISPATCH_PROCESSING_TOPIC", "invoice.processing"), help="Topic to re-publish to")
    parser.add_argument("--group", default="invoice-dlq-replay", help="Consumer group used for reading dead letters")
    parser.add_argument("--limit", type=int, default=None, help="Replay at most this many items")
    parser.add_argument("--idle-ms", type=int, default=5000, help="Stop reading after this long without new records")
    parser.add_argument("--dry-run", action="store_true", help="Do not publish; print what would be replayed")
    return parser.parse_args()


def main() -> int:
    args = _parse_args()
    try:
        summary = asyncio.run(
            replay(
                bootstrap=args.bootstrap,
                dead_letter_topic=args.dead_letter_topic,
                processing_topic=args.processing_topic,
                group_id=args.group,
                limit=args.limit,
                idle_ms=args.idle_ms,
                dry_run=args.dry_run,
            )
        )
    except KeyboardInterrupt:
        return 130
    except Exception as exc:  # pragma: no cover - CLI surface
        print(f"[dlq-replay] failed: {exc}", file=sys.stderr)
        return 1

    if args.dry_run:
        print("[dlq-replay] DRY RUN - nothing published")

    print(json.dumps(summary, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
