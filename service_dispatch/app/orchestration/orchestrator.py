"""
Orchestration of one dispatch run.

A run reads the pending-work snapshot, groups it by province and enqueues
every group concurrently. Failures are collected into the ``RunOutcome``
rather than raised, except for a failing pending-work query.
"""

import asyncio
from collections import OrderedDict
from typing import Dict, List, Optional

from shared.logging import get_logger, set_run_id
from shared.metrics import MetricsCollector
from shared.errors import CredentialError, DispatchException
from ..credentials.lease import CredentialLease
from ..domain.models import PendingWork, RunOutcome, WorkItem, utcnow
from ..kafka.dispatcher import Dispatcher
from ..persistence.pending import PendingWorkRepository


def group_work(pending: List[PendingWork]) -> Dict[str, List[WorkItem]]:
    """Build work items grouped by ``group_key``, in first-seen order.

    Duplicate rows for the same item id are collapsed.
    """
    enqueued_at = utcnow()
    groups: Dict[str, List[WorkItem]] = OrderedDict()
    seen = set()
    for row in pending:
        if row.item_id in seen:
            continue
        seen.add(row.item_id)
        groups.setdefault(row.group_key, []).append(row.to_work_item(enqueued_at))
    return groups


class Orchestrator:
    """Fans pending work out to the dispatcher, one task per group."""

    def __init__(self,
                 repository: PendingWorkRepository,
                 dispatcher: Dispatcher,
                 lease: Optional[CredentialLease] = None,
                 group_concurrency: int = 1,
                 metrics: Optional[MetricsCollector] = None):
        if group_concurrency < 1:
            raise ValueError("group_concurrency must be at least 1")
        self.repository = repository
        self.dispatcher = dispatcher
        self.lease = lease
        self.group_concurrency = group_concurrency
        self.metrics = metrics
        self.logger = get_logger("dispatch.orchestrator")

    async def run_once(self) -> RunOutcome:
        set_run_id()
        self.logger.info("Orchestration run started")

        try:
            pending = await self.repository.fetch_pending()
        except Exception as e:
            self.logger.error("Pending-work query failed", error=str(e))
            self._record("failed")
            raise

        outcome = RunOutcome(pending=len(pending))
        if not pending:
            self.logger.info("No pending work")
            self._record("empty")
            return outcome

        groups = group_work(pending)
        outcome.groups = len(groups)

        results = await asyncio.gather(
            *(self._run_group(key, items, outcome) for key, items in groups.items()),
            return_exceptions=True
        )
        for key, result in zip(groups, results):
            if isinstance(result, Exception):
                self.logger.error("Group task failed", group_key=key, error=str(result))
                outcome.group_errors[key] = str(result) or type(result).__name__

        self._record("success" if outcome.ok else "partial")
        self.logger.info(
            "Orchestration run finished",
            pending=outcome.pending,
            groups=outcome.groups,
            dispatched=outcome.dispatched,
            failed_items=len(outcome.failed_items),
            group_errors=len(outcome.group_errors)
        )
        return outcome

    async def _run_group(self, group_key: str, items: List[WorkItem], outcome: RunOutcome) -> None:
        if self.lease is not None:
            try:
                await self.lease.acquire()
            except CredentialError as e:
                self.logger.error(
                    "Credential unavailable, skipping group",
                    group_key=group_key,
                    items=len(items),
                    code=e.code,
                    error=e.message
                )
                outcome.group_errors[group_key] = f"{e.code}: {e.message}"
                return

        self.logger.info("Dispatching group", group_key=group_key, items=len(items))
        semaphore = asyncio.Semaphore(self.group_concurrency)

        async def enqueue(item: WorkItem) -> None:
            async with semaphore:
                try:
                    await self.dispatcher.enqueue(item)
                except DispatchException as e:
                    outcome.failed_items[item.id] = e.message
                except Exception as e:
                    self.logger.error("Unexpected error enqueueing item", item_id=item.id, error=str(e))
                    outcome.failed_items[item.id] = str(e) or type(e).__name__
                else:
                    outcome.dispatched += 1

        await asyncio.gather(*(enqueue(item) for item in items))

    def _record(self, result: str) -> None:
        if self.metrics is not None:
            self.metrics.increment_counter("orchestration_runs_total", result=result)
