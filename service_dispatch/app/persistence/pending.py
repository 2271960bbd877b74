"""
Pending-work repository contract and in-memory implementation.
"""

from typing import Iterable, List, Protocol

from ..domain.models import PendingWork
from ..domain.status import PENDING_STATUSES, InvoiceStatus


class PendingWorkRepository(Protocol):
    """Read side of the document store used by the orchestrator.

    ``fetch_pending`` is an idempotent snapshot read: calling it twice
    without intervening writes returns the same rows.
    """

    async def fetch_pending(self) -> List[PendingWork]:
        ...


class InMemoryPendingWorkRepository:
    """Repository backed by a list; rows leave the pending set on status change."""

    def __init__(self, rows: Iterable[PendingWork] = ()):
        self._rows = {row.item_id: row for row in rows}

    async def fetch_pending(self) -> List[PendingWork]:
        return [row for row in self._rows.values() if InvoiceStatus.parse(row.status) in PENDING_STATUSES]

    def add(self, row: PendingWork) -> None:
        self._rows[row.item_id] = row

    def set_status(self, item_id: str, status: str) -> None:
        row = self._rows[item_id]
        self._rows[item_id] = PendingWork(item_id=row.item_id, status=status, group_key=row.group_key)
