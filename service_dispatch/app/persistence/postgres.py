"""
PostgreSQL pending-work repository.
"""

from typing import List, Optional

import asyncpg

from shared.logging import get_logger
from shared.errors import DispatchException
from ..domain.models import PendingWork
from ..domain.status import PENDING_STATUSES


PENDING_WORK_QUERY = """
    SELECT
        inv.request_id AS item_id,
        inv.status AS status,
        n.province AS group_key
    FROM invoices inv
    INNER JOIN invoice_requests req ON inv.request_id = req.id
    INNER JOIN notaries n ON n.id = req.notary_id
    WHERE inv.status = ANY($1::text[])
    ORDER BY inv.created_at, inv.request_id
"""


class PostgresPendingWorkRepository:
    """Reads documents in a pending status together with their province."""

    def __init__(self, dsn: str, command_timeout: float = 30):
        self.dsn = dsn
        self.command_timeout = command_timeout
        self.logger = get_logger("dispatch.persistence.postgres")
        self.pool: Optional[asyncpg.Pool] = None

    async def start(self):
        """Open the connection pool."""
        try:
            self.pool = await asyncpg.create_pool(
                self.dsn,
                min_size=2,
                max_size=10,
                command_timeout=self.command_timeout
            )
            self.logger.info("PostgreSQL repository started")

        except Exception as e:
            self.logger.error("Failed to start PostgreSQL repository", error=str(e))
            raise DispatchException("POSTGRES_START_FAILED", str(e))

    async def stop(self):
        """Close the connection pool."""
        if self.pool:
            await self.pool.close()
            self.pool = None
            self.logger.info("PostgreSQL repository stopped")

    async def fetch_pending(self) -> List[PendingWork]:
        if not self.pool:
            raise DispatchException("POSTGRES_NOT_STARTED", "Repository not started")

        statuses = sorted(status.value for status in PENDING_STATUSES)
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(PENDING_WORK_QUERY, statuses)

        pending = [
            PendingWork(item_id=str(row["item_id"]), status=row["status"], group_key=row["group_key"] or "")
            for row in rows
        ]
        self.logger.info("Pending work fetched", count=len(pending))
        return pending
