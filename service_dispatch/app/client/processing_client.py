"""
Processing API client: one timeout-bound attempt per call.
"""

import asyncio
from typing import Optional

import httpx

from shared.logging import get_logger
from shared.errors import CredentialFetchTimeout, CredentialError
from ..credentials.lease import CredentialLease
from ..domain.models import CallOutcome, Credential, ErrorKind, WorkItem
from ..domain.status import interpret_response


class ProcessingApiClient:
    """Delivers a work item to ``POST {base_url}/{item_id}``."""

    def __init__(self,
                 base_url: str,
                 lease: CredentialLease,
                 timeout: float = 5.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.lease = lease
        self.timeout = timeout
        self.logger = get_logger("dispatch.processing_client")
        self._transport = transport

    def url_for(self, item: WorkItem) -> str:
        return f"{self.base_url}/{item.id}"

    async def attempt(self, item: WorkItem) -> CallOutcome:
        """Run a single attempt; every failure comes back as an outcome.

        The credential is obtained under the lease's own timeout; only the
        API exchange is bound by ``timeout``.
        """
        try:
            credential = await self.lease.acquire()
        except CredentialFetchTimeout as e:
            return CallOutcome.retryable(e.message, ErrorKind.TRANSIENT_INFRA)
        except CredentialError as e:
            return CallOutcome.retryable(e.message, ErrorKind.AUTH_REJECTED)

        try:
            return await asyncio.wait_for(self._call(item, credential), timeout=self.timeout)
        except asyncio.TimeoutError:
            self.logger.warning("Processing API attempt timed out", item_id=item.id, timeout=self.timeout)
            return CallOutcome.retryable(
                f"Processing API call timed out after {self.timeout}s",
                ErrorKind.TRANSIENT_INFRA
            )

    async def _call(self, item: WorkItem, credential: Credential) -> CallOutcome:
        url = self.url_for(item)
        self.logger.debug("Calling processing API", item_id=item.id, url=url)

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(
                    url,
                    json={"id": item.id},
                    headers={"Authorization": f"Bearer {credential.token}"}
                )
        except httpx.HTTPError as e:
            self.logger.warning("Processing API transport error", item_id=item.id, error=str(e))
            return CallOutcome.retryable(
                f"Transport error calling processing API: {e}",
                ErrorKind.TRANSIENT_INFRA
            )

        try:
            body = response.json()
        except ValueError:
            body = None

        if response.status_code == 401:
            self.lease.invalidate(credential.token)

        outcome = interpret_response(response.status_code, body)
        self.logger.info(
            "Processing API responded",
            item_id=item.id,
            status_code=response.status_code,
            outcome=outcome.kind.value,
            reason=outcome.reason or None
        )
        return outcome
