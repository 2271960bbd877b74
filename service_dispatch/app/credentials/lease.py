"""
Credential lease for the processing API.

Holds the single access token of the process and renews it through the
identity endpoint's password grant before it expires.
"""

import asyncio
import time
from typing import Callable, Optional

import httpx

from shared.logging import get_logger, mask_token
from shared.metrics import MetricsCollector
from shared.errors import (
    AuthenticationRejected,
    CredentialError,
    CredentialFetchTimeout,
    InvalidCredentialResponse,
)
from ..domain.models import Credential


class CredentialLease:
    """Serves a non-expired credential to any number of concurrent callers.

    Renewal is single-flight: the first caller that finds the credential
    stale performs the exchange under ``_lock``; callers queued behind it
    re-check after acquiring the lock and reuse its result, whether that was
    a new credential or an error.
    """

    def __init__(self,
                 token_url: str,
                 client_id: str,
                 username: str,
                 password: str,
                 refresh_skew: float = 30.0,
                 timeout: float = 10.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None,
                 clock: Callable[[], float] = time.time,
                 metrics: Optional[MetricsCollector] = None):
        self.token_url = token_url
        self.client_id = client_id
        self.username = username
        self._password = password
        self.refresh_skew = refresh_skew
        self.timeout = timeout
        self.logger = get_logger("dispatch.credentials")
        self.metrics = metrics
        self.refresh_count = 0

        self._transport = transport
        self._clock = clock
        self._lock = asyncio.Lock()
        self._credential: Optional[Credential] = None
        self._generation = 0
        self._last_error: Optional[CredentialError] = None
        self._refresh_task: Optional[asyncio.Task] = None

    @property
    def current(self) -> Optional[Credential]:
        return self._credential

    def _fresh(self) -> Optional[Credential]:
        credential = self._credential
        if credential is not None and credential.is_valid(self._clock(), self.refresh_skew):
            return credential
        return None

    async def acquire(self) -> Credential:
        """Return a credential that is valid for at least ``refresh_skew`` seconds.

        Raises a ``CredentialError`` subclass when no unexpired credential can
        be served.
        """
        credential = self._fresh()
        if credential is not None:
            return credential

        generation = self._generation
        async with self._lock:
            credential = self._fresh()
            if credential is not None:
                self.logger.debug("Credential renewed by a concurrent caller")
                return credential

            if self._generation != generation:
                # A refresh finished while we were queued; share its result
                if self._last_error is not None:
                    return self._fallback_or_raise(self._last_error)
                if self._credential is not None and self._credential.is_valid(self._clock()):
                    return self._credential

            # A cancelled refresh leaves the generation untouched so queued
            # callers run their own exchange
            self._last_error = None
            try:
                credential = await self._refresh()
            except CredentialError as exc:
                self._last_error = exc
                self._generation += 1
                return self._fallback_or_raise(exc)

            self._generation += 1
            return credential

    def _fallback_or_raise(self, error: CredentialError) -> Credential:
        previous = self._credential
        if previous is not None and previous.is_valid(self._clock()):
            self.logger.warning(
                "Credential refresh failed, serving current credential until expiry",
                error=error.message,
                expires_in=round(previous.expires_at - self._clock(), 1)
            )
            return previous
        raise error

    async def _refresh(self) -> Credential:
        """Exchange the configured account for a new access token."""
        self.refresh_count += 1
        self.logger.info("Requesting new access token", url=self.token_url, client_id=self.client_id)

        form = {
            "grant_type": "password",
            "client_id": self.client_id,
            "username": self.username,
            "password": self._password,
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(
                    self.token_url,
                    data=form,
                    headers={"Accept": "application/json"}
                )
        except httpx.TimeoutException as e:
            self._record("timeout")
            self.logger.error("Credential exchange timed out", error=str(e))
            raise CredentialFetchTimeout(f"Credential exchange timed out: {e}")
        except httpx.HTTPError as e:
            self._record("transport_error")
            self.logger.error("Credential exchange failed", error=str(e))
            raise CredentialFetchTimeout(f"Credential exchange failed: {e}")

        if not response.is_success:
            self._record("rejected")
            self.logger.error(
                "Identity endpoint rejected credential exchange",
                status_code=response.status_code
            )
            raise AuthenticationRejected(
                f"Identity endpoint returned HTTP {response.status_code}",
                details={"status_code": response.status_code}
            )

        credential = self._parse(response)
        self._credential = credential
        self._record("success")

        self.logger.info(
            "Access token renewed",
            token=mask_token(credential.token),
            expires_in=round(credential.expires_at - self._clock(), 1)
        )
        return credential

    def _parse(self, response: httpx.Response) -> Credential:
        try:
            payload = response.json()
        except ValueError:
            self._record("invalid")
            raise InvalidCredentialResponse("Identity endpoint returned a non-JSON body")

        if not isinstance(payload, dict):
            self._record("invalid")
            raise InvalidCredentialResponse("Identity endpoint returned an unexpected payload")

        token = payload.get("access_token")
        expires_in = payload.get("expires_in")

        if not isinstance(token, str) or not token:
            self._record("invalid")
            raise InvalidCredentialResponse(
                "Missing access_token in credential response",
                details={"fields": sorted(payload.keys())}
            )
        if isinstance(expires_in, bool) or not isinstance(expires_in, (int, float)) or expires_in <= 0:
            self._record("invalid")
            raise InvalidCredentialResponse(
                "Missing or invalid expires_in in credential response",
                details={"fields": sorted(payload.keys())}
            )

        return Credential(token=token, expires_at=self._clock() + float(expires_in))

    def _record(self, result: str) -> None:
        if self.metrics is not None:
            self.metrics.increment_counter("credential_refresh_total", result=result)

    def invalidate(self, token: Optional[str] = None) -> None:
        """Drop the held credential, e.g. after the API refused it.

        When ``token`` is given the credential is only dropped if it is still
        the one held, so a credential renewed meanwhile survives.
        """
        credential = self._credential
        if credential is None:
            return
        if token is not None and credential.token != token:
            return
        self._credential = None
        self.logger.warning("Access token invalidated", token=mask_token(credential.token))

    async def _refresh_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self.acquire()
            except CredentialError as e:
                self.logger.error("Scheduled credential refresh failed", code=e.code, error=e.message)

    def start_background_refresh(self, interval: float) -> None:
        """Renew the credential proactively every ``interval`` seconds."""
        if interval <= 0 or self._refresh_task is not None:
            return
        self._refresh_task = asyncio.create_task(self._refresh_loop(interval))
        self.logger.info("Background credential refresh started", interval=interval)

    async def stop_background_refresh(self) -> None:
        if self._refresh_task is None:
            return
        self._refresh_task.cancel()
        try:
            await self._refresh_task
        except asyncio.CancelledError:
            pass
        self._refresh_task = None
