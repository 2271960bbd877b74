"""
Unit tests for the credential lease.
"""

import asyncio
import pytest

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from service_dispatch.app.credentials.lease import CredentialLease
from shared.errors import AuthenticationRejected, CredentialFetchTimeout, InvalidCredentialResponse
from shared.metrics import MetricsCollector
from shared.test_helpers import FakeClock, MockIdentityProvider


class TestCredentialLease:
    """Test cases for CredentialLease."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def identity(self):
        return MockIdentityProvider(expires_in=300)

    @pytest.fixture
    def metrics(self):
        return MetricsCollector("dispatch-test")

    @pytest.fixture
    def lease(self, identity, clock, metrics):
        return CredentialLease(
            token_url="http://identity.test/token",
            client_id="invoice-dispatch",
            username="dispatch",
            password="secret",
            refresh_skew=30.0,
            timeout=1.0,
            transport=identity.transport(),
            clock=clock,
            metrics=metrics
        )

    @pytest.mark.asyncio
    async def test_acquire_performs_password_grant(self, lease, identity, clock):
        credential = await lease.acquire()

        assert credential.token == "token-1"
        assert credential.expires_at == clock.now + 300
        assert identity.forms == [{
            "grant_type": "password",
            "client_id": "invoice-dispatch",
            "username": "dispatch",
            "password": "secret"
        }]

    @pytest.mark.asyncio
    async def test_valid_credential_is_reused(self, lease, identity, clock):
        first = await lease.acquire()
        clock.advance(200)
        second = await lease.acquire()

        assert first is second
        assert identity.requests == 1

    @pytest.mark.asyncio
    async def test_refreshes_inside_skew(self, lease, identity, clock):
        await lease.acquire()
        clock.advance(271)

        credential = await lease.acquire()

        assert credential.token == "token-2"
        assert lease.refresh_count == 2

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_refresh(self, lease, identity):
        identity.delay = 0.05

        credentials = await asyncio.gather(*(lease.acquire() for _ in range(20)))

        assert {credential.token for credential in credentials} == {"token-1"}
        assert identity.requests == 1
        assert lease.refresh_count == 1

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_renewal_of_stale_credential(self, lease, identity, clock):
        await lease.acquire()
        clock.advance(290)
        identity.delay = 0.05

        credentials = await asyncio.gather(*(lease.acquire() for _ in range(10)))

        assert {credential.token for credential in credentials} == {"token-2"}
        assert identity.requests == 2

    @pytest.mark.asyncio
    async def test_rejected_exchange(self, lease, identity, metrics):
        identity.status_code = 401

        with pytest.raises(AuthenticationRejected) as exc_info:
            await lease.acquire()

        assert exc_info.value.details["status_code"] == 401
        assert lease.current is None
        assert metrics.registry.get_sample_value("credential_refresh_total", {"result": "rejected"}) == 1.0

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_failure(self, lease, identity):
        identity.status_code = 401
        identity.delay = 0.05

        results = await asyncio.gather(*(lease.acquire() for _ in range(5)), return_exceptions=True)

        assert all(isinstance(result, AuthenticationRejected) for result in results)
        assert identity.requests == 1

    @pytest.mark.asyncio
    async def test_cancelled_refresh_does_not_replay_earlier_failure(self, lease, identity):
        identity.status_code = 401
        with pytest.raises(AuthenticationRejected):
            await lease.acquire()

        identity.status_code = 200
        identity.delay = 0.2
        abandoned = asyncio.create_task(asyncio.wait_for(lease.acquire(), timeout=0.05))
        await asyncio.sleep(0.01)
        queued = asyncio.create_task(lease.acquire())

        with pytest.raises(asyncio.TimeoutError):
            await abandoned
        credential = await queued

        assert credential.token == "token-3"
        assert identity.requests == 3

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [
        {"token_type": "Bearer"},
        {"access_token": "", "expires_in": 300},
        {"access_token": "abc", "expires_in": 0},
        {"access_token": "abc", "expires_in": "soon"},
        {"access_token": "abc", "expires_in": True},
        ["abc"],
        b"not json",
    ])
    async def test_invalid_response(self, lease, identity, body):
        identity.body = body

        with pytest.raises(InvalidCredentialResponse):
            await lease.acquire()

        assert lease.current is None

    @pytest.mark.asyncio
    async def test_timeout(self, lease, identity):
        identity.timeout = True

        with pytest.raises(CredentialFetchTimeout):
            await lease.acquire()

    @pytest.mark.asyncio
    async def test_failed_refresh_serves_unexpired_credential(self, lease, identity, clock):
        await lease.acquire()
        identity.status_code = 503
        clock.advance(280)

        credential = await lease.acquire()

        assert credential.token == "token-1"
        assert identity.requests == 2

    @pytest.mark.asyncio
    async def test_never_returns_expired_credential(self, lease, identity, clock):
        await lease.acquire()
        identity.status_code = 503
        clock.advance(300)

        with pytest.raises(AuthenticationRejected):
            await lease.acquire()

    @pytest.mark.asyncio
    async def test_invalidate(self, lease, identity):
        credential = await lease.acquire()

        lease.invalidate("some-other-token")
        assert lease.current is credential

        lease.invalidate(credential.token)
        assert lease.current is None

        renewed = await lease.acquire()
        assert renewed.token == "token-2"

    @pytest.mark.asyncio
    async def test_background_refresh(self, lease, identity):
        lease.start_background_refresh(0.01)
        await asyncio.sleep(0.05)
        await lease.stop_background_refresh()

        assert lease.current is not None
        assert identity.requests == 1

    @pytest.mark.asyncio
    async def test_background_refresh_survives_failures(self, lease, identity):
        identity.status_code = 500

        lease.start_background_refresh(0.01)
        await asyncio.sleep(0.05)
        await lease.stop_background_refresh()

        assert identity.requests >= 2
        assert lease.current is None
