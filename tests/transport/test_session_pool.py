"""
Tests for the session pool and run_bounded.
"""

import asyncio

import pytest

from core.exceptions import OperationCancelledError, OperationTimeoutError, TransportNegotiationError
from transport import (
    CancellationToken,
    Credential,
    InMemorySecretStore,
    SessionPool,
    StaticHostEnvironment,
    TransportKind,
    TransportNegotiator,
    run_bounded,
)
from transport.mock import MockDeviceTransport, MockTransportConfig


# ============================================================
# REUSE / EXPIRY TESTS
# ============================================================

class TestSessionReuse:
    """Tests for session reuse within the TTL."""

    @pytest.mark.asyncio
    async def test_reuses_open_session_within_ttl(self, session_pool, transport, clock):
        """Test that a second acquire within the TTL reuses the channel."""
        first = await session_pool.acquire("web-01")
        await session_pool.release("web-01", first)
        clock.advance(seconds=60)

        second = await session_pool.acquire("WEB-01")

        assert second is first
        assert len(transport.connects) == 1
        assert session_pool.stats()["hits"] == 1

    @pytest.mark.asyncio
    async def test_renegotiates_after_ttl(self, session_pool, transport, clock, fleet_config):
        """Test that an expired session is closed and replaced."""
        first = await session_pool.acquire("web-01")
        await session_pool.release("web-01", first)
        clock.advance(seconds=fleet_config.session.ttl_seconds)

        second = await session_pool.acquire("web-01")

        assert second is not first
        assert not first.is_open
        assert transport.closed_channels == [first.channel_id]
        assert len(transport.connects) == 2

    @pytest.mark.asyncio
    async def test_broken_channel_replaced(self, session_pool, transport):
        """Test that a channel reporting itself closed is never reused."""
        first = await session_pool.acquire("web-01")
        await session_pool.release("web-01", first)
        first.break_channel()

        second = await session_pool.acquire("web-01")

        assert second is not first
        assert len(transport.connects) == 2

    @pytest.mark.asyncio
    async def test_integrated_transport_used_when_domain_joined(self, session_pool, transport):
        """Test that the negotiated transport reaches connect()."""
        async with session_pool.lease("web-01") as channel:
            assert channel.kind is TransportKind.INTEGRATED

        assert transport.connects[0]["kind"] is TransportKind.INTEGRATED


# ============================================================
# LEASE TESTS
# ============================================================

class TestLeasedSessions:
    """Tests for sessions retired while leased."""

    @pytest.mark.asyncio
    async def test_leased_session_closed_on_last_release(self, session_pool, clock, fleet_config):
        """Test that expiry never closes a channel underneath its holder."""
        held = await session_pool.acquire("web-01")
        clock.advance(seconds=fleet_config.session.ttl_seconds + 1)

        evicted = await session_pool.evict_expired()

        assert evicted == 1
        assert held.is_open
        assert session_pool.stats()["retired"] == 1

        await session_pool.release("web-01", held)

        assert not held.is_open
        assert session_pool.stats()["retired"] == 0

    @pytest.mark.asyncio
    async def test_invalidate_drops_session(self, session_pool, transport):
        """Test that invalidate forces the next acquire to reconnect."""
        async with session_pool.lease("web-01"):
            pass

        assert await session_pool.invalidate("web-01") is True
        assert await session_pool.invalidate("web-01") is False

        async with session_pool.lease("web-01"):
            pass
        assert len(transport.connects) == 2

    @pytest.mark.asyncio
    async def test_close_all(self, session_pool):
        """Test that close_all closes leased and idle channels alike."""
        held = await session_pool.acquire("web-01")
        async with session_pool.lease("web-02") as idle:
            pass

        await session_pool.close_all()

        assert not held.is_open
        assert not idle.is_open
        assert session_pool.stats()["active"] == 0


# ============================================================
# FAILURE TESTS
# ============================================================

class TestSessionFailures:
    """Tests for failed negotiation and connect."""

    @pytest.mark.asyncio
    async def test_failed_negotiation_caches_nothing(self, allow_list, prober, transport, clock, config_provider):
        """Test that a negotiation failure re-raises and leaves the pool empty."""
        negotiator = TransportNegotiator(
            allow_list,
            StaticHostEnvironment(domain_joined=False),
            prober=prober,
            config_provider=lambda: config_provider().session,
        )
        pool = SessionPool(negotiator, transport, clock=clock, config_provider=config_provider)

        with pytest.raises(TransportNegotiationError):
            await pool.acquire("web-01")

        assert pool.stats()["active"] == 0
        assert transport.connects == []

    @pytest.mark.asyncio
    async def test_failed_connect_caches_nothing(self, session_pool, transport):
        """Test that a connect error propagates and the next acquire retries."""
        transport.fail_connect("web-01", ConnectionRefusedError("refused"))

        with pytest.raises(ConnectionRefusedError):
            await session_pool.acquire("web-01")

        channel = await session_pool.acquire("web-01")
        assert channel.is_open
        assert len(transport.connects) == 2

    @pytest.mark.asyncio
    async def test_concurrent_acquires_connect_once(self, negotiator, clock, config_provider):
        """Test that concurrent acquires of one target share one connect."""
        transport = MockDeviceTransport(MockTransportConfig(connect_latency_seconds=0.05))
        pool = SessionPool(negotiator, transport, clock=clock, config_provider=config_provider)

        channels = await asyncio.gather(*[pool.acquire("web-01") for _ in range(4)])

        assert len(transport.connects) == 1
        assert all(c is channels[0] for c in channels)

    @pytest.mark.asyncio
    async def test_credential_from_secret_store(self, negotiator, transport, clock, config_provider, fleet_config):
        """Test that the configured credential is looked up by name."""
        secrets = InMemorySecretStore()
        credential = Credential("svc-fleet", "s3cret")
        secrets.put(fleet_config.session.credential_name, credential)
        pool = SessionPool(negotiator, transport, secret_store=secrets, clock=clock, config_provider=config_provider)

        await pool.acquire("web-01")

        assert transport.connects[0]["credential"] == credential


# ============================================================
# RUN_BOUNDED TESTS
# ============================================================

class TestRunBounded:
    """Tests for run_bounded."""

    @pytest.mark.asyncio
    async def test_returns_result(self):
        """Test that a fast coroutine returns its value."""

        async def quick():
            return 42

        assert await run_bounded(quick(), timeout=1.0, operation="quick") == 42

    @pytest.mark.asyncio
    async def test_timeout(self):
        """Test that a slow coroutine raises OperationTimeoutError."""
        with pytest.raises(OperationTimeoutError):
            await run_bounded(asyncio.sleep(5), timeout=0.05, operation="slow")

    @pytest.mark.asyncio
    async def test_cancellation_token(self):
        """Test that the token aborts the wait early."""
        token = CancellationToken()
        asyncio.get_running_loop().call_later(0.02, token.cancel, "shutdown")

        with pytest.raises(OperationCancelledError) as exc_info:
            await run_bounded(asyncio.sleep(5), timeout=2.0, operation="long", cancel_token=token)

        assert "shutdown" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_already_cancelled_token(self):
        """Test that a pre-cancelled token raises before awaiting."""
        token = CancellationToken()
        token.cancel("stop")

        with pytest.raises(OperationCancelledError):
            await run_bounded(asyncio.sleep(5), timeout=2.0, operation="long", cancel_token=token)
