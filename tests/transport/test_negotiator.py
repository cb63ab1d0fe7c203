"""
Tests for transport negotiation.

============================================================
PURPOSE
============================================================
Verifies the negotiation policy:
1. Domain-joined -> Integrated, allow-list untouched
2. Trusted secure listener -> Secure, allow-list untouched
3. Plain listener only -> Plain, exactly one entry appended
4. Otherwise a classified diagnostic

============================================================
"""

import asyncio

import pytest

from core.config import SessionConfig
from core.exceptions import TransportNegotiationError
from transport import (
    DiagnosticKind,
    InMemoryAllowListStore,
    NullAllowListStore,
    ProbeOutcome,
    StaticHostEnvironment,
    TransportKind,
    TransportNegotiator,
)


SECURE = 5986
PLAIN = 5985


# ============================================================
# FIXTURES
# ============================================================

@pytest.fixture
def workgroup_negotiator(allow_list, prober):
    """Negotiator on a node outside any domain."""
    return TransportNegotiator(
        allow_list,
        StaticHostEnvironment(domain_joined=False),
        prober=prober,
        config_provider=SessionConfig,
    )


# ============================================================
# POLICY TESTS
# ============================================================

class TestNegotiationPolicy:
    """Tests for the ordered negotiation policy."""

    @pytest.mark.asyncio
    async def test_domain_joined_uses_integrated(self, negotiator, allow_list, prober):
        """Test that a domain-joined node never probes or touches the allow-list."""
        result = await negotiator.evaluate("web-01")

        assert result.ready
        assert result.domain_joined
        assert result.recommended_transport is TransportKind.INTEGRATED
        assert prober.calls == []
        assert allow_list.entries() == []

    @pytest.mark.asyncio
    async def test_trusted_secure_listener(self, workgroup_negotiator, allow_list, prober):
        """Test that a trusted secure listener wins without allow-list changes."""
        prober.set("web-01", SECURE, ProbeOutcome.OPEN)
        prober.set("web-01", PLAIN, ProbeOutcome.OPEN)

        result = await workgroup_negotiator.evaluate("web-01")

        assert result.ready
        assert result.https_available
        assert result.recommended_transport is TransportKind.SECURE
        assert allow_list.entries() == []
        assert prober.calls == [("web-01", SECURE, True)]

    @pytest.mark.asyncio
    async def test_plain_listener_adds_single_entry(self, workgroup_negotiator, allow_list, prober):
        """Test that a plain-only target is appended once, without wildcards."""
        prober.set("web-01", PLAIN, ProbeOutcome.OPEN)

        first = await workgroup_negotiator.evaluate("WEB-01")
        second = await workgroup_negotiator.evaluate("web-01.")

        assert first.ready and second.ready
        assert first.recommended_transport is TransportKind.PLAIN
        assert first.allow_list_added is True
        assert second.allow_list_added is False
        assert second.in_allow_list is True
        assert allow_list.entries() == ["web-01"]
        assert allow_list.programmatic_entries() == ["web-01"]

    @pytest.mark.asyncio
    async def test_existing_entries_are_preserved(self, prober):
        """Test that adding a target never replaces what was already listed."""
        store = InMemoryAllowListStore(initial=["legacy-01"])
        negotiator = TransportNegotiator(
            store, StaticHostEnvironment(False), prober=prober, config_provider=SessionConfig
        )
        prober.set("web-01", PLAIN, ProbeOutcome.OPEN)

        await negotiator.evaluate("web-01")

        assert store.entries() == ["legacy-01", "web-01"]

    @pytest.mark.asyncio
    async def test_concurrent_evaluations_add_once(self, workgroup_negotiator, allow_list, prober):
        """Test that concurrent negotiations of one target append one entry."""
        prober.set("web-01", PLAIN, ProbeOutcome.OPEN)

        results = await asyncio.gather(*[workgroup_negotiator.evaluate("web-01") for _ in range(5)])

        assert sum(r.allow_list_added for r in results) == 1
        assert allow_list.entries() == ["web-01"]


# ============================================================
# DIAGNOSTIC TESTS
# ============================================================

class TestNegotiationDiagnostics:
    """Tests for classified negotiation failures."""

    @pytest.mark.asyncio
    async def test_no_listener(self, workgroup_negotiator, allow_list):
        """Test that closed ports give NoListener and change nothing."""
        result = await workgroup_negotiator.evaluate("web-01")

        assert not result.ready
        assert result.recommended_transport is None
        assert result.diagnostic is DiagnosticKind.NO_LISTENER
        assert allow_list.entries() == []

    @pytest.mark.asyncio
    async def test_untrusted_certificate(self, workgroup_negotiator, prober):
        """Test that an untrusted secure listener with no plain fallback gives CertificateTrust."""
        prober.set("web-01", SECURE, ProbeOutcome.UNTRUSTED_CERTIFICATE)

        result = await workgroup_negotiator.evaluate("web-01")

        assert result.diagnostic is DiagnosticKind.CERTIFICATE_TRUST
        assert "untrusted certificate" in result.message

    @pytest.mark.asyncio
    async def test_untrusted_certificate_falls_back_to_plain(self, workgroup_negotiator, prober):
        """Test that a plain listener is still usable next to an untrusted secure one."""
        prober.set("web-01", SECURE, ProbeOutcome.UNTRUSTED_CERTIFICATE)
        prober.set("web-01", PLAIN, ProbeOutcome.OPEN)

        result = await workgroup_negotiator.evaluate("web-01")

        assert result.ready
        assert result.recommended_transport is TransportKind.PLAIN

    @pytest.mark.asyncio
    async def test_denied_probe(self, workgroup_negotiator, prober):
        """Test that a policy refusal gives AccessDenied."""
        prober.set("web-01", SECURE, ProbeOutcome.DENIED)

        result = await workgroup_negotiator.evaluate("web-01")

        assert result.diagnostic is DiagnosticKind.ACCESS_DENIED

    @pytest.mark.asyncio
    async def test_read_only_allow_list(self, prober):
        """Test that an unmodifiable allow-list gives AccessDenied."""
        store = InMemoryAllowListStore(read_only=True)
        negotiator = TransportNegotiator(
            store, StaticHostEnvironment(False), prober=prober, config_provider=SessionConfig
        )
        prober.set("web-01", PLAIN, ProbeOutcome.OPEN)

        result = await negotiator.evaluate("web-01")

        assert not result.ready
        assert result.diagnostic is DiagnosticKind.ACCESS_DENIED

    @pytest.mark.asyncio
    async def test_certificate_only_environment(self, prober):
        """Test that the null allow-list refuses plain-only targets."""
        negotiator = TransportNegotiator(
            NullAllowListStore(), StaticHostEnvironment(False), prober=prober, config_provider=SessionConfig
        )
        prober.set("web-01", PLAIN, ProbeOutcome.OPEN)

        result = await negotiator.evaluate("web-01")

        assert result.diagnostic is DiagnosticKind.ACCESS_DENIED

    @pytest.mark.asyncio
    async def test_negotiate_raises_with_diagnostic(self, workgroup_negotiator):
        """Test that negotiate() raises a device error carrying the diagnostic."""
        with pytest.raises(TransportNegotiationError) as exc_info:
            await workgroup_negotiator.negotiate("web-01")

        assert exc_info.value.diagnostic is DiagnosticKind.NO_LISTENER
        assert exc_info.value.target == "web-01"


# ============================================================
# CLEANUP TESTS
# ============================================================

class TestClearProgrammaticEntries:
    """Tests for removing programmatic allow-list entries."""

    @pytest.mark.asyncio
    async def test_clear_removes_only_programmatic(self, prober):
        """Test that clearing leaves manually configured entries in place."""
        store = InMemoryAllowListStore(initial=["legacy-01"])
        negotiator = TransportNegotiator(
            store, StaticHostEnvironment(False), prober=prober, config_provider=SessionConfig
        )
        prober.set("web-01", PLAIN, ProbeOutcome.OPEN)
        prober.set("web-02", PLAIN, ProbeOutcome.OPEN)
        await negotiator.evaluate("web-01")
        await negotiator.evaluate("web-02")

        removed = negotiator.clear_programmatic_entries()

        assert removed == ["web-01", "web-02"]
        assert store.entries() == ["legacy-01"]
        assert negotiator.clear_programmatic_entries() == []
