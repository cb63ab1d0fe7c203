"""
Transport - Negotiator.

============================================================
PURPOSE
============================================================
Decides, per target, which transport to use and prepares the
local node for it.

============================================================
POLICY (evaluated in order)
============================================================
1. Local node domain-joined
   -> INTEGRATED over the plain listener, no allow-list change
2. Secure port answers with a trusted certificate
   -> SECURE, no allow-list change
3. Only the plain port answers
   -> PLAIN; target appended to the allow-list (additively,
      never a wildcard) and tracked as programmatic
4. Otherwise
   -> not ready, with a diagnostic:
      AccessDenied | NoListener | CertificateTrust

============================================================
"""

import asyncio
import logging
from typing import Callable, Dict, List, Optional

from core.config import SessionConfig
from core.exceptions import TransportNegotiationError
from transport.allow_list import AllowListStore
from transport.environment import HostEnvironment
from transport.prober import PortProber
from transport.types import (
    DiagnosticKind,
    NegotiationResult,
    ProbeOutcome,
    TransportKind,
    normalize_target,
)


logger = logging.getLogger(__name__)


class TransportNegotiator:
    """
    Transport negotiation for remote targets.

    Usage:
        negotiator = TransportNegotiator(allow_list, environment)
        result = await negotiator.negotiate("web-01")
        # result.recommended_transport -> TransportKind.SECURE
    """

    def __init__(
        self,
        allow_list: AllowListStore,
        environment: HostEnvironment,
        prober: Optional[PortProber] = None,
        config_provider: Optional[Callable[[], SessionConfig]] = None,
    ):
        self._allow_list = allow_list
        self._environment = environment
        self._prober = prober or PortProber()
        self._config_provider = config_provider or SessionConfig
        self._target_locks: Dict[str, asyncio.Lock] = {}

    @property
    def allow_list(self) -> AllowListStore:
        return self._allow_list

    def _lock_for(self, target: str) -> asyncio.Lock:
        lock = self._target_locks.get(target)
        if lock is None:
            lock = asyncio.Lock()
            self._target_locks[target] = lock
        return lock

    # =========================================================
    # EVALUATION
    # =========================================================

    async def evaluate(self, target: str) -> NegotiationResult:
        """
        Evaluate a target and apply the policy.

        Never raises for network conditions; inspect result.ready.
        """
        key = normalize_target(target)
        async with self._lock_for(key):
            result = await self._evaluate(key)

        if result.ready:
            logger.info(
                f"Negotiated {result.recommended_transport.value} for {key}"
                + (" (allow-list entry added)" if result.allow_list_added else "")
            )
        else:
            logger.warning(f"Negotiation failed for {key}: {result.diagnostic.value}: {result.message}")
        return result

    async def _evaluate(self, target: str) -> NegotiationResult:
        config = self._config_provider()
        result = NegotiationResult(target=target)
        result.in_allow_list = self._allow_list.contains(target)

        # 1. Domain membership
        result.domain_joined = self._environment.is_domain_joined()
        if result.domain_joined:
            result.recommended_transport = TransportKind.INTEGRATED
            result.ready = True
            result.message = "Local node is domain-joined; using integrated authentication"
            return result

        # 2. Secure listener
        secure = await self._prober.probe(
            target, config.secure_port, config.probe_timeout_seconds, secure=True
        )
        if secure is ProbeOutcome.OPEN:
            result.https_available = True
            result.recommended_transport = TransportKind.SECURE
            result.ready = True
            result.message = f"Secure listener on port {config.secure_port}"
            return result

        # 3. Plain listener
        plain = await self._prober.probe(
            target, config.plain_port, config.probe_timeout_seconds
        )
        result.http_available = plain.answered

        if result.http_available:
            if result.in_allow_list:
                result.recommended_transport = TransportKind.PLAIN
                result.ready = True
                result.message = f"Plain listener on port {config.plain_port}; already allow-listed"
                return result
            return self._add_to_allow_list(result, config)

        # 4. Classified failure
        if ProbeOutcome.DENIED in (secure, plain):
            result.diagnostic = DiagnosticKind.ACCESS_DENIED
            result.message = f"Connection to {target} was refused by policy"
        elif secure is ProbeOutcome.UNTRUSTED_CERTIFICATE:
            result.diagnostic = DiagnosticKind.CERTIFICATE_TRUST
            result.message = (
                f"Secure listener on {target}:{config.secure_port} presented an untrusted "
                f"certificate and no plain listener answered on port {config.plain_port}"
            )
        else:
            result.diagnostic = DiagnosticKind.NO_LISTENER
            result.message = (
                f"No listener on {target} ports {config.secure_port}/{config.plain_port}"
            )
        return result

    def _add_to_allow_list(self, result: NegotiationResult, config: SessionConfig) -> NegotiationResult:
        target = result.target
        if not self._allow_list.mutable:
            result.diagnostic = DiagnosticKind.ACCESS_DENIED
            result.message = (
                f"{target} only offers the plain listener and the allow-list cannot be modified"
            )
            return result

        try:
            added = self._allow_list.add(target, programmatic=True)
        except PermissionError as e:
            result.diagnostic = DiagnosticKind.ACCESS_DENIED
            result.message = f"Could not add {target} to the allow-list: {e}"
            return result

        result.allow_list_added = added
        result.in_allow_list = True
        result.recommended_transport = TransportKind.PLAIN
        result.ready = True
        result.message = f"Plain listener on port {config.plain_port}; {target} added to allow-list"
        return result

    async def negotiate(self, target: str) -> NegotiationResult:
        """
        Evaluate and require a usable transport.

        Raises:
            TransportNegotiationError: If no transport is ready
        """
        result = await self.evaluate(target)
        if not result.ready:
            raise TransportNegotiationError(
                target=result.target,
                diagnostic=result.diagnostic,
                message=f"{result.diagnostic.value}: {result.message}",
            )
        return result

    # =========================================================
    # CLEANUP
    # =========================================================

    def clear_programmatic_entries(self) -> List[str]:
        """
        Remove exactly the allow-list entries added programmatically.

        Returns:
            The entries removed
        """
        removed = self._allow_list.clear_programmatic()
        logger.info(f"Cleared {len(removed)} programmatic allow-list entries")
        return removed
