"""
Transport - Session Pool.

============================================================
PURPOSE
============================================================
Reuses open channels to targets across actions.

============================================================
RULES
============================================================
- Keyed by normalized target identity
- A session is handed out only while its age < TTL and its
  channel reports itself open; otherwise it is closed, purged
  and renegotiated
- One asyncio.Lock per key; there is no pool-wide lock
- A leased session is never closed underneath its holder:
  expiry retires it and the last release closes it
- Failed negotiation or connect caches nothing and re-raises

============================================================
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Dict, Optional

from core.clock import ClockProtocol, SystemClock
from core.config import ConfigProvider, FleetConfig
from transport.device_transport import Channel, DeviceTransport, run_bounded
from transport.negotiator import TransportNegotiator
from transport.secret_store import SecretStore
from transport.types import Credential, TransportKind, normalize_target


logger = logging.getLogger(__name__)


@dataclass
class PooledSession:
    """A pooled channel and its bookkeeping."""

    key: str
    kind: TransportKind
    channel: Channel
    created_at: float
    leases: int = 0
    retired: bool = False


class SessionPool:
    """
    Channel pool for remote targets.

    Usage:
        async with pool.lease("web-01") as channel:
            await channel.execute("HealthCheck", {}, timeout=60)
    """

    def __init__(
        self,
        negotiator: TransportNegotiator,
        transport: DeviceTransport,
        secret_store: Optional[SecretStore] = None,
        clock: Optional[ClockProtocol] = None,
        config_provider: Optional[ConfigProvider] = None,
    ):
        self._negotiator = negotiator
        self._transport = transport
        self._secret_store = secret_store
        self._clock = clock or SystemClock()
        self._config_provider = config_provider or FleetConfig

        self._entries: Dict[str, PooledSession] = {}
        self._retired: Dict[int, PooledSession] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

        self._hits = 0
        self._misses = 0
        self._evictions = 0

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def _is_valid(self, entry: PooledSession) -> bool:
        ttl = self._config_provider().session.ttl_seconds
        age = self._clock.timestamp() - entry.created_at
        return age < ttl and entry.channel.is_open

    # =========================================================
    # ACQUIRE / RELEASE
    # =========================================================

    async def acquire(self, target: str, credential: Optional[Credential] = None) -> Channel:
        """
        Get a channel to a target, reusing a valid pooled one.

        The caller must release() it.

        Raises:
            TransportNegotiationError: If no transport is usable
            Any connect error, unclassified (see classify_error)
        """
        key = normalize_target(target)
        async with self._lock_for(key):
            entry = self._entries.get(key)
            if entry is not None:
                if self._is_valid(entry):
                    entry.leases += 1
                    self._hits += 1
                    return entry.channel
                logger.debug(f"Session for {key} expired or broken; renegotiating")
                await self._retire(entry)

            channel, kind = await self._open(key, credential)
            self._entries[key] = PooledSession(
                key=key,
                kind=kind,
                channel=channel,
                created_at=self._clock.timestamp(),
                leases=1,
            )
            self._misses += 1
            logger.info(f"Opened {kind.value} session to {key}")
            return channel

    async def _open(self, key: str, credential: Optional[Credential]):
        config = self._config_provider()
        result = await self._negotiator.negotiate(key)
        if credential is None and self._secret_store is not None:
            credential = self._secret_store.get(config.session.credential_name)
        timeout = config.execution.connect_timeout_seconds
        channel = await run_bounded(
            self._transport.connect(key, result.recommended_transport, credential, timeout),
            timeout=timeout,
            operation=f"connect {key}",
        )
        return channel, result.recommended_transport

    async def release(self, target: str, channel: Optional[Channel] = None) -> None:
        """
        Return a leased channel.

        A broken channel is purged immediately; a retired one is
        closed once its last lease comes back.
        """
        key = normalize_target(target)
        entry = self._entries.get(key)
        if channel is not None and (entry is None or entry.channel is not channel):
            entry = self._retired.get(id(channel))
        if entry is None:
            logger.debug(f"Release for {key} without a pooled session")
            return

        entry.leases = max(0, entry.leases - 1)

        if not entry.retired and not entry.channel.is_open:
            await self._retire(entry)
            return

        if entry.retired and entry.leases == 0:
            self._retired.pop(id(entry.channel), None)
            await self._close(entry)

    @asynccontextmanager
    async def lease(self, target: str, credential: Optional[Credential] = None) -> AsyncIterator[Channel]:
        """Acquire for the duration of a block."""
        channel = await self.acquire(target, credential)
        try:
            yield channel
        finally:
            await self.release(target, channel)

    # =========================================================
    # EVICTION
    # =========================================================

    async def _retire(self, entry: PooledSession) -> None:
        """Take an entry out of service; close now if nobody holds it."""
        if self._entries.get(entry.key) is entry:
            del self._entries[entry.key]
        self._evictions += 1
        if entry.leases > 0:
            entry.retired = True
            self._retired[id(entry.channel)] = entry
            return
        await self._close(entry)

    async def _close(self, entry: PooledSession) -> None:
        try:
            await entry.channel.close()
        except Exception as e:
            logger.warning(f"Error closing session to {entry.key}: {e}")

    async def invalidate(self, target: str) -> bool:
        """
        Drop the pooled session for a target.

        Returns:
            True if one was pooled
        """
        key = normalize_target(target)
        entry = self._entries.get(key)
        if entry is None:
            return False
        await self._retire(entry)
        return True

    async def evict_expired(self) -> int:
        """
        Retire every expired or broken session.

        Returns:
            Number of sessions evicted
        """
        stale = [entry for entry in list(self._entries.values()) if not self._is_valid(entry)]
        for entry in stale:
            await self._retire(entry)
        if stale:
            logger.debug(f"Evicted {len(stale)} sessions")
        return len(stale)

    async def close_all(self) -> None:
        """Close every session, leased or not."""
        entries = list(self._entries.values()) + list(self._retired.values())
        self._entries.clear()
        self._retired.clear()
        for entry in entries:
            await self._close(entry)
        logger.info(f"Session pool closed ({len(entries)} sessions)")

    def stats(self) -> Dict[str, int]:
        """Pool counters."""
        return {
            "active": len(self._entries),
            "leased": sum(1 for e in self._entries.values() if e.leases > 0),
            "retired": len(self._retired),
            "hits": self._hits,
            "misses": self._misses,
            "evictions": self._evictions,
        }
