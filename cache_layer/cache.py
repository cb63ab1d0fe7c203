"""
Cache Layer - TTL Cache.

============================================================
PURPOSE
============================================================
Ephemeral cache in front of the store.

RULES:
- Never authoritative: a miss always falls through to the store
- TTL per CacheType, read from configuration at access time
- Lazy expiry: an expired entry is dropped when it is read;
  there is no background sweep
- Striped locks for get/set; one asyncio.Lock per key for
  read-through loads, so concurrent misses load once

============================================================
"""

import asyncio
import logging
import threading
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from core.clock import ClockProtocol, SystemClock
from core.config import CacheConfig, ConfigProvider, FleetConfig
from cache_layer.models import MISS, CacheEntry, CacheType


logger = logging.getLogger(__name__)


_TTL_FIELDS = {
    CacheType.DEVICE_STATUS: "device_status_ttl_seconds",
    CacheType.INVENTORY: "inventory_ttl_seconds",
    CacheType.CONFIGURATION: "configuration_ttl_seconds",
}


class TTLCache:
    """
    In-process TTL cache.

    Usage:
        cache = TTLCache()
        cache.set("web-01", CacheType.DEVICE_STATUS, "Online")
        status = cache.get("web-01", CacheType.DEVICE_STATUS)
        if status is MISS:
            ...
    """

    def __init__(
        self,
        clock: Optional[ClockProtocol] = None,
        config_provider: Optional[ConfigProvider] = None,
        stripes: int = 64,
    ):
        self._clock = clock or SystemClock()
        self._config_provider = config_provider or FleetConfig
        self._entries: Dict[Tuple[CacheType, str], CacheEntry] = {}
        self._stripes: List[threading.Lock] = [threading.Lock() for _ in range(stripes)]
        self._load_locks: Dict[Tuple[CacheType, str], asyncio.Lock] = {}

        self._hits = 0
        self._misses = 0
        self._expired = 0

    def _stripe(self, slot: Tuple[CacheType, str]) -> threading.Lock:
        return self._stripes[hash(slot) % len(self._stripes)]

    def ttl_for(self, cache_type: CacheType) -> float:
        """Current TTL of a cache type."""
        config: CacheConfig = self._config_provider().cache
        return getattr(config, _TTL_FIELDS[cache_type])

    # =========================================================
    # BASIC OPERATIONS
    # =========================================================

    def get(self, key: str, cache_type: CacheType) -> Any:
        """
        Get a fresh value.

        Returns:
            The cached data, or MISS
        """
        slot = (cache_type, key)
        ttl = self.ttl_for(cache_type)
        now = self._clock.timestamp()
        with self._stripe(slot):
            entry = self._entries.get(slot)
            if entry is None:
                self._misses += 1
                return MISS
            if entry.age_seconds(now) >= ttl:
                del self._entries[slot]
                self._expired += 1
                self._misses += 1
                return MISS
            entry.hits += 1
            self._hits += 1
            return entry.data

    def set(self, key: str, cache_type: CacheType, data: Any) -> None:
        """Store a value, replacing any previous one."""
        slot = (cache_type, key)
        with self._stripe(slot):
            self._entries[slot] = CacheEntry(
                key=key,
                cache_type=cache_type,
                data=data,
                timestamp=self._clock.timestamp(),
            )

    def invalidate_key(self, key: str, cache_type: CacheType) -> bool:
        """
        Drop one entry.

        Returns:
            True if it was cached
        """
        slot = (cache_type, key)
        with self._stripe(slot):
            return self._entries.pop(slot, None) is not None

    def invalidate(self, cache_type: Optional[CacheType] = None) -> int:
        """
        Drop all entries, or all entries of one type.

        Returns:
            Number of entries dropped
        """
        slots = [s for s in list(self._entries) if cache_type is None or s[0] is cache_type]
        dropped = 0
        for slot in slots:
            with self._stripe(slot):
                if self._entries.pop(slot, None) is not None:
                    dropped += 1
        logger.debug(
            f"Invalidated {dropped} cache entries"
            + (f" of type {cache_type.value}" if cache_type else "")
        )
        return dropped

    # =========================================================
    # READ-THROUGH
    # =========================================================

    async def get_or_load(
        self,
        key: str,
        cache_type: CacheType,
        loader: Callable[[], Awaitable[Any]],
    ) -> Any:
        """
        Get a value, loading it on a miss.

        Concurrent misses for one key await a single load. A loader
        returning None is not cached; loader errors propagate and
        cache nothing.
        """
        value = self.get(key, cache_type)
        if value is not MISS:
            return value

        slot = (cache_type, key)
        lock = self._load_locks.get(slot)
        if lock is None:
            lock = asyncio.Lock()
            self._load_locks[slot] = lock

        async with lock:
            value = self.get(key, cache_type)
            if value is not MISS:
                return value
            value = await loader()
            if value is not None:
                self.set(key, cache_type, value)
            return value

    def stats(self) -> Dict[str, Any]:
        """Cache statistics."""
        total = self._hits + self._misses
        by_type = {t.value: 0 for t in CacheType}
        for cache_type, _ in list(self._entries):
            by_type[cache_type.value] += 1
        return {
            "entries": len(self._entries),
            "by_type": by_type,
            "hits": self._hits,
            "misses": self._misses,
            "expired": self._expired,
            "hit_rate_pct": round(self._hits / total * 100, 2) if total else 0.0,
        }
