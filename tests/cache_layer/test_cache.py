"""
Tests for the TTL cache and device read-through.
"""

import asyncio

import pytest

from cache_layer import MISS, CacheType, DeviceReadThrough, TTLCache
from storage.models import DeviceStatus, SnapshotType
from storage.repositories import DeviceRepository, MetricRepository


@pytest.fixture
def cache(clock, config_provider):
    return TTLCache(clock=clock, config_provider=config_provider)


# ============================================================
# TTL TESTS
# ============================================================

class TestTTLCache:
    """Tests for TTLCache get/set/expiry."""

    def test_miss_on_empty(self, cache):
        """Test that an unknown key returns the MISS sentinel."""
        assert cache.get("web-01", CacheType.DEVICE_STATUS) is MISS

    def test_fresh_value_is_returned(self, cache, clock):
        """Test that a value younger than its TTL is served."""
        cache.set("web-01", CacheType.DEVICE_STATUS, "Online")
        clock.advance(seconds=299)

        assert cache.get("web-01", CacheType.DEVICE_STATUS) == "Online"

    def test_ttl_per_type(self, cache, clock):
        """Test that each cache type expires on its own TTL."""
        cache.set("web-01", CacheType.DEVICE_STATUS, "Online")
        cache.set("web-01", CacheType.CONFIGURATION, {"ntp": "on"})
        cache.set("web-01", CacheType.INVENTORY, {"cpu": 4})

        clock.advance(seconds=300)
        assert cache.get("web-01", CacheType.DEVICE_STATUS) is MISS
        assert cache.get("web-01", CacheType.CONFIGURATION) == {"ntp": "on"}

        clock.advance(seconds=3300)
        assert cache.get("web-01", CacheType.CONFIGURATION) is MISS
        assert cache.get("web-01", CacheType.INVENTORY) == {"cpu": 4}

        clock.advance(hours=23)
        assert cache.get("web-01", CacheType.INVENTORY) is MISS

    def test_ttl_read_from_live_config(self, cache, clock, fleet_config):
        """Test that a configuration change applies to existing entries."""
        cache.set("web-01", CacheType.DEVICE_STATUS, "Online")
        clock.advance(seconds=20)

        fleet_config.cache.device_status_ttl_seconds = 10

        assert cache.get("web-01", CacheType.DEVICE_STATUS) is MISS

    def test_expired_entry_is_dropped_on_read(self, cache, clock):
        """Test that lazy expiry removes the entry and counts it."""
        cache.set("web-01", CacheType.DEVICE_STATUS, "Online")
        clock.advance(seconds=301)

        cache.get("web-01", CacheType.DEVICE_STATUS)

        stats = cache.stats()
        assert stats["entries"] == 0
        assert stats["expired"] == 1

    def test_invalidate_by_type(self, cache):
        """Test invalidating one type keeps the others."""
        cache.set("web-01", CacheType.DEVICE_STATUS, "Online")
        cache.set("web-02", CacheType.DEVICE_STATUS, "Offline")
        cache.set("web-01", CacheType.INVENTORY, {})

        assert cache.invalidate(CacheType.DEVICE_STATUS) == 2
        assert cache.get("web-01", CacheType.INVENTORY) == {}
        assert cache.invalidate() == 1

    def test_invalidate_key(self, cache):
        """Test dropping a single entry."""
        cache.set("web-01", CacheType.DEVICE_STATUS, "Online")

        assert cache.invalidate_key("web-01", CacheType.DEVICE_STATUS) is True
        assert cache.invalidate_key("web-01", CacheType.DEVICE_STATUS) is False


# ============================================================
# READ-THROUGH TESTS
# ============================================================

class TestGetOrLoad:
    """Tests for TTLCache.get_or_load."""

    @pytest.mark.asyncio
    async def test_concurrent_misses_load_once(self, cache):
        """Test that concurrent misses for one key share one load."""
        calls = []

        async def loader():
            calls.append(1)
            await asyncio.sleep(0.02)
            return "Online"

        results = await asyncio.gather(
            *[cache.get_or_load("web-01", CacheType.DEVICE_STATUS, loader) for _ in range(5)]
        )

        assert results == ["Online"] * 5
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_none_is_not_cached(self, cache):
        """Test that a loader returning None is retried next time."""
        calls = []

        async def loader():
            calls.append(1)
            return None

        await cache.get_or_load("ghost", CacheType.DEVICE_STATUS, loader)
        await cache.get_or_load("ghost", CacheType.DEVICE_STATUS, loader)

        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_loader_error_caches_nothing(self, cache):
        """Test that a failing loader propagates and leaves no entry."""

        async def loader():
            raise RuntimeError("store down")

        with pytest.raises(RuntimeError):
            await cache.get_or_load("web-01", CacheType.DEVICE_STATUS, loader)

        assert cache.get("web-01", CacheType.DEVICE_STATUS) is MISS


class TestDeviceReadThrough:
    """Tests for DeviceReadThrough."""

    @pytest.mark.asyncio
    async def test_status_cached_until_invalidated(self, device_reads, database, register_device):
        """Test that status is served from cache until the writer invalidates."""
        register_device("web-01")
        assert await device_reads.get_status("web-01") == DeviceStatus.ONLINE.value

        with database.session_scope() as session:
            DeviceRepository(session).update_status("web-01", DeviceStatus.OFFLINE)

        assert await device_reads.get_status("web-01") == DeviceStatus.ONLINE.value

        device_reads.invalidate_device("web-01")
        assert await device_reads.get_status("web-01") == DeviceStatus.OFFLINE.value

    @pytest.mark.asyncio
    async def test_unknown_device(self, device_reads):
        """Test that an unknown device reads as None."""
        assert await device_reads.get_status("ghost") is None

    @pytest.mark.asyncio
    async def test_snapshots(self, device_reads, database, register_device):
        """Test inventory and configuration documents come from the latest snapshot."""
        register_device("web-01")
        with database.session_scope() as session:
            metrics = MetricRepository(session)
            metrics.add_snapshot("web-01", SnapshotType.INVENTORY, {"cpu_count": 8})
            metrics.add_snapshot("web-01", SnapshotType.CONFIGURATION, {"firewall": "on"})

        assert await device_reads.get_inventory("web-01") == {"cpu_count": 8}
        assert await device_reads.get_configuration("web-01") == {"firewall": "on"}

    @pytest.mark.asyncio
    async def test_shares_underlying_cache(self, database, clock, config_provider, register_device):
        """Test that reads populate the wrapped TTLCache."""
        cache = TTLCache(clock=clock, config_provider=config_provider)
        reads = DeviceReadThrough(cache, database)
        register_device("web-01")

        await reads.get_status("web-01")

        assert reads.cache is cache
        assert cache.get("web-01", CacheType.DEVICE_STATUS) == "Online"
