"""
Cache Layer - Device Read-Through.

Device status, inventory and configuration reads served from
the cache, falling through to the store on a miss.
"""

import logging
from typing import Any, Dict, Optional

from cache_layer.cache import TTLCache
from cache_layer.models import CacheType
from storage.database import Database
from storage.models import SnapshotType
from storage.repositories import DeviceRepository, MetricRepository


logger = logging.getLogger(__name__)


class DeviceReadThrough:
    """
    Cached device reads.

    Writers call invalidate_device() after changing a device so
    the next read sees the store.
    """

    def __init__(self, cache: TTLCache, database: Database):
        self._cache = cache
        self._database = database

    @property
    def cache(self) -> TTLCache:
        return self._cache

    async def get_status(self, device_id: str) -> Optional[str]:
        """Current device status value, None for unknown devices."""
        return await self._cache.get_or_load(
            device_id, CacheType.DEVICE_STATUS, lambda: self._load_status(device_id)
        )

    async def get_inventory(self, device_id: str) -> Optional[Dict[str, Any]]:
        """Latest inventory document."""
        return await self._cache.get_or_load(
            device_id,
            CacheType.INVENTORY,
            lambda: self._load_snapshot(device_id, SnapshotType.INVENTORY),
        )

    async def get_configuration(self, device_id: str) -> Optional[Dict[str, Any]]:
        """Latest configuration document."""
        return await self._cache.get_or_load(
            device_id,
            CacheType.CONFIGURATION,
            lambda: self._load_snapshot(device_id, SnapshotType.CONFIGURATION),
        )

    def invalidate_device(self, device_id: str) -> None:
        """Forget everything cached about a device."""
        for cache_type in CacheType:
            self._cache.invalidate_key(device_id, cache_type)

    # --------------------------------------------------------
    # LOADERS
    # --------------------------------------------------------

    async def _load_status(self, device_id: str) -> Optional[str]:
        with self._database.session_scope() as session:
            device = DeviceRepository(session).get(device_id)
            return device.status if device is not None else None

    async def _load_snapshot(self, device_id: str, snapshot_type: SnapshotType) -> Optional[Dict[str, Any]]:
        with self._database.session_scope() as session:
            snapshot = MetricRepository(session).latest_snapshot(device_id, snapshot_type)
            return dict(snapshot.data) if snapshot is not None else None
