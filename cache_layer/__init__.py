"""
Cache Layer Package.

Ephemeral TTL cache in front of the store.

Components:
- TTLCache: per-type TTL, lazy expiry, striped locking
- DeviceReadThrough: cached device status / inventory / configuration
"""

from cache_layer.cache import TTLCache
from cache_layer.models import MISS, CacheEntry, CacheType
from cache_layer.read_through import DeviceReadThrough


__all__ = [
    "TTLCache",
    "MISS",
    "CacheEntry",
    "CacheType",
    "DeviceReadThrough",
]
