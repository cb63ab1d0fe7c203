"""
Cache Layer - Models.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any


class CacheType(Enum):
    """Cached data families, each with its own TTL."""

    DEVICE_STATUS = "DeviceStatus"
    INVENTORY = "Inventory"
    CONFIGURATION = "Configuration"


class _Miss:
    """Sentinel type for a cache miss."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "MISS"


MISS = _Miss()
"""Returned by get() when no fresh entry exists. Distinct from a cached None."""


@dataclass
class CacheEntry:
    """One cached value."""

    key: str
    cache_type: CacheType
    data: Any
    timestamp: float
    """Clock timestamp when the entry was stored."""

    hits: int = 0

    def age_seconds(self, now: float) -> float:
        """Get age of cache entry in seconds."""
        return now - self.timestamp
