"""
Core Module - Clock.

============================================================
RESPONSIBILITY
============================================================
Provides a testable clock abstraction for the orchestration engine.

- Session TTLs, cache TTLs, scheduling and alert dedup windows
  all read time through an injected clock
- Enables deterministic TTL and window tests
- UTC only

============================================================
DESIGN PRINCIPLES
============================================================
- Constructor-injected, never a module global
- UTC only - no timezone conversions in business logic
- Mockable for testing
- Thread-safe

============================================================
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Optional
import threading
import time


# ============================================================
# CLOCK PROTOCOL
# ============================================================

class ClockProtocol(ABC):
    """Abstract interface for the engine clock."""

    @abstractmethod
    def now(self) -> datetime:
        """Get current UTC datetime."""
        pass

    @abstractmethod
    def timestamp(self) -> float:
        """Get current Unix timestamp."""
        pass


# ============================================================
# SYSTEM CLOCK (PRODUCTION)
# ============================================================

class SystemClock(ClockProtocol):
    """
    Production clock using actual system time.

    All times are in UTC.
    """

    def now(self) -> datetime:
        """Get current UTC datetime."""
        return datetime.now(timezone.utc)

    def timestamp(self) -> float:
        """Get current Unix timestamp."""
        return time.time()


# ============================================================
# MOCK CLOCK (TESTING)
# ============================================================

class MockClock(ClockProtocol):
    """
    Mock clock for testing.

    Allows time manipulation for deterministic TTL tests.
    """

    def __init__(self, initial_time: Optional[datetime] = None):
        """
        Initialize mock clock.

        Args:
            initial_time: Starting time (defaults to current UTC)
        """
        self._time = initial_time or datetime.now(timezone.utc)
        if self._time.tzinfo is None:
            self._time = self._time.replace(tzinfo=timezone.utc)
        self._lock = threading.Lock()

    def now(self) -> datetime:
        """Get current (mocked) datetime."""
        with self._lock:
            return self._time

    def timestamp(self) -> float:
        """Get current (mocked) timestamp."""
        with self._lock:
            return self._time.timestamp()

    def advance(self, seconds: float = 0, **kwargs) -> None:
        """
        Advance time by the specified amount.

        Args:
            seconds: Number of seconds to advance
            **kwargs: Passed to timedelta (hours, minutes, days, etc.)
        """
        with self._lock:
            self._time = self._time + timedelta(seconds=seconds, **kwargs)


__all__ = [
    "ClockProtocol",
    "SystemClock",
    "MockClock",
]
