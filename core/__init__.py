"""
Core Module Package.

This package contains the infrastructure every other
component depends on.

Components:
- clock: Injectable time abstraction
- config: Configuration tree and hot-reloading manager
- exceptions: Exception hierarchy and error classification
"""

from .clock import ClockProtocol, MockClock, SystemClock
from .config import ConfigManager, ConfigProvider, FleetConfig
from .exceptions import ErrorCategory, FleetException, classify_error, describe_error


__all__ = [
    "ClockProtocol",
    "MockClock",
    "SystemClock",
    "ConfigManager",
    "ConfigProvider",
    "FleetConfig",
    "ErrorCategory",
    "FleetException",
    "classify_error",
    "describe_error",
]
