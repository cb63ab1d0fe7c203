"""
Transport Package.

Reaching devices: transport negotiation, the local allow-list,
pooled channels and the device transport implementations.

Modules:
- types: TransportKind, DiagnosticKind, NegotiationResult, Credential
- negotiator: TransportNegotiator
- allow_list: AllowListStore and implementations
- session_pool: SessionPool
- device_transport: Channel / DeviceTransport interface, CancellationToken
- agent_http: aiohttp endpoint agent transport
- mock: scriptable transport for testing
"""

from transport.allow_list import (
    AllowListStore,
    InMemoryAllowListStore,
    JsonFileAllowListStore,
    NullAllowListStore,
)
from transport.device_transport import CancellationToken, Channel, DeviceTransport, run_bounded
from transport.environment import HostEnvironment, StaticHostEnvironment, SystemHostEnvironment
from transport.negotiator import TransportNegotiator
from transport.prober import PortProber
from transport.secret_store import EnvSecretStore, InMemorySecretStore, SecretStore
from transport.session_pool import SessionPool
from transport.types import (
    Credential,
    DiagnosticKind,
    NegotiationResult,
    ProbeOutcome,
    TransportKind,
    normalize_target,
)


__all__ = [
    "AllowListStore",
    "InMemoryAllowListStore",
    "JsonFileAllowListStore",
    "NullAllowListStore",
    "CancellationToken",
    "Channel",
    "DeviceTransport",
    "run_bounded",
    "HostEnvironment",
    "StaticHostEnvironment",
    "SystemHostEnvironment",
    "TransportNegotiator",
    "PortProber",
    "EnvSecretStore",
    "InMemorySecretStore",
    "SecretStore",
    "SessionPool",
    "Credential",
    "DiagnosticKind",
    "NegotiationResult",
    "ProbeOutcome",
    "TransportKind",
    "normalize_target",
]
