"""
Transport - Types.

============================================================
PURPOSE
============================================================
Value types shared by the negotiator, the session pool and
the device transports.

============================================================
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from core.exceptions import ConfigurationError


# ============================================================
# ENUMS
# ============================================================

class TransportKind(Enum):
    """How a channel to a target is established."""

    INTEGRATED = "Integrated"
    """Domain (Kerberos) authentication over the plain listener."""

    SECURE = "Secure"
    """Encrypted listener with a trusted certificate."""

    PLAIN = "Plain"
    """Plain listener, target recorded in the local allow-list."""


class DiagnosticKind(Enum):
    """Why negotiation could not produce a usable transport."""

    ACCESS_DENIED = "AccessDenied"
    """The local allow-list could not be modified, or the target refused us."""

    NO_LISTENER = "NoListener"
    """Neither the secure nor the plain port answered."""

    CERTIFICATE_TRUST = "CertificateTrust"
    """Secure listener answered with a certificate we do not trust."""


class ProbeOutcome(Enum):
    """Result of a single port probe."""

    OPEN = "open"
    CLOSED = "closed"
    TIMEOUT = "timeout"
    UNTRUSTED_CERTIFICATE = "untrusted_certificate"
    DENIED = "denied"

    @property
    def answered(self) -> bool:
        """Something is listening, trusted or not."""
        return self in (ProbeOutcome.OPEN, ProbeOutcome.UNTRUSTED_CERTIFICATE)


# ============================================================
# NEGOTIATION RESULT
# ============================================================

@dataclass
class NegotiationResult:
    """Outcome of evaluating a target."""

    target: str
    """Normalized target identity."""

    https_available: bool = False
    """Secure listener answered with a trusted certificate."""

    http_available: bool = False
    """Plain listener answered."""

    in_allow_list: bool = False
    """Target is present in the local allow-list after evaluation."""

    domain_joined: bool = False
    """Local node is domain-joined."""

    recommended_transport: Optional[TransportKind] = None
    """Transport to use, None when not ready."""

    ready: bool = False
    """A channel can be opened with recommended_transport."""

    message: str = ""
    """Operator-facing explanation."""

    diagnostic: Optional[DiagnosticKind] = None
    """Classified failure when not ready."""

    allow_list_added: bool = False
    """This evaluation added the target to the allow-list."""

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "target": self.target,
            "https_available": self.https_available,
            "http_available": self.http_available,
            "in_allow_list": self.in_allow_list,
            "domain_joined": self.domain_joined,
            "recommended_transport": (
                self.recommended_transport.value if self.recommended_transport else None
            ),
            "ready": self.ready,
            "message": self.message,
            "diagnostic": self.diagnostic.value if self.diagnostic else None,
            "allow_list_added": self.allow_list_added,
        }


# ============================================================
# CREDENTIAL
# ============================================================

@dataclass(frozen=True)
class Credential:
    """Opaque credential handed to a transport."""

    username: str
    secret: str = field(repr=False)


def normalize_target(target: str) -> str:
    """
    Canonical target identity.

    Trimmed, lower-cased, trailing dot stripped, so WEB01,
    web01 and "web01." share one session and one allow-list entry.
    """
    normalized = (target or "").strip().lower().rstrip(".")
    if not normalized:
        raise ConfigurationError("Target must be a non-empty host name", config_key="target")
    return normalized
