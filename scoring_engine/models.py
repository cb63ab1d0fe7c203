"""
Health Scoring - Data Models.

============================================================
CORE DATA STRUCTURES
============================================================

- HealthBucket: coarse classification of a total
- HealthCategory: the four scored categories
- MetricReading / DeviceHealthInput: what a scorer sees
- CategoryScore: one category's integer score and explanation
- HealthScore: the four categories, their checked total, bucket
- FleetHealthSummary: counts per bucket across devices

============================================================
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from storage.models import DeviceStatus


# =============================================================
# ENUMS
# =============================================================


class HealthBucket(str, Enum):
    """
    Health bucket of a device.

    - HEALTHY:  total >= healthy threshold (90)
    - WARNING:  warning threshold (70) <= total < healthy
    - CRITICAL: total < warning threshold
    - OFFLINE:  device unreachable, overrides the total
    """
    HEALTHY = "Healthy"
    WARNING = "Warning"
    CRITICAL = "Critical"
    OFFLINE = "Offline"

    @property
    def device_status(self) -> DeviceStatus:
        """Device status written for this bucket."""
        return {
            HealthBucket.HEALTHY: DeviceStatus.ONLINE,
            HealthBucket.WARNING: DeviceStatus.WARNING,
            HealthBucket.CRITICAL: DeviceStatus.CRITICAL,
            HealthBucket.OFFLINE: DeviceStatus.OFFLINE,
        }[self]


class HealthCategory(str, Enum):
    """Scored health categories."""
    AVAILABILITY = "availability"
    PERFORMANCE = "performance"
    SECURITY = "security"
    COMPLIANCE = "compliance"


# =============================================================
# INPUTS
# =============================================================


@dataclass(frozen=True)
class MetricReading:
    """
    Latest value of one metric.

    A None value with an unavailable_reason means the producer
    could not measure it (platform, permissions).
    """
    value: Optional[float]
    unavailable_reason: Optional[str] = None
    collected_at: Optional[datetime] = None


@dataclass
class DeviceHealthInput:
    """Everything scoring needs about one device."""
    device_id: str
    status: DeviceStatus
    last_seen: Optional[datetime]
    metrics: Dict[str, MetricReading] = field(default_factory=dict)
    status_changed_at: Optional[datetime] = None

    def metric(self, name: str) -> Optional[MetricReading]:
        return self.metrics.get(name)

    @property
    def last_contact(self) -> Optional[datetime]:
        """
        Newest evidence the device answered: last_seen or the
        collection time of a measured (non-None) metric.
        """
        times = [r.collected_at for r in self.metrics.values()
                 if r.value is not None and r.collected_at is not None]
        if self.last_seen is not None:
            times.append(self.last_seen)
        return max(times) if times else None


# =============================================================
# SCORES
# =============================================================


@dataclass
class CategoryScore:
    """
    Score for a single category.

    Integer in [0, maximum]; assemble_score rejects anything
    outside. Neutral (unassessable) checks keep
    their full share and list why in neutral_reasons.
    """
    category: HealthCategory
    score: int
    maximum: int
    explanation: str
    neutral_reasons: List[str] = field(default_factory=list)
    unreachable: bool = False
    """Only set by availability: the device could not be reached."""

    @property
    def is_neutral(self) -> bool:
        return bool(self.neutral_reasons)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "score": self.score,
            "maximum": self.maximum,
            "explanation": self.explanation,
            "neutral_reasons": list(self.neutral_reasons),
        }


@dataclass
class HealthScore:
    """
    Aggregated health score of a device.

    total is the checked sum of the four category scores.
    """
    device_id: str
    availability: int
    performance: int
    security: int
    compliance: int
    total: int
    bucket: HealthBucket
    reasons: List[str] = field(default_factory=list)
    """Why any category or check was scored neutral."""

    categories: Dict[HealthCategory, CategoryScore] = field(default_factory=dict)
    scored_at: Optional[datetime] = None

    @property
    def is_healthy(self) -> bool:
        return self.bucket == HealthBucket.HEALTHY

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging/serialization."""
        return {
            "device_id": self.device_id,
            "Availability": self.availability,
            "Performance": self.performance,
            "Security": self.security,
            "Compliance": self.compliance,
            "Total": self.total,
            "Bucket": self.bucket.value,
            "reasons": list(self.reasons),
            "categories": {c.value: s.to_dict() for c, s in self.categories.items()},
            "scored_at": self.scored_at.isoformat() if self.scored_at else None,
        }


@dataclass
class FleetHealthSummary:
    """Per-bucket counts over a set of scores."""
    total: int = 0
    healthy: int = 0
    warning: int = 0
    critical: int = 0
    offline: int = 0
    online: int = 0
    """Every device not in the Offline bucket."""

    average_score: Optional[float] = None
    """Mean total over reachable devices."""

    def count(self, bucket: HealthBucket) -> int:
        return {
            HealthBucket.HEALTHY: self.healthy,
            HealthBucket.WARNING: self.warning,
            HealthBucket.CRITICAL: self.critical,
            HealthBucket.OFFLINE: self.offline,
        }[bucket]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "Total": self.total,
            "Online": self.online,
            "Offline": self.offline,
            "Healthy": self.healthy,
            "Warning": self.warning,
            "Critical": self.critical,
            "AverageScore": round(self.average_score, 1) if self.average_score is not None else None,
        }
