"""
Health Scoring - Category Scorers.

============================================================
CATEGORY SCORING
============================================================

One scorer per category:
1. Availability - reachable, recent uptime
2. Performance  - CPU / memory / disk against thresholds
3. Security     - antivirus, firewall, patch age
4. Compliance   - policy deviations

Each scorer:
- Takes a DeviceHealthInput
- Returns an integer CategoryScore in [0, category maximum]
- Provides an explanation

============================================================
SCORING PHILOSOPHY
============================================================

- Integers only; a category maximum is split into integer
  shares, one per check
- Full share below warning, half between, zero at/above critical
- A check that cannot be assessed keeps its full share and
  records the reason; never zero, never a made-up value

============================================================
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional, Tuple
import logging

from core.config import HealthConfig
from storage.models import DeviceStatus

from .models import CategoryScore, DeviceHealthInput, HealthCategory, MetricReading


logger = logging.getLogger(__name__)


# Metric names written by producers
METRIC_UPTIME = "uptime_percent"
METRIC_CPU = "cpu_percent"
METRIC_MEMORY = "memory_percent"
METRIC_DISK = "disk_percent"
METRIC_ANTIVIRUS = "antivirus_enabled"
METRIC_FIREWALL = "firewall_enabled"
METRIC_PATCH_AGE = "patch_age_days"
METRIC_POLICY_DEVIATIONS = "policy_deviations"


def split_shares(maximum: int, parts: int) -> List[int]:
    """
    Split an integer maximum into integer shares summing to it.

    split_shares(25, 3) -> [9, 8, 8]
    """
    base, extra = divmod(maximum, parts)
    return [base + 1 if i < extra else base for i in range(parts)]


def threshold_share(value: float, share: int, warning: float, critical: float) -> int:
    """Full below warning, half between, zero at/above critical."""
    if value >= critical:
        return 0
    if value >= warning:
        return share // 2
    return share


def _contact_since(last_contact: Optional[datetime], since: Optional[datetime]) -> bool:
    """True when contact was made after `since`."""
    return last_contact is not None and since is not None and last_contact > since


def _unavailable(reading: Optional[MetricReading], name: str) -> Optional[str]:
    """Reason a reading cannot be used, None when usable."""
    if reading is None:
        return f"{name} not reported"
    if reading.value is None:
        return f"{name} unavailable: {reading.unavailable_reason or 'no value'}"
    return None


# =============================================================
# BASE CATEGORY SCORER
# =============================================================


class BaseCategoryScorer(ABC):
    """
    Abstract base class for category scorers.
    """

    category: HealthCategory

    def __init__(self, config: Optional[HealthConfig] = None) -> None:
        self._config = config or HealthConfig()

    @property
    def maximum(self) -> int:
        return getattr(self._config.weights, self.category.value)

    @abstractmethod
    def score(self, device: DeviceHealthInput, now: datetime) -> CategoryScore:
        """
        Calculate the category score.

        Returns:
            CategoryScore with score, explanation and neutral reasons
        """

    def _neutral(self, reason: str) -> CategoryScore:
        """Whole category unassessable."""
        return CategoryScore(
            category=self.category,
            score=self.maximum,
            maximum=self.maximum,
            explanation=f"Not assessed ({reason}); neutral maximum",
            neutral_reasons=[f"{self.category.value}: {reason}"],
        )

    def _score_checks(self, checks: List[Tuple[str, Optional[str], int, str]]) -> CategoryScore:
        """
        Combine per-check results.

        Each check is (name, unavailable_reason, points, detail).
        """
        reasons = [f"{self.category.value}.{name}: {why}" for name, why, _, _ in checks if why]
        if len(reasons) == len(checks):
            return self._neutral("; ".join(why for _, why, _, _ in checks))

        total = sum(points for _, _, points, _ in checks)
        explanation = ", ".join(detail for _, _, _, detail in checks)
        return CategoryScore(
            category=self.category,
            score=total,
            maximum=self.maximum,
            explanation=explanation,
            neutral_reasons=reasons,
        )


# =============================================================
# AVAILABILITY SCORER
# =============================================================


class AvailabilityScorer(BaseCategoryScorer):
    """
    Scores availability based on:
    - Device status / last contact
    - Uptime percentage over the producer's window

    Last contact is the newer of last_seen and the newest measured
    metric. A stored Offline status holds until contact newer than
    the change to Offline arrives.
    """

    category = HealthCategory.AVAILABILITY

    def score(self, device: DeviceHealthInput, now: datetime) -> CategoryScore:
        """Calculate availability score."""
        maximum = self.maximum
        offline_after = self._config.thresholds.offline_after_seconds

        last_contact = device.last_contact

        if device.status == DeviceStatus.OFFLINE and not _contact_since(last_contact, device.status_changed_at):
            return CategoryScore(
                category=self.category,
                score=0,
                maximum=maximum,
                explanation="Device is Offline",
                unreachable=True,
            )
        if last_contact is not None:
            silent = (now - last_contact).total_seconds()
            if silent > offline_after:
                return CategoryScore(
                    category=self.category,
                    score=0,
                    maximum=maximum,
                    explanation=f"No contact for {silent:.0f}s (limit {offline_after:.0f}s)",
                    unreachable=True,
                )

        reading = device.metric(METRIC_UPTIME)
        why = _unavailable(reading, METRIC_UPTIME)
        if why:
            return CategoryScore(
                category=self.category,
                score=maximum,
                maximum=maximum,
                explanation=f"Reachable; {why}",
                neutral_reasons=[f"{self.category.value}.{METRIC_UPTIME}: {why}"],
            )

        uptime = max(0.0, min(100.0, reading.value))
        return CategoryScore(
            category=self.category,
            score=int(round(maximum * uptime / 100.0)),
            maximum=maximum,
            explanation=f"Reachable, uptime {uptime:.1f}%",
        )


# =============================================================
# PERFORMANCE SCORER
# =============================================================


class PerformanceScorer(BaseCategoryScorer):
    """
    Scores CPU, memory and disk utilisation, one share each.
    """

    category = HealthCategory.PERFORMANCE

    def score(self, device: DeviceHealthInput, now: datetime) -> CategoryScore:
        """Calculate performance score."""
        t = self._config.thresholds
        limits = [
            (METRIC_CPU, t.cpu_warning, t.cpu_critical),
            (METRIC_MEMORY, t.memory_warning, t.memory_critical),
            (METRIC_DISK, t.disk_warning, t.disk_critical),
        ]
        checks = []
        for (name, warning, critical), share in zip(limits, split_shares(self.maximum, len(limits))):
            reading = device.metric(name)
            why = _unavailable(reading, name)
            if why:
                checks.append((name, why, share, f"{name} n/a ({share}/{share})"))
                continue
            points = threshold_share(reading.value, share, warning, critical)
            checks.append((name, None, points, f"{name} {reading.value:.0f}% ({points}/{share})"))
        return self._score_checks(checks)


# =============================================================
# SECURITY SCORER
# =============================================================


class SecurityScorer(BaseCategoryScorer):
    """
    Scores protection state:
    - Antivirus enabled (all or nothing)
    - Firewall enabled (all or nothing)
    - Patch age in days against thresholds
    """

    category = HealthCategory.SECURITY

    def score(self, device: DeviceHealthInput, now: datetime) -> CategoryScore:
        """Calculate security score."""
        t = self._config.thresholds
        av_share, fw_share, patch_share = split_shares(self.maximum, 3)
        checks = []

        for name, share in ((METRIC_ANTIVIRUS, av_share), (METRIC_FIREWALL, fw_share)):
            reading = device.metric(name)
            why = _unavailable(reading, name)
            if why:
                checks.append((name, why, share, f"{name} n/a ({share}/{share})"))
                continue
            enabled = reading.value >= 1
            points = share if enabled else 0
            checks.append((name, None, points, f"{name} {'on' if enabled else 'off'} ({points}/{share})"))

        reading = device.metric(METRIC_PATCH_AGE)
        why = _unavailable(reading, METRIC_PATCH_AGE)
        if why:
            checks.append((METRIC_PATCH_AGE, why, patch_share, f"{METRIC_PATCH_AGE} n/a ({patch_share}/{patch_share})"))
        else:
            points = threshold_share(reading.value, patch_share, t.patch_warning_days, t.patch_critical_days)
            checks.append((
                METRIC_PATCH_AGE, None, points,
                f"patches {reading.value:.0f}d old ({points}/{patch_share})",
            ))

        return self._score_checks(checks)


# =============================================================
# COMPLIANCE SCORER
# =============================================================


class ComplianceScorer(BaseCategoryScorer):
    """
    Maximum minus a fixed penalty per policy deviation, floored at 0.
    """

    category = HealthCategory.COMPLIANCE

    def score(self, device: DeviceHealthInput, now: datetime) -> CategoryScore:
        """Calculate compliance score."""
        reading = device.metric(METRIC_POLICY_DEVIATIONS)
        why = _unavailable(reading, METRIC_POLICY_DEVIATIONS)
        if why:
            return self._neutral(why)

        deviations = max(0, int(reading.value))
        penalty = self._config.thresholds.penalty_per_deviation
        points = max(0, self.maximum - penalty * deviations)
        return CategoryScore(
            category=self.category,
            score=points,
            maximum=self.maximum,
            explanation=f"{deviations} policy deviation(s) x {penalty}",
        )
