"""
Health Scoring Engine.

============================================================
PURPOSE
============================================================
Computes the 0-100 composite health score of each device,
writes the resulting status, and raises or resolves health
alerts.

============================================================
SCORING FLOW
============================================================
1. Load status (cache layer), last contact and latest metrics
2. Score the four categories independently
3. Total = checked sum of the four integers
4. Bucket from total; Offline overrides when unreachable
5. Persist total + mapped status (not for Maintenance /
   Decommissioned devices)
6. Alerts:
   - Offline   -> DeviceOffline / High
   - Critical  -> HealthThreshold / High
   - Warning   -> HealthThreshold / Medium
   - Healthy   -> HealthThreshold auto-resolved
   - not Offline -> DeviceOffline auto-resolved

Scoring is read-only apart from step 5-6 and may run
concurrently with dispatch.

============================================================
"""

import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from cache_layer.read_through import DeviceReadThrough
from core.clock import ClockProtocol, SystemClock
from core.config import ConfigProvider, FleetConfig, HealthConfig
from core.exceptions import ErrorCategory, ScoreInvariantError, classify_error
from monitoring.alerts.manager import AlertLifecycleManager
from monitoring.models import AlertType
from storage.database import Database
from storage.models import AlertSeverity, DeviceStatus
from storage.repositories import DeviceRepository, MetricRepository

from .models import (
    CategoryScore,
    DeviceHealthInput,
    FleetHealthSummary,
    HealthBucket,
    HealthCategory,
    HealthScore,
    MetricReading,
)
from .scorers import (
    AvailabilityScorer,
    BaseCategoryScorer,
    ComplianceScorer,
    PerformanceScorer,
    SecurityScorer,
)


logger = logging.getLogger(__name__)


def bucket_for(total: int, unreachable: bool, config: HealthConfig) -> HealthBucket:
    """Bucket of a total; unreachable devices are Offline regardless."""
    if unreachable:
        return HealthBucket.OFFLINE
    if total >= config.thresholds.healthy:
        return HealthBucket.HEALTHY
    if total >= config.thresholds.warning:
        return HealthBucket.WARNING
    return HealthBucket.CRITICAL


def assemble_score(
    device_id: str,
    categories: Dict[HealthCategory, CategoryScore],
    config: HealthConfig,
    scored_at: Optional[datetime] = None,
) -> HealthScore:
    """
    Combine category scores into a HealthScore.

    Raises:
        ScoreInvariantError: If a category is missing, out of its
            bounds, or the bounds do not sum to 100
    """
    missing = [c.value for c in HealthCategory if c not in categories]
    if missing:
        raise ScoreInvariantError(
            f"Health score for {device_id} is missing categories: {missing}",
            context={"device_id": device_id},
        )

    bounds = sum(s.maximum for s in categories.values())
    if bounds != 100:
        raise ScoreInvariantError(
            f"Category maxima for {device_id} sum to {bounds}, not 100",
            context={"device_id": device_id, "bounds": bounds},
        )
    for category, score in categories.items():
        if not 0 <= score.score <= score.maximum:
            raise ScoreInvariantError(
                f"{category.value} score {score.score} outside [0, {score.maximum}] for {device_id}",
                context={"device_id": device_id},
            )

    values = {c: categories[c].score for c in HealthCategory}
    total = sum(values.values())
    if not 0 <= total <= 100:
        raise ScoreInvariantError(
            f"Health total {total} for {device_id} outside [0, 100]",
            context={"device_id": device_id},
        )

    unreachable = categories[HealthCategory.AVAILABILITY].unreachable
    reasons = [r for c in HealthCategory for r in categories[c].neutral_reasons]
    return HealthScore(
        device_id=device_id,
        availability=values[HealthCategory.AVAILABILITY],
        performance=values[HealthCategory.PERFORMANCE],
        security=values[HealthCategory.SECURITY],
        compliance=values[HealthCategory.COMPLIANCE],
        total=total,
        bucket=bucket_for(total, unreachable, config),
        reasons=reasons,
        categories=dict(categories),
        scored_at=scored_at,
    )


def summarize(scores: Iterable[HealthScore]) -> FleetHealthSummary:
    """Count devices per bucket."""
    summary = FleetHealthSummary()
    reachable_totals = []
    for score in scores:
        summary.total += 1
        if score.bucket == HealthBucket.HEALTHY:
            summary.healthy += 1
        elif score.bucket == HealthBucket.WARNING:
            summary.warning += 1
        elif score.bucket == HealthBucket.CRITICAL:
            summary.critical += 1
        else:
            summary.offline += 1
            continue
        summary.online += 1
        reachable_totals.append(score.total)
    if reachable_totals:
        summary.average_score = sum(reachable_totals) / len(reachable_totals)
    return summary


class HealthScoringEngine:
    """
    Device health scoring.

    Usage:
        engine = HealthScoringEngine(database, alert_manager)
        score = await engine.score_device("web-01")
        summary = engine.fleet_summary(await engine.score_fleet())
    """

    def __init__(
        self,
        database: Database,
        alert_manager: AlertLifecycleManager,
        clock: Optional[ClockProtocol] = None,
        config_provider: Optional[ConfigProvider] = None,
        device_reads: Optional[DeviceReadThrough] = None,
    ):
        self._database = database
        self._alerts = alert_manager
        self._clock = clock or SystemClock()
        self._config_provider = config_provider or FleetConfig
        self._device_reads = device_reads

    def _scorers(self, config: HealthConfig) -> List[BaseCategoryScorer]:
        # Built per run so weight/threshold reloads apply immediately
        return [
            AvailabilityScorer(config),
            PerformanceScorer(config),
            SecurityScorer(config),
            ComplianceScorer(config),
        ]

    # =========================================================
    # PURE SCORING
    # =========================================================

    def score(self, device: DeviceHealthInput) -> HealthScore:
        """
        Score one device from its inputs. No side effects.

        Raises:
            ScoreInvariantError: If the result violates a score invariant
        """
        config = self._config_provider().health
        now = self._clock.now()
        categories = {
            scorer.category: scorer.score(device, now) for scorer in self._scorers(config)
        }
        return assemble_score(device.device_id, categories, config, scored_at=now)

    @staticmethod
    def fleet_summary(scores: Iterable[HealthScore]) -> FleetHealthSummary:
        """Count devices per bucket."""
        return summarize(scores)

    # =========================================================
    # PERSISTED SCORING
    # =========================================================

    async def _load_input(self, device_id: str) -> DeviceHealthInput:
        """
        Raises:
            RecordNotFoundError: If the device does not exist
        """
        with self._database.session_scope() as session:
            device = DeviceRepository(session).get_or_raise(device_id)
            status = device.device_status
            last_seen = device.last_seen
            status_changed_at = device.status_changed_at
            metrics = {
                name: MetricReading(
                    value=m.value,
                    unavailable_reason=m.unavailable_reason,
                    collected_at=m.collected_at,
                )
                for name, m in MetricRepository(session).latest_metrics(device_id).items()
            }

        if self._device_reads is not None:
            cached = await self._device_reads.get_status(device_id)
            if cached is not None:
                status = DeviceStatus(cached)

        return DeviceHealthInput(
            device_id=device_id,
            status=status,
            last_seen=last_seen,
            status_changed_at=status_changed_at,
            metrics=metrics,
        )

    async def score_device(self, device_id: str) -> HealthScore:
        """
        Score a device, persist the result and update its alerts.

        Raises:
            RecordNotFoundError: If the device does not exist
            ScoreInvariantError: If the result violates a score invariant
        """
        device_input = await self._load_input(device_id)
        score = self.score(device_input)

        managed_out = device_input.status.is_managed_out
        with self._database.session_scope() as session:
            devices = DeviceRepository(session)
            devices.record_health(device_id, score.total, score.scored_at)
            if not managed_out:
                devices.update_status(device_id, score.bucket.device_status, changed_at=score.scored_at)

        if self._device_reads is not None:
            self._device_reads.invalidate_device(device_id)

        logger.info(
            f"Health {device_id}: {score.total} ({score.bucket.value}) "
            f"A={score.availability} P={score.performance} S={score.security} C={score.compliance}"
            + (f" neutral={len(score.reasons)}" if score.reasons else "")
        )

        if managed_out:
            logger.debug(f"Device {device_id} is {device_input.status.value}; no status change or alerts")
            return score

        await self._apply_alerts(score)
        return score

    async def _apply_alerts(self, score: HealthScore) -> None:
        device_id = score.device_id
        bucket = score.bucket

        if bucket == HealthBucket.OFFLINE:
            await self._alerts.raise_alert(
                device_id,
                AlertType.DEVICE_OFFLINE,
                AlertSeverity.HIGH,
                f"{device_id} offline",
                message=score.categories[HealthCategory.AVAILABILITY].explanation,
            )
            return

        await self._alerts.auto_resolve(device_id, AlertType.DEVICE_OFFLINE, reason=f"health {bucket.value}")

        if bucket == HealthBucket.HEALTHY:
            await self._alerts.auto_resolve(device_id, AlertType.HEALTH_THRESHOLD, reason=f"score {score.total}")
            return

        severity = AlertSeverity.HIGH if bucket == HealthBucket.CRITICAL else AlertSeverity.MEDIUM
        await self._alerts.raise_alert(
            device_id,
            AlertType.HEALTH_THRESHOLD,
            severity,
            f"{device_id} health {bucket.value} ({score.total})",
            message=self._describe(score),
        )

    @staticmethod
    def _describe(score: HealthScore) -> str:
        parts = [
            f"{c.value} {s.score}/{s.maximum}: {s.explanation}"
            for c, s in score.categories.items()
            if s.score < s.maximum
        ]
        return "; ".join(parts) or f"total {score.total}"

    async def score_fleet(self, site: Optional[str] = None) -> List[HealthScore]:
        """
        Score every device (optionally one site).

        A single device failing to score is logged and skipped;
        fatal errors propagate.
        """
        with self._database.session_scope() as session:
            if site is None:
                device_ids = DeviceRepository(session).list_ids()
            else:
                device_ids = [d.id for d in DeviceRepository(session).list_devices(site=site)]

        scores = []
        for device_id in device_ids:
            try:
                scores.append(await self.score_device(device_id))
            except Exception as e:
                if classify_error(e) is ErrorCategory.FATAL:
                    raise
                logger.error(f"Scoring {device_id} failed: {e}")

        summary = summarize(scores)
        logger.info(
            f"Fleet scored: {summary.total} devices, healthy={summary.healthy} "
            f"warning={summary.warning} critical={summary.critical} offline={summary.offline}"
        )
        return scores
