"""
Tests for health scoring.

============================================================
PURPOSE
============================================================
Verifies category scoring, the checked total, bucketing,
neutral handling of unassessable checks, and the status and
alert side effects of score_device.

============================================================
"""

from datetime import timedelta

import pytest

from core.config import HealthConfig
from core.exceptions import ScoreInvariantError
from monitoring.models import AlertType
from scoring_engine import (
    AvailabilityScorer,
    CategoryScore,
    ComplianceScorer,
    DeviceHealthInput,
    HealthBucket,
    HealthCategory,
    MetricReading,
    PerformanceScorer,
    SecurityScorer,
    assemble_score,
    bucket_for,
    split_shares,
)
from storage.models import AlertSeverity, DeviceStatus
from storage.repositories import DeviceRepository


WARNING_METRICS = {
    "uptime_percent": ("availability", 92),
    "cpu_percent": ("performance", 85),
    "memory_percent": ("performance", 90),
    "disk_percent": ("performance", 50),
    "antivirus_enabled": ("security", 1),
    "firewall_enabled": ("security", 0),
    "patch_age_days": ("security", 10),
    "policy_deviations": ("compliance", 2),
}

HEALTHY_METRICS = {
    "uptime_percent": ("availability", 100),
    "cpu_percent": ("performance", 20),
    "memory_percent": ("performance", 30),
    "disk_percent": ("performance", 40),
    "antivirus_enabled": ("security", 1),
    "firewall_enabled": ("security", 1),
    "patch_age_days": ("security", 3),
    "policy_deviations": ("compliance", 0),
}

CRITICAL_METRICS = {
    "uptime_percent": ("availability", 40),
    "cpu_percent": ("performance", 99),
    "memory_percent": ("performance", 99),
    "disk_percent": ("performance", 99),
    "antivirus_enabled": ("security", 0),
    "firewall_enabled": ("security", 0),
    "patch_age_days": ("security", 120),
    "policy_deviations": ("compliance", 6),
}


def category(cat, score, maximum=25, **kwargs):
    return CategoryScore(category=cat, score=score, maximum=maximum, explanation="", **kwargs)


def stored_device(database, device_id):
    with database.session_scope() as session:
        device = DeviceRepository(session).get(device_id)
        return device.device_status, device.health_score


# ============================================================
# PURE FUNCTION TESTS
# ============================================================

class TestScoreAssembly:
    """Tests for split_shares, bucket_for and assemble_score."""

    def test_split_shares(self):
        """Test that shares are integers summing to the maximum."""
        assert split_shares(25, 3) == [9, 8, 8]
        assert split_shares(24, 3) == [8, 8, 8]
        assert sum(split_shares(30, 4)) == 30

    @pytest.mark.parametrize("total, bucket", [
        (100, HealthBucket.HEALTHY),
        (90, HealthBucket.HEALTHY),
        (89, HealthBucket.WARNING),
        (70, HealthBucket.WARNING),
        (69, HealthBucket.CRITICAL),
        (0, HealthBucket.CRITICAL),
    ])
    def test_bucket_boundaries(self, total, bucket):
        """Test the default bucket boundaries."""
        assert bucket_for(total, False, HealthConfig()) is bucket

    def test_unreachable_overrides_total(self):
        """Test that an unreachable device is Offline even with a high total."""
        assert bucket_for(95, True, HealthConfig()) is HealthBucket.OFFLINE

    def test_assemble_warning(self):
        """Test that 25 + 4 + 22 + 20 totals 71 and lands in Warning."""
        score = assemble_score("web-01", {
            HealthCategory.AVAILABILITY: category(HealthCategory.AVAILABILITY, 25),
            HealthCategory.PERFORMANCE: category(HealthCategory.PERFORMANCE, 4),
            HealthCategory.SECURITY: category(HealthCategory.SECURITY, 22),
            HealthCategory.COMPLIANCE: category(HealthCategory.COMPLIANCE, 20),
        }, HealthConfig())

        assert score.total == 71
        assert score.bucket is HealthBucket.WARNING
        assert score.to_dict()["Total"] == 71

    def test_missing_category_is_invariant_violation(self):
        """Test that a partial score is rejected."""
        with pytest.raises(ScoreInvariantError):
            assemble_score("web-01", {
                HealthCategory.AVAILABILITY: category(HealthCategory.AVAILABILITY, 25),
            }, HealthConfig())

    def test_bounds_must_sum_to_100(self):
        """Test that category maxima not summing to 100 are rejected."""
        with pytest.raises(ScoreInvariantError):
            assemble_score("web-01", {
                HealthCategory.AVAILABILITY: category(HealthCategory.AVAILABILITY, 25, maximum=30),
                HealthCategory.PERFORMANCE: category(HealthCategory.PERFORMANCE, 25),
                HealthCategory.SECURITY: category(HealthCategory.SECURITY, 25),
                HealthCategory.COMPLIANCE: category(HealthCategory.COMPLIANCE, 25),
            }, HealthConfig())

    def test_category_above_maximum_is_invariant_violation(self):
        """Test that a category scored past its maximum is rejected, not clamped."""
        with pytest.raises(ScoreInvariantError):
            assemble_score("web-01", {
                HealthCategory.AVAILABILITY: category(HealthCategory.AVAILABILITY, 25),
                HealthCategory.PERFORMANCE: category(HealthCategory.PERFORMANCE, 40),
                HealthCategory.SECURITY: category(HealthCategory.SECURITY, 25),
                HealthCategory.COMPLIANCE: category(HealthCategory.COMPLIANCE, 25),
            }, HealthConfig())

    def test_negative_category_is_invariant_violation(self):
        """Test that a negative category score is rejected."""
        with pytest.raises(ScoreInvariantError):
            assemble_score("web-01", {
                HealthCategory.AVAILABILITY: category(HealthCategory.AVAILABILITY, -1),
                HealthCategory.PERFORMANCE: category(HealthCategory.PERFORMANCE, 25),
                HealthCategory.SECURITY: category(HealthCategory.SECURITY, 25),
                HealthCategory.COMPLIANCE: category(HealthCategory.COMPLIANCE, 25),
            }, HealthConfig())


# ============================================================
# CATEGORY SCORER TESTS
# ============================================================

class TestCategoryScorers:
    """Tests for the individual category scorers."""

    def _device(self, clock, status=DeviceStatus.ONLINE, last_seen=None, **metrics):
        return DeviceHealthInput(
            device_id="web-01",
            status=status,
            last_seen=last_seen or clock.now(),
            metrics={name: MetricReading(*value) if isinstance(value, tuple) else MetricReading(value)
                     for name, value in metrics.items()},
        )

    def test_availability_from_uptime(self, clock):
        """Test that availability scales with uptime."""
        result = AvailabilityScorer().score(self._device(clock, uptime_percent=92), clock.now())
        assert result.score == 23

    def test_availability_offline(self, clock):
        """Test that an Offline device scores zero and is unreachable."""
        result = AvailabilityScorer().score(
            self._device(clock, status=DeviceStatus.OFFLINE, uptime_percent=100), clock.now()
        )
        assert result.score == 0
        assert result.unreachable

    def test_availability_stale_contact(self, clock):
        """Test that a device silent past the offline window is unreachable."""
        device = self._device(clock, last_seen=clock.now() - timedelta(seconds=901), uptime_percent=100)

        result = AvailabilityScorer().score(device, clock.now())

        assert result.unreachable
        assert "No contact" in result.explanation

    def test_fresh_metric_counts_as_contact(self, clock):
        """Test that a metric newer than last_seen keeps the device reachable."""
        now = clock.now()
        device = DeviceHealthInput(
            device_id="web-01",
            status=DeviceStatus.ONLINE,
            last_seen=now - timedelta(seconds=1000),
            metrics={"uptime_percent": MetricReading(100, collected_at=now)},
        )

        result = AvailabilityScorer().score(device, now)

        assert device.last_contact == now
        assert not result.unreachable
        assert result.score == 25

    def test_unmeasured_metric_is_not_contact(self, clock):
        """Test that an unavailable reading does not count as contact."""
        now = clock.now()
        device = DeviceHealthInput(
            device_id="web-01",
            status=DeviceStatus.ONLINE,
            last_seen=now - timedelta(seconds=1000),
            metrics={"uptime_percent": MetricReading(None, "timeout", collected_at=now)},
        )

        assert AvailabilityScorer().score(device, now).unreachable

    def test_offline_clears_on_newer_contact(self, clock):
        """Test that a stored Offline status yields to contact made after it was set."""
        now = clock.now()
        went_offline = now - timedelta(seconds=120)

        def device(collected_at):
            return DeviceHealthInput(
                device_id="web-01",
                status=DeviceStatus.OFFLINE,
                last_seen=now - timedelta(hours=1),
                status_changed_at=went_offline,
                metrics={"uptime_percent": MetricReading(100, collected_at=collected_at)},
            )

        assert AvailabilityScorer().score(device(went_offline - timedelta(seconds=1)), now).unreachable
        assert not AvailabilityScorer().score(device(now), now).unreachable

    def test_performance_thresholds(self, clock):
        """Test full, half and zero shares."""
        device = self._device(clock, cpu_percent=50, memory_percent=90, disk_percent=97)

        result = PerformanceScorer().score(device, clock.now())

        assert result.score == 9 + 4 + 0

    def test_security_all_or_nothing(self, clock):
        """Test antivirus and firewall are all or nothing, patch age by threshold."""
        device = self._device(clock, antivirus_enabled=1, firewall_enabled=0, patch_age_days=45)

        result = SecurityScorer().score(device, clock.now())

        assert result.score == 9 + 0 + 4

    def test_compliance_penalty_floor(self, clock):
        """Test that deviations never push compliance below zero."""
        assert ComplianceScorer().score(self._device(clock, policy_deviations=2), clock.now()).score == 15
        assert ComplianceScorer().score(self._device(clock, policy_deviations=9), clock.now()).score == 0

    def test_unavailable_check_keeps_share(self, clock):
        """Test that an unmeasurable check keeps its share and records why."""
        device = self._device(
            clock,
            cpu_percent=(None, "not supported on this platform"),
            memory_percent=20,
            disk_percent=20,
        )

        result = PerformanceScorer().score(device, clock.now())

        assert result.score == 25
        assert result.neutral_reasons == [
            "performance.cpu_percent: cpu_percent unavailable: not supported on this platform"
        ]

    def test_unassessable_category_is_neutral_maximum(self, clock):
        """Test that a category with nothing to assess gets its maximum and a reason."""
        result = SecurityScorer().score(self._device(clock), clock.now())

        assert result.score == 25
        assert result.is_neutral
        assert result.explanation.startswith("Not assessed")


# ============================================================
# ENGINE TESTS
# ============================================================

class TestHealthScoringEngine:
    """Tests for score_device / score_fleet side effects."""

    @pytest.mark.asyncio
    async def test_warning_device(self, scoring_engine, alert_manager, database, register_device, add_metrics, recent):
        """Test the full Warning path: total, status, alert and summary."""
        register_device("web-01", last_seen=recent)
        add_metrics("web-01", **WARNING_METRICS)

        score = await scoring_engine.score_device("web-01")

        assert (score.availability, score.performance, score.security, score.compliance) == (23, 16, 17, 15)
        assert score.total == 71
        assert score.bucket is HealthBucket.WARNING
        assert stored_device(database, "web-01") == (DeviceStatus.WARNING, 71)

        alert = alert_manager.get_open("web-01", AlertType.HEALTH_THRESHOLD)
        assert alert.severity is AlertSeverity.MEDIUM
        assert alert.title == "web-01 health Warning (71)"

        summary = scoring_engine.fleet_summary([score]).to_dict()
        assert summary["Warning"] == 1
        assert summary["Healthy"] == 0

    @pytest.mark.asyncio
    async def test_critical_device(self, scoring_engine, alert_manager, database, register_device, add_metrics, recent):
        """Test that a Critical total raises a High HealthThreshold alert."""
        register_device("web-01", last_seen=recent)
        add_metrics("web-01", **CRITICAL_METRICS)

        score = await scoring_engine.score_device("web-01")

        assert score.bucket is HealthBucket.CRITICAL
        assert stored_device(database, "web-01")[0] is DeviceStatus.CRITICAL
        assert alert_manager.get_open("web-01", AlertType.HEALTH_THRESHOLD).severity is AlertSeverity.HIGH

    @pytest.mark.asyncio
    async def test_no_metrics_is_neutral(self, scoring_engine, register_device, recent):
        """Test that a device with no metrics scores the neutral maximum with reasons."""
        register_device("web-01", last_seen=recent)

        score = await scoring_engine.score_device("web-01")

        assert score.total == 100
        assert score.bucket is HealthBucket.HEALTHY
        assert len(score.reasons) == 4

    @pytest.mark.asyncio
    async def test_offline_overrides(self, scoring_engine, alert_manager, database, register_device, add_metrics, clock):
        """Test that a device silent too long is Offline with a DeviceOffline alert."""
        register_device("web-01", last_seen=clock.now() - timedelta(hours=1))
        add_metrics("web-01", at=clock.now() - timedelta(hours=1), **HEALTHY_METRICS)

        score = await scoring_engine.score_device("web-01")

        assert score.bucket is HealthBucket.OFFLINE
        assert score.availability == 0
        assert stored_device(database, "web-01")[0] is DeviceStatus.OFFLINE
        offline = alert_manager.get_open("web-01", AlertType.DEVICE_OFFLINE)
        assert offline.severity is AlertSeverity.HIGH
        assert offline.title == "web-01 offline"

    @pytest.mark.asyncio
    async def test_fresh_metrics_keep_device_online(self, scoring_engine, alert_manager, database, register_device, add_metrics, clock, recent):
        """Test that metrics posted after a long gap count as contact on every run."""
        register_device("web-01", last_seen=recent)
        add_metrics("web-01", **HEALTHY_METRICS)

        clock.advance(seconds=1000)
        add_metrics("web-01", **HEALTHY_METRICS)
        first = await scoring_engine.score_device("web-01")

        clock.advance(seconds=60)
        add_metrics("web-01", **HEALTHY_METRICS)
        second = await scoring_engine.score_device("web-01")

        assert first.bucket is HealthBucket.HEALTHY
        assert second.bucket is HealthBucket.HEALTHY
        assert stored_device(database, "web-01")[0] is DeviceStatus.ONLINE
        assert alert_manager.get_open("web-01", AlertType.DEVICE_OFFLINE) is None

    @pytest.mark.asyncio
    async def test_offline_recovers_on_fresh_metrics(self, scoring_engine, alert_manager, database, register_device, add_metrics, clock, recent):
        """Test that an Offline device comes back once newer metrics arrive."""
        register_device("web-01", last_seen=recent)
        add_metrics("web-01", **HEALTHY_METRICS)

        clock.advance(seconds=1000)
        silent = await scoring_engine.score_device("web-01")
        assert silent.bucket is HealthBucket.OFFLINE
        assert alert_manager.get_open("web-01", AlertType.DEVICE_OFFLINE) is not None

        clock.advance(seconds=60)
        still_silent = await scoring_engine.score_device("web-01")
        assert still_silent.bucket is HealthBucket.OFFLINE

        clock.advance(seconds=60)
        add_metrics("web-01", **HEALTHY_METRICS)
        score = await scoring_engine.score_device("web-01")

        assert score.bucket is HealthBucket.HEALTHY
        assert stored_device(database, "web-01")[0] is DeviceStatus.ONLINE
        assert alert_manager.get_open("web-01", AlertType.DEVICE_OFFLINE) is None

    @pytest.mark.asyncio
    async def test_offline_holds_without_newer_contact(self, scoring_engine, database, register_device, add_metrics, clock, recent):
        """Test that a device marked Offline stays Offline on metrics older than the change."""
        register_device("web-01", last_seen=recent)
        add_metrics("web-01", **HEALTHY_METRICS)
        clock.advance(seconds=10)
        with database.session_scope() as session:
            DeviceRepository(session).update_status("web-01", DeviceStatus.OFFLINE, changed_at=clock.now())

        score = await scoring_engine.score_device("web-01")

        assert score.bucket is HealthBucket.OFFLINE
        assert score.categories[HealthCategory.AVAILABILITY].explanation == "Device is Offline"

    @pytest.mark.asyncio
    async def test_managed_out_device_untouched(self, scoring_engine, alert_manager, database, register_device, add_metrics, recent):
        """Test that Maintenance devices are scored but not re-statused or alerted."""
        register_device("web-01", status=DeviceStatus.MAINTENANCE, last_seen=recent)
        add_metrics("web-01", **CRITICAL_METRICS)

        score = await scoring_engine.score_device("web-01")

        assert score.bucket is HealthBucket.CRITICAL
        assert stored_device(database, "web-01") == (DeviceStatus.MAINTENANCE, score.total)
        assert alert_manager.get_active("web-01") == []

    @pytest.mark.asyncio
    async def test_recovery_resolves_alerts(self, scoring_engine, alert_manager, register_device, add_metrics, clock, recent):
        """Test that a Healthy score auto-resolves HealthThreshold and DeviceOffline."""
        register_device("web-01", last_seen=recent)
        add_metrics("web-01", **WARNING_METRICS)
        await scoring_engine.score_device("web-01")
        await alert_manager.raise_alert("web-01", AlertType.DEVICE_OFFLINE, AlertSeverity.HIGH, "web-01 offline")

        clock.advance(seconds=60)
        add_metrics("web-01", **HEALTHY_METRICS)
        score = await scoring_engine.score_device("web-01")

        assert score.bucket is HealthBucket.HEALTHY
        assert alert_manager.get_open("web-01", AlertType.HEALTH_THRESHOLD) is None
        assert alert_manager.get_open("web-01", AlertType.DEVICE_OFFLINE) is None

    @pytest.mark.asyncio
    async def test_weights_reload(self, scoring_engine, fleet_config, register_device, recent):
        """Test that reweighted categories take effect on the next run."""
        register_device("web-01", last_seen=recent)
        weights = fleet_config.health.weights
        weights.availability, weights.performance, weights.security, weights.compliance = 40, 20, 20, 20

        score = await scoring_engine.score_device("web-01")

        assert score.availability == 40
        assert score.total == 100

    @pytest.mark.asyncio
    async def test_score_fleet_by_site(self, scoring_engine, register_device, add_metrics, recent):
        """Test that score_fleet scores every device of a site."""
        register_device("web-01", site="east", last_seen=recent)
        register_device("web-02", site="east", last_seen=recent)
        register_device("db-01", site="west", last_seen=recent)
        add_metrics("web-01", **HEALTHY_METRICS)
        add_metrics("web-02", **WARNING_METRICS)

        scores = await scoring_engine.score_fleet(site="east")

        assert sorted(s.device_id for s in scores) == ["web-01", "web-02"]
        summary = scoring_engine.fleet_summary(scores)
        assert summary.healthy == 1
        assert summary.warning == 1
        assert summary.online == 2
        assert summary.average_score == pytest.approx((100 + 71) / 2)
