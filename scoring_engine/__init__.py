"""
Scoring Engine Package.

This package computes device health scores from collected
metrics and device state.

Modules:
- models: Score and input data structures
- scorers: Per-category scorers
- engine: Composite scoring, persistence and health alerts
"""

from .engine import HealthScoringEngine, assemble_score, bucket_for, summarize
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
    split_shares,
)


__all__ = [
    "HealthScoringEngine",
    "assemble_score",
    "bucket_for",
    "summarize",
    "CategoryScore",
    "DeviceHealthInput",
    "FleetHealthSummary",
    "HealthBucket",
    "HealthCategory",
    "HealthScore",
    "MetricReading",
    "AvailabilityScorer",
    "BaseCategoryScorer",
    "ComplianceScorer",
    "PerformanceScorer",
    "SecurityScorer",
    "split_shares",
]
