"""
Baseline Models

Data models for learned latency baselines:
- Overall per-operation statistics
- Time-of-week bucketed statistics with adaptive thresholds
- Recalculation results
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Optional


def span_key(service: str, operation: str) -> str:
    """Stable grouping key for a service operation."""
    return f"{service}:{operation}"


def time_bucket(timestamp: datetime) -> tuple[int, int]:
    """
    Map a timestamp to its (day_of_week, hour_of_day) bucket.

    Days are numbered from Sunday (0) to Saturday (6). Aware timestamps are
    converted to local time first; naive timestamps are taken as local.
    """
    local = timestamp.astimezone() if timestamp.tzinfo else timestamp
    return (local.weekday() + 1) % 7, local.hour


DAY_NAMES = [
    "Sunday", "Monday", "Tuesday", "Wednesday",
    "Thursday", "Friday", "Saturday",
]


@dataclass
class AdaptiveThresholds:
    """Per-severity deviation cutoffs (in standard deviations)."""

    sev1: float = 3.3  # ~99.9th percentile
    sev2: float = 2.6  # ~99th percentile
    sev3: float = 2.0  # ~95th percentile
    sev4: float = 1.65  # ~90th percentile
    sev5: float = 1.3  # ~80th percentile

    def as_ladder(self) -> list[tuple[int, float]]:
        """Thresholds ordered most severe first."""
        return [
            (1, self.sev1),
            (2, self.sev2),
            (3, self.sev3),
            (4, self.sev4),
            (5, self.sev5),
        ]

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class OverallBaseline:
    """Latency statistics for one span key across all time."""

    span_key: str
    service: str
    operation: str
    mean: float = 0.0
    std_dev: float = 0.0
    variance: float = 0.0
    p50: float = 0.0
    p95: float = 0.0
    p99: float = 0.0
    min: float = 0.0
    max: float = 0.0
    sample_count: int = 0
    updated_at: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            "span_key": self.span_key,
            "service": self.service,
            "operation": self.operation,
            "mean": round(self.mean, 2),
            "std_dev": round(self.std_dev, 2),
            "variance": round(self.variance, 2),
            "p50": round(self.p50, 2),
            "p95": round(self.p95, 2),
            "p99": round(self.p99, 2),
            "min": round(self.min, 2),
            "max": round(self.max, 2),
            "sample_count": self.sample_count,
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass
class TimeBaseline:
    """Latency statistics for one span key in one day/hour bucket."""

    span_key: str
    service: str
    operation: str
    day_of_week: int  # 0-6 (Sunday-Saturday)
    hour_of_day: int  # 0-23
    mean: float = 0.0
    std_dev: float = 0.0
    sample_count: int = 0
    thresholds: AdaptiveThresholds = field(default_factory=AdaptiveThresholds)
    updated_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def bucket_key(self) -> tuple[str, int, int]:
        return (self.span_key, self.day_of_week, self.hour_of_day)

    def to_dict(self) -> dict:
        return {
            "span_key": self.span_key,
            "service": self.service,
            "operation": self.operation,
            "day_of_week": self.day_of_week,
            "hour_of_day": self.hour_of_day,
            "mean": round(self.mean, 2),
            "std_dev": round(self.std_dev, 2),
            "sample_count": self.sample_count,
            "thresholds": self.thresholds.to_dict(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass
class RecomputeResult:
    """Outcome of a full baseline rebuild."""

    success: bool
    baselines_count: int
    duration_ms: float
    message: str
    spans_processed: int = 0

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "baselines_count": self.baselines_count,
            "duration_ms": round(self.duration_ms, 2),
            "message": self.message,
            "spans_processed": self.spans_processed,
        }


@dataclass
class EngineStatus:
    """Recalculation status of the statistics engine."""

    is_calculating: bool
    last_calculation: Optional[datetime]
    baseline_count: int

    def to_dict(self) -> dict:
        return {
            "is_calculating": self.is_calculating,
            "last_calculation": (
                self.last_calculation.isoformat() if self.last_calculation else None
            ),
            "baseline_count": self.baseline_count,
        }
