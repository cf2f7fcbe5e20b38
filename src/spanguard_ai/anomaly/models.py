"""
Anomaly Models

Data models for span latency anomaly detection.
"""

import os
from dataclasses import dataclass, field
from datetime import datetime
from enum import IntEnum
from typing import Any, Optional


class Severity(IntEnum):
    """Anomaly severity tiers. SEV1 is the most severe."""

    CRITICAL = 1
    MAJOR = 2
    MODERATE = 3
    MINOR = 4
    LOW = 5

    @property
    def display_name(self) -> str:
        return self.name.capitalize()


@dataclass
class Span:
    """A finished span as supplied by a trace source."""

    trace_id: str
    span_id: str
    service: str
    operation: str
    duration_ms: float
    timestamp: datetime
    attributes: dict[str, Any] = field(default_factory=dict)


@dataclass
class DetectionPolicy:
    """
    Tunable constants for anomaly detection.

    `severity_thresholds` holds the deviation cutoffs for SEV1..SEV5, most
    severe first. A deviation below the last cutoff is not an anomaly.
    """

    severity_thresholds: tuple[float, ...] = (6.0, 4.0, 3.0, 2.0, 1.0)
    confidence_floor: int = 30
    min_overall_samples: int = 10
    min_std_dev: float = 1.0
    active_window_minutes: int = 5
    alert_max_severity: int = 3
    use_adaptive_thresholds: bool = False

    def __post_init__(self):
        thresholds = tuple(float(t) for t in self.severity_thresholds)
        if len(thresholds) != 5:
            raise ValueError("severity_thresholds needs exactly 5 values (SEV1..SEV5)")
        if any(a < b for a, b in zip(thresholds, thresholds[1:])):
            raise ValueError("severity_thresholds must be ordered most severe first")
        if self.min_std_dev <= 0:
            raise ValueError("min_std_dev must be positive")
        self.severity_thresholds = thresholds

    @classmethod
    def from_env(cls) -> "DetectionPolicy":
        """Build a policy from environment variables, falling back to defaults."""
        thresholds = os.getenv("SEVERITY_THRESHOLDS")
        return cls(
            severity_thresholds=(
                tuple(float(t) for t in thresholds.split(","))
                if thresholds
                else cls.severity_thresholds
            ),
            confidence_floor=int(os.getenv("CONFIDENCE_FLOOR", "30")),
            min_overall_samples=int(os.getenv("MIN_OVERALL_SAMPLES", "10")),
            min_std_dev=float(os.getenv("MIN_STD_DEV_MS", "1.0")),
            active_window_minutes=int(os.getenv("ACTIVE_WINDOW_MINUTES", "5")),
            alert_max_severity=int(os.getenv("ALERT_MAX_SEVERITY", "3")),
            use_adaptive_thresholds=(
                os.getenv("USE_ADAPTIVE_THRESHOLDS", "false").lower() == "true"
            ),
        )

    def ladder(self) -> list[tuple[int, float]]:
        return list(enumerate(self.severity_thresholds, start=1))


def classify(deviation: float, ladder: list[tuple[int, float]]) -> Optional[Severity]:
    """Map a deviation to the most severe tier whose cutoff it reaches."""
    for level, cutoff in ladder:
        if deviation >= cutoff:
            return Severity(level)
    return None


@dataclass(frozen=True)
class Anomaly:
    """An abnormal span. Immutable once created."""

    id: str
    trace_id: str
    span_id: str
    service: str
    operation: str
    duration: float  # ms
    expected_mean: float
    expected_std_dev: float
    deviation: float  # σ from mean
    severity: int
    severity_name: str
    attributes: dict
    day_of_week: int
    hour_of_day: int
    created_at: datetime
    baseline_source: str = "overall"  # "time_bucket" or "overall"

    @property
    def is_actionable(self) -> bool:
        return self.severity <= Severity.MODERATE

    def summary(self) -> dict:
        """Compact description used for feedback records."""
        return {
            "id": self.id,
            "service": self.service,
            "operation": self.operation,
            "duration": self.duration,
            "deviation": self.deviation,
            "severity": self.severity,
            "severity_name": self.severity_name,
        }

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "trace_id": self.trace_id,
            "span_id": self.span_id,
            "service": self.service,
            "operation": self.operation,
            "duration": self.duration,
            "expected_mean": self.expected_mean,
            "expected_std_dev": self.expected_std_dev,
            "deviation": self.deviation,
            "severity": self.severity,
            "severity_name": self.severity_name,
            "attributes": dict(self.attributes),
            "day_of_week": self.day_of_week,
            "hour_of_day": self.hour_of_day,
            "created_at": self.created_at.isoformat(),
            "baseline_source": self.baseline_source,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Anomaly":
        created_at = data["created_at"]
        if isinstance(created_at, str):
            created_at = datetime.fromisoformat(created_at)
        return cls(
            id=data["id"],
            trace_id=data["trace_id"],
            span_id=data["span_id"],
            service=data["service"],
            operation=data["operation"],
            duration=float(data["duration"]),
            expected_mean=float(data["expected_mean"]),
            expected_std_dev=float(data["expected_std_dev"]),
            deviation=float(data["deviation"]),
            severity=int(data["severity"]),
            severity_name=data["severity_name"],
            attributes=dict(data.get("attributes") or {}),
            day_of_week=int(data["day_of_week"]),
            hour_of_day=int(data["hour_of_day"]),
            created_at=created_at,
            baseline_source=data.get("baseline_source", "overall"),
        )


@dataclass
class ServiceHealth:
    """Health summary for one service."""

    name: str
    status: str  # healthy, warning, critical
    avg_duration: float
    span_count: int
    active_anomalies: int
    last_seen: datetime

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "status": self.status,
            "avg_duration": self.avg_duration,
            "span_count": self.span_count,
            "active_anomalies": self.active_anomalies,
            "last_seen": self.last_seen.isoformat(),
        }
