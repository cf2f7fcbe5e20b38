"""
Correlation Models
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Optional


@dataclass
class MetricsSnapshot:
    """Infrastructure metrics around an anomaly. Each value is None when unavailable."""

    cpu_percent: Optional[float] = None
    memory_mb: Optional[float] = None
    request_rate: Optional[float] = None
    error_rate: Optional[float] = None
    p99_latency_ms: Optional[float] = None
    active_connections: Optional[float] = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class CorrelatedMetrics:
    """Metrics correlated with one anomaly, with derived insights."""

    anomaly_id: str
    service: str
    timestamp: datetime
    window_start: datetime
    window_end: datetime
    metrics: MetricsSnapshot = field(default_factory=MetricsSnapshot)
    insights: list[str] = field(default_factory=list)

    @property
    def healthy(self) -> bool:
        return not self.insights

    def to_dict(self) -> dict:
        return {
            "anomaly_id": self.anomaly_id,
            "service": self.service,
            "timestamp": self.timestamp.isoformat(),
            "window": {
                "start": self.window_start.isoformat(),
                "end": self.window_end.isoformat(),
            },
            "metrics": self.metrics.to_dict(),
            "insights": list(self.insights),
            "healthy": self.healthy,
        }
