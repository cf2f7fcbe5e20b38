"""Latency baselines: models, store and statistics engine."""

from spanguard_ai.baseline.models import (
    AdaptiveThresholds,
    OverallBaseline,
    RecomputeResult,
    TimeBaseline,
    span_key,
    time_bucket,
)

__all__ = [
    "AdaptiveThresholds",
    "OverallBaseline",
    "RecomputeResult",
    "TimeBaseline",
    "span_key",
    "time_bucket",
]
