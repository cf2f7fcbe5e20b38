"""
Anomaly detection module.

Provides baseline-driven span latency anomaly detection with severity tiers.
"""

from spanguard_ai.anomaly.models import (
    Anomaly,
    DetectionPolicy,
    ServiceHealth,
    Severity,
    Span,
)

__all__ = [
    "Anomaly",
    "DetectionPolicy",
    "ServiceHealth",
    "Severity",
    "Span",
]
