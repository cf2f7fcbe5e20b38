"""
Shared fixtures for SpanGuard tests.
"""

from datetime import datetime
from typing import Optional

import pytest

from spanguard_ai.anomaly.models import Anomaly, Span
from spanguard_ai.baseline.models import OverallBaseline, TimeBaseline
from spanguard_ai.baseline.statistics import StatisticsEngine
from spanguard_ai.baseline.store import BaselineStore
from spanguard_ai.services.storage import InMemoryHistoryStore
from spanguard_ai.services.traces import InMemoryTraceSource

# Monday 2024-01-15 14:05 local time -> bucket (1, 14)
MONDAY_2PM = datetime(2024, 1, 15, 14, 5)

SERVICE = "api-gateway"
OPERATION = "GET /orders"
KEY = f"{SERVICE}:{OPERATION}"


def make_span(
    duration_ms: float,
    timestamp: datetime = MONDAY_2PM,
    trace_id: str = "trace-1",
    span_id: str = "span-1",
    service: str = SERVICE,
    operation: str = OPERATION,
    attributes: Optional[dict] = None,
) -> Span:
    return Span(
        trace_id=trace_id,
        span_id=span_id,
        service=service,
        operation=operation,
        duration_ms=duration_ms,
        timestamp=timestamp,
        attributes=attributes or {},
    )


def make_overall(
    mean: float = 100.0,
    std_dev: float = 10.0,
    sample_count: int = 100,
    service: str = SERVICE,
    operation: str = OPERATION,
) -> OverallBaseline:
    return OverallBaseline(
        span_key=f"{service}:{operation}",
        service=service,
        operation=operation,
        mean=mean,
        std_dev=std_dev,
        variance=std_dev ** 2,
        p50=mean,
        p95=mean + 2 * std_dev,
        p99=mean + 3 * std_dev,
        min=mean - 3 * std_dev,
        max=mean + 3 * std_dev,
        sample_count=sample_count,
    )


def make_bucket(
    mean: float,
    std_dev: float,
    sample_count: int,
    day_of_week: int = 1,
    hour_of_day: int = 14,
) -> TimeBaseline:
    return TimeBaseline(
        span_key=KEY,
        service=SERVICE,
        operation=OPERATION,
        day_of_week=day_of_week,
        hour_of_day=hour_of_day,
        mean=mean,
        std_dev=std_dev,
        sample_count=sample_count,
    )


def make_anomaly(
    severity: int = 1,
    service: str = SERVICE,
    trace_id: str = "trace-1",
    created_at: Optional[datetime] = None,
    **overrides,
) -> Anomaly:
    fields = dict(
        id=f"{trace_id}-span-1",
        trace_id=trace_id,
        span_id="span-1",
        service=service,
        operation=OPERATION,
        duration=170.0,
        expected_mean=100.0,
        expected_std_dev=10.0,
        deviation=7.0,
        severity=severity,
        severity_name="Critical",
        attributes={},
        day_of_week=1,
        hour_of_day=14,
        created_at=created_at or datetime.utcnow(),
    )
    fields.update(overrides)
    return Anomaly(**fields)


@pytest.fixture
def store():
    return BaselineStore()


@pytest.fixture
def history():
    return InMemoryHistoryStore()


@pytest.fixture
def trace_source():
    return InMemoryTraceSource()


@pytest.fixture
def engine(store, trace_source, history):
    return StatisticsEngine(store, trace_source, history)
