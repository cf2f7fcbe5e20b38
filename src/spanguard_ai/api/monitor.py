"""
Monitor API

Endpoints for baselines, anomalies, ingestion, analysis and correlation.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from spanguard_ai.anomaly.detector import AnomalyDetector
from spanguard_ai.anomaly.models import Span
from spanguard_ai.baseline.statistics import StatisticsEngine
from spanguard_ai.correlation.correlator import MetricsCorrelator
from spanguard_ai.errors import CollaboratorUnavailableError
from spanguard_ai.llm.analyzer import AnomalyExplainer
from spanguard_ai.services.traces import TraceSource
from spanguard_ai.api.deps import (
    failure,
    get_correlator,
    get_detector,
    get_engine,
    get_explainer,
    get_trace_source,
)

logger = logging.getLogger(__name__)
router = APIRouter()


# -----------------------------------------------------------------------------
# Request Models
# -----------------------------------------------------------------------------


class SpanIn(BaseModel):
    """A finished span pushed by a client."""

    trace_id: str
    span_id: str
    service: str
    operation: str
    duration_ms: float = Field(..., ge=0)
    timestamp: Optional[datetime] = Field(None, description="Span start, defaults to now")
    attributes: dict[str, Any] = Field(default_factory=dict)

    def to_span(self) -> Span:
        return Span(
            trace_id=self.trace_id,
            span_id=self.span_id,
            service=self.service,
            operation=self.operation,
            duration_ms=self.duration_ms,
            timestamp=self.timestamp or datetime.now(timezone.utc),
            attributes=self.attributes,
        )


class IngestRequest(BaseModel):
    spans: list[SpanIn]


class AnalyzeRequest(BaseModel):
    trace_id: str = Field(..., min_length=1)
    anomaly_id: Optional[str] = None
    use_cache: bool = True


class CorrelateRequest(BaseModel):
    anomaly_id: str
    service: str
    timestamp: Optional[datetime] = Field(None, description="Anomaly time, defaults to now")


class RecalculateRequest(BaseModel):
    window_days: int = Field(30, ge=1, le=90)


# -----------------------------------------------------------------------------
# Health & baselines
# -----------------------------------------------------------------------------


@router.get("/health")
async def monitor_health(detector: AnomalyDetector = Depends(get_detector)) -> dict:
    """Overall status and per-service health."""
    try:
        services = await detector.service_health()
        active = await detector.active_anomalies()
    except Exception as e:
        logger.exception("Health snapshot failed")
        raise failure(e)

    statuses = {s.status for s in services}
    if "critical" in statuses:
        status = "critical"
    elif "warning" in statuses:
        status = "warning"
    else:
        status = "healthy"

    return {
        "status": status,
        "services": [s.to_dict() for s in services],
        "active_anomalies": len(active),
        "timestamp": datetime.utcnow().isoformat(),
    }


@router.get("/baselines")
async def list_baselines(
    limit: Optional[int] = Query(None, ge=1, description="Most recently updated N"),
    engine: StatisticsEngine = Depends(get_engine),
) -> dict:
    """Overall baselines sorted by service and operation."""
    baselines = engine.store.overall_baselines()
    if limit:
        baselines = sorted(baselines, key=lambda b: b.updated_at, reverse=True)[:limit]
    baselines.sort(key=lambda b: (b.service, b.operation))

    return {
        "baselines": [b.to_dict() for b in baselines],
        "total": len(baselines),
    }


@router.get("/time-baselines")
async def list_time_baselines(
    service: Optional[str] = None,
    engine: StatisticsEngine = Depends(get_engine),
) -> dict:
    """Time-bucket baselines and recalculation status."""
    baselines = engine.store.time_baselines()
    if service:
        baselines = [b for b in baselines if b.service == service]
    baselines.sort(key=lambda b: (b.span_key, b.day_of_week, b.hour_of_day))

    return {
        "baselines": [b.to_dict() for b in baselines],
        "total": len(baselines),
        "status": engine.status().to_dict(),
    }


@router.post("/recalculate")
async def recalculate(
    request: Optional[RecalculateRequest] = None,
    engine: StatisticsEngine = Depends(get_engine),
) -> dict:
    """Rebuild every baseline from trace history."""
    window_days = request.window_days if request else 30
    result = await engine.recompute(timedelta(days=window_days))
    return result.to_dict()


# -----------------------------------------------------------------------------
# Anomalies
# -----------------------------------------------------------------------------


@router.get("/anomalies")
async def list_anomalies(
    window_minutes: int = Query(5, ge=1, le=1440),
    min_severity: int = Query(5, ge=1, le=5),
    service: Optional[str] = None,
    detector: AnomalyDetector = Depends(get_detector),
) -> dict:
    """Active anomalies, newest first."""
    try:
        anomalies = await detector.active_anomalies(
            timedelta(minutes=window_minutes), min_severity=min_severity, service=service
        )
    except Exception as e:
        logger.exception("Listing anomalies failed")
        raise failure(e)

    return {
        "anomalies": [a.to_dict() for a in anomalies],
        "total": len(anomalies),
        "window_minutes": window_minutes,
    }


@router.get("/history")
async def anomaly_history(
    hours: int = Query(24, ge=1, le=720),
    service: Optional[str] = None,
    limit: int = Query(500, ge=1, le=10_000),
    detector: AnomalyDetector = Depends(get_detector),
) -> dict:
    """Anomaly history with an hourly trend."""
    since = datetime.utcnow() - timedelta(hours=hours)
    try:
        anomalies = await detector.history.list_anomalies(since, service=service, limit=limit)
        trend = await detector.history.hourly_trend(since, service=service)
    except Exception as e:
        logger.exception("Anomaly history query failed")
        raise failure(e)

    return {
        "anomalies": [a.to_dict() for a in anomalies],
        "hourly_trend": trend,
        "total": len(anomalies),
        "hours": hours,
    }


@router.post("/spans")
async def ingest_spans(
    request: IngestRequest,
    detector: AnomalyDetector = Depends(get_detector),
    trace_source: TraceSource = Depends(get_trace_source),
) -> dict:
    """Push spans through detection."""
    spans = [s.to_span() for s in request.spans]
    await trace_source.record(spans)
    anomalies = await detector.ingest(spans)

    return {
        "accepted": len(spans),
        "anomalies": [a.to_dict() for a in anomalies],
    }


@router.get("/traces/{trace_id}")
async def get_trace(
    trace_id: str,
    trace_source: TraceSource = Depends(get_trace_source),
) -> dict:
    """All spans of one trace."""
    try:
        spans = await trace_source.get_trace(trace_id)
    except Exception as e:
        logger.exception(f"Trace lookup failed for {trace_id}")
        raise failure(
            CollaboratorUnavailableError(f"Trace backend unavailable: {e}"), status_code=502
        )

    if not spans:
        raise HTTPException(
            status_code=404,
            detail={"kind": "not_found", "message": f"Trace {trace_id} not found"},
        )

    return {
        "trace_id": trace_id,
        "spans": [
            {
                "span_id": s.span_id,
                "service": s.service,
                "operation": s.operation,
                "duration_ms": s.duration_ms,
                "timestamp": s.timestamp.isoformat(),
                "attributes": s.attributes,
            }
            for s in spans
        ],
    }


# -----------------------------------------------------------------------------
# Analysis & correlation
# -----------------------------------------------------------------------------


@router.post("/analyze")
async def analyze(
    request: AnalyzeRequest,
    explainer: AnomalyExplainer = Depends(get_explainer),
) -> dict:
    """LLM explanation of the anomaly recorded for a trace."""
    try:
        result = await explainer.analyze(
            request.trace_id, request.anomaly_id, use_cache=request.use_cache
        )
    except Exception as e:
        logger.exception("Anomaly analysis failed")
        raise failure(e)

    return result.to_dict()


@router.post("/correlate")
async def correlate(
    request: CorrelateRequest,
    correlator: MetricsCorrelator = Depends(get_correlator),
) -> dict:
    """Infrastructure metrics around an anomaly."""
    timestamp = request.timestamp or datetime.utcnow()
    try:
        result = await correlator.correlate(request.anomaly_id, request.service, timestamp)
    except Exception as e:
        logger.exception("Metrics correlation failed")
        raise failure(e)

    return result.to_dict()


@router.get("/metrics/summary")
async def metrics_summary(correlator: MetricsCorrelator = Depends(get_correlator)) -> dict:
    return await correlator.metrics_summary()


@router.get("/metrics/health")
async def metrics_health(correlator: MetricsCorrelator = Depends(get_correlator)) -> dict:
    healthy = await correlator.check_health()
    return {
        "prometheus_healthy": healthy,
        "prometheus_url": correlator.url,
    }
