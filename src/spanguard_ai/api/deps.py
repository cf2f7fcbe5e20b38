"""
API dependencies

Accessors for the services created in the application lifespan.
"""

from fastapi import HTTPException, Request

from spanguard_ai.anomaly.detector import AnomalyDetector
from spanguard_ai.baseline.statistics import StatisticsEngine
from spanguard_ai.correlation.correlator import MetricsCorrelator
from spanguard_ai.errors import SpanGuardError
from spanguard_ai.llm.analyzer import AnomalyExplainer
from spanguard_ai.services.traces import TraceSource
from spanguard_ai.training.store import TrainingStore


def get_detector(request: Request) -> AnomalyDetector:
    return request.app.state.detector


def get_engine(request: Request) -> StatisticsEngine:
    return request.app.state.statistics_engine


def get_explainer(request: Request) -> AnomalyExplainer:
    return request.app.state.explainer


def get_correlator(request: Request) -> MetricsCorrelator:
    return request.app.state.correlator


def get_trace_source(request: Request) -> TraceSource:
    return request.app.state.trace_source


def get_training_store(request: Request) -> TrainingStore:
    return request.app.state.training_store


def failure(error: Exception, status_code: int = 500) -> HTTPException:
    """Structured HTTP error carrying a kind and message."""
    if isinstance(error, SpanGuardError):
        return HTTPException(status_code=status_code, detail=error.to_dict())
    return HTTPException(
        status_code=status_code,
        detail={"kind": "internal", "message": str(error)},
    )
