"""
SpanGuard AI Engine - Main Entry Point

FastAPI server providing span latency anomaly detection:
- Learned per-operation and time-of-week latency baselines
- Severity-ranked anomaly detection
- Metrics correlation and LLM explanations streamed live
- Training data collection from rated explanations
"""

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import make_asgi_app

from spanguard_ai import __version__
from spanguard_ai.api import health, live, monitor, training
from spanguard_ai.anomaly.detector import AnomalyDetector
from spanguard_ai.anomaly.models import DetectionPolicy
from spanguard_ai.baseline.statistics import StatisticsEngine
from spanguard_ai.baseline.store import BaselineStore
from spanguard_ai.correlation.correlator import MetricsCorrelator
from spanguard_ai.ingest.poller import SpanPoller
from spanguard_ai.live.hub import LiveChannelHub
from spanguard_ai.llm.analyzer import AnomalyExplainer
from spanguard_ai.llm.client import get_best_available_client
from spanguard_ai.llm.stream import StreamAnalyzer
from spanguard_ai.services.cache import CacheService
from spanguard_ai.services.storage import connect_history_store
from spanguard_ai.services.traces import create_trace_source
from spanguard_ai.training.store import TrainingStore

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting SpanGuard AI Engine...")
    state = app.state

    # Collaborators
    state.history = await connect_history_store()
    state.trace_source = create_trace_source()
    await state.trace_source.connect()
    state.cache_service = CacheService()
    await state.cache_service.connect()
    state.llm_client = get_best_available_client()
    state.correlator = MetricsCorrelator()

    # Live channel and streaming analysis
    state.live_hub = LiveChannelHub()
    await state.live_hub.start()
    state.stream_analyzer = StreamAnalyzer(state.llm_client, state.live_hub)
    await state.stream_analyzer.start()

    # Baselines and detection
    policy = DetectionPolicy.from_env()
    state.statistics_engine = StatisticsEngine(
        BaselineStore(), state.trace_source, state.history, min_std_dev=policy.min_std_dev
    )
    await state.statistics_engine.load()
    state.detector = AnomalyDetector(
        state.statistics_engine,
        state.history,
        policy=policy,
        hub=state.live_hub,
        stream_analyzer=state.stream_analyzer,
    )

    state.explainer = AnomalyExplainer(
        state.llm_client,
        state.history,
        correlator=state.correlator,
        trace_source=state.trace_source,
        cache=state.cache_service,
    )
    state.training_store = TrainingStore()

    state.span_poller = SpanPoller(state.trace_source, state.detector, state.statistics_engine)
    if os.getenv("ENABLE_SPAN_POLLER", "true").lower() == "true":
        await state.span_poller.start()

    logger.info(f"SpanGuard AI initialized (LLM provider: {state.llm_client.provider.value})")
    yield

    logger.info("Shutting down SpanGuard AI Engine...")

    await state.span_poller.stop()
    await state.stream_analyzer.stop()
    await state.live_hub.stop()

    await state.llm_client.close()
    await state.correlator.close()
    await state.trace_source.close()
    await state.cache_service.disconnect()
    await state.history.disconnect()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="SpanGuard AI Engine",
        description="Span latency baselines, anomaly detection and LLM explanations",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=os.getenv("CORS_ORIGINS", "*").split(","),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Mount Prometheus metrics
    app.mount("/metrics", make_asgi_app())

    app.include_router(health.router, tags=["Health"])
    app.include_router(monitor.router, prefix="/api/v1/monitor", tags=["Monitor"])
    app.include_router(training.router, prefix="/api/v1/monitor/training", tags=["Training"])
    app.include_router(live.router, tags=["Live"])

    return app


app = create_app()


def main():
    """Run the server."""
    import uvicorn

    uvicorn.run(
        "spanguard_ai.main:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8081")),
        reload=os.getenv("RELOAD", "false").lower() == "true",
        workers=int(os.getenv("WORKERS", "1")),
    )


if __name__ == "__main__":
    main()
