"""
Tests for the HTTP and WebSocket API.
"""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from spanguard_ai.anomaly.detector import AnomalyDetector
from spanguard_ai.correlation.correlator import MetricsCorrelator
from spanguard_ai.live.hub import LiveChannelHub
from spanguard_ai.llm.analyzer import AnomalyExplainer
from spanguard_ai.llm.client import LLMClient, LLMProvider
from spanguard_ai.main import create_app
from spanguard_ai.training.store import TrainingStore

from conftest import make_overall

MONITOR = "/api/v1/monitor"
TRAINING = "/api/v1/monitor/training"

RATING = {
    "anomaly": {"id": "abc-1", "service": "api-gateway", "operation": "GET /orders"},
    "prompt": "P",
    "completion": "C",
    "rating": "good",
}


def span_payload(duration_ms, trace_id="abc123", span_id="span-1"):
    return {
        "trace_id": trace_id,
        "span_id": span_id,
        "service": "api-gateway",
        "operation": "GET /orders",
        "duration_ms": duration_ms,
        "timestamp": datetime(2024, 1, 15, 14, 5, tzinfo=timezone.utc).isoformat(),
    }


@pytest.fixture
def app(engine, history, trace_source, tmp_path):
    app = create_app()
    llm = LLMClient(provider=LLMProvider.MOCK)
    correlator = MagicMock(spec=MetricsCorrelator)
    correlator.url = "http://prometheus:9090"
    correlator.check_health = AsyncMock(return_value=False)

    engine.store.swap([make_overall()], [])
    state = app.state
    state.history = history
    state.trace_source = trace_source
    state.llm_client = llm
    state.correlator = correlator
    state.live_hub = LiveChannelHub()
    state.statistics_engine = engine
    state.detector = AnomalyDetector(engine, history)
    state.explainer = AnomalyExplainer(llm, history, trace_source=trace_source)
    state.training_store = TrainingStore(tmp_path / "training.jsonl")
    return app


@pytest.fixture
def client(app):
    return TestClient(app)


class TestHealth:
    """Tests for health endpoints."""

    def test_health(self, client):
        """Liveness reports the provider and subscriber count."""
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["llm_provider"] == "mock"
        assert data["live_subscribers"] == 0

    def test_ready(self, client):
        """Ready once no rebuild is running."""
        assert client.get("/ready").json() == {"ready": True, "baselines": 1}

    def test_monitor_health(self, client):
        """Monitor health lists services known from baselines."""
        data = client.get(f"{MONITOR}/health").json()

        assert data["status"] == "healthy"
        assert data["services"][0]["name"] == "api-gateway"


class TestMonitorRoutes:
    """Tests for ingestion, baselines and anomalies."""

    def test_ingest_detects_anomaly(self, client):
        """Pushed spans are evaluated and anomalies become visible."""
        response = client.post(f"{MONITOR}/spans", json={"spans": [
            span_payload(100.0, trace_id="ok"),
            span_payload(170.0, trace_id="abc123"),
        ]})

        assert response.status_code == 200
        data = response.json()
        assert data["accepted"] == 2
        assert len(data["anomalies"]) == 1
        assert data["anomalies"][0]["severity"] == 1

        anomalies = client.get(f"{MONITOR}/anomalies").json()
        assert anomalies["total"] == 1
        assert client.get(f"{MONITOR}/health").json()["status"] == "critical"

    def test_negative_duration_rejected(self, client):
        """Negative durations fail validation."""
        response = client.post(f"{MONITOR}/spans", json={"spans": [span_payload(-1.0)]})
        assert response.status_code == 422

    def test_baselines(self, client):
        """Overall baselines are listed with their counts."""
        data = client.get(f"{MONITOR}/baselines").json()

        assert data["total"] == 1
        assert data["baselines"][0]["span_key"] == "api-gateway:GET /orders"
        assert data["baselines"][0]["sample_count"] == 100

    def test_time_baselines_include_status(self, client):
        """Bucket listing carries the engine status."""
        data = client.get(f"{MONITOR}/time-baselines").json()

        assert data["total"] == 0
        assert data["status"]["is_calculating"] is False

    def test_recalculate_without_spans(self, client):
        """Rebuilding from an empty source reports failure."""
        data = client.post(f"{MONITOR}/recalculate").json()

        assert data["success"] is False
        assert data["baselines_count"] == 0

    def test_trace_lookup(self, client):
        """Known traces return spans and unknown ones are 404."""
        client.post(f"{MONITOR}/spans", json={"spans": [span_payload(100.0)]})

        assert client.get(f"{MONITOR}/traces/abc123").json()["spans"][0]["span_id"] == "span-1"
        missing = client.get(f"{MONITOR}/traces/nope")
        assert missing.status_code == 404
        assert missing.json()["detail"]["kind"] == "not_found"

    def test_trace_backend_down(self, app, client, monkeypatch):
        """An unreachable trace backend maps to 502."""
        monkeypatch.setattr(
            app.state.trace_source, "get_trace", AsyncMock(side_effect=OSError("refused"))
        )

        response = client.get(f"{MONITOR}/traces/abc123")

        assert response.status_code == 502
        assert response.json()["detail"]["kind"] == "collaborator_unavailable"

    def test_history_trend(self, client):
        """History includes the hourly trend."""
        client.post(f"{MONITOR}/spans", json={"spans": [span_payload(170.0)]})

        data = client.get(f"{MONITOR}/history").json()

        assert data["total"] == 1
        assert data["hourly_trend"][0]["count"] == 1


class TestAnalysisRoutes:
    """Tests for analysis and metrics endpoints."""

    def test_analyze(self, client):
        """Analysis of a detected anomaly uses its details."""
        client.post(f"{MONITOR}/spans", json={"spans": [span_payload(170.0)]})

        data = client.post(f"{MONITOR}/analyze", json={"trace_id": "abc123"}).json()

        assert data["anomaly_id"] == "abc123-span-1"
        assert data["confidence"] == "medium"
        assert "- Service: api-gateway" in data["prompt"]

    def test_analyze_requires_trace_id(self, client):
        """An empty trace id is rejected."""
        assert client.post(f"{MONITOR}/analyze", json={"trace_id": ""}).status_code == 422

    def test_metrics_health(self, client):
        """Prometheus health is reported with its URL."""
        assert client.get(f"{MONITOR}/metrics/health").json() == {
            "prometheus_healthy": False,
            "prometheus_url": "http://prometheus:9090",
        }


class TestTrainingRoutes:
    """Tests for rating and export endpoints."""

    def test_rate_and_export(self, client):
        """A good rating shows up in stats and the JSONL export."""
        response = client.post(f"{TRAINING}/rate", json=RATING)

        assert response.status_code == 200
        assert response.json()["stats"]["good_examples"] == 1

        export = client.get(f"{TRAINING}/export")
        assert export.headers["content-type"].startswith("application/x-ndjson")
        assert "attachment" in export.headers["content-disposition"]
        assert export.text == '{"prompt": "P", "completion": "C"}'

    def test_malformed_rating(self, client):
        """Malformed feedback is a 400 and nothing is stored."""
        response = client.post(f"{TRAINING}/rate", json={**RATING, "prompt": None})

        assert response.status_code == 400
        assert response.json()["detail"]["kind"] == "malformed_feedback"
        assert client.get(f"{TRAINING}/stats").json()["total_examples"] == 0

    def test_delete_and_clear(self, client):
        """Examples can be deleted one by one or all at once."""
        example_id = client.post(f"{TRAINING}/rate", json=RATING).json()["example"]["id"]
        client.post(f"{TRAINING}/rate", json=RATING)

        assert client.delete(f"{TRAINING}/{example_id}").status_code == 200
        assert client.delete(f"{TRAINING}/{example_id}").status_code == 404
        assert client.get(f"{TRAINING}/examples").json()["total"] == 1

        assert client.delete(TRAINING).json() == {"success": True}
        assert client.get(f"{TRAINING}/examples").json()["total"] == 0


class TestLiveRoute:
    """Tests for the live WebSocket."""

    def test_welcome_heartbeat(self, client):
        """New subscribers are greeted with a heartbeat."""
        with client.websocket_connect("/ws/monitor") as ws:
            message = ws.receive_json()

        assert message["type"] == "heartbeat"
        assert message["data"]["retry_ms"] == 3000
