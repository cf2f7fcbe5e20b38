"""
Metrics Correlator

Queries Prometheus for infrastructure metrics around an anomaly and turns
them into human-readable insights.

Every metric is fetched independently and is None when its query fails, so a
partially reachable Prometheus still yields a useful result.
"""

import asyncio
import logging
import math
import os
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import httpx

from spanguard_ai.correlation.models import CorrelatedMetrics, MetricsSnapshot

logger = logging.getLogger(__name__)

CORRELATION_WINDOW = timedelta(minutes=2)

# {selector} is replaced with a label matcher when PROMETHEUS_SERVICE_LABEL is set
QUERIES = {
    "cpu": "rate(process_cpu_seconds_total{selector}[1m])",
    "memory": "process_resident_memory_bytes{selector}",
    "request_rate": "sum(rate(http_requests_total{selector}[1m]))",
    "error_rate": (
        "sum(rate(http_request_errors_total{selector}[5m])) "
        "/ sum(rate(http_requests_total{selector}[5m])) * 100"
    ),
    "p99_latency": (
        "histogram_quantile(0.99, "
        "sum(rate(http_request_duration_seconds_bucket{selector}[5m])) by (le))"
    ),
    "active_connections": "sum(http_active_connections{selector})",
}

SUMMARY_QUERIES = {
    "requests_per_second": "sum(rate(http_requests_total[5m]))",
    "errors_per_second": "sum(rate(http_request_errors_total[5m]))",
    "avg_latency": (
        "avg(rate(http_request_duration_seconds_sum[5m]) "
        "/ rate(http_request_duration_seconds_count[5m]))"
    ),
}


def _epoch(at: datetime) -> float:
    # Naive datetimes are UTC
    if at.tzinfo is None:
        at = at.replace(tzinfo=timezone.utc)
    return at.timestamp()


def generate_insights(metrics: MetricsSnapshot) -> list[str]:
    """Threshold rules over a metrics snapshot. No insights means healthy."""
    insights = []

    cpu = metrics.cpu_percent
    if cpu is not None:
        if cpu >= 90:
            insights.append("Critical CPU usage (>=90%) - likely CPU saturation")
        elif cpu >= 80:
            insights.append("High CPU usage (>=80%) - approaching saturation")
        elif cpu >= 70:
            insights.append("Elevated CPU usage (>=70%)")

    memory = metrics.memory_mb
    if memory is not None:
        if memory >= 1024:
            insights.append("High memory usage (>=1GB) - potential memory pressure")
        elif memory >= 512:
            insights.append("Elevated memory usage (>=512MB)")

    errors = metrics.error_rate
    if errors is not None:
        if errors >= 10:
            insights.append(f"Critical error rate ({errors:.1f}%) - service degradation")
        elif errors >= 5:
            insights.append(f"Elevated error rate ({errors:.1f}%)")
        elif errors >= 1:
            insights.append(f"Notable error rate ({errors:.1f}%)")

    if metrics.request_rate is not None and metrics.request_rate >= 100:
        insights.append(f"High request rate ({metrics.request_rate:.0f} req/s)")

    if metrics.active_connections is not None and metrics.active_connections >= 100:
        insights.append(f"High active connections ({metrics.active_connections:.0f})")

    return insights


class MetricsCorrelator:
    """
    Prometheus-backed metrics correlation.

    Usage:
        correlator = MetricsCorrelator()
        result = await correlator.correlate(anomaly.id, anomaly.service, anomaly.created_at)
    """

    def __init__(
        self,
        url: Optional[str] = None,
        service_label: Optional[str] = None,
        timeout: float = 5.0,
    ):
        self.url = (url or os.getenv("PROMETHEUS_URL", "http://localhost:9090")).rstrip("/")
        self.service_label = service_label or os.getenv("PROMETHEUS_SERVICE_LABEL", "")
        self.timeout = timeout
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    def _selector(self, service: str) -> str:
        if not self.service_label or not service:
            return ""
        escaped = service.replace("\\", "\\\\").replace('"', '\\"')
        return f'{{{self.service_label}="{escaped}"}}'

    async def query_instant(self, query: str, at: datetime) -> Optional[float]:
        """
        Run an instant query and return the first sample value.

        Returns None when the query fails or has no result.
        """
        try:
            client = await self._get_client()
            response = await client.get(
                f"{self.url}/api/v1/query",
                params={"query": query, "time": _epoch(at)},
            )
            if response.status_code != 200:
                logger.warning(f"Prometheus query failed ({response.status_code}): {query}")
                return None

            data = response.json()
            results = data.get("data", {}).get("result", [])
            if data.get("status") != "success" or not results:
                return None

            value = results[0].get("value")
            return float(value[1]) if value else None

        except (httpx.HTTPError, ValueError, KeyError, IndexError) as e:
            logger.warning(f"Error querying Prometheus for {query}: {e}")
            return None

    async def _error_rate(self, query: str, at: datetime) -> Optional[float]:
        # No error series, or 0/0, means no errors
        try:
            client = await self._get_client()
            response = await client.get(
                f"{self.url}/api/v1/query",
                params={"query": query, "time": _epoch(at)},
            )
            if response.status_code != 200:
                return None

            data = response.json()
            results = data.get("data", {}).get("result", [])
            if data.get("status") != "success" or not results:
                return 0.0

            rate = float(results[0]["value"][1])
            return 0.0 if math.isnan(rate) else rate

        except (httpx.HTTPError, ValueError, KeyError, IndexError) as e:
            logger.warning(f"Error querying error rate from Prometheus: {e}")
            return None

    async def correlate(
        self,
        anomaly_id: str,
        service: str,
        timestamp: datetime,
    ) -> CorrelatedMetrics:
        """
        Fetch metrics at the anomaly time, within a ±2 minute window.

        Never raises: unreachable metrics are reported as None.
        """
        logger.info(f"Correlating metrics for {service} at {timestamp.isoformat()}")
        selector = self._selector(service)
        q = {name: template.format(selector=selector) for name, template in QUERIES.items()}

        cpu, memory, request_rate, error_rate, p99, connections = await asyncio.gather(
            self.query_instant(q["cpu"], timestamp),
            self.query_instant(q["memory"], timestamp),
            self.query_instant(q["request_rate"], timestamp),
            self._error_rate(q["error_rate"], timestamp),
            self.query_instant(q["p99_latency"], timestamp),
            self.query_instant(q["active_connections"], timestamp),
        )

        metrics = MetricsSnapshot(
            cpu_percent=cpu * 100 if cpu is not None else None,  # seconds/second
            memory_mb=memory / (1024 * 1024) if memory is not None else None,
            request_rate=request_rate,
            error_rate=error_rate,
            p99_latency_ms=p99 * 1000 if p99 is not None else None,
            active_connections=connections,
        )

        return CorrelatedMetrics(
            anomaly_id=anomaly_id,
            service=service,
            timestamp=timestamp,
            window_start=timestamp - CORRELATION_WINDOW,
            window_end=timestamp + CORRELATION_WINDOW,
            metrics=metrics,
            insights=generate_insights(metrics),
        )

    async def metrics_summary(self) -> dict[str, Any]:
        """Current global request, error and latency figures."""
        now = datetime.utcnow()
        requests, errors, latency = await asyncio.gather(
            *(self.query_instant(query, now) for query in SUMMARY_QUERIES.values())
        )
        healthy = await self.check_health()

        return {
            "timestamp": now.isoformat(),
            "requests_per_second": requests,
            "errors_per_second": errors,
            "avg_latency_ms": latency * 1000 if latency is not None else None,
            "prometheus_healthy": healthy,
        }

    async def check_health(self) -> bool:
        """Whether Prometheus is reachable."""
        try:
            client = await self._get_client()
            response = await client.get(f"{self.url}/-/healthy")
            return response.status_code == 200
        except httpx.HTTPError:
            return False
