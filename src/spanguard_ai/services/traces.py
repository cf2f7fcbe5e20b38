"""
Trace Sources

Readers of finished spans from a trace backend:
- JaegerTraceSource: Jaeger query HTTP API
- ClickHouseTraceSource: OpenTelemetry `otel_traces` table
- InMemoryTraceSource: spans pushed through the API, for development/testing
"""

import logging
import os
from abc import ABC, abstractmethod
from collections import deque
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import httpx

from spanguard_ai.anomaly.models import Span
from spanguard_ai.services.storage import ClickHouseClient

logger = logging.getLogger(__name__)

# Jaeger's own services report spans about queries we make
IGNORED_SERVICES = {"jaeger-all-in-one", "jaeger-query", "jaeger"}


class TraceSource(ABC):
    """Read access to spans held by a trace backend."""

    async def connect(self) -> None:
        """Open the backend."""

    async def close(self) -> None:
        """Release the backend."""

    @abstractmethod
    async def fetch_spans(
        self,
        start: datetime,
        end: datetime,
        limit: int = 100_000,
    ) -> list[Span]:
        """Spans that started within [start, end]."""

    @abstractmethod
    async def get_trace(self, trace_id: str) -> list[Span]:
        """All spans of one trace, empty when unknown."""

    async def recent_spans(self, lookback: timedelta) -> list[Span]:
        """Spans from the last `lookback`."""
        end = datetime.now(timezone.utc)
        return await self.fetch_spans(end - lookback, end)

    async def record(self, spans: list[Span]) -> None:
        """Make pushed spans visible to later reads. External backends already hold them."""


# -----------------------------------------------------------------------------
# Jaeger
# -----------------------------------------------------------------------------


def _tags_to_dict(tags: list[dict]) -> dict[str, Any]:
    return {t["key"]: t.get("value") for t in tags or [] if "key" in t}


def parse_jaeger_trace(trace: dict) -> list[Span]:
    """Convert one trace object from the Jaeger API into spans."""
    processes = trace.get("processes", {})
    spans = []

    for raw in trace.get("spans", []):
        process = processes.get(raw.get("processID"), {})
        service = process.get("serviceName", "unknown")
        attributes = _tags_to_dict(raw.get("tags", []))

        spans.append(Span(
            trace_id=raw["traceID"],
            span_id=raw["spanID"],
            service=service,
            operation=raw.get("operationName", "unknown"),
            duration_ms=raw.get("duration", 0) / 1000.0,  # microseconds
            timestamp=datetime.fromtimestamp(
                raw.get("startTime", 0) / 1_000_000, tz=timezone.utc
            ),
            attributes=attributes,
        ))

    return spans


class JaegerTraceSource(TraceSource):
    """
    Jaeger query API client.

    Services are taken from MONITORED_SERVICES (comma separated); when unset
    they are discovered from /api/services.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        services: Optional[list[str]] = None,
        timeout: float = 10.0,
        traces_per_service: int = 1000,
    ):
        self.url = (url or os.getenv("JAEGER_URL", "http://localhost:16686")).rstrip("/")
        if services is None:
            configured = os.getenv("MONITORED_SERVICES", "")
            services = [s.strip() for s in configured.split(",") if s.strip()]
        self.services = services
        self.timeout = timeout
        self.traces_per_service = traces_per_service
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def list_services(self) -> list[str]:
        """Services to query for spans."""
        if self.services:
            return list(self.services)

        client = await self._get_client()
        response = await client.get(f"{self.url}/api/services")
        response.raise_for_status()
        names = response.json().get("data") or []
        return [n for n in names if n not in IGNORED_SERVICES]

    async def fetch_spans(
        self,
        start: datetime,
        end: datetime,
        limit: int = 100_000,
    ) -> list[Span]:
        client = await self._get_client()
        spans: list[Span] = []
        seen: set[tuple[str, str]] = set()

        for service in await self.list_services():
            response = await client.get(
                f"{self.url}/api/traces",
                params={
                    "service": service,
                    "start": int(start.timestamp() * 1_000_000),
                    "end": int(end.timestamp() * 1_000_000),
                    "limit": self.traces_per_service,
                },
            )
            response.raise_for_status()

            for trace in response.json().get("data") or []:
                for span in parse_jaeger_trace(trace):
                    # A trace spanning services comes back once per service
                    ident = (span.trace_id, span.span_id)
                    if ident in seen:
                        continue
                    seen.add(ident)
                    spans.append(span)
                    if len(spans) >= limit:
                        return spans

        logger.debug(f"Fetched {len(spans)} spans from Jaeger")
        return spans

    async def get_trace(self, trace_id: str) -> list[Span]:
        client = await self._get_client()
        response = await client.get(f"{self.url}/api/traces/{trace_id}")
        if response.status_code == 404:
            return []
        response.raise_for_status()

        spans = []
        for trace in response.json().get("data") or []:
            spans.extend(parse_jaeger_trace(trace))
        return spans


# -----------------------------------------------------------------------------
# ClickHouse (OpenTelemetry exporter schema)
# -----------------------------------------------------------------------------


class ClickHouseTraceSource(TraceSource):
    """Reads spans from the OpenTelemetry collector's ClickHouse table."""

    def __init__(
        self,
        client: Optional[ClickHouseClient] = None,
        table: Optional[str] = None,
    ):
        self.client = client or ClickHouseClient()
        self.table = table or os.getenv("CLICKHOUSE_TRACES_TABLE", "otel_traces")

    async def connect(self) -> None:
        await self.client.connect()

    async def close(self) -> None:
        await self.client.disconnect()

    def _row_to_span(self, row: dict) -> Span:
        timestamp = row["Timestamp"]
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=timezone.utc)
        return Span(
            trace_id=row["TraceId"],
            span_id=row["SpanId"],
            service=row["ServiceName"],
            operation=row["SpanName"],
            duration_ms=row["Duration"] / 1_000_000,  # nanoseconds
            timestamp=timestamp,
            attributes=dict(row.get("SpanAttributes") or {}),
        )

    async def fetch_spans(
        self,
        start: datetime,
        end: datetime,
        limit: int = 100_000,
    ) -> list[Span]:
        query = f"""
        SELECT Timestamp, TraceId, SpanId, ServiceName, SpanName, Duration, SpanAttributes
        FROM {self.table}
        WHERE Timestamp >= {{start:DateTime64(9)}}
          AND Timestamp <= {{end:DateTime64(9)}}
        ORDER BY Timestamp
        LIMIT {{limit:UInt32}}
        """
        rows = await self.client.execute_query(query, parameters={
            "start": start,
            "end": end,
            "limit": limit,
        })
        return [self._row_to_span(row) for row in rows]

    async def get_trace(self, trace_id: str) -> list[Span]:
        query = f"""
        SELECT Timestamp, TraceId, SpanId, ServiceName, SpanName, Duration, SpanAttributes
        FROM {self.table}
        WHERE TraceId = {{trace_id:String}}
        ORDER BY Timestamp
        """
        rows = await self.client.execute_query(query, parameters={"trace_id": trace_id})
        return [self._row_to_span(row) for row in rows]


# -----------------------------------------------------------------------------
# In-memory
# -----------------------------------------------------------------------------


class InMemoryTraceSource(TraceSource):
    """Bounded buffer of pushed spans."""

    def __init__(self, max_spans: int = 100_000):
        self._spans: deque[Span] = deque(maxlen=max_spans)

    async def record(self, spans: list[Span]) -> None:
        self._spans.extend(spans)

    async def fetch_spans(
        self,
        start: datetime,
        end: datetime,
        limit: int = 100_000,
    ) -> list[Span]:
        matches = [s for s in self._spans if start <= _aware(s.timestamp) <= end]
        return matches[:limit]

    async def get_trace(self, trace_id: str) -> list[Span]:
        return [s for s in self._spans if s.trace_id == trace_id]


def _aware(ts: datetime) -> datetime:
    # Naive timestamps are local time
    return ts if ts.tzinfo else ts.astimezone()


def create_trace_source(backend: Optional[str] = None) -> TraceSource:
    """Trace source selected by TRACE_BACKEND (jaeger, clickhouse or memory)."""
    backend = (backend or os.getenv("TRACE_BACKEND", "jaeger")).lower()

    if backend == "clickhouse":
        return ClickHouseTraceSource()
    if backend == "memory":
        return InMemoryTraceSource()
    return JaegerTraceSource()
