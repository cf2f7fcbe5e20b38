"""
Storage Service

Durable history for baselines and anomalies.

Two interchangeable backends implement the HistoryStore interface:
- ClickHouseHistoryStore: ClickHouse tables via clickhouse-connect
- InMemoryHistoryStore: process-local storage for development/testing
"""

import json
import logging
import os
from abc import ABC, abstractmethod
from collections import deque
from datetime import datetime, timedelta
from typing import Any, Optional

import clickhouse_connect

from spanguard_ai.anomaly.models import Anomaly
from spanguard_ai.baseline.models import (
    AdaptiveThresholds,
    OverallBaseline,
    TimeBaseline,
)

logger = logging.getLogger(__name__)


class ClickHouseClient:
    """
    Thin async wrapper around clickhouse-connect.

    Rows are returned as dictionaries keyed by column name.
    """

    def __init__(
        self,
        host: Optional[str] = None,
        port: Optional[int] = None,
        database: Optional[str] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
    ):
        self.host = host or os.getenv("CLICKHOUSE_HOST", "localhost")
        self.port = port or int(os.getenv("CLICKHOUSE_PORT", "8123"))
        self.database = database or os.getenv("CLICKHOUSE_DATABASE", "spanguard")
        self.username = username or os.getenv("CLICKHOUSE_USER", "default")
        self.password = password or os.getenv("CLICKHOUSE_PASSWORD", "")
        self._client = None

    async def connect(self) -> None:
        """Connect to ClickHouse."""
        self._client = await clickhouse_connect.get_async_client(
            host=self.host,
            port=self.port,
            database=self.database,
            username=self.username,
            password=self.password,
        )
        logger.info(f"Connected to ClickHouse at {self.host}:{self.port}")

    async def disconnect(self) -> None:
        """Disconnect from ClickHouse."""
        if self._client is not None:
            await self._client.close()
        self._client = None

    async def command(self, sql: str) -> None:
        if self._client is None:
            await self.connect()
        await self._client.command(sql)

    async def execute_query(
        self,
        query: str,
        parameters: Optional[dict] = None,
        timeout: int = 30,
    ) -> list[dict[str, Any]]:
        """
        Execute a query and return results.

        Args:
            query: SQL query with {name:Type} placeholders
            parameters: Query parameters
            timeout: Query timeout in seconds

        Returns:
            List of rows as column-name dictionaries
        """
        if self._client is None:
            await self.connect()

        result = await self._client.query(
            query,
            parameters=parameters,
            settings={"max_execution_time": timeout},
        )
        columns = result.column_names
        return [dict(zip(columns, row)) for row in result.result_rows]

    async def insert(
        self,
        table: str,
        data: list[dict],
        column_names: Optional[list[str]] = None,
    ) -> None:
        """
        Insert data into a table.

        Args:
            table: Table name
            data: List of row dictionaries
            column_names: Optional column names
        """
        if not data:
            return

        if self._client is None:
            await self.connect()

        if column_names is None:
            column_names = list(data[0].keys())

        rows = [[row.get(col) for col in column_names] for row in data]
        await self._client.insert(table, rows, column_names=column_names)


# -----------------------------------------------------------------------------
# History Store Interface
# -----------------------------------------------------------------------------


class HistoryStore(ABC):
    """Persistence capability for anomalies and baseline snapshots."""

    async def connect(self) -> None:
        """Open the backend."""

    async def disconnect(self) -> None:
        """Release the backend."""

    @abstractmethod
    async def save_anomaly(self, anomaly: Anomaly) -> None:
        """Append an anomaly to the history."""

    @abstractmethod
    async def list_anomalies(
        self,
        since: datetime,
        service: Optional[str] = None,
        min_severity: int = 5,
        limit: int = 1000,
    ) -> list[Anomaly]:
        """Anomalies created at or after `since`, newest first."""

    @abstractmethod
    async def save_baselines(
        self,
        overall: list[OverallBaseline],
        buckets: list[TimeBaseline],
    ) -> None:
        """Persist a full baseline snapshot."""

    @abstractmethod
    async def load_baselines(
        self,
    ) -> tuple[list[OverallBaseline], list[TimeBaseline]]:
        """Load the latest baseline snapshot."""

    async def find_anomaly(
        self,
        since: datetime,
        trace_id: Optional[str] = None,
        anomaly_id: Optional[str] = None,
    ) -> Optional[Anomaly]:
        """Most recent anomaly matching a trace id or anomaly id."""
        for anomaly in await self.list_anomalies(since, limit=100_000):
            if anomaly.trace_id == trace_id or (anomaly_id and anomaly.id == anomaly_id):
                return anomaly
        return None

    async def hourly_trend(
        self, since: datetime, service: Optional[str] = None
    ) -> list[dict]:
        """Anomaly counts grouped by hour and severity, optionally for one service."""
        by_hour: dict[str, dict] = {}
        for anomaly in await self.list_anomalies(since, service=service, limit=100_000):
            hour = anomaly.created_at.replace(minute=0, second=0, microsecond=0)
            key = hour.isoformat()
            if key not in by_hour:
                by_hour[key] = {"hour": key, "count": 0, "by_severity": {}}
            entry = by_hour[key]
            entry["count"] += 1
            sev = f"sev{anomaly.severity}"
            entry["by_severity"][sev] = entry["by_severity"].get(sev, 0) + 1

        return [by_hour[k] for k in sorted(by_hour)]


# -----------------------------------------------------------------------------
# In-Memory Backend
# -----------------------------------------------------------------------------


class InMemoryHistoryStore(HistoryStore):
    """Process-local history for development/testing."""

    def __init__(self, max_anomalies: int = 10_000):
        self._anomalies: deque[Anomaly] = deque(maxlen=max_anomalies)
        self._overall: list[OverallBaseline] = []
        self._buckets: list[TimeBaseline] = []

    async def save_anomaly(self, anomaly: Anomaly) -> None:
        self._anomalies.append(anomaly)

    async def list_anomalies(
        self,
        since: datetime,
        service: Optional[str] = None,
        min_severity: int = 5,
        limit: int = 1000,
    ) -> list[Anomaly]:
        matches = [
            a for a in self._anomalies
            if a.created_at >= since
            and a.severity <= min_severity
            and (service is None or a.service == service)
        ]
        matches.sort(key=lambda a: a.created_at, reverse=True)
        return matches[:limit]

    async def save_baselines(
        self,
        overall: list[OverallBaseline],
        buckets: list[TimeBaseline],
    ) -> None:
        self._overall = list(overall)
        self._buckets = list(buckets)

    async def load_baselines(
        self,
    ) -> tuple[list[OverallBaseline], list[TimeBaseline]]:
        return list(self._overall), list(self._buckets)


# -----------------------------------------------------------------------------
# ClickHouse Backend
# -----------------------------------------------------------------------------

ANOMALIES_TABLE = "spanguard_anomalies"
SPAN_BASELINES_TABLE = "spanguard_span_baselines"
TIME_BASELINES_TABLE = "spanguard_time_baselines"


def _row_to_anomaly(row: dict) -> Anomaly:
    return Anomaly(
        id=row["Id"],
        trace_id=row["TraceId"],
        span_id=row["SpanId"],
        service=row["ServiceName"],
        operation=row["Operation"],
        duration=float(row["DurationMs"]),
        expected_mean=float(row["ExpectedMean"]),
        expected_std_dev=float(row["ExpectedStdDev"]),
        deviation=float(row["Deviation"]),
        severity=int(row["Severity"]),
        severity_name=row["SeverityName"],
        attributes=json.loads(row["Attributes"] or "{}"),
        day_of_week=int(row["DayOfWeek"]),
        hour_of_day=int(row["HourOfDay"]),
        created_at=row["CreatedAt"],
        baseline_source=row["BaselineSource"],
    )


SCHEMA = [
    f"""
    CREATE TABLE IF NOT EXISTS {ANOMALIES_TABLE} (
        Id String,
        TraceId String,
        SpanId String,
        ServiceName LowCardinality(String),
        Operation String,
        DurationMs Float64,
        ExpectedMean Float64,
        ExpectedStdDev Float64,
        Deviation Float64,
        Severity UInt8,
        SeverityName LowCardinality(String),
        Attributes String,
        DayOfWeek UInt8,
        HourOfDay UInt8,
        BaselineSource LowCardinality(String),
        CreatedAt DateTime64(3)
    ) ENGINE = MergeTree
    ORDER BY (CreatedAt, ServiceName)
    TTL toDateTime(CreatedAt) + INTERVAL 30 DAY
    """,
    f"""
    CREATE TABLE IF NOT EXISTS {SPAN_BASELINES_TABLE} (
        SpanKey String,
        ServiceName LowCardinality(String),
        Operation String,
        Mean Float64,
        StdDev Float64,
        Variance Float64,
        P50 Float64,
        P95 Float64,
        P99 Float64,
        Min Float64,
        Max Float64,
        SampleCount UInt64,
        UpdatedAt DateTime64(3),
        SnapshotAt DateTime64(3)
    ) ENGINE = ReplacingMergeTree(SnapshotAt)
    ORDER BY SpanKey
    """,
    f"""
    CREATE TABLE IF NOT EXISTS {TIME_BASELINES_TABLE} (
        SpanKey String,
        ServiceName LowCardinality(String),
        Operation String,
        DayOfWeek UInt8,
        HourOfDay UInt8,
        Mean Float64,
        StdDev Float64,
        SampleCount UInt64,
        Thresholds String,
        UpdatedAt DateTime64(3),
        SnapshotAt DateTime64(3)
    ) ENGINE = ReplacingMergeTree(SnapshotAt)
    ORDER BY (SpanKey, DayOfWeek, HourOfDay)
    """,
]


class ClickHouseHistoryStore(HistoryStore):
    """ClickHouse-backed history."""

    def __init__(self, client: Optional[ClickHouseClient] = None):
        self.client = client or ClickHouseClient()

    async def connect(self) -> None:
        await self.client.connect()
        for ddl in SCHEMA:
            await self.client.command(ddl)

    async def disconnect(self) -> None:
        await self.client.disconnect()

    async def save_anomaly(self, anomaly: Anomaly) -> None:
        await self.client.insert(ANOMALIES_TABLE, [{
            "Id": anomaly.id,
            "TraceId": anomaly.trace_id,
            "SpanId": anomaly.span_id,
            "ServiceName": anomaly.service,
            "Operation": anomaly.operation,
            "DurationMs": anomaly.duration,
            "ExpectedMean": anomaly.expected_mean,
            "ExpectedStdDev": anomaly.expected_std_dev,
            "Deviation": anomaly.deviation,
            "Severity": anomaly.severity,
            "SeverityName": anomaly.severity_name,
            "Attributes": json.dumps(anomaly.attributes, default=str),
            "DayOfWeek": anomaly.day_of_week,
            "HourOfDay": anomaly.hour_of_day,
            "BaselineSource": anomaly.baseline_source,
            "CreatedAt": anomaly.created_at,
        }])

    async def list_anomalies(
        self,
        since: datetime,
        service: Optional[str] = None,
        min_severity: int = 5,
        limit: int = 1000,
    ) -> list[Anomaly]:
        service_filter = "AND ServiceName = {service:String}" if service else ""

        query = f"""
        SELECT *
        FROM {ANOMALIES_TABLE}
        WHERE CreatedAt >= {{since:DateTime64(3)}}
          AND Severity <= {{min_severity:UInt8}}
          {service_filter}
        ORDER BY CreatedAt DESC
        LIMIT {{limit:UInt32}}
        """

        rows = await self.client.execute_query(query, parameters={
            "since": since,
            "min_severity": min_severity,
            "service": service,
            "limit": limit,
        })

        return [_row_to_anomaly(row) for row in rows]

    async def find_anomaly(
        self,
        since: datetime,
        trace_id: Optional[str] = None,
        anomaly_id: Optional[str] = None,
    ) -> Optional[Anomaly]:
        query = f"""
        SELECT *
        FROM {ANOMALIES_TABLE}
        WHERE CreatedAt >= {{since:DateTime64(3)}}
          AND (TraceId = {{trace_id:String}} OR Id = {{anomaly_id:String}})
        ORDER BY CreatedAt DESC
        LIMIT 1
        """

        rows = await self.client.execute_query(query, parameters={
            "since": since,
            "trace_id": trace_id or "",
            "anomaly_id": anomaly_id or "",
        })
        return _row_to_anomaly(rows[0]) if rows else None

    async def save_baselines(
        self,
        overall: list[OverallBaseline],
        buckets: list[TimeBaseline],
    ) -> None:
        snapshot_at = datetime.utcnow()

        await self.client.insert(SPAN_BASELINES_TABLE, [
            {
                "SpanKey": b.span_key,
                "ServiceName": b.service,
                "Operation": b.operation,
                "Mean": b.mean,
                "StdDev": b.std_dev,
                "Variance": b.variance,
                "P50": b.p50,
                "P95": b.p95,
                "P99": b.p99,
                "Min": b.min,
                "Max": b.max,
                "SampleCount": b.sample_count,
                "UpdatedAt": b.updated_at,
                "SnapshotAt": snapshot_at,
            }
            for b in overall
        ])

        await self.client.insert(TIME_BASELINES_TABLE, [
            {
                "SpanKey": b.span_key,
                "ServiceName": b.service,
                "Operation": b.operation,
                "DayOfWeek": b.day_of_week,
                "HourOfDay": b.hour_of_day,
                "Mean": b.mean,
                "StdDev": b.std_dev,
                "SampleCount": b.sample_count,
                "Thresholds": json.dumps(b.thresholds.to_dict()),
                "UpdatedAt": b.updated_at,
                "SnapshotAt": snapshot_at,
            }
            for b in buckets
        ])

    async def load_baselines(
        self,
    ) -> tuple[list[OverallBaseline], list[TimeBaseline]]:
        span_rows = await self.client.execute_query(
            f"SELECT * FROM {SPAN_BASELINES_TABLE} FINAL"
        )
        time_rows = await self.client.execute_query(
            f"SELECT * FROM {TIME_BASELINES_TABLE} FINAL"
        )

        overall = [
            OverallBaseline(
                span_key=row["SpanKey"],
                service=row["ServiceName"],
                operation=row["Operation"],
                mean=row["Mean"],
                std_dev=row["StdDev"],
                variance=row["Variance"],
                p50=row["P50"],
                p95=row["P95"],
                p99=row["P99"],
                min=row["Min"],
                max=row["Max"],
                sample_count=int(row["SampleCount"]),
                updated_at=row["UpdatedAt"],
            )
            for row in span_rows
        ]
        buckets = [
            TimeBaseline(
                span_key=row["SpanKey"],
                service=row["ServiceName"],
                operation=row["Operation"],
                day_of_week=int(row["DayOfWeek"]),
                hour_of_day=int(row["HourOfDay"]),
                mean=row["Mean"],
                std_dev=row["StdDev"],
                sample_count=int(row["SampleCount"]),
                thresholds=AdaptiveThresholds(**json.loads(row["Thresholds"])),
                updated_at=row["UpdatedAt"],
            )
            for row in time_rows
        ]
        return overall, buckets


async def connect_history_store(backend: Optional[str] = None) -> HistoryStore:
    """
    Create and connect the configured history backend.

    Falls back to in-memory history when ClickHouse is unreachable.
    """
    backend = (backend or os.getenv("HISTORY_BACKEND", "clickhouse")).lower()

    if backend == "memory":
        logger.info("Using in-memory history store")
        return InMemoryHistoryStore()

    store = ClickHouseHistoryStore()
    try:
        await store.connect()
        return store
    except Exception as e:
        logger.warning(f"Failed to connect to ClickHouse: {e}, using in-memory history")
        return InMemoryHistoryStore()


def history_window(minutes: int = 0, hours: int = 0) -> datetime:
    """Start of a recency window ending now."""
    return datetime.utcnow() - timedelta(minutes=minutes, hours=hours)
