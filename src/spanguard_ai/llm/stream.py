"""
Stream Analyzer

Batches actionable anomalies and streams LLM triage to live dashboards.

Anomalies are buffered in a bounded queue; one worker drains it in batches of
up to BATCH_SIZE, or whatever arrived within BATCH_TIMEOUT of the first
anomaly. Each batch is announced with `analysis-start`, streamed fragment by
fragment as `analysis-chunk`, and closed with `analysis-complete`.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from prometheus_client import Counter, Gauge, Histogram

from spanguard_ai.anomaly.models import Anomaly
from spanguard_ai.live.hub import LiveChannelHub
from spanguard_ai.llm.client import LLMClient, Message
from spanguard_ai.llm.prompts import BatchStreamPrompt

logger = logging.getLogger(__name__)

BATCH_SIZE = 10
BATCH_TIMEOUT = 30.0
MAX_QUEUE_SIZE = 100
STREAM_MAX_TOKENS = 400

# Prometheus metrics
ANALYSIS_TOTAL = Counter(
    "spanguard_llm_analysis_total",
    "Total LLM anomaly analyses performed",
    ["status", "use_case"],
)
EVENTS_BY_SEVERITY = Counter(
    "spanguard_llm_events_by_severity_total",
    "Anomaly events sent to the LLM by severity level",
    ["severity"],
)
ANALYSIS_DURATION = Histogram(
    "spanguard_llm_analysis_duration_seconds",
    "Time to complete a streamed LLM analysis",
    buckets=[1, 2, 5, 10, 20, 30, 60],
)
QUEUE_DEPTH = Gauge(
    "spanguard_llm_queue_depth",
    "Anomalies waiting for LLM analysis",
)
DROPPED_EVENTS = Counter(
    "spanguard_llm_dropped_events_total",
    "Events dropped due to queue saturation or LLM errors",
    ["reason"],
)


def _status_code(anomaly: Anomaly) -> int:
    try:
        return int(anomaly.attributes.get("http.status_code") or 0)
    except (TypeError, ValueError):
        return 0


def _error_message(anomaly: Anomaly) -> str:
    return str(anomaly.attributes.get("error.message") or "").lower()


@dataclass(frozen=True)
class UseCase:
    """A known incident pattern. P0 patterns page immediately."""

    id: str
    name: str
    priority: str  # P0, P1, P2
    hint: str
    match: Callable[[Anomaly], bool]


USE_CASES = [
    UseCase(
        id="payment-gateway-down",
        name="Payment Gateway Down",
        priority="P0",
        hint="Payment gateway failure detected. Check provider status, failover options.",
        match=lambda a: "payment" in a.service and (
            _status_code(a) >= 500 or a.attributes.get("error") is True
        ),
    ),
    UseCase(
        id="cert-expired",
        name="Certificate Expired",
        priority="P0",
        hint="TLS/SSL certificate issue. Check cert expiry, renew or contact provider.",
        match=lambda a: "cert" in _error_message(a) or "ssl" in _error_message(a),
    ),
    UseCase(
        id="dos-attack",
        name="DoS Attack",
        priority="P0",
        hint="Rate limiting triggered. Possible DoS. Enable WAF, check traffic patterns.",
        match=lambda a: "gateway" in a.service and _status_code(a) == 429,
    ),
    UseCase(
        id="auth-down",
        name="Auth Service Down",
        priority="P0",
        hint="Auth service failure. All user operations blocked.",
        match=lambda a: "auth" in a.service and _status_code(a) >= 500,
    ),
    UseCase(
        id="cloud-degradation",
        name="Cloud Provider Issue",
        priority="P1",
        hint="Multi-service latency spike. Check cloud provider status page.",
        match=lambda a: a.deviation > 5 and a.duration > a.expected_mean * 3,
    ),
    UseCase(
        id="queue-backlog",
        name="Queue Backlog",
        priority="P1",
        hint="Processing delayed. Check queue depth, consumer health.",
        match=lambda a: "matcher" in a.service or "order" in a.service,
    ),
    UseCase(
        id="third-party-timeout",
        name="Third Party Timeout",
        priority="P1",
        hint="External service timeout. Consider fallback, async processing.",
        match=lambda a: a.duration > 10_000 and (
            "external" in a.operation or "api" in a.operation
        ),
    ),
    UseCase(
        id="db-exhaustion",
        name="Database Issue",
        priority="P2",
        hint="Database performance issue. Check connection pool, query optimization.",
        match=lambda a: "query" in a.operation.lower() or "db" in a.operation.lower(),
    ),
    UseCase(
        id="generic-anomaly",
        name="Performance Anomaly",
        priority="P2",
        hint="Performance anomaly detected. Review trace for bottleneck.",
        match=lambda a: True,
    ),
]


def classify_use_case(anomaly: Anomaly) -> UseCase:
    """First matching use case. The generic pattern matches everything."""
    return next(uc for uc in USE_CASES if uc.match(anomaly))


def primary_use_case(batch: list[Anomaly]) -> UseCase:
    """Highest-ranked use case matched by any anomaly in the batch."""
    return next(uc for uc in USE_CASES if any(uc.match(a) for a in batch))


class StreamAnalyzer:
    """
    Background LLM triage of actionable anomalies.

    Usage:
        analyzer = StreamAnalyzer(llm, hub)
        await analyzer.start()
        analyzer.enqueue(anomaly)  # never blocks
    """

    def __init__(
        self,
        llm: LLMClient,
        hub: LiveChannelHub,
        batch_size: int = BATCH_SIZE,
        batch_timeout: float = BATCH_TIMEOUT,
        max_queue: int = MAX_QUEUE_SIZE,
    ):
        self.llm = llm
        self.hub = hub
        self.batch_size = batch_size
        self.batch_timeout = batch_timeout
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_queue)
        self._worker_task: Optional[asyncio.Task] = None
        QUEUE_DEPTH.set(0)

    @property
    def queue_depth(self) -> int:
        return self._queue.qsize()

    async def start(self) -> None:
        if self._worker_task is None:
            self._worker_task = asyncio.create_task(self._worker())
            logger.info("Stream analyzer started")

    async def stop(self) -> None:
        if self._worker_task:
            self._worker_task.cancel()
            try:
                await self._worker_task
            except asyncio.CancelledError:
                pass
            self._worker_task = None
            logger.info("Stream analyzer stopped")

    def enqueue(self, anomaly: Anomaly) -> bool:
        """
        Buffer an anomaly for batch analysis.

        Returns:
            False when the queue is full and the anomaly was dropped
        """
        EVENTS_BY_SEVERITY.labels(severity=f"sev{anomaly.severity}").inc()

        use_case = classify_use_case(anomaly)
        if use_case.priority == "P0":
            self.hub.alert("critical", f"{use_case.name}: {anomaly.service}", {
                "anomaly_id": anomaly.id,
                "service": anomaly.service,
                "operation": anomaly.operation,
                "duration": anomaly.duration,
                "use_case": use_case.id,
            })

        try:
            self._queue.put_nowait(anomaly)
        except asyncio.QueueFull:
            DROPPED_EVENTS.labels(reason="queue_full").inc()
            logger.warning(f"LLM queue saturated, dropping anomaly {anomaly.id}")
            return False

        QUEUE_DEPTH.set(self._queue.qsize())
        logger.debug(f"Buffered anomaly {anomaly.id} ({self._queue.qsize()} queued)")
        return True

    async def _next_batch(self) -> list[Anomaly]:
        batch = [await self._queue.get()]
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.batch_timeout

        while len(batch) < self.batch_size:
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            try:
                batch.append(await asyncio.wait_for(self._queue.get(), remaining))
            except asyncio.TimeoutError:
                break

        QUEUE_DEPTH.set(self._queue.qsize())
        return batch

    async def _worker(self) -> None:
        while True:
            batch = await self._next_batch()
            await self.process_batch(batch)

    async def process_batch(self, batch: list[Anomaly]) -> str:
        """
        Stream one batch analysis to the live channel.

        Returns:
            The full analysis text, or the failure message
        """
        anomaly_ids = [a.id for a in batch]
        use_case = primary_use_case(batch)
        hints = sorted({classify_use_case(a).hint for a in batch})
        prompt = BatchStreamPrompt(anomalies=batch, hints=hints).render()

        logger.info(f"Processing anomaly batch of {len(batch)} ({use_case.id})")
        self.hub.analysis_start(anomaly_ids)
        start = time.time()

        try:
            fragments = []
            async for chunk in self.llm.chat_stream(
                [Message(role="user", content=prompt)],
                max_tokens=STREAM_MAX_TOKENS,
            ):
                fragments.append(chunk)
                self.hub.analysis_chunk(chunk, anomaly_ids)

            text = "".join(fragments)
            self.hub.analysis_complete(text, anomaly_ids)

            ANALYSIS_DURATION.observe(time.time() - start)
            ANALYSIS_TOTAL.labels(status="success", use_case=use_case.id).inc()
            return text

        except Exception as e:
            logger.error(f"Analysis batch processing failed: {e}")
            message = f"Analysis failed: {e}"
            self.hub.analysis_complete(message, anomaly_ids)

            ANALYSIS_TOTAL.labels(status="error", use_case=use_case.id).inc()
            DROPPED_EVENTS.labels(reason="llm_error").inc()
            return message
