"""
Span Poller

Background loop that pulls recent spans from the trace source and feeds
them through the anomaly detector. Baselines are flushed to the history
store on a slower cadence.
"""

import asyncio
import logging
import os
import time
from collections import OrderedDict
from datetime import timedelta
from typing import Optional

from spanguard_ai.anomaly.detector import AnomalyDetector
from spanguard_ai.baseline.statistics import StatisticsEngine
from spanguard_ai.services.traces import TraceSource

logger = logging.getLogger(__name__)

# Trace ids remembered to avoid evaluating overlapping lookbacks twice
MAX_SEEN_TRACES = 1000
TRIM_SEEN_TO = 500


class SpanPoller:
    """
    Periodic span ingestion.

    Usage:
        poller = SpanPoller(trace_source, detector, engine)
        await poller.start()
    """

    def __init__(
        self,
        trace_source: TraceSource,
        detector: AnomalyDetector,
        engine: StatisticsEngine,
        poll_interval: Optional[float] = None,
        lookback: timedelta = timedelta(minutes=1),
        flush_interval: float = 60.0,
    ):
        self.trace_source = trace_source
        self.detector = detector
        self.engine = engine
        self.poll_interval = poll_interval or float(os.getenv("SPAN_POLL_INTERVAL", "10"))
        self.lookback = lookback
        self.flush_interval = flush_interval

        self._seen: OrderedDict[str, None] = OrderedDict()
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._last_flush = time.monotonic()

    async def start(self) -> None:
        """Start the polling loop."""
        if self._running:
            return

        self._running = True
        self._task = asyncio.create_task(self._polling_loop())
        logger.info(f"Span polling started (every {self.poll_interval}s)")

    async def stop(self) -> None:
        """Stop the polling loop and flush baselines."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        await self.engine.flush()
        logger.info("Span polling stopped")

    async def _polling_loop(self) -> None:
        while self._running:
            try:
                await self.poll_once()
            except Exception as e:
                logger.exception(f"Error in span polling loop: {e}")

            if time.monotonic() - self._last_flush >= self.flush_interval:
                await self.engine.flush()
                self._last_flush = time.monotonic()

            await asyncio.sleep(self.poll_interval)

    async def poll_once(self) -> int:
        """
        Evaluate spans from traces not seen before.

        Returns:
            Number of anomalies detected
        """
        spans = await self.trace_source.recent_spans(self.lookback)

        fresh_traces = {s.trace_id for s in spans if s.trace_id not in self._seen}
        fresh = [s for s in spans if s.trace_id in fresh_traces]
        if not fresh:
            return 0

        for trace_id in fresh_traces:
            self._seen[trace_id] = None
        if len(self._seen) > MAX_SEEN_TRACES:
            while len(self._seen) > TRIM_SEEN_TO:
                self._seen.popitem(last=False)

        anomalies = await self.detector.ingest(fresh)
        logger.debug(
            f"Polled {len(fresh)} spans from {len(fresh_traces)} traces, "
            f"{len(anomalies)} anomalies"
        )
        return len(anomalies)
