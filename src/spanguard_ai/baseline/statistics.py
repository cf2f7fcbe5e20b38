"""
Statistics Engine

Maintains latency baselines two ways:
- Online: each observed span updates its overall and time-bucket baselines
  with Welford's algorithm (no raw samples are kept)
- Batch: a full rebuild from the trace source over a historical window,
  computed with numpy and swapped into the store atomically

The running second moment is recovered from the stored variance, so a rebuilt
baseline and incremental updates compose without hidden state.
"""

import asyncio
import logging
import math
import time
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Optional

import numpy as np

from spanguard_ai.anomaly.models import Span
from spanguard_ai.baseline.models import (
    AdaptiveThresholds,
    EngineStatus,
    OverallBaseline,
    RecomputeResult,
    TimeBaseline,
    span_key,
    time_bucket,
)
from spanguard_ai.baseline.store import BaselineStore
from spanguard_ai.services.storage import HistoryStore
from spanguard_ai.services.traces import TraceSource

logger = logging.getLogger(__name__)

DEFAULT_WINDOW = timedelta(days=30)

# Minimum bucket samples before thresholds are learned from data
MIN_THRESHOLD_SAMPLES = 10

# (percentile, floor) per severity, SEV1 first
THRESHOLD_PERCENTILES = {
    "sev1": (99.9, 2.5),
    "sev2": (99.0, 2.0),
    "sev3": (95.0, 1.5),
    "sev4": (90.0, 1.0),
    "sev5": (80.0, 0.5),
}


def learn_thresholds(
    durations: np.ndarray,
    mean: float,
    std_dev: float,
    min_std_dev: float = 1.0,
) -> AdaptiveThresholds:
    """
    Derive per-severity cutoffs from the positive deviations of a bucket.

    Buckets with fewer than MIN_THRESHOLD_SAMPLES samples, or no span above
    the mean, keep the defaults.
    """
    if len(durations) < MIN_THRESHOLD_SAMPLES:
        return AdaptiveThresholds()

    deviations = (durations - mean) / max(std_dev, min_std_dev)
    positive = np.sort(deviations[deviations > 0])
    if len(positive) == 0:
        return AdaptiveThresholds()

    learned = {
        name: max(float(np.percentile(positive, pct)), floor)
        for name, (pct, floor) in THRESHOLD_PERCENTILES.items()
    }
    return AdaptiveThresholds(**learned)


class StatisticsEngine:
    """
    Online and batch baseline computation.

    Usage:
        engine = StatisticsEngine(store, trace_source, history)
        engine.observe("api-gateway:GET /orders", "api-gateway", "GET /orders", 42.0, now)
        result = await engine.recompute()
    """

    def __init__(
        self,
        store: BaselineStore,
        trace_source: TraceSource,
        history: Optional[HistoryStore] = None,
        min_std_dev: float = 1.0,
    ):
        self.store = store
        self.trace_source = trace_source
        self.history = history
        self.min_std_dev = min_std_dev

        self._calculating = False
        self._last_calculation: Optional[datetime] = None

    # -------------------------------------------------------------------------
    # Online updates
    # -------------------------------------------------------------------------

    def observe(
        self,
        key: str,
        service: str,
        operation: str,
        duration_ms: float,
        timestamp: datetime,
    ) -> None:
        """Fold one span duration into its overall and bucket baselines."""
        day_of_week, hour_of_day = time_bucket(timestamp)
        now = datetime.utcnow()

        def apply(overall: OverallBaseline, bucket: TimeBaseline) -> None:
            # Overall: population variance
            n = overall.sample_count
            m2 = overall.variance * n
            n += 1
            delta = duration_ms - overall.mean
            overall.mean += delta / n
            m2 += delta * (duration_ms - overall.mean)
            overall.variance = m2 / n
            overall.std_dev = math.sqrt(overall.variance)
            # Range is seeded once; after that only recompute refreshes it
            if n == 1:
                overall.min = overall.max = duration_ms
            overall.sample_count = n
            overall.updated_at = now

            # Bucket: sample variance
            n = bucket.sample_count
            m2 = bucket.std_dev ** 2 * max(n - 1, 0)
            n += 1
            delta = duration_ms - bucket.mean
            bucket.mean += delta / n
            m2 += delta * (duration_ms - bucket.mean)
            bucket.std_dev = math.sqrt(m2 / (n - 1)) if n > 1 else 0.0
            bucket.sample_count = n
            bucket.updated_at = now

        self.store.update(key, service, operation, day_of_week, hour_of_day, apply)

    def observe_span(self, span: Span) -> None:
        self.observe(
            span_key(span.service, span.operation),
            span.service,
            span.operation,
            span.duration_ms,
            span.timestamp,
        )

    # -------------------------------------------------------------------------
    # Batch rebuild
    # -------------------------------------------------------------------------

    @property
    def is_calculating(self) -> bool:
        return self._calculating

    async def recompute(self, window: timedelta = DEFAULT_WINDOW) -> RecomputeResult:
        """
        Rebuild every baseline from spans in the last `window`.

        Never raises: failures are reported through the result.
        """
        if self._calculating:
            return RecomputeResult(
                success=False,
                baselines_count=0,
                duration_ms=0,
                message="Calculation already in progress",
            )

        self._calculating = True
        start = time.time()

        try:
            end_at = datetime.now(timezone.utc)
            try:
                spans = await self.trace_source.fetch_spans(end_at - window, end_at)
            except Exception as e:
                logger.error(f"Baseline recalculation could not fetch spans: {e}")
                return RecomputeResult(
                    success=False,
                    baselines_count=0,
                    duration_ms=(time.time() - start) * 1000,
                    message=f"Failed to fetch spans: {e}",
                )

            if not spans:
                return RecomputeResult(
                    success=False,
                    baselines_count=0,
                    duration_ms=(time.time() - start) * 1000,
                    message=f"No spans found in the last {window}",
                )

            overall, buckets = await asyncio.to_thread(self.build_baselines, spans)
            self.store.swap(overall, buckets)
            self._last_calculation = datetime.utcnow()

            await self._persist(overall, buckets)

            duration_ms = (time.time() - start) * 1000
            logger.info(
                f"Recalculated {len(overall)} baselines and {len(buckets)} time buckets "
                f"from {len(spans)} spans in {duration_ms:.0f}ms"
            )
            return RecomputeResult(
                success=True,
                baselines_count=len(overall),
                duration_ms=duration_ms,
                message=f"Calculated {len(overall)} baselines ({len(buckets)} time buckets)",
                spans_processed=len(spans),
            )

        finally:
            self._calculating = False

    def build_baselines(
        self, spans: list[Span]
    ) -> tuple[list[OverallBaseline], list[TimeBaseline]]:
        """Compute a fresh baseline set. Output depends only on the spans given."""
        names: dict[str, tuple[str, str]] = {}
        by_key: dict[str, list[float]] = defaultdict(list)
        by_bucket: dict[tuple[str, int, int], list[float]] = defaultdict(list)

        for span in spans:
            key = span_key(span.service, span.operation)
            names[key] = (span.service, span.operation)
            by_key[key].append(span.duration_ms)
            by_bucket[(key, *time_bucket(span.timestamp))].append(span.duration_ms)

        now = datetime.utcnow()
        overall = []
        for key in sorted(by_key):
            values = np.sort(np.asarray(by_key[key], dtype=float))
            p50, p95, p99 = np.percentile(values, [50, 95, 99])
            variance = float(np.var(values))
            service, operation = names[key]
            overall.append(OverallBaseline(
                span_key=key,
                service=service,
                operation=operation,
                mean=float(np.mean(values)),
                std_dev=math.sqrt(variance),
                variance=variance,
                p50=float(p50),
                p95=float(p95),
                p99=float(p99),
                min=float(values[0]),
                max=float(values[-1]),
                sample_count=len(values),
                updated_at=now,
            ))

        buckets = []
        for bucket_key in sorted(by_bucket):
            key, day_of_week, hour_of_day = bucket_key
            values = np.sort(np.asarray(by_bucket[bucket_key], dtype=float))
            mean = float(np.mean(values))
            std_dev = float(np.std(values, ddof=1)) if len(values) > 1 else 0.0
            service, operation = names[key]
            buckets.append(TimeBaseline(
                span_key=key,
                service=service,
                operation=operation,
                day_of_week=day_of_week,
                hour_of_day=hour_of_day,
                mean=mean,
                std_dev=std_dev,
                sample_count=len(values),
                thresholds=learn_thresholds(values, mean, std_dev, self.min_std_dev),
                updated_at=now,
            ))

        return overall, buckets

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    async def _persist(
        self,
        overall: list[OverallBaseline],
        buckets: list[TimeBaseline],
    ) -> None:
        if self.history is None:
            return
        try:
            await self.history.save_baselines(overall, buckets)
        except Exception as e:
            logger.warning(f"Failed to persist baselines: {e}")

    async def flush(self) -> None:
        """Persist the current baseline snapshot."""
        overall = self.store.overall_baselines()
        if overall:
            await self._persist(overall, self.store.time_baselines())

    async def load(self) -> int:
        """
        Restore the last persisted snapshot into the store.

        Returns:
            Number of overall baselines loaded
        """
        if self.history is None:
            return 0
        try:
            overall, buckets = await self.history.load_baselines()
        except Exception as e:
            logger.warning(f"Failed to load baselines: {e}")
            return 0

        if overall:
            self.store.swap(overall, buckets)
            logger.info(f"Loaded {len(overall)} baselines and {len(buckets)} time buckets")
        return len(overall)

    def status(self) -> EngineStatus:
        overall_count, _ = self.store.counts()
        return EngineStatus(
            is_calculating=self._calculating,
            last_calculation=self._last_calculation,
            baseline_count=overall_count,
        )
