"""
Tests for baseline learning.

Covers online Welford updates, full rebuilds, adaptive thresholds and the
baseline store's copy/swap semantics.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import numpy as np
import pytest

from spanguard_ai.baseline.models import (
    AdaptiveThresholds,
    span_key,
    time_bucket,
)
from spanguard_ai.baseline.statistics import StatisticsEngine, learn_thresholds
from spanguard_ai.baseline.store import BaselineStore
from spanguard_ai.services.storage import HistoryStore, InMemoryHistoryStore
from spanguard_ai.services.traces import TraceSource

from conftest import KEY, MONDAY_2PM, OPERATION, SERVICE, make_bucket, make_overall, make_span


def _comparable(baselines):
    rows = []
    for b in baselines:
        data = b.to_dict()
        data.pop("updated_at")
        rows.append(data)
    return rows


class TestTimeBucket:
    """Tests for day/hour bucketing."""

    def test_monday_afternoon(self):
        """Monday 14:05 lands in bucket (1, 14)."""
        assert time_bucket(MONDAY_2PM) == (1, 14)

    def test_sunday_is_zero(self):
        """Sunday is day 0."""
        assert time_bucket(datetime(2024, 1, 14, 0, 30)) == (0, 0)

    def test_saturday_is_six(self):
        """Saturday is day 6."""
        assert time_bucket(datetime(2024, 1, 20, 23, 59)) == (6, 23)

    def test_aware_timestamp_uses_local_time(self):
        """Aware timestamps are bucketed in local time."""
        aware = datetime(2024, 1, 15, 14, 5, tzinfo=timezone.utc)
        local = aware.astimezone()
        assert time_bucket(aware) == ((local.weekday() + 1) % 7, local.hour)

    def test_span_key(self):
        """Span keys join service and operation."""
        assert span_key("api-gateway", "GET /orders") == "api-gateway:GET /orders"


class TestBaselineStore:
    """Tests for BaselineStore."""

    def test_reads_return_copies(self, store):
        """Mutating a returned overall baseline leaves the store intact."""
        store.swap([make_overall()], [])

        copy = store.get_overall(KEY)
        copy.mean = 9999.0

        assert store.get_overall(KEY).mean == 100.0

    def test_bucket_reads_copy_thresholds(self, store):
        """Mutating a returned bucket leaves the stored thresholds intact."""
        store.swap([make_overall()], [make_bucket(100.0, 10.0, 50)])

        copy = store.get_bucket(KEY, 1, 14)
        copy.thresholds.sev1 = 99.0
        store.time_baselines()[0].thresholds.sev2 = 99.0

        stored = store.get_bucket(KEY, 1, 14).thresholds
        assert stored.sev1 != 99.0
        assert stored.sev2 != 99.0

    def test_missing_key(self, store):
        """Unknown keys read as None."""
        assert store.get_overall("nope:nope") is None
        assert store.get_bucket("nope:nope", 1, 14) is None

    def test_swap_replaces_everything(self, store):
        """A swap drops records absent from the new set."""
        store.swap([make_overall()], [])
        store.swap([make_overall(service="billing", operation="charge")], [])

        assert store.get_overall(KEY) is None
        assert store.counts() == (1, 0)

    def test_update_creates_records(self, store):
        """Update creates both records on first use."""
        seen = []
        store.update(KEY, SERVICE, OPERATION, 1, 14, lambda o, b: seen.append((o, b)))

        overall, bucket = seen[0]
        assert overall.span_key == KEY
        assert (bucket.day_of_week, bucket.hour_of_day) == (1, 14)
        assert store.counts() == (1, 1)

    def test_reset(self, store):
        """Reset empties the store."""
        store.swap([make_overall()], [])
        store.reset()
        assert store.counts() == (0, 0)
        assert store.last_updated() is None


class TestWelfordObserve:
    """Tests for online baseline updates."""

    DURATIONS = [10.0, 20.0, 30.0, 40.0, 1000.0]

    def test_overall_matches_population_statistics(self, engine, store):
        """Overall mean and variance match numpy's population figures."""
        for d in self.DURATIONS:
            engine.observe_span(make_span(d))

        overall = store.get_overall(KEY)
        assert overall.sample_count == 5
        assert overall.mean == pytest.approx(np.mean(self.DURATIONS))
        assert overall.variance == pytest.approx(np.var(self.DURATIONS))
        assert overall.std_dev == pytest.approx(np.std(self.DURATIONS))
        # Range comes from the first sample until a recompute
        assert overall.min == overall.max == 10.0

    def test_bucket_matches_sample_statistics(self, engine, store):
        """Bucket std matches numpy's sample std."""
        for d in self.DURATIONS:
            engine.observe_span(make_span(d))

        bucket = store.get_bucket(KEY, 1, 14)
        assert bucket.sample_count == 5
        assert bucket.mean == pytest.approx(np.mean(self.DURATIONS))
        assert bucket.std_dev == pytest.approx(np.std(self.DURATIONS, ddof=1))

    def test_single_sample_has_zero_spread(self, engine, store):
        """One sample gives zero deviation."""
        engine.observe_span(make_span(42.0))

        assert store.get_overall(KEY).std_dev == 0.0
        assert store.get_bucket(KEY, 1, 14).std_dev == 0.0

    def test_percentiles_untouched(self, engine, store):
        """Observe leaves percentiles and range to recompute."""
        store.swap([make_overall()], [])
        engine.observe_span(make_span(500.0))

        overall = store.get_overall(KEY)
        assert overall.p50 == 100.0
        assert overall.p99 == 130.0
        assert overall.min == 70.0
        assert overall.max == 130.0

    def test_different_hours_use_different_buckets(self, engine, store):
        """Each hour gets its own bucket."""
        engine.observe_span(make_span(10.0))
        engine.observe_span(make_span(10.0, timestamp=MONDAY_2PM + timedelta(hours=1)))

        assert store.counts() == (1, 2)
        assert store.get_overall(KEY).sample_count == 2


def _engine_with_spans(spans, history=None):
    source = MagicMock(spec=TraceSource)
    source.fetch_spans = AsyncMock(return_value=spans)
    return StatisticsEngine(BaselineStore(), source, history or InMemoryHistoryStore())


class TestRecompute:
    """Tests for full baseline rebuilds."""

    @pytest.fixture
    def spans(self):
        rng = np.random.default_rng(7)
        spans = []
        for i, d in enumerate(rng.normal(100, 10, 200)):
            spans.append(make_span(
                float(d),
                timestamp=MONDAY_2PM + timedelta(hours=i % 3),
                trace_id=f"t{i}",
                span_id=f"s{i}",
            ))
        return spans

    @pytest.mark.asyncio
    async def test_builds_overall_and_buckets(self, spans):
        """Recompute builds overall and bucket baselines from spans."""
        engine = _engine_with_spans(spans)

        result = await engine.recompute()

        assert result.success
        assert result.baselines_count == 1
        assert result.spans_processed == 200
        durations = [s.duration_ms for s in spans]
        overall = engine.store.get_overall(KEY)
        assert overall.mean == pytest.approx(np.mean(durations))
        assert overall.variance == pytest.approx(np.var(durations))
        assert overall.std_dev ** 2 == pytest.approx(overall.variance)
        assert overall.p50 <= overall.p95 <= overall.p99
        assert engine.store.counts() == (1, 3)

    @pytest.mark.asyncio
    async def test_idempotent(self, spans):
        """Recomputing the same spans gives the same baselines."""
        first = _engine_with_spans(spans)
        second = _engine_with_spans(spans)

        await first.recompute()
        await second.recompute()
        await second.recompute()

        assert _comparable(first.store.overall_baselines()) == _comparable(second.store.overall_baselines())
        assert _comparable(first.store.time_baselines()) == _comparable(second.store.time_baselines())

    @pytest.mark.asyncio
    async def test_observe_after_recompute_composes(self):
        """Observations continue from the recomputed statistics."""
        before = [10.0, 20.0, 30.0, 40.0]
        after = [50.0, 60.0]
        engine = _engine_with_spans([
            make_span(d, trace_id=f"t{i}") for i, d in enumerate(before)
        ])

        await engine.recompute()
        for d in after:
            engine.observe_span(make_span(d))

        combined = before + after
        overall = engine.store.get_overall(KEY)
        bucket = engine.store.get_bucket(KEY, 1, 14)
        assert overall.mean == pytest.approx(np.mean(combined))
        assert overall.variance == pytest.approx(np.var(combined))
        assert bucket.std_dev == pytest.approx(np.std(combined, ddof=1))

    @pytest.mark.asyncio
    async def test_empty_input_fails(self):
        """No spans means an unsuccessful rebuild."""
        engine = _engine_with_spans([])

        result = await engine.recompute()

        assert not result.success
        assert "No spans" in result.message
        assert engine.store.counts() == (0, 0)

    @pytest.mark.asyncio
    async def test_source_failure_does_not_raise(self):
        """A failing trace source is reported, not raised."""
        source = MagicMock(spec=TraceSource)
        source.fetch_spans = AsyncMock(side_effect=ConnectionError("jaeger down"))
        engine = StatisticsEngine(BaselineStore(), source)
        engine.store.swap([make_overall()], [])

        result = await engine.recompute()

        assert not result.success
        assert "jaeger down" in result.message
        # Existing baselines survive a failed rebuild
        assert engine.store.get_overall(KEY) is not None
        assert not engine.status().is_calculating

    @pytest.mark.asyncio
    async def test_concurrent_call_rejected(self, spans):
        """A second rebuild while one is running is refused."""
        gate = asyncio.Event()

        async def slow_fetch(start, end):
            await gate.wait()
            return spans

        source = MagicMock(spec=TraceSource)
        source.fetch_spans = AsyncMock(side_effect=slow_fetch)
        engine = StatisticsEngine(BaselineStore(), source)

        first = asyncio.create_task(engine.recompute())
        await asyncio.sleep(0)
        assert engine.status().is_calculating

        second = await engine.recompute()
        assert not second.success
        assert second.message == "Calculation already in progress"

        gate.set()
        assert (await first).success

    @pytest.mark.asyncio
    async def test_persists_to_history(self, spans):
        """A successful rebuild is saved to history."""
        history = InMemoryHistoryStore()
        engine = _engine_with_spans(spans, history)

        await engine.recompute()

        overall, buckets = await history.load_baselines()
        assert len(overall) == 1
        assert len(buckets) == 3

    @pytest.mark.asyncio
    async def test_persist_failure_still_succeeds(self, spans):
        """Failing to persist does not undo the swap."""
        history = MagicMock(spec=HistoryStore)
        history.save_baselines = AsyncMock(side_effect=RuntimeError("clickhouse down"))
        engine = _engine_with_spans(spans, history)

        result = await engine.recompute()

        assert result.success

    @pytest.mark.asyncio
    async def test_load_restores_snapshot(self, spans):
        """Saved baselines are loaded back into the store."""
        history = InMemoryHistoryStore()
        await _engine_with_spans(spans, history).recompute()

        fresh = StatisticsEngine(BaselineStore(), MagicMock(spec=TraceSource), history)
        loaded = await fresh.load()

        assert loaded == 1
        assert fresh.status().baseline_count == 1

    @pytest.mark.asyncio
    async def test_flush_writes_current_state(self, engine, history):
        """Flush saves what the store holds now."""
        engine.observe_span(make_span(10.0))

        await engine.flush()

        overall, _ = await history.load_baselines()
        assert overall[0].sample_count == 1


class TestLearnThresholds:
    """Tests for adaptive per-bucket thresholds."""

    def test_defaults_below_minimum_samples(self):
        """Too few samples keep default thresholds."""
        values = np.array([100.0] * 9)
        assert learn_thresholds(values, 100.0, 0.0) == AdaptiveThresholds()

    def test_defaults_without_positive_deviation(self):
        """Defaults apply when nothing exceeds the mean."""
        values = np.array([100.0] * 20)
        assert learn_thresholds(values, 100.0, 0.0) == AdaptiveThresholds()

    def test_floors_apply(self):
        """Learned thresholds never drop below their floors."""
        # Tiny positive deviations fall below every floor
        values = np.array([100.0] * 15 + [100.1] * 5)
        thresholds = learn_thresholds(values, 100.0, 10.0)

        assert thresholds.sev1 == 2.5
        assert thresholds.sev2 == 2.0
        assert thresholds.sev3 == 1.5
        assert thresholds.sev4 == 1.0
        assert thresholds.sev5 == 0.5

    def test_ordered_most_severe_first(self):
        """Learned thresholds decrease from SEV1 to SEV5."""
        rng = np.random.default_rng(1)
        values = rng.lognormal(4, 0.8, 500)
        mean, std = float(values.mean()), float(values.std(ddof=1))

        ladder = [cutoff for _, cutoff in learn_thresholds(values, mean, std).as_ladder()]

        assert ladder == sorted(ladder, reverse=True)
