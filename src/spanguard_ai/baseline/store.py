"""
Baseline Store

In-process home of the learned baselines. Holds one OverallBaseline per span
key and one TimeBaseline per (span key, day of week, hour of day) bucket.

Updates for a span key are serialized by a per-key lock, so observations for
different keys never contend. A full rebuild replaces the whole baseline set
with a single reference assignment, so readers see either the old set or the
new one, never a mix.
"""

import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Callable, Optional

from spanguard_ai.baseline.models import OverallBaseline, TimeBaseline

logger = logging.getLogger(__name__)

BucketKey = tuple[str, int, int]


@dataclass
class _BaselineSet:
    overall: dict[str, OverallBaseline] = field(default_factory=dict)
    buckets: dict[BucketKey, TimeBaseline] = field(default_factory=dict)


def _copy_bucket(baseline: TimeBaseline) -> TimeBaseline:
    return replace(baseline, thresholds=replace(baseline.thresholds))


class BaselineStore:
    """
    Thread-safe store of overall and time-bucketed baselines.

    Callers never receive live records: every read returns a copy, and all
    mutation goes through `update` or `swap`.
    """

    def __init__(self):
        self._current = _BaselineSet()
        self._key_locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, key: str) -> threading.Lock:
        lock = self._key_locks.get(key)
        if lock is None:
            with self._locks_guard:
                lock = self._key_locks.setdefault(key, threading.Lock())
        return lock

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get_overall(self, key: str) -> Optional[OverallBaseline]:
        """Get a copy of the overall baseline for a span key."""
        current = self._current
        with self._lock_for(key):
            baseline = current.overall.get(key)
            return replace(baseline) if baseline else None

    def get_bucket(
        self, key: str, day_of_week: int, hour_of_day: int
    ) -> Optional[TimeBaseline]:
        """Get a copy of the time baseline for a bucket."""
        current = self._current
        with self._lock_for(key):
            baseline = current.buckets.get((key, day_of_week, hour_of_day))
            return _copy_bucket(baseline) if baseline else None

    def overall_baselines(self) -> list[OverallBaseline]:
        """Copies of all overall baselines."""
        current = self._current
        result = []
        for key in list(current.overall.keys()):
            with self._lock_for(key):
                baseline = current.overall.get(key)
                if baseline:
                    result.append(replace(baseline))
        return result

    def time_baselines(self) -> list[TimeBaseline]:
        """Copies of all time-bucket baselines."""
        current = self._current
        result = []
        for bucket_key in list(current.buckets.keys()):
            with self._lock_for(bucket_key[0]):
                baseline = current.buckets.get(bucket_key)
                if baseline:
                    result.append(_copy_bucket(baseline))
        return result

    def counts(self) -> tuple[int, int]:
        """Number of (overall, bucket) baselines."""
        current = self._current
        return len(current.overall), len(current.buckets)

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def update(
        self,
        key: str,
        service: str,
        operation: str,
        day_of_week: int,
        hour_of_day: int,
        updater: Callable[[OverallBaseline, TimeBaseline], None],
    ) -> None:
        """
        Apply `updater` to the records of a span key under its lock.

        Records are created on first use.
        """
        current = self._current
        with self._lock_for(key):
            overall = current.overall.get(key)
            if overall is None:
                overall = OverallBaseline(
                    span_key=key, service=service, operation=operation
                )
                current.overall[key] = overall

            bucket_key = (key, day_of_week, hour_of_day)
            bucket = current.buckets.get(bucket_key)
            if bucket is None:
                bucket = TimeBaseline(
                    span_key=key,
                    service=service,
                    operation=operation,
                    day_of_week=day_of_week,
                    hour_of_day=hour_of_day,
                )
                current.buckets[bucket_key] = bucket

            updater(overall, bucket)

    def swap(
        self,
        overall: list[OverallBaseline],
        buckets: list[TimeBaseline],
    ) -> None:
        """Atomically replace the whole baseline set."""
        new_set = _BaselineSet(
            overall={b.span_key: replace(b) for b in overall},
            buckets={b.bucket_key: _copy_bucket(b) for b in buckets},
        )
        self._current = new_set
        logger.debug(
            f"Swapped baseline set: {len(new_set.overall)} overall, "
            f"{len(new_set.buckets)} buckets"
        )

    def reset(self) -> None:
        """Drop every baseline."""
        self._current = _BaselineSet()
        logger.info("Baseline store reset")

    def last_updated(self) -> Optional[datetime]:
        baselines = self.overall_baselines()
        if not baselines:
            return None
        return max(b.updated_at for b in baselines)
