"""
Anomaly Detector

Compares each finished span against its learned latency baseline:
- Time-of-week bucket baseline when it has enough samples
- Overall per-operation baseline otherwise
- Cold start (no usable baseline) only learns

Deviations are ranked into SEV1..SEV5. SEV1-3 anomalies are pushed to live
dashboards as alerts and handed to the stream analyzer without waiting.
"""

import logging
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Optional

from spanguard_ai.anomaly.models import (
    Anomaly,
    DetectionPolicy,
    ServiceHealth,
    Severity,
    Span,
    classify,
)
from spanguard_ai.baseline.models import span_key, time_bucket
from spanguard_ai.baseline.statistics import StatisticsEngine
from spanguard_ai.live.hub import LiveChannelHub
from spanguard_ai.llm.stream import StreamAnalyzer
from spanguard_ai.services.storage import HistoryStore

logger = logging.getLogger(__name__)

ALERT_LEVELS = {
    Severity.CRITICAL: "critical",
    Severity.MAJOR: "high",
    Severity.MODERATE: "medium",
}


class AnomalyDetector:
    """
    Baseline-driven span latency anomaly detection.

    Usage:
        detector = AnomalyDetector(engine, history)
        anomaly = await detector.evaluate(span)
    """

    def __init__(
        self,
        engine: StatisticsEngine,
        history: HistoryStore,
        policy: Optional[DetectionPolicy] = None,
        hub: Optional[LiveChannelHub] = None,
        stream_analyzer: Optional[StreamAnalyzer] = None,
    ):
        self.engine = engine
        self.history = history
        self.policy = policy or DetectionPolicy()
        self.hub = hub
        self.stream_analyzer = stream_analyzer

    async def evaluate(self, span: Span) -> Optional[Anomaly]:
        """
        Check one span against its baseline, then learn from it.

        Returns:
            The anomaly, or None when the span is normal or no baseline is usable yet
        """
        key = span_key(span.service, span.operation)
        day_of_week, hour_of_day = time_bucket(span.timestamp)
        store = self.engine.store
        policy = self.policy

        bucket = store.get_bucket(key, day_of_week, hour_of_day)
        overall = store.get_overall(key)

        if bucket and bucket.sample_count >= policy.confidence_floor:
            mean, std_dev, source = bucket.mean, bucket.std_dev, "time_bucket"
            ladder = (
                bucket.thresholds.as_ladder()
                if policy.use_adaptive_thresholds
                else policy.ladder()
            )
        elif overall and overall.sample_count >= policy.min_overall_samples:
            mean, std_dev, source = overall.mean, overall.std_dev, "overall"
            ladder = policy.ladder()
        else:
            self.engine.observe_span(span)
            return None

        deviation = (span.duration_ms - mean) / max(std_dev, policy.min_std_dev)
        severity = classify(deviation, ladder)

        self.engine.observe_span(span)

        if severity is None:
            return None

        anomaly = Anomaly(
            id=f"{span.trace_id}-{span.span_id}",
            trace_id=span.trace_id,
            span_id=span.span_id,
            service=span.service,
            operation=span.operation,
            duration=span.duration_ms,
            expected_mean=round(mean, 2),
            expected_std_dev=round(std_dev, 2),
            deviation=round(deviation, 2),
            severity=int(severity),
            severity_name=severity.display_name,
            attributes=dict(span.attributes),
            day_of_week=day_of_week,
            hour_of_day=hour_of_day,
            created_at=datetime.utcnow(),
            baseline_source=source,
        )

        await self._record(anomaly)
        return anomaly

    async def _record(self, anomaly: Anomaly) -> None:
        try:
            await self.history.save_anomaly(anomaly)
        except Exception as e:
            logger.error(f"Failed to persist anomaly {anomaly.id}: {e}")

        if anomaly.severity > self.policy.alert_max_severity:
            return

        logger.info(
            f"SEV{anomaly.severity} anomaly: {anomaly.service}:{anomaly.operation} "
            f"{anomaly.duration:.1f}ms ({anomaly.deviation}σ, {anomaly.baseline_source})"
        )

        if self.hub:
            self.hub.alert(
                ALERT_LEVELS.get(Severity(anomaly.severity), "medium"),
                f"SEV{anomaly.severity} {anomaly.severity_name}: "
                f"{anomaly.service}:{anomaly.operation} took {anomaly.duration:.0f}ms",
                anomaly.summary(),
            )

        if self.stream_analyzer:
            self.stream_analyzer.enqueue(anomaly)

    async def ingest(self, spans: list[Span]) -> list[Anomaly]:
        """
        Evaluate a batch of spans.

        A span that fails evaluation is logged and skipped.
        """
        anomalies = []
        for span in spans:
            try:
                anomaly = await self.evaluate(span)
            except Exception as e:
                logger.error(f"Failed to evaluate span {span.trace_id}/{span.span_id}: {e}")
                continue
            if anomaly:
                anomalies.append(anomaly)
        return anomalies

    async def active_anomalies(
        self,
        window: Optional[timedelta] = None,
        min_severity: int = 5,
        service: Optional[str] = None,
    ) -> list[Anomaly]:
        """Anomalies within the recency window, newest first."""
        window = window or timedelta(minutes=self.policy.active_window_minutes)
        since = datetime.utcnow() - window
        return await self.history.list_anomalies(
            since, service=service, min_severity=min_severity
        )

    async def service_health(self) -> list[ServiceHealth]:
        """Per-service status from baselines and active anomalies."""
        active = await self.active_anomalies()
        severities: dict[str, list[int]] = defaultdict(list)
        for anomaly in active:
            severities[anomaly.service].append(anomaly.severity)

        by_service = defaultdict(list)
        for baseline in self.engine.store.overall_baselines():
            by_service[baseline.service].append(baseline)

        health = []
        for service in sorted(by_service):
            baselines = by_service[service]
            levels = severities.get(service, [])

            if any(s <= Severity.MAJOR for s in levels):
                status = "critical"
            elif levels and min(levels) <= Severity.MINOR:
                status = "warning"
            else:
                status = "healthy"

            health.append(ServiceHealth(
                name=service,
                status=status,
                avg_duration=round(sum(b.mean for b in baselines) / len(baselines), 2),
                span_count=sum(b.sample_count for b in baselines),
                active_anomalies=len(levels),
                last_seen=max(b.updated_at for b in baselines),
            ))

        return health
