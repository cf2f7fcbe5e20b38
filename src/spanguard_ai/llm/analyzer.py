"""
Anomaly Explainer

Request/response LLM analysis of a single anomaly:
1. Find the anomaly in recent history (placeholder when unknown)
2. Correlate infrastructure metrics (best-effort)
3. Fetch the full trace for context (best-effort)
4. Render a deterministic prompt, call the LLM, parse the structured answer

The exact prompt and the raw response are returned unaltered alongside the
parsed fields, so every analysis can later become a training example.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from spanguard_ai.anomaly.models import Anomaly, Severity
from spanguard_ai.correlation.correlator import MetricsCorrelator
from spanguard_ai.correlation.models import CorrelatedMetrics
from spanguard_ai.llm.client import LLMClient, Message
from spanguard_ai.llm.prompts import AnomalyAnalysisPrompt
from spanguard_ai.services.cache import CacheService
from spanguard_ai.services.storage import HistoryStore
from spanguard_ai.services.traces import TraceSource

logger = logging.getLogger(__name__)

CONFIDENCE_LEVELS = ("low", "medium", "high")

_SUMMARY_RE = re.compile(r"SUMMARY:\s*(.+?)(?=\n|CAUSES:|$)", re.IGNORECASE)
_CAUSES_RE = re.compile(r"CAUSES:\s*(.+?)(?=RECOMMENDATIONS:|CONFIDENCE:|$)", re.IGNORECASE | re.DOTALL)
_RECS_RE = re.compile(r"RECOMMENDATIONS:\s*(.+?)(?=CONFIDENCE:|$)", re.IGNORECASE | re.DOTALL)
_CONFIDENCE_RE = re.compile(r"CONFIDENCE:\s*(low|medium|high)", re.IGNORECASE)
_BULLET_RE = re.compile(r"^\s*(?:[-•*]|\d+[.)])\s*")


@dataclass
class AnalysisResult:
    """Parsed LLM explanation of one anomaly."""

    trace_id: str
    summary: str
    possible_causes: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)
    confidence: str = "low"
    prompt: str = ""
    raw_response: str = ""
    model: str = ""
    anomaly_id: Optional[str] = None
    correlated_metrics: Optional[dict] = None
    analyzed_at: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            "trace_id": self.trace_id,
            "anomaly_id": self.anomaly_id,
            "summary": self.summary,
            "possible_causes": list(self.possible_causes),
            "recommendations": list(self.recommendations),
            "confidence": self.confidence,
            "prompt": self.prompt,
            "raw_response": self.raw_response,
            "model": self.model,
            "correlated_metrics": self.correlated_metrics,
            "analyzed_at": self.analyzed_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "AnalysisResult":
        analyzed_at = data.get("analyzed_at")
        return cls(
            trace_id=data["trace_id"],
            anomaly_id=data.get("anomaly_id"),
            summary=data.get("summary", ""),
            possible_causes=list(data.get("possible_causes") or []),
            recommendations=list(data.get("recommendations") or []),
            confidence=data.get("confidence", "low"),
            prompt=data.get("prompt", ""),
            raw_response=data.get("raw_response", ""),
            model=data.get("model", ""),
            correlated_metrics=data.get("correlated_metrics"),
            analyzed_at=(
                datetime.fromisoformat(analyzed_at) if analyzed_at else datetime.utcnow()
            ),
        )


def _bullets(section: Optional[str]) -> list[str]:
    if not section:
        return []
    items = []
    for line in section.splitlines():
        item = _BULLET_RE.sub("", line).strip()
        if item and not item.upper().startswith(("CAUSES", "RECOMMENDATIONS")):
            items.append(item)
    return items


def parse_analysis(response: str) -> tuple[str, list[str], list[str], str]:
    """
    Split an LLM answer into (summary, causes, recommendations, confidence).

    Text without a SUMMARY section is returned whole as the summary with
    empty lists and low confidence.
    """
    summary_match = _SUMMARY_RE.search(response)
    if not summary_match:
        return response.strip(), [], [], "low"

    causes = _CAUSES_RE.search(response)
    recommendations = _RECS_RE.search(response)
    confidence = _CONFIDENCE_RE.search(response)

    return (
        summary_match.group(1).strip(),
        _bullets(causes.group(1) if causes else None),
        _bullets(recommendations.group(1) if recommendations else None),
        confidence.group(1).lower() if confidence else "low",
    )


def placeholder_anomaly(trace_id: str, anomaly_id: Optional[str] = None) -> Anomaly:
    """Stand-in for a trace with no recorded anomaly."""
    return Anomaly(
        id=anomaly_id or trace_id,
        trace_id=trace_id,
        span_id="unknown",
        service="unknown",
        operation="unknown",
        duration=0.0,
        expected_mean=0.0,
        expected_std_dev=0.0,
        deviation=0.0,
        severity=Severity.LOW,
        severity_name=Severity.LOW.display_name,
        attributes={},
        day_of_week=0,
        hour_of_day=0,
        created_at=datetime.utcnow(),
    )


class AnomalyExplainer:
    """
    LLM explanations for anomalies.

    Usage:
        explainer = AnomalyExplainer(llm, history, correlator, trace_source, cache)
        result = await explainer.analyze(trace_id)
    """

    def __init__(
        self,
        llm: LLMClient,
        history: HistoryStore,
        correlator: Optional[MetricsCorrelator] = None,
        trace_source: Optional[TraceSource] = None,
        cache: Optional[CacheService] = None,
        lookup_window: timedelta = timedelta(hours=24),
    ):
        self.llm = llm
        self.history = history
        self.correlator = correlator
        self.trace_source = trace_source
        self.cache = cache
        self.lookup_window = lookup_window

    async def analyze(
        self,
        trace_id: str,
        anomaly_id: Optional[str] = None,
        use_cache: bool = True,
    ) -> AnalysisResult:
        """
        Explain the anomaly recorded for a trace.

        Never raises for collaborator failures: an unreachable LLM yields a
        low-confidence fallback that still carries the prompt.
        """
        cache_key = f"analysis:{trace_id}"
        if use_cache and self.cache:
            cached = await self.cache.get(cache_key)
            if cached:
                logger.debug(f"Analysis cache hit for {trace_id}")
                return AnalysisResult.from_dict(cached)

        anomaly = await self._find_anomaly(trace_id, anomaly_id)
        known = anomaly is not None
        if not known:
            logger.info(f"No anomaly recorded for trace {trace_id}, analyzing placeholder")
            anomaly = placeholder_anomaly(trace_id, anomaly_id)

        metrics = await self._correlate(anomaly)
        trace = await self._fetch_trace(trace_id) if known else []

        prompt = AnomalyAnalysisPrompt(anomaly=anomaly, metrics=metrics, trace=trace).render()

        try:
            response = await self.llm.chat([Message(role="user", content=prompt)])
        except Exception as e:
            logger.error(f"LLM analysis failed for trace {trace_id}: {e}")
            return self._fallback(anomaly, prompt, metrics, str(e))

        summary, causes, recommendations, confidence = parse_analysis(response.content)
        result = AnalysisResult(
            trace_id=trace_id,
            anomaly_id=anomaly.id,
            summary=summary,
            possible_causes=causes,
            recommendations=recommendations,
            confidence=confidence,
            prompt=prompt,
            raw_response=response.content,
            model=response.model,
            correlated_metrics=metrics.to_dict() if metrics else None,
        )

        if self.cache:
            await self.cache.set(cache_key, result.to_dict())

        return result

    async def _find_anomaly(self, trace_id: str, anomaly_id: Optional[str]) -> Optional[Anomaly]:
        since = datetime.utcnow() - self.lookup_window
        try:
            return await self.history.find_anomaly(since, trace_id=trace_id, anomaly_id=anomaly_id)
        except Exception as e:
            logger.warning(f"Anomaly lookup failed for trace {trace_id}: {e}")
            return None

    async def _correlate(self, anomaly: Anomaly) -> Optional[CorrelatedMetrics]:
        if self.correlator is None:
            return None
        try:
            return await self.correlator.correlate(anomaly.id, anomaly.service, anomaly.created_at)
        except Exception as e:
            logger.warning(f"Metrics unavailable for analysis: {e}")
            return None

    async def _fetch_trace(self, trace_id: str):
        if self.trace_source is None:
            return []
        try:
            return await self.trace_source.get_trace(trace_id)
        except Exception as e:
            logger.warning(f"Trace {trace_id} unavailable for analysis: {e}")
            return []

    def _fallback(
        self,
        anomaly: Anomaly,
        prompt: str,
        metrics: Optional[CorrelatedMetrics],
        error: str,
    ) -> AnalysisResult:
        return AnalysisResult(
            trace_id=anomaly.trace_id,
            anomaly_id=anomaly.id,
            summary=f"Analysis failed: {error}",
            possible_causes=[
                f"The {anomaly.service} service took {anomaly.duration}ms "
                f"instead of expected {anomaly.expected_mean}ms",
                "This could indicate resource contention, network latency, "
                "or downstream service issues",
            ],
            recommendations=[
                f"Check that the {self.llm.provider.value} LLM endpoint is reachable",
                "Check the service logs for errors around the timestamp",
            ],
            confidence="low",
            prompt=prompt,
            raw_response="",
            model=self.llm.model,
            correlated_metrics=metrics.to_dict() if metrics else None,
        )
