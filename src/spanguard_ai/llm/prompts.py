"""
Prompt Templates

Prompts for anomaly explanation:
- Single anomaly analysis (structured SUMMARY/CAUSES/RECOMMENDATIONS/CONFIDENCE)
- Batch triage for the live stream

Rendering is deterministic: the same inputs always produce the same text.
"""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional

from spanguard_ai.anomaly.models import Anomaly, Span
from spanguard_ai.correlation.models import CorrelatedMetrics

MAX_TRACE_SPANS = 10


@dataclass
class PromptTemplate(ABC):
    """Base class for prompt templates."""

    @abstractmethod
    def render(self) -> str:
        """Render the full prompt text."""
        pass


def _fmt(value: Optional[float], fmt: str, suffix: str = "") -> str:
    return f"{value:{fmt}}{suffix}" if value is not None else "N/A"


@dataclass
class AnomalyAnalysisPrompt(PromptTemplate):
    """
    Prompt for explaining one anomalous span.

    Includes correlated metrics and a condensed view of the full trace when
    they are available.
    """

    anomaly: Anomaly
    metrics: Optional[CorrelatedMetrics] = None
    trace: list[Span] = field(default_factory=list)

    def render(self) -> str:
        a = self.anomaly

        parts = [
            "You are an expert in distributed systems and observability. "
            "Analyze this performance anomaly:",
            "",
            "## Anomaly Details",
            f"- Service: {a.service}",
            f"- Operation: {a.operation}",
            f"- Duration: {a.duration}ms (expected: {a.expected_mean}ms ± {a.expected_std_dev}ms)",
            f"- Deviation: {a.deviation}σ (standard deviations from mean)",
            f"- Severity: SEV{a.severity} ({a.severity_name})",
            f"- Timestamp: {a.created_at.isoformat()}",
            "",
            "## Span Attributes",
            json.dumps(a.attributes, indent=2, sort_keys=True, default=str),
            "",
        ]

        if self.metrics:
            parts.extend([self._format_metrics(self.metrics), ""])

        if self.trace:
            parts.extend([self._format_trace(self.trace), ""])

        parts.extend([
            "Based on the trace data AND correlated metrics, provide:",
            "1. A brief summary (1-2 sentences) of what likely caused this anomaly",
            "2. 2-3 possible root causes (consider resource utilization if metrics show issues)",
            "3. 2-3 actionable recommendations",
            "",
            "Format your response as:",
            "SUMMARY: [your summary]",
            "CAUSES:",
            "- [cause 1]",
            "- [cause 2]",
            "RECOMMENDATIONS:",
            "- [recommendation 1]",
            "- [recommendation 2]",
            "CONFIDENCE: [low/medium/high]",
        ])

        return "\n".join(parts)

    def _format_metrics(self, correlated: CorrelatedMetrics) -> str:
        m = correlated.metrics
        cpu_flag = " (HIGH)" if m.cpu_percent is not None and m.cpu_percent >= 80 else ""
        mem_flag = " (HIGH)" if m.memory_mb is not None and m.memory_mb >= 512 else ""
        err_flag = " (HIGH)" if m.error_rate is not None and m.error_rate >= 5 else ""

        lines = [
            "## Correlated System Metrics (at time of anomaly)",
            f"- CPU Usage: {_fmt(m.cpu_percent, '.1f', '%')}{cpu_flag}",
            f"- Memory: {_fmt(m.memory_mb, '.0f', 'MB')}{mem_flag}",
            f"- Request Rate: {_fmt(m.request_rate, '.1f', ' req/s')}",
            f"- Error Rate: {_fmt(m.error_rate, '.1f', '%')}{err_flag}",
            f"- P99 Latency: {_fmt(m.p99_latency_ms, '.0f', 'ms')}",
            f"- Active Connections: {_fmt(m.active_connections, '.0f')}",
        ]

        if correlated.insights:
            lines.extend(["", "## Auto-Detected Issues"])
            lines.extend(f"- {insight}" for insight in correlated.insights)

        return "\n".join(lines)

    def _format_trace(self, spans: list[Span]) -> str:
        lines = [
            "## Trace Context",
            f"The full trace contains {len(spans)} spans:",
        ]
        lines.extend(
            f"- {s.service}: {s.operation} ({s.duration_ms:.2f}ms)"
            for s in spans[:MAX_TRACE_SPANS]
        )
        if len(spans) > MAX_TRACE_SPANS:
            lines.append(f"... and {len(spans) - MAX_TRACE_SPANS} more spans")
        return "\n".join(lines)


@dataclass
class BatchStreamPrompt(PromptTemplate):
    """Condensed prompt for triaging a batch of anomalies on the live stream."""

    anomalies: list[Anomaly]
    hints: list[str] = field(default_factory=list)

    def render(self) -> str:
        lines = []
        for i, a in enumerate(self.anomalies, start=1):
            status = a.attributes.get("http.status_code")
            line = (
                f"{i}. [SEV{a.severity}] {a.service}:{a.operation} "
                f"{a.duration}ms (+{a.deviation:.1f}σ)"
            )
            if status:
                line += f" HTTP {status}"
            lines.append(line)

        parts = [
            f"You are monitoring production services. "
            f"Analyze these {len(self.anomalies)} anomalies briefly:",
            "",
            "\n".join(lines),
            "",
        ]

        if self.hints:
            parts.extend(["Known patterns:", "\n".join(f"- {h}" for h in self.hints), ""])

        parts.extend([
            "For each numbered anomaly, provide:",
            "- Likely cause (1 line)",
            "- Action to take (1 line)",
            "",
            "Be concise and actionable. Focus on business impact.",
        ])

        return "\n".join(parts)
