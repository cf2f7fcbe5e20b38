"""
SpanGuard AI Engine

Span latency observability:
- Per-operation and time-of-week latency baselines
- Severity-ranked anomaly detection
- Metrics correlation and LLM explanations
- Training data from rated explanations
"""

__version__ = "0.1.0"
