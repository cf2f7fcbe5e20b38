"""
LLM Integration

Provides a unified interface to LLM providers for:
- Single anomaly explanations
- Streamed batch triage for live dashboards
"""

from spanguard_ai.llm.client import (
    LLMClient,
    LLMProvider,
    LLMResponse,
    Message,
)
from spanguard_ai.llm.prompts import (
    AnomalyAnalysisPrompt,
    BatchStreamPrompt,
    PromptTemplate,
)

__all__ = [
    "LLMClient",
    "LLMProvider",
    "LLMResponse",
    "Message",
    "AnomalyAnalysisPrompt",
    "BatchStreamPrompt",
    "PromptTemplate",
]
