"""
Training Models

Human-rated LLM explanations collected as fine-tuning data.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class Rating(str, Enum):
    GOOD = "good"
    BAD = "bad"


@dataclass
class AnomalySummary:
    """Denormalized anomaly context stored with each example."""

    id: str
    service: str
    operation: str
    duration: float = 0.0
    deviation: float = 0.0
    severity: int = 5
    severity_name: str = "Low"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "service": self.service,
            "operation": self.operation,
            "duration": self.duration,
            "deviation": self.deviation,
            "severity": self.severity,
            "severity_name": self.severity_name,
        }


@dataclass
class TrainingExample:
    """One rated (prompt, completion) pair."""

    id: str
    timestamp: str
    anomaly: AnomalySummary
    prompt: str
    completion: str
    rating: Rating
    correction: Optional[str] = None
    notes: Optional[str] = None

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "timestamp": self.timestamp,
            "anomaly": self.anomaly.to_dict(),
            "prompt": self.prompt,
            "completion": self.completion,
            "rating": self.rating.value,
        }
        if self.correction is not None:
            data["correction"] = self.correction
        if self.notes is not None:
            data["notes"] = self.notes
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "TrainingExample":
        return cls(
            id=data["id"],
            timestamp=data["timestamp"],
            anomaly=AnomalySummary(**data["anomaly"]),
            prompt=data["prompt"],
            completion=data["completion"],
            rating=Rating(data["rating"]),
            correction=data.get("correction"),
            notes=data.get("notes"),
        )

    def export_record(self) -> Optional[dict]:
        """
        Fine-tuning record for this example.

        Good examples train on the completion as given. Bad examples train on
        the human correction and keep the original for comparison; without a
        correction they carry no training signal and are skipped.
        """
        if self.rating == Rating.GOOD:
            return {"prompt": self.prompt, "completion": self.completion}
        if self.correction:
            return {
                "prompt": self.prompt,
                "completion": self.correction,
                "original_completion": self.completion,
                "rating": Rating.BAD.value,
            }
        return None


@dataclass
class TrainingStats:
    total_examples: int = 0
    good_examples: int = 0
    bad_examples: int = 0
    unique_services: list[str] = field(default_factory=list)
    last_updated: str = ""

    def to_dict(self) -> dict:
        return {
            "total_examples": self.total_examples,
            "good_examples": self.good_examples,
            "bad_examples": self.bad_examples,
            "unique_services": list(self.unique_services),
            "last_updated": self.last_updated,
        }
