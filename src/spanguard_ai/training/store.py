"""
Training Store

Append-only JSONL log of human-rated explanations, exportable as a
fine-tuning dataset.

New examples are appended as one line each. Deleting or clearing rewrites
the file through a temporary copy, so a crash never leaves a half-written log.
"""

import json
import logging
import os
import threading
import time
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Optional, Union

from spanguard_ai.errors import InvalidFeedbackError
from spanguard_ai.training.models import (
    AnomalySummary,
    Rating,
    TrainingExample,
    TrainingStats,
)

logger = logging.getLogger(__name__)

REQUIRED_ANOMALY_FIELDS = ("id", "service", "operation")


def _validate_anomaly(anomaly: Any) -> AnomalySummary:
    if isinstance(anomaly, AnomalySummary):
        return anomaly
    if not isinstance(anomaly, dict):
        raise InvalidFeedbackError("anomaly context is required")

    missing = [f for f in REQUIRED_ANOMALY_FIELDS if not anomaly.get(f)]
    if missing:
        raise InvalidFeedbackError(f"anomaly is missing {', '.join(missing)}")

    try:
        return AnomalySummary(
            id=str(anomaly["id"]),
            service=str(anomaly["service"]),
            operation=str(anomaly["operation"]),
            duration=float(anomaly.get("duration", 0.0)),
            deviation=float(anomaly.get("deviation", 0.0)),
            severity=int(anomaly.get("severity", 5)),
            severity_name=str(anomaly.get("severity_name", "Low")),
        )
    except (TypeError, ValueError) as e:
        raise InvalidFeedbackError(f"anomaly context is malformed: {e}") from e


class TrainingStore:
    """
    File-backed training example log.

    Usage:
        store = TrainingStore()
        store.add_example(anomaly.summary(), result.prompt, result.raw_response, "good")
        dataset = store.export_to_jsonl()
    """

    def __init__(self, path: Optional[Union[str, Path]] = None):
        self.path = Path(path or os.getenv("TRAINING_DATA_PATH", "data/training-examples.jsonl"))
        self._lock = threading.Lock()
        self._examples: list[TrainingExample] = []
        self._load()

    def _load(self) -> None:
        if not self.path.exists():
            logger.info(f"No training data at {self.path}, starting fresh")
            return

        with self.path.open("r", encoding="utf-8") as f:
            for line_no, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    self._examples.append(TrainingExample.from_dict(json.loads(line)))
                except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
                    logger.warning(f"Skipping corrupt training line {line_no}: {e}")

        logger.info(f"Loaded {len(self._examples)} training examples from {self.path}")

    def _append(self, example: TrainingExample) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as f:
            f.write(json.dumps(example.to_dict()) + "\n")

    def _rewrite(self, examples: list[TrainingExample]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        with tmp.open("w", encoding="utf-8") as f:
            for example in examples:
                f.write(json.dumps(example.to_dict()) + "\n")
        os.replace(tmp, self.path)

    def add_example(
        self,
        anomaly: Union[dict, AnomalySummary],
        prompt: str,
        completion: str,
        rating: Union[str, Rating],
        correction: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> TrainingExample:
        """
        Record a rated explanation.

        Raises:
            InvalidFeedbackError: the rating lacks anomaly, prompt or
                completion context, or the rating is not good/bad
        """
        summary = _validate_anomaly(anomaly)
        if not prompt or not prompt.strip():
            raise InvalidFeedbackError("prompt is required")
        if not completion or not completion.strip():
            raise InvalidFeedbackError("completion is required")
        try:
            rating = Rating(rating)
        except ValueError:
            raise InvalidFeedbackError("rating must be good or bad") from None

        example = TrainingExample(
            id=f"train_{int(time.time() * 1000)}_{uuid.uuid4().hex[:6]}",
            timestamp=datetime.utcnow().isoformat(),
            anomaly=summary,
            prompt=prompt,
            completion=completion,
            rating=rating,
            correction=correction or None,
            notes=notes or None,
        )

        with self._lock:
            self._append(example)
            self._examples.append(example)

        logger.info(f"Added {rating.value} training example for {summary.service}")
        return example

    def get_all(self) -> list[TrainingExample]:
        with self._lock:
            return list(self._examples)

    def get_stats(self) -> TrainingStats:
        examples = self.get_all()
        return TrainingStats(
            total_examples=len(examples),
            good_examples=sum(1 for e in examples if e.rating == Rating.GOOD),
            bad_examples=sum(1 for e in examples if e.rating == Rating.BAD),
            unique_services=sorted({e.anomaly.service for e in examples}),
            last_updated=examples[-1].timestamp if examples else "",
        )

    def export_to_jsonl(self) -> str:
        """One fine-tuning record per line, in insertion order."""
        lines = []
        for example in self.get_all():
            record = example.export_record()
            if record is not None:
                lines.append(json.dumps(record))
        return "\n".join(lines)

    def delete(self, example_id: str) -> bool:
        with self._lock:
            remaining = [e for e in self._examples if e.id != example_id]
            if len(remaining) == len(self._examples):
                return False
            self._rewrite(remaining)
            self._examples = remaining
        return True

    def clear(self) -> None:
        """Drop every example."""
        with self._lock:
            self._rewrite([])
            self._examples = []
        logger.info("Cleared all training data")
