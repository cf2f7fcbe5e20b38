"""
Tests for the training feedback store.
"""

import json

import pytest

from spanguard_ai.errors import InvalidFeedbackError
from spanguard_ai.training.models import Rating
from spanguard_ai.training.store import TrainingStore

ANOMALY = {
    "id": "abc123-span-1",
    "service": "api-gateway",
    "operation": "GET /orders",
    "duration": 170.0,
    "deviation": 7.0,
    "severity": 1,
    "severity_name": "Critical",
}


@pytest.fixture
def path(tmp_path):
    return tmp_path / "training" / "examples.jsonl"


@pytest.fixture
def store(path):
    return TrainingStore(path)


def lines(path):
    return [json.loads(line) for line in path.read_text().splitlines() if line]


class TestAddExample:
    """Tests for TrainingStore.add_example."""

    def test_good_rating_is_persisted(self, store, path):
        """Good ratings are written and exported."""
        example = store.add_example(ANOMALY, "P", "C", "good")

        assert example.id.startswith("train_")
        assert example.rating == Rating.GOOD
        assert lines(path)[0]["anomaly"]["service"] == "api-gateway"
        assert store.export_to_jsonl() == json.dumps({"prompt": "P", "completion": "C"})

    def test_bad_rating_exports_correction(self, store):
        """Corrections replace the completion on export."""
        store.add_example(ANOMALY, "P", "C", "bad", correction="X")

        record = json.loads(store.export_to_jsonl())

        assert record == {
            "prompt": "P",
            "completion": "X",
            "original_completion": "C",
            "rating": "bad",
        }

    def test_bad_rating_without_correction_is_not_exported(self, store):
        """Bad ratings without corrections are not exported."""
        store.add_example(ANOMALY, "P", "C", "good")
        store.add_example(ANOMALY, "P2", "C2", "bad")

        exported = store.export_to_jsonl().splitlines()

        assert len(exported) == 1
        assert store.get_stats().bad_examples == 1

    @pytest.mark.parametrize("anomaly,prompt,completion,rating", [
        (None, "P", "C", "good"),
        ({"id": "a", "service": "svc"}, "P", "C", "good"),
        (ANOMALY, "", "C", "good"),
        (ANOMALY, "P", "   ", "good"),
        (ANOMALY, "P", "C", "meh"),
        ({**ANOMALY, "duration": "slow"}, "P", "C", "good"),
    ])
    def test_invalid_feedback_writes_nothing(self, store, path, anomaly, prompt, completion, rating):
        """Invalid feedback leaves the file untouched."""
        with pytest.raises(InvalidFeedbackError) as exc:
            store.add_example(anomaly, prompt, completion, rating)

        assert exc.value.kind == "malformed_feedback"
        assert not path.exists()
        assert store.get_all() == []

    def test_export_preserves_insertion_order(self, store):
        """Export keeps rating order."""
        for i in range(3):
            store.add_example(ANOMALY, f"P{i}", f"C{i}", "good")

        prompts = [json.loads(line)["prompt"] for line in store.export_to_jsonl().splitlines()]

        assert prompts == ["P0", "P1", "P2"]


class TestStatsAndPersistence:
    """Tests for statistics, reloads and deletion."""

    def test_stats(self, store):
        """Stats count ratings and services."""
        store.add_example(ANOMALY, "P", "C", "good")
        store.add_example({**ANOMALY, "service": "billing"}, "P", "C", "bad", notes="wrong cause")

        stats = store.get_stats()

        assert stats.total_examples == 2
        assert stats.good_examples == 1
        assert stats.bad_examples == 1
        assert stats.unique_services == ["api-gateway", "billing"]
        assert stats.last_updated == store.get_all()[-1].timestamp

    def test_empty_stats(self, store):
        """An empty store has zero stats."""
        assert store.get_stats().to_dict() == {
            "total_examples": 0,
            "good_examples": 0,
            "bad_examples": 0,
            "unique_services": [],
            "last_updated": "",
        }

    def test_reload_from_file(self, store, path):
        """A new store reads existing examples."""
        example = store.add_example(ANOMALY, "P", "C", "bad", correction="X", notes="n")

        reloaded = TrainingStore(path)

        assert [e.to_dict() for e in reloaded.get_all()] == [example.to_dict()]

    def test_corrupt_lines_are_skipped(self, store, path):
        """Corrupt lines are skipped on load."""
        store.add_example(ANOMALY, "P", "C", "good")
        with path.open("a") as f:
            f.write("{not json\n")

        assert len(TrainingStore(path).get_all()) == 1

    def test_delete(self, store, path):
        """Deleting removes one example."""
        keep = store.add_example(ANOMALY, "P1", "C1", "good")
        drop = store.add_example(ANOMALY, "P2", "C2", "good")

        assert store.delete(drop.id)
        assert not store.delete(drop.id)
        assert [e.id for e in store.get_all()] == [keep.id]
        assert [row["id"] for row in lines(path)] == [keep.id]

    def test_clear(self, store, path):
        """Clearing removes every example."""
        store.add_example(ANOMALY, "P", "C", "good")

        store.clear()

        assert store.get_all() == []
        assert path.read_text() == ""
        assert TrainingStore(path).get_stats().total_examples == 0
