"""
Training API

Human ratings of LLM explanations, and export of the rated corpus.
"""

import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, Field

from spanguard_ai.api.deps import failure, get_training_store
from spanguard_ai.errors import InvalidFeedbackError
from spanguard_ai.training.store import TrainingStore

logger = logging.getLogger(__name__)
router = APIRouter()


class RateRequest(BaseModel):
    """
    Rating of one explanation.

    Fields are validated by the training store so that every malformed
    rating is rejected the same way.
    """

    anomaly: Optional[dict[str, Any]] = None
    prompt: Optional[str] = None
    completion: Optional[str] = None
    rating: Optional[str] = Field(None, description="good or bad")
    correction: Optional[str] = None
    notes: Optional[str] = None


@router.post("/rate")
async def rate_explanation(
    request: RateRequest,
    store: TrainingStore = Depends(get_training_store),
) -> dict:
    """Record a rated explanation as a training example."""
    try:
        example = store.add_example(
            anomaly=request.anomaly,
            prompt=request.prompt,
            completion=request.completion,
            rating=request.rating,
            correction=request.correction,
            notes=request.notes,
        )
    except InvalidFeedbackError as e:
        raise failure(e, status_code=400)

    return {
        "success": True,
        "example": example.to_dict(),
        "stats": store.get_stats().to_dict(),
    }


@router.get("/stats")
async def training_stats(store: TrainingStore = Depends(get_training_store)) -> dict:
    return store.get_stats().to_dict()


@router.get("/examples")
async def list_examples(store: TrainingStore = Depends(get_training_store)) -> dict:
    examples = store.get_all()
    return {
        "examples": [e.to_dict() for e in examples],
        "total": len(examples),
    }


@router.get("/export", response_class=PlainTextResponse)
async def export_examples(store: TrainingStore = Depends(get_training_store)) -> PlainTextResponse:
    """Download the fine-tuning dataset as JSONL."""
    return PlainTextResponse(
        store.export_to_jsonl(),
        media_type="application/x-ndjson",
        headers={"Content-Disposition": "attachment; filename=training-data.jsonl"},
    )


@router.delete("/{example_id}")
async def delete_example(
    example_id: str,
    store: TrainingStore = Depends(get_training_store),
) -> dict:
    if not store.delete(example_id):
        raise HTTPException(
            status_code=404,
            detail={"kind": "not_found", "message": f"Training example {example_id} not found"},
        )
    return {"success": True, "id": example_id}


@router.delete("")
async def clear_examples(store: TrainingStore = Depends(get_training_store)) -> dict:
    """Drop every training example."""
    store.clear()
    logger.warning("Training data cleared through the API")
    return {"success": True}
