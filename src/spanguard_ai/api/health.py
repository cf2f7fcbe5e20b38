"""
Health API
"""

from fastapi import APIRouter, Request

from spanguard_ai import __version__

router = APIRouter()


@router.get("/health")
async def health(request: Request) -> dict:
    """Liveness check."""
    state = request.app.state
    return {
        "status": "healthy",
        "service": "spanguard-ai",
        "version": __version__,
        "llm_provider": state.llm_client.provider.value,
        "live_subscribers": state.live_hub.subscriber_count,
    }


@router.get("/ready")
async def ready(request: Request) -> dict:
    """Readiness: no baseline rebuild in flight."""
    status = request.app.state.statistics_engine.status()
    return {
        "ready": not status.is_calculating,
        "baselines": status.baseline_count,
    }
