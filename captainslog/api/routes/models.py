"""
Model discovery for the settings UI.
"""

import logging

from fastapi import APIRouter, Request

from captainslog.core.proxy import BackendUnavailableError

logger = logging.getLogger(__name__)

router = APIRouter()

# Offered when the backend does not list its models
FALLBACK_WHISPER_MODELS = [
    {"id": "large-v3", "name": "large-v3 (best accuracy)"},
    {"id": "large-v2", "name": "large-v2"},
    {"id": "medium", "name": "medium (balanced)"},
    {"id": "small", "name": "small (fast)"},
    {"id": "base", "name": "base (faster)"},
    {"id": "tiny", "name": "tiny (instant)"},
]


@router.get("/api/models")
async def list_models(request: Request) -> dict[str, list[dict[str, str]]]:
    """
    List Whisper models for the model picker.

    Uses the backend's GET /v1/models when it answers with a non-empty
    listing, otherwise the well-known Whisper model sizes.
    """
    proxy = request.app.state.proxy_holder.current
    try:
        models = await proxy.list_models()
    except BackendUnavailableError as e:
        logger.warning("model discovery failed", extra={"why": str(e)})
        models = []

    if not models:
        return {"whisper": [dict(model) for model in FALLBACK_WHISPER_MODELS]}
    return {"whisper": models}
