"""
Health and diagnostics endpoints.
"""

import logging

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from captainslog import __version__
from captainslog.core.proxy import BackendUnavailableError

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/health")
async def health_check() -> dict[str, str]:
    """Basic liveness check (no auth, no backend call)."""
    return {"status": "healthy", "service": "captainslog", "version": __version__}


@router.get("/healthz")
async def backend_health(request: Request) -> JSONResponse:
    """
    Probe the Whisper backend.

    Returns:
        200: backend answered GET /v1/models
        503: backend unreachable within the 5s health timeout
    """
    proxy = request.app.state.proxy_holder.current
    diagnostics = {
        "version": __version__,
        **proxy.describe(),
        "auth_enabled": bool(request.app.state.auth_token),
    }

    try:
        await proxy.health()
    except BackendUnavailableError as e:
        logger.warning("backend health check failed", extra={"why": str(e)})
        return JSONResponse(
            status_code=503,
            content={**diagnostics, "status": "degraded", "backend": "unreachable"},
        )

    return JSONResponse(
        status_code=200,
        content={**diagnostics, "status": "ok", "backend": "reachable"},
    )
