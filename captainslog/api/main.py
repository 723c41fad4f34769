"""
FastAPI application for the Captain's Log proxy.

Provides a single API serving:
- OpenAI-compatible audio endpoints (/v1/audio/transcriptions, /v1/audio/translations)
- Health endpoints (/health, /healthz)
- Runtime settings and model discovery (/api/settings, /api/models)
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware

from captainslog import __version__
from captainslog.api.routes import health, models, settings, transcription
from captainslog.api.routes.settings import RuntimeSettings, SettingsStore
from captainslog.api.routes.utils import (
    extract_bearer_token,
    requires_auth,
    sanitize_for_log,
    token_matches,
)
from captainslog.config import (
    ServerConfig,
    get_config,
    resolve_auth_token,
    resolve_backend_url,
    resolve_logging_config,
)
from captainslog.core.proxy import ProxyHolder, TranscriptionProxy, create_backend_clients
from captainslog.errors import error_response, server_error
from captainslog.logging import get_logger, setup_logging

logger = get_logger("api")


class AuthenticationMiddleware(BaseHTTPMiddleware):
    """
    Require ``Authorization: Bearer <token>`` on guarded routes.

    Only installed when an auth token is configured. Health endpoints and
    settings reads stay public.
    """

    async def dispatch(self, request: Request, call_next):
        if not requires_auth(request):
            return await call_next(request)

        token = extract_bearer_token(request.headers.get("Authorization"))
        if token_matches(request.app.state.auth_token, token):
            return await call_next(request)

        return error_response(
            request,
            logger,
            401,
            "unauthorized",
            why="missing or mismatched bearer token",
        )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Create the shared backend clients and the initial proxy."""
    config: ServerConfig = app.state.config

    setup_logging(resolve_logging_config(config))
    logger.info("Captain's Log proxy starting...")

    owns_clients = app.state.backend_clients is None
    if owns_clients:
        app.state.backend_clients = create_backend_clients()
    client, health_client = app.state.backend_clients

    backend_url = resolve_backend_url(config)
    app.state.proxy_holder = ProxyHolder(
        TranscriptionProxy(backend_url, client, health_client)
    )

    defaults = config.defaults
    app.state.settings_store = SettingsStore(
        RuntimeSettings(
            whisper_url=backend_url,
            language=str(defaults.get("language") or ""),
            model=str(defaults.get("model") or ""),
            prompt=str(defaults.get("prompt") or ""),
        )
    )

    logger.info(
        "Proxy ready",
        extra={
            "backend_url": sanitize_for_log(backend_url),
            "config": str(config.loaded_from),
            "auth_enabled": bool(app.state.auth_token),
        },
    )

    yield

    logger.info("Proxy shutting down...")
    if owns_clients:
        await client.aclose()
        await health_client.aclose()
        app.state.backend_clients = None
    logger.info("Shutdown complete")


def create_app(
    config: Optional[ServerConfig] = None,
    backend_clients: Optional[tuple[httpx.AsyncClient, httpx.AsyncClient]] = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        config: Configuration to use; defaults to the global config
        backend_clients: Optional (transcription, health) httpx clients.
            When given, the caller owns them and they are not closed on
            shutdown.

    Returns:
        Configured FastAPI application
    """
    config = config or get_config()

    app = FastAPI(
        title="Captain's Log",
        description="OpenAI-compatible transcription proxy for Whisper backends",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.auth_token = resolve_auth_token(config)
    app.state.backend_clients = backend_clients

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "PUT"],
        allow_headers=["*"],
    )

    if app.state.auth_token:
        app.add_middleware(AuthenticationMiddleware)
        logger.info("Auth token configured - bearer token required on /v1/*")

    app.include_router(health.router, tags=["Health"])
    app.include_router(transcription.router, tags=["Audio"])
    app.include_router(settings.router, tags=["Settings"])
    app.include_router(models.router, tags=["Settings"])

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(
        request: Request, exc: StarletteHTTPException
    ) -> JSONResponse:
        reason = exc.detail if isinstance(exc.detail, str) else "request failed"
        response = error_response(
            request,
            logger,
            exc.status_code,
            reason.lower(),
            why="rejected by routing before reaching a handler",
        )
        if exc.headers:
            response.headers.update(exc.headers)
        return response

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        return server_error(
            request,
            logger,
            "internal server error",
            why="unhandled exception",
            exc=exc,
        )

    return app


# Default app instance for uvicorn
app = create_app()
