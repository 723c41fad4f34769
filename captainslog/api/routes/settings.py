"""
Runtime settings endpoints.

Settings live in memory for the lifetime of the process. Changing
``whisper_url`` builds a fresh TranscriptionProxy and swaps it in; requests
already in flight finish against the proxy they started with.
"""

import logging
import threading
from typing import Optional
from urllib.parse import urlparse

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, ValidationError

from captainslog.api.routes.utils import sanitize_for_log
from captainslog.core.proxy import (
    RequestBodyError,
    TranscriptionProxy,
    read_body,
)
from captainslog.errors import error_response

logger = logging.getLogger(__name__)

router = APIRouter()

MAX_SETTINGS_BYTES = 64 << 10


class RuntimeSettings(BaseModel):
    """Settings the UI can change without a restart."""

    whisper_url: str
    language: str = ""
    model: str = ""
    prompt: str = ""


class SettingsUpdate(BaseModel):
    """Partial update; omitted fields keep their current value."""

    whisper_url: Optional[str] = None
    language: Optional[str] = None
    model: Optional[str] = None
    prompt: Optional[str] = None


class SettingsStore:
    """Thread-safe holder for the current RuntimeSettings."""

    def __init__(self, settings: RuntimeSettings):
        self._settings = settings
        self._lock = threading.Lock()

    def snapshot(self) -> RuntimeSettings:
        return self._settings

    def apply(self, update: SettingsUpdate) -> tuple[RuntimeSettings, RuntimeSettings]:
        """Merge an update and return (previous, current)."""
        with self._lock:
            previous = self._settings
            self._settings = previous.model_copy(
                update=update.model_dump(exclude_none=True)
            )
            return previous, self._settings


def is_valid_backend_url(url: str) -> bool:
    parsed = urlparse(url)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


@router.get("/api/settings", response_model=RuntimeSettings)
async def get_settings(request: Request) -> RuntimeSettings:
    """Return the current runtime settings."""
    return request.app.state.settings_store.snapshot()


@router.put("/api/settings", response_model=RuntimeSettings)
async def update_settings(request: Request) -> Response:
    """
    Apply a partial settings update.

    A new ``whisper_url`` takes effect for the next request: the active
    proxy is replaced, never mutated.
    """
    try:
        raw = await read_body(request, limit=MAX_SETTINGS_BYTES)
    except RequestBodyError as e:
        return error_response(request, logger, e.status_code, e.message, why=e.why)

    try:
        update = SettingsUpdate.model_validate_json(raw)
    except ValidationError as e:
        return error_response(
            request,
            logger,
            400,
            "invalid settings JSON",
            why=f"settings body failed validation: {e.error_count()} error(s)",
        )

    if update.whisper_url is not None:
        update.whisper_url = update.whisper_url.strip()
        if not is_valid_backend_url(update.whisper_url):
            return error_response(
                request,
                logger,
                400,
                "whisper_url must be an http(s) URL",
                why=f"rejected backend URL {sanitize_for_log(update.whisper_url)}",
            )

    previous, current = request.app.state.settings_store.apply(update)

    if current.whisper_url.rstrip("/") != previous.whisper_url.rstrip("/"):
        holder = request.app.state.proxy_holder
        old_proxy = holder.current
        holder.swap(
            TranscriptionProxy(
                current.whisper_url,
                client=old_proxy.client,
                health_client=old_proxy.health_client,
                logger=old_proxy.logger,
            )
        )
        logger.info(
            "backend switched",
            extra={
                "from_url": sanitize_for_log(previous.whisper_url),
                "to_url": sanitize_for_log(current.whisper_url),
            },
        )

    logger.info(
        "settings updated",
        extra={"language": current.language, "model": current.model},
    )
    return JSONResponse(content=current.model_dump())
