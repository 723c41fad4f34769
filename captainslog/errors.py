"""
Centralized HTTP error responses for Captain's Log.

Every error response goes through this module so that:
- errors are always logged with request context (method, path, remote)
- responses are always the same JSON envelope: {"error": ..., "status": ...}
- the internal reason ("why") is logged but never sent to the client

Usage:
    return error_response(
        request, logger, 400, "failed to read request body",
        why="client disconnected before the upload finished",
    )
"""

import logging
from typing import Any, Dict

from fastapi import Request
from fastapi.responses import JSONResponse


def _request_context(request: Request) -> Dict[str, Any]:
    return {
        "method": request.method,
        "path": request.url.path,
        "remote": request.client.host if request.client else None,
    }


def error_response(
    request: Request,
    logger: logging.Logger,
    status_code: int,
    reason: str,
    why: str = "",
) -> JSONResponse:
    """
    Log an error with request context and build the JSON error envelope.

    Args:
        request: Incoming request, used for log context only
        logger: Logger that receives the structured error event
        status_code: HTTP status for the response
        reason: User-facing message returned in the body
        why: Internal explanation, logged but never returned

    Returns:
        JSONResponse with {"error": reason, "status": status_code}
    """
    logger.error(
        reason,
        extra={"status": status_code, "why": why, **_request_context(request)},
    )
    return JSONResponse(
        status_code=status_code,
        content={"error": reason, "status": status_code},
    )


def server_error(
    request: Request,
    logger: logging.Logger,
    reason: str,
    why: str,
    exc: BaseException,
) -> JSONResponse:
    """
    500 Internal Server Error with the exception logged but not leaked.

    The exception text may contain URLs or config values, so only the
    safe ``reason`` goes back to the client.
    """
    logger.error(
        reason,
        exc_info=exc,
        extra={"status": 500, "why": why, **_request_context(request)},
    )
    return JSONResponse(
        status_code=500,
        content={"error": reason, "status": 500},
    )
