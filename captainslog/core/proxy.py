"""
OpenAI-compatible audio proxy for Whisper backends.

Forwards /v1/audio/transcriptions and /v1/audio/translations uploads to a
configured backend. When the client asks for JSON (the default), the proxy
also fetches SRT for the same audio and merges the parsed cues into the
response as ``segments``, which gives real timestamps even on backends that
do not implement verbose_json.
"""

import asyncio
import json
import logging
import threading
from typing import Any, Awaitable, Dict, List, Optional, TypeVar

import httpx
from fastapi import Request
from fastapi.responses import JSONResponse, Response, StreamingResponse
from starlette.background import BackgroundTask
from starlette.requests import ClientDisconnect

from captainslog.core.multipart_fields import append_field, extract_field, replace_field
from captainslog.core.srt import Segment, parse_srt
from captainslog.errors import error_response, server_error
from captainslog.logging import get_logger

T = TypeVar("T")

TRANSCRIPTIONS_PATH = "/v1/audio/transcriptions"
TRANSLATIONS_PATH = "/v1/audio/translations"
MODELS_PATH = "/v1/models"

TRANSCRIPTION_TIMEOUT = 120.0
HEALTH_TIMEOUT = 5.0

MAX_UPLOAD_BYTES = 100 << 20
HEALTH_DRAIN_BYTES = 1 << 10
MODELS_MAX_BYTES = 1 << 20
DISCONNECT_POLL_INTERVAL = 0.25

# nginx convention for "client went away before we answered"
CLIENT_CLOSED_REQUEST = 499

HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailer",
        "trailers",
        "transfer-encoding",
        "upgrade",
    }
)


class ProxyError(Exception):
    """Base class for proxy failures."""


class BackendUnavailableError(ProxyError):
    """The backend could not be reached (refused, DNS, timeout)."""


class RequestBodyError(ProxyError):
    """The inbound request body could not be read."""

    def __init__(self, message: str, status_code: int = 400, why: str = "") -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.why = why


class ClientDisconnectedError(ProxyError):
    """The inbound client disconnected while a backend call was in flight."""


def create_backend_clients() -> tuple[httpx.AsyncClient, httpx.AsyncClient]:
    """
    Create the two shared backend clients.

    Returns:
        Tuple of (transcription client with 120s timeout,
        health client with 5s timeout). Health probes use their own client
        so they never wait behind a slow transcription.
    """
    return (
        httpx.AsyncClient(timeout=TRANSCRIPTION_TIMEOUT),
        httpx.AsyncClient(timeout=HEALTH_TIMEOUT),
    )


async def read_body(request: Request, limit: Optional[int] = None) -> bytes:
    """
    Buffer a request body, failing fast once it exceeds ``limit`` bytes.

    ``limit`` defaults to MAX_UPLOAD_BYTES.

    Raises:
        RequestBodyError: 413 when the body is too large, 400 when the
            client disconnects mid-upload.
    """
    if limit is None:
        limit = MAX_UPLOAD_BYTES

    declared = request.headers.get("content-length", "")
    if declared.isdigit() and int(declared) > limit:
        raise RequestBodyError(
            "request body too large",
            status_code=413,
            why=f"declared Content-Length {declared} exceeds {limit} byte cap",
        )

    buffer = bytearray()
    try:
        async for chunk in request.stream():
            buffer += chunk
            if len(buffer) > limit:
                raise RequestBodyError(
                    "request body too large",
                    status_code=413,
                    why=f"streamed body exceeded {limit} byte cap",
                )
    except ClientDisconnect as e:
        raise RequestBodyError(
            "failed to read request body",
            why="client disconnected before the upload finished",
        ) from e
    return bytes(buffer)


def _reject_constant(value: str) -> Any:
    # NaN and Infinity parse in Python but cannot be rendered back as JSON
    raise ValueError(f"non-standard JSON constant {value}")


async def _discard(task: "asyncio.Future[Any]") -> None:
    """Close a streamed response that finished after its caller gave up."""
    if task.cancelled() or task.exception() is not None:
        return
    result = task.result()
    if isinstance(result, httpx.Response):
        await result.aclose()


def _forward_headers(headers: httpx.Headers) -> List[tuple[bytes, bytes]]:
    return [
        (key.lower().encode("latin-1"), value.encode("latin-1"))
        for key, value in headers.multi_items()
        if key.lower() not in HOP_BY_HOP_HEADERS
    ]


class TranscriptionProxy:
    """
    Forwards audio requests to one Whisper-compatible backend.

    Instances are immutable: changing the backend URL means building a new
    proxy and swapping it in through ``ProxyHolder``. The httpx clients are
    shared between instances and owned by the application lifespan.
    """

    def __init__(
        self,
        backend_url: str,
        client: httpx.AsyncClient,
        health_client: httpx.AsyncClient,
        logger: Optional[logging.Logger] = None,
    ):
        self.backend_url = backend_url.rstrip("/")
        self.client = client
        self.health_client = health_client
        self.logger = logger or get_logger("proxy")

    def _endpoint(self, path: str) -> str:
        return f"{self.backend_url}{path}"

    def _build_request(self, url: str, body: bytes, content_type: str) -> httpx.Request:
        return self.client.build_request(
            "POST",
            url,
            content=body,
            headers={"Content-Type": content_type},
        )

    async def _watch(self, request: Request, awaitable: Awaitable[T]) -> T:
        """
        Await a backend call, cancelling it if the inbound client disconnects.
        """
        task = asyncio.ensure_future(awaitable)
        try:
            while True:
                done, _ = await asyncio.wait({task}, timeout=DISCONNECT_POLL_INTERVAL)
                if done:
                    return task.result()
                if await request.is_disconnected():
                    if task.done():
                        await _discard(task)
                    raise ClientDisconnectedError("client closed request")
        finally:
            if not task.done():
                task.cancel()

    def _passthrough(self, response: httpx.Response) -> StreamingResponse:
        """Stream a backend response to the client unmodified."""
        streamed = StreamingResponse(
            response.aiter_raw(),
            status_code=response.status_code,
            background=BackgroundTask(response.aclose),
        )
        streamed.raw_headers = _forward_headers(response.headers)
        return streamed

    def _client_gone(self, request: Request) -> Response:
        self.logger.info(
            "client closed request",
            extra={"status": CLIENT_CLOSED_REQUEST, "path": request.url.path},
        )
        return Response(status_code=CLIENT_CLOSED_REQUEST)

    async def _forward(
        self,
        request: Request,
        path: str,
        unavailable_reason: str,
        event: str,
        enrich: bool,
    ) -> Response:
        try:
            body = await read_body(request)
        except RequestBodyError as e:
            return error_response(request, self.logger, e.status_code, e.message, why=e.why)

        content_type = request.headers.get("content-type", "")
        url = self._endpoint(path)

        requested_format = ""
        if enrich:
            requested_format = extract_field(body, content_type, "response_format")
        is_json = enrich and requested_format in ("", "json")

        try:
            backend_request = self._build_request(url, body, content_type)
        except httpx.InvalidURL as e:
            return server_error(
                request,
                self.logger,
                "internal server error",
                why="backend URL could not be parsed into a request",
                exc=e,
            )

        try:
            response = await self._watch(
                request, self.client.send(backend_request, stream=True)
            )
        except ClientDisconnectedError:
            return self._client_gone(request)
        except httpx.HTTPError as e:
            return error_response(
                request,
                self.logger,
                502,
                unavailable_reason,
                why=f"backend request to {url} failed: {type(e).__name__}: {e}",
            )

        if not is_json or response.status_code != 200:
            self.logger.info(
                event,
                extra={"status": response.status_code, "path": path},
            )
            return self._passthrough(response)

        try:
            payload = await self._watch(request, response.aread())
        except ClientDisconnectedError:
            return self._client_gone(request)
        except httpx.HTTPError as e:
            return server_error(
                request,
                self.logger,
                "failed to read backend response",
                why="backend closed the connection mid-body",
                exc=e,
            )
        finally:
            await response.aclose()

        try:
            result = json.loads(payload, parse_constant=_reject_constant)
        except ValueError:
            result = None
        if not isinstance(result, dict):
            # Never invent structure the backend did not provide
            return Response(
                content=payload,
                status_code=response.status_code,
                media_type="application/json",
            )

        existing = result.get("segments")
        if isinstance(existing, list) and existing:
            self.logger.info(
                event,
                extra={"status": response.status_code, "segments": "backend"},
            )
            return JSONResponse(content=result, status_code=200)

        try:
            segments = await self._fetch_srt_segments(request, url, body, content_type)
        except ClientDisconnectedError:
            return self._client_gone(request)

        if segments:
            result["segments"] = [segment.to_dict() for segment in segments]
            self.logger.info(
                "enriched JSON with SRT segments", extra={"count": len(segments)}
            )

        self.logger.info(
            event, extra={"status": response.status_code, "segments": len(segments)}
        )
        return JSONResponse(content=result, status_code=200)

    async def _fetch_srt_segments(
        self,
        request: Request,
        url: str,
        body: bytes,
        content_type: str,
    ) -> List[Segment]:
        """
        Ask the backend for SRT of the same upload and parse it.

        Best effort: any failure is logged and yields no segments.
        """
        srt_body = replace_field(body, content_type, "response_format", "srt")
        if srt_body is body:
            srt_body = append_field(body, content_type, "response_format", "srt")
        if srt_body is body:
            self._skip_enrichment("multipart body has no closing delimiter to extend")
            return []

        try:
            srt_response = await self._watch(
                request,
                self.client.send(self._build_request(url, srt_body, content_type)),
            )
        except httpx.HTTPError as e:
            self._skip_enrichment(f"SRT request failed: {type(e).__name__}: {e}")
            return []

        if srt_response.status_code != 200:
            self._skip_enrichment(f"SRT request returned {srt_response.status_code}")
            return []

        return parse_srt(srt_response.text)

    def _skip_enrichment(self, why: str) -> None:
        self.logger.warning("SRT enrichment skipped", extra={"why": why})

    async def transcribe(self, request: Request) -> Response:
        """
        Handle POST /v1/audio/transcriptions.

        Accepts multipart/form-data with:
        - file: audio file (required)
        - model: model name (forwarded; the backend decides)
        - language: ISO language code (optional)
        - response_format: json, text, srt, vtt (default: json)
        - prompt: initial prompt (optional)

        Non-JSON formats and backend errors are streamed back verbatim.
        JSON responses are enriched with SRT-derived segments.
        """
        return await self._forward(
            request,
            TRANSCRIPTIONS_PATH,
            "transcription backend unavailable",
            "transcription proxied",
            enrich=True,
        )

    async def translate(self, request: Request) -> Response:
        """Handle POST /v1/audio/translations as a straight passthrough."""
        return await self._forward(
            request,
            TRANSLATIONS_PATH,
            "translation backend unavailable",
            "translation proxied",
            enrich=False,
        )

    async def health(self) -> None:
        """
        Probe the backend's model listing.

        Any HTTP response counts as reachable. The body is drained up to
        1 KB and the response always closed so repeated polling does not
        leak connections.

        Raises:
            BackendUnavailableError: if the backend cannot be reached
        """
        url = self._endpoint(MODELS_PATH)
        try:
            async with self.health_client.stream("GET", url) as response:
                drained = 0
                async for chunk in response.aiter_raw():
                    drained += len(chunk)
                    if drained >= HEALTH_DRAIN_BYTES:
                        break
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise BackendUnavailableError(f"backend unreachable: {e}") from e

    async def list_models(self) -> List[Dict[str, str]]:
        """
        List the models the backend advertises on GET /v1/models.

        Returns ``{"id", "name"}`` entries from the OpenAI-style ``data``
        list. Backends without the endpoint, or with an unreadable or
        oversized listing, yield an empty list.

        Raises:
            BackendUnavailableError: if the backend cannot be reached
        """
        url = self._endpoint(MODELS_PATH)
        buffer = bytearray()
        try:
            async with self.health_client.stream("GET", url) as response:
                if response.status_code != 200:
                    return []
                async for chunk in response.aiter_bytes():
                    buffer += chunk
                    if len(buffer) > MODELS_MAX_BYTES:
                        return []
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise BackendUnavailableError(f"backend unreachable: {e}") from e

        try:
            listing = json.loads(buffer, parse_constant=_reject_constant)
        except ValueError:
            return []

        entries = listing.get("data") if isinstance(listing, dict) else None
        if not isinstance(entries, list):
            return []
        return [
            {"id": entry["id"], "name": entry["id"]}
            for entry in entries
            if isinstance(entry, dict) and isinstance(entry.get("id"), str) and entry["id"]
        ]

    def describe(self) -> Dict[str, Any]:
        return {
            "backend_url": self.backend_url,
            "timeout_seconds": TRANSCRIPTION_TIMEOUT,
            "health_timeout_seconds": HEALTH_TIMEOUT,
        }


class ProxyHolder:
    """
    Shared reference to the active proxy.

    Request handlers read ``current`` once and keep that instance for the
    whole request, so a swap never affects a request already in flight.
    """

    def __init__(self, proxy: TranscriptionProxy):
        self._proxy = proxy
        self._lock = threading.Lock()

    @property
    def current(self) -> TranscriptionProxy:
        return self._proxy

    def swap(self, proxy: TranscriptionProxy) -> TranscriptionProxy:
        """Install a new proxy and return the previous one."""
        with self._lock:
            previous, self._proxy = self._proxy, proxy
        return previous
