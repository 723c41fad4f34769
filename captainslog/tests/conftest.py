"""Shared fixtures: a simulated Whisper backend and an app wired to it."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from pathlib import Path
from typing import Any

import httpx
import pytest
from fastapi import Request
from fastapi.testclient import TestClient

from captainslog.api.main import create_app
from captainslog.config import ServerConfig
from captainslog.core.multipart_fields import extract_field

BACKEND_URL = "http://whisper.test:5000"

SAMPLE_SRT = (
    "1\n00:00:00,000 --> 00:00:01,500\nhello\n\n"
    "2\n00:00:01,500 --> 00:00:03,000\nworld\n"
)


def backend_response(
    status_code: int = 200,
    content: bytes | str = b"",
    headers: dict[str, str] | None = None,
) -> httpx.Response:
    """
    Build a backend response that behaves like one read off the network.

    ``httpx.Response(content=...)`` is pre-read, which would make raw
    streaming fail; wrapping the bytes in a ByteStream keeps it unread.
    """
    if isinstance(content, str):
        content = content.encode("utf-8")
    return httpx.Response(
        status_code,
        headers=headers or {},
        stream=httpx.ByteStream(content),
    )


def json_response(payload: Any, status_code: int = 200) -> httpx.Response:
    return backend_response(
        status_code,
        json.dumps(payload),
        headers={"Content-Type": "application/json"},
    )


def build_multipart(
    audio: bytes = b"fake-audio",
    fields: dict[str, str] | None = None,
) -> tuple[bytes, str]:
    """Encode an upload the way an HTTP client library would."""
    request = httpx.Request(
        "POST",
        "http://client.test/",
        data=fields or {},
        files={"file": ("test.wav", audio, "audio/wav")},
    )
    return request.read(), request.headers["Content-Type"]


class FakeBackend:
    """Records every request and delegates the reply to a handler."""

    def __init__(self, handler: Callable[[httpx.Request], httpx.Response]):
        self.handler = handler
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.handler(request)

    def formats(self) -> list[str]:
        """response_format value of every recorded request, in order."""
        return [
            extract_field(
                r.content, r.headers.get("content-type"), "response_format"
            )
            for r in self.requests
        ]

    @property
    def calls(self) -> int:
        return len(self.requests)


def received_format(request: httpx.Request) -> str:
    return extract_field(
        request.content, request.headers.get("content-type"), "response_format"
    )


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in (
        "CAPTAINSLOG_WHISPER_URL",
        "CAPTAINSLOG_AUTH_TOKEN",
        "CAPTAINSLOG_CONFIG",
        "CAPTAINSLOG_LOG_DIR",
        "CAPTAINSLOG_LOG_LEVEL",
        "CAPTAINSLOG_HOST",
        "CAPTAINSLOG_PORT",
    ):
        monkeypatch.delenv(key, raising=False)


@pytest.fixture
def write_config(tmp_path: Path) -> Callable[..., ServerConfig]:
    def _write(auth_token: str = "", whisper_url: str = BACKEND_URL) -> ServerConfig:
        path = tmp_path / "config.yaml"
        path.write_text(
            "server:\n"
            f"  auth_token: \"{auth_token}\"\n"
            "backend:\n"
            f"  whisper_url: {whisper_url}\n"
            "defaults:\n"
            "  language: en\n"
            "logging:\n"
            "  level: DEBUG\n"
            "  directory: \"\"\n",
            encoding="utf-8",
        )
        return ServerConfig(path)

    return _write


@pytest.fixture
def make_client(
    write_config: Callable[..., ServerConfig],
) -> Callable[..., TestClient]:
    """
    Build a TestClient whose backend calls go to ``backend``.

    Use as a context manager so the app lifespan runs.
    """

    def _make(backend: FakeBackend, auth_token: str = "") -> TestClient:
        transport = httpx.MockTransport(backend)
        clients = (
            httpx.AsyncClient(transport=transport, timeout=120.0),
            httpx.AsyncClient(transport=transport, timeout=5.0),
        )
        app = create_app(write_config(auth_token=auth_token), backend_clients=clients)
        return TestClient(app)

    return _make


def asgi_request(
    body: bytes,
    content_type: str,
    path: str = "/v1/audio/transcriptions",
    client_gone: bool = False,
) -> Request:
    """
    Build a Request for calling TranscriptionProxy directly.

    The body arrives in one message. Afterwards the client either stays
    connected (receive blocks) or reports ``http.disconnect``.
    """
    messages = [{"type": "http.request", "body": body, "more_body": False}]

    async def receive() -> dict[str, Any]:
        if messages:
            return messages.pop(0)
        if client_gone:
            return {"type": "http.disconnect"}
        await asyncio.sleep(3600)
        return {"type": "http.disconnect"}

    scope = {
        "type": "http",
        "http_version": "1.1",
        "method": "POST",
        "scheme": "http",
        "path": path,
        "raw_path": path.encode("ascii"),
        "root_path": "",
        "query_string": b"",
        "headers": [
            (b"content-type", content_type.encode("latin-1")),
            (b"content-length", str(len(body)).encode("ascii")),
        ],
        "server": ("testserver", 80),
        "client": ("127.0.0.1", 50000),
    }
    return Request(scope, receive)
