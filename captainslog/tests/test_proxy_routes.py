"""
Tests for the audio proxy routes.

The Whisper backend is simulated with an httpx MockTransport so every
request the proxy makes can be inspected.
"""

import asyncio
import json
import logging

import httpx
import pytest
from fastapi.responses import StreamingResponse
from conftest import (
    BACKEND_URL,
    SAMPLE_SRT,
    FakeBackend,
    asgi_request,
    backend_response,
    build_multipart,
    json_response,
    received_format,
)

from captainslog.core import proxy as proxy_module
from captainslog.core.proxy import ClientDisconnectedError, TranscriptionProxy

TRANSCRIBE = "/v1/audio/transcriptions"
TRANSLATE = "/v1/audio/translations"


def whisper_backend(request: httpx.Request) -> httpx.Response:
    """A well-behaved backend that answers JSON or SRT."""
    if received_format(request) == "srt":
        return backend_response(
            200, SAMPLE_SRT, headers={"Content-Type": "application/x-subrip"}
        )
    return json_response({"text": "hello world"})


def post_audio(client, path=TRANSCRIBE, audio=b"fake-audio", fields=None, headers=None):
    body, content_type = build_multipart(audio=audio, fields=fields)
    return client.post(
        path,
        content=body,
        headers={"Content-Type": content_type, **(headers or {})},
    )


def test_json_response_is_enriched_with_segments(make_client):
    backend = FakeBackend(whisper_backend)

    with make_client(backend) as client:
        response = post_audio(client, fields={"response_format": "json"})

    assert response.status_code == 200
    assert response.headers["content-type"] == "application/json"
    assert response.json() == {
        "text": "hello world",
        "segments": [
            {"start": 0.0, "end": 1.5, "text": "hello"},
            {"start": 1.5, "end": 3.0, "text": "world"},
        ],
    }
    assert backend.formats() == ["json", "srt"]


def test_missing_format_defaults_to_json_and_adds_srt_field(make_client):
    backend = FakeBackend(whisper_backend)

    with make_client(backend) as client:
        response = post_audio(client, fields={"model": "whisper-1"})

    assert response.status_code == 200
    assert len(response.json()["segments"]) == 2
    assert backend.formats() == ["", "srt"]


def test_secondary_call_keeps_audio_and_other_fields(make_client):
    audio = b"RIFF\x00\x00WAVEfmt \xff\xfe" * 64
    backend = FakeBackend(whisper_backend)

    with make_client(backend) as client:
        post_audio(
            client,
            audio=audio,
            fields={"response_format": "json", "language": "en", "model": "base"},
        )

    primary, secondary = backend.requests
    assert primary.url.path == TRANSCRIBE
    assert secondary.url.path == TRANSCRIBE
    assert audio in primary.content
    assert audio in secondary.content
    assert primary.headers["content-type"] == secondary.headers["content-type"]
    assert b'name="language"\r\n\r\nen\r\n' in secondary.content
    assert b'name="model"\r\n\r\nbase\r\n' in secondary.content


def test_backend_segments_are_kept(make_client):
    segments = [{"id": 0, "start": 0.0, "end": 2.0, "text": "already there"}]
    backend = FakeBackend(
        lambda request: json_response({"text": "already there", "segments": segments})
    )

    with make_client(backend) as client:
        response = post_audio(client, fields={"response_format": "json"})

    assert response.status_code == 200
    assert response.json()["segments"] == segments
    assert backend.calls == 1


def test_empty_backend_segments_are_enriched(make_client):
    def handler(request):
        if received_format(request) == "srt":
            return backend_response(200, SAMPLE_SRT)
        return json_response({"text": "hello world", "segments": []})

    backend = FakeBackend(handler)

    with make_client(backend) as client:
        response = post_audio(client, fields={"response_format": "json"})

    assert len(response.json()["segments"]) == 2
    assert backend.calls == 2


@pytest.mark.parametrize(
    ("response_format", "content_type", "payload"),
    [
        ("text", "text/plain; charset=utf-8", b"hello world\n"),
        ("srt", "application/x-subrip", SAMPLE_SRT.encode("utf-8")),
        ("vtt", "text/vtt", b"WEBVTT\n\n00:00.000 --> 00:01.500\nhello\n"),
        ("verbose_json", "application/json", b'{"text":"hi","segments":[]}'),
    ],
)
def test_non_json_formats_pass_through(make_client, response_format, content_type, payload):
    backend = FakeBackend(
        lambda request: backend_response(
            200, payload, headers={"Content-Type": content_type, "X-Backend": "whisper"}
        )
    )

    body, request_type = build_multipart(fields={"response_format": response_format})

    with make_client(backend) as client:
        response = client.post(
            TRANSCRIBE, content=body, headers={"Content-Type": request_type}
        )

    assert response.status_code == 200
    assert response.content == payload
    assert response.headers["content-type"] == content_type
    assert response.headers["x-backend"] == "whisper"
    assert backend.calls == 1
    assert backend.formats() == [response_format]
    assert backend.requests[0].content == body


def test_backend_error_status_passes_through(make_client):
    backend = FakeBackend(
        lambda request: json_response({"error": "model not loaded"}, status_code=503)
    )

    with make_client(backend) as client:
        response = post_audio(client, fields={"response_format": "json"})

    assert response.status_code == 503
    assert response.json() == {"error": "model not loaded"}
    assert backend.calls == 1


def test_unreachable_backend_returns_502(make_client):
    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    with make_client(FakeBackend(refuse)) as client:
        response = post_audio(client, fields={"response_format": "json"})

    assert response.status_code == 502
    assert response.json() == {
        "error": "transcription backend unavailable",
        "status": 502,
    }


def test_backend_timeout_returns_502(make_client):
    def slow(request):
        raise httpx.ReadTimeout("timed out", request=request)

    with make_client(FakeBackend(slow)) as client:
        response = post_audio(client)

    assert response.status_code == 502


def test_srt_failure_returns_unenriched_json(make_client):
    def handler(request):
        if received_format(request) == "srt":
            return backend_response(500, b"internal error")
        return json_response({"text": "hello world"})

    backend = FakeBackend(handler)

    with make_client(backend) as client:
        response = post_audio(client, fields={"response_format": "json"})

    assert response.status_code == 200
    assert response.json() == {"text": "hello world"}
    assert backend.calls == 2


def test_srt_connection_error_returns_unenriched_json(make_client):
    def handler(request):
        if received_format(request) == "srt":
            raise httpx.ConnectError("connection reset", request=request)
        return json_response({"text": "hello world", "language": "en"})

    with make_client(FakeBackend(handler)) as client:
        response = post_audio(client, fields={"response_format": "json"})

    assert response.status_code == 200
    assert response.json() == {"text": "hello world", "language": "en"}


def test_empty_srt_leaves_response_unchanged(make_client):
    def handler(request):
        if received_format(request) == "srt":
            return backend_response(200, b"")
        return json_response({"text": ""})

    with make_client(FakeBackend(handler)) as client:
        response = post_audio(client)

    assert response.json() == {"text": ""}


def test_invalid_backend_json_is_returned_verbatim(make_client):
    backend = FakeBackend(
        lambda request: backend_response(
            200, b"not json at all", headers={"Content-Type": "application/json"}
        )
    )

    with make_client(backend) as client:
        response = post_audio(client, fields={"response_format": "json"})

    assert response.status_code == 200
    assert response.content == b"not json at all"
    assert backend.calls == 1


@pytest.mark.parametrize("constant", [b"NaN", b"Infinity", b"-Infinity"])
def test_non_standard_json_constants_are_returned_verbatim(make_client, constant):
    payload = b'{"text": "hi", "avg_logprob": ' + constant + b"}"
    backend = FakeBackend(
        lambda request: backend_response(
            200, payload, headers={"Content-Type": "application/json"}
        )
    )

    with make_client(backend) as client:
        response = post_audio(client, fields={"response_format": "json"})

    assert response.status_code == 200
    assert response.headers["content-type"] == "application/json"
    assert response.content == payload
    assert backend.calls == 1


def test_json_array_is_returned_verbatim(make_client):
    backend = FakeBackend(lambda request: backend_response(200, b'["a", "b"]'))

    with make_client(backend) as client:
        response = post_audio(client)

    assert json.loads(response.content) == ["a", "b"]
    assert backend.calls == 1


def test_get_is_method_not_allowed(make_client):
    backend = FakeBackend(whisper_backend)

    with make_client(backend) as client:
        response = client.get(TRANSCRIBE)

    assert response.status_code == 405
    assert response.json() == {"error": "method not allowed", "status": 405}
    assert "POST" in response.headers["allow"]
    assert backend.calls == 0


def test_oversized_upload_is_rejected(make_client, monkeypatch):
    monkeypatch.setattr(proxy_module, "MAX_UPLOAD_BYTES", 256)
    backend = FakeBackend(whisper_backend)

    with make_client(backend) as client:
        response = post_audio(client, audio=b"\x00" * 1024)

    assert response.status_code == 413
    assert response.json() == {"error": "request body too large", "status": 413}
    assert backend.calls == 0


def test_translation_is_passthrough(make_client):
    backend = FakeBackend(lambda request: json_response({"text": "hello"}))

    with make_client(backend) as client:
        response = post_audio(
            client, path=TRANSLATE, fields={"response_format": "json"}
        )

    assert response.status_code == 200
    assert response.json() == {"text": "hello"}
    assert backend.calls == 1
    assert backend.requests[0].url.path == TRANSLATE


def test_unreachable_translation_backend(make_client):
    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    with make_client(FakeBackend(refuse)) as client:
        response = post_audio(client, path=TRANSLATE)

    assert response.status_code == 502
    assert response.json()["error"] == "translation backend unavailable"


def test_hop_by_hop_headers_are_not_forwarded(make_client):
    backend = FakeBackend(
        lambda request: backend_response(
            200,
            b"hello\n",
            headers={"Content-Type": "text/plain", "Keep-Alive": "timeout=5"},
        )
    )

    with make_client(backend) as client:
        response = post_audio(client, fields={"response_format": "text"})

    assert response.text == "hello\n"
    assert "keep-alive" not in response.headers


@pytest.mark.asyncio
async def test_transcription_logs_proxied_event(caplog):
    caplog.set_level(logging.INFO, logger="captainslog.proxy")
    transport = httpx.MockTransport(FakeBackend(whisper_backend))

    async with httpx.AsyncClient(transport=transport) as client:
        proxy = TranscriptionProxy(BACKEND_URL, client, client)
        body, content_type = build_multipart(fields={"response_format": "json"})
        enriched = await proxy.transcribe(asgi_request(body, content_type))
        body, content_type = build_multipart(fields={"response_format": "text"})
        passthrough = await proxy.transcribe(asgi_request(body, content_type))
        await passthrough.background()

    messages = [r.getMessage() for r in caplog.records if r.name == "captainslog.proxy"]
    assert enriched.status_code == 200
    assert messages.count("transcription proxied") == 2
    assert "enriched JSON with SRT segments" in messages


class TestClientDisconnect:
    """A client that goes away cancels the backend call in flight."""

    @pytest.fixture(autouse=True)
    def fast_polling(self, monkeypatch):
        monkeypatch.setattr(proxy_module, "DISCONNECT_POLL_INTERVAL", 0.01)

    @pytest.mark.asyncio
    async def test_watch_cancels_pending_call(self):
        class GoneRequest:
            async def is_disconnected(self):
                return True

        cancelled = asyncio.Event()

        async def pending():
            try:
                await asyncio.sleep(30)
            except asyncio.CancelledError:
                cancelled.set()
                raise

        async with httpx.AsyncClient() as client:
            proxy = TranscriptionProxy(BACKEND_URL, client, client)
            with pytest.raises(ClientDisconnectedError):
                await proxy._watch(GoneRequest(), pending())

        await asyncio.wait_for(cancelled.wait(), timeout=1)

    @pytest.mark.asyncio
    async def test_watch_closes_response_finished_during_disconnect_check(self):
        class SlowToNoticeRequest:
            async def is_disconnected(self):
                await asyncio.sleep(0.2)
                return True

        finished = []

        async def quick_send():
            await asyncio.sleep(0.02)
            response = backend_response(200, b"late")
            finished.append(response)
            return response

        async with httpx.AsyncClient() as client:
            proxy = TranscriptionProxy(BACKEND_URL, client, client)
            with pytest.raises(ClientDisconnectedError):
                await proxy._watch(SlowToNoticeRequest(), quick_send())

        assert finished[0].is_closed

    @pytest.mark.asyncio
    async def test_disconnect_returns_499_without_passthrough(self):
        cancelled = asyncio.Event()

        async def stalled(request):
            try:
                await asyncio.sleep(30)
            except asyncio.CancelledError:
                cancelled.set()
                raise
            return json_response({"text": "too late"})

        backend = FakeBackend(stalled)
        body, content_type = build_multipart(fields={"response_format": "json"})

        async with httpx.AsyncClient(transport=httpx.MockTransport(backend)) as client:
            proxy = TranscriptionProxy(BACKEND_URL, client, client)
            response = await proxy.transcribe(
                asgi_request(body, content_type, client_gone=True)
            )
            await asyncio.wait_for(cancelled.wait(), timeout=1)

        assert response.status_code == 499
        assert not isinstance(response, StreamingResponse)
        assert response.body == b""
        assert backend.calls == 1


class TestAuthentication:
    """Bearer token enforcement when a token is configured."""

    def test_missing_token_is_rejected(self, make_client):
        backend = FakeBackend(whisper_backend)

        with make_client(backend, auth_token="s3cret") as client:
            response = post_audio(client)

        assert response.status_code == 401
        assert response.json() == {"error": "unauthorized", "status": 401}
        assert backend.calls == 0

    def test_wrong_token_is_rejected(self, make_client):
        with make_client(FakeBackend(whisper_backend), auth_token="s3cret") as client:
            response = post_audio(client, headers={"Authorization": "Bearer nope"})

        assert response.status_code == 401

    def test_valid_token_is_accepted(self, make_client):
        backend = FakeBackend(whisper_backend)

        with make_client(backend, auth_token="s3cret") as client:
            response = post_audio(client, headers={"Authorization": "Bearer s3cret"})

        assert response.status_code == 200
        assert backend.calls == 2

    def test_health_stays_public(self, make_client):
        with make_client(FakeBackend(whisper_backend), auth_token="s3cret") as client:
            response = client.get("/health")

        assert response.status_code == 200

    def test_no_token_configured_allows_all(self, make_client):
        with make_client(FakeBackend(whisper_backend)) as client:
            response = post_audio(client)

        assert response.status_code == 200
