"""
OpenAI-compatible audio endpoints.

Both routes hand the raw request to the active TranscriptionProxy so the
multipart upload reaches the backend byte-for-byte. FastAPI form parsing
is not used here.
"""

from fastapi import APIRouter, Request
from fastapi.responses import Response

from captainslog.core.proxy import TranscriptionProxy

router = APIRouter()


def get_proxy(request: Request) -> TranscriptionProxy:
    """Snapshot the active proxy for the lifetime of one request."""
    return request.app.state.proxy_holder.current


@router.post("/v1/audio/transcriptions")
async def create_transcription(request: Request) -> Response:
    """
    Transcribe an uploaded audio file through the Whisper backend.

    Multipart fields: file (required), model, language,
    response_format (json, text, srt, vtt; default json), prompt.
    JSON responses carry ``segments`` with start/end seconds.
    """
    return await get_proxy(request).transcribe(request)


@router.post("/v1/audio/translations")
async def create_translation(request: Request) -> Response:
    """Translate an uploaded audio file to English (passthrough)."""
    return await get_proxy(request).translate(request)
