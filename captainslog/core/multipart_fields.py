"""
Multipart form helpers for buffered transcription uploads.

The proxy only ever reads or rewrites small text fields (``response_format``)
in an upload whose bulk is opaque audio. Reading goes through the
python-multipart streaming parser so file parts are never buffered or
scanned. Rewriting works on part boundaries so the audio payload is copied
byte-for-byte.
"""

from __future__ import annotations

from dataclasses import dataclass

from python_multipart.exceptions import MultipartParseError
from python_multipart.multipart import MultipartParser, parse_options_header

# Form field values (format, language, model) are never large
MAX_FIELD_BYTES = 1024


@dataclass(slots=True)
class _PartSpan:
    """Byte offsets of one multipart part inside the raw body."""

    header_lines: list[bytes]
    name: str | None
    is_file: bool
    payload_start: int
    payload_end: int
    crlf: bool


class _FieldCollector:
    """python-multipart callback sink that captures a single named field."""

    def __init__(self, field_name: str) -> None:
        self.target = field_name.encode("utf-8")
        self.value: bytes | None = None
        self._headers: dict[bytes, bytes] = {}
        self._header_field = bytearray()
        self._header_value = bytearray()
        self._buffer = bytearray()
        self._capturing = False

    def callbacks(self) -> dict:
        return {
            "on_part_begin": self.on_part_begin,
            "on_header_field": self.on_header_field,
            "on_header_value": self.on_header_value,
            "on_header_end": self.on_header_end,
            "on_headers_finished": self.on_headers_finished,
            "on_part_data": self.on_part_data,
            "on_part_end": self.on_part_end,
        }

    def on_part_begin(self) -> None:
        self._headers = {}
        self._buffer.clear()
        self._capturing = False

    def on_header_field(self, data: bytes, start: int, end: int) -> None:
        self._header_field += data[start:end]

    def on_header_value(self, data: bytes, start: int, end: int) -> None:
        self._header_value += data[start:end]

    def on_header_end(self) -> None:
        self._headers[bytes(self._header_field).lower()] = bytes(self._header_value)
        self._header_field.clear()
        self._header_value.clear()

    def on_headers_finished(self) -> None:
        disposition = self._headers.get(b"content-disposition", b"")
        _, params = parse_options_header(disposition)
        # File parts (the audio) are skipped without buffering
        if b"filename" in params or self.value is not None:
            return
        self._capturing = params.get(b"name") == self.target

    def on_part_data(self, data: bytes, start: int, end: int) -> None:
        if not self._capturing:
            return
        remaining = MAX_FIELD_BYTES - len(self._buffer)
        if remaining > 0:
            self._buffer += data[start : min(end, start + remaining)]

    def on_part_end(self) -> None:
        if self._capturing:
            self.value = bytes(self._buffer)
            self._capturing = False


def get_boundary(content_type: str | None) -> bytes | None:
    """Return the multipart boundary from a Content-Type header, if any."""
    if not content_type:
        return None
    media_type, params = parse_options_header(content_type)
    if not media_type.lower().startswith(b"multipart/"):
        return None
    boundary = params.get(b"boundary")
    return boundary or None


def extract_field(body: bytes, content_type: str | None, field_name: str) -> str:
    """
    Read a single text field from a buffered multipart body.

    Returns the stripped value (capped at 1 KB) of the first non-file part
    with the given name, or "" when the content type is not multipart, the
    boundary is missing, the field is absent or the body does not parse.
    """
    boundary = get_boundary(content_type)
    if boundary is None:
        return ""

    collector = _FieldCollector(field_name)
    try:
        parser = MultipartParser(boundary, callbacks=collector.callbacks())
        parser.write(body)
        parser.finalize()
    except (MultipartParseError, ValueError):
        # A truncated body may still have yielded the field before the error
        pass

    if collector.value is None:
        return ""
    return collector.value.decode("utf-8", errors="replace").strip()


def replace_field(
    body: bytes, content_type: str | None, field_name: str, new_value: str
) -> bytes:
    """
    Replace the value of a multipart text field in place.

    Only the bytes between the field's header terminator and its value
    terminator change; every other part, including the audio, is kept
    byte-identical. Returns ``body`` unchanged when the field is not found.
    Parts framed with bare LF line endings are handed to ``rewrite_field``
    so the backend receives a canonical CRLF body.
    """
    boundary = get_boundary(content_type)
    if boundary is None:
        return body

    spans = _scan_parts(body, boundary)
    if spans is None:
        return body

    for span in spans:
        if span.is_file or span.name != field_name:
            continue
        if not span.crlf:
            return rewrite_field(body, content_type, field_name, new_value)
        return (
            body[: span.payload_start]
            + new_value.encode("utf-8")
            + body[span.payload_end :]
        )
    return body


def rewrite_field(
    body: bytes, content_type: str | None, field_name: str, new_value: str
) -> bytes:
    """
    Re-serialize a multipart body with one field's value substituted.

    Parts are emitted in their original order with their original headers
    and payload bytes, using CRLF framing throughout. Returns ``body``
    unchanged when the field is absent or the body cannot be parsed.
    """
    boundary = get_boundary(content_type)
    if boundary is None:
        return body

    spans = _scan_parts(body, boundary)
    if not spans:
        return body
    if not any(not s.is_file and s.name == field_name for s in spans):
        return body

    delimiter = b"--" + boundary
    replaced = False
    chunks: list[bytes] = []
    for span in spans:
        payload = body[span.payload_start : span.payload_end]
        if not replaced and not span.is_file and span.name == field_name:
            payload = new_value.encode("utf-8")
            replaced = True
        chunks.append(delimiter + b"\r\n")
        chunks.append(b"\r\n".join(span.header_lines) + b"\r\n\r\n")
        chunks.append(payload + b"\r\n")
    chunks.append(delimiter + b"--\r\n")
    return b"".join(chunks)


def _scan_parts(body: bytes, boundary: bytes) -> list[_PartSpan] | None:
    """
    Locate every part of a multipart body by its delimiter lines.

    Returns None when the body has no opening delimiter or a part's header
    block never terminates.
    """
    delimiter = b"--" + boundary

    if body.startswith(delimiter):
        position = 0
    else:
        position = body.find(b"\n" + delimiter)
        if position < 0:
            return None
        position += 1

    spans: list[_PartSpan] = []
    while True:
        after = position + len(delimiter)
        if body[after : after + 2] == b"--":
            break

        line_end = body.find(b"\n", after)
        if line_end < 0:
            return None
        header_start = line_end + 1

        crlf_end = body.find(b"\r\n\r\n", header_start)
        lf_end = body.find(b"\n\n", header_start)
        if crlf_end >= 0 and (lf_end < 0 or crlf_end < lf_end):
            header_block = body[header_start:crlf_end]
            payload_start = crlf_end + 4
            crlf = True
        elif lf_end >= 0:
            header_block = body[header_start:lf_end]
            payload_start = lf_end + 2
            crlf = False
        else:
            return None

        next_delimiter = body.find(b"\n" + delimiter, payload_start - 1)
        if next_delimiter < 0:
            return None
        payload_end = next_delimiter
        if payload_end > payload_start and body[payload_end - 1 : payload_end] == b"\r":
            payload_end -= 1
        elif payload_end < payload_start:
            # Empty payload sharing its line break with the header terminator
            payload_end = payload_start

        header_lines = [
            line.rstrip(b"\r") for line in header_block.split(b"\n") if line.strip()
        ]
        name, is_file = _disposition(header_lines)
        spans.append(
            _PartSpan(
                header_lines=header_lines,
                name=name,
                is_file=is_file,
                payload_start=payload_start,
                payload_end=payload_end,
                crlf=crlf,
            )
        )
        position = next_delimiter + 1

    return spans


def _disposition(header_lines: list[bytes]) -> tuple[str | None, bool]:
    """Return the form name and whether the part is a file upload."""
    for line in header_lines:
        key, _, value = line.partition(b":")
        if key.strip().lower() != b"content-disposition":
            continue
        _, params = parse_options_header(value.strip())
        name = params.get(b"name")
        return (
            name.decode("utf-8", errors="replace") if name is not None else None,
            b"filename" in params,
        )
    return None, False


def append_field(
    body: bytes, content_type: str | None, field_name: str, value: str
) -> bytes:
    """
    Add a text field just before the closing delimiter of a multipart body.

    Returns ``body`` unchanged when the boundary or the closing delimiter
    cannot be found.
    """
    boundary = get_boundary(content_type)
    if boundary is None:
        return body

    closing = body.rfind(b"--" + boundary + b"--")
    if closing < 0:
        return body

    part = (
        b"--"
        + boundary
        + b"\r\n"
        + f'Content-Disposition: form-data; name="{field_name}"'.encode("utf-8")
        + b"\r\n\r\n"
        + value.encode("utf-8")
        + b"\r\n"
    )
    return body[:closing] + part + body[closing:]
