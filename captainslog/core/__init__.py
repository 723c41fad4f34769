"""
Core proxy logic for Captain's Log.

Contains:
- TranscriptionProxy: backend forwarding and JSON enrichment
- Multipart field helpers: read and rewrite form fields without touching audio
- SRT parsing: subtitle text to time-aligned segments
"""

from captainslog.core.multipart_fields import (
    append_field,
    extract_field,
    replace_field,
    rewrite_field,
)
from captainslog.core.proxy import (
    BackendUnavailableError,
    ProxyError,
    ProxyHolder,
    RequestBodyError,
    TranscriptionProxy,
)
from captainslog.core.srt import Segment, parse_srt, parse_timestamp

__all__ = [
    "BackendUnavailableError",
    "ProxyError",
    "ProxyHolder",
    "RequestBodyError",
    "Segment",
    "TranscriptionProxy",
    "append_field",
    "extract_field",
    "parse_srt",
    "parse_timestamp",
    "replace_field",
    "rewrite_field",
]
