"""
SRT parsing helpers used to enrich JSON transcriptions with segments.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

TIMESTAMP_ARROW = " --> "


@dataclass(slots=True)
class Segment:
    start: float
    end: float
    text: str

    def to_dict(self) -> dict[str, Any]:
        return {"start": self.start, "end": self.end, "text": self.text}


def parse_srt(text: str) -> list[Segment]:
    """
    Parse an SRT document into ordered segments.

    Each block is an index line, a ``start --> end`` line and one or more
    caption lines. Caption lines are joined with single spaces. Blocks that
    are too short or lack the arrow separator are skipped, so a partially
    corrupt document still yields its valid cues.
    """
    segments: list[Segment] = []
    normalized = text.replace("\r\n", "\n").strip()
    if not normalized:
        return segments

    for block in normalized.split("\n\n"):
        lines = block.strip().split("\n")
        if len(lines) < 3:
            continue

        parts = lines[1].split(TIMESTAMP_ARROW)
        if len(parts) != 2:
            continue

        segments.append(
            Segment(
                start=parse_timestamp(parts[0].strip()),
                end=parse_timestamp(parts[1].strip()),
                text=" ".join(lines[2:]),
            )
        )
    return segments


def parse_timestamp(value: str) -> float:
    """Convert ``HH:MM:SS,mmm`` to seconds. Malformed input yields 0.0."""
    parts = value.replace(",", ".", 1).split(":")
    if len(parts) != 3:
        return 0.0

    hours = _to_float(parts[0])
    minutes = _to_float(parts[1])
    seconds = _to_float(parts[2])
    return round(hours * 3600 + minutes * 60 + seconds, 3)


def _to_float(value: str) -> float:
    try:
        return float(value.strip())
    except ValueError:
        return 0.0
