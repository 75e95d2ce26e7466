"""Transcript export: plain text, JSON, SRT and WebVTT renderings.

Works on the persisted run shape (``TranscriptRunRecord.to_dict()``) so
exports never depend on ORM state.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from transcript_pipeline.utils.errors import ValidationError

EXPORT_FORMATS = ("txt", "json", "srt", "vtt")


@dataclass
class ExportedTranscript:
    """Rendered transcript body with its download metadata."""

    body: str
    content_type: str
    extension: str


def _to_seconds(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _format_timestamp(seconds: Any, separator: str) -> str:
    """Format seconds as HH:MM:SS<sep>mmm."""
    total_ms = int(round(_to_seconds(seconds) * 1000))
    hours, rem = divmod(total_ms, 3_600_000)
    minutes, rem = divmod(rem, 60_000)
    secs, millis = divmod(rem, 1000)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}{separator}{millis:03d}"


def _segments(run: dict[str, Any]) -> list[dict[str, Any]]:
    segments = run.get("segments")
    return segments if isinstance(segments, list) else []


def build_plain_text(run: dict[str, Any]) -> str:
    segments = _segments(run)
    if segments:
        return "\n".join(seg.get("text", "") for seg in segments if seg.get("text"))
    return run.get("text") or ""


def build_json(run: dict[str, Any]) -> str:
    return json.dumps(run, indent=2, ensure_ascii=False, default=str)


def build_srt(run: dict[str, Any]) -> str:
    segments = _segments(run)
    if not segments:
        return (run.get("text") or "").strip()
    blocks = []
    for number, seg in enumerate(segments, start=1):
        start = _format_timestamp(seg.get("start"), ",")
        end = _format_timestamp(seg.get("end"), ",")
        text = (seg.get("text") or "").strip()
        blocks.append(f"{number}\n{start} --> {end}\n{text}\n")
    return "\n".join(blocks)


def build_vtt(run: dict[str, Any]) -> str:
    lines = ["WEBVTT", ""]
    segments = _segments(run)
    if not segments:
        lines.append(run.get("text") or "")
        return "\n".join(lines)
    for seg in segments:
        start = _format_timestamp(seg.get("start"), ".")
        end = _format_timestamp(seg.get("end"), ".")
        lines.append(f"{start} --> {end}")
        lines.append((seg.get("text") or "").strip())
        lines.append("")
    return "\n".join(lines)


_FORMATTERS: dict[str, tuple[Callable[[dict[str, Any]], str], str]] = {
    "txt": (build_plain_text, "text/plain; charset=utf-8"),
    "json": (build_json, "application/json; charset=utf-8"),
    "srt": (build_srt, "application/x-subrip; charset=utf-8"),
    "vtt": (build_vtt, "text/vtt; charset=utf-8"),
}


def export_transcript(run: dict[str, Any], fmt: str | None = "txt") -> ExportedTranscript:
    """Render a run in the requested format.

    Args:
        run: Persisted run dict with ``text`` and ``segments``.
        fmt: One of txt, json, srt, vtt (case-insensitive). Defaults to txt.

    Raises:
        ValidationError: If the format is not supported.
    """
    key = (fmt or "txt").lower()
    formatter = _FORMATTERS.get(key)
    if formatter is None:
        raise ValidationError(
            f"Unsupported export format '{fmt}'. Supported: {'|'.join(EXPORT_FORMATS)}",
            run_id=run.get("id"),
            field="fmt",
        )
    build, content_type = formatter
    return ExportedTranscript(body=build(run), content_type=content_type, extension=key)
