"""Sync/async path selection and buffer/locator mode selection."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

from transcript_pipeline.asr.interface import RecognitionMode
from transcript_pipeline.config import PipelineConfig
from transcript_pipeline.storage.audio_client import AudioFile

RoutePath = Literal["sync", "async"]


@dataclass
class RoutePlan:
    path: RoutePath
    reasons: list[str] = field(default_factory=list)


def _exceeds(value: int | None, ceiling: int) -> bool:
    # A ceiling of 0 disables the check; unknown sizes never exceed.
    return ceiling > 0 and value is not None and value > ceiling


def _long_input_reasons(
    audio: AudioFile, params: dict[str, Any], config: PipelineConfig
) -> list[str]:
    reasons = []
    if params.get("model") == "long":
        reasons.append("model_long")
    if _exceeds(audio.size_bytes, config.sync_max_bytes):
        reasons.append("size_exceeds_sync_limit")
    if _exceeds(audio.duration_ms, config.sync_max_duration_ms):
        reasons.append("duration_exceeds_sync_limit")
    return reasons


def decide_route(
    audio: AudioFile, params: dict[str, Any], config: PipelineConfig
) -> RoutePlan:
    """Route long inputs to the job queue unless inline processing is forced."""
    reasons = _long_input_reasons(audio, params, config)
    if not reasons:
        return RoutePlan(path="sync")
    if config.inline_processing:
        return RoutePlan(path="sync", reasons=[*reasons, "inline_override"])
    return RoutePlan(path="async", reasons=reasons)


def select_recognition_mode(
    audio: AudioFile,
    params: dict[str, Any],
    config: PipelineConfig,
    buffer_size: int | None = None,
) -> RecognitionMode:
    """Pick buffer or locator recognition for a run executed in-process.

    Inputs that would have gone async use the locator. So does a buffer
    larger than the synchronous-call ceiling once its real size is known.
    """
    if _long_input_reasons(audio, params, config):
        return "locator"
    if _exceeds(buffer_size, config.buffer_max_bytes):
        return "locator"
    return "buffer"
