"""Transcription parameters and their idempotency hash.

Two requests whose normalized parameters are equal hash to the same value,
regardless of key order. The hash covers the job kind and engine too, so a
change of backend never reuses an old run.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any

from transcript_pipeline.asr.google_speech import ENGINE_GOOGLE_SPEECH_V2
from transcript_pipeline.config import PipelineConfig
from transcript_pipeline.utils.errors import ValidationError

KIND_TRANSCRIPTION = "transcription"
MODELS = ("short", "long")


def normalize_params(value: Any) -> Any:
    """Recursively drop None values from mappings."""
    if isinstance(value, dict):
        return {
            key: normalize_params(item)
            for key, item in value.items()
            if item is not None
        }
    if isinstance(value, (list, tuple)):
        return [normalize_params(item) for item in value]
    return value


def canonical_json(value: Any) -> str:
    """Serialize with keys sorted at every level and no whitespace."""
    return json.dumps(
        value, sort_keys=True, separators=(",", ":"), ensure_ascii=False
    )


def hash_params(
    params: dict[str, Any],
    kind: str = KIND_TRANSCRIPTION,
    engine: str = ENGINE_GOOGLE_SPEECH_V2,
) -> str:
    """Return the 64-hex SHA-256 of the canonical {kind, engine, params}."""
    payload = {"kind": kind, "engine": engine, "params": normalize_params(params)}
    return hashlib.sha256(canonical_json(payload).encode("utf-8")).hexdigest()


def _positive(name: str, value: Any) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{name} must be a number", field=name) from exc
    if number <= 0:
        raise ValidationError(f"{name} must be positive", field=name)
    return number


def _speaker_count(name: str, value: Any) -> int | None:
    if value is None:
        return None
    try:
        count = int(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{name} must be an integer", field=name) from exc
    if count < 1:
        raise ValidationError(f"{name} must be at least 1", field=name)
    return count


def build_params(
    language: str | None = None,
    diarize: bool = True,
    min_speaker_count: int | None = None,
    max_speaker_count: int | None = None,
    gap_sec: float | None = None,
    max_segment_sec: float | None = None,
    model: str = "short",
    config: PipelineConfig | None = None,
) -> dict[str, Any]:
    """Apply defaults, validate and normalize a parameter set.

    Speaker bounds are dropped when diarization is off so they cannot
    change the hash of a request that ignores them.

    Raises:
        ValidationError: On an unknown model, non-positive thresholds or
            min_speaker_count greater than max_speaker_count.
    """
    config = config or PipelineConfig()
    if model not in MODELS:
        raise ValidationError(
            f"model must be one of {', '.join(MODELS)}", field="model"
        )

    params: dict[str, Any] = {
        "language": language or config.default_language,
        "diarize": bool(diarize),
        "gap_sec": _positive(
            "gap_sec", config.default_gap_sec if gap_sec is None else gap_sec
        ),
        "max_segment_sec": _positive(
            "max_segment_sec",
            config.default_max_segment_sec if max_segment_sec is None else max_segment_sec,
        ),
        "model": model,
    }
    if diarize:
        low = _speaker_count("min_speaker_count", min_speaker_count)
        high = _speaker_count("max_speaker_count", max_speaker_count)
        if low is not None and high is not None and low > high:
            raise ValidationError(
                "min_speaker_count must not exceed max_speaker_count",
                field="min_speaker_count",
            )
        params["min_speaker_count"] = low
        params["max_speaker_count"] = high
    return normalize_params(params)


def params_from_mapping(
    raw: dict[str, Any] | None, config: PipelineConfig | None = None
) -> dict[str, Any]:
    """Build params from a loose mapping such as a stored run's params."""
    raw = raw or {}
    unknown = set(raw) - {
        "language",
        "diarize",
        "min_speaker_count",
        "max_speaker_count",
        "gap_sec",
        "max_segment_sec",
        "model",
    }
    if unknown:
        raise ValidationError(
            f"Unknown transcription params: {', '.join(sorted(unknown))}",
            field=sorted(unknown)[0],
        )
    return build_params(
        language=raw.get("language"),
        diarize=raw.get("diarize", True),
        min_speaker_count=raw.get("min_speaker_count"),
        max_speaker_count=raw.get("max_speaker_count"),
        gap_sec=raw.get("gap_sec"),
        max_segment_sec=raw.get("max_segment_sec"),
        model=raw.get("model", "short"),
        config=config,
    )
