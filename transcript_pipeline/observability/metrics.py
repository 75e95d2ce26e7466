"""Per-run metrics collection and reporting.

RunMetrics holds what one transcription attempt measured; StageTimer
measures a stage's wall-clock duration; log_run_metrics() emits the result
as a single JSON line on stdout for log-based metric extraction.
"""

from __future__ import annotations

import json
import time
from dataclasses import asdict, dataclass
from datetime import UTC, datetime


@dataclass
class RunMetrics:
    """Metrics for one completed or failed run attempt."""

    run_id: str
    audio_id: str
    status: str
    path: str
    mode: str | None
    processing_wall_time_seconds: float
    fetch_duration_seconds: float = 0.0
    recognition_duration_seconds: float = 0.0
    segmentation_duration_seconds: float = 0.0
    audio_size_bytes: int | None = None
    audio_duration_ms: int | None = None
    word_count: int = 0
    segment_count: int = 0
    speaker_count: int | None = None
    attempts_made: int = 0
    fallback_used: bool = False
    job_id: str | None = None
    error_message: str | None = None


class StageTimer:
    """Context manager that records wall-clock duration of a stage.

    Usage:
        timer = StageTimer("recognize")
        with timer:
            do_work()
        print(timer.duration_seconds)
    """

    def __init__(self, stage_name: str) -> None:
        self.stage_name = stage_name
        self.start_time: datetime | None = None
        self.end_time: datetime | None = None
        self.duration_seconds: float = 0.0
        self._mono_start: float = 0.0

    def __enter__(self) -> StageTimer:
        self.start_time = datetime.now(UTC)
        self._mono_start = time.monotonic()
        return self

    def __exit__(self, exc_type: object, exc_val: object, exc_tb: object) -> None:
        self.duration_seconds = time.monotonic() - self._mono_start
        self.end_time = datetime.now(UTC)


def log_run_metrics(metrics: RunMetrics) -> None:
    """Emit run metrics as one JSON line with metric_type "run_completion"."""
    entry = {
        "timestamp": datetime.now(UTC).isoformat(),
        "severity": "INFO" if metrics.status == "succeeded" else "WARNING",
        "metric_type": "run_completion",
        **asdict(metrics),
    }
    print(json.dumps(entry))
