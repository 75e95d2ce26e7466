"""Tests for transcript_pipeline.observability.metrics module."""

import json
import time

import pytest

from transcript_pipeline.observability.metrics import (
    RunMetrics,
    StageTimer,
    log_run_metrics,
)


def _metrics(**overrides) -> RunMetrics:
    values = {
        "run_id": "run-1",
        "audio_id": "audio-1",
        "status": "succeeded",
        "path": "sync",
        "mode": "buffer",
        "processing_wall_time_seconds": 1.25,
    }
    values.update(overrides)
    return RunMetrics(**values)


class TestStageTimer:
    """Tests for StageTimer context manager."""

    def test_records_duration(self) -> None:
        timer = StageTimer("recognize")
        with timer:
            time.sleep(0.01)

        assert timer.stage_name == "recognize"
        assert timer.duration_seconds >= 0.01
        assert timer.start_time is not None
        assert timer.end_time >= timer.start_time

    def test_records_duration_when_stage_raises(self) -> None:
        timer = StageTimer("fetch")
        with pytest.raises(RuntimeError):
            with timer:
                raise RuntimeError("boom")
        assert timer.end_time is not None

    def test_unused_timer_reports_zero(self) -> None:
        assert StageTimer("segment").duration_seconds == 0.0


class TestLogRunMetrics:
    """Tests for log_run_metrics() JSON output."""

    def test_success_line(self, capsys: pytest.CaptureFixture[str]) -> None:
        log_run_metrics(_metrics(word_count=12, segment_count=3, speaker_count=2))

        entry = json.loads(capsys.readouterr().out.strip())
        assert entry["metric_type"] == "run_completion"
        assert entry["severity"] == "INFO"
        assert entry["run_id"] == "run-1"
        assert entry["mode"] == "buffer"
        assert entry["word_count"] == 12
        assert entry["speaker_count"] == 2
        assert entry["fallback_used"] is False

    def test_failure_line_is_warning(self, capsys: pytest.CaptureFixture[str]) -> None:
        log_run_metrics(
            _metrics(
                status="failed",
                path="async",
                mode="locator",
                attempts_made=2,
                job_id="job-1",
                error_message="provider returned 503",
            )
        )

        entry = json.loads(capsys.readouterr().out.strip())
        assert entry["severity"] == "WARNING"
        assert entry["attempts_made"] == 2
        assert entry["job_id"] == "job-1"
        assert entry["error_message"] == "provider returned 503"
