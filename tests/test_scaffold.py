"""Tests for project scaffold: imports, logger, and custom exceptions."""

import json
import logging
import sys

import pytest

from transcript_pipeline.observability.logger import (
    StructuredJsonFormatter,
    configure_logging,
)
from transcript_pipeline.utils.errors import (
    ASRError,
    AudioFetchError,
    AuthorizationError,
    InvalidStateError,
    NotFoundError,
    PipelineError,
    RecognitionTooLongError,
    RequestTooLargeError,
    StorageError,
    TransientAudioFetchError,
    ValidationError,
)


def _record(msg: str = "hello", level: int = logging.INFO, **extra) -> logging.LogRecord:
    record = logging.LogRecord("test.logger", level, __file__, 1, msg, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestModuleImports:
    """Verify all package modules are importable."""

    def test_subpackage_imports(self) -> None:
        import transcript_pipeline.asr
        import transcript_pipeline.observability.audit
        import transcript_pipeline.queue.worker
        import transcript_pipeline.storage.models
        import transcript_pipeline.utils.retry

        assert transcript_pipeline.asr.get_recognizer is not None
        assert transcript_pipeline.asr.segment_by_pause is not None
        assert transcript_pipeline.queue.worker.TranscriptionWorker is not None


class TestCustomExceptions:
    """Verify custom exception hierarchy and string representations."""

    def test_all_exceptions_inherit_from_pipeline_error(self) -> None:
        for cls in (
            ValidationError,
            NotFoundError,
            InvalidStateError,
            ASRError,
            RecognitionTooLongError,
            AudioFetchError,
            TransientAudioFetchError,
            RequestTooLargeError,
            StorageError,
            AuthorizationError,
        ):
            assert issubclass(cls, PipelineError), cls.__name__

    def test_status_codes(self) -> None:
        assert PipelineError("x").status_code == 500
        assert ValidationError("x").status_code == 400
        assert NotFoundError("x").status_code == 404
        assert InvalidStateError("x").status_code == 409
        assert AuthorizationError("x").status_code == 401
        assert AuthorizationError("x", status_code=500).status_code == 500
        assert RequestTooLargeError("x").status_code == 413

    def test_str_with_run_id(self) -> None:
        error = PipelineError("something failed", run_id="run-123")
        assert str(error) == "[run=run-123] something failed"
        assert str(PipelineError("plain")) == "plain"

    def test_not_found_is_a_validation_error(self) -> None:
        with pytest.raises(ValidationError):
            raise NotFoundError("missing", field="audio_id")

    def test_too_long_is_an_asr_error(self) -> None:
        error = RecognitionTooLongError("too long", provider="google-speech")
        assert isinstance(error, ASRError)
        assert error.provider == "google-speech"

    def test_context_attributes(self) -> None:
        assert InvalidStateError("x", current_status="processing").current_status == "processing"
        assert AudioFetchError("x", key="gs://b/k").key == "gs://b/k"
        assert StorageError("x", operation="claim").operation == "claim"
        assert ValidationError("x", field="gap_sec").field == "gap_sec"


class TestStructuredLogger:
    """Verify structured JSON logger output format."""

    def test_output_is_valid_json(self) -> None:
        parsed = json.loads(StructuredJsonFormatter().format(_record("test message")))
        assert parsed["message"] == "test message"
        assert parsed["severity"] == "INFO"
        assert parsed["logger"] == "test.logger"
        assert parsed["timestamp"].endswith("Z")
        assert "T" in parsed["timestamp"]

    def test_includes_correlation_fields(self) -> None:
        parsed = json.loads(
            StructuredJsonFormatter().format(
                _record(run_id="run-1", job_id="job-1", audio_id="a-1", unrelated="x")
            )
        )
        assert parsed["run_id"] == "run-1"
        assert parsed["job_id"] == "job-1"
        assert parsed["audio_id"] == "a-1"
        assert "unrelated" not in parsed

    def test_includes_exception_text(self) -> None:
        try:
            raise ValueError("bad input")
        except ValueError:
            record = logging.LogRecord(
                "test", logging.ERROR, __file__, 1, "failed", None, sys.exc_info()
            )
        parsed = json.loads(StructuredJsonFormatter().format(record))
        assert parsed["severity"] == "ERROR"
        assert parsed["exception"] == "bad input"

    def test_configure_logging_is_idempotent(self) -> None:
        root = logging.getLogger()
        before = list(root.handlers)
        level = root.level
        try:
            configure_logging()
            configure_logging()
            added = [h for h in root.handlers if h not in before]
            assert len(added) == 1
            assert isinstance(added[0].formatter, StructuredJsonFormatter)
        finally:
            root.setLevel(level)
            for handler in list(root.handlers):
                if handler not in before:
                    root.removeHandler(handler)
