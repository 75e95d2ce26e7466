"""Transcription request orchestration.

TranscriptionPipeline is the single entry point for callers:
normalize + hash params -> reuse a succeeded run, or route sync/async ->
(sync) fetch -> recognize -> segment -> store, or (async) enqueue a job
for the worker, which later calls process_queued_job().
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from typing import Any

from botocore.exceptions import BotoCoreError

from transcript_pipeline.asr.export import ExportedTranscript, export_transcript
from transcript_pipeline.asr.google_speech import ENGINE_GOOGLE_SPEECH_V2
from transcript_pipeline.asr.interface import (
    RecognitionConfig,
    RecognitionMode,
    RecognitionResult,
    Recognizer,
)
from transcript_pipeline.asr.registry import get_recognizer
from transcript_pipeline.asr.segmenter import segment_by_pause, summarize_segments
from transcript_pipeline.config import PipelineConfig
from transcript_pipeline.observability.audit import AuditKind, AuditSink, LoggingAuditSink
from transcript_pipeline.observability.metrics import RunMetrics, StageTimer, log_run_metrics
from transcript_pipeline.params import hash_params, params_from_mapping
from transcript_pipeline.routing import RoutePlan, decide_route, select_recognition_mode
from transcript_pipeline.storage.audio_client import AudioClient, AudioFile
from transcript_pipeline.storage.jobs import JobStore
from transcript_pipeline.storage.models import TranscriptRunRecord
from transcript_pipeline.storage.object_store import ObjectStore
from transcript_pipeline.storage.runs import RunStore
from transcript_pipeline.utils.errors import (
    InvalidStateError,
    PipelineError,
    RecognitionTooLongError,
    TransientAudioFetchError,
    ValidationError,
)
from transcript_pipeline.utils.retry import retry_with_backoff

logger = logging.getLogger(__name__)

MAX_SEGMENT_PAGE = 200


@dataclass
class TranscriptionOutcome:
    """Result of request_transcription()."""

    run: dict[str, Any]
    queued: bool
    reused: bool = False
    job: dict[str, Any] | None = None


@dataclass
class ProcessedRun:
    """Result of process_queued_job()."""

    run: dict[str, Any]
    audio: AudioFile
    mode: RecognitionMode | None = None
    operation_name: str | None = None


@dataclass
class SegmentPage:
    items: list[dict[str, Any]]
    next_cursor: int | None
    total: int


@dataclass
class _Execution:
    run: TranscriptRunRecord
    mode: RecognitionMode
    operation_name: str | None = None
    timings: dict[str, float] = field(default_factory=dict)


class TranscriptionPipeline:
    """Routes transcription requests and executes runs.

    Args:
        run_store: Run persistence.
        job_store: Job queue persistence.
        audio_client: Audio resource collaborator.
        object_store: Audio byte download for buffer-mode recognition.
        audit: Lifecycle event sink (defaults to log-only).
        config: Routing ceilings and parameter defaults.
        recognizer_factory: Builds a recognizer for a mode; defaults to the
            registry with environment configuration.
    """

    def __init__(
        self,
        run_store: RunStore,
        job_store: JobStore,
        audio_client: AudioClient,
        object_store: ObjectStore,
        audit: AuditSink | None = None,
        config: PipelineConfig | None = None,
        recognizer_factory: Callable[[str], Recognizer] | None = None,
    ) -> None:
        self._runs = run_store
        self._jobs = job_store
        self._audio_client = audio_client
        self._object_store = object_store
        self._audit = audit or LoggingAuditSink()
        self._config = config or PipelineConfig()
        self._recognizer_factory = recognizer_factory or get_recognizer
        self._recognizers: dict[str, Recognizer] = {}

    @property
    def config(self) -> PipelineConfig:
        return self._config

    def _recognizer(self, mode: RecognitionMode) -> Recognizer:
        if mode not in self._recognizers:
            self._recognizers[mode] = self._recognizer_factory(mode)
        return self._recognizers[mode]

    async def request_transcription(
        self,
        audio_id: str,
        params: dict[str, Any] | None = None,
        force: bool = False,
        user_id: str | None = None,
    ) -> TranscriptionOutcome:
        """Return a cached run, run recognition inline, or queue a job.

        Raises:
            ValidationError: On unknown audio or invalid params.
            InvalidStateError: If the matching run is already processing
                inline.
            PipelineError: Any sync-path failure, after the run is marked
                failed.
        """
        audio = await self._audio_client.get_audio(audio_id)
        raw = dict(params or {})
        if raw.get("language") is None and audio.language:
            raw["language"] = audio.language
        normalized = params_from_mapping(raw, self._config)
        params_hash = hash_params(normalized)

        existing = await self._runs.find_latest(audio_id, params_hash)
        if existing is not None and existing.status == "succeeded" and not force:
            logger.info(
                "Reusing succeeded run %s for audio %s",
                existing.id,
                audio_id,
                extra={"run_id": existing.id, "audio_id": audio_id},
            )
            return TranscriptionOutcome(run=existing.to_dict(), queued=False, reused=True)

        plan = decide_route(audio, normalized, self._config)
        if plan.path == "async":
            return await self._enqueue(audio, normalized, params_hash, existing, user_id, plan)
        return await self._run_inline(audio, normalized, params_hash, existing, user_id, plan)

    async def retry_run(self, run_id: str, user_id: str | None = None) -> TranscriptionOutcome:
        """Re-request a run's audio with its stored params, forcing new work."""
        run = await self._runs.require(run_id)
        return await self.request_transcription(
            run.audio_id, params=dict(run.params), force=True, user_id=user_id
        )

    async def _enqueue(
        self,
        audio: AudioFile,
        params: dict[str, Any],
        params_hash: str,
        existing: TranscriptRunRecord | None,
        user_id: str | None,
        plan: RoutePlan,
    ) -> TranscriptionOutcome:
        if existing is None:
            run = await self._runs.create(
                audio.id,
                ENGINE_GOOGLE_SPEECH_V2,
                params,
                params_hash,
                status="queued",
                author_id=user_id,
            )
        elif existing.status in ("queued", "processing"):
            run = existing
        else:
            run = await self._runs.transition(existing.id, "queued")

        job = await self._jobs.enqueue(run.id, audio.id)
        logger.info(
            "Queued run %s (%s)",
            run.id,
            ", ".join(plan.reasons),
            extra={"run_id": run.id, "job_id": job.id, "audio_id": audio.id},
        )
        await self._update_audio(audio.id, "processing", run_id=run.id)
        await self._audit.record(
            AuditKind.TRANSCRIBE_QUEUED,
            run.id,
            user_id=user_id,
            meta={"job_id": job.id, "reasons": plan.reasons},
        )
        return TranscriptionOutcome(run=run.to_dict(), queued=True, job=job.to_dict())

    async def _run_inline(
        self,
        audio: AudioFile,
        params: dict[str, Any],
        params_hash: str,
        existing: TranscriptRunRecord | None,
        user_id: str | None,
        plan: RoutePlan,
    ) -> TranscriptionOutcome:
        if existing is None:
            run = await self._runs.create(
                audio.id,
                ENGINE_GOOGLE_SPEECH_V2,
                params,
                params_hash,
                status="processing",
                author_id=user_id,
            )
        else:
            run = await self._runs.transition(existing.id, "processing")

        await self._audit.record(
            AuditKind.TRANSCRIBE_START,
            run.id,
            user_id=user_id,
            meta={"path": "sync", "reasons": plan.reasons},
        )
        try:
            execution = await self._execute(run, audio, params, path="sync")
        except Exception as exc:
            await self._fail_run(run, audio, exc, user_id=user_id)
            raise
        return TranscriptionOutcome(run=execution.run.to_dict(), queued=False)

    async def process_queued_job(
        self,
        run_id: str,
        job_id: str | None = None,
        attempts_made: int = 0,
    ) -> ProcessedRun:
        """Execute a queued run with locator recognition.

        A run already succeeded is returned untouched. A run left processing
        by an earlier failed attempt is resumed. Failures propagate without
        touching run status; the caller owns retry bookkeeping.
        """
        run = await self._runs.require(run_id)
        audio = await self._audio_client.get_audio(run.audio_id)
        if run.status == "succeeded":
            logger.info(
                "Run %s already succeeded, skipping",
                run_id,
                extra={"run_id": run_id, "job_id": job_id},
            )
            return ProcessedRun(run=run.to_dict(), audio=audio)
        if run.status != "processing":
            run = await self._runs.transition(run_id, "processing")

        await self._audit.record(
            AuditKind.TRANSCRIBE_START,
            run.id,
            user_id=run.author_id,
            meta={"path": "async", "job_id": job_id, "attempt": attempts_made},
        )
        execution = await self._execute(
            run,
            audio,
            dict(run.params),
            path="async",
            force_locator=True,
            job_id=job_id,
            attempts_made=attempts_made,
        )
        return ProcessedRun(
            run=execution.run.to_dict(),
            audio=audio,
            mode=execution.mode,
            operation_name=execution.operation_name,
        )

    async def fail_run(self, run_id: str, error: str) -> dict[str, Any]:
        """Terminally fail a run whose job exhausted its attempts."""
        run = await self._runs.mark_failed(run_id, error)
        await self._update_audio(
            run.audio_id, "failed", error_message=error, run_id=run_id
        )
        await self._audit.record(
            AuditKind.TRANSCRIBE_FAILED,
            run_id,
            user_id=run.author_id,
            meta={"error": error, "path": "async"},
        )
        return run.to_dict()

    async def _execute(
        self,
        run: TranscriptRunRecord,
        audio: AudioFile,
        params: dict[str, Any],
        path: str,
        force_locator: bool = False,
        job_id: str | None = None,
        attempts_made: int = 0,
    ) -> _Execution:
        """Recognize, segment and store. Raises on failure; writes nothing then."""
        wall_start = time.monotonic()
        fetch_timer = StageTimer("fetch")
        recognize_timer = StageTimer("recognize")
        segment_timer = StageTimer("segment")
        mode: RecognitionMode = "locator"
        fallback_used = False
        metrics = RunMetrics(
            run_id=run.id,
            audio_id=audio.id,
            status="failed",
            path=path,
            mode=None,
            processing_wall_time_seconds=0.0,
            audio_size_bytes=audio.size_bytes,
            audio_duration_ms=audio.duration_ms,
            attempts_made=attempts_made,
            job_id=job_id,
        )

        try:
            if not audio.storage_uri:
                raise ValidationError(
                    f"Audio '{audio.id}' has no storage locator",
                    run_id=run.id,
                    field="storage_uri",
                )
            config = _recognition_config(params)
            mode = "locator" if force_locator else select_recognition_mode(
                audio, params, self._config
            )

            result: RecognitionResult | None = None
            if mode == "buffer":
                with fetch_timer:
                    content = await _fetch_with_retry(self._object_store, audio.storage_uri)
                mode = select_recognition_mode(
                    audio, params, self._config, buffer_size=len(content)
                )
            if mode == "buffer":
                try:
                    with recognize_timer:
                        result = await self._recognizer("buffer").recognize_buffer(
                            content, config
                        )
                except RecognitionTooLongError as exc:
                    logger.warning(
                        "Buffer recognition rejected, falling back to locator: %s",
                        exc,
                        extra={"run_id": run.id, "audio_id": audio.id},
                    )
                    fallback_used = True
                    mode = "locator"
            if result is None:
                with recognize_timer:
                    result = await self._recognizer("locator").recognize_locator(
                        audio.storage_uri, replace(config, model="long")
                    )

            with segment_timer:
                segments = segment_by_pause(
                    result.words,
                    gap_sec=params["gap_sec"],
                    max_dur_sec=params["max_segment_sec"],
                )
                text, speaker_count = summarize_segments(segments)

            record = await self._runs.mark_succeeded(
                run.id,
                text=text,
                segments=[segment.to_dict() for segment in segments],
                speaker_count=speaker_count,
                confidence=result.confidence,
            )
        except Exception as exc:
            metrics.mode = mode
            metrics.fallback_used = fallback_used
            metrics.error_message = str(exc)
            metrics.processing_wall_time_seconds = time.monotonic() - wall_start
            metrics.fetch_duration_seconds = fetch_timer.duration_seconds
            metrics.recognition_duration_seconds = recognize_timer.duration_seconds
            log_run_metrics(metrics)
            raise

        await self._update_audio(
            audio.id,
            "transcribed",
            summary=_audio_summary(record, params, mode),
            run_id=record.id,
        )
        await self._audit.record(
            AuditKind.TRANSCRIBE_END,
            record.id,
            user_id=record.author_id,
            meta={"path": path, "mode": mode, "segments": len(segments)},
        )

        metrics.status = "succeeded"
        metrics.mode = mode
        metrics.fallback_used = fallback_used
        metrics.processing_wall_time_seconds = time.monotonic() - wall_start
        metrics.fetch_duration_seconds = fetch_timer.duration_seconds
        metrics.recognition_duration_seconds = recognize_timer.duration_seconds
        metrics.segmentation_duration_seconds = segment_timer.duration_seconds
        metrics.word_count = len(result.words)
        metrics.segment_count = len(segments)
        metrics.speaker_count = speaker_count
        log_run_metrics(metrics)

        logger.info(
            "Run %s succeeded via %s (%d segments)",
            record.id,
            mode,
            len(segments),
            extra={"run_id": record.id, "audio_id": audio.id, "job_id": job_id},
        )
        return _Execution(run=record, mode=mode, operation_name=result.operation_name)

    async def _fail_run(
        self,
        run: TranscriptRunRecord,
        audio: AudioFile,
        exc: Exception,
        user_id: str | None = None,
    ) -> None:
        error = str(exc)
        logger.error(
            "Run %s failed: %s",
            run.id,
            error,
            exc_info=True,
            extra={"run_id": run.id, "audio_id": audio.id, "error": error},
        )
        try:
            await self._runs.mark_failed(run.id, error)
        except PipelineError:
            logger.error(
                "Failed to record failure for run %s",
                run.id,
                exc_info=True,
                extra={"run_id": run.id},
            )
        await self._update_audio(audio.id, "failed", error_message=error, run_id=run.id)
        await self._audit.record(
            AuditKind.TRANSCRIBE_FAILED,
            run.id,
            user_id=user_id,
            meta={"error": error, "path": "sync"},
        )

    async def _update_audio(
        self,
        audio_id: str,
        status: str,
        error_message: str | None = None,
        summary: dict[str, Any] | None = None,
        run_id: str | None = None,
    ) -> None:
        try:
            await self._audio_client.update_status(
                audio_id,
                status,
                error_message=error_message,
                summary=summary,
                run_id=run_id,
            )
        except PipelineError:
            logger.warning(
                "Audio %s status update to %s failed",
                audio_id,
                status,
                exc_info=True,
                extra={"audio_id": audio_id, "run_id": run_id},
            )

    async def get_run(self, run_id: str) -> dict[str, Any]:
        run = await self._runs.require(run_id)
        return run.to_dict()

    async def list_runs(self, audio_id: str) -> list[dict[str, Any]]:
        return [run.to_dict() for run in await self._runs.list_for_audio(audio_id)]

    async def list_segments(
        self, run_id: str, cursor: int = 0, limit: int = 50
    ) -> SegmentPage:
        """Page through a run's segments. ``limit`` is clamped to 1..200."""
        run = await self._runs.require(run_id)
        segments = list(run.segments or [])
        start = max(0, int(cursor or 0))
        size = min(max(int(limit or 1), 1), MAX_SEGMENT_PAGE)
        items = segments[start : start + size]
        end = start + len(items)
        return SegmentPage(
            items=items,
            next_cursor=end if end < len(segments) else None,
            total=len(segments),
        )

    async def get_segment(self, run_id: str, index: int) -> dict[str, Any]:
        run = await self._runs.require(run_id)
        segments = run.segments or []
        if not isinstance(index, int) or index < 0 or index >= len(segments):
            raise ValidationError(
                f"Segment index {index} out of range (0..{len(segments) - 1})",
                run_id=run_id,
                field="index",
            )
        return segments[index]

    async def export_run(self, run_id: str, fmt: str = "txt") -> ExportedTranscript:
        run = await self._runs.require(run_id)
        if run.status != "succeeded":
            raise InvalidStateError(
                f"Run is {run.status}; only succeeded runs can be exported",
                run_id=run_id,
                current_status=run.status,
            )
        return export_transcript(run.to_dict(), fmt)


def _recognition_config(params: dict[str, Any]) -> RecognitionConfig:
    return RecognitionConfig(
        language=params["language"],
        model=params.get("model", "short"),
        diarize=params.get("diarize", True),
        min_speaker_count=params.get("min_speaker_count"),
        max_speaker_count=params.get("max_speaker_count"),
    )


def _audio_summary(
    run: TranscriptRunRecord, params: dict[str, Any], mode: RecognitionMode
) -> dict[str, Any]:
    completed_at = run.to_dict()["completed_at"]
    return {
        "language": params.get("language"),
        "gap_sec": params.get("gap_sec"),
        "mode": mode,
        "transcription": {
            "last_run_id": run.id,
            "last_completed_at": completed_at,
            "last_engine": run.engine,
        },
    }


@retry_with_backoff(
    max_retries=3,
    base_delay=1.0,
    retryable_exceptions=(BotoCoreError, TransientAudioFetchError),
)
async def _fetch_with_retry(object_store: ObjectStore, uri: str) -> bytes:
    """Download audio bytes with retry on transport errors and throttling."""
    return await asyncio.to_thread(object_store.fetch_object, uri)
