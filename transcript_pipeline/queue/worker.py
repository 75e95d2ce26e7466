"""Polling worker for queued transcription jobs.

Lists due jobs oldest-first, claims each one atomically and runs it as its
own asyncio task. Failed attempts are re-queued on the retry schedule
until max_attempts is reached, after which job, run and audio are failed.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from transcript_pipeline.pipeline import ProcessedRun, TranscriptionPipeline
from transcript_pipeline.storage.database import utcnow
from transcript_pipeline.storage.jobs import JobStore
from transcript_pipeline.storage.models import JobRecord
from transcript_pipeline.storage.runs import RunStore
from transcript_pipeline.utils.errors import (
    NotFoundError,
    PipelineError,
    ValidationError,
)
from transcript_pipeline.utils.retry import RetryPolicy

logger = logging.getLogger(__name__)


@dataclass
class TriggerResult:
    """Outcome of a push-based trigger for one run."""

    job: dict[str, Any]
    run: dict[str, Any] | None = None
    skipped: bool = False
    reason: str | None = None


class TranscriptionWorker:
    """Job-table poller with retry and backoff.

    Construct one per process and pass it to whatever starts and stops it.
    The in-flight set only prevents double dispatch inside this process;
    the atomic claim in JobStore covers separate processes.
    """

    def __init__(
        self,
        pipeline: TranscriptionPipeline,
        job_store: JobStore,
        run_store: RunStore,
        retry_policy: RetryPolicy | None = None,
        poll_interval: float = 2.0,
        batch_size: int = 10,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._pipeline = pipeline
        self._jobs = job_store
        self._runs = run_store
        self.retry_policy = retry_policy or RetryPolicy()
        self.poll_interval = poll_interval
        self.batch_size = batch_size
        self._clock = clock
        self._in_flight: dict[str, asyncio.Task] = {}
        self._running = False
        self._stop_event = asyncio.Event()

    async def poll_once(self) -> int:
        """Dispatch every due job not already in flight.

        Returns:
            Number of jobs dispatched this cycle.
        """
        jobs = await self._jobs.list_due(self._clock(), limit=self.batch_size)
        dispatched = 0
        for job in jobs:
            if job.id in self._in_flight:
                continue
            self._dispatch(job)
            dispatched += 1
        return dispatched

    def _dispatch(self, job: JobRecord) -> asyncio.Task:
        task = asyncio.create_task(self._run_job(job))
        self._in_flight[job.id] = task
        return task

    async def _run_job(self, job: JobRecord) -> ProcessedRun | None:
        try:
            return await self.process_job(job)
        except Exception:
            logger.error(
                "Job %s bookkeeping failed",
                job.id,
                exc_info=True,
                extra={"job_id": job.id, "run_id": job.run_id},
            )
            return None
        finally:
            self._in_flight.pop(job.id, None)

    async def process_job(self, job: JobRecord) -> ProcessedRun | None:
        """Claim and run one job, then record success, retry or failure.

        Returns:
            The processed run, or None if the claim was lost or it failed.
        """
        claimed = await self._jobs.claim(job.id, self._clock())
        if claimed is None:
            logger.info(
                "Job %s already claimed, skipping",
                job.id,
                extra={"job_id": job.id, "run_id": job.run_id},
            )
            return None

        logger.info(
            "Processing job %s attempt %d/%d",
            claimed.id,
            claimed.attempts_made,
            self.retry_policy.max_attempts,
            extra={"job_id": claimed.id, "run_id": claimed.run_id},
        )
        try:
            processed = await self._pipeline.process_queued_job(
                claimed.run_id,
                job_id=claimed.id,
                attempts_made=claimed.attempts_made,
            )
        except Exception as exc:
            await self._handle_failure(claimed, exc)
            return None

        await self._jobs.mark_succeeded(
            claimed.id, provider_job_id=processed.operation_name
        )
        return processed

    async def _handle_failure(self, job: JobRecord, exc: Exception) -> None:
        attempts = job.attempts_made
        error = str(exc)
        retryable = not isinstance(exc, ValidationError)

        if retryable and self.retry_policy.should_retry(attempts):
            next_retry_at = self.retry_policy.next_retry_at(attempts, self._clock())
            await self._jobs.schedule_retry(job.id, error, next_retry_at)
            logger.warning(
                "Job %s attempt %d failed, retrying at %s: %s",
                job.id,
                attempts,
                next_retry_at.isoformat(),
                error,
                extra={"job_id": job.id, "run_id": job.run_id, "error": error},
            )
            return

        await self._jobs.mark_failed(job.id, error)
        logger.error(
            "Job %s failed permanently after %d attempts: %s",
            job.id,
            attempts,
            error,
            extra={"job_id": job.id, "run_id": job.run_id, "error": error},
        )
        try:
            await self._pipeline.fail_run(job.run_id, error)
        except PipelineError:
            logger.error(
                "Failed to mark run %s failed",
                job.run_id,
                exc_info=True,
                extra={"run_id": job.run_id, "job_id": job.id},
            )

    async def trigger(self, run_id: str, job_id: str | None = None) -> TriggerResult:
        """Process a run's job now instead of waiting for the next poll.

        Raises:
            NotFoundError: If the run, the named job, or any job for the
                run does not exist.
            ValidationError: If the named job belongs to another run.
        """
        await self._runs.require(run_id)
        job = await self._resolve_job(run_id, job_id)

        if job.status == "succeeded":
            return TriggerResult(job=job.to_dict(), skipped=True, reason="succeeded")
        if job.id in self._in_flight:
            return TriggerResult(job=job.to_dict(), skipped=True, reason="in_flight")
        if job.status != "queued":
            return TriggerResult(job=job.to_dict(), skipped=True, reason=job.status)

        processed = await self._dispatch(job)
        refreshed = await self._jobs.get(job.id)
        return TriggerResult(
            job=(refreshed or job).to_dict(),
            run=processed.run if processed is not None else None,
        )

    async def _resolve_job(self, run_id: str, job_id: str | None) -> JobRecord:
        if job_id:
            job = await self._jobs.get(job_id)
            if job is None:
                raise NotFoundError(f"Job '{job_id}' not found", run_id=run_id)
            if job.run_id != run_id:
                raise ValidationError(
                    f"Job '{job_id}' does not belong to run '{run_id}'",
                    run_id=run_id,
                    field="job_id",
                )
            return job

        job = await self._jobs.find_active(run_id)
        if job is not None:
            return job
        jobs = await self._jobs.find_for_run(run_id)
        if not jobs:
            raise NotFoundError(f"No job for run '{run_id}'", run_id=run_id)
        return jobs[-1]

    async def run(self) -> None:
        """Poll until stop() is called."""
        self._running = True
        self._stop_event.clear()
        logger.info("Transcription worker starting poll loop")

        while self._running:
            try:
                count = await self.poll_once()
                if count > 0:
                    logger.info("Dispatched %d jobs this cycle", count)
            except Exception:
                logger.error("Unexpected error in poll cycle", exc_info=True)

            try:
                await asyncio.wait_for(self._stop_event.wait(), self.poll_interval)
            except asyncio.TimeoutError:
                pass

    def stop(self) -> None:
        """Signal the polling loop to stop."""
        self._running = False
        self._stop_event.set()
        logger.info("Transcription worker stopping")

    async def drain(self, timeout: float | None = None) -> int:
        """Wait for in-flight jobs to finish.

        Returns:
            Number of jobs still running when the timeout expired.
        """
        tasks = list(self._in_flight.values())
        if not tasks:
            return 0
        _, pending = await asyncio.wait(tasks, timeout=timeout)
        return len(pending)

    def status(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "in_flight": sorted(self._in_flight),
            "in_flight_count": len(self._in_flight),
        }
