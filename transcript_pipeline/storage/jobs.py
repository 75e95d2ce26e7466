"""Durable job queue for asynchronous transcription runs."""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from transcript_pipeline.storage.database import SessionFactory, utcnow
from transcript_pipeline.storage.models import (
    ACTIVE_JOB_STATUSES,
    JOB_STATUSES,
    JOB_TYPE_TRANSCRIBE_LONG,
    JobRecord,
)
from transcript_pipeline.utils.errors import (
    InvalidStateError,
    NotFoundError,
    StorageError,
)

logger = logging.getLogger(__name__)


class JobStore:
    """Data access for JobRecord rows.

    All mutations are single-row conditional UPDATEs so that several worker
    processes can share one table.
    """

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def enqueue(
        self, run_id: str, audio_id: str, job_type: str = JOB_TYPE_TRANSCRIBE_LONG
    ) -> JobRecord:
        """Return the run's active job, creating one if there is none.

        A concurrent enqueue that loses the race on the partial unique index
        re-reads and returns the winner's row.
        """
        existing = await self.find_active(run_id)
        if existing is not None:
            logger.info(
                "Job %s already active for run %s",
                existing.id,
                run_id,
                extra={"run_id": run_id, "job_id": existing.id},
            )
            return existing

        async with self._session_factory() as session:
            job = JobRecord(
                run_id=run_id,
                audio_id=audio_id,
                job_type=job_type,
                status="queued",
                attempts_made=0,
            )
            session.add(job)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                winner = await self.find_active(run_id)
                if winner is None:
                    raise StorageError(
                        f"Failed to enqueue job for run '{run_id}'",
                        run_id=run_id,
                        operation="enqueue",
                    ) from None
                return winner

        logger.info(
            "Enqueued job %s for run %s",
            job.id,
            run_id,
            extra={"run_id": run_id, "job_id": job.id, "audio_id": audio_id},
        )
        return job

    async def get(self, job_id: str) -> JobRecord | None:
        async with self._session_factory() as session:
            return await session.get(JobRecord, job_id)

    async def find_for_run(self, run_id: str) -> list[JobRecord]:
        async with self._session_factory() as session:
            result = await session.scalars(
                select(JobRecord)
                .where(JobRecord.run_id == run_id)
                .order_by(JobRecord.created_at.asc())
            )
            return list(result.all())

    async def find_active(self, run_id: str) -> JobRecord | None:
        async with self._session_factory() as session:
            result = await session.scalars(
                select(JobRecord)
                .where(
                    JobRecord.run_id == run_id,
                    JobRecord.status.in_(ACTIVE_JOB_STATUSES),
                )
                .order_by(JobRecord.created_at.asc())
                .limit(1)
            )
            return result.first()

    async def list_due(self, now: datetime, limit: int = 10) -> list[JobRecord]:
        """Queued jobs whose retry time has passed, oldest first."""
        async with self._session_factory() as session:
            result = await session.scalars(
                select(JobRecord)
                .where(
                    JobRecord.status == "queued",
                    or_(
                        JobRecord.next_retry_at.is_(None),
                        JobRecord.next_retry_at <= now,
                    ),
                )
                .order_by(JobRecord.created_at.asc())
                .limit(limit)
            )
            return list(result.all())

    async def claim(self, job_id: str, now: datetime | None = None) -> JobRecord | None:
        """Atomically move a queued job to processing and count the attempt.

        Returns:
            The claimed job, or None if another claimer got there first.
        """
        result = await self._execute(
            update(JobRecord)
            .where(JobRecord.id == job_id, JobRecord.status == "queued")
            .values(
                status="processing",
                attempts_made=JobRecord.attempts_made + 1,
                next_retry_at=None,
                error_message=None,
                updated_at=now or utcnow(),
            ),
            job_id,
            "claim",
        )
        if result.rowcount == 0:
            return None
        return await self.get(job_id)

    async def mark_succeeded(
        self, job_id: str, provider_job_id: str | None = None
    ) -> JobRecord:
        return await self._finish(
            job_id,
            status="succeeded",
            error_message=None,
            next_retry_at=None,
            provider_job_id=provider_job_id,
        )

    async def schedule_retry(
        self, job_id: str, error: str, next_retry_at: datetime
    ) -> JobRecord:
        """Return a processing job to the queue with a retry time."""
        return await self._finish(
            job_id, status="queued", error_message=error, next_retry_at=next_retry_at
        )

    async def mark_failed(self, job_id: str, error: str) -> JobRecord:
        """Terminal failure: no next_retry_at."""
        return await self._finish(
            job_id, status="failed", error_message=error, next_retry_at=None
        )

    async def _finish(self, job_id: str, status: str, **values: object) -> JobRecord:
        if status not in JOB_STATUSES:
            raise ValueError(f"Unknown job status: {status}")
        if status == "succeeded" and values.get("provider_job_id") is None:
            values.pop("provider_job_id", None)
        result = await self._execute(
            update(JobRecord)
            .where(JobRecord.id == job_id, JobRecord.status == "processing")
            .values(status=status, updated_at=utcnow(), **values),
            job_id,
            status,
        )
        if result.rowcount == 0:
            current = await self.get(job_id)
            if current is None:
                raise NotFoundError(f"Job '{job_id}' not found")
            raise InvalidStateError(
                f"Job '{job_id}' is not processing; cannot move to {status}",
                current_status=current.status,
            )
        job = await self.get(job_id)
        if job is None:
            raise NotFoundError(f"Job '{job_id}' not found")
        return job

    async def _execute(self, statement, job_id: str, operation: str):
        try:
            async with self._session_factory() as session:
                result = await session.execute(statement)
                await session.commit()
                return result
        except SQLAlchemyError as exc:
            raise StorageError(
                f"Job {operation} failed for '{job_id}': {exc}", operation=operation
            ) from exc
