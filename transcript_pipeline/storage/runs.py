"""Persistent, versioned transcript runs.

Every status change is a single conditional UPDATE keyed by primary key
and guarded by the set of statuses the target may be reached from, so a
forbidden transition (including processing -> processing) fails instead of
silently overwriting concurrent work.
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from transcript_pipeline.storage.database import SessionFactory, utcnow
from transcript_pipeline.storage.models import RUN_STATUSES, TranscriptRunRecord
from transcript_pipeline.utils.errors import (
    InvalidStateError,
    NotFoundError,
    StorageError,
)

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    "queued": frozenset({"processing", "failed"}),
    "processing": frozenset({"succeeded", "failed"}),
    "succeeded": frozenset({"queued", "processing"}),
    "failed": frozenset({"queued", "processing"}),
}

VERSION_CONFLICT_RETRIES = 3


def allowed_sources(target: str) -> list[str]:
    """Statuses from which ``target`` may be entered."""
    if target not in RUN_STATUSES:
        raise ValueError(f"Unknown run status: {target}")
    return sorted(
        source for source, targets in ALLOWED_TRANSITIONS.items() if target in targets
    )


def can_transition(current: str, target: str) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


class RunStore:
    """Data access for TranscriptRunRecord rows."""

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def create(
        self,
        audio_id: str,
        engine: str,
        params: dict[str, Any],
        params_hash: str,
        status: str = "queued",
        author_id: str | None = None,
    ) -> TranscriptRunRecord:
        """Insert a run at version max(version for audio_id) + 1.

        A concurrent insert for the same audio collides on the unique
        (audio_id, version) constraint and is retried with a fresh version.
        """
        if status not in ("queued", "processing"):
            raise ValueError(f"Runs are created queued or processing, not {status}")

        for attempt in range(VERSION_CONFLICT_RETRIES):
            async with self._session_factory() as session:
                current = await session.scalar(
                    select(func.max(TranscriptRunRecord.version)).where(
                        TranscriptRunRecord.audio_id == audio_id
                    )
                )
                record = TranscriptRunRecord(
                    audio_id=audio_id,
                    author_id=author_id,
                    engine=engine,
                    version=(current or 0) + 1,
                    params=params,
                    params_hash=params_hash,
                    status=status,
                    segments=[],
                )
                session.add(record)
                try:
                    await session.commit()
                except IntegrityError:
                    await session.rollback()
                    logger.warning(
                        "Version conflict creating run for audio %s (attempt %d)",
                        audio_id,
                        attempt + 1,
                        extra={"audio_id": audio_id},
                    )
                    continue
                logger.info(
                    "Created run %s v%d for audio %s",
                    record.id,
                    record.version,
                    audio_id,
                    extra={"run_id": record.id, "audio_id": audio_id},
                )
                return record

        raise StorageError(
            f"Could not allocate a run version for audio '{audio_id}'",
            operation="create_run",
        )

    async def get(self, run_id: str) -> TranscriptRunRecord | None:
        async with self._session_factory() as session:
            return await session.get(TranscriptRunRecord, run_id)

    async def require(self, run_id: str) -> TranscriptRunRecord:
        run = await self.get(run_id)
        if run is None:
            raise NotFoundError(f"Run '{run_id}' not found", run_id=run_id)
        return run

    async def find_latest(
        self, audio_id: str, params_hash: str
    ) -> TranscriptRunRecord | None:
        """Most recent run (any status) for this audio and parameter hash."""
        async with self._session_factory() as session:
            result = await session.scalars(
                select(TranscriptRunRecord)
                .where(
                    TranscriptRunRecord.audio_id == audio_id,
                    TranscriptRunRecord.params_hash == params_hash,
                )
                .order_by(TranscriptRunRecord.version.desc())
                .limit(1)
            )
            return result.first()

    async def list_for_audio(self, audio_id: str) -> list[TranscriptRunRecord]:
        """All runs for an audio file, newest version first."""
        async with self._session_factory() as session:
            result = await session.scalars(
                select(TranscriptRunRecord)
                .where(TranscriptRunRecord.audio_id == audio_id)
                .order_by(TranscriptRunRecord.version.desc())
            )
            return list(result.all())

    async def _apply(
        self, run_id: str, target: str, values: dict[str, Any]
    ) -> TranscriptRunRecord:
        sources = allowed_sources(target)
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    update(TranscriptRunRecord)
                    .where(
                        TranscriptRunRecord.id == run_id,
                        TranscriptRunRecord.status.in_(sources),
                    )
                    .values(status=target, **values)
                )
                await session.commit()
        except SQLAlchemyError as exc:
            raise StorageError(
                f"Failed to move run to {target}: {exc}",
                run_id=run_id,
                operation="transition_run",
            ) from exc

        if result.rowcount == 0:
            current = await self.get(run_id)
            if current is None:
                raise NotFoundError(f"Run '{run_id}' not found", run_id=run_id)
            raise InvalidStateError(
                f"Cannot move run from {current.status} to {target}",
                run_id=run_id,
                current_status=current.status,
            )
        return await self.require(run_id)

    async def transition(self, run_id: str, status: str) -> TranscriptRunRecord:
        """Move a run to queued or processing, clearing prior error/completion.

        Raises:
            InvalidStateError: If the current status forbids the transition.
            NotFoundError: If the run does not exist.
        """
        if status not in ("queued", "processing"):
            raise ValueError("Use mark_succeeded/mark_failed for terminal statuses")
        return await self._apply(run_id, status, {"error": None, "completed_at": None})

    async def mark_succeeded(
        self,
        run_id: str,
        text: str,
        segments: list[dict[str, Any]],
        speaker_count: int | None,
        confidence: float | None,
    ) -> TranscriptRunRecord:
        return await self._apply(
            run_id,
            "succeeded",
            {
                "text": text,
                "segments": segments,
                "speaker_count": speaker_count,
                "confidence": confidence,
                "error": None,
                "completed_at": utcnow(),
            },
        )

    async def mark_failed(self, run_id: str, error: str) -> TranscriptRunRecord:
        return await self._apply(
            run_id, "failed", {"error": error, "completed_at": utcnow()}
        )
