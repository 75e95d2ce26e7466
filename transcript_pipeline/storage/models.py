"""ORM models for transcript runs, queued jobs and audit entries."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from transcript_pipeline.storage.database import Base, utcnow

RUN_STATUSES = ("queued", "processing", "succeeded", "failed")
JOB_STATUSES = ("queued", "processing", "succeeded", "failed")
ACTIVE_JOB_STATUSES = ("queued", "processing")
JOB_TYPE_TRANSCRIBE_LONG = "transcribe_long"


def _new_id() -> str:
    return str(uuid.uuid4())


def _isoformat(value: datetime | None) -> str | None:
    return value.isoformat() + "Z" if value is not None else None


class TranscriptRunRecord(Base):
    """One transcription attempt of one audio file with one parameter set."""

    __tablename__ = "transcript_runs"
    __table_args__ = (
        UniqueConstraint("audio_id", "version"),
        Index("ix_transcript_runs_audio_params", "audio_id", "params_hash"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    audio_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    author_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    engine: Mapped[str] = mapped_column(String(64), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    params: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    params_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="queued")
    text: Mapped[str | None] = mapped_column(Text, nullable=True)
    segments: Mapped[list[dict[str, Any]]] = mapped_column(
        JSON, nullable=False, default=list
    )
    speaker_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    confidence: Mapped[float | None] = mapped_column(Float, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    def to_dict(self) -> dict[str, Any]:
        """Return the persisted shape handed back to callers."""
        return {
            "id": self.id,
            "audio_id": self.audio_id,
            "status": self.status,
            "engine": self.engine,
            "params": dict(self.params or {}),
            "text": self.text,
            "segments": list(self.segments or []),
            "speaker_count": self.speaker_count,
            "confidence": self.confidence,
            "version": self.version,
            "error": self.error,
            "created_at": _isoformat(self.created_at),
            "completed_at": _isoformat(self.completed_at),
        }


class JobRecord(Base):
    """Durable work item for an async run, retried on a fixed schedule."""

    __tablename__ = "jobs"
    __table_args__ = (
        # At most one active job per run.
        Index(
            "uq_jobs_active_run",
            "run_id",
            unique=True,
            sqlite_where=text("status IN ('queued', 'processing')"),
            postgresql_where=text("status IN ('queued', 'processing')"),
        ),
        Index("ix_jobs_status_next_retry", "status", "next_retry_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    run_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("transcript_runs.id"), nullable=False, index=True
    )
    audio_id: Mapped[str] = mapped_column(String(64), nullable=False)
    job_type: Mapped[str] = mapped_column(
        String(32), nullable=False, default=JOB_TYPE_TRANSCRIBE_LONG
    )
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="queued")
    attempts_made: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    next_retry_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    provider_job_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "run_id": self.run_id,
            "audio_id": self.audio_id,
            "job_type": self.job_type,
            "status": self.status,
            "attempts_made": self.attempts_made,
            "next_retry_at": _isoformat(self.next_retry_at),
            "error_message": self.error_message,
            "provider_job_id": self.provider_job_id,
        }


class AuditLogRecord(Base):
    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    kind: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    target_id: Mapped[str] = mapped_column(String(64), nullable=False)
    meta: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
