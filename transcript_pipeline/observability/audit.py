"""Audit sink for run lifecycle events.

Recording is best-effort: ``AuditSink.record`` returns nothing and never
raises, so an unavailable audit store cannot fail a transcription.
"""

from __future__ import annotations

import enum
import logging
from abc import ABC, abstractmethod
from typing import Any

from transcript_pipeline.storage.database import SessionFactory
from transcript_pipeline.storage.models import AuditLogRecord

logger = logging.getLogger(__name__)


class AuditKind(str, enum.Enum):
    TRANSCRIBE_START = "TRANSCRIBE_START"
    TRANSCRIBE_END = "TRANSCRIBE_END"
    TRANSCRIBE_FAILED = "TRANSCRIBE_FAILED"
    TRANSCRIBE_QUEUED = "TRANSCRIBE_QUEUED"


class AuditSink(ABC):
    """Fire-and-forget recorder of lifecycle events keyed by run id."""

    @abstractmethod
    async def record(
        self,
        kind: AuditKind,
        target_id: str,
        user_id: str | None = None,
        meta: dict[str, Any] | None = None,
    ) -> None:
        """Record one event. Implementations must log and discard failures."""


class LoggingAuditSink(AuditSink):
    """Writes audit events to the structured log only."""

    async def record(
        self,
        kind: AuditKind,
        target_id: str,
        user_id: str | None = None,
        meta: dict[str, Any] | None = None,
    ) -> None:
        logger.info(
            "audit %s %s",
            kind.value,
            target_id,
            extra={"run_id": target_id, "stage": kind.value},
        )


class DatabaseAuditSink(AuditSink):
    """Persists audit events to the ``audit_logs`` table."""

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def record(
        self,
        kind: AuditKind,
        target_id: str,
        user_id: str | None = None,
        meta: dict[str, Any] | None = None,
    ) -> None:
        try:
            async with self._session_factory() as session:
                session.add(
                    AuditLogRecord(
                        user_id=user_id,
                        kind=kind.value,
                        target_id=target_id,
                        meta=meta or {},
                    )
                )
                await session.commit()
        except Exception as exc:
            logger.warning(
                "Failed to record audit event %s for %s: %s",
                kind.value,
                target_id,
                exc,
                extra={"run_id": target_id, "error": str(exc)},
            )
