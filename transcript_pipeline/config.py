"""Pipeline configuration loaded from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass, field

from transcript_pipeline.utils.retry import (
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_RETRY_SCHEDULE_SECONDS,
    RetryPolicy,
    parse_schedule_ms,
)

DEFAULT_SYNC_MAX_BYTES = 10 * 1024 * 1024
DEFAULT_SYNC_MAX_DURATION_MS = 60 * 1000
DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///./transcripts.db"


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return float(raw)


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


@dataclass(frozen=True)
class PipelineConfig:
    """Routing ceilings, segmentation defaults and worker settings.

    A ceiling of 0 disables the corresponding size or duration check.
    """

    sync_max_bytes: int = DEFAULT_SYNC_MAX_BYTES
    sync_max_duration_ms: int = DEFAULT_SYNC_MAX_DURATION_MS
    buffer_max_bytes: int = DEFAULT_SYNC_MAX_BYTES
    default_gap_sec: float = 0.8
    default_max_segment_sec: float = 12.0
    default_language: str = "en-US"
    inline_processing: bool = False
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    retry_schedule_seconds: tuple[float, ...] = field(
        default=DEFAULT_RETRY_SCHEDULE_SECONDS
    )
    poll_interval_seconds: float = 2.0
    batch_size: int = 10
    database_url: str = DEFAULT_DATABASE_URL
    internal_task_secret: str = ""

    @classmethod
    def from_env(cls) -> PipelineConfig:
        """Read every setting from its environment variable, with defaults."""
        return cls(
            sync_max_bytes=_env_int(
                "TRANSCRIBE_SYNC_MAX_BYTES", DEFAULT_SYNC_MAX_BYTES
            ),
            sync_max_duration_ms=_env_int(
                "TRANSCRIBE_SYNC_MAX_DURATION_MS", DEFAULT_SYNC_MAX_DURATION_MS
            ),
            buffer_max_bytes=_env_int(
                "TRANSCRIBE_BUFFER_MAX_BYTES", DEFAULT_SYNC_MAX_BYTES
            ),
            default_gap_sec=_env_float("TRANSCRIBE_GAP_SEC", 0.8),
            default_max_segment_sec=_env_float("TRANSCRIBE_MAX_SEGMENT_SEC", 12.0),
            default_language=os.environ.get("TRANSCRIBE_DEFAULT_LANGUAGE", "en-US"),
            inline_processing=os.environ.get("TASKS_INLINE_PROCESSING") == "1",
            max_attempts=_env_int("TASKS_MAX_ATTEMPTS", DEFAULT_MAX_ATTEMPTS),
            retry_schedule_seconds=parse_schedule_ms(
                os.environ.get("TASKS_RETRY_SCHEDULE_MS")
            ),
            poll_interval_seconds=_env_float("WORKER_POLL_INTERVAL_SECONDS", 2.0),
            batch_size=_env_int("WORKER_BATCH_SIZE", 10),
            database_url=os.environ.get("DATABASE_URL", DEFAULT_DATABASE_URL),
            internal_task_secret=os.environ.get("INTERNAL_TASK_SECRET", ""),
        )

    @property
    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            schedule_seconds=self.retry_schedule_seconds,
            max_attempts=self.max_attempts,
        )
