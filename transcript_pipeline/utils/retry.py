"""Retry utilities.

RetryPolicy drives the worker's persistent retry schedule: an ordered list
of delays that caps out at its last value, bounded by max_attempts.

retry_with_backoff is an in-process decorator for short transient calls
(e.g. object storage downloads). Delay follows base_delay * 2^attempt.
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from functools import wraps
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_RETRY_SCHEDULE_SECONDS: tuple[float, ...] = (5.0, 30.0, 120.0)
DEFAULT_MAX_ATTEMPTS = 3


def parse_schedule_ms(raw: str | None) -> tuple[float, ...]:
    """Parse a comma-separated millisecond list into seconds.

    Non-numeric and non-positive entries are ignored. An empty result
    falls back to the default schedule.
    """
    if not raw:
        return DEFAULT_RETRY_SCHEDULE_SECONDS
    delays: list[float] = []
    for part in raw.split(","):
        try:
            value = float(part.strip())
        except ValueError:
            continue
        if value > 0:
            delays.append(value / 1000.0)
    return tuple(delays) or DEFAULT_RETRY_SCHEDULE_SECONDS


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff schedule and attempt ceiling for queued jobs.

    ``attempts`` arguments always mean attempts already made, counting the
    one that just failed (the job's ``attempts_made`` after its claim).
    """

    schedule_seconds: tuple[float, ...] = DEFAULT_RETRY_SCHEDULE_SECONDS
    max_attempts: int = DEFAULT_MAX_ATTEMPTS

    def __post_init__(self) -> None:
        if not self.schedule_seconds:
            raise ValueError("schedule_seconds must not be empty")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    @classmethod
    def from_env(cls) -> RetryPolicy:
        """Build a policy from TASKS_RETRY_SCHEDULE_MS and TASKS_MAX_ATTEMPTS."""
        return cls(
            schedule_seconds=parse_schedule_ms(
                os.environ.get("TASKS_RETRY_SCHEDULE_MS")
            ),
            max_attempts=int(
                os.environ.get("TASKS_MAX_ATTEMPTS", DEFAULT_MAX_ATTEMPTS)
            ),
        )

    def should_retry(self, attempts: int) -> bool:
        return attempts < self.max_attempts

    def delay_for(self, attempts: int) -> float:
        """Delay in seconds before the next attempt after ``attempts`` tries."""
        index = min(max(attempts - 1, 0), len(self.schedule_seconds) - 1)
        return self.schedule_seconds[index]

    def next_retry_at(self, attempts: int, now: datetime) -> datetime:
        return now + timedelta(seconds=self.delay_for(attempts))


def retry_with_backoff(
    max_retries: int = 3,
    base_delay: float = 1.0,
    retryable_exceptions: tuple[type[Exception], ...] | None = None,
) -> Callable:
    """Decorator for retrying async functions with exponential backoff.

    Delay follows the formula: base_delay * 2^attempt

    Args:
        max_retries: Maximum number of retry attempts (default 3).
        base_delay: Base delay in seconds before first retry (default 1.0).
        retryable_exceptions: Tuple of exception types eligible for retry.
            If None, all exceptions are retried. Non-retryable exceptions
            are re-raised immediately with _retry_count attached.

    Returns:
        Decorator that wraps an async function with retry logic.
    """

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            last_error: Exception | None = None
            for attempt in range(max_retries + 1):
                try:
                    return await func(*args, **kwargs)
                except Exception as exc:
                    last_error = exc
                    # Permanent failure: re-raise immediately
                    if retryable_exceptions is not None and not isinstance(
                        exc, retryable_exceptions
                    ):
                        exc._retry_count = attempt  # type: ignore[attr-defined]
                        raise
                    if attempt < max_retries:
                        delay = base_delay * (2**attempt)
                        logger.warning(
                            "Retry %d/%d for %s after %.1fs: %s",
                            attempt + 1,
                            max_retries,
                            func.__name__,
                            delay,
                            exc,
                        )
                        await asyncio.sleep(delay)
            last_error._retry_count = max_retries  # type: ignore[union-attr]
            raise last_error  # type: ignore[misc]

        return wrapper

    return decorator
