"""Audio resource collaborator client.

Looks up audio metadata (size, duration, storage locator, language, owner)
and records transcription status by calling internal endpoints on the
audio service. The audio service owns those records; this pipeline only
reads them and reports status through its internal API.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Any

import httpx

from transcript_pipeline.utils.errors import NotFoundError, StorageError

logger = logging.getLogger(__name__)

AUDIO_STATUSES = ("processing", "transcribed", "failed")


@dataclass
class AudioFile:
    """Audio resource as seen by the transcription pipeline."""

    id: str
    user_id: str | None = None
    size_bytes: int | None = None
    duration_ms: int | None = None
    storage_uri: str | None = None
    language: str | None = None
    meta: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AudioFile:
        def _int(value: Any) -> int | None:
            return int(value) if value is not None else None

        return cls(
            id=str(data["id"]),
            user_id=data.get("user_id"),
            size_bytes=_int(data.get("size_bytes")),
            duration_ms=_int(data.get("duration_ms")),
            storage_uri=data.get("storage_uri") or data.get("gcs_uri"),
            language=data.get("language"),
            meta=dict(data.get("meta") or {}),
        )


class AudioClient:
    """Client for the audio service's internal API.

    Reads configuration from environment variables:
        AUDIO_SERVICE_URL, INTERNAL_TASK_SECRET
    """

    def __init__(
        self,
        service_url: str | None = None,
        internal_secret: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.service_url = (
            service_url or os.environ.get("AUDIO_SERVICE_URL", "")
        ).rstrip("/")
        self.internal_secret = internal_secret or os.environ.get(
            "INTERNAL_TASK_SECRET", ""
        )

        if not self.service_url:
            raise StorageError("AUDIO_SERVICE_URL is required", operation="init")
        if not self.internal_secret:
            raise StorageError("INTERNAL_TASK_SECRET is required", operation="init")

        self._client = httpx.AsyncClient(timeout=30.0, transport=transport)

    def _headers(self) -> dict[str, str]:
        return {
            "X-Internal-Secret": self.internal_secret,
            "Content-Type": "application/json",
        }

    async def close(self) -> None:
        """Close the shared HTTP client and release connection pool."""
        await self._client.aclose()

    async def get_audio(self, audio_id: str) -> AudioFile:
        """Fetch audio metadata.

        Raises:
            NotFoundError: If the audio service has no such resource.
            StorageError: If the call fails.
        """
        url = f"{self.service_url}/internal/audio/{audio_id}"
        try:
            response = await self._client.get(url, headers=self._headers())
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            if exc.response.status_code == 404:
                raise NotFoundError(
                    f"Audio '{audio_id}' not found", field="audio_id"
                ) from exc
            raise StorageError(
                f"Audio lookup failed for '{audio_id}': "
                f"HTTP {exc.response.status_code}",
                operation="get_audio",
            ) from exc
        except httpx.RequestError as exc:
            raise StorageError(
                f"Audio lookup failed for '{audio_id}': {exc}",
                operation="get_audio",
            ) from exc
        return AudioFile.from_dict(response.json())

    async def update_status(
        self,
        audio_id: str,
        status: str,
        error_message: str | None = None,
        summary: dict[str, Any] | None = None,
        run_id: str | None = None,
    ) -> None:
        """Record the audio's transcription status.

        Args:
            audio_id: The audio resource identifier.
            status: One of processing, transcribed, failed.
            error_message: Failure description (on failure).
            summary: Result summary merged into the audio's meta (on success).

        Raises:
            StorageError: If the call fails.
        """
        if status not in AUDIO_STATUSES:
            raise ValueError(f"Unknown audio status: {status}")

        payload: dict[str, Any] = {"status": status}
        if error_message is not None:
            payload["error_message"] = error_message
        if summary is not None:
            payload["summary"] = summary

        url = f"{self.service_url}/internal/audio/{audio_id}/status"
        try:
            response = await self._client.post(
                url, headers=self._headers(), json=payload
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise StorageError(
                f"Audio status update failed for '{audio_id}': "
                f"HTTP {exc.response.status_code}",
                run_id=run_id,
                operation="update_status",
            ) from exc
        except httpx.RequestError as exc:
            raise StorageError(
                f"Audio status update failed for '{audio_id}': {exc}",
                run_id=run_id,
                operation="update_status",
            ) from exc
        logger.info(
            "Audio %s marked %s",
            audio_id,
            status,
            extra={"audio_id": audio_id, "run_id": run_id},
        )
