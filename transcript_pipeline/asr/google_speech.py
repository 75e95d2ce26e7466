"""Google Cloud Speech-to-Text v2 recognizers.

Implements buffer-mode recognition (``recognizers/*:recognize`` with inline
base64 content) and locator-mode recognition (``recognizers/*:batchRecognize``
with inline results, polled as a long-running operation) over the REST API.
Responses are converted into TranscriptWord lists sorted by start time.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import os
import re
import time
from typing import Any

import httpx

from transcript_pipeline.asr.interface import (
    BufferRecognizer,
    LocatorRecognizer,
    RecognitionConfig,
    RecognitionResult,
    TranscriptWord,
)
from transcript_pipeline.utils.errors import ASRError, RecognitionTooLongError

logger = logging.getLogger(__name__)

ENGINE_GOOGLE_SPEECH_V2 = "google-speech-v2"
PROVIDER = "google-speech"
DEFAULT_LOCATION = "global"
POLL_INTERVAL_SECONDS = 5.0
REQUEST_TIMEOUT_SECONDS = 60.0
TRANSIENT_STATUS_CODES = {429, 503}

_TOO_LONG_PATTERN = re.compile(r"maximum\s+of\s+60\s*seconds", re.IGNORECASE)
_MODEL_ALIASES = {"long": "latest_long", "short": "latest_short"}


def build_recognition_config(config: RecognitionConfig) -> dict[str, Any]:
    """Build the v2 RecognitionConfig payload.

    Speaker bounds fall back to SPEAKER_MIN_COUNT / SPEAKER_MAX_COUNT and are
    clamped so that 1 <= min <= max. Diarization is omitted when disabled.
    """
    model = _MODEL_ALIASES.get(config.model, config.model)
    payload: dict[str, Any] = {
        "autoDecodingConfig": {},
        "languageCodes": [config.language],
        "model": model,
        "features": {
            "enableAutomaticPunctuation": True,
            "enableWordTimeOffsets": True,
        },
    }
    if not config.diarize:
        return payload

    fallback_min = max(1, int(os.environ.get("SPEAKER_MIN_COUNT", "1") or 1))
    fallback_max = int(os.environ.get("SPEAKER_MAX_COUNT", "4") or 4)
    resolved_min = max(1, int(config.min_speaker_count or fallback_min))
    resolved_max = max(
        resolved_min, int(config.max_speaker_count or fallback_max or resolved_min)
    )
    payload["features"]["diarizationConfig"] = {
        "minSpeakerCount": resolved_min,
        "maxSpeakerCount": resolved_max,
    }
    return payload


def _offset_to_seconds(value: Any) -> float:
    """Convert a protobuf Duration (``"1.5s"`` or ``{seconds, nanos}``)."""
    if value is None:
        return 0.0
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.rstrip("s") or 0)
        except ValueError:
            return 0.0
    if isinstance(value, dict):
        seconds = float(value.get("seconds", 0) or 0)
        nanos = float(value.get("nanos", 0) or 0)
        return seconds + nanos / 1e9
    return 0.0


def extract_words(results: list[dict[str, Any]] | None) -> list[TranscriptWord]:
    """Flatten recognition results into words sorted by start time."""
    words: list[TranscriptWord] = []
    for result in results or []:
        alternatives = result.get("alternatives") or []
        if not alternatives:
            continue
        for raw in alternatives[0].get("words") or []:
            speaker = (
                raw.get("speakerLabel") or raw.get("speakerTag") or raw.get("speaker")
            )
            words.append(
                TranscriptWord(
                    text=raw.get("word", ""),
                    start_time=_offset_to_seconds(
                        raw.get("startOffset", raw.get("startTime"))
                    ),
                    end_time=_offset_to_seconds(
                        raw.get("endOffset", raw.get("endTime"))
                    ),
                    speaker=str(speaker) if speaker is not None else None,
                    confidence=raw.get("confidence"),
                )
            )
    words.sort(key=lambda w: w.start_time)
    return words


def extract_batch_results(response: dict[str, Any]) -> list[dict[str, Any]]:
    """Unwrap per-file inline results from a batchRecognize response.

    Raises:
        ASRError: If any file in the batch reports an error.
    """
    top_level = response.get("results") or response.get("transcriptionResults") or {}
    entries = top_level if isinstance(top_level, list) else list(top_level.values())
    nested: list[dict[str, Any]] = []
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        error = entry.get("error")
        if error and error.get("code"):
            raise ASRError(
                f"Batch recognition failed for file: {error.get('message', error)}",
                provider=PROVIDER,
            )
        candidates = (
            (entry.get("inlineResult") or {}).get("transcript", {}).get("results"),
            (entry.get("transcript") or {}).get("results"),
            entry.get("results"),
        )
        for candidate in candidates:
            if isinstance(candidate, list):
                nested.extend(candidate)
                break
    return nested


def _first_confidence(results: list[dict[str, Any]] | None) -> float | None:
    for result in results or []:
        alternatives = result.get("alternatives") or []
        if alternatives and alternatives[0].get("confidence") is not None:
            return float(alternatives[0]["confidence"])
        return None
    return None


def _error_details(response: httpx.Response) -> tuple[str, str]:
    """Return (status, message) from a Google error body."""
    try:
        body = response.json()
    except ValueError:
        return "", response.text
    error = body.get("error", {}) if isinstance(body, dict) else {}
    return str(error.get("status", "")), str(error.get("message", response.text))


class _GoogleSpeechBase:
    """Shared configuration and HTTP plumbing for both recognizer modes.

    Args:
        api_key: API key sent as ``X-Goog-Api-Key``.
        access_token: OAuth bearer token, used when no API key is given.
        project_id: GCP project; falls back to GCLOUD_PROJECT or
            GOOGLE_CLOUD_PROJECT.
        location: Speech location; falls back to SPEECH_LOCATION.
        base_url: Override for the API root (defaults per location).
        transport: Optional httpx transport (tests use MockTransport).
    """

    engine = ENGINE_GOOGLE_SPEECH_V2

    def __init__(
        self,
        api_key: str | None = None,
        access_token: str | None = None,
        project_id: str | None = None,
        location: str | None = None,
        base_url: str | None = None,
        timeout: float = 600.0,
        poll_interval: float = POLL_INTERVAL_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._api_key = api_key or os.environ.get("GOOGLE_SPEECH_API_KEY", "")
        self._access_token = access_token or os.environ.get(
            "GOOGLE_SPEECH_ACCESS_TOKEN", ""
        )
        if not self._api_key and not self._access_token:
            raise ValueError("api_key or access_token is required")
        self._project_id = (
            project_id
            or os.environ.get("GCLOUD_PROJECT")
            or os.environ.get("GOOGLE_CLOUD_PROJECT", "")
        )
        if not self._project_id:
            raise ValueError(
                "project_id is required (set GCLOUD_PROJECT or GOOGLE_CLOUD_PROJECT)"
            )
        self._location = location or os.environ.get("SPEECH_LOCATION", DEFAULT_LOCATION)
        if base_url is None:
            host = (
                "speech.googleapis.com"
                if self._location == DEFAULT_LOCATION
                else f"{self._location}-speech.googleapis.com"
            )
            base_url = f"https://{host}/v2"
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._poll_interval = poll_interval
        self._transport = transport

    @property
    def recognizer_path(self) -> str:
        return f"projects/{self._project_id}/locations/{self._location}/recognizers/_"

    def _headers(self) -> dict[str, str]:
        if self._api_key:
            return {"X-Goog-Api-Key": self._api_key}
        return {"Authorization": f"Bearer {self._access_token}"}

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            transport=self._transport, timeout=REQUEST_TIMEOUT_SECONDS
        )

    def _raise_for_response(self, response: httpx.Response, action: str) -> None:
        if response.status_code in TRANSIENT_STATUS_CODES:
            raise ASRError(
                f"{action} temporarily unavailable (HTTP {response.status_code})",
                provider=PROVIDER,
            )
        if response.status_code != 200:
            status, message = _error_details(response)
            raise ASRError(
                f"{action} failed with status {response.status_code}: "
                f"{status or ''} {message}".strip(),
                provider=PROVIDER,
            )


class GoogleBufferRecognizer(_GoogleSpeechBase, BufferRecognizer):
    """Synchronous ``recognize`` call with inline audio content."""

    async def recognize_buffer(
        self, content: bytes, config: RecognitionConfig
    ) -> RecognitionResult:
        """Recognize in-memory audio.

        Raises:
            RecognitionTooLongError: If Google rejects the content with
                INVALID_ARGUMENT or the 60-second synchronous cap.
            ASRError: On any other failure.
        """
        if not isinstance(content, (bytes, bytearray)):
            raise ASRError("recognize_buffer expects bytes content", provider=PROVIDER)

        url = f"{self._base_url}/{self.recognizer_path}:recognize"
        payload = {
            "config": build_recognition_config(config),
            "content": base64.b64encode(bytes(content)).decode("ascii"),
        }
        try:
            async with self._client() as client:
                response = await client.post(url, headers=self._headers(), json=payload)
        except httpx.HTTPError as exc:
            raise ASRError(
                f"Failed to call recognize: {exc}", provider=PROVIDER
            ) from exc

        if response.status_code == 400:
            status, message = _error_details(response)
            if status == "INVALID_ARGUMENT" or _TOO_LONG_PATTERN.search(message):
                raise RecognitionTooLongError(
                    f"Synchronous recognition rejected: {message}", provider=PROVIDER
                )
        self._raise_for_response(response, "Recognize")

        body = response.json()
        results = body.get("results") or []
        return RecognitionResult(
            words=extract_words(results),
            language=config.language,
            confidence=_first_confidence(results),
            raw_response=body,
        )


class GoogleLocatorRecognizer(_GoogleSpeechBase, LocatorRecognizer):
    """``batchRecognize`` on a storage URI, polled until the operation is done."""

    async def recognize_locator(
        self, uri: str, config: RecognitionConfig
    ) -> RecognitionResult:
        """Recognize the audio object at ``uri``.

        Raises:
            ASRError: On submission failure, operation error, or timeout.
        """
        if not uri:
            raise ASRError("A storage URI is required for batch recognition", provider=PROVIDER)

        async with self._client() as client:
            operation_name = await self._submit(client, uri, config)
            response = await self._poll_until_done(client, operation_name)

        results = extract_batch_results(response)
        return RecognitionResult(
            words=extract_words(results),
            language=config.language,
            confidence=_first_confidence(results),
            raw_response=response,
            operation_name=operation_name,
        )

    async def _submit(
        self, client: httpx.AsyncClient, uri: str, config: RecognitionConfig
    ) -> str:
        url = f"{self._base_url}/{self.recognizer_path}:batchRecognize"
        payload = {
            "config": build_recognition_config(config),
            "files": [{"uri": uri}],
            "recognitionOutputConfig": {"inlineResponseConfig": {}},
        }
        try:
            response = await client.post(url, headers=self._headers(), json=payload)
        except httpx.HTTPError as exc:
            raise ASRError(
                f"Failed to submit batch recognition: {exc}", provider=PROVIDER
            ) from exc
        self._raise_for_response(response, "Batch submission")

        name = response.json().get("name")
        if not name:
            raise ASRError("No operation name in batchRecognize response", provider=PROVIDER)
        logger.info("Submitted batch recognition operation %s", name)
        return name

    async def _poll_until_done(
        self, client: httpx.AsyncClient, operation_name: str
    ) -> dict[str, Any]:
        """Poll the operation until done, failed, or timeout.

        Returns:
            The operation's ``response`` payload.
        """
        url = f"{self._base_url}/{operation_name}"
        deadline = time.monotonic() + self._timeout

        while time.monotonic() < deadline:
            try:
                response = await client.get(url, headers=self._headers())
            except httpx.HTTPError as exc:
                raise ASRError(
                    f"Failed to poll operation {operation_name}: {exc}",
                    provider=PROVIDER,
                ) from exc

            if response.status_code in TRANSIENT_STATUS_CODES:
                await asyncio.sleep(self._poll_interval)
                continue
            self._raise_for_response(response, "Operation poll")

            body = response.json()
            if body.get("done"):
                error = body.get("error")
                if error:
                    raise ASRError(
                        f"Operation {operation_name} failed: "
                        f"{error.get('message', error)}",
                        provider=PROVIDER,
                    )
                logger.info("Batch recognition operation %s completed", operation_name)
                return body.get("response") or {}

            await asyncio.sleep(self._poll_interval)

        raise ASRError(
            f"Operation {operation_name} timed out after {self._timeout}s",
            provider=PROVIDER,
        )
