"""Shared fixtures: in-memory database, stores and recognizer fakes."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from transcript_pipeline.asr.interface import (
    BufferRecognizer,
    LocatorRecognizer,
    RecognitionConfig,
    RecognitionResult,
    TranscriptWord,
)
from transcript_pipeline.config import PipelineConfig
from transcript_pipeline.observability.audit import AuditSink
from transcript_pipeline.pipeline import TranscriptionPipeline
from transcript_pipeline.storage.audio_client import AudioClient, AudioFile
from transcript_pipeline.storage.database import (
    create_engine,
    create_session_factory,
    init_models,
)
from transcript_pipeline.storage.jobs import JobStore
from transcript_pipeline.storage.object_store import ObjectStore
from transcript_pipeline.storage.runs import RunStore

SAMPLE_WORDS = [
    TranscriptWord("Hello", 0.0, 0.4, speaker="1"),
    TranscriptWord("world.", 0.5, 0.9, speaker="1"),
    TranscriptWord("Second", 2.0, 2.4, speaker="2"),
    TranscriptWord("line", 2.5, 2.9, speaker="2"),
]


class FakeBufferRecognizer(BufferRecognizer):
    """Buffer recognizer returning canned words or raising queued errors."""

    engine = "fake"

    def __init__(self, words=None, errors=None) -> None:
        self.words = list(SAMPLE_WORDS if words is None else words)
        self.errors = list(errors or [])
        self.calls: list[tuple[bytes, RecognitionConfig]] = []

    async def recognize_buffer(self, content, config):
        self.calls.append((content, config))
        if self.errors:
            error = self.errors.pop(0)
            if error is not None:
                raise error
        return RecognitionResult(
            words=list(self.words), language=config.language, confidence=0.91
        )


class FakeLocatorRecognizer(LocatorRecognizer):
    """Locator recognizer returning canned words or raising queued errors."""

    engine = "fake"

    def __init__(self, words=None, errors=None) -> None:
        self.words = list(SAMPLE_WORDS if words is None else words)
        self.errors = list(errors or [])
        self.calls: list[tuple[str, RecognitionConfig]] = []

    async def recognize_locator(self, uri, config):
        self.calls.append((uri, config))
        if self.errors:
            error = self.errors.pop(0)
            if error is not None:
                raise error
        return RecognitionResult(
            words=list(self.words),
            language=config.language,
            confidence=0.87,
            operation_name="projects/p/locations/global/operations/op-1",
        )


class RecordingAuditSink(AuditSink):
    def __init__(self) -> None:
        self.events: list[tuple[str, str, dict]] = []

    async def record(self, kind, target_id, user_id=None, meta=None) -> None:
        self.events.append((kind.value, target_id, meta or {}))

    def kinds(self) -> list[str]:
        return [kind for kind, _, _ in self.events]


@pytest.fixture
async def engine():
    engine = create_engine("sqlite+aiosqlite:///:memory:")
    await init_models(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def run_store(session_factory) -> RunStore:
    return RunStore(session_factory)


@pytest.fixture
def job_store(session_factory) -> JobStore:
    return JobStore(session_factory)


@pytest.fixture
def audio_file() -> AudioFile:
    return AudioFile(
        id="audio-1",
        user_id="user-1",
        size_bytes=1_000_000,
        duration_ms=30_000,
        storage_uri="gs://bucket/user-1/audio-1.wav",
        language="en-US",
    )


@pytest.fixture
def audio_client(audio_file) -> AsyncMock:
    client = AsyncMock(spec=AudioClient)
    client.get_audio.return_value = audio_file
    return client


@pytest.fixture
def object_store() -> MagicMock:
    store = MagicMock(spec=ObjectStore)
    store.fetch_object.return_value = b"RIFF" + b"\x00" * 1024
    return store


@pytest.fixture
def buffer_recognizer() -> FakeBufferRecognizer:
    return FakeBufferRecognizer()


@pytest.fixture
def locator_recognizer() -> FakeLocatorRecognizer:
    return FakeLocatorRecognizer()


@pytest.fixture
def audit() -> RecordingAuditSink:
    return RecordingAuditSink()


@pytest.fixture
def pipeline_config() -> PipelineConfig:
    return PipelineConfig()


@pytest.fixture
def pipeline(
    run_store,
    job_store,
    audio_client,
    object_store,
    audit,
    pipeline_config,
    buffer_recognizer,
    locator_recognizer,
) -> TranscriptionPipeline:
    recognizers = {"buffer": buffer_recognizer, "locator": locator_recognizer}
    return TranscriptionPipeline(
        run_store,
        job_store,
        audio_client,
        object_store,
        audit=audit,
        config=pipeline_config,
        recognizer_factory=recognizers.__getitem__,
    )
