"""Abstract speech recognition interface.

Defines the word/segment data models and the two recognizer variants.
BufferRecognizer transcribes in-memory audio synchronously (small inputs);
LocatorRecognizer transcribes audio referenced by a storage URI through the
backend's batch API (large inputs). Both share the Recognizer base so the
pipeline can hold either behind one capability.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, ClassVar, Literal

RecognitionMode = Literal["buffer", "locator"]


@dataclass
class TranscriptWord:
    """A single recognized word with timing in seconds."""

    text: str
    start_time: float
    end_time: float
    speaker: str | None = None
    confidence: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "text": self.text,
            "start": self.start_time,
            "end": self.end_time,
            "speaker": self.speaker,
        }


@dataclass
class TranscriptSegment:
    """A contiguous run of words displayed as one transcript line."""

    index: int
    start_time: float
    end_time: float
    text: str
    words: list[TranscriptWord]
    speaker: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "start": self.start_time,
            "end": self.end_time,
            "text": self.text,
            "words": [word.to_dict() for word in self.words],
            "speaker": self.speaker,
        }


@dataclass
class RecognitionConfig:
    """Backend-facing recognition options derived from run params."""

    language: str = "en-US"
    model: str = "short"
    diarize: bool = True
    min_speaker_count: int | None = None
    max_speaker_count: int | None = None


@dataclass
class RecognitionResult:
    """Raw word timings returned by a recognizer."""

    words: list[TranscriptWord]
    language: str
    confidence: float | None = None
    raw_response: dict[str, Any] = field(default_factory=dict)
    operation_name: str | None = None


class Recognizer(ABC):
    """Common base for recognizer implementations."""

    engine: ClassVar[str]
    mode: ClassVar[RecognitionMode]


class BufferRecognizer(Recognizer):
    """Synchronous recognition over in-memory audio bytes."""

    mode: ClassVar[RecognitionMode] = "buffer"

    @abstractmethod
    async def recognize_buffer(
        self, content: bytes, config: RecognitionConfig
    ) -> RecognitionResult:
        """Recognize ``content`` and return word timings.

        Raises:
            RecognitionTooLongError: If the backend rejects the input as too
                long for synchronous recognition.
            ASRError: On any other backend failure.
        """


class LocatorRecognizer(Recognizer):
    """Batch recognition of audio addressed by a storage URI."""

    mode: ClassVar[RecognitionMode] = "locator"

    @abstractmethod
    async def recognize_locator(
        self, uri: str, config: RecognitionConfig
    ) -> RecognitionResult:
        """Recognize the object at ``uri`` and return word timings.

        Raises:
            ASRError: On submission failure, operation error, or timeout.
        """
