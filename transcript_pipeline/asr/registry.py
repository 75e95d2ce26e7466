"""Recognizer registry keyed by recognition mode.

Maps "buffer" and "locator" to recognizer classes. Use get_recognizer() to
instantiate one with backend-specific configuration.
"""

from transcript_pipeline.asr.google_speech import (
    GoogleBufferRecognizer,
    GoogleLocatorRecognizer,
)
from transcript_pipeline.asr.interface import Recognizer
from transcript_pipeline.utils.errors import ASRError

RECOGNIZERS: dict[str, type[Recognizer]] = {
    "buffer": GoogleBufferRecognizer,
    "locator": GoogleLocatorRecognizer,
}


def get_recognizer(mode: str, **kwargs: object) -> Recognizer:
    """Create a recognizer for the given mode.

    Args:
        mode: "buffer" or "locator".
        **kwargs: Client configuration passed to the constructor.

    Raises:
        ASRError: If the mode is not registered.
    """
    recognizer_cls = RECOGNIZERS.get(mode)
    if not recognizer_cls:
        available = ", ".join(sorted(RECOGNIZERS.keys()))
        raise ASRError(f"Unknown recognition mode: '{mode}'. Available: {available}")
    return recognizer_cls(**kwargs)
