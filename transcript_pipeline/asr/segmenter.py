"""Pause and punctuation based segmentation of word timings.

Groups an ordered word stream into display segments in a single greedy
pass. A segment closes after the word that crosses a silence gap, ends a
sentence, or pushes the segment past its maximum duration. A speaker change
always starts a fresh segment before the new word is added.
"""

from __future__ import annotations

import re
from collections.abc import Iterable

from transcript_pipeline.asr.interface import TranscriptSegment, TranscriptWord

_SENTENCE_PUNCT = re.compile(r"[.!?]")


def _build_segment(index: int, buffer: list[TranscriptWord]) -> TranscriptSegment:
    return TranscriptSegment(
        index=index,
        start_time=buffer[0].start_time,
        end_time=buffer[-1].end_time,
        text=" ".join(word.text for word in buffer),
        words=list(buffer),
        speaker=buffer[0].speaker,
    )


def segment_by_pause(
    words: Iterable[TranscriptWord],
    gap_sec: float = 0.6,
    max_dur_sec: float = 10.0,
) -> list[TranscriptSegment]:
    """Split words into segments on pauses, punctuation and duration.

    Args:
        words: Words in temporal order.
        gap_sec: Silence between consecutive words in one segment that
            closes the segment.
        max_dur_sec: Cumulative segment duration that forces a break.

    Returns:
        Segments in input order. Every word appears in exactly one segment.
    """
    segments: list[TranscriptSegment] = []
    buffer: list[TranscriptWord] = []
    last_word: TranscriptWord | None = None

    for word in words:
        speaker_changed = (
            last_word is not None
            and last_word.speaker is not None
            and word.speaker is not None
            and last_word.speaker != word.speaker
        )
        if speaker_changed and buffer:
            segments.append(_build_segment(len(segments), buffer))
            buffer = []

        buffer.append(word)
        prev = buffer[-2] if len(buffer) >= 2 else None
        # Gap is measured across segment boundaries but only breaks in-buffer.
        gap_ref = prev or last_word
        gap = word.start_time - gap_ref.end_time if gap_ref is not None else 0.0
        duration = word.end_time - buffer[0].start_time

        should_break = (
            (prev is not None and gap >= gap_sec)
            or _SENTENCE_PUNCT.search(word.text) is not None
            or duration >= max_dur_sec
        )
        if should_break:
            segments.append(_build_segment(len(segments), buffer))
            buffer = []
        last_word = word

    if buffer:
        segments.append(_build_segment(len(segments), buffer))
    return segments


def summarize_segments(
    segments: list[TranscriptSegment],
) -> tuple[str, int | None]:
    """Return the transcript text and distinct speaker count.

    Text is one line per segment. Speaker count is None when no segment
    carries a speaker tag.
    """
    text = "\n".join(segment.text for segment in segments)
    speakers = {segment.speaker for segment in segments if segment.speaker is not None}
    return text, (len(speakers) or None)
