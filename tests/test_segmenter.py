"""Tests for pause-based segmentation."""

from transcript_pipeline.asr.interface import TranscriptWord
from transcript_pipeline.asr.segmenter import segment_by_pause, summarize_segments


def _w(text: str, start: float, end: float, speaker: str | None = None) -> TranscriptWord:
    return TranscriptWord(text=text, start_time=start, end_time=end, speaker=speaker)


class TestSegmentByPause:
    """Tests for segment_by_pause()."""

    def test_empty_input_returns_no_segments(self) -> None:
        assert segment_by_pause([]) == []

    def test_punctuation_closes_segment_before_gap(self) -> None:
        words = [
            _w("the", 0.0, 0.2),
            _w("quick", 0.25, 0.5),
            _w("fox.", 0.55, 0.9),
            _w("jumps", 3.0, 3.3),
        ]
        segments = segment_by_pause(words, gap_sec=0.6, max_dur_sec=10)

        assert [s.text for s in segments] == ["the quick fox.", "jumps"]
        assert (segments[0].start_time, segments[0].end_time) == (0.0, 0.9)
        assert (segments[1].start_time, segments[1].end_time) == (3.0, 3.3)
        assert [s.index for s in segments] == [0, 1]

    def test_gap_breaks_after_the_word_that_follows_it(self) -> None:
        words = [_w("a", 0.0, 0.2), _w("b", 1.0, 1.2), _w("c", 1.3, 1.5)]
        segments = segment_by_pause(words, gap_sec=0.6, max_dur_sec=10)
        assert [s.text for s in segments] == ["a b", "c"]

    def test_gap_below_threshold_does_not_break(self) -> None:
        words = [_w("a", 0.0, 0.2), _w("b", 0.5, 0.7)]
        segments = segment_by_pause(words, gap_sec=0.6, max_dur_sec=10)
        assert [s.text for s in segments] == ["a b"]

    def test_gap_never_breaks_on_first_word_of_segment(self) -> None:
        words = [_w("end.", 0.0, 0.5), _w("after", 5.0, 5.2), _w("pause", 5.3, 5.5)]
        segments = segment_by_pause(words, gap_sec=0.6, max_dur_sec=10)
        assert [s.text for s in segments] == ["end.", "after pause"]

    def test_max_duration_forces_break(self) -> None:
        words = [_w(f"w{i}", i * 1.0, i * 1.0 + 0.9) for i in range(6)]
        segments = segment_by_pause(words, gap_sec=5, max_dur_sec=3)
        assert [s.text for s in segments] == ["w0 w1 w2 w3", "w4 w5"]

    def test_single_long_word_is_its_own_segment(self) -> None:
        words = [_w("looong", 0.0, 15.0), _w("next", 15.1, 15.3)]
        segments = segment_by_pause(words, gap_sec=1, max_dur_sec=10)
        assert [s.text for s in segments] == ["looong", "next"]

    def test_speaker_change_starts_new_segment(self) -> None:
        words = [
            _w("hi", 0.0, 0.2, "1"),
            _w("there", 0.3, 0.5, "1"),
            _w("hello", 0.6, 0.8, "2"),
        ]
        segments = segment_by_pause(words, gap_sec=1, max_dur_sec=10)
        assert [s.text for s in segments] == ["hi there", "hello"]
        assert [s.speaker for s in segments] == ["1", "2"]

    def test_null_speaker_never_triggers_break(self) -> None:
        words = [_w("a", 0.0, 0.2, "1"), _w("b", 0.3, 0.5), _w("c", 0.6, 0.8, "1")]
        segments = segment_by_pause(words, gap_sec=1, max_dur_sec=10)
        assert len(segments) == 1
        assert segments[0].speaker == "1"

    def test_covers_every_word_exactly_once_in_order(self) -> None:
        words = [
            _w("one", 0.0, 0.3, "1"),
            _w("two.", 0.4, 0.6, "1"),
            _w("three", 2.0, 2.3, "2"),
            _w("four", 2.4, 2.6, "1"),
            _w("five", 4.0, 4.2, "1"),
            _w("six!", 4.3, 4.5, "1"),
            _w("seven", 4.6, 20.0),
        ]
        segments = segment_by_pause(words, gap_sec=0.6, max_dur_sec=5)
        flattened = [w for s in segments for w in s.words]
        assert flattened == words

    def test_segment_dict_shape(self) -> None:
        segment = segment_by_pause([_w("hi.", 0.0, 0.3, "1")])[0]
        assert segment.to_dict() == {
            "index": 0,
            "start": 0.0,
            "end": 0.3,
            "text": "hi.",
            "words": [{"text": "hi.", "start": 0.0, "end": 0.3, "speaker": "1"}],
            "speaker": "1",
        }


class TestSummarizeSegments:
    """Tests for summarize_segments()."""

    def test_joins_lines_and_counts_speakers(self) -> None:
        words = [_w("hi.", 0.0, 0.2, "1"), _w("yo.", 0.3, 0.5, "2"), _w("ok.", 0.6, 0.8, "1")]
        text, speakers = summarize_segments(segment_by_pause(words))
        assert text == "hi.\nyo.\nok."
        assert speakers == 2

    def test_no_speakers_returns_none(self) -> None:
        text, speakers = summarize_segments(segment_by_pause([_w("hi", 0.0, 0.2)]))
        assert text == "hi"
        assert speakers is None
