"""Speech recognition, segmentation and transcript export."""

from transcript_pipeline.asr.registry import get_recognizer
from transcript_pipeline.asr.segmenter import segment_by_pause

__all__ = ["get_recognizer", "segment_by_pause"]
