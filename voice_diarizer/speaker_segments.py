#!/usr/bin/env python3
"""
speaker_segments.py - Segment data types shared across the diarization pipeline

CandidateSegment is what the segmentation front-end produces (a time span and
its samples). SpeakerSegment is what clustering, transition detection and the
real-time tracker emit: a time span labeled with a speaker id.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import numpy as np


UNASSIGNED_SPEAKER = -1


@dataclass
class CandidateSegment:
    """A span of audio proposed by the segmentation front-end."""
    start_time: float
    end_time: float
    audio: np.ndarray = field(repr=False, compare=False)

    @property
    def duration(self) -> float:
        return self.end_time - self.start_time


@dataclass
class SpeakerSegment:
    """
    A labeled span of audio.

    speaker_id is UNASSIGNED_SPEAKER (-1) when no speaker could be attributed.
    overlapping_speaker_id is set together with is_transition when the span
    hands over to (or overlaps with) another speaker.
    """
    speaker_id: int
    start_time: float
    end_time: float
    confidence: float
    embedding: Optional[np.ndarray] = field(default=None, repr=False, compare=False)
    is_transition: bool = False
    overlapping_speaker_id: Optional[int] = None

    @property
    def duration(self) -> float:
        """Get segment duration in seconds."""
        return self.end_time - self.start_time

    @property
    def is_assigned(self) -> bool:
        return self.speaker_id != UNASSIGNED_SPEAKER

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result = {
            "speaker_id": self.speaker_id,
            "start_time": round(self.start_time, 3),
            "end_time": round(self.end_time, 3),
            "duration": round(self.duration, 3),
            "confidence": round(self.confidence, 3),
            "is_transition": self.is_transition,
        }
        if self.overlapping_speaker_id is not None:
            result["overlapping_speaker_id"] = self.overlapping_speaker_id
        return result


def segments_to_spans(segments: List[SpeakerSegment]) -> List[Tuple[int, float, float, float, bool, Optional[int]]]:
    """Comparable summary of a segment list (embeddings excluded)."""
    return [
        (s.speaker_id, s.start_time, s.end_time, round(s.confidence, 9), s.is_transition, s.overlapping_speaker_id)
        for s in segments
    ]
