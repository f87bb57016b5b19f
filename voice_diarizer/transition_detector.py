#!/usr/bin/env python3
"""
transition_detector.py - Speaker transition and overlap detection

Post-processes a time-ordered list of labeled segments:

1. Merge pass: a segment that repeats the previous speaker with near-identical
   voice (cosine > 0.95) is folded into the previous segment.
2. Flag pass: a segment is flagged as a transition toward the next speaker when
   the gap between them is short, their embeddings are similar but not the
   same voice, and the implied overlap (window - gap) is 0.2-0.3s.
3. Amplification: when a speaker pair hands over repeatedly, confidence in
   each of their transitions is raised by a fixed factor (capped at 1.0).

The output of process() is a fixed point: processing it again returns an
equal list.
"""

import logging
from dataclasses import replace
from typing import Dict, FrozenSet, List, Optional, Sequence

from .diarization_config import TransitionConfig
from .speaker_segments import UNASSIGNED_SPEAKER, SpeakerSegment
from .voice_features import cosine_similarity, energy_ratio

logger = logging.getLogger(__name__)


class TransitionDetector:
    """Merge near-duplicate neighbours and flag likely speaker hand-overs."""

    def __init__(self, config: Optional[TransitionConfig] = None):
        self.config = config or TransitionConfig()

    def process(
        self,
        segments: Sequence[SpeakerSegment],
        similarity_threshold: Optional[float] = None
    ) -> List[SpeakerSegment]:
        """
        Args:
            segments: Time-ordered labeled segments
            similarity_threshold: Upper similarity bound for a transition;
                defaults to the configured value

        Returns:
            New list of segments (inputs are not mutated)
        """
        if similarity_threshold is None:
            similarity_threshold = self.config.similarity_threshold

        merged = self._merge(segments)
        flagged = self._flag(merged, similarity_threshold)
        result = self._amplify(flagged)

        transitions = sum(1 for s in result if s.is_transition)
        if transitions:
            logger.debug("[Transition] %d transitions in %d segments", transitions, len(result))
        return result

    # ------------------------------------------------------------------
    # Passes
    # ------------------------------------------------------------------

    def _merge(self, segments: Sequence[SpeakerSegment]) -> List[SpeakerSegment]:
        merged: List[SpeakerSegment] = []
        for current in segments:
            if merged:
                prev = merged[-1]
                if (
                    prev.speaker_id == current.speaker_id
                    and prev.speaker_id != UNASSIGNED_SPEAKER
                    and prev.embedding is not None
                    and current.embedding is not None
                    and cosine_similarity(prev.embedding, current.embedding) > self.config.merge_similarity
                ):
                    merged[-1] = replace(
                        prev,
                        end_time=max(prev.end_time, current.end_time),
                        confidence=(prev.confidence + current.confidence) / 2.0
                    )
                    continue
            merged.append(current)
        return merged

    def _flag(self, segments: List[SpeakerSegment], similarity_threshold: float) -> List[SpeakerSegment]:
        cfg = self.config
        result = list(segments)
        for i in range(len(result) - 1):
            current, following = result[i], result[i + 1]
            if current.is_transition:
                continue
            if current.embedding is None or following.embedding is None:
                continue
            if current.speaker_id == following.speaker_id:
                continue
            if UNASSIGNED_SPEAKER in (current.speaker_id, following.speaker_id):
                continue

            gap = following.start_time - current.end_time
            if gap >= cfg.overlap_window:
                continue
            similarity = cosine_similarity(current.embedding, following.embedding)
            if not cfg.min_similarity < similarity < similarity_threshold:
                continue
            implied_overlap = cfg.overlap_window - gap
            if not cfg.min_overlap <= implied_overlap <= cfg.max_overlap:
                continue

            confidence = 0.7 * similarity + 0.3 * energy_ratio(current.embedding, following.embedding)
            result[i] = replace(
                current,
                is_transition=True,
                overlapping_speaker_id=following.speaker_id,
                confidence=float(min(1.0, max(0.0, confidence)))
            )
        return result

    def _base_confidence(self, segment: SpeakerSegment, following: SpeakerSegment) -> float:
        """Unamplified transition confidence, recomputed from the embeddings."""
        similarity = cosine_similarity(segment.embedding, following.embedding)
        base = 0.7 * similarity + 0.3 * energy_ratio(segment.embedding, following.embedding)
        return float(min(1.0, max(0.0, base)))

    def _amplify(self, segments: List[SpeakerSegment]) -> List[SpeakerSegment]:
        cfg = self.config
        pair_counts: Dict[FrozenSet[int], int] = {}
        for segment in segments:
            if segment.is_transition and segment.overlapping_speaker_id is not None:
                pair = frozenset((segment.speaker_id, segment.overlapping_speaker_id))
                pair_counts[pair] = pair_counts.get(pair, 0) + 1

        result = list(segments)
        for i, segment in enumerate(result):
            if not segment.is_transition or segment.overlapping_speaker_id is None:
                continue
            pair = frozenset((segment.speaker_id, segment.overlapping_speaker_id))
            following = result[i + 1] if i + 1 < len(result) else None
            if (
                following is None
                or following.speaker_id != segment.overlapping_speaker_id
                or segment.embedding is None
                or following.embedding is None
            ):
                # Flagged upstream without a recoverable partner; leave as is
                continue
            base = self._base_confidence(segment, following)
            if pair_counts.get(pair, 0) >= cfg.recurrence:
                result[i] = replace(segment, confidence=float(min(1.0, base * cfg.amplification)))
            else:
                result[i] = replace(segment, confidence=base)
        return result
