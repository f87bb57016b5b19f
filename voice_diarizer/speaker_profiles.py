#!/usr/bin/env python3
"""
speaker_profiles.py - Persistent voice profile model

A SpeakerProfile is the long-lived identity of a speaker: a bounded,
recency-ordered list of embeddings, running duration/confidence statistics,
an EWMA-maintained characteristic map and a per-speaker verification
threshold that adapts as the speaker is verified.

Profiles serialize to plain dicts (embeddings as base64 float32) so they can
be stored as JSON and restored without loss.
"""

import copy
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import numpy as np

from .json_serialization_utils import decode_embedding, encode_embedding
from .voice_features import blend_characteristics


MAX_EMBEDDINGS = 20
DEFAULT_VERIFICATION_THRESHOLD = 0.85
MIN_VERIFICATION_THRESHOLD = 0.75
MAX_VERIFICATION_THRESHOLD = 0.95


def now_ms() -> float:
    """Current wall clock time in epoch milliseconds."""
    return time.time() * 1000.0


def clamp_threshold(
    value: float,
    low: float = MIN_VERIFICATION_THRESHOLD,
    high: float = MAX_VERIFICATION_THRESHOLD
) -> float:
    return float(min(high, max(low, value)))


@dataclass
class SpeakerProfile:
    """
    Persistent identity of one speaker.

    Invariants:
        - len(embeddings) <= the embedding cap, MAX_EMBEDDINGS unless configured
          (oldest evicted first)
        - verification_threshold is always within the verification bounds
          (module defaults on construction, ProfileConfig bounds on load)
    """
    id: int
    name: Optional[str] = None
    embeddings: List[np.ndarray] = field(default_factory=list, repr=False, compare=False)
    total_duration: float = 0.0
    average_confidence: float = 0.0
    last_updated: float = field(default_factory=now_ms)
    speaker_characteristics: Dict[str, float] = field(default_factory=dict, repr=False)
    verification_threshold: float = DEFAULT_VERIFICATION_THRESHOLD
    is_verified: bool = False
    verification_count: int = 0
    segment_count: int = 0

    def __post_init__(self):
        self.verification_threshold = clamp_threshold(self.verification_threshold)
        self.embeddings = [np.asarray(e, dtype=np.float32).ravel() for e in self.embeddings]
        if len(self.embeddings) > MAX_EMBEDDINGS:
            self.embeddings = self.embeddings[-MAX_EMBEDDINGS:]

    # ------------------------------------------------------------------
    # Mutators
    # ------------------------------------------------------------------

    def touch(self) -> None:
        self.last_updated = now_ms()

    def add_embedding(self, embedding: np.ndarray, max_embeddings: int = MAX_EMBEDDINGS) -> None:
        """Append an embedding, evicting the oldest beyond max_embeddings."""
        self.embeddings.append(np.asarray(embedding, dtype=np.float32).ravel().copy())
        overflow = len(self.embeddings) - max_embeddings
        if overflow > 0:
            del self.embeddings[:overflow]
        self.touch()

    def update_characteristics(self, observed: Dict[str, float], learning_rate: float) -> None:
        self.speaker_characteristics = blend_characteristics(
            self.speaker_characteristics, observed, learning_rate
        )
        self.touch()

    def record_match(
        self,
        embedding: np.ndarray,
        characteristics: Dict[str, float],
        duration: float,
        confidence: float,
        learning_rate: float,
        max_embeddings: int = MAX_EMBEDDINGS
    ) -> None:
        """Fold one matched segment into the profile's statistics."""
        self.add_embedding(embedding, max_embeddings)
        self.update_characteristics(characteristics, learning_rate)
        self.total_duration += max(0.0, float(duration))
        self.average_confidence = (
            (self.average_confidence * self.segment_count + float(confidence)) / (self.segment_count + 1)
        )
        self.segment_count += 1

    def set_threshold(
        self,
        value: float,
        low: float = MIN_VERIFICATION_THRESHOLD,
        high: float = MAX_VERIFICATION_THRESHOLD
    ) -> None:
        self.verification_threshold = clamp_threshold(value, low, high)

    def nudge_threshold(
        self,
        similarity: float,
        low: float = MIN_VERIFICATION_THRESHOLD,
        high: float = MAX_VERIFICATION_THRESHOLD
    ) -> None:
        """Move the threshold 10% of the way toward an observed similarity."""
        self.set_threshold(0.9 * self.verification_threshold + 0.1 * float(similarity), low, high)

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    def recent_embeddings(self, count: int = 5) -> List[np.ndarray]:
        if count <= 0:
            return []
        return self.embeddings[-count:]

    def copy(self) -> "SpeakerProfile":
        return copy.deepcopy(self)

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-compatible dict (embeddings base64 encoded)."""
        return {
            "id": self.id,
            "name": self.name,
            "encoded_embeddings": [encode_embedding(e) for e in self.embeddings],
            "total_duration": self.total_duration,
            "average_confidence": self.average_confidence,
            "last_updated": self.last_updated,
            "speaker_characteristics": dict(self.speaker_characteristics),
            "verification_threshold": self.verification_threshold,
            "is_verified": self.is_verified,
            "verification_count": self.verification_count,
            "segment_count": self.segment_count,
        }

    def summary(self) -> Dict[str, Any]:
        """Compact view for CLI / API output."""
        return {
            "id": self.id,
            "name": self.name,
            "embedding_count": len(self.embeddings),
            "total_duration": round(self.total_duration, 3),
            "average_confidence": round(self.average_confidence, 3),
            "verification_threshold": round(self.verification_threshold, 4),
            "is_verified": self.is_verified,
            "verification_count": self.verification_count,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], bounds=None) -> "SpeakerProfile":
        """
        Rebuild a profile written by to_dict().

        bounds is an optional ProfileConfig; its threshold range and embedding
        cap replace the module defaults.
        """
        low, high, cap = MIN_VERIFICATION_THRESHOLD, MAX_VERIFICATION_THRESHOLD, MAX_EMBEDDINGS
        if bounds is not None:
            low, high, cap = bounds.min_threshold, bounds.max_threshold, bounds.max_embeddings
        profile = cls(
            id=int(data["id"]),
            name=data.get("name"),
            total_duration=float(data.get("total_duration", 0.0)),
            average_confidence=float(data.get("average_confidence", 0.0)),
            last_updated=float(data.get("last_updated", 0.0)),
            speaker_characteristics={
                str(k): float(v) for k, v in data.get("speaker_characteristics", {}).items()
            },
            is_verified=bool(data.get("is_verified", False)),
            verification_count=int(data.get("verification_count", 0)),
            segment_count=int(data.get("segment_count", 0)),
        )
        profile.verification_threshold = clamp_threshold(
            float(data.get("verification_threshold", DEFAULT_VERIFICATION_THRESHOLD)), low, high
        )
        embeddings = [decode_embedding(e) for e in data.get("encoded_embeddings", [])]
        profile.embeddings = embeddings[-cap:] if cap > 0 else []
        return profile
