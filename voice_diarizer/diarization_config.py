#!/usr/bin/env python3
"""
diarization_config.py - Tunable constants for speaker diarization

All thresholds, windows and learning rates used by the clustering engine, the
transition detector, the real-time tracker and the verification API are
collected here as dataclass defaults so they can be tuned per deployment.

Configuration can be built three ways:
    config = DiarizationConfig()                                  # defaults
    config = DiarizationConfig.from_dict({"clustering": {"max_speakers": 4}})
    config = DiarizationConfig.from_json_file("diarization.json")

Environment overrides (applied by apply_env / the CLI):
    DIARIZATION_MAX_SPEAKERS   overrides clustering.max_speakers
    DIARIZATION_DEBUG          "1" enables DEBUG logging in the CLI
"""

import json
import os
from dataclasses import asdict, dataclass, field, fields
from typing import Any, Dict, Optional

from .diarization_errors import InvalidInputError


# ============================================================================
# Configuration Groups
# ============================================================================

@dataclass
class ClusteringConfig:
    """Adaptive threshold sweep used by batch clustering."""
    start_threshold: float = 0.82
    threshold_step: float = 0.01
    floor_threshold: float = 0.70
    min_speakers: int = 2
    max_speakers: int = 10
    learning_rate: float = 0.1
    embedding_workers: int = 1

    def thresholds(self):
        """Thresholds from start down to floor (inclusive) on an integer grid."""
        steps = int(round((self.start_threshold - self.floor_threshold) / self.threshold_step))
        return [round(self.start_threshold - i * self.threshold_step, 6) for i in range(steps + 1)]


@dataclass
class SimilarityConfig:
    """Blend of embedding and characteristic similarity for profile matching."""
    embedding_weight: float = 0.7
    characteristic_weight: float = 0.3
    recent_embeddings: int = 5


@dataclass
class TransitionConfig:
    """Speaker transition / overlap heuristics."""
    overlap_window: float = 0.75
    min_similarity: float = 0.25
    similarity_threshold: float = 0.82
    min_overlap: float = 0.2
    max_overlap: float = 0.3
    merge_similarity: float = 0.95
    amplification: float = 1.2
    recurrence: int = 2


@dataclass
class RealtimeConfig:
    """Ring buffer and cadence for live tracking."""
    sample_rate: int = 16000
    buffer_seconds: float = 2.0
    min_audio_seconds: float = 1.0
    processing_interval_ms: int = 500
    match_threshold: float = 0.65
    recent_capacity: int = 20
    lookahead: int = 2
    learning_rate: float = 0.05
    silence_rms: float = 0.005


@dataclass
class ProfileConfig:
    """Voice profile bounds and verification threshold adaptation."""
    max_embeddings: int = 20
    default_threshold: float = 0.85
    min_threshold: float = 0.75
    max_threshold: float = 0.95
    adaptation_min_count: int = 5
    learning_rate: float = 0.1


@dataclass
class CacheConfig:
    """Segment embedding cache."""
    capacity: int = 200


_SECTIONS = {
    "clustering": ClusteringConfig,
    "similarity": SimilarityConfig,
    "transition": TransitionConfig,
    "realtime": RealtimeConfig,
    "profiles": ProfileConfig,
    "cache": CacheConfig,
}


@dataclass
class DiarizationConfig:
    """Aggregate configuration for the whole subsystem."""
    sample_rate: int = 16000
    clustering: ClusteringConfig = field(default_factory=ClusteringConfig)
    similarity: SimilarityConfig = field(default_factory=SimilarityConfig)
    transition: TransitionConfig = field(default_factory=TransitionConfig)
    realtime: RealtimeConfig = field(default_factory=RealtimeConfig)
    profiles: ProfileConfig = field(default_factory=ProfileConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        """Raise InvalidInputError for values outside their usable range."""
        c = self.clustering
        if not 0.0 < c.floor_threshold <= c.start_threshold <= 1.0:
            raise InvalidInputError(
                "Clustering thresholds must satisfy 0 < floor <= start <= 1",
                details={"start_threshold": c.start_threshold, "floor_threshold": c.floor_threshold}
            )
        if c.threshold_step <= 0:
            raise InvalidInputError("threshold_step must be positive", details={"threshold_step": c.threshold_step})
        if c.max_speakers < 1 or c.min_speakers < 1:
            raise InvalidInputError(
                "Speaker counts must be at least 1",
                details={"min_speakers": c.min_speakers, "max_speakers": c.max_speakers}
            )
        if c.embedding_workers < 1:
            raise InvalidInputError("embedding_workers must be at least 1")

        p = self.profiles
        if not 0.0 <= p.min_threshold <= p.default_threshold <= p.max_threshold <= 1.0:
            raise InvalidInputError(
                "Verification thresholds must satisfy min <= default <= max within [0, 1]",
                details=asdict(p)
            )
        if p.max_embeddings < 1:
            raise InvalidInputError("max_embeddings must be at least 1")

        if self.cache.capacity < 1:
            raise InvalidInputError("Cache capacity must be at least 1")

        r = self.realtime
        if r.buffer_seconds <= 0 or r.min_audio_seconds <= 0 or r.min_audio_seconds > r.buffer_seconds:
            raise InvalidInputError(
                "Real-time buffer must be positive and hold at least min_audio_seconds",
                details={"buffer_seconds": r.buffer_seconds, "min_audio_seconds": r.min_audio_seconds}
            )
        if r.recent_capacity < 1 or r.lookahead < 0:
            raise InvalidInputError("recent_capacity must be >= 1 and lookahead >= 0")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "DiarizationConfig":
        """Build a config from a (possibly partial) nested dict."""
        data = data or {}
        kwargs: Dict[str, Any] = {}
        for key, value in data.items():
            if key == "sample_rate":
                kwargs[key] = int(value)
                continue
            section_cls = _SECTIONS.get(key)
            if section_cls is None:
                raise InvalidInputError(f"Unknown configuration section '{key}'")
            if not isinstance(value, dict):
                raise InvalidInputError(f"Configuration section '{key}' must be an object")
            known = {f.name for f in fields(section_cls)}
            unknown = set(value) - known
            if unknown:
                raise InvalidInputError(
                    f"Unknown keys in configuration section '{key}'",
                    details={"keys": sorted(unknown)}
                )
            kwargs[key] = section_cls(**value)
        config = cls(**kwargs)
        if "sample_rate" in data:
            config.realtime.sample_rate = config.sample_rate
        return config

    @classmethod
    def from_json_file(cls, path: str) -> "DiarizationConfig":
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise InvalidInputError(f"Could not read configuration file: {e}", details={"path": path})
        return cls.from_dict(data)

    def apply_env(self) -> "DiarizationConfig":
        """Apply DIARIZATION_* environment overrides in place."""
        max_speakers = os.environ.get("DIARIZATION_MAX_SPEAKERS")
        if max_speakers:
            try:
                self.clustering.max_speakers = int(max_speakers)
            except ValueError:
                raise InvalidInputError(
                    "DIARIZATION_MAX_SPEAKERS must be an integer",
                    details={"value": max_speakers}
                )
        self.validate()
        return self
