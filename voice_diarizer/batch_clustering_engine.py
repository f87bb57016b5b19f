#!/usr/bin/env python3
"""
batch_clustering_engine.py - Embedding-based speaker clustering for whole recordings

Assigns each candidate segment of a recording to a speaker identity, reusing
persisted voice profiles where possible and discovering new speakers otherwise.

Pipeline:
    1. Embed every candidate segment (cache first, provider on miss). A segment
       whose extraction fails is dropped; the run continues.
    2. Adaptive threshold sweep: cluster from scratch at 0.82, 0.81, ... 0.70 and
       accept the first clustering whose speaker count lies in
       [min_speakers, max_speakers]. If none does, use the floor clustering.
    3. Commit the accepted clustering to the profile registry and persist it.

Clustering at one threshold walks the segments in time order:
    a. best persisted profile by profile similarity, joined if above threshold
       (once max_speakers are in use, only profiles already in the run count)
    b. else best cluster discovered in this run by mean cosine similarity
    c. else a new speaker, while the run has fewer than max_speakers speakers
    d. else the segment stays unassigned (speaker_id = -1)

Usage:
    engine = BatchClusteringEngine(provider, registry, cache)
    outcome = engine.cluster(segmenter.segment(audio))
    print(outcome.speaker_count)
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from .diarization_config import DiarizationConfig
from .diarization_errors import DiarizationError, EmbeddingError, InferenceError, InvalidInputError
from .embedding_cache import EmbeddingCache, audio_cache_key
from .embedding_providers import EmbeddingProvider
from .profile_store import ProfileRegistry
from .speaker_profiles import SpeakerProfile
from .speaker_segments import UNASSIGNED_SPEAKER, CandidateSegment, SpeakerSegment
from .voice_features import (
    extract_voice_characteristics,
    mean_cosine_similarity,
    profile_similarity,
)

logger = logging.getLogger(__name__)


# ============================================================================
# Data Classes
# ============================================================================

@dataclass
class EmbeddedSegment:
    """A candidate segment with its embedding and derived characteristics."""
    start_time: float
    end_time: float
    embedding: np.ndarray = field(repr=False)
    characteristics: Dict[str, float] = field(repr=False)
    cache_key: Optional[str] = None

    @property
    def duration(self) -> float:
        return self.end_time - self.start_time


@dataclass
class ClusterAssignment:
    """Result of clustering at a single threshold (nothing committed yet)."""
    threshold: float
    labels: List[Tuple[int, float]]
    updates: Dict[int, List[tuple]]
    new_profiles: Dict[int, SpeakerProfile]
    speakers: List[int]

    @property
    def speaker_count(self) -> int:
        return len(self.speakers)


@dataclass
class ClusteringOutcome:
    """Committed result of a batch clustering run."""
    segments: List[SpeakerSegment]
    speaker_count: int
    profiles: Dict[int, SpeakerProfile]
    threshold: Optional[float] = None
    dropped_segments: int = 0


# ============================================================================
# Engine
# ============================================================================

class BatchClusteringEngine:
    """One-shot clustering of a recording against the shared profile registry."""

    def __init__(
        self,
        provider: EmbeddingProvider,
        registry: ProfileRegistry,
        cache: Optional[EmbeddingCache] = None,
        config: Optional[DiarizationConfig] = None
    ):
        self.provider = provider
        self.registry = registry
        self.config = config or DiarizationConfig()
        self.cache = cache if cache is not None else EmbeddingCache(self.config.cache.capacity)

    # ------------------------------------------------------------------
    # Embedding
    # ------------------------------------------------------------------

    def _embed_one(self, candidate: CandidateSegment) -> Optional[EmbeddedSegment]:
        key = audio_cache_key(candidate.audio, self.config.sample_rate)
        embedding = self.cache.get(key)
        if embedding is None:
            try:
                embedding = self.provider.embed(candidate.audio)
            except EmbeddingError as e:
                logger.warning(
                    "[BatchClustering] Dropping segment %.2f-%.2fs: %s",
                    candidate.start_time, candidate.end_time, e.message
                )
                return None
            except DiarizationError:
                raise
            except Exception as e:
                raise InferenceError(f"Embedding provider crashed: {e}", stage="embedding")
            embedding = self.cache.put(key, embedding)

        return EmbeddedSegment(
            start_time=candidate.start_time,
            end_time=candidate.end_time,
            embedding=embedding,
            characteristics=extract_voice_characteristics(embedding),
            cache_key=key
        )

    def embed_segments(self, candidates: Sequence[CandidateSegment]) -> List[EmbeddedSegment]:
        """Embed candidates in input order, dropping failed extractions."""
        workers = self.config.clustering.embedding_workers
        if workers > 1 and len(candidates) > 1:
            with ThreadPoolExecutor(max_workers=workers) as executor:
                results = list(executor.map(self._embed_one, candidates))
        else:
            results = [self._embed_one(c) for c in candidates]
        return [r for r in results if r is not None]

    # ------------------------------------------------------------------
    # Clustering
    # ------------------------------------------------------------------

    def cluster_at_threshold(
        self,
        segments: Sequence[EmbeddedSegment],
        base_profiles: Dict[int, SpeakerProfile],
        threshold: float
    ) -> ClusterAssignment:
        """Cluster from scratch on working copies of base_profiles."""
        sim_cfg = self.config.similarity
        learning_rate = self.config.clustering.learning_rate
        max_speakers = self.config.clustering.max_speakers
        max_embeddings = self.config.profiles.max_embeddings

        working = {pid: profile.copy() for pid, profile in base_profiles.items()}
        clusters: Dict[int, List[np.ndarray]] = {}
        new_profiles: Dict[int, SpeakerProfile] = {}
        updates: Dict[int, List[tuple]] = {}
        next_id = max(base_profiles, default=-1) + 1
        speakers: List[int] = []
        labels: List[Tuple[int, float]] = []

        for segment in segments:
            observation = (segment.embedding, segment.characteristics, segment.duration)

            # a. persisted profiles, only those already counted once the run is full
            full = len(speakers) >= max_speakers
            best_id, best_score = None, -1.0
            for pid, profile in working.items():
                if full and pid not in speakers:
                    continue
                score = profile_similarity(
                    segment.embedding,
                    segment.characteristics,
                    profile.recent_embeddings(sim_cfg.recent_embeddings),
                    profile.speaker_characteristics,
                    sim_cfg.embedding_weight,
                    sim_cfg.characteristic_weight
                )
                if score > best_score:
                    best_id, best_score = pid, score

            if best_id is not None and best_score > threshold:
                confidence = float(min(1.0, best_score))
                working[best_id].record_match(*observation, confidence, learning_rate, max_embeddings)
                updates.setdefault(best_id, []).append(observation + (confidence,))
                speaker_id = best_id
            else:
                # b. clusters discovered in this run
                best_id, best_score = None, -1.0
                for cid, members in clusters.items():
                    score = mean_cosine_similarity(segment.embedding, members)
                    if score > best_score:
                        best_id, best_score = cid, score

                if best_id is not None and best_score > threshold:
                    confidence = float(min(1.0, best_score))
                    clusters[best_id].append(segment.embedding)
                    new_profiles[best_id].record_match(*observation, confidence, learning_rate, max_embeddings)
                    speaker_id = best_id
                elif len(speakers) < max_speakers:
                    # c. new speaker
                    speaker_id = next_id
                    next_id += 1
                    confidence = 1.0
                    clusters[speaker_id] = [segment.embedding]
                    profile = self.registry.new_profile(speaker_id)
                    profile.record_match(*observation, confidence, learning_rate, max_embeddings)
                    new_profiles[speaker_id] = profile
                else:
                    # d. no room for another speaker
                    speaker_id = UNASSIGNED_SPEAKER
                    confidence = 0.0

            if speaker_id != UNASSIGNED_SPEAKER and speaker_id not in speakers:
                speakers.append(speaker_id)
            labels.append((speaker_id, confidence))

        return ClusterAssignment(
            threshold=threshold,
            labels=labels,
            updates=updates,
            new_profiles=new_profiles,
            speakers=speakers
        )

    def search_threshold(
        self,
        segments: Sequence[EmbeddedSegment],
        base_profiles: Dict[int, SpeakerProfile]
    ) -> ClusterAssignment:
        """Sweep thresholds downwards; fall back to the floor clustering."""
        cfg = self.config.clustering
        assignment = None
        for threshold in cfg.thresholds():
            assignment = self.cluster_at_threshold(segments, base_profiles, threshold)
            if cfg.min_speakers <= assignment.speaker_count <= cfg.max_speakers:
                logger.debug(
                    "[BatchClustering] Accepted threshold %.2f with %d speakers",
                    threshold, assignment.speaker_count
                )
                return assignment
        logger.info(
            "[BatchClustering] No threshold produced %d-%d speakers, using floor %.2f (%d speakers)",
            cfg.min_speakers, cfg.max_speakers, assignment.threshold, assignment.speaker_count
        )
        return assignment

    def cluster(self, candidates: Sequence[CandidateSegment]) -> ClusteringOutcome:
        """
        Cluster a recording's candidate segments and commit the result.

        Raises:
            InvalidInputError: candidates are not time-ordered and non-overlapping
            ModelLoadError: the embedding model is unavailable
            InferenceError: the provider crashed or profiles could not be persisted
        """
        self._validate(candidates)

        embedded = self.embed_segments(candidates)
        dropped = len(candidates) - len(embedded)
        if not embedded:
            logger.info("[BatchClustering] No embeddable segments (%d dropped)", dropped)
            return ClusteringOutcome(segments=[], speaker_count=0, profiles={}, dropped_segments=dropped)

        base_profiles = self.registry.snapshot()
        assignment = self.search_threshold(embedded, base_profiles)

        id_map = self.registry.commit_matches(
            assignment.updates,
            assignment.new_profiles,
            self.config.clustering.learning_rate
        )

        segments = []
        for segment, (speaker_id, confidence) in zip(embedded, assignment.labels):
            final_id = id_map.get(speaker_id, speaker_id)
            if final_id != UNASSIGNED_SPEAKER and segment.cache_key:
                self.cache.tag(segment.cache_key, final_id)
            segments.append(SpeakerSegment(
                speaker_id=final_id,
                start_time=segment.start_time,
                end_time=segment.end_time,
                confidence=confidence,
                embedding=segment.embedding
            ))

        self.registry.persist()

        speakers = [id_map.get(s, s) for s in assignment.speakers]
        profiles = {}
        for speaker_id in speakers:
            profile = self.registry.get(speaker_id)
            if profile is not None:
                profiles[speaker_id] = profile

        logger.info(
            "[BatchClustering] %d segments -> %d speakers at threshold %.2f (%d dropped)",
            len(segments), len(speakers), assignment.threshold, dropped
        )
        return ClusteringOutcome(
            segments=segments,
            speaker_count=len(speakers),
            profiles=profiles,
            threshold=assignment.threshold,
            dropped_segments=dropped
        )

    @staticmethod
    def _validate(candidates: Sequence[CandidateSegment]) -> None:
        previous_end = None
        for candidate in candidates:
            if not candidate.end_time > candidate.start_time:
                raise InvalidInputError(
                    "Segment end must be after its start",
                    details={"start_time": candidate.start_time, "end_time": candidate.end_time}
                )
            if previous_end is not None and candidate.start_time < previous_end:
                raise InvalidInputError(
                    "Segments must be time-ordered and non-overlapping",
                    details={"start_time": candidate.start_time, "previous_end": previous_end}
                )
            previous_end = candidate.end_time
