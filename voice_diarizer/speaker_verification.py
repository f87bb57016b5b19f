#!/usr/bin/env python3
"""
speaker_verification.py - Voice enrollment, verification and profile deletion

Enrollment creates a verified voice profile from a single sample. Verification
scores a new sample against one profile with the same blended similarity used
by clustering, and on success folds the sample into the profile. Once a
profile has been verified enough times its threshold starts adapting toward
the similarities actually observed for that speaker (always within bounds).
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import numpy as np

from .diarization_config import DiarizationConfig
from .diarization_errors import DiarizationError, EmbeddingError, InferenceError, UnknownSpeakerError
from .embedding_cache import EmbeddingCache
from .embedding_providers import EmbeddingProvider
from .profile_store import ProfileRegistry
from .speaker_profiles import SpeakerProfile
from .voice_features import extract_voice_characteristics, profile_similarity

logger = logging.getLogger(__name__)


@dataclass
class VerificationResult:
    """Outcome of verify(); a non-match is a normal result, not an error."""
    is_verified: bool
    confidence: float
    profile: SpeakerProfile

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_verified": self.is_verified,
            "confidence": round(self.confidence, 4),
            "profile": self.profile.summary(),
        }


class SpeakerVerifier:
    """Enrollment / verification / deletion against the shared registry."""

    def __init__(
        self,
        provider: EmbeddingProvider,
        registry: ProfileRegistry,
        cache: Optional[EmbeddingCache] = None,
        config: Optional[DiarizationConfig] = None
    ):
        self.provider = provider
        self.registry = registry
        self.cache = cache
        self.config = config or DiarizationConfig()

    def _embed(self, sample: np.ndarray) -> np.ndarray:
        try:
            return self.provider.embed(sample)
        except DiarizationError:
            raise
        except Exception as e:
            raise EmbeddingError(f"Embedding extraction failed: {e}")

    def enroll(self, name: Optional[str], sample: np.ndarray, initial_threshold: Optional[float] = None) -> SpeakerProfile:
        """
        Create a verified voice profile from one sample.

        Raises:
            EmbeddingError: the sample could not be embedded
            InferenceError: the profile could not be persisted
        """
        cfg = self.config.profiles
        if initial_threshold is None:
            initial_threshold = cfg.default_threshold

        embedding = self._embed(sample)
        profile = SpeakerProfile(
            id=self.registry.allocate_id(),
            name=name,
            speaker_characteristics=extract_voice_characteristics(embedding),
            is_verified=True,
            verification_count=1,
        )
        profile.set_threshold(initial_threshold, cfg.min_threshold, cfg.max_threshold)
        profile.add_embedding(embedding, cfg.max_embeddings)

        stored = self.registry.add(profile)
        self.registry.persist()
        logger.info("[Verification] Enrolled speaker %d (%s)", stored.id, name or "unnamed")
        return stored

    def verify(self, sample: np.ndarray, speaker_id: int) -> VerificationResult:
        """
        Check a sample against one profile.

        Raises:
            UnknownSpeakerError: speaker_id is not enrolled
            EmbeddingError: the sample could not be embedded
            InferenceError: the updated profile could not be persisted
        """
        if speaker_id not in self.registry:
            raise UnknownSpeakerError(speaker_id)

        embedding = self._embed(sample)
        characteristics = extract_voice_characteristics(embedding)
        cfg = self.config.profiles
        sim_cfg = self.config.similarity
        outcome: Dict[str, Any] = {}

        def check(profile: SpeakerProfile) -> None:
            similarity = profile_similarity(
                embedding,
                characteristics,
                profile.recent_embeddings(sim_cfg.recent_embeddings),
                profile.speaker_characteristics,
                sim_cfg.embedding_weight,
                sim_cfg.characteristic_weight
            )
            outcome["similarity"] = similarity
            outcome["verified"] = similarity >= profile.verification_threshold
            if not outcome["verified"]:
                return
            profile.verification_count += 1
            profile.is_verified = True
            profile.add_embedding(embedding, cfg.max_embeddings)
            profile.update_characteristics(characteristics, cfg.learning_rate)
            if profile.verification_count >= cfg.adaptation_min_count:
                profile.nudge_threshold(similarity, cfg.min_threshold, cfg.max_threshold)

        # Scored and updated under the profile lock so the check and the
        # update see the same profile state
        updated = self.registry.update(speaker_id, check)

        if outcome["verified"]:
            self.registry.persist()

        logger.info(
            "[Verification] Speaker %d %s (similarity %.3f, threshold %.3f)",
            speaker_id,
            "verified" if outcome["verified"] else "rejected",
            outcome["similarity"],
            updated.verification_threshold
        )
        return VerificationResult(
            is_verified=bool(outcome["verified"]),
            confidence=float(max(0.0, min(1.0, outcome["similarity"]))),
            profile=updated
        )

    def delete_profile(self, speaker_id: int) -> bool:
        """
        Remove a profile and purge cached embeddings attributed to it.

        Returns:
            True if a profile was removed, False if the id was unknown
        """
        removed = self.registry.delete(speaker_id)
        if not removed:
            return False
        purged = self.cache.purge_speaker(speaker_id) if self.cache is not None else 0
        try:
            self.registry.persist()
        except InferenceError:
            logger.error("[Verification] Profile %d deleted in memory but not persisted", speaker_id)
            raise
        logger.info("[Verification] Deleted speaker %d (%d cached embeddings purged)", speaker_id, purged)
        return True
