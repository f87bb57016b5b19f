#!/usr/bin/env python3
"""
diarization_service.py - Public entry point for speaker diarization

SpeakerDiarizationService wires the pipeline together and owns its shared
state (profile registry, embedding cache, telemetry):

    Batch:      audio -> segmenter -> batch clustering -> transition detection
    Real-time:  frames -> realtime tracker -> live segments
    Profiles:   enroll / verify / delete

If the embedding model fails to load when the service is created, the failure
is logged, reported to telemetry and remembered; every later call raises the
same ModelLoadError.

Usage:
    from voice_diarizer.diarization_service import SpeakerDiarizationService
    from voice_diarizer.profile_store import JsonProfileStore

    service = SpeakerDiarizationService(store=JsonProfileStore("profiles.json"))
    result = service.detect_speakers(audio)
    print(result.speaker_count)

CLI:
    python -m voice_diarizer.diarization_service --verify
    python -m voice_diarizer.diarization_service --audio meeting.wav --profiles profiles.json
    python -m voice_diarizer.diarization_service --audio alice.wav --enroll Alice --profiles profiles.json
"""

import logging
import os
import sys
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

import numpy as np

from .audio_segmenter import EnergySegmenter, as_mono_float
from .batch_clustering_engine import BatchClusteringEngine
from .diarization_config import DiarizationConfig
from .diarization_errors import DiarizationError, InvalidInputError, ModelLoadError
from .embedding_cache import EmbeddingCache
from .embedding_providers import PYANNOTE_AVAILABLE, EmbeddingProvider, create_provider
from .json_serialization_utils import safe_output_json
from .profile_store import InMemoryProfileStore, JsonProfileStore, ProfileRegistry, ProfileStore
from .realtime_tracker import RealtimeSpeakerTracker
from .speaker_profiles import SpeakerProfile
from .speaker_segments import SpeakerSegment
from .speaker_verification import SpeakerVerifier, VerificationResult
from .telemetry import BackgroundTelemetry, LoggingTelemetrySink, NullTelemetrySink, TelemetrySink, safe_track
from .transition_detector import TransitionDetector

logger = logging.getLogger(__name__)


# ============================================================================
# Data Classes
# ============================================================================

@dataclass
class DetectionResult:
    """Complete result of a batch diarization run."""
    segments: List[SpeakerSegment]
    speaker_count: int
    confidence: float
    profiles: Dict[int, SpeakerProfile] = field(default_factory=dict)

    def speaker_stats(self) -> Dict[int, Dict[str, Any]]:
        stats: Dict[int, Dict[str, Any]] = {}
        for segment in self.segments:
            if not segment.is_assigned:
                continue
            entry = stats.setdefault(segment.speaker_id, {"total_duration": 0.0, "segment_count": 0})
            entry["total_duration"] += segment.duration
            entry["segment_count"] += 1
        for entry in stats.values():
            entry["total_duration"] = round(entry["total_duration"], 3)
        return stats

    def speaker_for_time_range(self, start_time: float, end_time: float) -> Tuple[Optional[int], float]:
        """
        Speaker with the most overlap with [start_time, end_time].

        Returns:
            (speaker_id, overlap fraction) or (None, 0.0) when nothing overlaps
        """
        overlaps: Dict[int, float] = defaultdict(float)
        for segment in self.segments:
            if not segment.is_assigned:
                continue
            overlap = min(end_time, segment.end_time) - max(start_time, segment.start_time)
            if overlap > 0:
                overlaps[segment.speaker_id] += overlap
        if not overlaps:
            return None, 0.0
        speaker_id, overlap = max(overlaps.items(), key=lambda item: item[1])
        duration = end_time - start_time
        return speaker_id, float(min(1.0, overlap / duration)) if duration > 0 else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "speaker_count": self.speaker_count,
            "confidence": round(self.confidence, 4),
            "segments": [s.to_dict() for s in self.segments],
            "speaker_stats": {str(k): v for k, v in self.speaker_stats().items()},
            "profiles": [p.summary() for _, p in sorted(self.profiles.items())],
        }


# ============================================================================
# Service
# ============================================================================

class SpeakerDiarizationService:
    """Facade over batch detection, real-time tracking and voice profiles."""

    def __init__(
        self,
        provider: Optional[EmbeddingProvider] = None,
        store: Optional[ProfileStore] = None,
        config: Optional[DiarizationConfig] = None,
        telemetry: Optional[TelemetrySink] = None,
        segmenter: Optional[EnergySegmenter] = None
    ):
        self.config = config or DiarizationConfig()
        self.telemetry = telemetry or NullTelemetrySink()
        self.provider = provider or create_provider("spectral", self.config.sample_rate)
        self.segmenter = segmenter or EnergySegmenter(sample_rate=self.config.sample_rate)
        self.cache = EmbeddingCache(self.config.cache.capacity)
        self.registry = ProfileRegistry(store or InMemoryProfileStore(), self.config.profiles)
        self.registry.load()

        self.engine = BatchClusteringEngine(self.provider, self.registry, self.cache, self.config)
        self.transitions = TransitionDetector(self.config.transition)
        self.tracker = RealtimeSpeakerTracker(self.provider, self.registry, self.config, self.telemetry)
        self.verifier = SpeakerVerifier(self.provider, self.registry, self.cache, self.config)

        self._load_error: Optional[ModelLoadError] = None
        try:
            self.provider.load()
        except ModelLoadError as e:
            logger.error("[Diarization] %s", e.message)
            self._load_error = e
            self._track("model_load_failure", {"model": e.details.get("model"), "reason": e.details.get("reason")})

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @property
    def available(self) -> bool:
        return self._load_error is None

    def _require_model(self) -> None:
        if self._load_error is not None:
            raise self._load_error

    def _track(self, event: str, properties: Dict[str, Any]) -> None:
        safe_track(self.telemetry, event, properties)

    # ------------------------------------------------------------------
    # Batch
    # ------------------------------------------------------------------

    def detect_speakers(self, audio: Union[np.ndarray, bytes]) -> DetectionResult:
        """
        Diarize a complete recording.

        Raises:
            InvalidInputError: empty or malformed audio
            ModelLoadError: the embedding model is unavailable
            InferenceError: provider crash or profile persistence failure
        """
        self._require_model()
        try:
            candidates = self.segmenter.segment(audio)
            outcome = self.engine.cluster(candidates)
            threshold = outcome.threshold if outcome.threshold is not None else self.config.transition.similarity_threshold
            segments = self.transitions.process(outcome.segments, threshold)
        except DiarizationError as e:
            self._track("speaker_detection", {"success": False, "error_code": e.error_code})
            raise

        confidence = float(np.mean([s.confidence for s in segments])) if segments else 0.0
        result = DetectionResult(
            segments=segments,
            speaker_count=outcome.speaker_count,
            confidence=confidence,
            profiles=outcome.profiles
        )
        self._track("speaker_detection", {
            "success": True,
            "speaker_count": result.speaker_count,
            "segments": len(segments),
            "dropped_segments": outcome.dropped_segments,
            "threshold": outcome.threshold,
        })
        return result

    # ------------------------------------------------------------------
    # Real-time
    # ------------------------------------------------------------------

    def start_realtime(self) -> None:
        self._require_model()
        self.tracker.start()

    def feed(self, frame: Union[np.ndarray, bytes], timestamp_ms: float) -> bool:
        return self.tracker.feed(frame, timestamp_ms)

    @property
    def live_segments(self) -> Tuple[SpeakerSegment, ...]:
        return self.tracker.snapshot()

    def stop(self) -> Tuple[SpeakerSegment, ...]:
        return self.tracker.stop()

    def close(self) -> None:
        self.tracker.close()

    # ------------------------------------------------------------------
    # Profiles
    # ------------------------------------------------------------------

    def enroll(self, name: Optional[str], sample: np.ndarray, initial_threshold: Optional[float] = None) -> SpeakerProfile:
        self._require_model()
        sample = as_mono_float(sample)
        try:
            profile = self.verifier.enroll(name, sample, initial_threshold)
        except DiarizationError as e:
            self._track("speaker_enrollment", {"success": False, "error_code": e.error_code})
            raise
        self._track("speaker_enrollment", {"success": True, "speaker_id": profile.id})
        return profile

    def verify(self, sample: np.ndarray, speaker_id: int) -> VerificationResult:
        self._require_model()
        sample = as_mono_float(sample)
        try:
            result = self.verifier.verify(sample, speaker_id)
        except DiarizationError as e:
            self._track("speaker_verification", {"success": False, "error_code": e.error_code})
            raise
        self._track("speaker_verification", {
            "success": True,
            "speaker_id": speaker_id,
            "is_verified": result.is_verified,
            "confidence": result.confidence,
        })
        return result

    def delete_profile(self, speaker_id: int) -> bool:
        removed = self.verifier.delete_profile(speaker_id)
        self._track("profile_deletion", {"speaker_id": speaker_id, "removed": removed})
        return removed

    def profiles(self) -> Dict[int, SpeakerProfile]:
        return self.registry.snapshot()


# ============================================================================
# Verification Functions
# ============================================================================

def check_availability(backend: str = "spectral") -> Dict[str, Any]:
    """
    Verify that speaker diarization can run with the given backend.

    Returns:
        Dict with availability status and details
    """
    result = {
        "available": False,
        "backend": backend,
        "pyannote_installed": PYANNOTE_AVAILABLE,
        "error": None,
        "message": ""
    }
    try:
        provider = create_provider(backend)
        provider.load()
        result["available"] = True
        result["message"] = f"Speaker diarization is available ({backend} embeddings)"
    except DiarizationError as e:
        result["error"] = e.error_code
        result["message"] = e.message
    except ValueError as e:
        result["error"] = "INVALID_INPUT"
        result["message"] = str(e)
    return result


# ============================================================================
# CLI Interface
# ============================================================================

def load_audio(path: str, sample_rate: int) -> np.ndarray:
    """Read an audio file as mono float32 at sample_rate."""
    import soundfile as sf

    try:
        audio, sr = sf.read(path, dtype='float32')
    except (RuntimeError, OSError) as e:
        raise InvalidInputError(f"Could not read audio file: {e}", details={"path": path})

    # Convert to mono if stereo
    if len(audio.shape) > 1:
        audio = np.mean(audio, axis=1)

    # Resample if needed
    if sr != sample_rate and len(audio):
        duration = len(audio) / sr
        target_samples = int(duration * sample_rate)
        indices = np.linspace(0, len(audio) - 1, target_samples).astype(int)
        audio = audio[indices]

    return audio.astype(np.float32)


def configure_logging() -> None:
    level = logging.DEBUG if os.environ.get("DIARIZATION_DEBUG") == "1" else logging.INFO
    logging.basicConfig(
        level=level,
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )


def main():
    """Command-line interface for diarization and voice profiles."""
    import argparse

    parser = argparse.ArgumentParser(
        description="On-device speaker diarization and voice profiles"
    )
    parser.add_argument("--verify", action="store_true", help="Verify diarization availability and exit")
    parser.add_argument("--audio", help="Path to audio file")
    parser.add_argument("--profiles", help="Path to the voice profile JSON file (default: in-memory)")
    parser.add_argument("--backend", choices=["spectral", "pyannote"], default="spectral",
                        help="Embedding backend (default: spectral)")
    parser.add_argument("--config", help="Path to a JSON configuration file")
    parser.add_argument("--max-speakers", type=int, help="Maximum number of speakers")
    parser.add_argument("--enroll", metavar="NAME", help="Enroll the speaker in --audio under NAME")
    parser.add_argument("--verify-speaker", type=int, metavar="ID", help="Verify --audio against profile ID")
    parser.add_argument("--list-profiles", action="store_true", help="List stored voice profiles")
    parser.add_argument("--delete-profile", type=int, metavar="ID", help="Delete voice profile ID")

    args = parser.parse_args()
    configure_logging()

    if args.verify:
        result = check_availability(args.backend)
        safe_output_json(result)
        sys.exit(0 if result["available"] else 1)

    telemetry = BackgroundTelemetry(LoggingTelemetrySink())
    service = None
    try:
        config = DiarizationConfig.from_json_file(args.config) if args.config else DiarizationConfig()
        config.apply_env()
        if args.max_speakers is not None:
            config.clustering.max_speakers = args.max_speakers
            config.validate()

        store = JsonProfileStore(args.profiles) if args.profiles else InMemoryProfileStore()
        service = SpeakerDiarizationService(
            provider=create_provider(args.backend, config.sample_rate),
            store=store,
            config=config,
            telemetry=telemetry
        )

        if args.list_profiles:
            safe_output_json({"profiles": [p.summary() for _, p in sorted(service.profiles().items())]})
        elif args.delete_profile is not None:
            safe_output_json({"deleted": service.delete_profile(args.delete_profile)})
        elif args.audio:
            audio = load_audio(args.audio, config.sample_rate)
            if args.enroll:
                safe_output_json({"profile": service.enroll(args.enroll, audio).summary()})
            elif args.verify_speaker is not None:
                safe_output_json(service.verify(audio, args.verify_speaker).to_dict())
            else:
                safe_output_json(service.detect_speakers(audio).to_dict())
        else:
            result = check_availability(args.backend)
            safe_output_json(result)
            sys.exit(0 if result["available"] else 1)

    except DiarizationError as e:
        safe_output_json(e.to_dict())
        sys.exit(1)
    except Exception as e:
        logger.exception("[Diarization] Unexpected failure")
        safe_output_json({
            "error": True,
            "error_code": "PROCESSING_ERROR",
            "message": str(e)
        })
        sys.exit(1)
    finally:
        if service is not None:
            service.close()
        telemetry.flush(1.0)
        telemetry.close()


if __name__ == "__main__":
    main()
