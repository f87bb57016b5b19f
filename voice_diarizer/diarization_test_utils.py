"""
diarization_test_utils.py - Deterministic fakes shared by the unit tests

VoiceTableProvider maps the level of a constant "tone" buffer to a fixed voice
vector, so tests can script which speaker is talking without any model.
"""

import threading
from typing import Dict, Iterable, Optional

import numpy as np

from .diarization_errors import EmbeddingError, ModelLoadError
from .embedding_providers import EmbeddingProvider
from .profile_store import InMemoryProfileStore
from .speaker_segments import CandidateSegment
from .telemetry import TelemetrySink

SAMPLE_RATE = 16000
DIM = 64


def basis(index: int, dim: int = DIM) -> np.ndarray:
    vector = np.zeros(dim, dtype=np.float32)
    vector[index] = 1.0
    return vector


def tone(level: float, seconds: float, sample_rate: int = SAMPLE_RATE) -> np.ndarray:
    """Constant buffer whose level identifies the scripted speaker."""
    return np.full(int(seconds * sample_rate), level, dtype=np.float32)


def buffer_level(audio: np.ndarray) -> float:
    return round(float(np.median(np.abs(audio))), 3)


class VoiceTableProvider(EmbeddingProvider):
    """Embeds a buffer as the voice registered for its level."""

    name = "voice-table"

    def __init__(
        self,
        voices: Optional[Dict[float, np.ndarray]] = None,
        fail_levels: Iterable[float] = (),
        delay: float = 0.0
    ):
        self.voices = {round(k, 3): np.asarray(v, dtype=np.float32) for k, v in (voices or {}).items()}
        self.fail_levels = {round(level, 3) for level in fail_levels}
        self.delay = delay
        self.calls = 0
        self._lock = threading.Lock()
        self.release = threading.Event()
        self.release.set()

    @property
    def embedding_dim(self) -> int:
        return DIM

    def embed(self, audio: np.ndarray) -> np.ndarray:
        with self._lock:
            self.calls += 1
        self.release.wait(5.0)
        level = buffer_level(audio)
        if level in self.fail_levels:
            raise EmbeddingError(f"scripted failure for level {level}")
        if level not in self.voices:
            raise EmbeddingError(f"no voice registered for level {level}")
        return self.voices[level].copy()


class BrokenModelProvider(EmbeddingProvider):
    """Provider whose model never loads."""

    name = "broken"

    def __init__(self):
        self.load_attempts = 0

    def load(self) -> None:
        self.load_attempts += 1
        raise ModelLoadError("test/broken", "weights missing")

    def embed(self, audio: np.ndarray) -> np.ndarray:
        self.load()


class ExplodingSink(TelemetrySink):
    """Telemetry sink whose backend is always down."""

    def __init__(self):
        self.attempts = 0

    def track(self, event, properties=None):
        self.attempts += 1
        raise RuntimeError("telemetry backend down")


class FailingSaveStore(InMemoryProfileStore):
    """In-memory store whose writes fail."""

    def save_all(self, profiles) -> None:
        raise OSError("disk full")


def alternating_candidates(levels, seconds: float = 3.0, gap: float = 0.0):
    """Back-to-back candidate segments, one per level."""
    candidates = []
    cursor = 0.0
    for level in levels:
        candidates.append(CandidateSegment(
            start_time=cursor,
            end_time=cursor + seconds,
            audio=tone(level, seconds)
        ))
        cursor += seconds + gap
    return candidates
