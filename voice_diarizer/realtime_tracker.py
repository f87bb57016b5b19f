#!/usr/bin/env python3
"""
realtime_tracker.py - Low-latency speaker tracking for live audio

Frames are appended to a fixed-size ring buffer (2s by default). Once the
buffer holds enough audio and the processing interval has elapsed, one
processing step is handed to a single background worker:

    copy buffer -> silence gate -> embed -> match against voice profiles
        -> append to recent history -> smooth -> publish live segments

feed() never waits for processing. If a step is already running when the next
one is due, the trigger is skipped and retried on a later frame.

Smoothing suppresses flicker: a speaker change is only committed once the next
`lookahead` segments agree with the new speaker; otherwise the previous
speaker's segment is extended.

High-confidence matches (above the profile's own verification threshold) are
fed back into the profile and persisted.

Usage:
    tracker = RealtimeSpeakerTracker(provider, registry)
    tracker.start()
    for frame, ts in microphone():
        tracker.feed(frame, ts)
        show(tracker.snapshot())
    tracker.stop()
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from collections import deque
from dataclasses import replace
from enum import Enum
from typing import Deque, List, Optional, Tuple, Union

import numpy as np

from .audio_segmenter import bytes_to_float_array
from .diarization_config import DiarizationConfig
from .diarization_errors import DiarizationError, EmbeddingError, InvalidInputError
from .embedding_providers import EmbeddingProvider
from .profile_store import ProfileRegistry
from .speaker_profiles import SpeakerProfile
from .speaker_segments import UNASSIGNED_SPEAKER, SpeakerSegment
from .telemetry import NullTelemetrySink, TelemetrySink, safe_track
from .voice_features import extract_voice_characteristics, profile_similarity

logger = logging.getLogger(__name__)


class TrackerState(Enum):
    IDLE = "idle"
    TRACKING = "tracking"


class RingBuffer:
    """Fixed-capacity float32 sample buffer that keeps the newest samples."""

    def __init__(self, capacity: int):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self._data = np.zeros(capacity, dtype=np.float32)
        self._write = 0
        self._size = 0

    def __len__(self) -> int:
        return self._size

    def append(self, samples: np.ndarray) -> None:
        samples = np.asarray(samples, dtype=np.float32).ravel()
        if len(samples) >= self.capacity:
            self._data[:] = samples[-self.capacity:]
            self._write = 0
            self._size = self.capacity
            return
        end = self._write + len(samples)
        if end <= self.capacity:
            self._data[self._write:end] = samples
        else:
            split = self.capacity - self._write
            self._data[self._write:] = samples[:split]
            self._data[:end - self.capacity] = samples[split:]
        self._write = end % self.capacity
        self._size = min(self.capacity, self._size + len(samples))

    def read(self) -> np.ndarray:
        """Copy of the buffered samples, oldest first."""
        if self._size < self.capacity:
            start = (self._write - self._size) % self.capacity
            if start + self._size <= self.capacity:
                return self._data[start:start + self._size].copy()
            return np.concatenate([self._data[start:], self._data[:self._write]])
        return np.concatenate([self._data[self._write:], self._data[:self._write]])

    def clear(self) -> None:
        self._write = 0
        self._size = 0


class RealtimeSpeakerTracker:
    """
    Incremental speaker tracking over a live audio stream.

    States: IDLE -> TRACKING -> IDLE. There is no pause/resume; stop() discards
    all buffered audio and any result of a step still running.
    """

    def __init__(
        self,
        provider: EmbeddingProvider,
        registry: ProfileRegistry,
        config: Optional[DiarizationConfig] = None,
        telemetry: Optional[TelemetrySink] = None
    ):
        self.provider = provider
        self.registry = registry
        self.config = config or DiarizationConfig()
        self.telemetry = telemetry or NullTelemetrySink()

        rt = self.config.realtime
        self.sample_rate = rt.sample_rate
        self._min_samples = int(rt.min_audio_seconds * rt.sample_rate)
        self._buffer = RingBuffer(int(rt.buffer_seconds * rt.sample_rate))
        self._recent: Deque[SpeakerSegment] = deque(maxlen=rt.recent_capacity)
        self._published: Tuple[SpeakerSegment, ...] = ()

        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="realtime-diarization")
        self._state = TrackerState.IDLE
        self._generation = 0
        self._in_flight = False
        self._origin_ms: Optional[float] = None
        self._last_step_ms: Optional[float] = None
        self.steps_run = 0
        self.steps_skipped = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def state(self) -> TrackerState:
        with self._lock:
            return self._state

    def _reset_locked(self) -> None:
        self._generation += 1
        self._buffer.clear()
        self._recent.clear()
        self._published = ()
        self._in_flight = False
        self._origin_ms = None
        self._last_step_ms = None
        self._idle.notify_all()

    def start(self) -> None:
        """
        Begin a tracking session with empty buffers.

        Raises:
            ModelLoadError: the embedding model is unavailable
        """
        self.provider.load()
        with self._lock:
            self._reset_locked()
            self._state = TrackerState.TRACKING
        logger.info("[RealtimeTracker] Tracking started")
        safe_track(self.telemetry, "realtime_session", {"action": "start"})

    def stop(self) -> Tuple[SpeakerSegment, ...]:
        """Return to IDLE, clear buffers and invalidate any running step."""
        with self._lock:
            final = self._published
            self._reset_locked()
            self._state = TrackerState.IDLE
        logger.info("[RealtimeTracker] Tracking stopped (%d live segments)", len(final))
        safe_track(self.telemetry, "realtime_session", {"action": "stop", "segments": len(final)})
        return final

    def close(self) -> None:
        self.stop()
        self._executor.shutdown(wait=True)

    def wait_until_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until no processing step is in flight."""
        with self._idle:
            return self._idle.wait_for(lambda: not self._in_flight, timeout)

    # ------------------------------------------------------------------
    # Input
    # ------------------------------------------------------------------

    def feed(self, frame: Union[np.ndarray, bytes], timestamp_ms: float) -> bool:
        """
        Append a frame of audio captured at timestamp_ms.

        Returns:
            False when the tracker is IDLE (the frame is ignored)
        """
        if isinstance(frame, (bytes, bytearray)):
            samples = bytes_to_float_array(bytes(frame))
        else:
            samples = np.asarray(frame, dtype=np.float32).ravel()
        if samples.size and not np.all(np.isfinite(samples)):
            raise InvalidInputError("Audio frame contains NaN or Infinity")

        rt = self.config.realtime
        with self._lock:
            if self._state is not TrackerState.TRACKING:
                return False
            if self._origin_ms is None:
                self._origin_ms = float(timestamp_ms)
            self._buffer.append(samples)

            if len(self._buffer) < self._min_samples:
                return True
            due = self._last_step_ms is None or timestamp_ms - self._last_step_ms >= rt.processing_interval_ms
            if not due:
                return True
            if self._in_flight:
                self.steps_skipped += 1
                return True

            self._in_flight = True
            self._last_step_ms = float(timestamp_ms)
            audio = self._buffer.read()
            end_time = (float(timestamp_ms) - self._origin_ms) / 1000.0 + len(samples) / self.sample_rate
            start_time = max(0.0, end_time - len(audio) / self.sample_rate)
            generation = self._generation

        self._executor.submit(self._run_step, generation, audio, start_time, end_time)
        return True

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    def _run_step(self, generation: int, audio: np.ndarray, start_time: float, end_time: float) -> None:
        reinforcement = None
        try:
            segment, reinforcement = self._analyze(audio, start_time, end_time)
        except EmbeddingError as e:
            logger.warning("[RealtimeTracker] Embedding failed: %s", e.message)
            segment = None
        except DiarizationError as e:
            logger.error("[RealtimeTracker] Processing step failed: %s", e.message)
            segment = None
        except Exception:
            logger.exception("[RealtimeTracker] Unexpected error in processing step")
            segment = None

        with self._lock:
            if generation != self._generation:
                logger.debug("[RealtimeTracker] Discarding result of a stopped session")
                return
            # Profiles only learn from the session that produced the audio
            if reinforcement is not None:
                self._reinforce(*reinforcement)
            self.steps_run += 1
            if segment is not None:
                self._recent.append(segment)
                self._published = tuple(self.smooth(list(self._recent), self.config.realtime.lookahead))
            self._in_flight = False
            self._idle.notify_all()

    def _best_match(self, embedding: np.ndarray, characteristics) -> Tuple[Optional[SpeakerProfile], float]:
        sim_cfg = self.config.similarity
        best, best_score = None, -1.0
        for profile in self.registry.snapshot().values():
            score = profile_similarity(
                embedding,
                characteristics,
                profile.recent_embeddings(sim_cfg.recent_embeddings),
                profile.speaker_characteristics,
                sim_cfg.embedding_weight,
                sim_cfg.characteristic_weight
            )
            if score > best_score:
                best, best_score = profile, score
        return best, best_score

    def _analyze(self, audio: np.ndarray, start_time: float, end_time: float) -> Tuple[Optional[SpeakerSegment], Optional[tuple]]:
        """
        Label one window of audio.

        Returns:
            (segment, reinforcement) where reinforcement holds the arguments for
            _reinforce when the match clears the profile's verification threshold
        """
        rt = self.config.realtime
        rms = float(np.sqrt(np.mean(np.square(audio)))) if len(audio) else 0.0
        if rms < rt.silence_rms:
            return None, None

        embedding = self.provider.embed(audio)
        characteristics = extract_voice_characteristics(embedding)
        profile, score = self._best_match(embedding, characteristics)

        if profile is None or score <= rt.match_threshold:
            return SpeakerSegment(
                speaker_id=UNASSIGNED_SPEAKER,
                start_time=start_time,
                end_time=end_time,
                confidence=0.0,
                embedding=embedding
            ), None

        reinforcement = None
        if score > profile.verification_threshold:
            reinforcement = (profile.id, embedding, characteristics)

        return SpeakerSegment(
            speaker_id=profile.id,
            start_time=start_time,
            end_time=end_time,
            confidence=float(min(1.0, score)),
            embedding=embedding
        ), reinforcement

    def _reinforce(self, speaker_id: int, embedding: np.ndarray, characteristics) -> None:
        rate = self.config.realtime.learning_rate
        max_embeddings = self.config.profiles.max_embeddings

        def apply(profile: SpeakerProfile) -> None:
            profile.add_embedding(embedding, max_embeddings)
            profile.update_characteristics(characteristics, rate)

        try:
            self.registry.update(speaker_id, apply)
            self.registry.persist()
        except DiarizationError as e:
            # Deleted mid-session or store unavailable; tracking continues
            logger.warning("[RealtimeTracker] Could not reinforce profile %d: %s", speaker_id, e.message)

    @staticmethod
    def smooth(segments: List[SpeakerSegment], lookahead: int = 2) -> List[SpeakerSegment]:
        """Merge same-speaker runs and hold speaker changes until confirmed."""
        smoothed: List[SpeakerSegment] = []
        for i, segment in enumerate(segments):
            if not smoothed:
                smoothed.append(segment)
                continue
            last = smoothed[-1]
            if segment.speaker_id == last.speaker_id:
                smoothed[-1] = replace(
                    last,
                    end_time=max(last.end_time, segment.end_time),
                    confidence=(last.confidence + segment.confidence) / 2.0
                )
                continue

            upcoming = segments[i + 1:i + 1 + lookahead]
            confirmed = len(upcoming) == lookahead and all(
                s.speaker_id == segment.speaker_id for s in upcoming
            )
            if confirmed:
                start = max(segment.start_time, last.end_time)
                if start < segment.end_time:
                    smoothed.append(replace(segment, start_time=start))
            else:
                smoothed[-1] = replace(last, end_time=max(last.end_time, segment.end_time))
        return smoothed

    # ------------------------------------------------------------------
    # Output
    # ------------------------------------------------------------------

    def snapshot(self) -> Tuple[SpeakerSegment, ...]:
        """Latest published live segments (immutable)."""
        with self._lock:
            return self._published

    @property
    def live_segments(self) -> Tuple[SpeakerSegment, ...]:
        return self.snapshot()

    def recent_count(self) -> int:
        with self._lock:
            return len(self._recent)
