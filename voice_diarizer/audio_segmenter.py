#!/usr/bin/env python3
"""
audio_segmenter.py - Energy-based segmentation front-end

Splits a recording into candidate speech segments before embedding:

1. Frame RMS energy over 512-sample windows with a 256-sample hop
2. Adaptive silence threshold: p15 + 0.1 * (p85 - p15) of the frame energies
3. Split at silences lasting at least min_silence_seconds
4. Chunk long speech runs into equal pieces of about max_segment_seconds
5. Drop pieces shorter than min_segment_seconds

Usage:
    segmenter = EnergySegmenter(sample_rate=16000)
    for candidate in segmenter.segment(audio):
        print(candidate.start_time, candidate.end_time)
"""

import logging
from typing import List, Tuple, Union

import numpy as np

from .diarization_errors import InvalidInputError
from .speaker_segments import CandidateSegment

logger = logging.getLogger(__name__)


def bytes_to_float_array(pcm: bytes) -> np.ndarray:
    """Convert 16-bit little-endian PCM bytes to float32 samples in [-1, 1]."""
    if len(pcm) % 2:
        raise InvalidInputError("16-bit PCM buffer has an odd number of bytes", details={"bytes": len(pcm)})
    return np.frombuffer(pcm, dtype="<i2").astype(np.float32) / 32768.0


def as_mono_float(audio: Union[np.ndarray, bytes, list]) -> np.ndarray:
    """
    Normalize input audio to a 1-D float32 array.

    Raises:
        InvalidInputError: empty, non-finite or more than 2-D input
    """
    if isinstance(audio, (bytes, bytearray)):
        samples = bytes_to_float_array(bytes(audio))
    else:
        try:
            samples = np.asarray(audio, dtype=np.float32)
        except (TypeError, ValueError) as e:
            raise InvalidInputError(f"Audio is not numeric: {e}")
        if samples.ndim == 2:
            # Convert to mono if stereo (samples x channels)
            samples = samples.mean(axis=1) if samples.shape[0] >= samples.shape[1] else samples.mean(axis=0)
        elif samples.ndim != 1:
            raise InvalidInputError(f"Audio must be 1-D or 2-D, got {samples.ndim}-D")

    if samples.size == 0:
        raise InvalidInputError("Audio buffer is empty")
    if not np.all(np.isfinite(samples)):
        raise InvalidInputError("Audio buffer contains NaN or Infinity")
    return samples


class EnergySegmenter:
    """Adaptive-threshold energy segmenter."""

    SILENCE_FLOOR = 1e-4

    def __init__(
        self,
        sample_rate: int = 16000,
        window_size: int = 512,
        hop_size: int = 256,
        min_silence_seconds: float = 0.5,
        min_segment_seconds: float = 1.0,
        max_segment_seconds: float = 3.0
    ):
        self.sample_rate = sample_rate
        self.window_size = window_size
        self.hop_size = hop_size
        self.min_silence_seconds = min_silence_seconds
        self.min_segment_seconds = min_segment_seconds
        self.max_segment_seconds = max_segment_seconds

    def frame_energies(self, audio: np.ndarray) -> np.ndarray:
        if len(audio) < self.window_size:
            return np.array([float(np.sqrt(np.mean(audio ** 2)))])
        num_frames = 1 + (len(audio) - self.window_size) // self.hop_size
        energies = np.empty(num_frames)
        for i in range(num_frames):
            frame = audio[i * self.hop_size:i * self.hop_size + self.window_size]
            energies[i] = np.sqrt(np.mean(frame ** 2))
        return energies

    def silence_threshold(self, energies: np.ndarray) -> float:
        p15 = float(np.percentile(energies, 15))
        p85 = float(np.percentile(energies, 85))
        return max(p15 + (p85 - p15) * 0.1, self.SILENCE_FLOOR)

    def speech_spans(self, audio: np.ndarray) -> List[Tuple[int, int]]:
        """Speech runs as (start_sample, end_sample) pairs."""
        energies = self.frame_energies(audio)
        threshold = self.silence_threshold(energies)
        min_silence_frames = max(1, int(np.ceil(self.min_silence_seconds * self.sample_rate / self.hop_size)))

        spans = []
        in_speech = False
        start = 0
        silence_start = None

        for i, energy in enumerate(energies):
            voiced = energy >= threshold and energy > self.SILENCE_FLOOR
            if voiced:
                if not in_speech:
                    start = i * self.hop_size
                    in_speech = True
                silence_start = None
            elif in_speech:
                if silence_start is None:
                    silence_start = i
                if i - silence_start + 1 >= min_silence_frames:
                    spans.append((start, silence_start * self.hop_size))
                    in_speech = False
                    silence_start = None

        # Handle case where speech extends to end
        if in_speech:
            end = len(audio) if silence_start is None else silence_start * self.hop_size
            spans.append((start, end))
        return spans

    def _chunk(self, start: int, end: int) -> List[Tuple[int, int]]:
        """
        Split a span into equal pieces of about max_segment_seconds.

        A remainder shorter than min_segment_seconds is spread over the other
        pieces instead of becoming a piece of its own.
        """
        max_len = int(self.max_segment_seconds * self.sample_rate)
        min_len = int(self.min_segment_seconds * self.sample_rate)
        length = end - start
        if max_len <= 0 or length <= max_len:
            return [(start, end)]
        count = -(-length // max_len)
        if length - (count - 1) * max_len < min_len:
            count -= 1
        if count == 1:
            return [(start, end)]
        bounds = np.linspace(start, end, count + 1).round().astype(int)
        return [(int(a), int(b)) for a, b in zip(bounds[:-1], bounds[1:])]

    def segment(self, audio: Union[np.ndarray, bytes]) -> List[CandidateSegment]:
        """
        Split audio into candidate speech segments.

        Returns:
            Time-ordered, non-overlapping CandidateSegments
        """
        samples = as_mono_float(audio)
        min_len = int(self.min_segment_seconds * self.sample_rate)

        candidates = []
        for span_start, span_end in self.speech_spans(samples):
            for start, end in self._chunk(span_start, span_end):
                if end - start < min_len:
                    continue
                candidates.append(CandidateSegment(
                    start_time=start / self.sample_rate,
                    end_time=end / self.sample_rate,
                    audio=samples[start:end]
                ))

        logger.debug("[Segmenter] %d candidate segments from %.2fs of audio",
                     len(candidates), len(samples) / self.sample_rate)
        return candidates
