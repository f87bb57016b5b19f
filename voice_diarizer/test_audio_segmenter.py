#!/usr/bin/env python3
"""
test_audio_segmenter.py - Unit tests for the energy-based segmentation front-end
"""

import unittest

import numpy as np

from voice_diarizer.audio_segmenter import EnergySegmenter, as_mono_float, bytes_to_float_array
from voice_diarizer.diarization_errors import InvalidInputError

SR = 16000


def speech(seconds, level=0.3, seed=0):
    rng = np.random.default_rng(seed)
    return (level * rng.uniform(-1, 1, int(seconds * SR))).astype(np.float32)


def silence(seconds):
    return np.zeros(int(seconds * SR), dtype=np.float32)


class TestEnergySegmenter(unittest.TestCase):

    def setUp(self):
        self.segmenter = EnergySegmenter(sample_rate=SR)

    def test_splits_on_long_silence(self):
        """Two utterances separated by one second of silence give two segments."""
        audio = np.concatenate([silence(0.5), speech(2.0), silence(1.0), speech(2.0, seed=1), silence(0.5)])
        segments = self.segmenter.segment(audio)
        self.assertEqual(len(segments), 2)
        self.assertAlmostEqual(segments[0].start_time, 0.5, delta=0.05)
        self.assertAlmostEqual(segments[1].start_time, 3.5, delta=0.05)
        self.assertLess(segments[0].end_time, segments[1].start_time)

    def test_short_pause_does_not_split(self):
        """Pauses shorter than min_silence_seconds stay inside a segment."""
        audio = np.concatenate([silence(0.5), speech(1.2), silence(0.2), speech(1.2, seed=1), silence(0.5)])
        segments = self.segmenter.segment(audio)
        self.assertEqual(len(segments), 1)

    def test_long_speech_is_chunked(self):
        """Continuous speech is split into pieces no longer than max_segment_seconds."""
        segments = self.segmenter.segment(np.concatenate([silence(1.5), speech(10.5), silence(1.5)]))
        self.assertEqual(len(segments), 4)
        self.assertTrue(all(2.5 <= s.duration <= 3.0 for s in segments))
        self.assertAlmostEqual(segments[0].start_time, 1.5, delta=0.05)
        self.assertAlmostEqual(segments[-1].end_time, 12.0, delta=0.05)
        for previous, current in zip(segments, segments[1:]):
            self.assertEqual(previous.end_time, current.start_time)

    def test_short_remainder_stays_in_one_piece(self):
        segments = self.segmenter.segment(np.concatenate([silence(1.5), speech(3.5), silence(1.5)]))
        self.assertEqual(len(segments), 1)
        self.assertAlmostEqual(segments[0].duration, 3.5, delta=0.05)

    def test_long_remainder_splits_evenly(self):
        segments = self.segmenter.segment(np.concatenate([silence(1.5), speech(5.0), silence(1.5)]))
        self.assertEqual(len(segments), 2)
        self.assertAlmostEqual(segments[0].duration, segments[1].duration, delta=0.001)
        self.assertTrue(all(s.duration <= 3.0 for s in segments))

    def test_short_bursts_are_dropped(self):
        audio = np.concatenate([silence(1.0), speech(0.3), silence(1.0)])
        self.assertEqual(self.segmenter.segment(audio), [])

    def test_silence_gives_no_segments(self):
        self.assertEqual(self.segmenter.segment(silence(3.0)), [])

    def test_segment_audio_matches_span(self):
        audio = np.concatenate([speech(2.0), silence(1.0)])
        segment = self.segmenter.segment(audio)[0]
        start = int(round(segment.start_time * SR))
        np.testing.assert_array_equal(segment.audio, audio[start:start + len(segment.audio)])

    def test_accepts_pcm_bytes(self):
        pcm = (np.concatenate([speech(2.0), silence(1.0)]) * 32767).astype("<i2").tobytes()
        self.assertEqual(len(self.segmenter.segment(pcm)), 1)


class TestInputNormalization(unittest.TestCase):

    def test_stereo_is_downmixed(self):
        stereo = np.stack([np.ones(100), np.zeros(100)], axis=1)
        np.testing.assert_allclose(as_mono_float(stereo), np.full(100, 0.5))

    def test_empty_rejected(self):
        with self.assertRaises(InvalidInputError):
            as_mono_float(np.array([]))

    def test_non_finite_rejected(self):
        with self.assertRaises(InvalidInputError):
            as_mono_float(np.array([0.0, np.inf]))

    def test_pcm_conversion(self):
        samples = bytes_to_float_array(np.array([0, 16384, -32768], dtype="<i2").tobytes())
        np.testing.assert_allclose(samples, [0.0, 0.5, -1.0])

    def test_odd_pcm_length_rejected(self):
        with self.assertRaises(InvalidInputError):
            bytes_to_float_array(b"\x00\x01\x02")


if __name__ == "__main__":
    unittest.main()
