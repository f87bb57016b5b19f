#!/usr/bin/env python3
"""
test_json_serialization_utils.py - Unit tests for JSON serialization utilities

Tests the json_serialization_utils module which handles conversion of:
- numpy scalar types (float32, float64, int32, int64, bool_)
- numpy arrays
- Special float values (NaN, Infinity)
- Diarization result objects exposing to_dict()
- Base64 float32 embedding encoding used by the profile store
"""

import io
import json
import sys
import unittest
import warnings
from contextlib import redirect_stdout

import numpy as np

from voice_diarizer.json_serialization_utils import (
    _handle_special_float,
    decode_embedding,
    encode_embedding,
    safe_output_json,
    to_json_serializable,
)
from voice_diarizer.speaker_segments import SpeakerSegment


class TestHandleSpecialFloat(unittest.TestCase):
    """Tests for the _handle_special_float helper function."""

    def test_normal_float_unchanged(self):
        """Normal float values should pass through unchanged."""
        self.assertEqual(_handle_special_float(0.5, warn=False), 0.5)
        self.assertEqual(_handle_special_float(-1.5, warn=False), -1.5)

    def test_nan_converts_to_none(self):
        """NaN values should convert to None (JSON null)."""
        self.assertIsNone(_handle_special_float(float('nan'), warn=False))

    def test_infinity_converts_to_max_float(self):
        """Infinities should convert to +/- max float."""
        self.assertEqual(_handle_special_float(float('inf'), warn=False), sys.float_info.max)
        self.assertEqual(_handle_special_float(float('-inf'), warn=False), -sys.float_info.max)

    def test_warnings_emitted_for_special_values(self):
        """Warnings should be emitted when warn=True."""
        with warnings.catch_warnings(record=True) as w:
            warnings.simplefilter("always")
            _handle_special_float(float('nan'), warn=True)
            self.assertEqual(len(w), 1)
            self.assertIn("NaN", str(w[0].message))


class TestNumpyConversion(unittest.TestCase):
    """Tests for numpy scalar and array conversion."""

    def test_scalars(self):
        """numpy scalars should convert to native Python types."""
        self.assertIsInstance(to_json_serializable(np.float32(0.5)), float)
        self.assertIsInstance(to_json_serializable(np.int64(-3)), int)
        self.assertIs(to_json_serializable(np.bool_(True)), True)

    def test_arrays(self):
        """Arrays should convert to (nested) lists."""
        self.assertEqual(to_json_serializable(np.array([[1, 2], [3, 4]])), [[1, 2], [3, 4]])

    def test_array_with_special_floats(self):
        """Arrays with NaN/Inf should have those values converted."""
        result = to_json_serializable(np.array([1.0, float('nan'), float('inf')]), warn_special_floats=False)
        self.assertEqual(result[0], 1.0)
        self.assertIsNone(result[1])
        self.assertEqual(result[2], sys.float_info.max)

    def test_integer_dict_keys_become_strings(self):
        """Speaker-id keyed dicts should serialize with string keys."""
        result = to_json_serializable({0: np.float32(1.0), 1: np.float32(2.0)})
        self.assertEqual(set(result), {"0", "1"})
        json.dumps(result)  # Should not raise


class TestDiarizationObjects(unittest.TestCase):
    """Tests for objects exposing to_dict()."""

    def test_speaker_segment(self):
        segment = SpeakerSegment(
            speaker_id=2,
            start_time=1.23456,
            end_time=3.5,
            confidence=np.float32(0.875),
            embedding=np.ones(4, dtype=np.float32),
            is_transition=True,
            overlapping_speaker_id=0
        )
        result = to_json_serializable({"segments": [segment]})
        entry = result["segments"][0]
        self.assertEqual(entry["speaker_id"], 2)
        self.assertEqual(entry["start_time"], 1.235)
        self.assertEqual(entry["overlapping_speaker_id"], 0)
        self.assertNotIn("embedding", entry)
        json.dumps(result)  # Should not raise


class TestEmbeddingEncoding(unittest.TestCase):
    """Tests for the base64 float32 embedding format."""

    def test_float32_values_survive_exactly(self):
        embedding = np.random.default_rng(11).normal(size=256).astype(np.float32)
        decoded = decode_embedding(encode_embedding(embedding))
        self.assertEqual(decoded.dtype, np.float32)
        np.testing.assert_array_equal(decoded, embedding)

    def test_known_encoding(self):
        """1.0 as little-endian float32 is 00 00 80 3f."""
        self.assertEqual(encode_embedding(np.array([1.0])), "AACAPw==")

    def test_truncated_payload_rejected(self):
        with self.assertRaises(ValueError):
            decode_embedding("AACA")


class TestSafeOutputJson(unittest.TestCase):

    def test_prints_one_json_line(self):
        buffer = io.StringIO()
        with redirect_stdout(buffer):
            safe_output_json({"speaker_count": np.int64(2), "confidence": np.float32(0.5)})
        line = buffer.getvalue().strip()
        self.assertEqual(json.loads(line), {"speaker_count": 2, "confidence": 0.5})


if __name__ == "__main__":
    unittest.main()
