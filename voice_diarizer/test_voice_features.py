#!/usr/bin/env python3
"""
test_voice_features.py - Unit tests for similarity scoring and voice characteristics
"""

import unittest

import numpy as np

from voice_diarizer.voice_features import (
    CHARACTERISTIC_KEYS,
    blend_characteristics,
    characteristic_similarity,
    cosine_similarity,
    energy_ratio,
    extract_voice_characteristics,
    profile_similarity,
)


class TestCosineSimilarity(unittest.TestCase):

    def test_symmetric(self):
        rng = np.random.default_rng(3)
        a, b = rng.normal(size=32), rng.normal(size=32)
        self.assertAlmostEqual(cosine_similarity(a, b), cosine_similarity(b, a))

    def test_self_similarity_is_one(self):
        a = np.random.default_rng(4).normal(size=16)
        self.assertAlmostEqual(cosine_similarity(a, a), 1.0, places=6)

    def test_zero_vector_is_zero(self):
        self.assertEqual(cosine_similarity(np.zeros(8), np.ones(8)), 0.0)

    def test_orthogonal_is_zero(self):
        self.assertAlmostEqual(cosine_similarity(np.array([1.0, 0.0]), np.array([0.0, 1.0])), 0.0)

    def test_mismatched_shapes_is_zero(self):
        self.assertEqual(cosine_similarity(np.ones(4), np.ones(5)), 0.0)


class TestVoiceCharacteristics(unittest.TestCase):

    def test_produces_21_values_in_unit_range(self):
        embedding = np.random.default_rng(5).normal(size=256)
        characteristics = extract_voice_characteristics(embedding)
        self.assertEqual(set(characteristics), set(CHARACTERISTIC_KEYS))
        self.assertEqual(len(characteristics), 21)
        for key, value in characteristics.items():
            self.assertGreaterEqual(value, 0.0, key)
            self.assertLessEqual(value, 1.0, key)

    def test_deterministic(self):
        embedding = np.random.default_rng(6).normal(size=160)
        self.assertEqual(extract_voice_characteristics(embedding), extract_voice_characteristics(embedding.copy()))

    def test_short_embedding_gives_empty_map(self):
        self.assertEqual(extract_voice_characteristics(np.ones(6)), {})

    def test_zero_embedding_stays_finite(self):
        characteristics = extract_voice_characteristics(np.zeros(70))
        self.assertTrue(all(np.isfinite(v) for v in characteristics.values()))


class TestCharacteristicSimilarity(unittest.TestCase):

    def test_identical_maps_score_one(self):
        c = extract_voice_characteristics(np.random.default_rng(7).normal(size=64))
        self.assertAlmostEqual(characteristic_similarity(c, c), 1.0)

    def test_no_shared_keys_scores_zero(self):
        self.assertEqual(characteristic_similarity({"pitch_mean": 0.5}, {"warmth": 0.5}), 0.0)

    def test_only_shared_keys_count(self):
        a = {"pitch_mean": 0.2, "warmth": 0.9}
        b = {"pitch_mean": 0.2}
        self.assertAlmostEqual(characteristic_similarity(a, b), 1.0)

    def test_difference_lowers_score(self):
        self.assertAlmostEqual(characteristic_similarity({"jitter": 0.0}, {"jitter": 0.4}), 0.6)


class TestBlendAndProfileSimilarity(unittest.TestCase):

    def test_blend_is_ewma(self):
        blended = blend_characteristics({"stress": 1.0}, {"stress": 0.0, "warmth": 0.4}, 0.1)
        self.assertAlmostEqual(blended["stress"], 0.9)
        self.assertAlmostEqual(blended["warmth"], 0.4)

    def test_profile_similarity_weights(self):
        e = np.array([1.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0])
        c = extract_voice_characteristics(e)
        self.assertAlmostEqual(profile_similarity(e, c, [e], c), 1.0)
        # Orthogonal embedding, identical characteristics -> only the 0.3 share
        other = np.array([0.0, 1.0, 0.0, 0.0, 0.0, 0.0, 0.0])
        self.assertAlmostEqual(profile_similarity(other, c, [e], c), 0.3)

    def test_profile_without_embeddings_scores_characteristics_only(self):
        e = np.ones(14)
        c = extract_voice_characteristics(e)
        self.assertAlmostEqual(profile_similarity(e, c, [], c), 0.3)

    def test_energy_ratio(self):
        self.assertAlmostEqual(energy_ratio(np.array([1.0, 1.0]), np.array([2.0, 0.0])), 0.5)
        self.assertEqual(energy_ratio(np.zeros(3), np.zeros(3)), 0.0)


if __name__ == "__main__":
    unittest.main()
