#!/usr/bin/env python3
"""
test_profile_store.py - Unit tests for voice profiles, profile stores and the registry
"""

import json
import os
import tempfile
import threading
import unittest

import numpy as np

from voice_diarizer.diarization_config import ProfileConfig
from voice_diarizer.diarization_errors import InferenceError, UnknownSpeakerError
from voice_diarizer.diarization_test_utils import FailingSaveStore, basis
from voice_diarizer.profile_store import InMemoryProfileStore, JsonProfileStore, ProfileRegistry
from voice_diarizer.speaker_profiles import MAX_EMBEDDINGS, SpeakerProfile


def make_profile(speaker_id: int, embeddings: int = 3) -> SpeakerProfile:
    rng = np.random.default_rng(speaker_id)
    profile = SpeakerProfile(id=speaker_id, name=f"Speaker {speaker_id}")
    for _ in range(embeddings):
        profile.add_embedding(rng.normal(size=32).astype(np.float32))
    profile.speaker_characteristics = {"pitch_mean": 0.25, "warmth": 0.75}
    profile.total_duration = 12.5
    profile.average_confidence = 0.8
    profile.verification_count = 2
    profile.is_verified = True
    return profile


class TestSpeakerProfile(unittest.TestCase):

    def test_embedding_cap_evicts_oldest(self):
        profile = SpeakerProfile(id=0)
        for i in range(MAX_EMBEDDINGS + 5):
            profile.add_embedding(np.full(4, i, dtype=np.float32))
        self.assertEqual(len(profile.embeddings), MAX_EMBEDDINGS)
        self.assertEqual(profile.embeddings[0][0], 5.0)
        self.assertEqual(profile.embeddings[-1][0], MAX_EMBEDDINGS + 4)

    def test_threshold_clamped_on_construction(self):
        self.assertEqual(SpeakerProfile(id=0, verification_threshold=0.2).verification_threshold, 0.75)
        self.assertEqual(SpeakerProfile(id=0, verification_threshold=1.5).verification_threshold, 0.95)

    def test_nudge_moves_toward_similarity_within_bounds(self):
        profile = SpeakerProfile(id=0, verification_threshold=0.85)
        profile.nudge_threshold(0.95)
        self.assertAlmostEqual(profile.verification_threshold, 0.86)
        for _ in range(100):
            profile.nudge_threshold(1.0)
        self.assertLessEqual(profile.verification_threshold, 0.95)

    def test_record_match_running_mean(self):
        profile = SpeakerProfile(id=0)
        profile.record_match(basis(0), {}, 2.0, 1.0, 0.1)
        profile.record_match(basis(0), {}, 3.0, 0.5, 0.1)
        self.assertAlmostEqual(profile.average_confidence, 0.75)
        self.assertAlmostEqual(profile.total_duration, 5.0)
        self.assertEqual(profile.segment_count, 2)

    def test_dict_round_trip_is_lossless(self):
        original = make_profile(4)
        restored = SpeakerProfile.from_dict(json.loads(json.dumps(original.to_dict())))
        self.assertEqual(restored.to_dict(), original.to_dict())
        for a, b in zip(original.embeddings, restored.embeddings):
            np.testing.assert_array_equal(a, b)


class TestProfileStores(unittest.TestCase):

    def test_json_store_round_trip(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "profiles", "voices.json")
            store = JsonProfileStore(path)
            profiles = {0: make_profile(0), 3: make_profile(3, embeddings=20)}
            store.save_all(profiles)
            self.assertFalse(os.path.exists(path + ".tmp"))

            loaded = JsonProfileStore(path).load_all()
            self.assertEqual(sorted(loaded), [0, 3])
            for pid in profiles:
                self.assertEqual(loaded[pid].to_dict(), profiles[pid].to_dict())

    def test_json_store_missing_file_is_empty(self):
        with tempfile.TemporaryDirectory() as tmp:
            self.assertEqual(JsonProfileStore(os.path.join(tmp, "none.json")).load_all(), {})

    def test_in_memory_store_does_not_alias(self):
        store = InMemoryProfileStore()
        profile = make_profile(1)
        store.save_all({1: profile})
        profile.name = "changed"
        self.assertEqual(store.load_all()[1].name, "Speaker 1")


class TestProfileRegistry(unittest.TestCase):

    def test_configured_bounds_survive_reload(self):
        config = ProfileConfig(min_threshold=0.6, max_threshold=0.98, max_embeddings=30)
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "profiles.json")
            registry = ProfileRegistry(JsonProfileStore(path), config)
            profile = SpeakerProfile(id=0, name="Loose")
            profile.set_threshold(0.62, config.min_threshold, config.max_threshold)
            for i in range(25):
                profile.add_embedding(np.full(4, i, dtype=np.float32), config.max_embeddings)
            registry.add(profile)
            registry.persist()

            reloaded = ProfileRegistry(JsonProfileStore(path), config)
            reloaded.load()
            restored = reloaded.get(0)
            self.assertAlmostEqual(restored.verification_threshold, 0.62)
            self.assertEqual(len(restored.embeddings), 25)
            self.assertEqual(restored.embeddings[0][0], 0.0)

            defaults = ProfileRegistry(JsonProfileStore(path))
            defaults.load()
            self.assertAlmostEqual(defaults.get(0).verification_threshold, 0.75)
            self.assertEqual(len(defaults.get(0).embeddings), MAX_EMBEDDINGS)

    def test_new_profile_uses_configured_default(self):
        registry = ProfileRegistry(config=ProfileConfig(default_threshold=0.7, min_threshold=0.6))
        self.assertAlmostEqual(registry.new_profile(4).verification_threshold, 0.7)
        self.assertEqual(len(registry), 0)

    def test_empty_registry_allocates_zero(self):
        registry = ProfileRegistry(InMemoryProfileStore())
        registry.load()
        self.assertEqual(registry.allocate_id(), 0)

    def test_allocate_after_load_is_max_plus_one(self):
        registry = ProfileRegistry(InMemoryProfileStore({2: make_profile(2), 7: make_profile(7)}))
        registry.load()
        self.assertEqual(registry.allocate_id(), 8)

    def test_reads_are_copies(self):
        registry = ProfileRegistry()
        registry.add(make_profile(0))
        copy = registry.get(0)
        copy.name = "mutated"
        self.assertEqual(registry.get(0).name, "Speaker 0")

    def test_update_unknown_raises(self):
        registry = ProfileRegistry()
        with self.assertRaises(UnknownSpeakerError):
            registry.update(5, lambda p: None)

    def test_persist_failure_is_inference_error(self):
        registry = ProfileRegistry(FailingSaveStore())
        registry.add(make_profile(0))
        with self.assertRaises(InferenceError) as ctx:
            registry.persist()
        self.assertEqual(ctx.exception.details["stage"], "persist")
        self.assertEqual(ctx.exception.error_code, "INFERENCE_FAILURE")

    def test_commit_reallocates_taken_ids(self):
        registry = ProfileRegistry()
        registry.add(SpeakerProfile(id=0))
        id_map = registry.commit_matches({}, {0: SpeakerProfile(id=0), 1: SpeakerProfile(id=1)}, 0.1)
        self.assertNotEqual(id_map[0], 0)
        self.assertEqual(len(set(id_map.values())), 2)
        self.assertEqual(len(registry), 3)

    def test_deleted_ids_are_not_reused(self):
        registry = ProfileRegistry()
        registry.add(SpeakerProfile(id=0))
        registry.add(SpeakerProfile(id=1))
        self.assertTrue(registry.delete(1))
        id_map = registry.commit_matches({}, {1: SpeakerProfile(id=1)}, 0.1)
        self.assertEqual(id_map[1], 2)
        self.assertEqual(registry.ids(), [0, 2])

    def test_concurrent_updates_are_serialized(self):
        registry = ProfileRegistry()
        registry.add(SpeakerProfile(id=0))

        def bump():
            for _ in range(200):
                registry.update(0, lambda p: setattr(p, "verification_count", p.verification_count + 1))

        threads = [threading.Thread(target=bump) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        self.assertEqual(registry.get(0).verification_count, 800)


if __name__ == "__main__":
    unittest.main()
