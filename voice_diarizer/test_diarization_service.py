#!/usr/bin/env python3
"""
test_diarization_service.py - End-to-end tests for the diarization service facade
"""

import io
import json
import os
import sys
import tempfile
import unittest
from contextlib import redirect_stdout
from unittest import mock

import numpy as np

from voice_diarizer.diarization_errors import InferenceError, InvalidInputError, ModelLoadError
from voice_diarizer.diarization_service import (
    DetectionResult,
    SpeakerDiarizationService,
    check_availability,
    main,
)
from voice_diarizer.diarization_test_utils import (
    BrokenModelProvider,
    ExplodingSink,
    FailingSaveStore,
    VoiceTableProvider,
    basis,
    tone,
)
from voice_diarizer.profile_store import JsonProfileStore
from voice_diarizer.speaker_segments import SpeakerSegment
from voice_diarizer.telemetry import RecordingTelemetrySink

ALICE, BOB = 0.3, 0.6
VOICES = {ALICE: basis(0), BOB: basis(1)}


def conversation(levels, speech=3.0, pause=1.0):
    """Turns of constant 'speech' separated by silence."""
    parts = [np.zeros(int(pause * 16000), dtype=np.float32)]
    for level in levels:
        parts.append(tone(level, speech))
        parts.append(np.zeros(int(pause * 16000), dtype=np.float32))
    return np.concatenate(parts)


class TestBatchDetection(unittest.TestCase):

    def setUp(self):
        self.telemetry = RecordingTelemetrySink()
        self.service = SpeakerDiarizationService(provider=VoiceTableProvider(VOICES), telemetry=self.telemetry)

    def tearDown(self):
        self.service.close()

    def test_two_speaker_conversation(self):
        result = self.service.detect_speakers(conversation([ALICE, BOB, ALICE, BOB]))
        self.assertEqual(result.speaker_count, 2)
        labels = [s.speaker_id for s in result.segments]
        self.assertEqual(labels[0], labels[2])
        self.assertEqual(labels[1], labels[3])
        self.assertNotEqual(labels[0], labels[1])
        self.assertGreater(result.confidence, 0)
        self.assertEqual(sorted(result.profiles), sorted(set(labels)))
        self.assertIn("speaker_detection", self.telemetry.names())

        payload = json.loads(json.dumps(result.to_dict()))
        self.assertEqual(payload["speaker_count"], 2)
        self.assertEqual(len(payload["segments"]), 4)

    def test_silence_only_detects_nobody(self):
        result = self.service.detect_speakers(np.zeros(16000 * 3, dtype=np.float32))
        self.assertEqual(result.speaker_count, 0)
        self.assertEqual(result.segments, [])
        self.assertEqual(result.confidence, 0.0)

    def test_invalid_audio(self):
        with self.assertRaises(InvalidInputError):
            self.service.detect_speakers(np.array([], dtype=np.float32))
        with self.assertRaises(InvalidInputError):
            self.service.detect_speakers(np.array([0.1, np.nan, 0.2], dtype=np.float32))

    def test_deleted_profile_is_no_longer_matched(self):
        alice = self.service.enroll("Alice", tone(ALICE, 2.0))
        bob = self.service.enroll("Bob", tone(BOB, 2.0))
        self.assertTrue(self.service.delete_profile(alice.id))

        result = self.service.detect_speakers(conversation([ALICE, BOB, ALICE]))
        labels = [s.speaker_id for s in result.segments]
        self.assertNotIn(alice.id, labels)
        self.assertEqual(labels[1], bob.id)
        self.assertNotEqual(labels[0], bob.id)

    def test_enrolled_speaker_is_recognized(self):
        alice = self.service.enroll("Alice", tone(ALICE, 2.0))
        result = self.service.detect_speakers(conversation([ALICE, BOB]))
        self.assertEqual(result.segments[0].speaker_id, alice.id)
        self.assertEqual(result.profiles[alice.id].name, "Alice")


class TestSpeakerForTimeRange(unittest.TestCase):

    def test_most_overlap_wins(self):
        result = DetectionResult(
            segments=[
                SpeakerSegment(0, 0.0, 2.0, 0.9),
                SpeakerSegment(1, 2.0, 5.0, 0.9),
            ],
            speaker_count=2,
            confidence=0.9
        )
        speaker, fraction = result.speaker_for_time_range(1.5, 4.0)
        self.assertEqual(speaker, 1)
        self.assertAlmostEqual(fraction, 0.8)
        self.assertEqual(result.speaker_for_time_range(6.0, 7.0), (None, 0.0))


class TestFailureModes(unittest.TestCase):

    def test_model_load_failure_is_remembered(self):
        provider = BrokenModelProvider()
        telemetry = RecordingTelemetrySink()
        service = SpeakerDiarizationService(provider=provider, telemetry=telemetry)
        try:
            self.assertFalse(service.available)
            self.assertIn("model_load_failure", telemetry.names())
            for call in (
                lambda: service.detect_speakers(tone(ALICE, 2.0)),
                lambda: service.enroll("Alice", tone(ALICE, 2.0)),
                lambda: service.verify(tone(ALICE, 2.0), 0),
                service.start_realtime,
            ):
                with self.assertRaises(ModelLoadError):
                    call()
            self.assertEqual(provider.load_attempts, 1)
        finally:
            service.close()

    def test_failing_telemetry_sink_is_contained(self):
        service = SpeakerDiarizationService(provider=VoiceTableProvider(VOICES), telemetry=ExplodingSink())
        try:
            alice = service.enroll("Alice", tone(ALICE, 2.0))
            result = service.detect_speakers(conversation([ALICE, BOB]))
            self.assertEqual(result.segments[0].speaker_id, alice.id)
            service.start_realtime()
            self.assertEqual(service.stop(), ())
            self.assertGreaterEqual(service.telemetry.attempts, 4)
        finally:
            service.close()

    def test_persist_failure_surfaces(self):
        service = SpeakerDiarizationService(provider=VoiceTableProvider(VOICES), store=FailingSaveStore())
        try:
            with self.assertRaises(InferenceError) as ctx:
                service.detect_speakers(conversation([ALICE, BOB]))
            self.assertEqual(ctx.exception.details["stage"], "persist")
        finally:
            service.close()

    def test_profiles_survive_restart(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "profiles.json")
            first = SpeakerDiarizationService(provider=VoiceTableProvider(VOICES), store=JsonProfileStore(path))
            alice = first.enroll("Alice", tone(ALICE, 2.0))
            first.close()

            second = SpeakerDiarizationService(provider=VoiceTableProvider(VOICES), store=JsonProfileStore(path))
            try:
                self.assertTrue(second.verify(tone(ALICE, 2.0), alice.id).is_verified)
                self.assertEqual(second.profiles()[alice.id].name, "Alice")
            finally:
                second.close()


class TestRealtimeThroughService(unittest.TestCase):

    def test_live_session(self):
        service = SpeakerDiarizationService(provider=VoiceTableProvider(VOICES))
        try:
            alice = service.enroll("Alice", tone(ALICE, 2.0))
            service.start_realtime()
            for i in range(20):
                self.assertTrue(service.feed(tone(ALICE, 0.1), i * 100))
                service.tracker.wait_until_idle(5.0)
            live = service.live_segments
            self.assertEqual([s.speaker_id for s in live], [alice.id])
            final = service.stop()
            self.assertEqual(final, live)
            self.assertFalse(service.feed(tone(ALICE, 0.1), 2000))
        finally:
            service.close()


class TestCommandLine(unittest.TestCase):

    def run_cli(self, *argv):
        buffer = io.StringIO()
        exit_code = 0
        with mock.patch.object(sys, "argv", ["voice-diarizer", *argv]), redirect_stdout(buffer):
            try:
                main()
            except SystemExit as e:
                exit_code = e.code
        return exit_code, json.loads(buffer.getvalue().strip().splitlines()[-1])

    def test_list_and_delete_profiles(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "profiles.json")
            service = SpeakerDiarizationService(provider=VoiceTableProvider(VOICES), store=JsonProfileStore(path))
            alice = service.enroll("Alice", tone(ALICE, 2.0))
            service.close()

            code, payload = self.run_cli("--list-profiles", "--profiles", path)
            self.assertEqual(code, 0)
            self.assertEqual([p["name"] for p in payload["profiles"]], ["Alice"])

            code, payload = self.run_cli("--delete-profile", str(alice.id), "--profiles", path)
            self.assertEqual(payload, {"deleted": True})
            self.assertEqual(JsonProfileStore(path).load_all(), {})

    def test_unreadable_audio_reports_json_error(self):
        code, payload = self.run_cli("--audio", "/nonexistent/meeting.wav")
        self.assertEqual(code, 1)
        self.assertTrue(payload["error"])
        self.assertEqual(payload["error_code"], "INVALID_INPUT")


class TestAvailability(unittest.TestCase):

    def test_spectral_backend_is_available(self):
        result = check_availability("spectral")
        self.assertTrue(result["available"])
        self.assertIsNone(result["error"])

    def test_unknown_backend(self):
        result = check_availability("nonexistent")
        self.assertFalse(result["available"])
        self.assertEqual(result["error"], "INVALID_INPUT")


if __name__ == "__main__":
    unittest.main()
