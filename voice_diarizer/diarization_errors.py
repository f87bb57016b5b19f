#!/usr/bin/env python3
"""
diarization_errors.py - Error taxonomy for the speaker diarization subsystem

Every failure that crosses a public boundary of the subsystem is raised as a
DiarizationError subclass. Each error carries a stable error_code (used by the
CLI JSON output and by telemetry), a human readable message, a details dict,
and the user-facing message the host app should display.

Error codes:
    INVALID_INPUT        malformed audio, ids or configuration
    MODEL_LOAD_FAILURE   the embedding model could not be loaded
    INFERENCE_FAILURE    provider crash or profile persistence failure
    EMBEDDING_FAILURE    a single embedding extraction failed
    UNKNOWN_SPEAKER      a speaker id that is not in the profile store

Usage:
    from voice_diarizer.diarization_errors import DiarizationError, UnknownSpeakerError

    try:
        service.verify(sample, speaker_id=7)
    except UnknownSpeakerError as e:
        print(e.to_dict())
"""

from typing import Any, Dict, Optional


# User-visible surfaces the host app maps errors onto
USER_MESSAGE_DETECTION = "Could not detect speakers"
USER_MESSAGE_TRACKING = "Speaker tracking unavailable"
USER_MESSAGE_UNRECOGNIZED = "Speaker not recognized"


class DiarizationError(Exception):
    """
    Base class for all diarization failures.

    Callers can catch this single type at the service boundary and use
    error_code to decide how to react.
    """
    user_message = USER_MESSAGE_DETECTION

    def __init__(self, message: str, error_code: str = "DIARIZATION_ERROR", details: Optional[Dict] = None):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": True,
            "error_code": self.error_code,
            "message": self.message,
            "user_message": self.user_message,
            "details": self.details
        }


class InvalidInputError(DiarizationError):
    """Raised when audio, ids or configuration values are malformed."""
    def __init__(self, message: str, details: Optional[Dict] = None):
        super().__init__(
            message=message,
            error_code="INVALID_INPUT",
            details=details
        )


class ModelLoadError(DiarizationError):
    """Raised when the embedding model cannot be loaded."""
    user_message = USER_MESSAGE_TRACKING

    def __init__(self, model_name: str, reason: Optional[str] = None):
        super().__init__(
            message=f"Failed to load embedding model '{model_name}'. Speaker diarization cannot be performed.",
            error_code="MODEL_LOAD_FAILURE",
            details={"model": model_name, "reason": reason or "Unknown error during model loading"}
        )


class InferenceError(DiarizationError):
    """Raised when a run fails outside per-segment recovery, including persistence."""
    def __init__(self, message: str, stage: str = "inference", details: Optional[Dict] = None):
        merged = {"stage": stage}
        merged.update(details or {})
        super().__init__(
            message=message,
            error_code="INFERENCE_FAILURE",
            details=merged
        )


class EmbeddingError(DiarizationError):
    """Raised when a single embedding extraction fails."""
    def __init__(self, message: str, details: Optional[Dict] = None):
        super().__init__(
            message=message,
            error_code="EMBEDDING_FAILURE",
            details=details
        )


class UnknownSpeakerError(DiarizationError):
    """Raised when a speaker id is not present in the profile store."""
    user_message = USER_MESSAGE_UNRECOGNIZED

    def __init__(self, speaker_id: int):
        self.speaker_id = speaker_id
        super().__init__(
            message=f"No voice profile with id {speaker_id}",
            error_code="UNKNOWN_SPEAKER",
            details={"speaker_id": speaker_id}
        )
