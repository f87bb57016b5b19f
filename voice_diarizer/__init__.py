"""
voice_diarizer - On-device speaker diarization and voice profiles

This package determines who is speaking in recorded or live audio, and keeps
persistent voice profiles so speakers are recognized across sessions.

Components:
    - diarization_service: Public facade and CLI
    - batch_clustering_engine: Whole-recording speaker clustering
    - realtime_tracker: Incremental live speaker tracking
    - speaker_verification: Enrollment, verification and deletion
    - transition_detector: Speaker hand-over / overlap flagging
    - profile_store: Profile persistence and the shared registry
    - embedding_providers: pyannote and spectral embedding backends

Usage:
    from voice_diarizer import get_service
    SpeakerDiarizationService = get_service()
    service = SpeakerDiarizationService()
"""

__version__ = "1.0.0"


# Lazy imports to avoid loading heavy dependencies until needed
def get_service():
    """Get the SpeakerDiarizationService class."""
    from .diarization_service import SpeakerDiarizationService
    return SpeakerDiarizationService


def get_config():
    """Get the DiarizationConfig class."""
    from .diarization_config import DiarizationConfig
    return DiarizationConfig


def get_json_profile_store():
    """Get the JsonProfileStore class."""
    from .profile_store import JsonProfileStore
    return JsonProfileStore
