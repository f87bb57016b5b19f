#!/usr/bin/env python3
"""
embedding_providers.py - Speaker embedding backends

An EmbeddingProvider maps a mono float32 buffer to a fixed-length vector. The
diarization pipeline treats the provider as a fallible black box:

    embed(buffer) -> np.ndarray     raises EmbeddingError for a bad buffer
                                    raises ModelLoadError if the model never loaded

Backends:
    - PyannoteEmbeddingProvider: pyannote/embedding neural model (optional extra)
    - SpectralEmbeddingProvider: deterministic log-mel statistics, no model download

Model loading:
    The pyannote model is looked up in BUNDLED_MODELS_PATH first (packaged apps),
    then the HuggingFace cache, then downloaded using HF_TOKEN. A load failure is
    remembered: every later call raises the same ModelLoadError instead of retrying.
"""

import logging
import os
import threading
import warnings
from typing import Optional

import librosa
import numpy as np

from .diarization_errors import EmbeddingError, ModelLoadError

logger = logging.getLogger(__name__)

# Suppress warnings for cleaner output
warnings.filterwarnings("ignore", category=UserWarning, module="pyannote")
warnings.filterwarnings(
    "ignore",
    message=".*list_audio_backends.*",
    category=UserWarning
)

PYANNOTE_AVAILABLE = False
PYANNOTE_IMPORT_ERROR = None

try:
    from pyannote.audio import Model
    import torch
    PYANNOTE_AVAILABLE = True
except ImportError as e:
    PYANNOTE_IMPORT_ERROR = str(e)


def _validate_buffer(audio: np.ndarray, min_samples: int = 1) -> np.ndarray:
    """Return a 1-D float32 copy of audio or raise EmbeddingError."""
    try:
        samples = np.asarray(audio, dtype=np.float32)
    except (TypeError, ValueError) as e:
        raise EmbeddingError(f"Audio buffer is not numeric: {e}")
    if samples.ndim != 1:
        samples = samples.ravel()
    if len(samples) < min_samples:
        raise EmbeddingError(
            f"Audio buffer too short for embedding: {len(samples)} samples, need {min_samples}",
            details={"samples": int(len(samples)), "minimum": int(min_samples)}
        )
    if not np.all(np.isfinite(samples)):
        raise EmbeddingError("Audio buffer contains NaN or Infinity")
    return samples


# ============================================================================
# Provider interface
# ============================================================================

class EmbeddingProvider:
    """Base class for speaker embedding backends."""

    name = "base"
    sample_rate = 16000

    def load(self) -> None:
        """Load model resources. Raises ModelLoadError on failure."""

    @property
    def embedding_dim(self) -> int:
        raise NotImplementedError

    def embed(self, audio: np.ndarray) -> np.ndarray:
        raise NotImplementedError


# ============================================================================
# Spectral (model-free) provider
# ============================================================================

class SpectralEmbeddingProvider(EmbeddingProvider):
    """
    Deterministic embedding from log-mel statistics.

    librosa computes an 80-band mel spectrogram (512-point Hann STFT, hop 256,
    0-8000 Hz, no centering), converted to dB; the embedding is the per-band
    mean and standard deviation over frames, giving a 160-dim vector.
    """

    name = "spectral"

    def __init__(
        self,
        sample_rate: int = 16000,
        n_fft: int = 512,
        hop_length: int = 256,
        n_mels: int = 80,
        f_min: float = 0.0,
        f_max: float = 8000.0
    ):
        self.sample_rate = sample_rate
        self.n_fft = n_fft
        self.hop_length = hop_length
        self.n_mels = n_mels
        self.f_min = f_min
        self.f_max = min(f_max, sample_rate / 2.0)

    @property
    def embedding_dim(self) -> int:
        return self.n_mels * 2

    def log_mel(self, audio: np.ndarray) -> np.ndarray:
        """Log-mel spectrogram in dB, shape (frames, n_mels)."""
        samples = _validate_buffer(audio, self.n_fft)
        mel = librosa.feature.melspectrogram(
            y=samples,
            sr=self.sample_rate,
            n_fft=self.n_fft,
            hop_length=self.hop_length,
            window="hann",
            center=False,
            n_mels=self.n_mels,
            fmin=self.f_min,
            fmax=self.f_max,
            power=2.0,
        )
        return librosa.power_to_db(mel, ref=1.0, amin=1e-10, top_db=None).T

    def embed(self, audio: np.ndarray) -> np.ndarray:
        features = self.log_mel(audio)
        embedding = np.concatenate([features.mean(axis=0), features.std(axis=0)])
        return embedding.astype(np.float32)


# ============================================================================
# pyannote provider
# ============================================================================

class PyannoteEmbeddingProvider(EmbeddingProvider):
    """
    pyannote.audio speaker embedding model.

    The model is loaded lazily on first use (or eagerly through load()).
    """

    name = "pyannote"
    MODEL_NAME = "pyannote/embedding"
    MIN_SECONDS = 0.5

    def __init__(self, sample_rate: int = 16000, device: Optional[str] = None, model_name: Optional[str] = None):
        self.sample_rate = sample_rate
        self.model_name = model_name or self.MODEL_NAME
        self.device = device
        self._model = None
        self._load_error: Optional[ModelLoadError] = None
        self._load_lock = threading.Lock()
        self._embedding_dim = 512

    @property
    def embedding_dim(self) -> int:
        return self._embedding_dim

    def _get_bundled_model_path(self) -> Optional[str]:
        """
        Check for a bundled or cached copy of the model.

        Packaged apps set BUNDLED_MODELS_PATH to a HuggingFace-style cache
        directory; otherwise the standard HF cache is consulted.
        """
        model_dir_name = f"models--{self.model_name.replace('/', '--')}"
        roots = []
        bundled_path = os.environ.get("BUNDLED_MODELS_PATH")
        if bundled_path:
            roots.append(bundled_path)
        hf_cache = os.environ.get("HF_HOME", os.path.join(os.path.expanduser("~"), ".cache", "huggingface"))
        roots.append(os.path.join(hf_cache, "hub"))

        for root in roots:
            snapshots_path = os.path.join(root, model_dir_name, "snapshots")
            if os.path.isdir(snapshots_path):
                snapshots = sorted(os.listdir(snapshots_path))
                if snapshots:
                    return os.path.join(snapshots_path, snapshots[0])
        return None

    def load(self) -> None:
        with self._load_lock:
            if self._model is not None:
                return
            if self._load_error is not None:
                raise self._load_error

            if not PYANNOTE_AVAILABLE:
                self._load_error = ModelLoadError(
                    self.model_name,
                    f"pyannote.audio is not installed: {PYANNOTE_IMPORT_ERROR}"
                )
                raise self._load_error

            try:
                hf_token = os.environ.get("HF_TOKEN")
                source = self._get_bundled_model_path() or self.model_name
                logger.info("[Embedding] Loading %s from %s", self.model_name, source)
                model = Model.from_pretrained(source, use_auth_token=hf_token)
                if model is None:
                    raise RuntimeError("Model.from_pretrained returned None (missing HF_TOKEN?)")
                device = self.device or ("cuda" if torch.cuda.is_available() else "cpu")
                model = model.to(torch.device(device))
                model.eval()
                self.device = device
                self._model = model
                logger.info("[Embedding] Loaded pyannote embedding model on %s", device)
            except Exception as e:
                logger.error("[Embedding] Failed to load pyannote model: %s", e)
                self._load_error = ModelLoadError(self.model_name, str(e))
                raise self._load_error

    def embed(self, audio: np.ndarray) -> np.ndarray:
        self.load()
        samples = _validate_buffer(audio)

        # Ensure minimum audio length
        min_samples = int(self.MIN_SECONDS * self.sample_rate)
        if len(samples) < min_samples:
            samples = np.pad(samples, (0, min_samples - len(samples)))

        try:
            # Shape [batch, channel, samples]
            audio_tensor = torch.from_numpy(samples[np.newaxis, np.newaxis, :]).float()
            audio_tensor = audio_tensor.to(self.device)
            with torch.no_grad():
                embedding = self._model(audio_tensor)
            vector = embedding.detach().cpu().numpy().astype(np.float32).flatten()
        except Exception as e:
            raise EmbeddingError(f"Embedding extraction failed: {e}")

        if not np.all(np.isfinite(vector)):
            raise EmbeddingError("Embedding model produced non-finite values")
        self._embedding_dim = len(vector)
        return vector


def create_provider(backend: str = "spectral", sample_rate: int = 16000, device: Optional[str] = None) -> EmbeddingProvider:
    """Construct a provider by backend name ('spectral' or 'pyannote')."""
    if backend == "spectral":
        return SpectralEmbeddingProvider(sample_rate=sample_rate)
    if backend == "pyannote":
        return PyannoteEmbeddingProvider(sample_rate=sample_rate, device=device)
    raise ValueError(f"Unknown embedding backend: {backend}")
