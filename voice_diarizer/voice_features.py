#!/usr/bin/env python3
"""
voice_features.py - Similarity scoring and voice characteristics

Pure numpy helpers shared by batch clustering, real-time tracking and
verification:

- cosine_similarity(): symmetric vector similarity, 0.0 for zero vectors
- extract_voice_characteristics(): 21 named [0, 1] scalars derived
  deterministically from an embedding (7 groups x 3 features)
- characteristic_similarity(): weighted agreement between two characteristic maps
- profile_similarity(): 0.7 x embedding similarity + 0.3 x characteristic similarity
- blend_characteristics(): exponentially weighted update of a characteristic map

The characteristic groups are named after the voice properties they are meant
to approximate (pitch, energy, tempo, ...). They are computed from contiguous
slices of the embedding, not from the audio, so they carry no learned weights.
"""

from typing import Dict, Iterable, List, Optional, Sequence

import numpy as np


# ============================================================================
# Characteristic layout
# ============================================================================

CHARACTERISTIC_GROUPS = (
    ("pitch", ("pitch_mean", "pitch_variation", "pitch_range")),
    ("energy", ("energy_mean", "energy_variation", "energy_peak")),
    ("tempo", ("speaking_rate", "rhythm_regularity", "pause_ratio")),
    ("timbre", ("brightness", "warmth", "roughness")),
    ("spectral", ("spectral_centroid", "spectral_flatness", "spectral_rolloff")),
    ("voice", ("jitter", "shimmer", "harmonic_ratio")),
    ("prosody", ("intonation", "stress", "phrasing")),
)

GROUP_WEIGHTS = {
    "pitch": 0.15,
    "energy": 0.15,
    "tempo": 0.10,
    "timbre": 0.15,
    "spectral": 0.15,
    "voice": 0.15,
    "prosody": 0.15,
}

KEY_TO_GROUP = {key: group for group, keys in CHARACTERISTIC_GROUPS for key in keys}

CHARACTERISTIC_KEYS = tuple(KEY_TO_GROUP)


def _sigmoid(x: float) -> float:
    return float(1.0 / (1.0 + np.exp(-x)))


def _clip01(x: float) -> float:
    return float(min(1.0, max(0.0, x)))


# ============================================================================
# Vector similarity
# ============================================================================

def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    """Compute cosine similarity between two vectors."""
    a = np.asarray(a, dtype=np.float64).ravel()
    b = np.asarray(b, dtype=np.float64).ravel()
    if a.shape != b.shape:
        return 0.0
    norm_a = np.linalg.norm(a)
    norm_b = np.linalg.norm(b)
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return float(np.dot(a, b) / (norm_a * norm_b))


def mean_cosine_similarity(embedding: np.ndarray, others: Iterable[np.ndarray]) -> float:
    """Average cosine similarity of embedding against each vector in others."""
    scores = [cosine_similarity(embedding, other) for other in others]
    if not scores:
        return 0.0
    return float(np.mean(scores))


# ============================================================================
# Voice characteristics
# ============================================================================

def _group_features(group: str, values: np.ndarray) -> List[float]:
    """Three [0, 1] scalars for one embedding slice."""
    mean = float(np.mean(values))
    std = float(np.std(values))
    spread = float(np.max(values) - np.min(values))
    abs_mean = float(np.mean(np.abs(values)))

    if group == "pitch":
        return [_sigmoid(mean), _clip01(std), _sigmoid(spread - 1.0)]
    if group == "energy":
        peak = float(np.max(np.abs(values)))
        return [_clip01(abs_mean), _clip01(std), _sigmoid(peak - 1.0)]
    if group == "tempo":
        crossings = np.count_nonzero(np.diff(np.signbit(values).astype(np.int8))) / max(len(values) - 1, 1)
        pauses = float(np.mean(np.abs(values) < 0.1 * (abs_mean + 1e-12)))
        return [_clip01(crossings), _clip01(1.0 - std), _clip01(pauses)]
    if group == "timbre":
        half = max(len(values) // 2, 1)
        upper = float(np.mean(values[half:])) if len(values) > half else mean
        lower = float(np.mean(values[:half]))
        roughness = float(np.mean(np.abs(np.diff(values)))) if len(values) > 1 else 0.0
        return [_sigmoid(upper), _sigmoid(lower), _clip01(roughness)]
    if group == "spectral":
        weights = np.abs(values)
        total = float(np.sum(weights))
        if total > 0:
            centroid = float(np.sum(np.arange(len(values)) * weights) / total) / max(len(values) - 1, 1)
            cumulative = np.cumsum(weights) / total
            rolloff = float(np.searchsorted(cumulative, 0.85)) / max(len(values) - 1, 1)
            geometric = float(np.exp(np.mean(np.log(weights + 1e-12))))
            flatness = geometric / (total / len(values))
        else:
            centroid, rolloff, flatness = 0.0, 0.0, 0.0
        return [_clip01(centroid), _clip01(flatness), _clip01(rolloff)]
    if group == "voice":
        diffs = np.abs(np.diff(values)) if len(values) > 1 else np.zeros(1)
        jitter = float(np.mean(diffs)) / (abs_mean + 1e-12)
        shimmer = float(np.std(np.abs(values))) / (abs_mean + 1e-12)
        positive = float(np.sum(values[values > 0]))
        harmonic = positive / (float(np.sum(np.abs(values))) + 1e-12)
        return [_sigmoid(jitter - 1.0), _sigmoid(shimmer - 1.0), _clip01(harmonic)]
    # prosody
    slope = float(values[-1] - values[0]) if len(values) > 1 else 0.0
    stress = float(np.max(np.abs(values))) / (abs_mean + 1e-12)
    phrasing = float(np.mean(values > mean))
    return [_sigmoid(slope), _sigmoid(stress - 2.0), _clip01(phrasing)]


def extract_voice_characteristics(embedding: np.ndarray) -> Dict[str, float]:
    """
    Derive 21 named voice characteristics from an embedding.

    The embedding is split into 7 equal contiguous groups (any trailing
    remainder is ignored) and each group yields three scalars in [0, 1].
    Embeddings shorter than 7 values produce an empty map.

    Args:
        embedding: 1-D embedding vector

    Returns:
        Dict mapping characteristic name to value in [0, 1]
    """
    values = np.asarray(embedding, dtype=np.float64).ravel()
    group_size = len(values) // len(CHARACTERISTIC_GROUPS)
    if group_size == 0 or not np.all(np.isfinite(values)):
        return {}

    characteristics: Dict[str, float] = {}
    for index, (group, keys) in enumerate(CHARACTERISTIC_GROUPS):
        chunk = values[index * group_size:(index + 1) * group_size]
        for key, value in zip(keys, _group_features(group, chunk)):
            characteristics[key] = value
    return characteristics


def characteristic_similarity(a: Dict[str, float], b: Dict[str, float]) -> float:
    """
    Weighted agreement of two characteristic maps over their shared keys.

    Returns 0.0 when the maps share no keys.
    """
    shared = [key for key in a if key in b]
    if not shared:
        return 0.0

    weighted = 0.0
    total_weight = 0.0
    for key in shared:
        weight = GROUP_WEIGHTS.get(KEY_TO_GROUP.get(key, ""), 0.1)
        agreement = _clip01(1.0 - abs(float(a[key]) - float(b[key])))
        weighted += weight * agreement
        total_weight += weight
    if total_weight == 0:
        return 0.0
    return weighted / total_weight


def blend_characteristics(
    current: Dict[str, float],
    observed: Dict[str, float],
    learning_rate: float
) -> Dict[str, float]:
    """EWMA update: old * (1 - rate) + new * rate; new keys are taken as-is."""
    blended = dict(current)
    for key, value in observed.items():
        if key in blended:
            blended[key] = blended[key] * (1.0 - learning_rate) + value * learning_rate
        else:
            blended[key] = value
    return blended


def profile_similarity(
    embedding: np.ndarray,
    characteristics: Dict[str, float],
    recent_embeddings: Sequence[np.ndarray],
    profile_characteristics: Dict[str, float],
    embedding_weight: float = 0.7,
    characteristic_weight: float = 0.3
) -> float:
    """
    Score an observation against a stored voice profile.

    Args:
        embedding: Observed embedding
        characteristics: Characteristics of the observed embedding
        recent_embeddings: The profile's most recent embeddings
        profile_characteristics: The profile's characteristic map
        embedding_weight: Weight of the mean cosine similarity
        characteristic_weight: Weight of the characteristic similarity

    Returns:
        Blended similarity score
    """
    embedding_score = mean_cosine_similarity(embedding, recent_embeddings)
    char_score = characteristic_similarity(characteristics, profile_characteristics)
    return embedding_weight * embedding_score + characteristic_weight * char_score


def energy_ratio(a: Optional[np.ndarray], b: Optional[np.ndarray]) -> float:
    """min/max of the two vectors' summed squares; 0.0 when both are silent."""
    if a is None or b is None:
        return 0.0
    energy_a = float(np.sum(np.square(np.asarray(a, dtype=np.float64))))
    energy_b = float(np.sum(np.square(np.asarray(b, dtype=np.float64))))
    high = max(energy_a, energy_b)
    if high == 0:
        return 0.0
    return min(energy_a, energy_b) / high
