#!/usr/bin/env python3
"""
json_serialization_utils.py - JSON helpers for diarization output and profile storage

Diarization results and voice profiles carry numpy scalars, numpy arrays and
(when the pyannote backend is used) PyTorch tensors. This module converts them
to JSON-native types and provides the compact embedding encoding used by the
profile store.

Key Functions:
- to_json_serializable(): Recursively convert numpy/torch values to native types
- encode_embedding() / decode_embedding(): base64 of little-endian float32 bytes
- safe_output_json(): Print one JSON line to stdout (CLI output)

Usage:
    from voice_diarizer.json_serialization_utils import encode_embedding, decode_embedding

    text = encode_embedding(np.array([0.1, 0.2], dtype=np.float32))
    vector = decode_embedding(text)
"""

import base64
import json
import logging
import math
import sys
import warnings
from typing import Any, Dict, Union

import numpy as np

# Attempt to import PyTorch (optional)
TORCH_AVAILABLE = False
try:
    import torch
    TORCH_AVAILABLE = True
except ImportError:
    pass

logger = logging.getLogger(__name__)

EMBEDDING_DTYPE = np.dtype("<f4")


def _handle_special_float(value: float, warn: bool = True) -> Union[float, None]:
    """
    Handle special float values (NaN, Infinity) for JSON serialization.

    Returns None for NaN and +/- sys.float_info.max for infinities.
    """
    if math.isnan(value):
        if warn:
            warnings.warn(
                "NaN value encountered during JSON serialization, converting to null",
                RuntimeWarning,
                stacklevel=3
            )
        return None
    elif math.isinf(value):
        if warn:
            warnings.warn(
                "Infinity encountered during JSON serialization, converting to max float value",
                RuntimeWarning,
                stacklevel=3
            )
        return sys.float_info.max if value > 0 else -sys.float_info.max
    return value


def to_json_serializable(obj: Any, warn_special_floats: bool = True) -> Any:
    """
    Recursively convert numpy arrays, PyTorch tensors, and numpy scalars
    to JSON-serializable Python native types.

    Examples:
        >>> to_json_serializable(np.float32(0.5))
        0.5

        >>> to_json_serializable({"score": np.array([1, 2, 3])})
        {'score': [1, 2, 3]}
    """
    if obj is None:
        return None

    # Must check before numpy since tensors have .numpy()
    if TORCH_AVAILABLE and isinstance(obj, torch.Tensor):
        if obj.dim() == 0:
            return _handle_special_float(float(obj.cpu().item()), warn_special_floats)
        return to_json_serializable(obj.detach().cpu().numpy(), warn_special_floats)

    if isinstance(obj, np.bool_):
        return bool(obj)

    if isinstance(obj, np.floating):
        return _handle_special_float(float(obj), warn_special_floats)

    if isinstance(obj, np.integer):
        return int(obj)

    if isinstance(obj, np.ndarray):
        return [to_json_serializable(item, warn_special_floats) for item in obj.tolist()]

    if isinstance(obj, float):
        return _handle_special_float(obj, warn_special_floats)

    if isinstance(obj, (str, int, bool)):
        return obj

    if isinstance(obj, dict):
        return {
            str(key): to_json_serializable(value, warn_special_floats)
            for key, value in obj.items()
        }

    if isinstance(obj, (list, tuple, set)):
        return [to_json_serializable(item, warn_special_floats) for item in obj]

    if hasattr(obj, "to_dict"):
        return to_json_serializable(obj.to_dict(), warn_special_floats)

    return str(obj)


# ============================================================================
# Embedding encoding
# ============================================================================

def encode_embedding(embedding: np.ndarray) -> str:
    """Encode an embedding as base64 of little-endian float32 bytes."""
    array = np.asarray(embedding, dtype=EMBEDDING_DTYPE).ravel()
    return base64.b64encode(array.tobytes()).decode("ascii")


def decode_embedding(encoded: str) -> np.ndarray:
    """Inverse of encode_embedding(); returns a float32 vector."""
    raw = base64.b64decode(encoded.encode("ascii"), validate=True)
    if len(raw) % EMBEDDING_DTYPE.itemsize:
        raise ValueError(f"Encoded embedding has {len(raw)} bytes, not a multiple of 4")
    return np.frombuffer(raw, dtype=EMBEDDING_DTYPE).astype(np.float32)


# ============================================================================
# Output
# ============================================================================

def safe_output_json(obj: Dict[str, Any], warn_special_floats: bool = False) -> None:
    """
    Output a JSON object as a single line to stdout.

    numpy/torch values are converted first; if serialization still fails the
    failure is logged and a minimal error marker is printed instead.
    """
    try:
        converted = to_json_serializable(obj, warn_special_floats)
        print(json.dumps(converted, ensure_ascii=False), flush=True)
    except (TypeError, ValueError) as e:
        logger.error("[JSON] Serialization failed: %s", e)
        error_obj = {
            "error": True,
            "error_code": "SERIALIZATION_ERROR",
            "message": str(e)
        }
        print(json.dumps(error_obj, ensure_ascii=False), flush=True)
