#!/usr/bin/env python3
"""
embedding_cache.py - LRU cache of segment embeddings

Embedding extraction is the most expensive step of diarization. Segments with
byte-identical audio always produce the same embedding, so embeddings are
cached under a hash of the segment samples. Entries are evicted purely by
recency once capacity is reached; a hit is valid for as long as it lives.

Entries can be tagged with the speaker id they were attributed to so that
deleting a voice profile also drops that speaker's cached embeddings.
"""

import hashlib
import threading
from collections import OrderedDict
from typing import Dict, Optional, Tuple

import numpy as np


def audio_cache_key(audio: np.ndarray, sample_rate: int = 16000) -> str:
    """Content hash of a float32 audio buffer."""
    samples = np.ascontiguousarray(np.asarray(audio, dtype=np.float32).ravel())
    digest = hashlib.sha1(samples.tobytes())
    digest.update(str(sample_rate).encode("ascii"))
    return digest.hexdigest()


class EmbeddingCache:
    """Thread-safe LRU map from audio hash to embedding."""

    def __init__(self, capacity: int = 200):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self._entries: "OrderedDict[str, Tuple[np.ndarray, Optional[int]]]" = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._entries

    def get(self, key: str) -> Optional[np.ndarray]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return None
            self._entries.move_to_end(key)
            self.hits += 1
            return entry[0].copy()

    def put(self, key: str, embedding: np.ndarray) -> np.ndarray:
        """
        Insert if absent. Returns the cached value, which is the existing one
        when another writer got there first.
        """
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None:
                self._entries.move_to_end(key)
                return entry[0].copy()
            stored = np.asarray(embedding, dtype=np.float32).ravel().copy()
            self._entries[key] = (stored, None)
            while len(self._entries) > self.capacity:
                self._entries.popitem(last=False)
            return stored.copy()

    def tag(self, key: str, speaker_id: int) -> None:
        """Record which speaker an entry was attributed to."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None:
                self._entries[key] = (entry[0], speaker_id)

    def purge_speaker(self, speaker_id: int) -> int:
        """Drop all entries tagged with speaker_id; returns how many were removed."""
        with self._lock:
            doomed = [key for key, (_, tagged) in self._entries.items() if tagged == speaker_id]
            for key in doomed:
                del self._entries[key]
            return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                "size": len(self._entries),
                "capacity": self.capacity,
                "hits": self.hits,
                "misses": self.misses,
            }
