#!/usr/bin/env python3
"""
profile_store.py - Voice profile persistence and the shared profile registry

Storage backends implement a two-call interface:
    load_all(bounds=None) -> Dict[int, SpeakerProfile]
    save_all(profiles) -> None

Backends:
    - InMemoryProfileStore: process-local, used by tests and ephemeral sessions
    - JsonProfileStore: one JSON document on disk, written atomically

ProfileRegistry owns the live profile map shared by batch clustering, the
real-time tracker and the verification API. Mutations of a single profile are
serialized by a per-speaker lock; whole-store writes are serialized by a save
lock.

Usage:
    registry = ProfileRegistry(JsonProfileStore("profiles.json"), ProfileConfig(max_embeddings=30))
    registry.load()

    with registry.locked(3):
        ...

    registry.persist()
"""

import json
import logging
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, Union

from .diarization_config import ProfileConfig
from .diarization_errors import InferenceError, InvalidInputError, UnknownSpeakerError
from .speaker_profiles import SpeakerProfile

logger = logging.getLogger(__name__)


# ============================================================================
# Storage backends
# ============================================================================

class ProfileStore:
    """Persistence interface for voice profiles."""

    def load_all(self, bounds: Optional[ProfileConfig] = None) -> Dict[int, SpeakerProfile]:
        """Read every stored profile; bounds are passed to SpeakerProfile.from_dict."""
        raise NotImplementedError

    def save_all(self, profiles: Dict[int, SpeakerProfile]) -> None:
        raise NotImplementedError


class InMemoryProfileStore(ProfileStore):
    """Keeps serialized profiles in memory so reads never alias live objects."""

    def __init__(self, profiles: Optional[Dict[int, SpeakerProfile]] = None):
        self._data: Dict[int, dict] = {}
        self.save_count = 0
        if profiles:
            self.save_all(profiles)
            self.save_count = 0

    def load_all(self, bounds: Optional[ProfileConfig] = None) -> Dict[int, SpeakerProfile]:
        return {pid: SpeakerProfile.from_dict(data, bounds) for pid, data in self._data.items()}

    def save_all(self, profiles: Dict[int, SpeakerProfile]) -> None:
        self._data = {pid: profile.to_dict() for pid, profile in profiles.items()}
        self.save_count += 1


class JsonProfileStore(ProfileStore):
    """
    Stores all profiles in a single JSON document.

    Layout:
        {"version": 1, "profiles": {"<id>": {...profile dict...}}}
    """

    FORMAT_VERSION = 1

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def load_all(self, bounds: Optional[ProfileConfig] = None) -> Dict[int, SpeakerProfile]:
        if not self.path.exists():
            return {}
        with self.path.open("r", encoding="utf-8") as f:
            document = json.load(f)
        profiles: Dict[int, SpeakerProfile] = {}
        for key, data in document.get("profiles", {}).items():
            profile = SpeakerProfile.from_dict(data, bounds)
            if profile.id != int(key):
                raise ValueError(f"Profile key {key} does not match profile id {profile.id}")
            profiles[profile.id] = profile
        return profiles

    def save_all(self, profiles: Dict[int, SpeakerProfile]) -> None:
        document = {
            "version": self.FORMAT_VERSION,
            "profiles": {str(pid): profile.to_dict() for pid, profile in sorted(profiles.items())},
        }
        if self.path.parent and not self.path.parent.exists():
            self.path.parent.mkdir(parents=True, exist_ok=True)
        # Write to .tmp then replace so a crash never leaves a torn file
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        with tmp.open("w", encoding="utf-8") as f:
            json.dump(document, f, ensure_ascii=False, indent=2)
        tmp.replace(self.path)


# ============================================================================
# Registry
# ============================================================================

class ProfileRegistry:
    """
    Thread-safe owner of the live profile map.

    Readers get deep copies; writers mutate through update()/commit_matches()
    under the profile's lock. Lock order is always per-speaker lock first,
    then the map lock.
    """

    def __init__(self, store: Optional[ProfileStore] = None, config: Optional[ProfileConfig] = None):
        self.store = store if store is not None else InMemoryProfileStore()
        self.config = config or ProfileConfig()
        self.max_embeddings = self.config.max_embeddings
        self._profiles: Dict[int, SpeakerProfile] = {}
        self._map_lock = threading.Lock()
        self._save_lock = threading.Lock()
        self._speaker_locks: Dict[int, threading.RLock] = {}
        self._next_id = 0

    # ------------------------------------------------------------------
    # Loading / persistence
    # ------------------------------------------------------------------

    def load(self) -> int:
        """Replace the in-memory map with the store's contents."""
        try:
            loaded = self.store.load_all(self.config)
        except (OSError, ValueError, KeyError) as e:
            raise InferenceError(f"Failed to load voice profiles: {e}", stage="load")
        with self._map_lock:
            self._profiles = dict(loaded)
            self._next_id = max(self._profiles, default=-1) + 1
        logger.info("[ProfileRegistry] Loaded %d voice profiles", len(loaded))
        return len(loaded)

    def persist(self) -> None:
        """Write the whole map to the store."""
        with self._save_lock:
            profiles = self.snapshot()
            try:
                self.store.save_all(profiles)
            except (OSError, TypeError, ValueError) as e:
                logger.error("[ProfileRegistry] Failed to persist profiles: %s", e)
                raise InferenceError(f"Failed to persist voice profiles: {e}", stage="persist")
        logger.debug("[ProfileRegistry] Persisted %d profiles", len(profiles))

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------

    def _lock_for(self, speaker_id: int) -> threading.RLock:
        with self._map_lock:
            lock = self._speaker_locks.get(speaker_id)
            if lock is None:
                lock = threading.RLock()
                self._speaker_locks[speaker_id] = lock
            return lock

    @contextmanager
    def locked(self, speaker_id: int) -> Iterator[None]:
        """Serialize writers of one speaker id."""
        lock = self._lock_for(speaker_id)
        with lock:
            yield

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def ids(self) -> List[int]:
        with self._map_lock:
            return sorted(self._profiles)

    def __len__(self) -> int:
        with self._map_lock:
            return len(self._profiles)

    def __contains__(self, speaker_id: int) -> bool:
        with self._map_lock:
            return speaker_id in self._profiles

    def get(self, speaker_id: int) -> Optional[SpeakerProfile]:
        with self.locked(speaker_id):
            with self._map_lock:
                profile = self._profiles.get(speaker_id)
            return profile.copy() if profile is not None else None

    def snapshot(self) -> Dict[int, SpeakerProfile]:
        """Deep copies of every profile, each taken under its own lock."""
        result: Dict[int, SpeakerProfile] = {}
        for speaker_id in self.ids():
            profile = self.get(speaker_id)
            if profile is not None:
                result[speaker_id] = profile
        return result

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def allocate_id(self) -> int:
        """Reserve the next id: max(existing) + 1, or 0 for an empty store."""
        with self._map_lock:
            speaker_id = max(self._next_id, max(self._profiles, default=-1) + 1)
            self._next_id = speaker_id + 1
            return speaker_id

    def new_profile(self, speaker_id: int) -> SpeakerProfile:
        """Blank profile carrying the configured default threshold (not inserted)."""
        cfg = self.config
        profile = SpeakerProfile(id=speaker_id)
        profile.set_threshold(cfg.default_threshold, cfg.min_threshold, cfg.max_threshold)
        return profile

    def add(self, profile: SpeakerProfile) -> SpeakerProfile:
        """Insert a new profile; its id must not be in use."""
        with self.locked(profile.id):
            with self._map_lock:
                if profile.id in self._profiles:
                    raise InvalidInputError(f"Profile id {profile.id} already exists")
                self._profiles[profile.id] = profile.copy()
                self._next_id = max(self._next_id, profile.id + 1)
        return profile.copy()

    def update(self, speaker_id: int, mutate: Callable[[SpeakerProfile], None]) -> SpeakerProfile:
        """
        Apply mutate() to the live profile under its lock.

        Raises:
            UnknownSpeakerError: if the id is not registered
        """
        with self.locked(speaker_id):
            with self._map_lock:
                profile = self._profiles.get(speaker_id)
            if profile is None:
                raise UnknownSpeakerError(speaker_id)
            mutate(profile)
            return profile.copy()

    def delete(self, speaker_id: int) -> bool:
        with self.locked(speaker_id):
            with self._map_lock:
                removed = self._profiles.pop(speaker_id, None)
        return removed is not None

    def commit_matches(
        self,
        updates: Dict[int, List[tuple]],
        new_profiles: Dict[int, SpeakerProfile],
        learning_rate: float
    ) -> Dict[int, int]:
        """
        Merge the outcome of a clustering run into the live map.

        updates maps an existing speaker id to the (embedding, characteristics,
        duration, confidence) observations the run assigned to it; they are
        replayed onto the current profile so concurrent writers are not
        overwritten. new_profiles are inserted under freshly allocated ids,
        which equal the provisional ids unless another writer got there first.

        Returns:
            Mapping from run-local id to final id for every profile touched.
        """
        id_map: Dict[int, int] = {}
        for speaker_id, observations in updates.items():
            def apply(profile: SpeakerProfile, observations=observations) -> None:
                for embedding, characteristics, duration, confidence in observations:
                    profile.record_match(
                        embedding, characteristics, duration, confidence,
                        learning_rate, self.max_embeddings
                    )
            try:
                self.update(speaker_id, apply)
                id_map[speaker_id] = speaker_id
            except UnknownSpeakerError:
                # Deleted while the run was in progress; re-create it
                logger.warning("[ProfileRegistry] Profile %d vanished during commit, re-creating", speaker_id)
                replacement = self.new_profile(self.allocate_id())
                apply(replacement)
                self.add(replacement)
                id_map[speaker_id] = replacement.id

        for provisional_id, profile in sorted(new_profiles.items()):
            candidate = profile.copy()
            # Ids are never reused, even after a delete
            candidate.id = self.allocate_id()
            self.add(candidate)
            id_map[provisional_id] = candidate.id
        return id_map
