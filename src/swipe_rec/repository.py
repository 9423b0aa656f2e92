"""
Persistence ports for taste profiles, with an in-process adapter.

The engine only talks to ProfileRepository; SQLite lives in database.py.
"""
import copy
import logging
import threading
from abc import ABC, abstractmethod

from .config import RECENT_IDS_CAPACITY
from .profile import ProfileDelta, UserTasteProfile, apply_delta, create_empty_taste_profile

logger = logging.getLogger(__name__)


class ProfileRepository(ABC):
    """One taste profile document per user, supporting atomic increments."""

    @abstractmethod
    def load(self, user_id: str) -> UserTasteProfile | None:
        """Full-document read. None when the user has no profile yet."""

    @abstractmethod
    def apply_delta(self, delta: ProfileDelta) -> bool:
        """
        Apply a delta as atomic add-operations, creating the profile lazily.

        Returns False when a seed delta was skipped because its content is
        already in the liked ring buffer.
        """

    @abstractmethod
    def delete(self, user_id: str) -> bool:
        """Drop everything stored for a user (explicit account data reset)."""

    def close(self) -> None:
        pass


class InMemoryProfileRepository(ProfileRepository):
    """Dict-backed repository; a lock makes each delta atomic."""

    def __init__(self, recent_capacity: int = RECENT_IDS_CAPACITY):
        self._profiles: dict[str, UserTasteProfile] = {}
        self._lock = threading.Lock()
        self._recent_capacity = recent_capacity

    def load(self, user_id: str) -> UserTasteProfile | None:
        with self._lock:
            profile = self._profiles.get(user_id)
            return copy.deepcopy(profile) if profile else None

    def apply_delta(self, delta: ProfileDelta) -> bool:
        with self._lock:
            current = self._profiles.get(delta.user_id) or create_empty_taste_profile(delta.user_id)
            if delta.seed and delta.content.content_id in current.recent_liked_ids:
                return False
            self._profiles[delta.user_id] = apply_delta(current, delta, self._recent_capacity)
            return True

    def delete(self, user_id: str) -> bool:
        with self._lock:
            return self._profiles.pop(user_id, None) is not None

    def __len__(self) -> int:
        return len(self._profiles)
