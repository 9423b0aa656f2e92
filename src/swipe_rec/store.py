"""
Taste profile store: the single owner of UserTasteProfile mutation.

Callers express a change as a function from the current profile to a
ProfileDelta. The delta is applied locally for the caller and persisted
as atomic increments through the repository, so concurrent signals for
the same user never overwrite each other.
"""
import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass

from .config import STORE_RETRY_DELAY, STORE_WRITE_RETRIES
from .errors import ProfileStoreError
from .profile import ProfileDelta, UserTasteProfile, apply_delta, create_empty_taste_profile
from .repository import ProfileRepository
from .utils import retry_with_backoff

logger = logging.getLogger(__name__)


@dataclass
class UpdateOutcome:
    """
    Result of TasteProfileStore.update.

    profile is the caller's view after the change, even when the write
    did not land; persisted tells the caller whether it did.
    """
    profile: UserTasteProfile
    applied: bool
    persisted: bool
    error: Exception | None = None


class TasteProfileStore:

    def __init__(
        self,
        repository: ProfileRepository,
        retries: int = STORE_WRITE_RETRIES,
        retry_delay: float = STORE_RETRY_DELAY,
    ):
        self.repository = repository
        self._listeners: list[Callable[[str], None]] = []
        self._write = retry_with_backoff(
            max_retries=retries,
            initial_delay=retry_delay,
            exceptions=(ProfileStoreError,),
        )(repository.apply_delta)

    def add_invalidation_listener(self, listener: Callable[[str], None]) -> None:
        """Register a callback run with the user id after every persisted change."""
        self._listeners.append(listener)

    def _notify(self, user_id: str) -> None:
        for listener in self._listeners:
            listener(user_id)

    async def get(self, user_id: str) -> UserTasteProfile:
        """Current profile, or a fresh empty one (not persisted) when absent."""
        profile = await asyncio.to_thread(self.repository.load, user_id)
        return profile if profile is not None else create_empty_taste_profile(user_id)

    async def update(
        self,
        user_id: str,
        fn: Callable[[UserTasteProfile], ProfileDelta | None],
    ) -> UpdateOutcome:
        try:
            profile = await self.get(user_id)
        except ProfileStoreError as e:
            logger.warning(f"Could not load profile for {user_id}, applying against empty profile: {e}")
            profile = create_empty_taste_profile(user_id)

        delta = fn(profile)
        if delta is None:
            return UpdateOutcome(profile=profile, applied=False, persisted=False)

        local = apply_delta(profile, delta)
        try:
            applied = await asyncio.to_thread(self._write, delta)
        except ProfileStoreError as e:
            logger.warning(f"Profile write for {user_id} did not land: {e}")
            return UpdateOutcome(profile=local, applied=True, persisted=False, error=e)

        if not applied:
            # Raced with an identical seed that landed first
            logger.debug(f"Seed {delta.content.content_id} already applied for {user_id}")
            return UpdateOutcome(profile=profile, applied=False, persisted=True)

        self._notify(user_id)
        return UpdateOutcome(profile=local, applied=True, persisted=True)

    async def reset(self, user_id: str) -> bool:
        """Explicit account data reset."""
        deleted = await asyncio.to_thread(self.repository.delete, user_id)
        self._notify(user_id)
        logger.info(f"Reset taste profile for {user_id} (existed: {deleted})")
        return deleted

    def close(self) -> None:
        self.repository.close()
