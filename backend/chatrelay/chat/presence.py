"""Presence registry: the room-wide set of active usernames.

Uniqueness rests entirely on the store's single-operation atomicity. ``join``
and ``leave`` never read the set before mutating it; the count returned by
``set_add`` / ``set_remove`` decides whether the action was accepted. That is
what keeps two concurrent joins of the same name (even from different relay
processes) down to exactly one success.

Announcing a join or leave is the caller's job (see ``ChatService``).
"""
import logging
from typing import List

from chatrelay.store.base import StoreAdapter

from .errors import AlreadyPresent, NotPresent

logger = logging.getLogger(__name__)


class PresenceRegistry:
    """Owns the active-user set in the store.

    Attributes:
        key: Store key of the active-user set.
    """

    def __init__(self, store: StoreAdapter, key: str = "users") -> None:
        self._store = store
        self.key = key

    async def join(self, username: str) -> str:
        """Add ``username`` to the active set.

        Raises:
            AlreadyPresent: The name was already a member; the set is unchanged.
            StoreUnavailable: The store failed the operation.
        """
        added = await self._store.set_add(self.key, username)
        if not added:
            logger.info("[Presence] Join rejected, %s already present", username)
            raise AlreadyPresent(username)
        logger.info("[Presence] %s joined", username)
        return username

    async def leave(self, username: str) -> str:
        """Remove ``username`` from the active set.

        Raises:
            NotPresent: The name was not a member; the set is unchanged.
            StoreUnavailable: The store failed the operation.
        """
        removed = await self._store.set_remove(self.key, username)
        if not removed:
            logger.info("[Presence] Leave rejected, %s not present", username)
            raise NotPresent(username)
        logger.info("[Presence] %s left", username)
        return username

    async def list(self) -> List[str]:
        """Current members, sorted so the display order is stable."""
        return sorted(await self._store.set_members(self.key))
