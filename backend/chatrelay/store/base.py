"""Store adapter contract shared by every backing store.

The relay core only ever talks to the store through these primitives:

    - an append-only list (the message history)
    - a set with check-and-mutate semantics (the active users)
    - named pub/sub channels (chat and presence events)

``set_add`` and ``set_remove`` must report how many members they actually
changed. Presence uniqueness depends on that return value, never on a
separate read.
"""
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, List, Set

from chatrelay.chat.errors import StoreUnavailable

# Awaited once per received pub/sub message with (channel, payload).
MessageHandler = Callable[[str, str], Awaitable[None]]

__all__ = ["MessageHandler", "StoreAdapter", "StoreUnavailable", "Subscription"]


class Subscription(ABC):
    """Handle for one channel subscription. ``close()`` is idempotent.

    ``healthy`` is True while messages published on ``channel`` are being
    received.
    """

    channel: str
    healthy: bool = True

    @abstractmethod
    async def close(self) -> None:
        ...


class StoreAdapter(ABC):
    """Typed access to the external store's list, set and pub/sub primitives."""

    @abstractmethod
    async def list_append(self, key: str, value: str) -> int:
        """Append ``value`` to the tail of list ``key``; return the new length."""

    @abstractmethod
    async def list_range(self, key: str) -> List[str]:
        """Return the full list, oldest element first."""

    @abstractmethod
    async def set_add(self, key: str, member: str) -> int:
        """Add ``member``; return 1 if newly inserted, 0 if already present."""

    @abstractmethod
    async def set_remove(self, key: str, member: str) -> int:
        """Remove ``member``; return 1 if it was present, 0 otherwise."""

    @abstractmethod
    async def set_members(self, key: str) -> Set[str]:
        """Return the current members of set ``key``."""

    @abstractmethod
    async def publish(self, channel: str, payload: str) -> int:
        """Publish ``payload`` on ``channel``; return the number of receivers."""

    @abstractmethod
    async def subscribe(self, channel: str, on_message: MessageHandler) -> Subscription:
        """Start delivering messages published on ``channel`` to ``on_message``.

        Only messages published after the subscription is established are
        delivered; there is no replay.
        """

    @abstractmethod
    async def ping(self) -> bool:
        """Return True if the backend answers."""

    @abstractmethod
    async def close(self) -> None:
        """Release connections and end all subscriptions."""
