"""In-process store for a single relay process.

Lists, sets and channel subscribers live in dicts and are lost on restart.
Each check-and-mutate runs without an intervening ``await``, so it is atomic
with respect to every other task on the event loop. Publishing delivers to
subscribers sequentially, in subscription order.
"""
import logging
from collections import defaultdict
from typing import Dict, List, Set

from .base import MessageHandler, StoreAdapter, Subscription

logger = logging.getLogger(__name__)


class MemorySubscription(Subscription):
    def __init__(self, store: "MemoryStore", channel: str, handler: MessageHandler) -> None:
        self.channel = channel
        self._store = store
        self._handler = handler
        self.closed = False

    async def deliver(self, payload: str) -> None:
        if not self.closed:
            await self._handler(self.channel, payload)

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.healthy = False
        self._store._detach(self)


class MemoryStore(StoreAdapter):
    def __init__(self) -> None:
        self._lists: Dict[str, List[str]] = defaultdict(list)
        self._sets: Dict[str, Set[str]] = defaultdict(set)
        self._subscribers: Dict[str, List[MemorySubscription]] = defaultdict(list)

    async def list_append(self, key: str, value: str) -> int:
        self._lists[key].append(value)
        return len(self._lists[key])

    async def list_range(self, key: str) -> List[str]:
        return list(self._lists.get(key, []))

    async def set_add(self, key: str, member: str) -> int:
        members = self._sets[key]
        if member in members:
            return 0
        members.add(member)
        return 1

    async def set_remove(self, key: str, member: str) -> int:
        members = self._sets.get(key)
        if not members or member not in members:
            return 0
        members.discard(member)
        return 1

    async def set_members(self, key: str) -> Set[str]:
        return set(self._sets.get(key, set()))

    async def publish(self, channel: str, payload: str) -> int:
        subscribers = list(self._subscribers.get(channel, []))
        for sub in subscribers:
            try:
                await sub.deliver(payload)
            except Exception:
                # A subscriber's failure must not reach the publisher.
                logger.exception("[MemoryStore] Subscriber on %s failed", channel)
        return len(subscribers)

    async def subscribe(self, channel: str, on_message: MessageHandler) -> Subscription:
        sub = MemorySubscription(self, channel, on_message)
        self._subscribers[channel].append(sub)
        logger.debug("[MemoryStore] Subscribed to %s", channel)
        return sub

    def _detach(self, sub: MemorySubscription) -> None:
        subs = self._subscribers.get(sub.channel, [])
        if sub in subs:
            subs.remove(sub)
        if not subs:
            self._subscribers.pop(sub.channel, None)

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        for subs in list(self._subscribers.values()):
            for sub in list(subs):
                await sub.close()
        self._subscribers.clear()
