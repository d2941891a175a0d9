"""Redis-backed store adapter.

Maps the adapter contract onto Redis commands:

    list_append  -> RPUSH          set_add     -> SADD
    list_range   -> LRANGE 0 -1    set_remove  -> SREM
    publish      -> PUBLISH        set_members -> SMEMBERS
    subscribe    -> SUBSCRIBE on a dedicated PubSub connection

SADD and SREM return the number of members actually changed, which is the
atomic check-and-mutate the presence registry relies on. Several relay
processes can share one Redis without further coordination.

Every ``redis.exceptions.RedisError`` is re-raised as ``StoreUnavailable``.
"""
import asyncio
import logging
from contextlib import contextmanager
from typing import Iterator, List, Optional, Set

import redis.asyncio as aioredis
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from .base import MessageHandler, StoreAdapter, StoreUnavailable, Subscription

logger = logging.getLogger(__name__)


@contextmanager
def _translate_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except RedisError as exc:
        logger.error("[RedisStore] %s failed: %s", operation, exc)
        raise StoreUnavailable(f"Store operation '{operation}' failed: {exc}") from exc


class RedisSubscription(Subscription):
    """One PubSub connection plus the task that reads from it.

    A dropped connection does not end the subscription: the read task backs
    off, re-issues SUBSCRIBE and resumes reading until ``close()`` cancels
    it. ``healthy`` is False while the channel is being re-established.
    """

    def __init__(
        self,
        pubsub,
        channel: str,
        handler: MessageHandler,
        reconnect_delay: float = 0.5,
        max_reconnect_delay: float = 30.0,
    ) -> None:
        self.channel = channel
        self.healthy = True
        self._pubsub = pubsub
        self._handler = handler
        self._reconnect_delay = reconnect_delay
        self._max_reconnect_delay = max_reconnect_delay
        self._task: Optional[asyncio.Task] = None

    def start(self) -> None:
        self._task = asyncio.create_task(
            self._read_loop(), name=f"redis-subscription:{self.channel}"
        )

    async def _read_loop(self) -> None:
        delay = self._reconnect_delay
        while True:
            try:
                if not self.healthy:
                    await self._pubsub.subscribe(self.channel)
                    self.healthy = True
                    delay = self._reconnect_delay
                    logger.info("[RedisStore] Resubscribed to %s", self.channel)
                async for message in self._pubsub.listen():
                    if message.get("type") != "message":
                        continue
                    await self._dispatch(message)
                logger.warning("[RedisStore] Subscription to %s ended, resubscribing", self.channel)
            except RedisTimeoutError:
                # Idle read hit socket_timeout; the connection is still up.
                continue
            except RedisError as exc:
                logger.error(
                    "[RedisStore] Subscription to %s lost: %s (retry in %.1fs)",
                    self.channel, exc, delay,
                )
            self.healthy = False
            await asyncio.sleep(delay)
            delay = min(delay * 2, self._max_reconnect_delay)

    async def _dispatch(self, message: dict) -> None:
        try:
            await self._handler(message["channel"], message["data"])
        except Exception:
            logger.exception(
                "[RedisStore] Handler for channel %s failed", self.channel
            )

    async def close(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        self.healthy = False
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        try:
            await self._pubsub.unsubscribe(self.channel)
            await self._pubsub.aclose()
        except RedisError as exc:
            logger.debug("[RedisStore] Error closing subscription %s: %s", self.channel, exc)


class RedisStore(StoreAdapter):
    def __init__(self, client: aioredis.Redis, reconnect_delay: float = 0.5) -> None:
        self._client = client
        self._reconnect_delay = reconnect_delay
        self._subscriptions: List[RedisSubscription] = []

    @classmethod
    def from_url(
        cls,
        url: str,
        socket_timeout: Optional[float] = None,
        socket_connect_timeout: Optional[float] = None,
        reconnect_delay: float = 0.5,
    ) -> "RedisStore":
        client = aioredis.from_url(
            url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_connect_timeout,
        )
        return cls(client, reconnect_delay=reconnect_delay)

    async def list_append(self, key: str, value: str) -> int:
        with _translate_errors("list_append"):
            return int(await self._client.rpush(key, value))

    async def list_range(self, key: str) -> List[str]:
        with _translate_errors("list_range"):
            return list(await self._client.lrange(key, 0, -1))

    async def set_add(self, key: str, member: str) -> int:
        with _translate_errors("set_add"):
            return int(await self._client.sadd(key, member))

    async def set_remove(self, key: str, member: str) -> int:
        with _translate_errors("set_remove"):
            return int(await self._client.srem(key, member))

    async def set_members(self, key: str) -> Set[str]:
        with _translate_errors("set_members"):
            return set(await self._client.smembers(key))

    async def publish(self, channel: str, payload: str) -> int:
        with _translate_errors("publish"):
            return int(await self._client.publish(channel, payload))

    async def subscribe(self, channel: str, on_message: MessageHandler) -> Subscription:
        pubsub = self._client.pubsub()
        with _translate_errors("subscribe"):
            await pubsub.subscribe(channel)
        sub = RedisSubscription(pubsub, channel, on_message, reconnect_delay=self._reconnect_delay)
        sub.start()
        self._subscriptions.append(sub)
        logger.info("[RedisStore] Subscribed to channel %s", channel)
        return sub

    async def ping(self) -> bool:
        try:
            return bool(await self._client.ping())
        except RedisError as exc:
            logger.warning("[RedisStore] Ping failed: %s", exc)
            return False

    async def close(self) -> None:
        for sub in self._subscriptions:
            await sub.close()
        self._subscriptions.clear()
        await self._client.aclose()
