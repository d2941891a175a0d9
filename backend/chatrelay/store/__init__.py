"""Backing store adapters for the relay core."""
import logging

from chatrelay.config import StoreSettings

from .base import MessageHandler, StoreAdapter, StoreUnavailable, Subscription
from .memory import MemoryStore
from .redis_store import RedisStore

logger = logging.getLogger(__name__)

__all__ = [
    "MemoryStore",
    "MessageHandler",
    "RedisStore",
    "StoreAdapter",
    "StoreUnavailable",
    "Subscription",
    "create_store",
]


def create_store(settings: StoreSettings) -> StoreAdapter:
    """Build the store adapter selected by ``store.backend``."""
    if settings.backend == "redis":
        logger.info("Using Redis store at %s", settings.url)
        return RedisStore.from_url(
            settings.url,
            socket_timeout=settings.socket_timeout,
            socket_connect_timeout=settings.connect_timeout,
            reconnect_delay=settings.reconnect_delay,
        )
    logger.info("Using in-process memory store (single relay process only)")
    return MemoryStore()
