"""Broadcast relay: bridges the store's pub/sub channels to live sessions.

The relay holds exactly one subscription per channel (chat, presence) and an
in-process table of live sessions. Every envelope received on a channel is
re-emitted to every registered session. Because every relay process
subscribes to the same channels, sessions attached to different processes all
see the same events without sharing memory.

Ordering:
    Events on one channel are dispatched one at a time; a dispatch finishes
    (every session callback has returned) before the next event on that
    channel is handled. Each session therefore receives a channel's events in
    publish order. Nothing is guaranteed across channels.

The relay never mutates store state and keeps no backlog: a session only
sees events published after it registered.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional

from pydantic import ValidationError

from chatrelay.config import ChannelSettings
from chatrelay.store.base import StoreAdapter, Subscription

from .schemas import ChannelEvent, ChannelName, Message

logger = logging.getLogger(__name__)

# Async callback receiving one client event dict.
DeliverCallback = Callable[[dict], Awaitable[None]]


class BroadcastRelay:
    """Fans out channel events to every live connection session.

    Attributes:
        channels: Store channel names for the chat and presence channels.
    """

    def __init__(self, store: StoreAdapter, channels: Optional[ChannelSettings] = None) -> None:
        self._store = store
        self.channels = channels or ChannelSettings()
        # session_id -> delivery callback. Only touched from the event loop;
        # dispatch iterates over a copy.
        self._sessions: Dict[str, DeliverCallback] = {}
        self._on_drop: Dict[str, Callable[[], None]] = {}
        self._subscriptions: Dict[str, Subscription] = {}

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Subscribe once to each channel. Calling it again is a no-op."""
        for name in ("chat", "presence"):
            if name in self._subscriptions:
                continue
            store_channel = self._store_channel(name)
            self._subscriptions[name] = await self._store.subscribe(store_channel, self._on_message)
            logger.info("[Relay] Subscribed to %s channel (%s)", name, store_channel)

    async def stop(self) -> None:
        for name, sub in list(self._subscriptions.items()):
            await sub.close()
            logger.info("[Relay] Unsubscribed from %s channel", name)
        self._subscriptions.clear()
        self._sessions.clear()
        self._on_drop.clear()

    @property
    def started(self) -> bool:
        return len(self._subscriptions) == 2

    @property
    def healthy(self) -> bool:
        """True when both channel subscriptions are receiving."""
        return self.started and all(sub.healthy for sub in self._subscriptions.values())

    # =========================================================================
    # Session table
    # =========================================================================

    def register(
        self,
        session_id: str,
        deliver: DeliverCallback,
        on_drop: Optional[Callable[[], None]] = None,
    ) -> None:
        """Add a session to the fan-out table.

        ``on_drop`` is called if the relay removes the session because its
        ``deliver`` callback raised.
        """
        self._sessions[session_id] = deliver
        if on_drop is not None:
            self._on_drop[session_id] = on_drop
        logger.info("[Relay] Registered session %s (total: %d)", session_id, len(self._sessions))

    def unregister(self, session_id: str) -> None:
        self._on_drop.pop(session_id, None)
        if self._sessions.pop(session_id, None) is not None:
            logger.info("[Relay] Unregistered session %s (total: %d)", session_id, len(self._sessions))

    @property
    def session_count(self) -> int:
        return len(self._sessions)

    # =========================================================================
    # Publishing
    # =========================================================================

    async def publish_message(self, message: Message) -> int:
        """Publish a message on the chat channel.

        Raises:
            StoreUnavailable: The store failed the publish.
        """
        return await self._publish(ChannelEvent(channel="chat", payload=message))

    async def publish_roster(self, usernames: List[str]) -> int:
        """Publish an already-resolved roster on the presence channel.

        Raises:
            StoreUnavailable: The store failed the publish.
        """
        return await self._publish(ChannelEvent(channel="presence", payload=list(usernames)))

    async def _publish(self, event: ChannelEvent) -> int:
        receivers = await self._store.publish(
            self._store_channel(event.channel), event.model_dump_json()
        )
        logger.debug("[Relay] Published on %s to %d subscriber(s)", event.channel, receivers)
        return receivers

    # =========================================================================
    # Dispatch
    # =========================================================================

    async def _on_message(self, channel: str, payload: str) -> None:
        try:
            event = ChannelEvent.model_validate_json(payload)
        except ValidationError:
            logger.warning("[Relay] Dropping undecodable payload on %s: %r", channel, payload[:80])
            return
        await self.dispatch(event.to_client_event())

    async def dispatch(self, client_event: dict) -> None:
        """Deliver one client event to every registered session concurrently.

        Sessions whose callback raises are unregistered and their ``on_drop``
        hook is called.
        """
        sessions = list(self._sessions.items())
        if not sessions:
            return

        results = await asyncio.gather(
            *[deliver(client_event) for _, deliver in sessions],
            return_exceptions=True,
        )

        for (session_id, _), result in zip(sessions, results):
            if isinstance(result, Exception):
                logger.warning("[Relay] Delivery to session %s failed: %s", session_id, result)
                on_drop = self._on_drop.get(session_id)
                self.unregister(session_id)
                if on_drop is not None:
                    on_drop()

    def _store_channel(self, name: ChannelName) -> str:
        return getattr(self.channels, name)
