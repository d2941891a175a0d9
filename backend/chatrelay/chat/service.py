"""Action pipeline: turns join / leave / send into store mutations and events.

Each action is an explicit sequence of independent store operations. The
store offers no transaction across them, so each step can fail on its own:

    join / leave:
        1. registry check-and-mutate      (failure -> action rejected)
        2. append system message to log   (failure -> logged, continue)
        3. publish system message (chat)  (failure -> logged, continue)
        4. read roster, publish (presence)(failure -> logged)

    send:
        1. append message to log          (failure -> logged, continue)
        2. publish message (chat)         (failure -> StoreUnavailable)

A failure after step 1 of join/leave does not roll the registry back; the
roster seen by connected clients stays stale until the next presence publish
or a reload. A send whose append failed but whose publish succeeded is seen
live and is simply missing from later history replays.
"""
import logging
from typing import Any, List, Optional

from chatrelay.config import LimitSettings

from .errors import MalformedInput, StoreUnavailable
from .history import HistoryLog
from .presence import PresenceRegistry
from .relay import BroadcastRelay
from .schemas import Message

logger = logging.getLogger(__name__)

JOIN_TEXT = "{user} just joined the chat room"
LEAVE_TEXT = "{user} just left the chat room"


class ChatService:
    """Entry point for every client action, shared by HTTP routes and sessions."""

    def __init__(
        self,
        presence: PresenceRegistry,
        history: HistoryLog,
        relay: BroadcastRelay,
        limits: Optional[LimitSettings] = None,
    ) -> None:
        self.presence = presence
        self.history = history
        self.relay = relay
        self.limits = limits or LimitSettings()

    # =========================================================================
    # Validation
    # =========================================================================

    def validate_username(self, username: Any) -> str:
        if username is not None and not isinstance(username, str):
            raise MalformedInput("Username must be a string")
        if username is None or not username.strip():
            raise MalformedInput("Username is required")
        username = username.strip()
        if len(username) > self.limits.max_username_length:
            raise MalformedInput(
                f"Username exceeds {self.limits.max_username_length} characters"
            )
        return username

    def validate_text(self, text: Any) -> str:
        if text is not None and not isinstance(text, str):
            raise MalformedInput("Message text must be a string")
        if text is None or not text.strip():
            raise MalformedInput("Message text is required")
        if len(text) > self.limits.max_message_length:
            raise MalformedInput(
                f"Message exceeds {self.limits.max_message_length} characters"
            )
        return text

    # =========================================================================
    # Actions
    # =========================================================================

    async def join(self, username: Any) -> List[str]:
        """Add a user to the room and announce it. Returns the refreshed roster.

        Raises:
            MalformedInput: Missing, non-string or oversized username.
            AlreadyPresent: Username taken.
            StoreUnavailable: The registry update itself failed.
        """
        username = self.validate_username(username)
        await self.presence.join(username)
        return await self._announce(username, JOIN_TEXT.format(user=username))

    async def leave(self, username: Any) -> List[str]:
        """Remove a user from the room and announce it. Returns the refreshed roster.

        Raises:
            MalformedInput: Missing, non-string or oversized username.
            NotPresent: Username not in the room.
            StoreUnavailable: The registry update itself failed.
        """
        username = self.validate_username(username)
        await self.presence.leave(username)
        return await self._announce(username, LEAVE_TEXT.format(user=username))

    async def send(self, username: Any, text: Any) -> Message:
        """Record a user message and publish it on the chat channel.

        The author is not checked against the registry; the transport layer
        trusts the username from the page context.

        Raises:
            MalformedInput: Missing or non-string username or text, or oversized text.
            StoreUnavailable: The publish failed (whether or not the append did).
        """
        message = Message(
            author=self.validate_username(username),
            text=self.validate_text(text),
        )

        persisted = await self._try_append(message)
        try:
            await self.relay.publish_message(message)
        except StoreUnavailable:
            logger.error(
                "[Service] Publish failed for message from %s (persisted=%s)",
                message.author, persisted,
            )
            raise

        if not persisted:
            logger.warning(
                "[Service] Message from %s was broadcast but is missing from history",
                message.author,
            )
        return message

    async def messages(self) -> List[Message]:
        return await self.history.all()

    async def users(self) -> List[str]:
        return await self.presence.list()

    # =========================================================================
    # Best-effort announcement
    # =========================================================================

    async def _announce(self, username: str, text: str) -> List[str]:
        message = Message.system(username, text)
        await self._try_append(message)

        try:
            await self.relay.publish_message(message)
        except StoreUnavailable as exc:
            logger.error("[Service] Could not publish '%s': %s", text, exc)

        roster: List[str] = []
        try:
            # Publish the resolved roster, never a pending read.
            roster = await self.presence.list()
            await self.relay.publish_roster(roster)
        except StoreUnavailable as exc:
            logger.error("[Service] Roster refresh after '%s' failed: %s", text, exc)
        return roster

    async def _try_append(self, message: Message) -> bool:
        try:
            await self.history.append(message)
            return True
        except StoreUnavailable as exc:
            logger.error("[Service] Could not persist message from %s: %s", message.author, exc)
            return False


# =============================================================================
# Global instance
# =============================================================================

_service: Optional[ChatService] = None


def get_service() -> Optional[ChatService]:
    """Get the global chat service instance."""
    return _service


def set_service(service: Optional[ChatService]) -> None:
    """Set the global chat service instance."""
    global _service
    _service = service
