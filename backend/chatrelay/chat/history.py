"""History log: append-only record of chat and system messages."""
import logging
from typing import List

from pydantic import ValidationError

from chatrelay.store.base import StoreAdapter

from .schemas import Message

logger = logging.getLogger(__name__)


class HistoryLog:
    """Ordered message log backed by a store list.

    The log is replayed in full to every newly connecting client; there is no
    pagination.
    """

    def __init__(self, store: StoreAdapter, key: str = "messages") -> None:
        self._store = store
        self.key = key

    async def append(self, message: Message) -> int:
        """Append ``message`` at the tail and return the new log length.

        Raises:
            StoreUnavailable: The store failed the operation.
        """
        length = await self._store.list_append(self.key, message.model_dump_json())
        logger.debug("[History] Appended %s message from %s (len=%d)",
                     message.kind.value, message.author, length)
        return length

    async def all(self) -> List[Message]:
        """Every message, oldest first."""
        messages = []
        for raw in await self._store.list_range(self.key):
            try:
                messages.append(Message.model_validate_json(raw))
            except ValidationError:
                logger.warning("[History] Skipping undecodable entry in %s: %r", self.key, raw[:80])
        return messages

    async def count(self) -> int:
        """Number of stored entries, undecodable ones included."""
        return len(await self._store.list_range(self.key))
