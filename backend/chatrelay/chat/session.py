"""Connection session: one per live client transport.

Lifecycle::

    CONNECTING --subscribe()--> SUBSCRIBED --close()--> CLOSED
         \\_____________________close()_______________/

The session learns its username from the client (page context); it is not
checked against the presence registry. Closing a session never removes the
user from the presence registry: only an explicit ``leave`` action does.
A client that disappears without leaving stays in the active set.

Outbound events wait in a bounded queue drained by ``run_writer``. A client
that falls ``limits.max_pending_events`` behind, or whose transport fails,
is closed.

Client actions are run as background tasks. Teardown does not cancel them;
they finish against the store, and their outcome is only reported back while
the session is still open.
"""
import asyncio
import logging
import uuid
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Set

from .errors import MalformedInput, RelayError
from .relay import BroadcastRelay
from .schemas import Message
from .service import ChatService

logger = logging.getLogger(__name__)

# Writes one client event to the transport.
SendCallback = Callable[[dict], Awaitable[None]]


class SessionState(str, Enum):
    CONNECTING = "connecting"
    SUBSCRIBED = "subscribed"
    CLOSED = "closed"


class ConnectionSession:
    """Ties one client transport to a username and the relay.

    Attributes:
        session_id: Key in the relay's session table.
        username: Client-supplied username.
        state: Current lifecycle state.
    """

    def __init__(
        self,
        username: str,
        service: ChatService,
        send: SendCallback,
        session_id: Optional[str] = None,
    ) -> None:
        self.session_id = session_id or str(uuid.uuid4())
        self.username = username
        self.state = SessionState.CONNECTING
        self._service = service
        self._send = send
        self._outbound: asyncio.Queue = asyncio.Queue(maxsize=service.limits.max_pending_events)
        self._pending: Set[asyncio.Task] = set()

    @property
    def relay(self) -> BroadcastRelay:
        return self._service.relay

    @property
    def closed(self) -> bool:
        return self.state is SessionState.CLOSED

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def subscribe(self) -> None:
        """Ask the relay to forward chat and presence events to this session."""
        if self.state is not SessionState.CONNECTING:
            raise RuntimeError(f"Cannot subscribe a session in state {self.state.value}")
        self.relay.register(self.session_id, self.deliver, on_drop=self.close)
        self.state = SessionState.SUBSCRIBED
        logger.info("[Session] %s (%s) subscribed", self.session_id, self.username)

    def close(self) -> None:
        """Tear the session down. Safe to call more than once."""
        if self.closed:
            return
        self.relay.unregister(self.session_id)
        self.state = SessionState.CLOSED
        # Unblock the writer. A full queue means it is not waiting anyway.
        try:
            self._outbound.put_nowait(None)
        except asyncio.QueueFull:
            pass
        logger.info(
            "[Session] %s (%s) closed with %d action(s) in flight",
            self.session_id, self.username, len(self._pending),
        )

    # =========================================================================
    # Outbound
    # =========================================================================

    async def deliver(self, event: dict) -> None:
        """Relay callback: queue an event for the writer.

        Raises:
            asyncio.QueueFull: The client is too far behind; the relay drops it.
        """
        if self.closed:
            return
        self._outbound.put_nowait(event)

    async def send_snapshot(self, messages: List[Message], users: List[str]) -> None:
        """Send the history replay and the roster straight to the transport."""
        await self._send({"event": "history", "data": [m.to_wire() for m in messages]})
        await self._send({"event": "users", "data": list(users)})

    async def run_writer(self) -> None:
        """Drain queued events to the transport until the session closes."""
        while True:
            event = await self._outbound.get()
            if event is None or self.closed:
                return
            try:
                await self._send(event)
            except Exception as exc:
                logger.warning(
                    "[Session] %s (%s) write failed, closing: %s",
                    self.session_id, self.username, exc,
                )
                self.close()
                return

    def send_error(self, message: str) -> None:
        """Queue an ``error`` event for the client unless the session is closed."""
        if self.closed:
            return
        try:
            self._outbound.put_nowait({"event": "error", "data": {"error": message}})
        except asyncio.QueueFull:
            logger.warning("[Session] %s (%s) backlog full, closing", self.session_id, self.username)
            self.close()

    # =========================================================================
    # Inbound
    # =========================================================================

    def submit(self, data: dict) -> Optional[asyncio.Task]:
        """Start the client action described by ``data`` in the background.

        Supported actions:
            {"event": "message", "data": {"message": "..."}}
            {"event": "leave"}
        """
        if self.closed:
            return None
        task = asyncio.create_task(self._run_action(data))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _run_action(self, data: dict) -> None:
        event = data.get("event") if isinstance(data, dict) else None
        try:
            if event == "message":
                payload = data.get("data") or {}
                text = payload.get("message") if isinstance(payload, dict) else None
                await self._service.send(self.username, text)
            elif event == "leave":
                await self._service.leave(self.username)
            else:
                raise MalformedInput(f"Unknown action: {event!r}")
        except RelayError as exc:
            logger.info("[Session] Action %r from %s failed: %s", event, self.username, exc.message)
            self.send_error(exc.message)

    async def wait_pending(self) -> None:
        """Wait for every in-flight action to finish."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
