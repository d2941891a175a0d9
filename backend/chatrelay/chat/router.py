"""Chat router providing the HTTP actions and the live WebSocket transport.

This module provides:
    - GET /messages: Full history replay
    - GET /users: Current roster
    - POST /user: Join the room
    - DELETE /user: Leave the room
    - POST /message: Send a message
    - WebSocket /ws?user=<name>: Live chat and presence events

Error responses are ``{"error": "..."}`` with status 400 (malformed input),
404 (not present), 409 (already present) or 503 (store unavailable).

WebSocket Protocol:
    Server -> client, on connect:
        {event: "history", data: [{user, message, kind}, ...]}
        {event: "users", data: [username, ...]}
    Server -> client, live:
        {event: "message", data: {user, message, kind}}
        {event: "users", data: [username, ...]}
        {event: "error", data: {error}}
    Client -> server:
        {event: "message", data: {message}}
        {event: "leave"}
"""
import asyncio
import json
import logging
from typing import Optional

from fastapi import APIRouter, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .errors import MalformedInput, RelayError
from .schemas import MessageRequest, RosterResponse, UserRequest
from .service import ChatService, get_service
from .session import ConnectionSession

logger = logging.getLogger(__name__)

router = APIRouter(tags=["chat"])


def _service() -> ChatService:
    service = get_service()
    if service is None:
        raise RuntimeError("Chat service is not initialised")
    return service


def _error_response(exc: RelayError) -> JSONResponse:
    return JSONResponse({"error": exc.message}, status_code=exc.status_code)


async def malformed_request_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Report unparseable request bodies as ``MalformedInput`` (400)."""
    logger.info("[Chat] Malformed request to %s: %s", request.url.path, exc.errors())
    return _error_response(MalformedInput("Malformed request body"))


@router.get("/messages")
async def list_messages() -> JSONResponse:
    """Return the full message history, oldest first.

    Returns:
        JSON array of ``{user, message, kind}`` objects.
    """
    try:
        messages = await _service().messages()
    except RelayError as exc:
        return _error_response(exc)
    return JSONResponse([m.to_wire() for m in messages])


@router.get("/users")
async def list_users() -> JSONResponse:
    """Return the usernames currently in the room."""
    try:
        users = await _service().users()
    except RelayError as exc:
        return _error_response(exc)
    return JSONResponse(users)


@router.post("/user", status_code=201)
async def join_room(body: Optional[UserRequest] = None) -> JSONResponse:
    """Join the room.

    Args:
        body: ``{user}``.

    Returns:
        ``{user, users}`` with the refreshed roster (201 Created), or 409 if
        the username is taken.
    """
    username = body.user if body else None
    try:
        users = await _service().join(username)
    except RelayError as exc:
        return _error_response(exc)
    result = RosterResponse(user=username.strip(), users=users)
    return JSONResponse(result.model_dump(), status_code=201)


@router.delete("/user")
async def leave_room(body: Optional[UserRequest] = None) -> JSONResponse:
    """Leave the room.

    Args:
        body: ``{user}``.

    Returns:
        ``{user, users}`` with the refreshed roster, or 404 if the username
        is not in the room.
    """
    username = body.user if body else None
    try:
        users = await _service().leave(username)
    except RelayError as exc:
        return _error_response(exc)
    return JSONResponse(RosterResponse(user=username.strip(), users=users).model_dump())


@router.post("/message", status_code=201)
async def send_message(body: Optional[MessageRequest] = None) -> JSONResponse:
    """Send a chat message.

    Args:
        body: ``{user, msg}``.

    Returns:
        The message as broadcast (201 Created).
    """
    try:
        message = await _service().send(
            body.user if body else None,
            body.msg if body else None,
        )
    except RelayError as exc:
        return _error_response(exc)
    logger.info("[Chat] Message from %s: %s", message.author, message.text[:50])
    return JSONResponse(message.to_wire(), status_code=201)


@router.websocket("/ws")
async def websocket_relay_endpoint(
    websocket: WebSocket,
    user: Optional[str] = Query(None, description="Username from the page context"),
) -> None:
    """WebSocket endpoint for one client's live view of the room.

    Protocol Flow:
        1. Client connects with ``?user=<name>`` (1008 if missing)
        2. Session subscribes to the relay, then the server sends the history
           and roster snapshot. Events published in between are queued and
           follow the snapshot, so a client may see an event twice but never
           misses one.
        3. Live chat and presence events are forwarded as they arrive.
        4. Client actions run in the background; failures come back as
           ``{event: "error"}``.
        5. On disconnect the session is closed. The user stays in the roster
           unless a leave action was sent.
    """
    service = _service()
    try:
        username = service.validate_username(user)
    except MalformedInput:
        logger.warning("[WS] Rejecting connection without a username")
        await websocket.close(code=1008)  # 1008 = Policy Violation
        return

    await websocket.accept()
    session = ConnectionSession(username, service, websocket.send_json)
    session.subscribe()
    logger.info("[WS] %s connected (session %s)", username, session.session_id)

    writer: Optional[asyncio.Task] = None
    try:
        await session.send_snapshot(await service.messages(), await service.users())
        writer = asyncio.create_task(session.run_writer())

        while not session.closed:
            raw = await websocket.receive_text()
            try:
                data = json.loads(raw)
            except ValueError:
                session.send_error("Invalid JSON")
                continue
            logger.debug("[WS] %s sent: event=%s", username, data.get("event", "?") if isinstance(data, dict) else "?")
            session.submit(data)

    except WebSocketDisconnect:
        logger.info("[WS] %s disconnected (session %s)", username, session.session_id)
    except RelayError as exc:
        logger.error("[WS] Could not hydrate %s: %s", username, exc.message)
        await websocket.send_json({"event": "error", "data": {"error": exc.message}})
        await websocket.close(code=1011)  # 1011 = Internal Error
    finally:
        session.close()
        if writer is not None:
            writer.cancel()
