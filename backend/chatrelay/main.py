"""Chat Relay Application.

This is the main entry point for the chat relay service: clients join a
shared room, exchange short messages and see a live roster.

Modules:
    - chat: presence registry, history log, broadcast relay, sessions, routes
    - store: Redis and in-process store adapters
    - config: YAML settings
"""
import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from chatrelay.chat.errors import StoreUnavailable
from chatrelay.chat.history import HistoryLog
from chatrelay.chat.presence import PresenceRegistry
from chatrelay.chat.relay import BroadcastRelay
from chatrelay.chat.router import malformed_request_handler, router as chat_router
from chatrelay.chat.service import ChatService, set_service
from chatrelay.config import get_config
from chatrelay.store import create_store

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# Silence verbose third-party loggers.
for _noisy in (
    "asyncio",
    "httpx",
    "httpcore",
    "uvicorn.access",
):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    # Startup
    config = get_config()

    configured_level = getattr(logging, config.logging.level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", config.logging.level.upper())

    store = create_store(config.store)
    relay = BroadcastRelay(store, config.channels)
    await relay.start()

    service = ChatService(
        presence=PresenceRegistry(store, config.store.users_key),
        history=HistoryLog(store, config.store.messages_key),
        relay=relay,
        limits=config.limits,
    )
    set_service(service)
    app.state.store = store
    app.state.service = service
    logger.info("Chat relay ready (store=%s)", config.store.backend)

    yield  # Application runs here

    # Shutdown
    set_service(None)
    await relay.stop()
    await store.close()
    logger.info("Application shutdown complete")


# Create FastAPI application with metadata
app = FastAPI(
    title="Chat Relay API",
    description="Real-time chat relay with presence tracking",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_config().server.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(chat_router)
app.add_exception_handler(RequestValidationError, malformed_request_handler)


@app.get("/health")
async def health(request: Request) -> dict:
    """Health check endpoint.

    Returns:
        dict: Overall status, whether the backing store answers, whether the
        relay is receiving on both channels, the number of live sessions on
        this process and the history length (None if the store is down).
    """
    store = getattr(request.app.state, "store", None)
    service = getattr(request.app.state, "service", None)
    store_ok = store is not None and await store.ping()
    relay_ok = service is not None and service.relay.healthy

    messages = None
    if store_ok and service is not None:
        try:
            messages = await service.history.count()
        except StoreUnavailable:
            store_ok = False

    return {
        "status": "ok" if store_ok and relay_ok else "degraded",
        "store": "ok" if store_ok else "unavailable",
        "relay": "ok" if relay_ok else "unavailable",
        "sessions": service.relay.session_count if service is not None else 0,
        "messages": messages,
    }


def run() -> None:
    """Console entry point: serve the app with uvicorn."""
    config = get_config()
    uvicorn.run(
        "chatrelay.main:app",
        host=config.server.host,
        port=config.server.port,
        reload=config.server.reload,
        log_level=config.logging.level.lower(),
    )


if __name__ == "__main__":
    run()
