"""Shared test fixtures and configuration for backend tests."""
import os

# Run every test against the in-process store, before any settings load.
os.environ["RELAY_STORE_BACKEND"] = "memory"

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from chatrelay.chat.history import HistoryLog  # noqa: E402
from chatrelay.chat.presence import PresenceRegistry  # noqa: E402
from chatrelay.chat.relay import BroadcastRelay  # noqa: E402
from chatrelay.chat.service import ChatService  # noqa: E402
from chatrelay.config import ChannelSettings, LimitSettings, get_config  # noqa: E402
from chatrelay.store.memory import MemoryStore  # noqa: E402


class Recorder:
    """Delivery callback that records every event it receives."""

    def __init__(self) -> None:
        self.events = []

    async def __call__(self, event: dict) -> None:
        self.events.append(event)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def registry(store):
    return PresenceRegistry(store, "users")


@pytest.fixture
def history(store):
    return HistoryLog(store, "messages")


@pytest.fixture
def relay(store):
    return BroadcastRelay(store, ChannelSettings())


@pytest.fixture
def service(registry, history, relay):
    return ChatService(registry, history, relay, LimitSettings(max_username_length=16, max_message_length=100))


@pytest.fixture
def recorder_factory():
    return Recorder


@pytest.fixture
def api_client():
    """Provide a TestClient with the lifespan running (fresh memory store)."""
    get_config.cache_clear()
    from chatrelay.main import app

    with TestClient(app) as client:
        yield client
