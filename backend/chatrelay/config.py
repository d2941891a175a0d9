"""Chat relay configuration.

Loads settings from a single YAML file:
  * relay.settings.yaml: server, store, channel and limit settings

The file path can be overridden with ``RELAY_SETTINGS_FILE``. A few values
can also be overridden from the environment (environment wins over YAML):
  * RELAY_STORE_BACKEND: "redis" or "memory"
  * REDIS_URL: Redis connection URL
"""
from __future__ import annotations

import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("relay.settings.yaml")


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host:            str  = "0.0.0.0"
    port:            int  = 8000
    reload:          bool = False
    allowed_origins: List[str] = Field(default_factory=lambda: ["*"])


class StoreSettings(BaseModel):
    """Backing store selection and the keys shared by every relay process."""
    backend:         Literal["redis", "memory"] = "redis"
    url:             str             = "redis://localhost:6379/0"
    messages_key:    str             = "messages"
    users_key:       str             = "users"
    socket_timeout:  Optional[float] = 5.0
    connect_timeout: Optional[float] = 5.0
    reconnect_delay: float           = 0.5


class ChannelSettings(BaseModel):
    """Pub/sub channel names on the store."""
    chat:     str = "chat"
    presence: str = "presence"

    @field_validator("chat", "presence")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("channel name must not be blank")
        return value


class LimitSettings(BaseModel):
    max_username_length: int = Field(default=32, ge=1)
    max_message_length:  int = Field(default=500, ge=1)
    max_pending_events:  int = Field(default=256, ge=1)


class LoggingSettings(BaseModel):
    level: str = "info"


class AppSettings(BaseModel):
    server:   ServerSettings  = Field(default_factory=ServerSettings)
    store:    StoreSettings   = Field(default_factory=StoreSettings)
    channels: ChannelSettings = Field(default_factory=ChannelSettings)
    limits:   LimitSettings   = Field(default_factory=LimitSettings)
    logging:  LoggingSettings = Field(default_factory=LoggingSettings)


# ---------------------------------------------------------------------------
# Environment overrides
# ---------------------------------------------------------------------------


def _apply_env_overrides(data: Dict[str, Any]) -> Dict[str, Any]:
    store = dict(data.get("store") or {})
    if backend := os.environ.get("RELAY_STORE_BACKEND"):
        store["backend"] = backend
    if url := os.environ.get("REDIS_URL"):
        store["url"] = url
    data["store"] = store
    return data


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def load_settings(path: Optional[Path | str] = None) -> AppSettings:
    """Load the YAML settings file and apply environment overrides."""
    if path is None:
        path = os.environ.get("RELAY_SETTINGS_FILE") or SETTINGS_FILE
    settings_data = _apply_env_overrides(_load_yaml(Path(path)))

    app_settings = AppSettings(**settings_data)
    logger.info(
        "Settings loaded (server=%s:%s, store.backend=%s)",
        app_settings.server.host,
        app_settings.server.port,
        app_settings.store.backend,
    )
    return app_settings


@lru_cache
def get_config() -> AppSettings:
    """Return the process-wide settings, loaded once."""
    return load_settings()
