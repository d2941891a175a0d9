"""Data model and wire schemas for the chat relay.

Three shapes matter:

    - ``Message``: one history entry, stored as a JSON string per list element.
    - ``ChannelEvent``: the envelope published on a pub/sub channel.
    - client events: ``{"event": "message" | "users" | ..., "data": ...}``
      as sent over the WebSocket transport.
"""
from enum import Enum
from typing import Any, List, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator


class MessageKind(str, Enum):
    """Who produced a message.

    Attributes:
        USER: Text submitted by a participant.
        SYSTEM: Join/leave announcement produced by the relay.
    """
    USER = "user"
    SYSTEM = "system"


class Message(BaseModel):
    """A single history entry. Immutable once created."""
    model_config = ConfigDict(frozen=True)

    author: str = Field(..., description="Username of the author")
    text: str = Field(..., description="Message text")
    kind: MessageKind = Field(default=MessageKind.USER, description="user or system")

    @classmethod
    def system(cls, username: str, text: str) -> "Message":
        return cls(author=username, text=text, kind=MessageKind.SYSTEM)

    def to_wire(self) -> dict:
        """Client-facing shape: ``{user, message, kind}``."""
        return {"user": self.author, "message": self.text, "kind": self.kind.value}


ChannelName = Literal["chat", "presence"]


class ChannelEvent(BaseModel):
    """Envelope carried on a pub/sub channel. Never persisted.

    ``payload`` is a Message on the chat channel and the refreshed roster on
    the presence channel.
    """
    channel: ChannelName
    payload: Union[Message, List[str]]

    @model_validator(mode="after")
    def _payload_matches_channel(self) -> "ChannelEvent":
        if (self.channel == "chat") != isinstance(self.payload, Message):
            raise ValueError(f"payload does not match channel {self.channel!r}")
        return self

    def to_client_event(self) -> dict:
        if self.channel == "chat":
            return {"event": "message", "data": self.payload.to_wire()}
        return {"event": "users", "data": list(self.payload)}


# =============================================================================
# HTTP request / response bodies
# =============================================================================


class UserRequest(BaseModel):
    """Body of ``POST /user`` and ``DELETE /user``.

    Fields are untyped here; missing or non-string values are rejected by the
    action pipeline so every malformed request gets the same 400 response.
    """
    user: Any = Field(default=None, description="Username")


class MessageRequest(BaseModel):
    """Body of ``POST /message``."""
    user: Any = Field(default=None, description="Author username")
    msg:  Any = Field(default=None, description="Message text")


class RosterResponse(BaseModel):
    """Result of a successful join or leave."""
    user: str
    users: List[str]
