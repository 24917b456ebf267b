"""Pydantic schemas for live-chat messages and derived sessions.

Field names follow the relay's JSON wire format (camelCase) through aliases,
so models can be populated from Python keyword arguments and serialized with
``by_alias=True`` for clients.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

Sender = Literal["visitor", "admin", "script"]


class ChatMessage(BaseModel):
    """A persisted chat message as delivered to clients."""

    model_config = ConfigDict(populate_by_name=True)

    id: int
    session_id: str = Field(alias="sessionId")
    sender: Sender
    body: str = Field(alias="message")
    timestamp: datetime
    read: bool = False
    metadata: dict[str, Any] | None = None


class CustomerInfo(BaseModel):
    """Visitor profile collected by the scripted dialogue.

    ``service_interest`` travels as ``service`` on the wire.
    """

    model_config = ConfigDict(populate_by_name=True)

    name: str = ""
    company: str = ""
    service_interest: str = Field(default="", alias="service")
    phone: str = ""


class ChatSession(BaseModel):
    """Derived view over all messages sharing a session id."""

    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(alias="sessionId")
    messages: list[ChatMessage] = Field(default_factory=list)
    unread_count: int = Field(default=0, alias="unreadCount")
    last_activity: datetime | None = Field(default=None, alias="lastActivity")
    script_step: str | None = Field(default=None, alias="scriptStep")


def to_wire(model: BaseModel) -> dict[str, Any]:
    """Serialize ``model`` into JSON-compatible data using wire aliases."""

    return model.model_dump(mode="json", by_alias=True)


__all__ = ["ChatMessage", "ChatSession", "CustomerInfo", "Sender", "to_wire"]
