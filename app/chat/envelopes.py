"""Wire envelopes exchanged on the ``/ws`` channel.

Every frame is a UTF-8 JSON object with a mandatory ``type``.  Inbound frames
are validated into the Pydantic models below; outbound frames are built by the
``*_envelope`` helpers so their shape lives in one place.
"""

from __future__ import annotations

import json
from collections.abc import Iterable
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .schemas import ChatMessage, ChatSession, CustomerInfo, Sender, to_wire


class EnvelopeError(Exception):
    """An inbound envelope that cannot be processed.

    ``message`` is safe to send back to the originating connection.
    """

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class _Inbound(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class IdentifyEnvelope(_Inbound):
    type: Literal["identify"]
    client_type: Literal["visitor", "admin"] = Field(alias="clientType")
    session_id: str | None = Field(default=None, alias="sessionId")
    admin_token: str | None = Field(default=None, alias="adminToken")


class ChatMessagePayload(_Inbound):
    """Body of an inbound ``chat_message``.

    ``read`` is accepted for wire compatibility but ignored: the relay stores
    visitor messages unread and admin or script messages read.
    """

    session_id: str = Field(alias="sessionId")
    sender: Sender
    message: str
    metadata: dict[str, Any] | None = None
    read: bool | None = None


class ChatMessageEnvelope(_Inbound):
    type: Literal["chat_message"]
    payload: ChatMessagePayload


class SessionEnvelope(_Inbound):
    """``mark_read`` and ``get_session_messages`` share this shape."""

    type: Literal["mark_read", "get_session_messages"]
    session_id: str = Field(alias="sessionId")


class AdminGetSessionsEnvelope(_Inbound):
    type: Literal["admin_get_sessions"]


class LiveChatRequestPayload(_Inbound):
    session_id: str = Field(alias="sessionId")
    customer_info: CustomerInfo = Field(alias="customerInfo")


class LiveChatRequestEnvelope(_Inbound):
    type: Literal["live_chat_request"]
    payload: LiveChatRequestPayload


INBOUND_MODELS: dict[str, type[_Inbound]] = {
    "identify": IdentifyEnvelope,
    "chat_message": ChatMessageEnvelope,
    "mark_read": SessionEnvelope,
    "get_session_messages": SessionEnvelope,
    "admin_get_sessions": AdminGetSessionsEnvelope,
    "live_chat_request": LiveChatRequestEnvelope,
}


def _describe(envelope_type: str, exc: ValidationError) -> str:
    first = exc.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    detail = first.get("msg", "invalid value")
    if location:
        return f"Invalid {envelope_type} envelope: {location}: {detail}"
    return f"Invalid {envelope_type} envelope: {detail}"


def parse_envelope(raw: str | bytes) -> _Inbound:
    """Decode and validate one inbound frame or raise :class:`EnvelopeError`."""

    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise EnvelopeError("Invalid JSON envelope") from exc
    if not isinstance(data, dict):
        raise EnvelopeError("Envelope must be a JSON object")

    envelope_type = data.get("type")
    if not envelope_type or not isinstance(envelope_type, str):
        raise EnvelopeError("Envelope type is required")
    model = INBOUND_MODELS.get(envelope_type)
    if model is None:
        raise EnvelopeError(f"Unknown envelope type: {envelope_type}")
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        raise EnvelopeError(_describe(envelope_type, exc)) from exc


# ----------------------------------------------------------------------
# Outbound


def chat_message_envelope(message: ChatMessage) -> dict[str, Any]:
    return {"type": "chat_message", "message": to_wire(message)}


def session_messages_envelope(
    session_id: str, messages: Iterable[ChatMessage]
) -> dict[str, Any]:
    return {
        "type": "session_messages",
        "sessionId": session_id,
        "messages": [to_wire(m) for m in messages],
    }


def unread_count_envelope(count: int) -> dict[str, Any]:
    return {"type": "unread_count", "count": count}


def chat_sessions_envelope(sessions: Iterable[ChatSession]) -> dict[str, Any]:
    return {"type": "chat_sessions", "sessions": [to_wire(s) for s in sessions]}


def admin_notification_envelope(
    session_id: str, customer_info: CustomerInfo, message: str, timestamp: datetime
) -> dict[str, Any]:
    return {
        "type": "admin_notification",
        "notification": {
            "type": "live_chat_request",
            "message": message,
            "sessionId": session_id,
            "customerInfo": to_wire(customer_info),
            "timestamp": timestamp.isoformat(),
        },
    }


def live_chat_request_ack(session_id: str, *, success: bool, message: str) -> dict[str, Any]:
    return {
        "type": "live_chat_request_ack",
        "success": success,
        "message": message,
        "sessionId": session_id,
    }


def admin_authenticated_envelope(authenticated: bool, message: str | None = None) -> dict[str, Any]:
    envelope: dict[str, Any] = {
        "type": "admin_authenticated",
        "admin_authenticated": authenticated,
    }
    if message:
        envelope["message"] = message
    return envelope


def error_envelope(message: str) -> dict[str, Any]:
    return {"type": "error", "message": message}


__all__ = [
    "AdminGetSessionsEnvelope",
    "ChatMessageEnvelope",
    "ChatMessagePayload",
    "EnvelopeError",
    "INBOUND_MODELS",
    "IdentifyEnvelope",
    "LiveChatRequestEnvelope",
    "LiveChatRequestPayload",
    "SessionEnvelope",
    "admin_authenticated_envelope",
    "admin_notification_envelope",
    "chat_message_envelope",
    "chat_sessions_envelope",
    "error_envelope",
    "live_chat_request_ack",
    "parse_envelope",
    "session_messages_envelope",
    "unread_count_envelope",
]
