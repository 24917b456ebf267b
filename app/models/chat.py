"""SQLAlchemy model for persisted live-chat messages.

Every message exchanged on the relay is stored as one row.  Sessions are not
stored separately: a session is the set of rows sharing a ``session_id`` and
its summary (unread count, last activity) is derived at query time.
"""

from __future__ import annotations

import datetime as dt
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, Index, Integer, String, Text, false
from sqlalchemy.orm import Mapped, mapped_column

from . import Base

SENDER_VISITOR = "visitor"
SENDER_ADMIN = "admin"
SENDER_SCRIPT = "script"
SENDERS = (SENDER_VISITOR, SENDER_ADMIN, SENDER_SCRIPT)


def _utcnow() -> dt.datetime:
    """Return the current UTC timestamp with timezone awareness."""

    return dt.datetime.now(dt.timezone.utc)


class ChatMessageRecord(Base):
    """A single chat message persisted under a visitor session.

    Attributes:
        id: Monotonic primary key assigned at insert time.
        session_id: Opaque client-generated identifier grouping a conversation.
        sender: One of ``visitor``, ``admin`` or ``script``.
        body: Message text, never empty after trimming.
        timestamp: Insert time, used to order a session's history.
        read: Whether an admin has observed this visitor message.
        message_metadata: Optional JSON attachment (script step, profile).
    """

    __tablename__ = "chat_messages"
    __table_args__ = (
        Index("ix_chat_messages_session_timestamp", "session_id", "timestamp"),
        Index("ix_chat_messages_unread", "sender", "read"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(String(length=128), nullable=False)
    sender: Mapped[str] = mapped_column(String(length=16), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    timestamp: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    read: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=false()
    )
    # ``metadata`` is reserved on declarative classes.
    message_metadata: Mapped[dict[str, Any] | None] = mapped_column(
        "metadata", JSON, nullable=True
    )


__all__ = [
    "ChatMessageRecord",
    "SENDERS",
    "SENDER_ADMIN",
    "SENDER_SCRIPT",
    "SENDER_VISITOR",
]
