"""Persistence for live-chat messages.

Two implementations share the :class:`ChatMessageRepository` protocol: a
SQLAlchemy-backed repository used in deployments and an in-memory one used in
tests and local development.  Both are synchronous; the async relay reaches
them through :class:`app.chat.service.ChatMessageService`.
"""

from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Any, Protocol

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from ..models.chat import SENDER_VISITOR, SENDERS, ChatMessageRecord
from ..models.session import session_scope
from . import schemas


class ChatStoreError(RuntimeError):
    """Raised when the message store cannot complete an operation."""


class ChatMessageRepository(Protocol):
    """Operations the relay needs from the message store."""

    def create_message(
        self,
        session_id: str,
        sender: str,
        body: str,
        *,
        read: bool = False,
        metadata: dict[str, Any] | None = None,
    ) -> schemas.ChatMessage: ...

    def list_session_messages(self, session_id: str) -> list[schemas.ChatMessage]: ...

    def count_unread(self, session_id: str | None = None) -> int: ...

    def mark_session_read(self, session_id: str) -> int: ...

    def list_session_ids(self) -> list[str]: ...

    def purge_sessions_before(self, cutoff: datetime) -> int: ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _check_sender(sender: str) -> None:
    if sender not in SENDERS:
        raise ValueError(f"Unknown sender: {sender!r}")


def _as_utc(value: datetime) -> datetime:
    # SQLite drops tzinfo on the way back.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class SqlAlchemyChatMessageRepository:
    """Stores chat messages through a SQLAlchemy session factory."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def create_message(
        self,
        session_id: str,
        sender: str,
        body: str,
        *,
        read: bool = False,
        metadata: dict[str, Any] | None = None,
    ) -> schemas.ChatMessage:
        """Insert a message and return it with its assigned id and timestamp."""
        _check_sender(sender)
        record = ChatMessageRecord(
            session_id=session_id,
            sender=sender,
            body=body,
            timestamp=_utcnow(),
            read=read,
            message_metadata=metadata,
        )
        try:
            with session_scope(self._session_factory) as session:
                session.add(record)
                session.flush()
                message = self._to_schema(record)
        except SQLAlchemyError as exc:
            raise ChatStoreError(f"Failed to store message for session {session_id}") from exc
        return message

    def list_session_messages(self, session_id: str) -> list[schemas.ChatMessage]:
        """Return a session's history ordered by timestamp, then id."""
        stmt = (
            select(ChatMessageRecord)
            .where(ChatMessageRecord.session_id == session_id)
            .order_by(ChatMessageRecord.timestamp, ChatMessageRecord.id)
        )
        try:
            with session_scope(self._session_factory) as session:
                return [self._to_schema(row) for row in session.scalars(stmt)]
        except SQLAlchemyError as exc:
            raise ChatStoreError(f"Failed to read session {session_id}") from exc

    def count_unread(self, session_id: str | None = None) -> int:
        """Count unread visitor messages, globally or for one session."""
        stmt = select(func.count(ChatMessageRecord.id)).where(
            ChatMessageRecord.sender == SENDER_VISITOR,
            ChatMessageRecord.read.is_(False),
        )
        if session_id is not None:
            stmt = stmt.where(ChatMessageRecord.session_id == session_id)
        try:
            with session_scope(self._session_factory) as session:
                return int(session.scalar(stmt) or 0)
        except SQLAlchemyError as exc:
            raise ChatStoreError("Failed to count unread messages") from exc

    def mark_session_read(self, session_id: str) -> int:
        """Mark every visitor message of ``session_id`` as read."""
        stmt = (
            update(ChatMessageRecord)
            .where(
                ChatMessageRecord.session_id == session_id,
                ChatMessageRecord.sender == SENDER_VISITOR,
                ChatMessageRecord.read.is_(False),
            )
            .values(read=True)
        )
        try:
            with session_scope(self._session_factory) as session:
                result = session.execute(stmt)
                return int(result.rowcount or 0)
        except SQLAlchemyError as exc:
            raise ChatStoreError(f"Failed to mark session {session_id} as read") from exc

    def list_session_ids(self) -> list[str]:
        """Return distinct session ids, most recently active first."""
        last_activity = func.max(ChatMessageRecord.timestamp)
        stmt = (
            select(ChatMessageRecord.session_id)
            .group_by(ChatMessageRecord.session_id)
            .order_by(last_activity.desc(), func.max(ChatMessageRecord.id).desc())
        )
        try:
            with session_scope(self._session_factory) as session:
                return list(session.scalars(stmt))
        except SQLAlchemyError as exc:
            raise ChatStoreError("Failed to list chat sessions") from exc

    def purge_sessions_before(self, cutoff: datetime) -> int:
        """Delete sessions whose last message is older than ``cutoff``."""
        stale = (
            select(ChatMessageRecord.session_id)
            .group_by(ChatMessageRecord.session_id)
            .having(func.max(ChatMessageRecord.timestamp) < _as_utc(cutoff))
        )
        try:
            with session_scope(self._session_factory) as session:
                session_ids = list(session.scalars(stale))
                if not session_ids:
                    return 0
                session.execute(
                    delete(ChatMessageRecord).where(
                        ChatMessageRecord.session_id.in_(session_ids)
                    )
                )
                return len(session_ids)
        except SQLAlchemyError as exc:
            raise ChatStoreError("Failed to purge chat sessions") from exc

    @staticmethod
    def _to_schema(record: ChatMessageRecord) -> schemas.ChatMessage:
        return schemas.ChatMessage(
            id=record.id,
            session_id=record.session_id,
            sender=record.sender,
            body=record.body,
            timestamp=_as_utc(record.timestamp),
            read=record.read,
            metadata=record.message_metadata,
        )


class InMemoryChatMessageRepository:
    """Process-local message store used in tests and development."""

    def __init__(self) -> None:
        self._messages: list[schemas.ChatMessage] = []
        self._id_seq = 1
        self._lock = threading.Lock()

    def create_message(
        self,
        session_id: str,
        sender: str,
        body: str,
        *,
        read: bool = False,
        metadata: dict[str, Any] | None = None,
    ) -> schemas.ChatMessage:
        _check_sender(sender)
        with self._lock:
            message = schemas.ChatMessage(
                id=self._id_seq,
                session_id=session_id,
                sender=sender,
                body=body,
                timestamp=_utcnow(),
                read=read,
                metadata=dict(metadata) if metadata is not None else None,
            )
            self._id_seq += 1
            self._messages.append(message)
            return message.model_copy()

    def list_session_messages(self, session_id: str) -> list[schemas.ChatMessage]:
        with self._lock:
            rows = [m for m in self._messages if m.session_id == session_id]
        rows.sort(key=lambda m: (m.timestamp, m.id))
        return [m.model_copy() for m in rows]

    def count_unread(self, session_id: str | None = None) -> int:
        with self._lock:
            return sum(
                1
                for m in self._messages
                if m.sender == SENDER_VISITOR
                and not m.read
                and (session_id is None or m.session_id == session_id)
            )

    def mark_session_read(self, session_id: str) -> int:
        updated = 0
        with self._lock:
            for message in self._messages:
                if (
                    message.session_id == session_id
                    and message.sender == SENDER_VISITOR
                    and not message.read
                ):
                    message.read = True
                    updated += 1
        return updated

    def list_session_ids(self) -> list[str]:
        last_seen: dict[str, tuple[datetime, int]] = {}
        with self._lock:
            for message in self._messages:
                key = (message.timestamp, message.id)
                if message.session_id not in last_seen or key > last_seen[message.session_id]:
                    last_seen[message.session_id] = key
        return sorted(last_seen, key=last_seen.__getitem__, reverse=True)

    def purge_sessions_before(self, cutoff: datetime) -> int:
        with self._lock:
            latest: dict[str, datetime] = {}
            for message in self._messages:
                current = latest.get(message.session_id)
                if current is None or message.timestamp > current:
                    latest[message.session_id] = message.timestamp
            stale = {sid for sid, ts in latest.items() if ts < _as_utc(cutoff)}
            self._messages = [m for m in self._messages if m.session_id not in stale]
        return len(stale)


__all__ = [
    "ChatMessageRepository",
    "ChatStoreError",
    "InMemoryChatMessageRepository",
    "SqlAlchemyChatMessageRepository",
]
