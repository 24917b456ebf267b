"""Async service layer over the chat message repository."""

from __future__ import annotations

from typing import Any

from starlette.concurrency import run_in_threadpool

from ..models.chat import SENDER_VISITOR
from . import schemas
from .repository import ChatMessageRepository
from .script import compute_state


def summarize_session(
    session_id: str, messages: list[schemas.ChatMessage]
) -> schemas.ChatSession:
    """Derive the :class:`~app.chat.schemas.ChatSession` view of a history."""

    state = compute_state(messages)
    return schemas.ChatSession(
        session_id=session_id,
        messages=messages,
        unread_count=sum(
            1 for m in messages if m.sender == SENDER_VISITOR and not m.read
        ),
        last_activity=max((m.timestamp for m in messages), default=None),
        script_step=state.step.value if state.step else None,
    )


class ChatMessageService:
    """Exposes repository operations as awaitables for the event loop.

    Each call runs the synchronous repository in Starlette's thread pool, so
    other connections keep being served while storage is busy.
    """

    def __init__(self, repository: ChatMessageRepository) -> None:
        self._repository = repository

    @property
    def repository(self) -> ChatMessageRepository:
        return self._repository

    async def add_message(
        self,
        session_id: str,
        sender: str,
        body: str,
        *,
        read: bool = False,
        metadata: dict[str, Any] | None = None,
    ) -> schemas.ChatMessage:
        """Persist a message; id and timestamp are assigned by the store."""
        return await run_in_threadpool(
            self._repository.create_message,
            session_id,
            sender,
            body,
            read=read,
            metadata=metadata,
        )

    async def get_session_messages(self, session_id: str) -> list[schemas.ChatMessage]:
        return await run_in_threadpool(self._repository.list_session_messages, session_id)

    async def unread_count(self, session_id: str | None = None) -> int:
        return await run_in_threadpool(self._repository.count_unread, session_id)

    async def mark_read(self, session_id: str) -> int:
        return await run_in_threadpool(self._repository.mark_session_read, session_id)

    async def get_session(self, session_id: str) -> schemas.ChatSession | None:
        messages = await self.get_session_messages(session_id)
        if not messages:
            return None
        return summarize_session(session_id, messages)

    async def list_sessions(self) -> list[schemas.ChatSession]:
        """Return every known session, most recently active first."""
        return await run_in_threadpool(self._collect_sessions)

    def _collect_sessions(self) -> list[schemas.ChatSession]:
        sessions = []
        for session_id in self._repository.list_session_ids():
            messages = self._repository.list_session_messages(session_id)
            if messages:
                sessions.append(summarize_session(session_id, messages))
        return sessions


__all__ = ["ChatMessageService", "summarize_session"]
