"""Live-chat relay routes: the ``/ws`` socket and a small HTTP read API."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, WebSocket, status
from pydantic import BaseModel, ConfigDict, Field
from starlette.websockets import WebSocketDisconnect

from ..chat import schemas
from ..chat.envelopes import unread_count_envelope
from ..chat.identity import is_valid_session_id
from ..chat.registry import Connection
from ..chat.relay import RelayProtocolHandler
from ..chat.repository import ChatStoreError
from ..core.config import get_relay_settings
from ..core.rate_limit import limiter
from ..security.admin import require_admin_token

logger = logging.getLogger(__name__)

router = APIRouter(tags=["live-chat"])


class SessionMessages(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(alias="sessionId")
    messages: list[schemas.ChatMessage]


class UnreadCount(BaseModel):
    count: int


class MarkReadResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(alias="sessionId")
    updated: int
    count: int


def get_relay(request: Request) -> RelayProtocolHandler:
    return request.app.state.relay


def _check_session_id(relay: RelayProtocolHandler, session_id: str) -> None:
    if not is_valid_session_id(session_id, relay.settings.session_id_max_length):
        raise HTTPException(status_code=400, detail="Invalid sessionId")


def _store_unavailable(exc: ChatStoreError) -> HTTPException:
    logger.exception("Message store failure: %s", exc)
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail="Message store unavailable",
    )


@router.websocket("/ws")
async def relay_socket(websocket: WebSocket) -> None:
    """Real-time channel shared by visitors and admins.

    Frames from one connection are handled strictly in arrival order.
    """
    relay: RelayProtocolHandler = websocket.app.state.relay
    await websocket.accept()
    connection = Connection(websocket)
    logger.info("Relay connection %s opened", connection.connection_id)
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
            raw = message.get("text")
            if raw is None:
                raw = message.get("bytes") or b""
            await relay.handle_text(connection, raw)
    except WebSocketDisconnect:
        pass
    finally:
        relay.disconnect(connection)
        logger.info("Relay connection %s closed", connection.connection_id)


@router.get(
    "/api/chat/sessions",
    response_model=list[schemas.ChatSession],
    dependencies=[Depends(require_admin_token)],
)
async def list_chat_sessions(
    relay: RelayProtocolHandler = Depends(get_relay),
) -> list[schemas.ChatSession]:
    """List every session, most recently active first."""
    try:
        return await relay.service.list_sessions()
    except ChatStoreError as exc:
        raise _store_unavailable(exc) from exc


@router.get(
    "/api/chat/sessions/{session_id}",
    response_model=schemas.ChatSession,
    dependencies=[Depends(require_admin_token)],
)
async def get_chat_session(
    session_id: str,
    relay: RelayProtocolHandler = Depends(get_relay),
) -> schemas.ChatSession:
    _check_session_id(relay, session_id)
    try:
        session = await relay.service.get_session(session_id)
    except ChatStoreError as exc:
        raise _store_unavailable(exc) from exc
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return session


@router.get("/api/chat/sessions/{session_id}/messages", response_model=SessionMessages)
@limiter.limit(lambda: get_relay_settings().history_rate_limit)
async def get_chat_session_messages(
    request: Request,
    session_id: str,
    relay: RelayProtocolHandler = Depends(get_relay),
) -> SessionMessages:
    """Return a session's history; the session id itself is the credential."""
    _check_session_id(relay, session_id)
    try:
        messages = await relay.service.get_session_messages(session_id)
    except ChatStoreError as exc:
        raise _store_unavailable(exc) from exc
    return SessionMessages(session_id=session_id, messages=messages)


@router.post(
    "/api/chat/sessions/{session_id}/read",
    response_model=MarkReadResult,
    dependencies=[Depends(require_admin_token)],
)
async def mark_chat_session_read(
    session_id: str,
    relay: RelayProtocolHandler = Depends(get_relay),
) -> MarkReadResult:
    _check_session_id(relay, session_id)
    try:
        updated = await relay.service.mark_read(session_id)
        count = await relay.service.unread_count()
    except ChatStoreError as exc:
        raise _store_unavailable(exc) from exc
    await relay.registry.broadcast_to_admins(unread_count_envelope(count))
    return MarkReadResult(session_id=session_id, updated=updated, count=count)


@router.get(
    "/api/chat/unread-count",
    response_model=UnreadCount,
    dependencies=[Depends(require_admin_token)],
)
async def get_unread_count(relay: RelayProtocolHandler = Depends(get_relay)) -> UnreadCount:
    try:
        return UnreadCount(count=await relay.service.unread_count())
    except ChatStoreError as exc:
        raise _store_unavailable(exc) from exc
