"""Protocol handler for the live-chat relay.

One :class:`RelayProtocolHandler` serves every connection of the process.  It
decodes an inbound envelope, applies its effect on the message store, then
fans out the resulting envelopes through the connection registry.  A message
is always persisted before it is broadcast, so anything a client sees can be
fetched again with ``get_session_messages``.

Invalid envelopes are answered with an ``error`` envelope sent to the
originating connection only; the connection stays open.
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from collections.abc import Awaitable, Callable
from typing import Any

from ..core.config import RelaySettings, get_relay_settings
from ..models.chat import SENDER_ADMIN, SENDER_SCRIPT, SENDER_VISITOR
from ..security.admin import is_admin_token_valid
from . import envelopes
from .envelopes import EnvelopeError
from .registry import ROLE_ADMIN, ROLE_VISITOR, Connection, ConnectionRegistry
from .repository import ChatStoreError
from .schemas import CustomerInfo, to_wire
from .script import LIVE_CHAT_REQUEST_KIND, ScriptEngine, ScriptTransition
from .service import ChatMessageService

logger = logging.getLogger(__name__)

STORE_UNAVAILABLE_MESSAGE = "Message store unavailable, please retry."
ADMIN_REQUIRED_MESSAGE = "Admin authentication required."

_Handler = Callable[[Connection, Any], Awaitable[None]]


def live_chat_notice(profile: CustomerInfo) -> str:
    """Text shown to admins when a visitor asks for a live agent."""

    who = profile.name or "Un visiteur"
    if profile.company:
        who = f"{who} ({profile.company})"
    return f"{who} souhaite parler avec un conseiller en ligne."


class RelayProtocolHandler:
    """Dispatches inbound envelopes by ``type``."""

    def __init__(
        self,
        service: ChatMessageService,
        registry: ConnectionRegistry,
        *,
        script_engine: ScriptEngine | None = None,
        settings: RelaySettings | None = None,
    ) -> None:
        self._service = service
        self._registry = registry
        self._script = script_engine or ScriptEngine()
        self._settings = settings or get_relay_settings()
        self._script_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )
        self._handlers: dict[str, _Handler] = {
            "identify": self._on_identify,
            "chat_message": self._on_chat_message,
            "mark_read": self._on_mark_read,
            "get_session_messages": self._on_get_session_messages,
            "admin_get_sessions": self._on_admin_get_sessions,
            "live_chat_request": self._on_live_chat_request,
        }

    @property
    def service(self) -> ChatMessageService:
        return self._service

    @property
    def registry(self) -> ConnectionRegistry:
        return self._registry

    @property
    def settings(self) -> RelaySettings:
        return self._settings

    async def handle_text(self, connection: Connection, raw: str | bytes) -> None:
        """Process one inbound frame from ``connection``."""

        try:
            envelope = envelopes.parse_envelope(raw)
            await self._handlers[envelope.type](connection, envelope)
        except EnvelopeError as exc:
            logger.info(
                "Rejected envelope from connection %s: %s",
                connection.connection_id,
                exc.message,
            )
            await connection.send(envelopes.error_envelope(exc.message))
        except ChatStoreError:
            logger.exception(
                "Message store failure while serving connection %s",
                connection.connection_id,
            )
            await connection.send(envelopes.error_envelope(STORE_UNAVAILABLE_MESSAGE))

    def disconnect(self, connection: Connection) -> None:
        connection.mark_closed()
        self._registry.unregister(connection)

    # ------------------------------------------------------------------
    # Validation helpers

    def _check_session_id(self, session_id: str | None) -> str:
        if session_id is None or not session_id.strip():
            raise EnvelopeError("sessionId is required.")
        if len(session_id) > self._settings.session_id_max_length:
            raise EnvelopeError("Invalid sessionId.")
        return session_id

    def _bind_visitor(self, connection: Connection, session_id: str) -> None:
        """Register an anonymous or unbound connection as a visitor of ``session_id``.

        Admins and visitors already bound to a session keep their tags.
        """
        if connection.role is None or (
            connection.role == ROLE_VISITOR and connection.session_id is None
        ):
            self._registry.register(connection, ROLE_VISITOR, session_id)

    def _has_admins(self) -> bool:
        return any(c.is_admin for c in self._registry.connections())

    async def _push_unread_count(self) -> None:
        if not self._has_admins():
            return
        count = await self._service.unread_count()
        await self._registry.broadcast_to_admins(envelopes.unread_count_envelope(count))

    # ------------------------------------------------------------------
    # Envelope handlers

    async def _on_identify(
        self, connection: Connection, envelope: envelopes.IdentifyEnvelope
    ) -> None:
        if envelope.client_type == ROLE_ADMIN:
            if is_admin_token_valid(envelope.admin_token, self._settings):
                self._registry.register(connection, ROLE_ADMIN)
                await connection.send(envelopes.admin_authenticated_envelope(True))
                count = await self._service.unread_count()
                await connection.send(envelopes.unread_count_envelope(count))
                return
            logger.warning(
                "Admin authentication failed for connection %s", connection.connection_id
            )
            if connection.role != ROLE_VISITOR:
                self._registry.register(connection, ROLE_VISITOR)
            await connection.send(
                envelopes.admin_authenticated_envelope(False, "Invalid admin token.")
            )
            return

        session_id = None
        if envelope.session_id is not None:
            session_id = self._check_session_id(envelope.session_id)
        self._registry.register(connection, ROLE_VISITOR, session_id)

    async def _on_chat_message(
        self, connection: Connection, envelope: envelopes.ChatMessageEnvelope
    ) -> None:
        payload = envelope.payload
        session_id = self._check_session_id(payload.session_id)
        if not payload.message.strip():
            raise EnvelopeError("Message cannot be empty.")
        if len(payload.message) > self._settings.max_message_length:
            raise EnvelopeError("Message too long.")
        if payload.sender == SENDER_ADMIN and not connection.is_admin:
            raise EnvelopeError(ADMIN_REQUIRED_MESSAGE)
        if not connection.is_admin:
            self._bind_visitor(connection, session_id)

        message = await self._service.add_message(
            session_id,
            payload.sender,
            payload.message,
            read=payload.sender != SENDER_VISITOR,
            metadata=payload.metadata,
        )
        await self._registry.broadcast_to_session(
            session_id, envelopes.chat_message_envelope(message)
        )
        await self._push_unread_count()

        if payload.sender == SENDER_VISITOR:
            await self._advance_script(connection, session_id)

    async def _on_mark_read(
        self, connection: Connection, envelope: envelopes.SessionEnvelope
    ) -> None:
        session_id = self._check_session_id(envelope.session_id)
        if not connection.is_admin:
            self._bind_visitor(connection, session_id)
        updated = await self._service.mark_read(session_id)
        logger.debug("Marked %d message(s) read in session %s", updated, session_id)
        await self._push_unread_count()

    async def _on_get_session_messages(
        self, connection: Connection, envelope: envelopes.SessionEnvelope
    ) -> None:
        session_id = self._check_session_id(envelope.session_id)
        if not connection.is_admin:
            self._bind_visitor(connection, session_id)
        messages = await self._service.get_session_messages(session_id)
        await connection.send(envelopes.session_messages_envelope(session_id, messages))

    async def _on_admin_get_sessions(
        self, connection: Connection, envelope: envelopes.AdminGetSessionsEnvelope
    ) -> None:
        if not connection.is_admin:
            raise EnvelopeError(ADMIN_REQUIRED_MESSAGE)
        sessions = await self._service.list_sessions()
        await connection.send(envelopes.chat_sessions_envelope(sessions))

    async def _on_live_chat_request(
        self, connection: Connection, envelope: envelopes.LiveChatRequestEnvelope
    ) -> None:
        payload = envelope.payload
        session_id = self._check_session_id(payload.session_id)
        if not connection.is_admin:
            self._bind_visitor(connection, session_id)
        await self._request_live_chat(connection, session_id, payload.customer_info)

    # ------------------------------------------------------------------
    # Script and live-agent requests

    def _script_lock(self, session_id: str) -> asyncio.Lock:
        lock = self._script_locks.get(session_id)
        if lock is None:
            lock = self._script_locks[session_id] = asyncio.Lock()
        return lock

    async def _advance_script(self, connection: Connection, session_id: str) -> None:
        """Emit the prompt owed to the session's first unanswered visitor reply.

        Advances of one session are serialized, so concurrent replies from
        several tabs yield a single prompt.
        """
        if not self._settings.script_enabled:
            return
        async with self._script_lock(session_id):
            history = await self._service.get_session_messages(session_id)
            transition = self._script.pending_transition(history)
            if transition is None:
                return
            await self._emit_prompt(connection, session_id, transition)

    async def _emit_prompt(
        self, connection: Connection, session_id: str, transition: ScriptTransition
    ) -> None:
        if transition.live_chat_requested:
            await self._request_live_chat(connection, session_id, transition.profile)
        prompt = await self._service.add_message(
            session_id,
            SENDER_SCRIPT,
            transition.prompt,
            read=True,
            metadata=transition.metadata(),
        )
        logger.debug(
            "Script advanced session %s to step %s", session_id, transition.step.value
        )
        await self._registry.broadcast_to_session(
            session_id, envelopes.chat_message_envelope(prompt)
        )

    async def _request_live_chat(
        self, connection: Connection, session_id: str, profile: CustomerInfo
    ) -> None:
        """Record a live-agent request, alert admins and acknowledge the requester."""

        notice = live_chat_notice(profile)
        stored = await self._service.add_message(
            session_id,
            SENDER_SCRIPT,
            notice,
            read=True,
            metadata={"kind": LIVE_CHAT_REQUEST_KIND, "customerInfo": to_wire(profile)},
        )
        delivered = await self._registry.broadcast_to_admins(
            envelopes.admin_notification_envelope(session_id, profile, notice, stored.timestamp)
        )
        logger.info(
            "Live chat requested for session %s (%d admin(s) notified)", session_id, delivered
        )
        if delivered:
            ack = "Votre demande a été transmise à nos conseillers."
        else:
            ack = (
                "Aucun conseiller n'est connecté pour le moment, "
                "votre demande a bien été enregistrée."
            )
        await connection.send(
            envelopes.live_chat_request_ack(session_id, success=True, message=ack)
        )


__all__ = [
    "ADMIN_REQUIRED_MESSAGE",
    "RelayProtocolHandler",
    "STORE_UNAVAILABLE_MESSAGE",
    "live_chat_notice",
]
