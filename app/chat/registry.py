"""Live connection tracking and fan-out for the chat relay.

The registry holds no business state: it only knows which sockets are open,
whether each belongs to a visitor (bound to one session id) or an admin
(observes every session), and delivers envelopes accordingly.

All mutations and broadcasts run on the event loop thread.  Broadcasts
iterate over a snapshot so a disconnect that lands while a send is awaited
cannot disturb the loop.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any, Protocol
from uuid import uuid4

from starlette.websockets import WebSocketDisconnect

logger = logging.getLogger(__name__)

ROLE_VISITOR = "visitor"
ROLE_ADMIN = "admin"
ROLES = (ROLE_VISITOR, ROLE_ADMIN)


class EnvelopeSender(Protocol):
    """Anything able to push a JSON document to a peer (a WebSocket)."""

    async def send_json(self, data: Any) -> None: ...


class Connection:
    """One live real-time socket and its routing tags."""

    def __init__(self, websocket: EnvelopeSender, *, connection_id: str | None = None) -> None:
        self.websocket = websocket
        self.connection_id = connection_id or uuid4().hex
        self.role: str | None = None
        self.session_id: str | None = None
        self.closed = False

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN

    def mark_closed(self) -> None:
        self.closed = True

    async def send(self, envelope: dict[str, Any]) -> bool:
        """Send ``envelope``; return ``False`` if the peer is gone.

        Closed peers are skipped, never retried.
        """
        if self.closed:
            return False
        try:
            await self.websocket.send_json(envelope)
        except (WebSocketDisconnect, RuntimeError, OSError) as exc:
            self.closed = True
            logger.debug("Dropping send to closed connection %s: %s", self.connection_id, exc)
            return False
        return True

    def __repr__(self) -> str:  # pragma: no cover - debugging helper
        return (
            f"Connection(id={self.connection_id!r}, role={self.role!r}, "
            f"session_id={self.session_id!r})"
        )


class ConnectionRegistry(Protocol):
    """Fan-out contract used by the relay.

    The in-memory implementation serves a single process; a pub/sub backed
    implementation can provide the same interface for several processes.
    """

    def register(
        self, connection: Connection, role: str, session_id: str | None = None
    ) -> None: ...

    def unregister(self, connection: Connection) -> None: ...

    def connections(self) -> list[Connection]: ...

    async def broadcast_to_session(self, session_id: str, envelope: dict[str, Any]) -> int: ...

    async def broadcast_to_admins(self, envelope: dict[str, Any]) -> int: ...


class InMemoryConnectionRegistry:
    """Process-local registry keyed by connection id."""

    def __init__(self) -> None:
        self._connections: dict[str, Connection] = {}

    def register(
        self, connection: Connection, role: str, session_id: str | None = None
    ) -> None:
        """Add or re-tag ``connection``.

        Several connections may share a session id (one per browser tab).
        Admin connections are never bound to a session.
        """
        if role not in ROLES:
            raise ValueError(f"Unknown connection role: {role}")
        connection.role = role
        connection.session_id = session_id if role == ROLE_VISITOR else None
        self._connections[connection.connection_id] = connection
        logger.info(
            "Registered %s connection %s (session=%s, total=%d)",
            role,
            connection.connection_id,
            connection.session_id,
            len(self._connections),
        )

    def unregister(self, connection: Connection) -> None:
        if self._connections.pop(connection.connection_id, None) is not None:
            logger.info(
                "Unregistered connection %s (total=%d)",
                connection.connection_id,
                len(self._connections),
            )

    def connections(self) -> list[Connection]:
        return list(self._connections.values())

    async def broadcast_to_session(self, session_id: str, envelope: dict[str, Any]) -> int:
        """Deliver to the session's visitor connections and to every admin."""
        targets = [
            c
            for c in self.connections()
            if c.role == ROLE_ADMIN or (c.role == ROLE_VISITOR and c.session_id == session_id)
        ]
        return await self._deliver(targets, envelope)

    async def broadcast_to_admins(self, envelope: dict[str, Any]) -> int:
        targets = [c for c in self.connections() if c.role == ROLE_ADMIN]
        return await self._deliver(targets, envelope)

    async def _deliver(self, targets: Iterable[Connection], envelope: dict[str, Any]) -> int:
        delivered = 0
        for connection in targets:
            if await connection.send(envelope):
                delivered += 1
            else:
                self.unregister(connection)
        return delivered


__all__ = [
    "Connection",
    "ConnectionRegistry",
    "EnvelopeSender",
    "InMemoryConnectionRegistry",
    "ROLES",
    "ROLE_ADMIN",
    "ROLE_VISITOR",
]
