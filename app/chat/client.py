"""Asynchronous client for the live-chat relay.

:class:`RelayClient` speaks the same envelopes as the browser widget and the
admin console.  It identifies itself when the socket opens, asks for the
session history, hands every inbound envelope to a callback and reconnects
with exponential backoff when the connection drops.  Messages sent while
disconnected are kept as drafts and flushed once the socket is back.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections import deque
from collections.abc import Awaitable, Callable
from typing import Any

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from ..models.chat import SENDER_ADMIN, SENDER_VISITOR

logger = logging.getLogger(__name__)

EnvelopeCallback = Callable[[dict[str, Any]], Awaitable[None] | None]


def backoff_delay(attempt: int, *, base: float = 1.0, cap: float = 30.0) -> float:
    """Delay before reconnect ``attempt`` (0-based): ``min(base * 2**attempt, cap)``."""

    return min(base * (2**attempt), cap)


class RelayClient:
    """Visitor or admin connection to ``/ws`` with reconnection."""

    def __init__(
        self,
        url: str,
        *,
        session_id: str | None = None,
        admin_token: str | None = None,
        on_envelope: EnvelopeCallback | None = None,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        max_attempts: int = 5,
        connect: Callable[..., Any] = websockets.connect,
    ) -> None:
        if admin_token is None and not session_id:
            raise ValueError("A visitor client needs a session id")
        self.url = url
        self.session_id = session_id
        self.admin_token = admin_token
        self.on_envelope = on_envelope
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.max_attempts = max_attempts
        self._connect = connect
        self._websocket: Any = None
        self._drafts: deque[dict[str, Any]] = deque()
        self._running = False

    @property
    def is_admin(self) -> bool:
        return self.admin_token is not None

    @property
    def connected(self) -> bool:
        return self._websocket is not None

    @property
    def pending_drafts(self) -> int:
        return len(self._drafts)

    def identify_envelope(self) -> dict[str, Any]:
        if self.is_admin:
            return {"type": "identify", "clientType": "admin", "adminToken": self.admin_token}
        return {"type": "identify", "clientType": "visitor", "sessionId": self.session_id}

    async def run(self) -> None:
        """Connect and listen until :meth:`stop` or retries are exhausted."""

        self._running = True
        attempt = 0
        while self._running:
            try:
                async with self._connect(self.url) as websocket:
                    await self._on_open(websocket)
                    attempt = 0
                    await self._listen(websocket)
                reason: object = "closed by peer"
            except (WebSocketException, OSError) as exc:
                reason = exc
            self._websocket = None
            if not self._running:
                break
            if attempt >= self.max_attempts:
                logger.error("Giving up on %s after %d attempt(s)", self.url, attempt)
                raise ConnectionError(f"Could not reach relay at {self.url}")
            delay = backoff_delay(attempt, base=self.base_delay, cap=self.max_delay)
            attempt += 1
            logger.warning(
                "Relay connection lost (%s). Reconnecting in %.1fs (attempt %d/%d)",
                reason,
                delay,
                attempt,
                self.max_attempts,
            )
            await asyncio.sleep(delay)

    async def stop(self) -> None:
        self._running = False
        websocket, self._websocket = self._websocket, None
        if websocket is not None:
            await websocket.close()

    async def send_message(self, body: str, *, metadata: dict[str, Any] | None = None) -> bool:
        """Send a chat message, or queue it as a draft while disconnected.

        Returns ``True`` when the envelope went out immediately.
        """
        if not self.session_id:
            raise ValueError("send_message needs a session id")
        payload: dict[str, Any] = {
            "sessionId": self.session_id,
            "sender": SENDER_ADMIN if self.is_admin else SENDER_VISITOR,
            "message": body,
        }
        if metadata:
            payload["metadata"] = metadata
        envelope = {"type": "chat_message", "payload": payload}
        if self._websocket is None:
            self._drafts.append(envelope)
            return False
        try:
            await self._send(self._websocket, envelope)
        except ConnectionClosed:
            self._drafts.append(envelope)
            return False
        return True

    async def send(self, envelope: dict[str, Any]) -> None:
        if self._websocket is None:
            raise ConnectionError("Relay client is not connected")
        await self._send(self._websocket, envelope)

    async def _send(self, websocket: Any, envelope: dict[str, Any]) -> None:
        await websocket.send(json.dumps(envelope))

    async def _on_open(self, websocket: Any) -> None:
        self._websocket = websocket
        logger.info("Connected to relay %s", self.url)
        await self._send(websocket, self.identify_envelope())
        if self.is_admin:
            await self._send(websocket, {"type": "admin_get_sessions"})
        else:
            await self._send(
                websocket, {"type": "get_session_messages", "sessionId": self.session_id}
            )
        while self._drafts:
            await self._send(websocket, self._drafts[0])
            self._drafts.popleft()

    async def _listen(self, websocket: Any) -> None:
        async for raw in websocket:
            try:
                envelope = json.loads(raw)
            except json.JSONDecodeError:
                logger.warning("Ignoring non-JSON frame from relay")
                continue
            if self.on_envelope is None:
                continue
            result = self.on_envelope(envelope)
            if asyncio.iscoroutine(result):
                await result


__all__ = ["RelayClient", "backoff_delay"]
