"""Live-chat relay: message store, scripted dialogue and WebSocket fan-out."""

from . import schemas
from .registry import Connection, InMemoryConnectionRegistry
from .relay import RelayProtocolHandler
from .repository import (
    ChatStoreError,
    InMemoryChatMessageRepository,
    SqlAlchemyChatMessageRepository,
)
from .script import ScriptEngine
from .service import ChatMessageService

__all__ = [
    "ChatMessageService",
    "ChatStoreError",
    "Connection",
    "InMemoryChatMessageRepository",
    "InMemoryConnectionRegistry",
    "RelayProtocolHandler",
    "ScriptEngine",
    "SqlAlchemyChatMessageRepository",
    "schemas",
]
