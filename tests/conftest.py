import asyncio
import json
import os
import pathlib
import sys
import tempfile

import pytest
from fastapi.testclient import TestClient

sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))
os.environ.setdefault("LOG_DIR", tempfile.mkdtemp(prefix="relay-logs-"))

from app.chat.registry import Connection, InMemoryConnectionRegistry
from app.chat.relay import RelayProtocolHandler
from app.chat.repository import InMemoryChatMessageRepository
from app.chat.service import ChatMessageService
from app.core.config import RelaySettings, reset_relay_settings_cache
from app.core.rate_limit import limiter

ADMIN_TOKEN = "test-admin-token"


class FakeSocket:
    """Collects envelopes a connection would push to its peer."""

    def __init__(self, *, fail: bool = False) -> None:
        self.sent: list[dict] = []
        self.fail = fail

    async def send_json(self, data) -> None:
        if self.fail:
            raise RuntimeError("socket closed")
        # Round-trip through JSON like a real socket does.
        self.sent.append(json.loads(json.dumps(data)))

    def types(self) -> list[str]:
        return [envelope["type"] for envelope in self.sent]

    def of_type(self, envelope_type: str) -> list[dict]:
        return [envelope for envelope in self.sent if envelope["type"] == envelope_type]


@pytest.fixture(autouse=True)
def _isolated_settings(monkeypatch):
    monkeypatch.setenv("CHAT_ADMIN_TOKEN", ADMIN_TOKEN)
    reset_relay_settings_cache()
    limiter.reset()
    yield
    reset_relay_settings_cache()


@pytest.fixture
def relay_settings() -> RelaySettings:
    return RelaySettings(admin_token=ADMIN_TOKEN, database_url="sqlite+pysqlite:///:memory:")


@pytest.fixture
def repository() -> InMemoryChatMessageRepository:
    return InMemoryChatMessageRepository()


@pytest.fixture
def registry() -> InMemoryConnectionRegistry:
    return InMemoryConnectionRegistry()


@pytest.fixture
def relay(repository, registry, relay_settings) -> RelayProtocolHandler:
    return RelayProtocolHandler(
        ChatMessageService(repository), registry, settings=relay_settings
    )


@pytest.fixture
def connect():
    """Return a factory of connections backed by :class:`FakeSocket`."""

    def _connect(**kwargs) -> Connection:
        return Connection(FakeSocket(**kwargs))

    return _connect


@pytest.fixture
def send(relay):
    """Feed one envelope (a dict) to the relay synchronously."""

    def _send(connection: Connection, envelope) -> None:
        raw = envelope if isinstance(envelope, str) else json.dumps(envelope)
        asyncio.run(relay.handle_text(connection, raw))

    return _send


@pytest.fixture
def relay_app(repository, relay_settings, monkeypatch, tmp_path):
    monkeypatch.setenv("LOG_DIR", str(tmp_path / "logs"))
    from app.main import create_app

    return create_app(repository=repository, settings=relay_settings)


@pytest.fixture
def client(relay_app):
    with TestClient(relay_app) as test_client:
        yield test_client


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return {"X-Admin-Token": ADMIN_TOKEN}

