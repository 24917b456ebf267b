"""Relay log lines reach the rotating ``app.log`` written by ``init_logging``."""

import asyncio
import json
import logging

import pytest

from app.app_logging import init_logging


@pytest.fixture
def app_log(monkeypatch, tmp_path):
    monkeypatch.setenv("LOG_DIR", str(tmp_path))
    app_logger = logging.getLogger("app")
    access_logger = logging.getLogger("uvicorn.access")
    app_logger.handlers.clear()
    yield tmp_path / "app.log"
    for logger in (app_logger, access_logger):
        logger.handlers.clear()
    app_logger.setLevel(logging.NOTSET)


def _flush() -> None:
    for handler in logging.getLogger("app").handlers:
        handler.flush()


def test_relay_events_are_written_as_json(app_log, monkeypatch, relay, connect):
    monkeypatch.setenv("LOG_JSON", "true")
    init_logging()
    connection = connect()

    asyncio.run(
        relay.handle_text(
            connection, '{"type": "identify", "clientType": "admin", "adminToken": "nope"}'
        )
    )
    asyncio.run(relay.handle_text(connection, "not json"))
    _flush()

    records = [json.loads(line) for line in app_log.read_text().splitlines()]
    failed = next(r for r in records if r["message"].startswith("Admin authentication failed"))
    assert failed["logger"] == "app.chat.relay"
    assert failed["level"] == "WARNING"
    assert connection.connection_id in failed["message"]
    rejected = next(r for r in records if r["message"].startswith("Rejected envelope"))
    assert rejected["level"] == "INFO"
    assert rejected["message"].endswith("Invalid JSON envelope")
    assert "nope" not in app_log.read_text()


def test_log_level_filters_relay_events(app_log, monkeypatch, relay, connect):
    monkeypatch.setenv("LOG_LEVEL", "warning")
    init_logging()
    connection = connect()

    asyncio.run(relay.handle_text(connection, "not json"))
    asyncio.run(
        relay.handle_text(
            connection, '{"type": "identify", "clientType": "admin", "adminToken": "nope"}'
        )
    )
    _flush()

    text = app_log.read_text()
    assert "Rejected envelope" not in text
    assert "Admin authentication failed" in text


def test_store_failures_are_logged_with_traceback(app_log, relay, repository, connect, monkeypatch):
    from app.chat.repository import ChatStoreError

    def broken(*args, **kwargs):
        raise ChatStoreError("database is down")

    monkeypatch.setattr(repository, "list_session_messages", broken)
    init_logging()

    asyncio.run(
        relay.handle_text(connect(), '{"type": "get_session_messages", "sessionId": "s1"}')
    )
    _flush()

    text = app_log.read_text()
    assert "Message store failure while serving connection" in text
    assert "ChatStoreError: database is down" in text
