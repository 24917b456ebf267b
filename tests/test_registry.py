"""Tests for the in-memory connection registry."""

import asyncio

import pytest

from app.chat.registry import ROLE_ADMIN, ROLE_VISITOR, Connection, InMemoryConnectionRegistry
from conftest import FakeSocket


def _connection(**kwargs) -> Connection:
    return Connection(FakeSocket(**kwargs))


def test_register_tags_connection():
    registry = InMemoryConnectionRegistry()
    visitor = _connection()
    admin = _connection()

    registry.register(visitor, ROLE_VISITOR, "s1")
    registry.register(admin, ROLE_ADMIN, "ignored")

    assert visitor.session_id == "s1"
    assert admin.is_admin
    assert admin.session_id is None
    assert set(registry.connections()) == {visitor, admin}


def test_register_rejects_unknown_role():
    with pytest.raises(ValueError):
        InMemoryConnectionRegistry().register(_connection(), "guest")


def test_unregister_is_idempotent():
    registry = InMemoryConnectionRegistry()
    connection = _connection()
    registry.register(connection, ROLE_VISITOR, "s1")

    registry.unregister(connection)
    registry.unregister(connection)

    assert registry.connections() == []


def test_broadcast_to_session_reaches_tabs_and_admins_once():
    registry = InMemoryConnectionRegistry()
    tab_one, tab_two, other, admin = (_connection() for _ in range(4))
    registry.register(tab_one, ROLE_VISITOR, "s2")
    registry.register(tab_two, ROLE_VISITOR, "s2")
    registry.register(other, ROLE_VISITOR, "s3")
    registry.register(admin, ROLE_ADMIN)

    delivered = asyncio.run(registry.broadcast_to_session("s2", {"type": "ping"}))

    assert delivered == 3
    assert tab_one.websocket.sent == [{"type": "ping"}]
    assert tab_two.websocket.sent == [{"type": "ping"}]
    assert admin.websocket.sent == [{"type": "ping"}]
    assert other.websocket.sent == []


def test_broadcast_to_admins_skips_visitors():
    registry = InMemoryConnectionRegistry()
    visitor, admin = _connection(), _connection()
    registry.register(visitor, ROLE_VISITOR, "s1")
    registry.register(admin, ROLE_ADMIN)

    asyncio.run(registry.broadcast_to_admins({"type": "unread_count", "count": 2}))

    assert visitor.websocket.sent == []
    assert admin.websocket.sent == [{"type": "unread_count", "count": 2}]


def test_failed_send_unregisters_connection():
    registry = InMemoryConnectionRegistry()
    alive, dead = _connection(), _connection(fail=True)
    registry.register(alive, ROLE_ADMIN)
    registry.register(dead, ROLE_ADMIN)

    delivered = asyncio.run(registry.broadcast_to_admins({"type": "ping"}))

    assert delivered == 1
    assert dead.closed
    assert registry.connections() == [alive]


def test_closed_connection_is_skipped():
    connection = _connection()
    connection.mark_closed()

    assert asyncio.run(connection.send({"type": "ping"})) is False
    assert connection.websocket.sent == []
