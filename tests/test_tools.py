"""Tests for the maintenance scripts under ``tools/``."""

import json
import logging
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import update

from app.chat.repository import InMemoryChatMessageRepository, SqlAlchemyChatMessageRepository
from app.core.config import reset_relay_settings_cache
from app.models.chat import ChatMessageRecord
from app.models.session import get_sessionmaker, session_scope
from tools import print_config, purge_chat_sessions


def test_compute_cutoff():
    now = datetime(2026, 3, 1, tzinfo=timezone.utc)
    assert purge_chat_sessions.compute_cutoff(30, now=now) == datetime(
        2026, 1, 30, tzinfo=timezone.utc
    )
    with pytest.raises(ValueError):
        purge_chat_sessions.compute_cutoff(-1)


def test_purge_dry_run_deletes_nothing(caplog):
    repository = InMemoryChatMessageRepository()
    repository.create_message("s1", "visitor", "Bonjour")
    caplog.set_level(logging.INFO, logger="tools.purge_chat_sessions")

    cutoff = datetime.now(timezone.utc) + timedelta(seconds=5)
    assert purge_chat_sessions.purge(repository, cutoff, dry_run=True) == 1

    assert repository.list_session_ids() == ["s1"]
    messages = [r.message for r in caplog.records if r.name == "tools.purge_chat_sessions"]
    assert messages and messages[0].startswith("Dry run: 1 session(s)")


def test_purge_main_against_sqlite(tmp_path):
    db_url = f"sqlite+pysqlite:///{tmp_path / 'chat.db'}"
    factory = get_sessionmaker(db_url)
    assert purge_chat_sessions.main(["--database-url", db_url, "--days", "30"]) == 0

    store = SqlAlchemyChatMessageRepository(factory)
    store.create_message("old", "visitor", "a")
    store.create_message("new", "visitor", "b")
    with session_scope(factory) as session:
        session.execute(
            update(ChatMessageRecord)
            .where(ChatMessageRecord.session_id == "old")
            .values(timestamp=datetime.now(timezone.utc) - timedelta(days=45))
        )

    assert purge_chat_sessions.main(["--database-url", db_url, "--days", "30"]) == 0

    assert store.list_session_ids() == ["new"]


def test_print_config_masks_secrets(monkeypatch, capsys, tmp_path):
    monkeypatch.setenv("LOG_DIR", str(tmp_path))
    monkeypatch.setenv("CHAT_ADMIN_TOKEN", "s3cret")
    monkeypatch.setenv("DATABASE_URL", "postgresql://chat:pw@db/chat")
    reset_relay_settings_cache()

    print_config.main()

    output = json.loads(capsys.readouterr().out)
    assert output["logging"]["log_dir"] == str(tmp_path)
    assert output["relay"]["admin_token"] == "***"
    assert "pw" not in output["relay"]["database_url"]
    assert output["relay"]["database_url"].startswith("postgresql+psycopg://chat:")
