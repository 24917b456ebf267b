"""Runtime configuration for the live-chat relay."""

from __future__ import annotations

import dataclasses
import os
from functools import lru_cache

DEFAULT_DATABASE_URL = "sqlite+pysqlite:///./chat.db"


def as_sqlalchemy_url(db_url: str) -> str:
    """Return a SQLAlchemy URL that uses the ``psycopg`` driver for PostgreSQL."""

    if db_url.startswith("postgresql+psycopg://"):
        return db_url
    if db_url.startswith(("postgresql://", "postgres://")):
        return "postgresql+psycopg://" + db_url.split("://", 1)[1]
    return db_url


def _env_flag(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


@dataclasses.dataclass(frozen=True)
class RelaySettings:
    """Settings consumed by the relay, its HTTP routes and the tooling."""

    admin_token: str | None
    database_url: str = DEFAULT_DATABASE_URL
    script_enabled: bool = True
    max_message_length: int = 5000
    session_id_max_length: int = 64
    history_rate_limit: str = "30/minute"


@lru_cache(maxsize=1)
def get_relay_settings() -> RelaySettings:
    """Load settings from the environment with development defaults."""

    admin_token = os.getenv("CHAT_ADMIN_TOKEN") or None
    return RelaySettings(
        admin_token=admin_token,
        database_url=as_sqlalchemy_url(os.getenv("DATABASE_URL") or DEFAULT_DATABASE_URL),
        script_enabled=_env_flag("CHAT_SCRIPT_ENABLED", True),
        max_message_length=int(os.getenv("CHAT_MAX_MESSAGE_LENGTH", "5000")),
        session_id_max_length=int(os.getenv("SESSION_ID_MAX_LENGTH", "64")),
        history_rate_limit=os.getenv("CHAT_HISTORY_RATE_LIMIT", "30/minute"),
    )


def reset_relay_settings_cache() -> None:
    """Clear cached settings; useful in tests when env vars change."""

    get_relay_settings.cache_clear()


__all__ = [
    "DEFAULT_DATABASE_URL",
    "RelaySettings",
    "as_sqlalchemy_url",
    "get_relay_settings",
    "reset_relay_settings_cache",
]
