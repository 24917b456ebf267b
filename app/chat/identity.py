"""Session identifiers for live-chat visitors.

A session id is minted by the client and presented on every envelope.  It is
an unguessable UUID4 string, which is what scopes a visitor to its own
conversation; the relay never derives it from anything else.
"""

from __future__ import annotations

import logging
from pathlib import Path
from uuid import uuid4

logger = logging.getLogger(__name__)

DEFAULT_SESSION_ID_MAX_LENGTH = 64


def new_session_id() -> str:
    return str(uuid4())


def is_valid_session_id(value: str | None, max_length: int = DEFAULT_SESSION_ID_MAX_LENGTH) -> bool:
    """Return ``True`` for a non-blank id no longer than ``max_length``."""

    if value is None or not value.strip():
        return False
    return len(value) <= max_length


class SessionIdentity:
    """Client-side session id persisted in a small text file.

    This is the Python counterpart of a browser keeping its chat id in local
    storage: the same file yields the same session across restarts.
    """

    def __init__(self, path: str | Path, *, max_length: int = DEFAULT_SESSION_ID_MAX_LENGTH) -> None:
        self.path = Path(path)
        self.max_length = max_length

    def load(self) -> str | None:
        """Return the stored id, or ``None`` when missing or unusable."""
        try:
            value = self.path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as exc:
            logger.warning("Could not read session id from %s: %s", self.path, exc)
            return None
        return value if is_valid_session_id(value, self.max_length) else None

    def load_or_create(self) -> str:
        session_id = self.load()
        if session_id is not None:
            return session_id
        session_id = new_session_id()
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(session_id, encoding="utf-8")
        except OSError as exc:
            # Still usable for this process; a new id is minted next time.
            logger.warning("Could not persist session id to %s: %s", self.path, exc)
        return session_id

    def reset(self) -> None:
        self.path.unlink(missing_ok=True)


__all__ = [
    "DEFAULT_SESSION_ID_MAX_LENGTH",
    "SessionIdentity",
    "is_valid_session_id",
    "new_session_id",
]
