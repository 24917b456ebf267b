"""SQLAlchemy declarative base and chat models.

This package hosts the SQLAlchemy models used by the relay.  It exposes a
single declarative ``Base`` class that other modules can import when creating
tables.  Individual models live in dedicated modules within this package.
"""

from __future__ import annotations

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy declarative models."""


# Re-export the chat model for convenience so callers can import it via
# ``from app.models import ChatMessageRecord`` instead of touching private modules.
from .chat import ChatMessageRecord


__all__ = [
    "Base",
    "ChatMessageRecord",
]
