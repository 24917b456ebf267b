"""Shared-secret authentication for relay administrators."""

from __future__ import annotations

import logging
import secrets

from fastapi import Header, HTTPException, Request, status

from app.core.config import RelaySettings, get_relay_settings

logger = logging.getLogger(__name__)

ADMIN_TOKEN_HEADER = "X-Admin-Token"


def is_admin_token_valid(candidate: str | None, settings: RelaySettings | None = None) -> bool:
    """Compare ``candidate`` with ``CHAT_ADMIN_TOKEN`` in constant time.

    Without a configured token nobody can authenticate as an admin.
    """

    settings = settings or get_relay_settings()
    if not settings.admin_token:
        logger.warning("CHAT_ADMIN_TOKEN is not configured; admin authentication is disabled")
        return False
    if not candidate:
        return False
    return secrets.compare_digest(candidate.encode("utf-8"), settings.admin_token.encode("utf-8"))


async def require_admin_token(
    request: Request,
    x_admin_token: str | None = Header(default=None, alias=ADMIN_TOKEN_HEADER),
) -> None:
    """FastAPI dependency rejecting requests without a valid admin token.

    The token is checked against the settings of the running relay.
    """

    relay = getattr(request.app.state, "relay", None)
    settings = relay.settings if relay is not None else None
    if not is_admin_token_valid(x_admin_token, settings):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid admin token.",
        )


__all__ = ["ADMIN_TOKEN_HEADER", "is_admin_token_valid", "require_admin_token"]
