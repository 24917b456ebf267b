"""Security utilities exposed for convenience."""

from .admin import ADMIN_TOKEN_HEADER, is_admin_token_valid, require_admin_token

__all__ = ["ADMIN_TOKEN_HEADER", "is_admin_token_valid", "require_admin_token"]
