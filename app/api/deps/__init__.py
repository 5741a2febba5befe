"""API dependencies - re-exports from submodules."""

from .auth import (
    AuthenticatedUser,
    CurrentUser,
    DbSession,
    decode_access_token,
    get_current_user,
    security,
)
from .entitlement import SUBSCRIPTION_REQUIRED, require_premium

__all__ = [
    # Auth
    "security",
    "AuthenticatedUser",
    "decode_access_token",
    "get_current_user",
    "DbSession",
    "CurrentUser",
    # Entitlement
    "SUBSCRIPTION_REQUIRED",
    "require_premium",
]
