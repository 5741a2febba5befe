"""JWT validation and user authentication dependencies.

Tokens are issued by the surrounding application and signed with a shared
secret (HS256 by default). Billing only needs the caller's identity, so no
user row is loaded here.
"""

import logging
from dataclasses import dataclass
from typing import Annotated

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.database import get_db
from app.core.exceptions import UnauthorizedError

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class AuthenticatedUser:
    """Identity extracted from a validated access token."""

    id: str
    email: str | None = None


def decode_access_token(token: str) -> AuthenticatedUser:
    """
    Validate a bearer token and return the identity it carries.

    Raises UnauthorizedError if the signature, expiry or subject is invalid.
    """
    if not settings.jwt_secret:
        logger.error("JWT secret is not configured; rejecting all tokens")
        raise UnauthorizedError()

    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
            options={"verify_aud": False},
        )
    except JWTError as e:
        logger.debug(f"JWT validation failed: {e}")
        raise UnauthorizedError() from None

    user_id = payload.get("sub")
    if not user_id:
        raise UnauthorizedError()

    return AuthenticatedUser(id=str(user_id), email=payload.get("email"))


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> AuthenticatedUser:
    """Require a valid bearer token and return the current user."""
    if not credentials:
        raise UnauthorizedError()
    return decode_access_token(credentials.credentials)


# Type aliases for cleaner dependency injection
DbSession = Annotated[AsyncSession, Depends(get_db)]
CurrentUser = Annotated[AuthenticatedUser, Depends(get_current_user)]
