"""Subscription-based access gating dependencies."""

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db
from app.core.exceptions import ForbiddenError
from app.domain.entitlement_operations import entitlement_ops

from .auth import AuthenticatedUser, get_current_user

SUBSCRIPTION_REQUIRED = "SUBSCRIPTION_REQUIRED"


async def require_premium(
    current_user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> AuthenticatedUser:
    """
    Dependency that requires an active premium subscription.

    Usage:
        @router.get("/wines/premium", dependencies=[Depends(require_premium)])

    Raises:
        UnauthorizedError (401): No valid bearer token
        ForbiddenError (403): Valid user without an active subscription
    """
    if not await entitlement_ops.has_active_subscription(db, current_user.id):
        raise ForbiddenError(
            "An active premium subscription is required to access this content",
            cause=SUBSCRIPTION_REQUIRED,
        )
    return current_user
