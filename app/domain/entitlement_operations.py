"""Entitlement queries - the read side the rest of the application uses.

Access is never stored. It is recomputed from the freshest subscription row
on every call via `is_entitled`, so there is no flag that can drift from the
status and period fields it is derived from.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.clock import as_utc, utcnow
from app.domain.plan_operations import plan_ops
from app.domain.subscription_operations import subscription_ops
from app.models.subscription import ENTITLED_STATUSES, Subscription

NO_SUBSCRIPTION_STATUS = "none"


def is_entitled(subscription: Subscription | None, now: datetime | None = None) -> bool:
    """
    Pure entitlement rule.

    True iff the status is active or trialing AND the current period ends
    after `now`. A row without a confirmed period end grants nothing.
    """
    if subscription is None:
        return False
    if subscription.status not in ENTITLED_STATUSES:
        return False
    period_end = as_utc(subscription.current_period_end)
    if period_end is None:
        return False
    return period_end > as_utc(now or utcnow())  # type: ignore[operator]


@dataclass
class PlanView:
    """Plan display fields."""

    name: str | None
    description: str | None
    price_monthly: Decimal | None
    price_yearly: Decimal | None


@dataclass
class SubscriptionStatusView:
    """Subscription state assembled for presentation."""

    status: str
    has_access: bool
    plan: PlanView | None = None
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    cancel_at_period_end: bool = False
    trial_end: datetime | None = None
    stripe_customer_id: str | None = None
    stripe_subscription_id: str | None = None


class EntitlementOperations:
    """Read-only entitlement accessors."""

    async def has_active_subscription(
        self,
        db: AsyncSession,
        user_id: str,
        now: datetime | None = None,
    ) -> bool:
        """Check if a user currently has premium access."""
        subscription = await subscription_ops.get_by_user(db, user_id)
        return is_entitled(subscription, now)

    async def get_subscription_status(
        self,
        db: AsyncSession,
        user_id: str,
        now: datetime | None = None,
    ) -> SubscriptionStatusView:
        """Get a user's current subscription with its plan's display fields."""
        subscription = await subscription_ops.get_by_user(db, user_id)
        if subscription is None:
            return SubscriptionStatusView(status=NO_SUBSCRIPTION_STATUS, has_access=False)

        plan = await plan_ops.get(db, subscription.plan_id)
        plan_view = None
        if plan is not None:
            plan_view = PlanView(
                name=plan.name,
                description=plan.description,
                price_monthly=plan.price_monthly,
                price_yearly=plan.price_yearly,
            )

        return SubscriptionStatusView(
            status=subscription.status,
            has_access=is_entitled(subscription, now),
            plan=plan_view,
            current_period_start=as_utc(subscription.current_period_start),
            current_period_end=as_utc(subscription.current_period_end),
            cancel_at_period_end=subscription.cancel_at_period_end,
            trial_end=as_utc(subscription.trial_end),
            stripe_customer_id=subscription.stripe_customer_id,
            stripe_subscription_id=subscription.stripe_subscription_id,
        )


entitlement_ops = EntitlementOperations()
