"""User-initiated billing commands.

These talk to Stripe on the user's behalf. The provider stays the source of
truth: after a successful Stripe call only cancel_at_period_end is mirrored
locally so the UI reflects the request immediately; status and periods keep
flowing in through webhooks.
"""

import logging

from sqlalchemy.ext.asyncio import AsyncSession
from stripe import StripeError

from app.core.exceptions import BillingProviderError, NotFoundError
from app.domain.plan_operations import plan_ops
from app.domain.subscription_operations import UpsertStatus, subscription_ops
from app.models.billing import BillingEventType, PaymentRecord
from app.models.subscription import BillingInterval, Subscription
from app.services.stripe_service import stripe_service

logger = logging.getLogger(__name__)


class BillingCommands:
    """Checkout, portal, cancel and reactivate for the current user."""

    async def create_checkout(
        self,
        db: AsyncSession,
        user_id: str,
        email: str | None,
        plan_id: int,
        interval: BillingInterval | str,
    ) -> str:
        """Start a Stripe Checkout for a plan. Returns the hosted checkout URL."""
        interval = BillingInterval(interval).value
        plan = await plan_ops.get_active(db, plan_id)
        if plan is None:
            raise NotFoundError("Plan")

        price_id = plan.price_id_for(interval)
        if not price_id:
            raise NotFoundError(f"Price for {interval} billing")

        try:
            return stripe_service.create_checkout_session(
                user_id=user_id,
                email=email,
                price_id=price_id,
                plan_id=plan_id,
                interval=interval,
            )
        except StripeError as e:
            raise BillingProviderError("Could not start checkout") from e

    async def create_portal(self, db: AsyncSession, user_id: str) -> str:
        """Open the Stripe customer portal. Returns the portal URL."""
        subscription = await subscription_ops.get_by_user(db, user_id)
        if subscription is None or not subscription.stripe_customer_id:
            raise NotFoundError("Billing customer")

        try:
            return stripe_service.create_portal_session(subscription.stripe_customer_id)
        except StripeError as e:
            raise BillingProviderError("Could not open billing portal") from e

    async def cancel(self, db: AsyncSession, user_id: str) -> Subscription:
        """Schedule cancellation at the end of the current period."""
        subscription = await self._require_subscription(db, user_id)
        try:
            stripe_service.cancel_subscription(subscription.stripe_subscription_id)
        except StripeError as e:
            raise BillingProviderError("Could not cancel subscription") from e

        return await self._mirror_cancel_flag(
            db, subscription, True, BillingEventType.CANCEL_REQUESTED
        )

    async def reactivate(self, db: AsyncSession, user_id: str) -> Subscription:
        """Undo a scheduled cancellation."""
        subscription = await self._require_subscription(db, user_id)
        try:
            stripe_service.reactivate_subscription(subscription.stripe_subscription_id)
        except StripeError as e:
            raise BillingProviderError("Could not reactivate subscription") from e

        return await self._mirror_cancel_flag(
            db, subscription, False, BillingEventType.REACTIVATE_REQUESTED
        )

    async def get_payment_history(
        self,
        db: AsyncSession,
        user_id: str,
        skip: int = 0,
        limit: int = 50,
    ) -> list[PaymentRecord]:
        """Payments for the user's current subscription, newest first."""
        subscription = await subscription_ops.get_by_user(db, user_id)
        if subscription is None:
            return []
        return await subscription_ops.get_payments(db, subscription.id, skip=skip, limit=limit)

    # ─────────────────────────────────────────────────────────────────────────────
    # Helpers
    # ─────────────────────────────────────────────────────────────────────────────

    @staticmethod
    async def _require_subscription(db: AsyncSession, user_id: str) -> Subscription:
        subscription = await subscription_ops.get_by_user(db, user_id)
        if subscription is None:
            raise NotFoundError("Subscription")
        return subscription

    @staticmethod
    async def _mirror_cancel_flag(
        db: AsyncSession,
        subscription: Subscription,
        cancel: bool,
        event_type: BillingEventType,
    ) -> Subscription:
        result = await subscription_ops.upsert_by_external_ref(
            db,
            subscription.stripe_subscription_id,
            {"cancel_at_period_end": cancel},
        )
        if result.status == UpsertStatus.TERMINAL:
            logger.info(
                f"Subscription {subscription.stripe_subscription_id} is canceled; "
                "local cancel flag left as is"
            )
        elif result.status == UpsertStatus.UPDATED:
            await subscription_ops.log_event(
                db,
                user_id=subscription.user_id,
                event_type=event_type,
                previous_value=result.previous,
                new_value={"cancel_at_period_end": cancel},
            )
        return result.subscription or subscription


billing_commands = BillingCommands()
