"""Stripe payment service for subscription management."""

import logging
from typing import Any

import stripe
from stripe import StripeError

from app.config import settings

logger = logging.getLogger(__name__)

# Initialize Stripe with secret key
stripe.api_key = settings.stripe_secret_key
stripe.api_version = settings.stripe_api_version


class StripeService:
    """
    Handles all Stripe API interactions.

    All methods are static and stateless. Stripe SDK handles connection pooling.
    Failures are logged and re-raised as StripeError; callers decide how to
    present them.
    """

    @staticmethod
    def create_checkout_session(
        user_id: str,
        email: str | None,
        price_id: str,
        plan_id: int,
        interval: str,
    ) -> str:
        """
        Create a Stripe Checkout session for a plan subscription.

        Returns the checkout session URL. The session metadata carries the
        user and plan so the checkout.session.completed webhook can create
        the local subscription without any other lookup.
        """
        metadata = {"userId": user_id, "planId": str(plan_id), "interval": interval}
        params: dict[str, Any] = {
            "mode": "subscription",
            "payment_method_types": ["card"],
            "line_items": [{"price": price_id, "quantity": 1}],
            "success_url": (
                f"{settings.frontend_url}/subscription/success?session_id={{CHECKOUT_SESSION_ID}}"
            ),
            "cancel_url": f"{settings.frontend_url}/subscription/plans",
            "client_reference_id": user_id,
            "metadata": metadata,
            "subscription_data": {
                "trial_period_days": settings.trial_period_days,
                "metadata": {"userId": user_id, "planId": str(plan_id)},
            },
        }
        if email:
            params["customer_email"] = email

        try:
            session = stripe.checkout.Session.create(**params)
            logger.info(
                f"Created checkout session for user {user_id}, plan {plan_id} ({interval})"
            )
            return session.url or ""
        except StripeError as e:
            logger.error(f"Failed to create checkout session: {e}")
            raise

    @staticmethod
    def create_portal_session(customer_id: str, return_url: str | None = None) -> str:
        """
        Create a Stripe Customer Portal session for self-service billing.

        Returns the portal session URL.
        """
        try:
            session = stripe.billing_portal.Session.create(
                customer=customer_id,
                return_url=return_url or f"{settings.frontend_url}/profile",
            )
            return session.url
        except StripeError as e:
            logger.error(f"Failed to create portal session: {e}")
            raise

    @staticmethod
    def set_cancel_at_period_end(stripe_subscription_id: str, cancel: bool) -> None:
        """Schedule (or unschedule) cancellation at the end of the current period."""
        try:
            stripe.Subscription.modify(
                stripe_subscription_id,
                cancel_at_period_end=cancel,
            )
        except StripeError as e:
            logger.error(f"Failed to update subscription {stripe_subscription_id}: {e}")
            raise

    @staticmethod
    def cancel_subscription(stripe_subscription_id: str) -> None:
        """Cancel a Stripe subscription at period end."""
        StripeService.set_cancel_at_period_end(stripe_subscription_id, True)
        logger.info(f"Marked subscription {stripe_subscription_id} for cancellation")

    @staticmethod
    def reactivate_subscription(stripe_subscription_id: str) -> None:
        """Reactivate a subscription that was set to cancel at period end."""
        StripeService.set_cancel_at_period_end(stripe_subscription_id, False)
        logger.info(f"Reactivated subscription {stripe_subscription_id}")

    @staticmethod
    def get_subscription(stripe_subscription_id: str) -> dict[str, Any] | None:
        """Retrieve a Stripe subscription by ID as a plain dict."""
        try:
            sub = stripe.Subscription.retrieve(stripe_subscription_id)
            return dict(sub)
        except StripeError as e:
            logger.error(f"Failed to retrieve subscription: {e}")
            return None


# Singleton instance
stripe_service = StripeService()
