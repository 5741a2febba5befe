"""Billing API endpoints for subscription management via Stripe."""

import logging
from datetime import datetime
from decimal import Decimal

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError

from app.api.deps import CurrentUser, DbSession
from app.config import settings
from app.core.exceptions import (
    TransientStorageError,
    WebhookAuthenticationError,
    WebhookPayloadError,
)
from app.domain.entitlement_operations import entitlement_ops
from app.domain.plan_operations import plan_ops
from app.domain.subscription_operations import subscription_ops
from app.models.billing import PaymentRead
from app.models.subscription import BillingInterval, PlanRead
from app.services.billing import (
    StripeEventNormalizer,
    SubscriptionReconciler,
    UnhandledEvent,
    billing_commands,
    reconciler,
)
from app.services.stripe_service import stripe_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["billing"])


# ─────────────────────────────────────────────────────────────────────────────
# Request/Response Schemas
# ─────────────────────────────────────────────────────────────────────────────


class PlanSummary(BaseModel):
    """Plan display fields attached to a subscription."""

    name: str | None
    description: str | None
    price_monthly: Decimal | None
    price_yearly: Decimal | None


class SubscriptionStatusResponse(BaseModel):
    """Current user's subscription and whether it grants access right now."""

    status: str
    has_access: bool
    plan: PlanSummary | None = None
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    cancel_at_period_end: bool = False
    trial_end: datetime | None = None
    stripe_customer_id: str | None = None
    stripe_subscription_id: str | None = None


class CheckoutRequest(BaseModel):
    """Request to create a checkout session."""

    plan_id: int
    interval: BillingInterval = BillingInterval.MONTHLY


class UrlResponse(BaseModel):
    """Hosted Stripe page to redirect the user to."""

    url: str


class SuccessResponse(BaseModel):
    """Acknowledgement of a subscription command."""

    success: bool = True
    cancel_at_period_end: bool


# ─────────────────────────────────────────────────────────────────────────────
# Dependencies
# ─────────────────────────────────────────────────────────────────────────────


def get_event_normalizer() -> StripeEventNormalizer:
    """Normalizer bound to the configured webhook secret."""
    return StripeEventNormalizer(
        webhook_secret=settings.stripe_webhook_secret,
        subscription_loader=stripe_service.get_subscription,
        tolerance=settings.stripe_webhook_tolerance,
    )


def get_reconciler() -> SubscriptionReconciler:
    return reconciler


# ─────────────────────────────────────────────────────────────────────────────
# Public Endpoints
# ─────────────────────────────────────────────────────────────────────────────


@router.get("/plans", response_model=list[PlanRead])
async def list_plans(db: DbSession) -> list[PlanRead]:
    """
    List all available plans (public endpoint).

    No authentication required.
    """
    plans = await plan_ops.list_active(db)
    return [PlanRead.model_validate(plan) for plan in plans]


# ─────────────────────────────────────────────────────────────────────────────
# Authenticated Endpoints
# ─────────────────────────────────────────────────────────────────────────────


@router.get("/status", response_model=SubscriptionStatusResponse)
async def get_subscription_status(
    db: DbSession,
    current_user: CurrentUser,
) -> SubscriptionStatusResponse:
    """Get the current user's subscription status and access."""
    view = await entitlement_ops.get_subscription_status(db, current_user.id)
    plan = None
    if view.plan is not None:
        plan = PlanSummary(
            name=view.plan.name,
            description=view.plan.description,
            price_monthly=view.plan.price_monthly,
            price_yearly=view.plan.price_yearly,
        )
    return SubscriptionStatusResponse(
        status=view.status,
        has_access=view.has_access,
        plan=plan,
        current_period_start=view.current_period_start,
        current_period_end=view.current_period_end,
        cancel_at_period_end=view.cancel_at_period_end,
        trial_end=view.trial_end,
        stripe_customer_id=view.stripe_customer_id,
        stripe_subscription_id=view.stripe_subscription_id,
    )


@router.post("/checkout", response_model=UrlResponse)
async def create_checkout(
    request: CheckoutRequest,
    db: DbSession,
    current_user: CurrentUser,
) -> UrlResponse:
    """
    Create a Stripe Checkout session for a plan.

    The subscription itself is created when Stripe confirms the checkout
    via webhook, not here.
    """
    url = await billing_commands.create_checkout(
        db,
        user_id=current_user.id,
        email=current_user.email,
        plan_id=request.plan_id,
        interval=request.interval,
    )
    return UrlResponse(url=url)


@router.post("/portal", response_model=UrlResponse)
async def create_portal(
    db: DbSession,
    current_user: CurrentUser,
) -> UrlResponse:
    """Create a Stripe Customer Portal session."""
    url = await billing_commands.create_portal(db, current_user.id)
    return UrlResponse(url=url)


@router.post("/cancel", response_model=SuccessResponse)
async def cancel_subscription(
    db: DbSession,
    current_user: CurrentUser,
) -> SuccessResponse:
    """Cancel the current subscription at the end of the billing period."""
    subscription = await billing_commands.cancel(db, current_user.id)
    return SuccessResponse(cancel_at_period_end=subscription.cancel_at_period_end)


@router.post("/reactivate", response_model=SuccessResponse)
async def reactivate_subscription(
    db: DbSession,
    current_user: CurrentUser,
) -> SuccessResponse:
    """Reactivate a subscription that was set to cancel at period end."""
    subscription = await billing_commands.reactivate(db, current_user.id)
    return SuccessResponse(cancel_at_period_end=subscription.cancel_at_period_end)


@router.get("/payments", response_model=list[PaymentRead])
async def list_payments(
    db: DbSession,
    current_user: CurrentUser,
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=100),
) -> list[PaymentRead]:
    """Get the current user's payment history, newest first."""
    payments = await billing_commands.get_payment_history(
        db, current_user.id, skip=skip, limit=limit
    )
    return [PaymentRead.model_validate(payment) for payment in payments]


# ─────────────────────────────────────────────────────────────────────────────
# Webhook Handler
# ─────────────────────────────────────────────────────────────────────────────


@router.post("/webhooks/stripe")
async def handle_stripe_webhook(
    request: Request,
    db: DbSession,
    normalizer: StripeEventNormalizer = Depends(get_event_normalizer),
    event_reconciler: SubscriptionReconciler = Depends(get_reconciler),
) -> dict[str, str]:
    """
    Handle Stripe webhook events.

    This endpoint is called by Stripe when subscription events occur.
    Verifies the webhook signature before processing.
    No authentication required (verified by Stripe signature).

    Any non-2xx response makes Stripe redeliver, so only storage failures
    (503) and unverifiable deliveries (400) are rejected.
    """
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature", "")

    try:
        event = normalizer.normalize(payload, sig_header)
    except WebhookAuthenticationError:
        raise HTTPException(400, "Invalid webhook signature") from None
    except WebhookPayloadError as e:
        logger.warning(f"Rejected webhook payload: {e}")
        raise HTTPException(400, "Invalid webhook payload") from None

    event_type = event.event_type if isinstance(event, UnhandledEvent) else type(event).__name__
    logger.info(f"Received Stripe webhook: {event_type} ({event.event_id})")

    # Check for duplicate (idempotency)
    try:
        processed = await subscription_ops.has_processed_event(db, event.event_id)
    except SQLAlchemyError as e:
        logger.error(f"Storage failure checking webhook {event.event_id}: {e}")
        raise HTTPException(503, "Temporarily unable to process webhook") from None
    if processed:
        logger.info(f"Skipping duplicate webhook: {event.event_id}")
        return {"status": "already_processed"}

    try:
        outcome = await event_reconciler.apply(db, event)
    except TransientStorageError:
        raise HTTPException(503, "Temporarily unable to process webhook") from None

    return {"status": outcome.value}
