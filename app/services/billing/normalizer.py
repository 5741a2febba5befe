"""Stripe webhook normalizer.

Verifies a webhook delivery's signature and maps the Stripe payload onto the
normalized event vocabulary in `events.py`. Nothing here touches the
database; the only outbound call is the optional subscription loader used
when a checkout session references its subscription by ID only.
"""

import json
import logging
from collections.abc import Callable
from decimal import Decimal
from typing import Any

from stripe import SignatureVerificationError, WebhookSignature

from app.config import settings
from app.core.clock import from_timestamp, utcnow
from app.core.exceptions import WebhookAuthenticationError, WebhookPayloadError
from app.models.subscription import SubscriptionStatus
from app.services.billing.events import (
    CheckoutCompleted,
    NormalizedEvent,
    PaymentFailed,
    PaymentSucceeded,
    SubscriptionCanceled,
    SubscriptionUpdated,
    UnhandledEvent,
)

logger = logging.getLogger(__name__)

SubscriptionLoader = Callable[[str], dict[str, Any] | None]

# Stripe subscription statuses -> local statuses
STATUS_MAP: dict[str, str] = {
    "active": SubscriptionStatus.ACTIVE.value,
    "trialing": SubscriptionStatus.TRIALING.value,
    "past_due": SubscriptionStatus.PAST_DUE.value,
    "canceled": SubscriptionStatus.CANCELED.value,
    "incomplete": SubscriptionStatus.INCOMPLETE.value,
    "unpaid": SubscriptionStatus.PAST_DUE.value,
    "paused": SubscriptionStatus.PAST_DUE.value,
    "incomplete_expired": SubscriptionStatus.CANCELED.value,
}

CENTS = Decimal("0.01")


def _ref(value: Any) -> str | None:
    """Extract an ID from a field that may be a bare ID or an expanded object."""
    if isinstance(value, dict):
        value = value.get("id")
    if isinstance(value, str) and value:
        return value
    return None


def _period_bounds(subscription: dict[str, Any]) -> tuple[Any, Any]:
    """
    Read the current period from a subscription object.

    Newer API versions moved the period onto subscription items, so fall back
    to the first item when the top-level fields are absent.
    """
    start = subscription.get("current_period_start")
    end = subscription.get("current_period_end")
    if start is None or end is None:
        items = (subscription.get("items") or {}).get("data") or []
        if items and isinstance(items[0], dict):
            start = start if start is not None else items[0].get("current_period_start")
            end = end if end is not None else items[0].get("current_period_end")
    return from_timestamp(start), from_timestamp(end)


def _invoice_subscription(invoice: dict[str, Any]) -> str | None:
    """Subscription ID an invoice belongs to, across API versions."""
    ref = _ref(invoice.get("subscription"))
    if ref:
        return ref
    details = (invoice.get("parent") or {}).get("subscription_details") or {}
    return _ref(details.get("subscription"))


class StripeEventNormalizer:
    """Turns raw Stripe webhook deliveries into normalized events."""

    def __init__(
        self,
        webhook_secret: str,
        subscription_loader: SubscriptionLoader | None = None,
        tolerance: int = 300,
    ):
        self.webhook_secret = webhook_secret
        self.subscription_loader = subscription_loader
        self.tolerance = tolerance

    def normalize(self, payload: bytes, signature: str) -> NormalizedEvent:
        """
        Verify and normalize one webhook delivery.

        Raises WebhookAuthenticationError if the signature does not match,
        WebhookPayloadError if the body is not a well-formed Stripe event.
        """
        body = self.verify(payload, signature)
        try:
            event = json.loads(body)
        except ValueError:
            raise WebhookPayloadError("Webhook body is not valid JSON") from None
        return self.normalize_event(event)

    def verify(self, payload: bytes, signature: str) -> str:
        """Check the Stripe-Signature header and return the decoded body."""
        if not self.webhook_secret:
            raise WebhookAuthenticationError("Webhook secret is not configured")
        if not signature:
            raise WebhookAuthenticationError("Missing Stripe-Signature header")

        try:
            body = payload.decode("utf-8")
        except UnicodeDecodeError:
            raise WebhookPayloadError("Webhook body is not UTF-8") from None

        try:
            WebhookSignature.verify_header(body, signature, self.webhook_secret, self.tolerance)
        except SignatureVerificationError as e:
            logger.warning(f"Webhook signature verification failed: {e}")
            raise WebhookAuthenticationError("Invalid webhook signature") from None
        return body

    def normalize_event(self, event: Any) -> NormalizedEvent:
        """Map an already-verified Stripe event dict onto the internal vocabulary."""
        if not isinstance(event, dict):
            raise WebhookPayloadError("Webhook body is not an event object")

        event_id = event.get("id")
        event_type = event.get("type")
        data = event.get("data")
        obj = data.get("object") if isinstance(data, dict) else None
        if not event_id or not event_type or not isinstance(obj, dict):
            raise WebhookPayloadError("Event is missing id, type or data.object")

        meta = {
            "event_id": str(event_id),
            "occurred_at": from_timestamp(event.get("created")) or utcnow(),
        }

        if event_type == "checkout.session.completed":
            return self._checkout_completed(obj, meta)
        elif event_type == "customer.subscription.updated":
            return self._subscription_updated(obj, meta)
        elif event_type == "customer.subscription.deleted":
            return SubscriptionCanceled(stripe_subscription_id=self._require_id(obj), **meta)
        elif event_type in ("invoice.payment_succeeded", "invoice.paid"):
            return self._payment_succeeded(obj, meta, str(event_type))
        elif event_type == "invoice.payment_failed":
            subscription_id = _invoice_subscription(obj)
            if not subscription_id:
                return UnhandledEvent(event_type=str(event_type), **meta)
            return PaymentFailed(stripe_subscription_id=subscription_id, **meta)

        logger.debug(f"Unhandled webhook event type: {event_type}")
        return UnhandledEvent(event_type=str(event_type), **meta)

    # ─────────────────────────────────────────────────────────────────────────────
    # Per-type mapping
    # ─────────────────────────────────────────────────────────────────────────────

    def _checkout_completed(self, session: dict[str, Any], meta: dict[str, Any]) -> NormalizedEvent:
        if session.get("mode", "subscription") != "subscription":
            return UnhandledEvent(event_type="checkout.session.completed", **meta)

        metadata = session.get("metadata") or {}
        user_id = metadata.get("userId") or session.get("client_reference_id")
        subscription_id = _ref(session.get("subscription"))
        if not user_id or not subscription_id:
            raise WebhookPayloadError("Checkout session is missing userId or subscription")

        try:
            plan_id = int(metadata.get("planId") or settings.default_plan_id)
        except (TypeError, ValueError):
            raise WebhookPayloadError("Checkout session has a non-numeric planId") from None

        subscription = session.get("subscription")
        if not isinstance(subscription, dict):
            subscription = self._load_subscription(subscription_id)

        period_start, period_end = _period_bounds(subscription)
        return CheckoutCompleted(
            user_id=str(user_id),
            plan_id=plan_id,
            stripe_customer_id=_ref(session.get("customer")) or _ref(subscription.get("customer")),
            stripe_subscription_id=subscription_id,
            status=self._status(subscription),
            period_start=period_start,
            period_end=period_end,
            trial_end=from_timestamp(subscription.get("trial_end")),
            **meta,
        )

    def _subscription_updated(self, subscription: dict[str, Any], meta: dict[str, Any]) -> SubscriptionUpdated:
        period_start, period_end = _period_bounds(subscription)
        return SubscriptionUpdated(
            stripe_subscription_id=self._require_id(subscription),
            status=self._status(subscription),
            period_start=period_start,
            period_end=period_end,
            cancel_at_period_end=bool(subscription.get("cancel_at_period_end", False)),
            **meta,
        )

    def _payment_succeeded(
        self, invoice: dict[str, Any], meta: dict[str, Any], event_type: str
    ) -> NormalizedEvent:
        subscription_id = _invoice_subscription(invoice)
        if not subscription_id:
            # One-off invoice, not part of a subscription lifecycle
            return UnhandledEvent(event_type=event_type, **meta)

        payment_ref = _ref(invoice.get("payment_intent")) or _ref(invoice.get("id"))
        if not payment_ref:
            raise WebhookPayloadError("Invoice has neither a payment intent nor an id")

        try:
            amount = (Decimal(int(invoice.get("amount_paid") or 0)) / 100).quantize(CENTS)
        except (TypeError, ValueError):
            raise WebhookPayloadError("Invoice amount_paid is not an integer") from None

        transitions = invoice.get("status_transitions") or {}
        method_types = invoice.get("payment_method_types") or []

        return PaymentSucceeded(
            stripe_subscription_id=subscription_id,
            stripe_payment_ref=payment_ref,
            amount=amount,
            currency=str(invoice.get("currency") or settings.default_currency).upper(),
            paid_at=from_timestamp(transitions.get("paid_at")) or meta["occurred_at"],
            payment_method=method_types[0] if method_types else "card",
            **meta,
        )

    # ─────────────────────────────────────────────────────────────────────────────
    # Helpers
    # ─────────────────────────────────────────────────────────────────────────────

    def _load_subscription(self, subscription_id: str) -> dict[str, Any]:
        if self.subscription_loader is None:
            raise WebhookPayloadError(
                f"Checkout session does not embed subscription {subscription_id}"
            )
        subscription = self.subscription_loader(subscription_id)
        if not subscription:
            raise WebhookPayloadError(f"Could not load subscription {subscription_id}")
        return subscription

    @staticmethod
    def _require_id(obj: dict[str, Any]) -> str:
        ref = _ref(obj.get("id"))
        if not ref:
            raise WebhookPayloadError("Subscription object is missing its id")
        return ref

    @staticmethod
    def _status(subscription: dict[str, Any]) -> str:
        provider_status = subscription.get("status")
        if provider_status not in STATUS_MAP:
            raise WebhookPayloadError(f"Unknown subscription status: {provider_status!r}")
        return STATUS_MAP[provider_status]
