"""Normalized billing events.

Provider-independent vocabulary produced by the normalizer and consumed by
the reconciler. Each event carries the provider event ID (for audit and
duplicate detection) and the provider's creation timestamp.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import TypeAlias


@dataclass(frozen=True, kw_only=True)
class BaseEvent:
    """Fields common to every normalized event."""

    event_id: str  # Provider event ID (evt_...)
    occurred_at: datetime  # Provider event creation time (UTC)


@dataclass(frozen=True, kw_only=True)
class CheckoutCompleted(BaseEvent):
    """A checkout session finished and produced a provider subscription."""

    user_id: str
    plan_id: int
    stripe_customer_id: str | None
    stripe_subscription_id: str
    status: str
    period_start: datetime | None
    period_end: datetime | None
    trial_end: datetime | None


@dataclass(frozen=True, kw_only=True)
class SubscriptionUpdated(BaseEvent):
    """Full snapshot of a subscription's current provider state."""

    stripe_subscription_id: str
    status: str
    period_start: datetime | None
    period_end: datetime | None
    cancel_at_period_end: bool


@dataclass(frozen=True, kw_only=True)
class SubscriptionCanceled(BaseEvent):
    """The provider ended the subscription."""

    stripe_subscription_id: str


@dataclass(frozen=True, kw_only=True)
class PaymentSucceeded(BaseEvent):
    """An invoice for the subscription was paid."""

    stripe_subscription_id: str
    stripe_payment_ref: str
    amount: Decimal
    currency: str
    paid_at: datetime
    payment_method: str | None = None


@dataclass(frozen=True, kw_only=True)
class PaymentFailed(BaseEvent):
    """An invoice payment attempt for the subscription failed."""

    stripe_subscription_id: str


@dataclass(frozen=True, kw_only=True)
class UnhandledEvent(BaseEvent):
    """Event type the reconciler does not act on; acknowledged as a no-op."""

    event_type: str


NormalizedEvent: TypeAlias = (
    CheckoutCompleted
    | SubscriptionUpdated
    | SubscriptionCanceled
    | PaymentSucceeded
    | PaymentFailed
    | UnhandledEvent
)
