# Subscription lifecycle: webhook normalization, reconciliation, user commands

from app.services.billing.commands import BillingCommands, billing_commands
from app.services.billing.events import (
    BaseEvent,
    CheckoutCompleted,
    NormalizedEvent,
    PaymentFailed,
    PaymentSucceeded,
    SubscriptionCanceled,
    SubscriptionUpdated,
    UnhandledEvent,
)
from app.services.billing.normalizer import StripeEventNormalizer
from app.services.billing.reconciler import (
    ReconcileOutcome,
    SubscriptionReconciler,
    reconciler,
)

__all__ = [
    # Events
    "BaseEvent",
    "CheckoutCompleted",
    "SubscriptionUpdated",
    "SubscriptionCanceled",
    "PaymentSucceeded",
    "PaymentFailed",
    "UnhandledEvent",
    "NormalizedEvent",
    # Pipeline
    "StripeEventNormalizer",
    "SubscriptionReconciler",
    "ReconcileOutcome",
    "reconciler",
    # Commands
    "BillingCommands",
    "billing_commands",
]
