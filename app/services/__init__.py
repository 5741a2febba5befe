# Services package

from app.services.billing import (
    BillingCommands,
    ReconcileOutcome,
    StripeEventNormalizer,
    SubscriptionReconciler,
)
from app.services.stripe_service import StripeService, stripe_service

__all__ = [
    # Billing pipeline
    "StripeEventNormalizer",
    "SubscriptionReconciler",
    "ReconcileOutcome",
    "BillingCommands",
    # Providers
    "StripeService",
    "stripe_service",
]
