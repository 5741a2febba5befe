from app.models.billing import (
    BillingEvent,
    BillingEventType,
    PaymentRead,
    PaymentRecord,
    PaymentStatus,
)
from app.models.subscription import (
    ENTITLED_STATUSES,
    BillingInterval,
    PlanRead,
    Subscription,
    SubscriptionPlan,
    SubscriptionStatus,
)

__all__ = [
    # Subscription
    "Subscription",
    "SubscriptionPlan",
    "SubscriptionStatus",
    "BillingInterval",
    "ENTITLED_STATUSES",
    "PlanRead",
    # Billing
    "PaymentRecord",
    "PaymentRead",
    "PaymentStatus",
    "BillingEvent",
    "BillingEventType",
]
