from app.domain.entitlement_operations import entitlement_ops, is_entitled
from app.domain.plan_operations import plan_ops
from app.domain.subscription_operations import subscription_ops

__all__ = [
    "subscription_ops",
    "plan_ops",
    "entitlement_ops",
    "is_entitled",
]
