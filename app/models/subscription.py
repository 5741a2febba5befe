"""Subscription models - plan catalog and per-user subscription lifecycle."""

import uuid as uuid_pkg
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import JSON, Column, DateTime, Numeric, String, false, func, true
from sqlmodel import Field, SQLModel


class SubscriptionStatus(str, Enum):
    """Subscription lifecycle states, mirroring the provider's vocabulary."""

    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELED = "canceled"  # Terminal
    INCOMPLETE = "incomplete"


# Statuses that grant access while the paid period has not lapsed
ENTITLED_STATUSES = frozenset({SubscriptionStatus.ACTIVE.value, SubscriptionStatus.TRIALING.value})


class BillingInterval(str, Enum):
    """Checkout billing intervals."""

    MONTHLY = "monthly"
    YEARLY = "yearly"


class SubscriptionPlan(SQLModel, table=True):
    """
    Plan catalog entry.

    Managed outside the billing module (seeded by migration, edited by staff).
    The reconciler only ever references plans by id.
    """

    __tablename__ = "subscription_plans"

    id: int | None = Field(default=None, primary_key=True)
    name: str = Field(max_length=100, nullable=False)
    description: str | None = Field(default=None, nullable=True)

    price_monthly: Decimal = Field(sa_column=Column(Numeric(10, 2), nullable=False))
    price_yearly: Decimal | None = Field(
        default=None, sa_column=Column(Numeric(10, 2), nullable=True)
    )
    stripe_price_id_monthly: str | None = Field(default=None, max_length=255, nullable=True)
    stripe_price_id_yearly: str | None = Field(default=None, max_length=255, nullable=True)
    features: list[str] | None = Field(default=None, sa_column=Column(JSON, nullable=True))
    is_active: bool = Field(
        default=True,
        nullable=False,
        sa_column_kwargs={"server_default": true()},
    )

    created_at: datetime = Field(  # type: ignore[call-overload]
        default_factory=lambda: datetime.now(UTC),
        nullable=False,
        sa_type=DateTime(timezone=True),
        sa_column_kwargs={"server_default": func.now()},
    )
    updated_at: datetime | None = Field(  # type: ignore[call-overload]
        default=None,
        sa_type=DateTime(timezone=True),
        sa_column_kwargs={"onupdate": func.now()},
    )

    def price_id_for(self, interval: str) -> str | None:
        """Stripe price ID for a billing interval, if configured."""
        if interval == BillingInterval.YEARLY.value:
            return self.stripe_price_id_yearly
        if interval == BillingInterval.MONTHLY.value:
            return self.stripe_price_id_monthly
        return None


class Subscription(SQLModel, table=True):
    """
    Subscription record - one row per provider subscription lifecycle.

    Rows are created only when a checkout completes and are mutated only by
    the reconciler. Cancellation is a status transition; rows are never
    deleted. A user's current subscription is their most recent row.
    """

    __tablename__ = "subscriptions"

    id: uuid_pkg.UUID = Field(
        default_factory=uuid_pkg.uuid4,
        primary_key=True,
        nullable=False,
    )
    user_id: str = Field(max_length=255, nullable=False, index=True)
    plan_id: int = Field(foreign_key="subscription_plans.id", nullable=False)

    # Provider references - stripe_subscription_id is the join key for webhooks
    stripe_customer_id: str | None = Field(default=None, max_length=255, nullable=True, index=True)
    stripe_subscription_id: str = Field(
        max_length=255,
        nullable=False,
        unique=True,
        sa_column_kwargs={"comment": "Immutable once set"},
    )

    status: str = Field(
        default=SubscriptionStatus.INCOMPLETE.value,
        sa_column=Column(String(20), nullable=False, index=True),
    )

    # Billing period (null until the provider confirms one)
    current_period_start: datetime | None = Field(  # type: ignore[call-overload]
        default=None, nullable=True, sa_type=DateTime(timezone=True)
    )
    current_period_end: datetime | None = Field(  # type: ignore[call-overload]
        default=None, nullable=True, sa_type=DateTime(timezone=True)
    )
    cancel_at_period_end: bool = Field(
        default=False,
        nullable=False,
        sa_column_kwargs={"server_default": false()},
    )
    trial_end: datetime | None = Field(  # type: ignore[call-overload]
        default=None, nullable=True, sa_type=DateTime(timezone=True)
    )

    # Provider timestamp of the newest snapshot applied to this row
    last_event_at: datetime | None = Field(  # type: ignore[call-overload]
        default=None,
        nullable=True,
        sa_type=DateTime(timezone=True),
        sa_column_kwargs={"comment": "Used to drop out-of-order subscription snapshots"},
    )

    # Timestamps
    created_at: datetime = Field(  # type: ignore[call-overload]
        default_factory=lambda: datetime.now(UTC),
        nullable=False,
        sa_type=DateTime(timezone=True),
        sa_column_kwargs={"server_default": func.now()},
    )
    updated_at: datetime = Field(  # type: ignore[call-overload]
        default_factory=lambda: datetime.now(UTC),
        nullable=False,
        sa_type=DateTime(timezone=True),
        sa_column_kwargs={"server_default": func.now()},
    )

    @property
    def is_canceled(self) -> bool:
        return self.status == SubscriptionStatus.CANCELED.value


# Request/Response schemas
class PlanRead(SQLModel):
    """Public plan information."""

    id: int
    name: str
    description: str | None
    price_monthly: Decimal
    price_yearly: Decimal | None
    features: list[str] | None
