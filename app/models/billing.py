"""Billing models - payment ledger and billing event audit log."""

import uuid as uuid_pkg
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Numeric, String, Uuid, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlmodel import Field, SQLModel

# JSONB on Postgres, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")


class PaymentStatus(str, Enum):
    """Settlement status of a ledger entry."""

    SUCCEEDED = "succeeded"
    PENDING = "pending"
    FAILED = "failed"


class BillingEventType(str, Enum):
    """Types of billing events for audit logging."""

    SUBSCRIPTION_CREATED = "subscription.created"
    SUBSCRIPTION_UPDATED = "subscription.updated"
    SUBSCRIPTION_CANCELED = "subscription.canceled"
    PAYMENT_SUCCEEDED = "payment.succeeded"
    PAYMENT_FAILED = "payment.failed"
    CANCEL_REQUESTED = "cancel.requested"
    REACTIVATE_REQUESTED = "reactivate.requested"


class PaymentRecord(SQLModel, table=True):
    """
    Payment ledger entry - one per settled invoice.

    Append-only. stripe_payment_ref is the idempotency key for invoice
    webhooks, so redelivered events can never produce a second row.
    """

    __tablename__ = "payment_history"

    id: uuid_pkg.UUID = Field(
        default_factory=uuid_pkg.uuid4,
        primary_key=True,
        nullable=False,
    )
    subscription_id: uuid_pkg.UUID = Field(
        sa_column=Column(
            Uuid(as_uuid=True),
            ForeignKey("subscriptions.id"),
            nullable=False,
            index=True,
        ),
    )

    stripe_payment_ref: str = Field(
        max_length=255,
        nullable=False,
        unique=True,
        sa_column_kwargs={"comment": "Payment intent (or invoice) ID - idempotency key"},
    )
    amount: Decimal = Field(sa_column=Column(Numeric(10, 2), nullable=False))
    currency: str = Field(default="BRL", max_length=3, nullable=False)
    status: str = Field(
        default=PaymentStatus.SUCCEEDED.value,
        sa_column=Column(String(20), nullable=False, index=True),
    )
    payment_method: str | None = Field(default="card", max_length=50, nullable=True)
    paid_at: datetime | None = Field(  # type: ignore[call-overload]
        default=None, nullable=True, sa_type=DateTime(timezone=True)
    )

    created_at: datetime = Field(  # type: ignore[call-overload]
        default_factory=lambda: datetime.now(UTC),
        nullable=False,
        sa_type=DateTime(timezone=True),
        sa_column_kwargs={"server_default": func.now()},
    )


class BillingEvent(SQLModel, table=True):
    """
    Billing event audit log.

    Written in the same transaction as the state change it describes.
    stripe_event_id lets the webhook endpoint short-circuit redeliveries.
    """

    __tablename__ = "billing_events"

    id: uuid_pkg.UUID = Field(
        default_factory=uuid_pkg.uuid4,
        primary_key=True,
        nullable=False,
    )
    user_id: str = Field(max_length=255, nullable=False, index=True)

    event_type: str = Field(
        sa_column=Column(String(50), nullable=False, index=True),
    )
    description: str | None = Field(default=None, max_length=500, nullable=True)

    # Change tracking
    previous_value: dict[str, Any] | None = Field(
        default=None,
        sa_column=Column(JSONType, nullable=True),
    )
    new_value: dict[str, Any] | None = Field(
        default=None,
        sa_column=Column(JSONType, nullable=True),
    )

    # Stripe reference (if applicable)
    stripe_event_id: str | None = Field(
        default=None,
        max_length=255,
        nullable=True,
        index=True,
    )

    created_at: datetime = Field(  # type: ignore[call-overload]
        default_factory=lambda: datetime.now(UTC),
        nullable=False,
        sa_type=DateTime(timezone=True),
        sa_column_kwargs={"server_default": func.now()},
    )


# Request/Response schemas
class PaymentRead(SQLModel):
    """Payment history entry as shown to the subscriber."""

    id: uuid_pkg.UUID
    stripe_payment_ref: str
    amount: Decimal
    currency: str
    status: str
    payment_method: str | None
    paid_at: datetime | None
