"""Domain operations for Subscription and PaymentRecord models.

This is the entitlement store: the only code that writes subscription and
payment rows. The invariants the reconciler relies on are enforced here:

- stripe_subscription_id is immutable once a row exists
- a canceled row accepts no further mutation
- updated_at never moves backwards
- stripe_payment_ref is unique; duplicate appends are reported, not raised
"""

import logging
import uuid as uuid_pkg
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.clock import as_utc, utcnow
from app.models.billing import BillingEvent, BillingEventType, PaymentRecord
from app.models.subscription import Subscription, SubscriptionStatus

logger = logging.getLogger(__name__)

# Fields a webhook or command may change on an existing row
MUTABLE_FIELDS = frozenset(
    {
        "status",
        "current_period_start",
        "current_period_end",
        "cancel_at_period_end",
        "trial_end",
        "stripe_customer_id",
        "plan_id",
    }
)

# Fields required to create a row
CREATE_FIELDS = frozenset({"user_id", "plan_id"})


class UpsertStatus(str, Enum):
    """What upsert_by_external_ref did with the requested change."""

    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"  # Row already matched the requested fields
    EXISTS = "exists"  # Create requested but the row was already there
    TERMINAL = "terminal"  # Row is canceled; change refused
    STALE = "stale"  # Change is older than the newest snapshot applied
    MISSING = "missing"  # No row and creation not requested


@dataclass
class UpsertResult:
    """Result of an upsert against the entitlement store."""

    status: UpsertStatus
    subscription: Subscription | None
    previous: dict[str, Any] = field(default_factory=dict)

    @property
    def changed(self) -> bool:
        return self.status in (UpsertStatus.CREATED, UpsertStatus.UPDATED)


def _snapshot(subscription: Subscription, keys: frozenset[str] | set[str]) -> dict[str, Any]:
    """JSON-safe view of selected fields, for audit logging."""
    values: dict[str, Any] = {}
    for key in sorted(keys):
        value = getattr(subscription, key, None)
        if isinstance(value, datetime):
            value = as_utc(value).isoformat()  # type: ignore[union-attr]
        values[key] = value
    return values


def _same(current: Any, new: Any) -> bool:
    if isinstance(current, datetime) or isinstance(new, datetime):
        return as_utc(current) == as_utc(new)
    return bool(current == new)


class SubscriptionOperations:
    """Entitlement store operations for subscriptions and their payments."""

    async def get(
        self,
        db: AsyncSession,
        id: uuid_pkg.UUID,
    ) -> Subscription | None:
        """Get a subscription by ID."""
        statement = select(Subscription).where(Subscription.id == id)
        result = await db.execute(statement)
        return result.scalar_one_or_none()

    async def get_by_user(
        self,
        db: AsyncSession,
        user_id: str,
    ) -> Subscription | None:
        """Get a user's current subscription (their most recent row)."""
        statement = (
            select(Subscription)
            .where(Subscription.user_id == user_id)
            .order_by(Subscription.created_at.desc())  # type: ignore[attr-defined]
            .limit(1)
        )
        result = await db.execute(statement)
        return result.scalars().first()

    async def get_by_stripe_subscription(
        self,
        db: AsyncSession,
        stripe_subscription_id: str,
        for_update: bool = False,
    ) -> Subscription | None:
        """Get subscription by Stripe subscription ID, optionally locking the row."""
        statement = select(Subscription).where(
            Subscription.stripe_subscription_id == stripe_subscription_id
        )
        if for_update:
            statement = statement.with_for_update()
        result = await db.execute(statement)
        return result.scalar_one_or_none()

    async def get_by_stripe_customer(
        self,
        db: AsyncSession,
        stripe_customer_id: str,
    ) -> Subscription | None:
        """Get the most recent subscription for a Stripe customer ID."""
        statement = (
            select(Subscription)
            .where(Subscription.stripe_customer_id == stripe_customer_id)
            .order_by(Subscription.created_at.desc())  # type: ignore[attr-defined]
            .limit(1)
        )
        result = await db.execute(statement)
        return result.scalars().first()

    async def upsert_by_external_ref(
        self,
        db: AsyncSession,
        stripe_subscription_id: str,
        fields: dict[str, Any],
        occurred_at: datetime | None = None,
        create: bool = False,
    ) -> UpsertResult:
        """
        Create or update the row keyed by a Stripe subscription ID.

        With create=True a missing row is inserted from `fields` (which must
        include user_id and plan_id); an existing row is left untouched and
        EXISTS is returned. Without it, a missing row yields MISSING.

        occurred_at is the provider timestamp of the snapshot being applied.
        When given, a snapshot older than the newest one already applied is
        refused with STALE.
        """
        if fields.get("stripe_subscription_id", stripe_subscription_id) != stripe_subscription_id:
            raise ValueError("stripe_subscription_id cannot be changed")
        fields = {k: v for k, v in fields.items() if k != "stripe_subscription_id"}

        subscription = await self.get_by_stripe_subscription(
            db, stripe_subscription_id, for_update=True
        )

        if subscription is None:
            if not create:
                return UpsertResult(UpsertStatus.MISSING, None)
            return await self._create(db, stripe_subscription_id, fields, occurred_at)

        if create:
            return UpsertResult(UpsertStatus.EXISTS, subscription)

        unknown = set(fields) - MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Fields not updatable: {sorted(unknown)}")

        changes = {
            key: value
            for key, value in fields.items()
            if not _same(getattr(subscription, key), value)
        }

        if subscription.is_canceled:
            status = UpsertStatus.UNCHANGED if not changes else UpsertStatus.TERMINAL
            return UpsertResult(status, subscription)

        # Cancellation is terminal on the provider side too, so it is never stale
        cancels = fields.get("status") == SubscriptionStatus.CANCELED.value
        last_event_at = as_utc(subscription.last_event_at)
        if occurred_at is not None and last_event_at is not None and not cancels:
            if as_utc(occurred_at) < last_event_at:  # type: ignore[operator]
                return UpsertResult(UpsertStatus.STALE, subscription)

        if not changes:
            self._advance_event_clock(subscription, occurred_at)
            return UpsertResult(UpsertStatus.UNCHANGED, subscription)

        previous = _snapshot(subscription, set(changes))
        for key, value in changes.items():
            setattr(subscription, key, value)
        self._advance_event_clock(subscription, occurred_at)
        subscription.updated_at = max(utcnow(), as_utc(subscription.updated_at))  # type: ignore[type-var]

        db.add(subscription)
        await db.flush()
        await db.refresh(subscription)
        return UpsertResult(UpsertStatus.UPDATED, subscription, previous)

    async def _create(
        self,
        db: AsyncSession,
        stripe_subscription_id: str,
        fields: dict[str, Any],
        occurred_at: datetime | None,
    ) -> UpsertResult:
        missing = CREATE_FIELDS - set(fields)
        if missing:
            raise ValueError(f"Missing fields for new subscription: {sorted(missing)}")

        now = utcnow()
        subscription = Subscription(
            stripe_subscription_id=stripe_subscription_id,
            last_event_at=occurred_at,
            created_at=now,
            updated_at=now,
            **fields,
        )
        try:
            async with db.begin_nested():
                db.add(subscription)
                await db.flush()
        except IntegrityError:
            # Lost a race with a concurrent delivery of the same checkout
            existing = await self.get_by_stripe_subscription(db, stripe_subscription_id)
            if existing is None:
                raise
            logger.info(f"Subscription {stripe_subscription_id} created concurrently")
            return UpsertResult(UpsertStatus.EXISTS, existing)

        await db.refresh(subscription)
        return UpsertResult(UpsertStatus.CREATED, subscription)

    @staticmethod
    def _advance_event_clock(subscription: Subscription, occurred_at: datetime | None) -> None:
        if occurred_at is None:
            return
        current = as_utc(subscription.last_event_at)
        if current is None or as_utc(occurred_at) > current:  # type: ignore[operator]
            subscription.last_event_at = occurred_at

    async def create_from_checkout(
        self,
        db: AsyncSession,
        stripe_subscription_id: str,
        fields: dict[str, Any],
        occurred_at: datetime | None = None,
    ) -> UpsertResult:
        """Insert the row for a completed checkout; EXISTS if it is already there."""
        return await self.upsert_by_external_ref(
            db, stripe_subscription_id, fields, occurred_at=occurred_at, create=True
        )

    async def mark_canceled(
        self,
        db: AsyncSession,
        stripe_subscription_id: str,
        occurred_at: datetime | None = None,
    ) -> UpsertResult:
        """Move a subscription to its terminal state."""
        return await self.upsert_by_external_ref(
            db,
            stripe_subscription_id,
            {"status": SubscriptionStatus.CANCELED.value},
            occurred_at=occurred_at,
        )

    # ─────────────────────────────────────────────────────────────────────────────
    # Payment ledger
    # ─────────────────────────────────────────────────────────────────────────────

    async def payment_exists(self, db: AsyncSession, stripe_payment_ref: str) -> bool:
        """Check whether a ledger entry already exists for a payment ref."""
        statement = select(PaymentRecord.id).where(
            PaymentRecord.stripe_payment_ref == stripe_payment_ref
        )
        result = await db.execute(statement)
        return result.scalar_one_or_none() is not None

    async def append_payment(
        self,
        db: AsyncSession,
        payment: PaymentRecord,
    ) -> PaymentRecord | None:
        """
        Append a payment to the ledger.

        Returns None (and writes nothing) if the payment ref is already
        recorded, including when a concurrent writer got there first.
        """
        if await self.payment_exists(db, payment.stripe_payment_ref):
            return None

        try:
            async with db.begin_nested():
                db.add(payment)
                await db.flush()
        except IntegrityError:
            if await self.payment_exists(db, payment.stripe_payment_ref):
                return None
            raise

        await db.refresh(payment)
        return payment

    async def get_payments(
        self,
        db: AsyncSession,
        subscription_id: uuid_pkg.UUID,
        skip: int = 0,
        limit: int = 50,
    ) -> list[PaymentRecord]:
        """Get the payment history for a subscription, newest first."""
        statement = (
            select(PaymentRecord)
            .where(PaymentRecord.subscription_id == subscription_id)
            .order_by(PaymentRecord.paid_at.desc())  # type: ignore[union-attr]
            .offset(skip)
            .limit(limit)
        )
        result = await db.execute(statement)
        return list(result.scalars().all())

    # ─────────────────────────────────────────────────────────────────────────────
    # Audit log
    # ─────────────────────────────────────────────────────────────────────────────

    async def log_event(
        self,
        db: AsyncSession,
        user_id: str,
        event_type: BillingEventType,
        previous_value: dict[str, Any] | None = None,
        new_value: dict[str, Any] | None = None,
        description: str | None = None,
        stripe_event_id: str | None = None,
    ) -> BillingEvent:
        """Log a billing event for audit trail."""
        event = BillingEvent(
            user_id=user_id,
            event_type=event_type.value,
            previous_value=previous_value,
            new_value=new_value,
            description=description,
            stripe_event_id=stripe_event_id,
        )
        db.add(event)
        await db.flush()
        return event

    async def has_processed_event(self, db: AsyncSession, stripe_event_id: str) -> bool:
        """Check whether a provider event already produced an audit entry."""
        statement = (
            select(BillingEvent.id).where(BillingEvent.stripe_event_id == stripe_event_id).limit(1)
        )
        result = await db.execute(statement)
        return result.scalar_one_or_none() is not None

    async def get_events(
        self,
        db: AsyncSession,
        user_id: str,
        skip: int = 0,
        limit: int = 50,
    ) -> list[BillingEvent]:
        """Get billing events for a user."""
        statement = (
            select(BillingEvent)
            .where(BillingEvent.user_id == user_id)
            .order_by(BillingEvent.created_at.desc())  # type: ignore[attr-defined]
            .offset(skip)
            .limit(limit)
        )
        result = await db.execute(statement)
        return list(result.scalars().all())


subscription_ops = SubscriptionOperations()
