"""Subscription reconciler.

Applies one normalized event to the entitlement store as a single unit of
work. Every delivery is safe to repeat: re-applying an event that already
took effect yields DUPLICATE and changes nothing.

Serialization per subscription happens at two levels:
- an in-process KeyedLock on stripe_subscription_id
- row locks (SELECT ... FOR UPDATE) and unique constraints in the database
"""

import logging
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import TransientStorageError
from app.core.locks import KeyedLock, subscription_locks
from app.domain.plan_operations import plan_ops
from app.domain.subscription_operations import UpsertResult, UpsertStatus, subscription_ops
from app.models.billing import BillingEventType, PaymentRecord, PaymentStatus
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


class ReconcileOutcome(str, Enum):
    """What applying an event did."""

    APPLIED = "applied"
    DUPLICATE = "duplicate"  # Already reflected in local state
    IGNORED_TERMINAL = "ignored_terminal"  # Subscription is canceled
    IGNORED_STALE = "ignored_stale"  # Older than the newest snapshot applied
    DANGLING = "dangling"  # References a subscription we have no row for
    UNHANDLED = "unhandled"  # Event type we do not act on


def _audit_value(values: dict[str, Any]) -> dict[str, Any]:
    """JSON-safe copy of a field dict."""
    safe: dict[str, Any] = {}
    for key, value in values.items():
        if isinstance(value, datetime):
            value = value.isoformat()
        elif isinstance(value, Decimal):
            value = str(value)
        safe[key] = value
    return safe


class SubscriptionReconciler:
    """Applies normalized billing events to local subscription state."""

    def __init__(self, locks: KeyedLock | None = None):
        self.locks = locks if locks is not None else subscription_locks

    async def apply(self, db: AsyncSession, event: NormalizedEvent) -> ReconcileOutcome:
        """
        Apply one event and commit.

        On a storage failure the transaction is rolled back, leaving prior
        state intact, and TransientStorageError is raised so the provider
        redelivers.
        """
        if isinstance(event, UnhandledEvent):
            logger.debug(f"Ignoring unhandled event {event.event_id} ({event.event_type})")
            return ReconcileOutcome.UNHANDLED

        key = getattr(event, "stripe_subscription_id", None)
        if key is None:
            raise TypeError(f"Unknown event variant: {type(event).__name__}")

        async with self.locks.acquire(key):
            try:
                outcome = await self._dispatch(db, event)
                await db.commit()
            except SQLAlchemyError as e:
                await db.rollback()
                logger.error(f"Storage failure applying event {event.event_id}: {e}")
                raise TransientStorageError(f"Could not persist event {event.event_id}") from e
            except Exception:
                await db.rollback()
                raise

        logger.info(f"Event {event.event_id} ({type(event).__name__}) for {key}: {outcome.value}")
        return outcome

    async def _dispatch(self, db: AsyncSession, event: NormalizedEvent) -> ReconcileOutcome:
        if isinstance(event, CheckoutCompleted):
            return await self._handle_checkout_completed(db, event)
        elif isinstance(event, SubscriptionUpdated):
            return await self._handle_subscription_updated(db, event)
        elif isinstance(event, SubscriptionCanceled):
            return await self._handle_subscription_canceled(db, event)
        elif isinstance(event, PaymentSucceeded):
            return await self._handle_payment_succeeded(db, event)
        elif isinstance(event, PaymentFailed):
            return await self._handle_payment_failed(db, event)
        raise TypeError(f"Unknown event variant: {type(event).__name__}")

    # ─────────────────────────────────────────────────────────────────────────────
    # Handlers
    # ─────────────────────────────────────────────────────────────────────────────

    async def _handle_checkout_completed(
        self, db: AsyncSession, event: CheckoutCompleted
    ) -> ReconcileOutcome:
        plan = await plan_ops.get(db, event.plan_id)
        if plan is None:
            logger.error(
                f"Checkout {event.event_id} for user {event.user_id} references "
                f"unknown plan {event.plan_id}"
            )
            return ReconcileOutcome.DANGLING

        fields = {
            "user_id": event.user_id,
            "plan_id": event.plan_id,
            "stripe_customer_id": event.stripe_customer_id,
            "status": event.status,
            "current_period_start": event.period_start,
            "current_period_end": event.period_end,
            "trial_end": event.trial_end,
            "cancel_at_period_end": False,
        }
        result = await subscription_ops.create_from_checkout(
            db, event.stripe_subscription_id, fields, occurred_at=event.occurred_at
        )
        if result.status != UpsertStatus.CREATED:
            return ReconcileOutcome.DUPLICATE

        await subscription_ops.log_event(
            db,
            user_id=event.user_id,
            event_type=BillingEventType.SUBSCRIPTION_CREATED,
            new_value=_audit_value(fields),
            description=f"Subscription {event.stripe_subscription_id} created from checkout",
            stripe_event_id=event.event_id,
        )
        return ReconcileOutcome.APPLIED

    async def _handle_subscription_updated(
        self, db: AsyncSession, event: SubscriptionUpdated
    ) -> ReconcileOutcome:
        # Full snapshot: a missing period clears the stored one
        fields: dict[str, Any] = {
            "status": event.status,
            "current_period_start": event.period_start,
            "current_period_end": event.period_end,
            "cancel_at_period_end": event.cancel_at_period_end,
        }

        result = await subscription_ops.upsert_by_external_ref(
            db, event.stripe_subscription_id, fields, occurred_at=event.occurred_at
        )
        return await self._finish_update(
            db, event, result, BillingEventType.SUBSCRIPTION_UPDATED, fields
        )

    async def _handle_subscription_canceled(
        self, db: AsyncSession, event: SubscriptionCanceled
    ) -> ReconcileOutcome:
        result = await subscription_ops.mark_canceled(
            db, event.stripe_subscription_id, occurred_at=event.occurred_at
        )
        if result.status == UpsertStatus.MISSING:
            return self._dangling(event)
        if not result.changed:
            return ReconcileOutcome.DUPLICATE
        return await self._finish_update(
            db,
            event,
            result,
            BillingEventType.SUBSCRIPTION_CANCELED,
            {"status": SubscriptionStatus.CANCELED.value},
        )

    async def _handle_payment_succeeded(
        self, db: AsyncSession, event: PaymentSucceeded
    ) -> ReconcileOutcome:
        subscription = await subscription_ops.get_by_stripe_subscription(
            db, event.stripe_subscription_id
        )
        if subscription is None:
            return self._dangling(event)

        payment = PaymentRecord(
            subscription_id=subscription.id,
            stripe_payment_ref=event.stripe_payment_ref,
            amount=event.amount,
            currency=event.currency,
            status=PaymentStatus.SUCCEEDED.value,
            payment_method=event.payment_method,
            paid_at=event.paid_at,
        )
        recorded = await subscription_ops.append_payment(db, payment)
        if recorded is None:
            return ReconcileOutcome.DUPLICATE

        await subscription_ops.log_event(
            db,
            user_id=subscription.user_id,
            event_type=BillingEventType.PAYMENT_SUCCEEDED,
            new_value=_audit_value(
                {
                    "stripe_payment_ref": event.stripe_payment_ref,
                    "amount": event.amount,
                    "currency": event.currency,
                }
            ),
            description=f"Payment of {event.amount} {event.currency} recorded",
            stripe_event_id=event.event_id,
        )
        return ReconcileOutcome.APPLIED

    async def _handle_payment_failed(
        self, db: AsyncSession, event: PaymentFailed
    ) -> ReconcileOutcome:
        fields = {"status": SubscriptionStatus.PAST_DUE.value}
        # Invoice events are not subscription snapshots, so no occurred_at
        result = await subscription_ops.upsert_by_external_ref(
            db, event.stripe_subscription_id, fields
        )
        return await self._finish_update(db, event, result, BillingEventType.PAYMENT_FAILED, fields)

    # ─────────────────────────────────────────────────────────────────────────────
    # Helpers
    # ─────────────────────────────────────────────────────────────────────────────

    async def _finish_update(
        self,
        db: AsyncSession,
        event: SubscriptionUpdated | SubscriptionCanceled | PaymentFailed,
        result: UpsertResult,
        event_type: BillingEventType,
        fields: dict[str, Any],
    ) -> ReconcileOutcome:
        """Map an upsert result onto an outcome, auditing applied changes."""
        if result.status == UpsertStatus.MISSING:
            return self._dangling(event)
        if result.status == UpsertStatus.STALE:
            logger.info(
                f"Ignoring stale event {event.event_id} for {event.stripe_subscription_id}"
            )
            return ReconcileOutcome.IGNORED_STALE
        if result.subscription is not None and result.subscription.is_canceled and (
            result.status in (UpsertStatus.TERMINAL, UpsertStatus.UNCHANGED)
        ):
            logger.info(
                f"Ignoring event {event.event_id}: subscription "
                f"{event.stripe_subscription_id} is canceled"
            )
            return ReconcileOutcome.IGNORED_TERMINAL
        if not result.changed or result.subscription is None:
            return ReconcileOutcome.DUPLICATE

        await subscription_ops.log_event(
            db,
            user_id=result.subscription.user_id,
            event_type=event_type,
            previous_value=result.previous,
            new_value=_audit_value({k: fields[k] for k in result.previous if k in fields}),
            stripe_event_id=event.event_id,
        )
        return ReconcileOutcome.APPLIED

    @staticmethod
    def _dangling(
        event: SubscriptionUpdated | SubscriptionCanceled | PaymentSucceeded | PaymentFailed,
    ) -> ReconcileOutcome:
        logger.warning(
            f"Event {event.event_id} ({type(event).__name__}) references unknown "
            f"subscription {event.stripe_subscription_id}"
        )
        return ReconcileOutcome.DANGLING


reconciler = SubscriptionReconciler()
