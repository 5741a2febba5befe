"""Unit tests for entitlement checks: the pure rule and the status view."""

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, patch

import pytest

from app.domain.entitlement_operations import (
    NO_SUBSCRIPTION_STATUS,
    EntitlementOperations,
    is_entitled,
)
from app.models.subscription import Subscription

from tests.helpers.mock_factories import make_mock_plan, make_mock_subscription

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def _subscription(status: str, period_end: datetime | None) -> Subscription:
    return Subscription(
        user_id="user-42",
        plan_id=1,
        stripe_subscription_id="sub_S1",
        status=status,
        current_period_end=period_end,
    )


class TestIsEntitled:
    """The access rule: active/trialing AND period end in the future."""

    @pytest.mark.parametrize("status", ["active", "trialing"])
    def test_entitled_statuses_within_period(self, status):
        assert is_entitled(_subscription(status, NOW + timedelta(days=1)), NOW) is True

    @pytest.mark.parametrize("status", ["past_due", "canceled", "incomplete"])
    def test_other_statuses_never_entitled(self, status):
        assert is_entitled(_subscription(status, NOW + timedelta(days=30)), NOW) is False

    def test_lapsed_period_not_entitled(self):
        assert is_entitled(_subscription("active", NOW - timedelta(seconds=1)), NOW) is False

    def test_period_ending_exactly_now_not_entitled(self):
        assert is_entitled(_subscription("active", NOW), NOW) is False

    def test_missing_period_end_not_entitled(self):
        assert is_entitled(_subscription("trialing", None), NOW) is False

    def test_no_subscription_not_entitled(self):
        assert is_entitled(None, NOW) is False

    def test_naive_period_end_treated_as_utc(self):
        naive_end = (NOW + timedelta(hours=1)).replace(tzinfo=None)
        assert is_entitled(_subscription("active", naive_end), NOW) is True

    def test_same_inputs_same_answer(self):
        sub = _subscription("active", NOW + timedelta(days=3))
        assert is_entitled(sub, NOW) == is_entitled(sub, NOW)
        assert is_entitled(sub, NOW + timedelta(days=4)) is False


class TestGetSubscriptionStatus:
    """Tests for the presentation view assembled from the latest row."""

    def setup_method(self):
        self.ops = EntitlementOperations()
        self.db = AsyncMock()

    @pytest.mark.asyncio
    @patch("app.domain.entitlement_operations.subscription_ops")
    async def test_no_subscription_returns_none_status(self, mock_sub_ops):
        mock_sub_ops.get_by_user = AsyncMock(return_value=None)

        view = await self.ops.get_subscription_status(self.db, "user-42", now=NOW)

        assert view.status == NO_SUBSCRIPTION_STATUS
        assert view.has_access is False
        assert view.plan is None

    @pytest.mark.asyncio
    @patch("app.domain.entitlement_operations.plan_ops")
    @patch("app.domain.entitlement_operations.subscription_ops")
    async def test_includes_plan_and_access(self, mock_sub_ops, mock_plan_ops):
        sub = make_mock_subscription(
            status="trialing",
            current_period_end=NOW + timedelta(days=7),
            trial_end=NOW + timedelta(days=7),
        )
        mock_sub_ops.get_by_user = AsyncMock(return_value=sub)
        mock_plan_ops.get = AsyncMock(return_value=make_mock_plan(name="Premium"))

        view = await self.ops.get_subscription_status(self.db, "user-42", now=NOW)

        assert view.status == "trialing"
        assert view.has_access is True
        assert view.plan is not None
        assert view.plan.name == "Premium"
        assert view.stripe_subscription_id == "sub_S1"
        assert view.trial_end == NOW + timedelta(days=7)

    @pytest.mark.asyncio
    @patch("app.domain.entitlement_operations.plan_ops")
    @patch("app.domain.entitlement_operations.subscription_ops")
    async def test_past_due_shows_status_without_access(self, mock_sub_ops, mock_plan_ops):
        sub = make_mock_subscription(status="past_due", current_period_end=NOW + timedelta(days=5))
        mock_sub_ops.get_by_user = AsyncMock(return_value=sub)
        mock_plan_ops.get = AsyncMock(return_value=None)

        view = await self.ops.get_subscription_status(self.db, "user-42", now=NOW)

        assert view.status == "past_due"
        assert view.has_access is False
        assert view.plan is None

    @pytest.mark.asyncio
    @patch("app.domain.entitlement_operations.subscription_ops")
    async def test_has_active_subscription_uses_latest_row(self, mock_sub_ops):
        mock_sub_ops.get_by_user = AsyncMock(
            return_value=make_mock_subscription(
                status="active", current_period_end=NOW + timedelta(days=1)
            )
        )

        assert await self.ops.has_active_subscription(self.db, "user-42", now=NOW) is True
        mock_sub_ops.get_by_user.assert_awaited_once_with(self.db, "user-42")
