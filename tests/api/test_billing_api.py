"""API tests for the subscriber-facing billing endpoints."""

from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest
from fastapi import Depends
from httpx import ASGITransport, AsyncClient
from jose import jwt
from stripe import StripeError

from app.api.deps import require_premium
from app.config import settings
from app.domain.subscription_operations import subscription_ops
from app.models.billing import PaymentRecord

TEST_USER_ID = "user-42"
NOW = datetime.now(UTC).replace(microsecond=0)


async def _subscribe(db_session, status="active", period_end=None, ref="sub_S1"):
    result = await subscription_ops.create_from_checkout(
        db_session,
        ref,
        {
            "user_id": TEST_USER_ID,
            "plan_id": 1,
            "stripe_customer_id": "cus_C1",
            "status": status,
            "current_period_start": NOW,
            "current_period_end": period_end or NOW + timedelta(days=30),
        },
        occurred_at=NOW,
    )
    await db_session.commit()
    return result.subscription


class TestPlans:
    @pytest.mark.asyncio
    async def test_lists_active_plans(self, api_client, premium_plan):  # noqa: ARG002
        response = await api_client.get("/api/v1/billing/plans")

        assert response.status_code == 200
        plans = response.json()
        assert len(plans) == 1
        assert plans[0]["name"] == "Premium"
        assert Decimal(str(plans[0]["price_monthly"])) == Decimal("19.90")


class TestStatus:
    @pytest.mark.asyncio
    async def test_without_subscription(self, api_client):
        response = await api_client.get("/api/v1/billing/status")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "none"
        assert body["has_access"] is False
        assert body["plan"] is None

    @pytest.mark.asyncio
    async def test_active_subscription(self, api_client, db_session, premium_plan):  # noqa: ARG002
        await _subscribe(db_session)

        body = (await api_client.get("/api/v1/billing/status")).json()

        assert body["status"] == "active"
        assert body["has_access"] is True
        assert body["plan"]["name"] == "Premium"
        assert body["stripe_subscription_id"] == "sub_S1"

    @pytest.mark.asyncio
    async def test_lapsed_subscription_has_no_access(self, api_client, db_session, premium_plan):  # noqa: ARG002
        await _subscribe(db_session, period_end=NOW - timedelta(days=1))

        body = (await api_client.get("/api/v1/billing/status")).json()

        assert body["status"] == "active"
        assert body["has_access"] is False

    @pytest.mark.asyncio
    async def test_requires_authentication(self, anon_client):
        response = await anon_client.get("/api/v1/billing/status")

        assert response.status_code == 401
        assert response.json()["detail"]["code"] == "UNAUTHORIZED"

    @pytest.mark.asyncio
    async def test_accepts_bearer_token(self, anon_client, monkeypatch):
        monkeypatch.setattr(settings, "jwt_secret", "api-test-secret")
        token = jwt.encode({"sub": "user-7"}, "api-test-secret", algorithm="HS256")

        response = await anon_client.get(
            "/api/v1/billing/status", headers={"Authorization": f"Bearer {token}"}
        )

        assert response.status_code == 200
        assert response.json()["status"] == "none"


class TestCheckout:
    @pytest.mark.asyncio
    async def test_returns_checkout_url(self, api_client, premium_plan, mock_external_services):  # noqa: ARG002
        response = await api_client.post(
            "/api/v1/billing/checkout", json={"plan_id": 1, "interval": "monthly"}
        )

        assert response.status_code == 200
        assert response.json() == {"url": "https://checkout.stripe.com/test"}
        call_kwargs = mock_external_services["stripe"].create_checkout_session.call_args[1]
        assert call_kwargs["user_id"] == TEST_USER_ID
        assert call_kwargs["price_id"] == "price_premium_monthly"

    @pytest.mark.asyncio
    async def test_unknown_plan(self, api_client, premium_plan):  # noqa: ARG002
        response = await api_client.post(
            "/api/v1/billing/checkout", json={"plan_id": 99, "interval": "monthly"}
        )

        assert response.status_code == 404
        assert response.json()["detail"]["code"] == "NOT_FOUND"

    @pytest.mark.asyncio
    async def test_invalid_interval(self, api_client, premium_plan):  # noqa: ARG002
        response = await api_client.post(
            "/api/v1/billing/checkout", json={"plan_id": 1, "interval": "weekly"}
        )
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_provider_failure(self, api_client, premium_plan, mock_external_services):  # noqa: ARG002
        mock_external_services["stripe"].create_checkout_session.side_effect = StripeError("down")

        response = await api_client.post("/api/v1/billing/checkout", json={"plan_id": 1})

        assert response.status_code == 502
        assert response.json()["detail"]["code"] == "BILLING_PROVIDER_ERROR"


class TestManageSubscription:
    @pytest.mark.asyncio
    async def test_portal(self, api_client, db_session, premium_plan):  # noqa: ARG002
        await _subscribe(db_session)

        response = await api_client.post("/api/v1/billing/portal")

        assert response.status_code == 200
        assert response.json() == {"url": "https://billing.stripe.com/test"}

    @pytest.mark.asyncio
    async def test_portal_without_customer(self, api_client):
        response = await api_client.post("/api/v1/billing/portal")
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_cancel_then_reactivate(
        self, api_client, db_session, premium_plan, mock_external_services  # noqa: ARG002
    ):
        await _subscribe(db_session)
        stripe_mock = mock_external_services["stripe"]

        response = await api_client.post("/api/v1/billing/cancel")
        assert response.status_code == 200
        assert response.json() == {"success": True, "cancel_at_period_end": True}
        stripe_mock.cancel_subscription.assert_called_once_with("sub_S1")

        response = await api_client.post("/api/v1/billing/reactivate")
        assert response.json() == {"success": True, "cancel_at_period_end": False}
        stripe_mock.reactivate_subscription.assert_called_once_with("sub_S1")

        # Status is still owned by webhooks
        body = (await api_client.get("/api/v1/billing/status")).json()
        assert body["status"] == "active"

    @pytest.mark.asyncio
    async def test_cancel_without_subscription(self, api_client):
        response = await api_client.post("/api/v1/billing/cancel")
        assert response.status_code == 404


class TestPayments:
    @pytest.mark.asyncio
    async def test_lists_payments(self, api_client, db_session, premium_plan):  # noqa: ARG002
        sub = await _subscribe(db_session)
        await subscription_ops.append_payment(
            db_session,
            PaymentRecord(
                subscription_id=sub.id,
                stripe_payment_ref="pi_P1",
                amount=Decimal("19.90"),
                currency="BRL",
                paid_at=NOW,
            ),
        )
        await db_session.commit()

        response = await api_client.get("/api/v1/billing/payments")

        assert response.status_code == 200
        payments = response.json()
        assert [p["stripe_payment_ref"] for p in payments] == ["pi_P1"]
        assert payments[0]["currency"] == "BRL"


class TestRequirePremiumGate:
    """The gate other routers mount on premium content."""

    @pytest.fixture
    async def gated_client(self, api_client):  # noqa: ARG002
        from app.main import app

        @app.get("/__test/premium", dependencies=[Depends(require_premium)])
        async def premium_content():
            return {"ok": True}

        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            yield client

        app.router.routes[:] = [
            r for r in app.router.routes if getattr(r, "path", None) != "/__test/premium"
        ]

    @pytest.mark.asyncio
    async def test_forbidden_without_subscription(self, gated_client):
        response = await gated_client.get("/__test/premium")

        assert response.status_code == 403
        assert response.json()["detail"] == {
            "code": "FORBIDDEN",
            "message": "An active premium subscription is required to access this content",
            "cause": "SUBSCRIPTION_REQUIRED",
        }

    @pytest.mark.asyncio
    async def test_allowed_with_subscription(self, gated_client, db_session, premium_plan):  # noqa: ARG002
        await _subscribe(db_session, status="trialing")

        response = await gated_client.get("/__test/premium")

        assert response.status_code == 200
