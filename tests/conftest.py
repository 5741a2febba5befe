"""Root conftest: test infrastructure for all billing tests.

Provides:
- Fresh in-memory SQLite database per test (aiosqlite, SAVEPOINT-capable)
- Seeded Premium plan fixture
- Subscriber identity and API client with dependency overrides
- Autouse mock for Stripe so no test ever reaches the real API
"""

from __future__ import annotations

from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel

import app.models  # noqa: F401  (registers tables on SQLModel.metadata)
from app.api.deps.auth import AuthenticatedUser

TEST_USER_ID = "user-42"
TEST_USER_EMAIL = "sommelier@example.com"
WEBHOOK_SECRET = "whsec_test_secret"


# ─────────────────────────────────────────────────────────────────────────────
# Database
# ─────────────────────────────────────────────────────────────────────────────


@pytest.fixture
async def db_engine():
    """In-memory SQLite engine with all tables created.

    pysqlite's implicit transaction handling breaks SAVEPOINT, so the driver
    is put in autocommit mode and SQLAlchemy emits BEGIN itself.
    """
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    @event.listens_for(engine.sync_engine, "connect")
    def do_connect(dbapi_connection, _connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    try:
        yield engine
    finally:
        await engine.dispose()


@pytest.fixture
async def db_session(db_engine):
    """Session on the per-test database. Code under test may commit freely."""
    session = AsyncSession(db_engine, expire_on_commit=False)
    try:
        yield session
    finally:
        await session.close()


@pytest.fixture
async def premium_plan(db_session: AsyncSession):
    """The default Premium plan, as seeded by the initial migration."""
    from app.models.subscription import SubscriptionPlan

    plan = SubscriptionPlan(
        id=1,
        name="Premium",
        description="Acesso completo a todas as avaliações e receitas",
        price_monthly=Decimal("19.90"),
        price_yearly=Decimal("199.00"),
        stripe_price_id_monthly="price_premium_monthly",
        stripe_price_id_yearly="price_premium_yearly",
        features=["Todas as avaliações de vinhos", "Receitas exclusivas"],
        is_active=True,
    )
    db_session.add(plan)
    await db_session.commit()
    return plan


# ─────────────────────────────────────────────────────────────────────────────
# API Client
# ─────────────────────────────────────────────────────────────────────────────


@pytest.fixture
def test_user() -> AuthenticatedUser:
    return AuthenticatedUser(id=TEST_USER_ID, email=TEST_USER_EMAIL)


@pytest.fixture
async def api_client(db_session: AsyncSession, test_user: AuthenticatedUser, monkeypatch):
    """HTTP client that bypasses JWT auth and uses the per-test DB session.

    Overrides: get_current_user, get_db. The webhook secret is pinned so
    tests can sign payloads with tests.helpers.stripe_payloads.sign_payload.
    """
    from app.api.deps.auth import get_current_user
    from app.config import settings
    from app.core.database import get_db
    from app.main import app

    monkeypatch.setattr(settings, "stripe_webhook_secret", WEBHOOK_SECRET)

    app.dependency_overrides[get_current_user] = lambda: test_user

    async def override_db():
        yield db_session

    app.dependency_overrides[get_db] = override_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


@pytest.fixture
async def anon_client(db_session: AsyncSession):
    """HTTP client with real auth (no token unless a test sends one)."""
    from app.core.database import get_db
    from app.main import app

    async def override_db():
        yield db_session

    app.dependency_overrides[get_db] = override_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


# ─────────────────────────────────────────────────────────────────────────────
# External Service Mocks
# ─────────────────────────────────────────────────────────────────────────────


@pytest.fixture(autouse=True)
def mock_external_services():
    """SAFETY: Always mock Stripe so no test can create real sessions or charges.

    The service singleton is patched everywhere it has been imported.
    """
    mock_stripe = MagicMock()
    mock_stripe.create_checkout_session = MagicMock(
        return_value="https://checkout.stripe.com/test"
    )
    mock_stripe.create_portal_session = MagicMock(
        return_value="https://billing.stripe.com/test"
    )
    mock_stripe.get_subscription = MagicMock(return_value=None)

    with (
        patch("app.services.stripe_service.stripe_service", mock_stripe),
        patch("app.services.billing.commands.stripe_service", mock_stripe),
        patch("app.api.v1.billing.stripe_service", mock_stripe),
    ):
        yield {"stripe": mock_stripe}
