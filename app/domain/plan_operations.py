"""Domain operations for the SubscriptionPlan catalog (read-only)."""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.subscription import SubscriptionPlan


class PlanOperations:
    """Read operations for the externally managed plan catalog."""

    async def get(self, db: AsyncSession, id: int) -> SubscriptionPlan | None:
        """Get a plan by ID."""
        statement = select(SubscriptionPlan).where(SubscriptionPlan.id == id)
        result = await db.execute(statement)
        return result.scalar_one_or_none()

    async def get_active(self, db: AsyncSession, id: int) -> SubscriptionPlan | None:
        """Get a plan by ID, only if it is still offered."""
        statement = select(SubscriptionPlan).where(
            SubscriptionPlan.id == id,
            SubscriptionPlan.is_active == True,  # noqa: E712
        )
        result = await db.execute(statement)
        return result.scalar_one_or_none()

    async def list_active(self, db: AsyncSession) -> list[SubscriptionPlan]:
        """List plans currently offered, cheapest first."""
        statement = (
            select(SubscriptionPlan)
            .where(SubscriptionPlan.is_active == True)  # noqa: E712
            .order_by(SubscriptionPlan.price_monthly)
        )
        result = await db.execute(statement)
        return list(result.scalars().all())


plan_ops = PlanOperations()
