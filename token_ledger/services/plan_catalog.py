"""
Plan Catalog - Purchasable token packs.

Read-only from the ledger's point of view; edited by admins. Price and grant
are frozen once a plan has been purchased.
"""

from uuid import UUID, uuid4

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from token_ledger.db.models import Plan
from token_ledger.exceptions import PersistenceError, PlanImmutableError, PlanNotFoundError
from token_ledger.models.api import Tier
from token_ledger.models.domain import PlanData

logger = get_logger(__name__)


def parse_plan_id(plan_id: UUID | str) -> UUID:
    """Coerce a plan identifier; malformed ids are reported as not found."""
    if isinstance(plan_id, UUID):
        return plan_id
    try:
        return UUID(str(plan_id))
    except ValueError as exc:
        raise PlanNotFoundError(plan_id) from exc


def plan_to_domain(plan: Plan) -> PlanData:
    """Convert ORM plan to domain model."""
    return PlanData(
        plan_id=plan.id,
        name=plan.name,
        display_name=plan.display_name,
        description=plan.description,
        price_minor=plan.price_minor,
        currency=plan.currency,
        token_grant=plan.token_grant,
        tier=Tier(plan.tier),
        active=plan.active,
        sort_order=plan.sort_order,
    )


class PlanCatalog:
    """Plan lookup, admin edits and purchase statistics."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def list_plans(
        self, tier: Tier | None = None, include_inactive: bool = False
    ) -> list[PlanData]:
        """Plans ordered for display."""
        stmt = select(Plan).order_by(Plan.sort_order, Plan.price_minor)
        if not include_inactive:
            stmt = stmt.where(Plan.active.is_(True))
        if tier is not None:
            stmt = stmt.where(Plan.tier == tier.value)
        result = await self.session.execute(stmt)
        return [plan_to_domain(p) for p in result.scalars().all()]

    async def get_plan(self, plan_id: UUID | str, require_active: bool = True) -> PlanData:
        """
        Get a plan by id.

        Raises:
            PlanNotFoundError: Plan doesn't exist (or is inactive when required)
        """
        plan = await self.session.get(Plan, parse_plan_id(plan_id))
        if plan is None or (require_active and not plan.active):
            raise PlanNotFoundError(plan_id)
        return plan_to_domain(plan)

    async def create_plan(
        self,
        name: str,
        display_name: str,
        price_minor: int,
        token_grant: int,
        tier: Tier,
        description: str = "",
        currency: str = "INR",
        active: bool = True,
        sort_order: int = 0,
    ) -> PlanData:
        """Create a catalog entry."""
        plan = Plan(
            id=uuid4(),
            name=name,
            display_name=display_name,
            description=description,
            price_minor=price_minor,
            currency=currency.upper(),
            token_grant=token_grant,
            tier=tier.value,
            active=active,
            sort_order=sort_order,
            total_purchases=0,
            total_revenue_minor=0,
        )
        self.session.add(plan)
        try:
            await self.session.flush()
        except IntegrityError as exc:
            await self.session.rollback()
            raise PersistenceError(f"Plan {name} could not be created") from exc
        await self.session.commit()

        logger.info("plan_created", plan_id=str(plan.id), name=name, tier=tier.value)
        return plan_to_domain(plan)

    async def update_plan(
        self,
        plan_id: UUID | str,
        display_name: str | None = None,
        description: str | None = None,
        price_minor: int | None = None,
        token_grant: int | None = None,
        tier: Tier | None = None,
        active: bool | None = None,
        sort_order: int | None = None,
    ) -> PlanData:
        """
        Update a plan; only provided fields change.

        Raises:
            PlanNotFoundError: Plan doesn't exist
            PlanImmutableError: Price, grant or tier edited after a purchase
        """
        plan = await self.session.get(Plan, parse_plan_id(plan_id), with_for_update=True)
        if plan is None:
            raise PlanNotFoundError(plan_id)

        frozen = [
            name
            for name, value, current in (
                ("price_minor", price_minor, plan.price_minor),
                ("token_grant", token_grant, plan.token_grant),
                ("tier", tier.value if tier is not None else None, plan.tier),
            )
            if value is not None and value != current
        ]
        if frozen and plan.total_purchases > 0:
            raise PlanImmutableError(plan.id, frozen)

        if display_name is not None:
            plan.display_name = display_name
        if description is not None:
            plan.description = description
        if price_minor is not None:
            plan.price_minor = price_minor
        if token_grant is not None:
            plan.token_grant = token_grant
        if tier is not None:
            plan.tier = tier.value
        if active is not None:
            plan.active = active
        if sort_order is not None:
            plan.sort_order = sort_order

        await self.session.flush()
        await self.session.commit()

        logger.info("plan_updated", plan_id=str(plan.id))
        return plan_to_domain(plan)

    async def record_purchase(self, plan_id: UUID, revenue_minor: int) -> None:
        """Atomically bump purchase count and revenue. Caller commits."""
        await self.session.execute(
            update(Plan)
            .where(Plan.id == plan_id)
            .values(
                total_purchases=Plan.total_purchases + 1,
                total_revenue_minor=Plan.total_revenue_minor + revenue_minor,
            )
        )
