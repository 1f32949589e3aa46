"""Plan catalog: read-only plan lookup and price resolution."""
import enum
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from edubilling.errors import NotFound, ValidationError
from edubilling.models.account import BillingCycle
from edubilling.models.plan import Plan
from edubilling.schemas.checkout import AddonSelection, PriceBreakdown
from edubilling.schemas.error import ErrorCode


class AddonKind(enum.Enum):
    """Seat kinds that can be bought on top of a plan."""

    TEACHER = "teacher"
    STUDENT = "student"


def _pricing_cycle(cycle: BillingCycle) -> BillingCycle:
    # one_time purchases are priced as yearly access
    return BillingCycle.YEARLY if cycle is BillingCycle.ONE_TIME else cycle


def base_price(plan: Plan, cycle: BillingCycle) -> int:
    """
    Base plan price in cents for a billing cycle.

    Raises:
        ValidationError: If the plan is not sold at this cycle
    """
    price = plan.price_monthly if _pricing_cycle(cycle) is BillingCycle.MONTHLY else plan.price_yearly
    if price is None:
        raise ValidationError(
            f"Plan '{plan.slug}' is not available for {cycle.value} billing",
            code=ErrorCode.PLAN_NOT_PURCHASABLE,
        )
    return max(0, price)


def addon_unit_price(plan: Plan, cycle: BillingCycle, kind: AddonKind) -> int:
    """Per-seat addon price in cents for a billing cycle."""
    monthly = _pricing_cycle(cycle) is BillingCycle.MONTHLY
    if kind is AddonKind.TEACHER:
        price = plan.teacher_addon_monthly if monthly else plan.teacher_addon_yearly
    else:
        price = plan.student_addon_monthly if monthly else plan.student_addon_yearly
    return max(0, price or 0)


def price_breakdown(plan: Plan, cycle: BillingCycle, addons: AddonSelection) -> PriceBreakdown:
    """
    Itemize the full price of a plan with addon seats.

    Args:
        plan: Plan being bought
        cycle: Billing cycle
        addons: Addon seats

    Returns:
        Price breakdown with base, per-kind addon costs and total
    """
    base = base_price(plan, cycle)
    teacher_unit = addon_unit_price(plan, cycle, AddonKind.TEACHER)
    student_unit = addon_unit_price(plan, cycle, AddonKind.STUDENT)
    teacher_cost = teacher_unit * addons.teacher_seats
    student_cost = student_unit * addons.student_seats
    addon_cost = teacher_cost + student_cost
    return PriceBreakdown(
        base_price=base,
        teacher_seats=addons.teacher_seats,
        teacher_unit_price=teacher_unit,
        teacher_cost=teacher_cost,
        student_seats=addons.student_seats,
        student_unit_price=student_unit,
        student_cost=student_cost,
        addon_cost=addon_cost,
        total=base + addon_cost,
    )


class PlanCatalog:
    """Service layer for plan lookups."""

    def __init__(self, db: AsyncSession):
        """Initialize plan catalog with database session."""
        self.db = db

    async def get_by_id(self, plan_id: UUID) -> Plan:
        """
        Get a plan by ID.

        Raises:
            NotFound: If the plan does not exist
        """
        plan = await self.db.get(Plan, plan_id)
        if plan is None:
            raise NotFound(f"Plan {plan_id} not found", code=ErrorCode.PLAN_NOT_FOUND)
        return plan

    async def get_by_slug(self, slug: str, purchasable: bool = True) -> Plan:
        """
        Get a plan by slug.

        Args:
            slug: Plan slug
            purchasable: Only return active plans

        Raises:
            NotFound: If no matching plan exists
        """
        query = select(Plan).where(Plan.slug == slug)
        if purchasable:
            query = query.where(Plan.active.is_(True))
        result = await self.db.execute(query)
        plan = result.scalar_one_or_none()
        if plan is None:
            raise NotFound(f"Plan '{slug}' not found", code=ErrorCode.PLAN_NOT_FOUND)
        return plan

    async def list_plans(self, active_only: bool = True) -> list[Plan]:
        """List plans ordered by monthly price."""
        query = select(Plan).order_by(Plan.price_monthly.asc().nullslast(), Plan.name)
        if active_only:
            query = query.where(Plan.active.is_(True))
        result = await self.db.execute(query)
        return list(result.scalars().all())

    base_price = staticmethod(base_price)
    addon_unit_price = staticmethod(addon_unit_price)
    price_breakdown = staticmethod(price_breakdown)
