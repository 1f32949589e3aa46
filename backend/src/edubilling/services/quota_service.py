"""Seat quota checks and effective limit updates."""
import enum
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Protocol
from uuid import UUID

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from edubilling.errors import NotFound, PolicyViolation, ValidationError
from edubilling.models.account import Account
from edubilling.models.plan import Plan
from edubilling.models.user import User, UserRole
from edubilling.schemas.checkout import AddonSelection
from edubilling.schemas.error import ErrorCode

logger = structlog.get_logger(__name__)

MAX_TEACHER_ADDON_SEATS = 1000
MAX_STUDENT_ADDON_SEATS = 10000


class ResourceKind(enum.Enum):
    """Resources limited by the plan."""

    TEACHER = "teacher"
    STUDENT = "student"
    CLASS = "class"


_LIMIT_COLUMNS = {
    ResourceKind.TEACHER: "teacher_limit",
    ResourceKind.STUDENT: "student_limit",
    ResourceKind.CLASS: "class_limit",
}


class SeatUsageProvider(Protocol):
    """Counts active resources of a tenant."""

    async def count_active(self, account_id: UUID, kind: ResourceKind) -> int:
        ...


class UserSeatUsage:
    """
    Counts active teachers and students in the users table.

    Classes live in the academic service; their count comes from the injected
    ``class_counter``.
    """

    def __init__(self, db: AsyncSession, class_counter: Optional[Callable[[UUID], Awaitable[int]]] = None):
        self.db = db
        self.class_counter = class_counter

    async def count_active(self, account_id: UUID, kind: ResourceKind) -> int:
        if kind is ResourceKind.CLASS:
            if self.class_counter is None:
                raise ValidationError("Class usage is not available", code=ErrorCode.INVALID_RESOURCE_KIND)
            return await self.class_counter(account_id)

        role = UserRole.TEACHER if kind is ResourceKind.TEACHER else UserRole.STUDENT
        result = await self.db.execute(
            select(func.count(User.id)).where(
                User.account_id == account_id,
                User.role == role,
                User.is_active.is_(True),
            )
        )
        return int(result.scalar_one())


@dataclass(frozen=True)
class QuotaDecision:
    """Allow/deny answer for adding resources."""

    kind: ResourceKind
    allowed: bool
    requested: int
    current: int
    maximum: int
    remaining: int
    message: str


def _label(kind: ResourceKind) -> str:
    return "class(es)" if kind is ResourceKind.CLASS else f"{kind.value}(s)"


def _plural(kind: ResourceKind) -> str:
    return "classes" if kind is ResourceKind.CLASS else f"{kind.value}s"


def validate_addons(addons: AddonSelection) -> AddonSelection:
    """
    Check addon seat counts are whole numbers within the sellable range.

    Raises:
        ValidationError: If a count is not an integer or out of range
    """
    bounds = (
        ("teacher_seats", addons.teacher_seats, MAX_TEACHER_ADDON_SEATS),
        ("student_seats", addons.student_seats, MAX_STUDENT_ADDON_SEATS),
    )
    for field, value, upper in bounds:
        if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= upper:
            raise ValidationError(
                f"{field} must be a whole number between 0 and {upper}",
                code=ErrorCode.INVALID_ADDON_COUNT,
                context={"field": field, "value": value},
            )
    return addons


class QuotaService:
    """Service layer for seat quota enforcement."""

    def __init__(self, db: AsyncSession, usage: Optional[SeatUsageProvider] = None):
        """
        Initialize quota service.

        Args:
            db: Database session
            usage: Seat counter (defaults to counting users)
        """
        self.db = db
        self.usage = usage or UserSeatUsage(db)

    async def _get_account(self, account_id: UUID) -> Account:
        account = await self.db.get(Account, account_id)
        if account is None:
            raise NotFound(f"Account {account_id} not found", code=ErrorCode.ACCOUNT_NOT_FOUND)
        return account

    async def check(self, account_id: UUID, kind: ResourceKind, requested: int = 1) -> QuotaDecision:
        """
        Decide whether ``requested`` more resources fit under the effective cap.

        Args:
            account_id: Tenant account ID
            kind: Resource kind
            requested: Number of resources about to be added

        Returns:
            Decision with a human-readable message
        """
        account = await self._get_account(account_id)
        current = await self.usage.count_active(account_id, kind)
        maximum = getattr(account, _LIMIT_COLUMNS[kind])
        remaining = maximum - current
        allowed = requested <= remaining

        if allowed:
            message = f"You can add {requested} {_label(kind)}. {remaining - requested} slot(s) remaining."
        else:
            message = (
                f"Cannot add {requested} {_label(kind)}. You have {current}/{maximum} {_plural(kind)}. "
                f"Only {max(0, remaining)} slot(s) remaining."
            )

        return QuotaDecision(
            kind=kind,
            allowed=allowed,
            requested=requested,
            current=current,
            maximum=maximum,
            remaining=max(0, remaining),
            message=message,
        )

    async def enforce(self, account_id: UUID, kind: ResourceKind, requested: int = 1) -> QuotaDecision:
        """
        Check quota before provisioning.

        Raises:
            PolicyViolation: If the resources do not fit
        """
        decision = await self.check(account_id, kind, requested)
        if not decision.allowed:
            logger.info(
                "quota_exceeded",
                account_id=str(account_id),
                kind=kind.value,
                requested=requested,
                current=decision.current,
                maximum=decision.maximum,
            )
            raise PolicyViolation(
                decision.message,
                code=ErrorCode.QUOTA_EXCEEDED,
                context={"current": decision.current, "maximum": decision.maximum},
            )
        return decision

    async def usage_summary(self, account_id: UUID, kinds: tuple[ResourceKind, ...] = tuple(ResourceKind)) -> dict[str, dict[str, int]]:
        """
        Current, maximum and remaining counts per resource kind.

        Kinds the usage provider cannot count are reported with zero usage.
        """
        account = await self._get_account(account_id)
        summary: dict[str, dict[str, int]] = {}
        for kind in kinds:
            try:
                current = await self.usage.count_active(account_id, kind)
            except ValidationError:
                current = 0
            maximum = getattr(account, _LIMIT_COLUMNS[kind])
            summary[_plural(kind)] = {
                "current": current,
                "maximum": maximum,
                "remaining": max(0, maximum - current),
            }
        return summary

    async def apply_plan_limits(self, account: Account, plan: Plan, addons: AddonSelection) -> None:
        """
        Write effective limits for a plan plus addon seats onto the account.

        Limits are set, not incremented, so applying the same purchase twice
        gives the same result. The limit may end up below the number of
        active users after a downgrade: nobody is deactivated, ``check``
        denies new users until usage drops under the limit.

        Args:
            account: Account to update (caller commits)
            plan: Plan now in effect
            addons: Addon seats now in effect
        """
        account.teacher_limit = plan.max_teachers + addons.teacher_seats
        account.student_limit = plan.max_students + addons.student_seats
        account.class_limit = plan.max_classes
        account.school_limit = plan.max_schools

        logger.info(
            "plan_limits_applied",
            account_id=str(account.id),
            plan=plan.slug,
            teacher_limit=account.teacher_limit,
            student_limit=account.student_limit,
            class_limit=account.class_limit,
            teacher_seats=addons.teacher_seats,
            student_seats=addons.student_seats,
        )
