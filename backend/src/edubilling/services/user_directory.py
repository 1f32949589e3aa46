"""User lookup and owner provisioning for billing events."""
from typing import Optional
from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from edubilling.models.account import Account
from edubilling.models.plan import Plan
from edubilling.models.user import User, UserRole

logger = structlog.get_logger(__name__)

OWNER_ROLES = (UserRole.ADMIN, UserRole.TEACHER)


def owner_role_for(plan: Plan) -> UserRole:
    """Single-seat plans are owned by a teacher, larger plans by a school admin."""
    return UserRole.TEACHER if plan.is_single_seat else UserRole.ADMIN


class UserDirectory:
    """Service layer for the users billing needs to know about."""

    def __init__(self, db: AsyncSession):
        """Initialize user directory with database session."""
        self.db = db

    async def get(self, user_id: UUID) -> Optional[User]:
        """Get a user by ID."""
        return await self.db.get(User, user_id)

    async def find_by_email(self, email: str) -> Optional[User]:
        """Find a user by email (case-insensitive)."""
        result = await self.db.execute(select(User).where(User.email == email.lower()))
        return result.scalar_one_or_none()

    async def find_owner(self, account_id: UUID) -> Optional[User]:
        """Earliest admin or teacher of the account."""
        result = await self.db.execute(
            select(User)
            .where(User.account_id == account_id, User.role.in_(OWNER_ROLES))
            .order_by(User.created_at.asc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def resolve_owner(self, account: Account, plan: Plan) -> User:
        """
        Find the paying user of an account, creating one on first purchase.

        Args:
            account: Account that paid
            plan: Plan bought, decides the role of a new owner

        Returns:
            Existing or newly created owner user
        """
        user = await self.find_owner(account.id) or await self.find_by_email(account.owner_email)
        if user is not None:
            return user

        first_name, _, last_name = (account.owner_name or "").partition(" ")
        user = User(
            account_id=account.id,
            email=account.owner_email.lower(),
            first_name=first_name,
            last_name=last_name,
            role=owner_role_for(plan),
            is_active=True,
        )
        self.db.add(user)
        await self.db.flush()

        logger.info(
            "owner_user_provisioned",
            user_id=str(user.id),
            account_id=str(account.id),
            role=user.role.value,
        )
        return user
