"""FastAPI dependencies for database sessions, authentication and services."""
from functools import lru_cache
from typing import Any, Optional
from uuid import UUID

import jwt
import structlog
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from edubilling.adapters.stripe_adapter import StripeAdapter
from edubilling.cache import ProductCache, build_product_cache
from edubilling.config import settings
from edubilling.database import get_db
from edubilling.errors import NotFound
from edubilling.integrations.notification_service import NotificationService
from edubilling.models.account import Account
from edubilling.schemas.error import ErrorCode
from edubilling.services.checkout_service import CheckoutService
from edubilling.services.quota_service import SeatUsageProvider, UserSeatUsage

logger = structlog.get_logger(__name__)

# Roles allowed to approve refunds
OPERATOR_ROLES = frozenset({"operator", "super_admin"})

# HTTP Bearer token security scheme
security = HTTPBearer(auto_error=False)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> dict[str, Any]:
    """
    Get current authenticated user from JWT token.

    Tokens are HS256-signed by the identity service and carry ``sub`` (user
    id) and ``account_id`` (tenant account).

    Returns:
        dict: Decoded token claims

    Raises:
        HTTPException: If token is invalid, expired, or missing
    """
    if not credentials:
        raise _unauthorized("Authentication required")

    token = credentials.credentials
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret_key,
            algorithms=[settings.jwt_algorithm],
            options={"require": ["sub", "account_id"]},
        )
    except jwt.ExpiredSignatureError:
        logger.warning("token_expired")
        raise _unauthorized("Token has expired")
    except jwt.InvalidTokenError as e:
        logger.warning("invalid_token", error=str(e))
        raise _unauthorized(f"Invalid authentication token: {e}")

    logger.debug("user_authenticated", user_id=payload.get("sub"), account_id=payload.get("account_id"))
    return payload


async def get_current_account(
    user: dict[str, Any] = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> Account:
    """Load the tenant account named by the token."""
    try:
        account_id = UUID(str(user["account_id"]))
    except ValueError:
        raise _unauthorized("Invalid account in token")

    account = await db.get(Account, account_id)
    if account is None:
        raise NotFound(f"Account {account_id} not found", code=ErrorCode.ACCOUNT_NOT_FOUND)
    return account


def current_user_id(user: dict[str, Any]) -> Optional[UUID]:
    """User id from token claims, when it is a UUID."""
    try:
        return UUID(str(user.get("sub")))
    except ValueError:
        return None


async def require_operator(user: dict[str, Any] = Depends(get_current_user)) -> dict[str, Any]:
    """Allow only platform operators."""
    if user.get("role") not in OPERATOR_ROLES:
        logger.warning("operator_role_required", user_id=user.get("sub"), role=user.get("role"))
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Operator role required")
    return user


def get_stripe_adapter() -> StripeAdapter:
    """Get Stripe adapter instance."""
    return StripeAdapter()


@lru_cache(maxsize=1)
def get_product_cache() -> ProductCache:
    """Process-wide Stripe product cache."""
    return build_product_cache()


def get_notifier() -> NotificationService:
    """Get notification service instance."""
    return NotificationService()


def get_seat_usage(db: AsyncSession = Depends(get_db)) -> SeatUsageProvider:
    """Seat counter for quota checks."""
    return UserSeatUsage(db)


def get_checkout_service(
    db: AsyncSession = Depends(get_db),
    processor: StripeAdapter = Depends(get_stripe_adapter),
    product_cache: ProductCache = Depends(get_product_cache),
    notifier: NotificationService = Depends(get_notifier),
    usage: SeatUsageProvider = Depends(get_seat_usage),
) -> CheckoutService:
    """Checkout orchestrator wired for a request."""
    return CheckoutService(db, processor, product_cache, notifier=notifier, usage=usage)
