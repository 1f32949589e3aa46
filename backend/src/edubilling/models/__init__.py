"""SQLAlchemy ORM models for the billing engine."""
# Import all models here to ensure they are registered with Alembic

from edubilling.models.base import Base
from edubilling.models.plan import Plan
from edubilling.models.account import Account, AccountPaymentStatus, BillingCycle, SubscriptionStatus
from edubilling.models.user import User, UserRole
from edubilling.models.payment import Payment, PaymentMode, PaymentStatus
from edubilling.models.refund import RefundRequest, RefundStatus

__all__ = [
    "Base",
    "Plan",
    "Account",
    "AccountPaymentStatus",
    "BillingCycle",
    "SubscriptionStatus",
    "User",
    "UserRole",
    "Payment",
    "PaymentMode",
    "PaymentStatus",
    "RefundRequest",
    "RefundStatus",
]
