"""Account model for a school tenant's subscription state."""
from sqlalchemy import Boolean, Column, Date, ForeignKey, Integer, String, Uuid, Enum as SQLEnum
import enum

from edubilling.models.base import Base


class SubscriptionStatus(enum.Enum):
    """Lifecycle status of a tenant subscription."""

    TRIAL = "trial"
    TRIALING = "trialing"
    PENDING = "pending"
    ACTIVE = "active"
    PAID = "paid"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"
    FAILED = "failed"


class AccountPaymentStatus(enum.Enum):
    """Outcome of the most recent charge for the account."""

    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"


class BillingCycle(enum.Enum):
    """Billing cycle of the current plan."""

    MONTHLY = "monthly"
    YEARLY = "yearly"
    ONE_TIME = "one_time"


class Account(Base):
    """
    School tenant billing account.

    Holds the current plan, subscription window and the effective resource
    limits (plan caps widened by purchased addon seats).
    """

    __tablename__ = "accounts"

    owner_email = Column(String, nullable=False, index=True)
    owner_name = Column(String, nullable=False, default="")
    plan_id = Column(Uuid(as_uuid=True), ForeignKey("plans.id"), nullable=True, index=True)
    subscription_status = Column(
        SQLEnum(SubscriptionStatus), nullable=False, default=SubscriptionStatus.TRIAL, index=True
    )
    payment_status = Column(SQLEnum(AccountPaymentStatus), nullable=False, default=AccountPaymentStatus.PENDING)
    billing_cycle = Column(SQLEnum(BillingCycle), nullable=True)
    subscription_start_date = Column(Date, nullable=True)
    subscription_end_date = Column(Date, nullable=True)
    has_used_trial = Column(Boolean, nullable=False, default=False)
    stripe_customer_id = Column(String, nullable=True, unique=True)
    stripe_subscription_id = Column(String, nullable=True, index=True)
    credit_balance = Column(Integer, nullable=False, default=0)  # Cents left on the Stripe balance

    # Effective limits
    teacher_limit = Column(Integer, nullable=False, default=0)
    student_limit = Column(Integer, nullable=False, default=0)
    class_limit = Column(Integer, nullable=False, default=0)
    school_limit = Column(Integer, nullable=False, default=0)

    def __repr__(self) -> str:
        """String representation."""
        return f"<Account(id={self.id}, email={self.owner_email}, status={self.subscription_status.value})>"
