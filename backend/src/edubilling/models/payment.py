"""Payment ledger model for purchase, subscription and upgrade attempts."""
from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text, Uuid, Enum as SQLEnum
import enum

from edubilling.models.base import Base, JSONType


class PaymentMode(enum.Enum):
    """How the charge is collected by Stripe."""

    ONE_TIME = "one_time"  # Single payment intent, yearly access
    SUBSCRIPTION = "subscription"  # Recurring monthly subscription


class PaymentStatus(enum.Enum):
    """Payment ledger status. Moves forward only."""

    PENDING = "pending"
    TRIALING = "trialing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"


class Payment(Base):
    """
    Ledger entry for one charge or subscription attempt.

    Created as soon as a charge is requested, before Stripe is called, and
    never deleted. The addon snapshot keeps the seat counts bought at the
    time of purchase so quota can be rebuilt without asking Stripe.
    """

    __tablename__ = "payments"

    account_id = Column(Uuid(as_uuid=True), ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    plan_id = Column(Uuid(as_uuid=True), ForeignKey("plans.id"), nullable=False, index=True)
    user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=True)
    mode = Column(SQLEnum(PaymentMode), nullable=False)
    amount = Column(Integer, nullable=False)  # Amount in cents
    currency = Column(String(3), nullable=False, default="usd")
    status = Column(SQLEnum(PaymentStatus), nullable=False, default=PaymentStatus.PENDING, index=True)
    stripe_payment_intent_id = Column(String, nullable=True, unique=True)
    stripe_subscription_id = Column(String, nullable=True, index=True)
    stripe_checkout_session_id = Column(String, nullable=True, unique=True)
    addons = Column(JSONType, nullable=False, default=dict)  # teacher_seats, student_seats, addon_cost, total_cost, base_plan_price
    extra_metadata = Column(JSONType, nullable=False, default=dict)  # conversion_type, credit amounts, ...
    idempotency_key = Column(String, nullable=True, index=True)
    failure_reason = Column(Text, nullable=True)
    email_sent_at = Column(DateTime, nullable=True)

    @property
    def conversion_type(self) -> str | None:
        """Billing-cycle conversion this payment settles, if any."""
        return (self.extra_metadata or {}).get("conversion_type")

    def __repr__(self) -> str:
        """String representation."""
        return f"<Payment(id={self.id}, account_id={self.account_id}, status={self.status.value}, amount={self.amount})>"
