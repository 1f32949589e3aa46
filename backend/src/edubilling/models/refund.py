"""Refund request model."""
from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text, Uuid, Enum as SQLEnum
import enum

from edubilling.models.base import Base


class RefundStatus(enum.Enum):
    """Refund approval workflow status."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    COMPLETED = "completed"


class RefundRequest(Base):
    """User-initiated refund request, one per payment."""

    __tablename__ = "refund_requests"

    payment_id = Column(Uuid(as_uuid=True), ForeignKey("payments.id"), nullable=False, unique=True)
    user_id = Column(Uuid(as_uuid=True), nullable=True)
    account_id = Column(Uuid(as_uuid=True), ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    amount = Column(Integer, nullable=False)  # Amount in cents
    status = Column(SQLEnum(RefundStatus), nullable=False, default=RefundStatus.PENDING, index=True)
    reason = Column(Text, nullable=True)
    approved_at = Column(DateTime, nullable=True)
    stripe_refund_id = Column(String, nullable=True)

    def __repr__(self) -> str:
        """String representation."""
        return f"<RefundRequest(id={self.id}, payment_id={self.payment_id}, status={self.status.value})>"
