"""Pydantic schemas for payment ledger and refund entities."""
from datetime import datetime
from typing import Any, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from edubilling.models.payment import PaymentMode, PaymentStatus
from edubilling.models.refund import RefundStatus


class PaymentResponse(BaseModel):
    """Schema for payment ledger response."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    account_id: UUID
    plan_id: UUID
    mode: PaymentMode
    amount: int = Field(..., description="Amount in cents")
    currency: str
    status: PaymentStatus
    stripe_payment_intent_id: Optional[str] = Field(None, description="Stripe payment intent ID")
    stripe_subscription_id: Optional[str] = Field(None, description="Stripe subscription ID")
    addons: dict[str, Any] = Field(default_factory=dict)
    extra_metadata: dict[str, Any] = Field(default_factory=dict)
    failure_reason: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class PaymentList(BaseModel):
    """Schema for a list of payments."""

    items: List[PaymentResponse]
    total: int


class RefundRequestCreate(BaseModel):
    """Schema for requesting a refund of the latest payment."""

    reason: str = Field(..., min_length=1, max_length=2000)


class RefundApprove(BaseModel):
    """Schema for approving a refund request."""

    request_id: UUID


class RefundResponse(BaseModel):
    """Schema for refund request response."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    payment_id: UUID
    account_id: UUID
    amount: int = Field(..., description="Amount in cents")
    status: RefundStatus
    reason: Optional[str] = None
    approved_at: Optional[datetime] = None
    stripe_refund_id: Optional[str] = None
    created_at: datetime


class PaymentMethodResponse(BaseModel):
    """Saved card summary."""

    id: str
    brand: Optional[str] = None
    last4: Optional[str] = None
    exp_month: Optional[int] = None
    exp_year: Optional[int] = None
    is_default: bool = False


class SetDefaultPaymentMethod(BaseModel):
    """Schema for choosing the default card."""

    payment_method_id: str = Field(..., min_length=1)
