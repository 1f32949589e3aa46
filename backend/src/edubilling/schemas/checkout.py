"""Pydantic schemas for checkout, upgrade and pricing breakdowns."""
import enum
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from edubilling.models.account import BillingCycle
from edubilling.models.payment import PaymentMode


class PurchaseType(str, enum.Enum):
    """Purchase type chosen by the customer."""

    SUBSCRIPTION = "subscription"  # Monthly recurring
    ONE_TIME = "one_time"  # Yearly, paid up front

    @property
    def cycle(self) -> BillingCycle:
        """Pricing cycle used for this purchase type."""
        return BillingCycle.MONTHLY if self is PurchaseType.SUBSCRIPTION else BillingCycle.YEARLY

    @property
    def mode(self) -> PaymentMode:
        """Ledger mode recorded for this purchase type."""
        return PaymentMode.SUBSCRIPTION if self is PurchaseType.SUBSCRIPTION else PaymentMode.ONE_TIME


class AddonSelection(BaseModel):
    """Extra seats bought on top of the plan caps."""

    model_config = ConfigDict(frozen=True)

    teacher_seats: int = Field(default=0, description="Additional teacher seats")
    student_seats: int = Field(default=0, description="Additional student seats")

    @property
    def is_empty(self) -> bool:
        return self.teacher_seats == 0 and self.student_seats == 0


class PriceBreakdown(BaseModel):
    """Itemized price of a plan at a cycle, amounts in cents."""

    base_price: int
    teacher_seats: int = 0
    teacher_unit_price: int = 0
    teacher_cost: int = 0
    student_seats: int = 0
    student_unit_price: int = 0
    student_cost: int = 0
    addon_cost: int = 0
    total: int

    def snapshot(self) -> dict[str, int]:
        """Addon snapshot stored on the ledger row."""
        return {
            "teacher_seats": self.teacher_seats,
            "student_seats": self.student_seats,
            "addon_cost": self.addon_cost,
            "total_cost": self.total,
            "base_plan_price": self.base_price,
        }


class CheckoutRequest(BaseModel):
    """Request body for a hosted checkout session."""

    plan_slug: str = Field(..., min_length=1, description="Plan slug")
    purchase_type: PurchaseType = Field(..., description="subscription (monthly) or one_time (yearly)")
    addons: AddonSelection = Field(default_factory=AddonSelection)


class CheckoutIntentRequest(CheckoutRequest):
    """Request body for an embedded (Elements) checkout."""

    payment_method_id: Optional[str] = Field(default=None, description="Saved Stripe payment method to charge")


class CheckoutResponse(BaseModel):
    """Hosted checkout session created."""

    payment_id: UUID
    session_id: str
    url: str
    amount: int = Field(..., description="Amount in cents")
    currency: str
    mode: PaymentMode
    breakdown: PriceBreakdown


class CheckoutIntentResponse(BaseModel):
    """Client secret to confirm with Stripe.js."""

    payment_id: UUID
    client_secret: Optional[str]
    intent_type: str = Field(..., description="payment or setup")
    amount: int = Field(..., description="Amount in cents")
    currency: str
    mode: PaymentMode
    breakdown: PriceBreakdown
    trial: bool = False
    trial_days: int = 0


class UpgradeRequest(BaseModel):
    """Request body for upgrade preview and upgrade."""

    new_plan_slug: str = Field(..., min_length=1, description="Target plan slug")
    purchase_type: PurchaseType = Field(..., description="Target cycle")
    addons: Optional[AddonSelection] = Field(default=None, description="New addon totals; omitted keeps current seats")
    idempotency_key: Optional[str] = Field(default=None, max_length=255)


class UpgradePreviewResponse(BaseModel):
    """Price of an upgrade before it is made."""

    current_plan: Optional[str]
    new_plan: str
    conversion_type: str
    credit: int = Field(..., description="Unused-time credit in cents")
    breakdown: PriceBreakdown
    total_addon_cost: int
    amount_due: int
    balance_remainder: int = Field(0, description="Credit left on the Stripe balance after the first invoice")
    no_payment_required: bool


class UpgradeResponse(BaseModel):
    """Upgrade started or, when nothing is due, completed."""

    payment_id: UUID
    conversion_type: str
    client_secret: Optional[str] = None
    intent_type: Optional[str] = None
    amount: int
    credit: int
    breakdown: PriceBreakdown
    no_payment_required: bool
    status: str
