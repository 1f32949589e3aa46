"""Pydantic schemas for API request/response validation."""

from edubilling.schemas.checkout import (
    AddonSelection,
    CheckoutIntentRequest,
    CheckoutIntentResponse,
    CheckoutRequest,
    CheckoutResponse,
    PriceBreakdown,
    PurchaseType,
    UpgradePreviewResponse,
    UpgradeRequest,
    UpgradeResponse,
)
from edubilling.schemas.error import ErrorCode, ErrorDetail, ErrorResponse
from edubilling.schemas.payment import (
    PaymentList,
    PaymentMethodResponse,
    PaymentResponse,
    RefundApprove,
    RefundRequestCreate,
    RefundResponse,
    SetDefaultPaymentMethod,
)
from edubilling.schemas.plan import PlanList, PlanResponse
from edubilling.schemas.quota import QuotaDecisionResponse, QuotaUsage, UsageSummary

__all__ = [
    "AddonSelection",
    "CheckoutIntentRequest",
    "CheckoutIntentResponse",
    "CheckoutRequest",
    "CheckoutResponse",
    "PriceBreakdown",
    "PurchaseType",
    "UpgradePreviewResponse",
    "UpgradeRequest",
    "UpgradeResponse",
    "ErrorCode",
    "ErrorDetail",
    "ErrorResponse",
    "PaymentList",
    "PaymentMethodResponse",
    "PaymentResponse",
    "RefundApprove",
    "RefundRequestCreate",
    "RefundResponse",
    "SetDefaultPaymentMethod",
    "PlanList",
    "PlanResponse",
    "QuotaDecisionResponse",
    "QuotaUsage",
    "UsageSummary",
]
