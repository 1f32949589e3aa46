"""Structured error response schemas."""
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from edubilling.utils.dates import utcnow


class ErrorDetail(BaseModel):
    """Detailed error information."""

    code: str = Field(..., description="Machine-readable error code")
    message: str = Field(..., description="Human-readable error message")
    field: str | None = Field(default=None, description="Field that caused the error (for validation errors)")
    value: Any | None = Field(default=None, description="Invalid value (for validation errors)")


class ErrorResponse(BaseModel):
    """Standard error response structure.

    Every failure leaves the API with the same body so clients can branch on
    ``details[0].code`` without parsing the prose message.
    """

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "error": "PolicyViolation",
                "message": "Please wait 42 minute(s) before making another purchase.",
                "details": [
                    {
                        "code": "rate_limit_exceeded",
                        "message": "Please wait 42 minute(s) before making another purchase.",
                    }
                ],
                "remediation": "A purchase was made moments ago. Check your payment history before retrying.",
                "request_id": "req_1234567890ab",
                "timestamp": "2025-01-15T10:30:00Z",
            }
        }
    )

    error: str = Field(..., description="Error type (e.g., 'ValidationError', 'NotFound', 'PolicyViolation')")
    message: str = Field(..., description="Primary error message")
    details: list[ErrorDetail] | None = Field(default=None, description="Detailed error information")
    remediation: str | None = Field(default=None, description="Suggestion for fixing the error")
    request_id: str | None = Field(default=None, description="Request ID for tracing")
    timestamp: datetime = Field(default_factory=utcnow, description="Error timestamp")


class ErrorCode:
    """Standard error codes used across the API."""

    # Validation errors (400)
    INVALID_PURCHASE_TYPE = "invalid_purchase_type"
    INVALID_ADDON_COUNT = "invalid_addon_count"
    PLAN_NOT_PURCHASABLE = "plan_not_purchasable"
    ALREADY_ON_PLAN = "already_on_plan"
    NO_BILLING_SOURCE = "no_billing_source"
    INVALID_RESOURCE_KIND = "invalid_resource_kind"
    MISSING_REQUIRED_FIELD = "missing_required_field"

    # Not found errors (404)
    ACCOUNT_NOT_FOUND = "account_not_found"
    PLAN_NOT_FOUND = "plan_not_found"
    PAYMENT_NOT_FOUND = "payment_not_found"
    REFUND_REQUEST_NOT_FOUND = "refund_request_not_found"
    PAYMENT_METHOD_NOT_FOUND = "payment_method_not_found"

    # Authorization errors (403)
    PAYMENT_ACCESS_DENIED = "payment_access_denied"

    # Policy violations (409 / 429)
    ACTIVE_SUBSCRIPTION_EXISTS = "active_subscription_exists"
    DUPLICATE_YEARLY_PURCHASE = "duplicate_yearly_purchase"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    QUOTA_EXCEEDED = "quota_exceeded"
    REFUND_WINDOW_EXPIRED = "refund_window_expired"
    REFUND_ALREADY_REQUESTED = "refund_already_requested"
    REFUND_ALREADY_PROCESSED = "refund_already_processed"
    DUPLICATE_UPGRADE_REQUEST = "duplicate_upgrade_request"

    # Webhook errors (400)
    INVALID_SIGNATURE = "invalid_signature"

    # External service errors (502, 503)
    STRIPE_API_ERROR = "stripe_api_error"
    STRIPE_UNAVAILABLE = "stripe_unavailable"
    DATABASE_ERROR = "database_error"

    # Internal errors (500)
    AMOUNT_MISMATCH = "amount_mismatch"
    INTERNAL_ERROR = "internal_error"


# Remediation hints for common errors
REMEDIATION_HINTS = {
    ErrorCode.INVALID_PURCHASE_TYPE: "Use purchase_type 'subscription' (monthly) or 'one_time' (yearly).",
    ErrorCode.INVALID_ADDON_COUNT: "Addon seats must be whole numbers: 0-1000 teachers, 0-10000 students.",
    ErrorCode.PLAN_NOT_FOUND: "List available plans at GET /v1/billing/plans and use one of their slugs.",
    ErrorCode.ALREADY_ON_PLAN: "Pick a different plan, billing cycle or addon quantity.",
    ErrorCode.NO_BILLING_SOURCE: "There is nothing to upgrade yet. Start with a checkout instead.",
    ErrorCode.ACTIVE_SUBSCRIPTION_EXISTS: "Manage or upgrade the existing subscription instead of buying a new one.",
    ErrorCode.DUPLICATE_YEARLY_PURCHASE: "A yearly plan is already active. Use the upgrade flow to change it.",
    ErrorCode.RATE_LIMIT_EXCEEDED: "A purchase was made moments ago. Check your payment history before retrying.",
    ErrorCode.QUOTA_EXCEEDED: "Buy additional seats or upgrade the plan to add more users.",
    ErrorCode.REFUND_WINDOW_EXPIRED: "Refunds are only available within 30 days of payment. Contact support.",
    ErrorCode.DUPLICATE_UPGRADE_REQUEST: "This upgrade is already being processed. Check the payment status.",
    ErrorCode.INVALID_SIGNATURE: "Check that the webhook signing secret matches the Stripe dashboard.",
    ErrorCode.STRIPE_API_ERROR: "Payment processing failed. Please verify your payment details and try again.",
    ErrorCode.STRIPE_UNAVAILABLE: "Stripe is temporarily unavailable. Please try again later.",
    ErrorCode.AMOUNT_MISMATCH: "The charge was not created. Please contact support with the request ID.",
    ErrorCode.DATABASE_ERROR: "Database temporarily unavailable. Please try again in a few moments.",
}
