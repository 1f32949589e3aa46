"""Billing error taxonomy and operation outcomes.

Every expected failure carries a stable machine-readable ``code`` (see
``ErrorCode``) that callers and tests branch on, plus the HTTP status the API
layer renders it with.
"""
from dataclasses import dataclass
from functools import wraps
from typing import Any, Awaitable, Callable, Generic, TypeVar, Union

from edubilling.schemas.error import ErrorCode

T = TypeVar("T")


class BillingError(Exception):
    """Base class for all expected billing failures."""

    error_type = "BillingError"
    status_code = 400
    default_code = ErrorCode.INTERNAL_ERROR

    def __init__(self, message: str, code: str | None = None, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.context = context or {}

    def __repr__(self) -> str:
        return f"<{type(self).__name__}(code={self.code}, message={self.message!r})>"


class ValidationError(BillingError):
    """Bad input shape or range. Never retried."""

    error_type = "ValidationError"
    status_code = 400
    default_code = ErrorCode.MISSING_REQUIRED_FIELD


class NotFound(BillingError):
    """Unknown plan, account, payment or refund request."""

    error_type = "NotFound"
    status_code = 404
    default_code = ErrorCode.PAYMENT_NOT_FOUND


class Forbidden(BillingError):
    """Resource exists but belongs to another account."""

    error_type = "Forbidden"
    status_code = 403
    default_code = ErrorCode.PAYMENT_ACCESS_DENIED


class PolicyViolation(BillingError):
    """Guardrail or quota rejection. Expected user journey, not a fault."""

    error_type = "PolicyViolation"
    status_code = 409
    default_code = ErrorCode.RATE_LIMIT_EXCEEDED

    def __init__(self, message: str, code: str | None = None, context: dict[str, Any] | None = None):
        super().__init__(message, code, context)
        if self.code == ErrorCode.RATE_LIMIT_EXCEEDED:
            self.status_code = 429


class IdempotencyConflict(BillingError):
    """The same idempotency key was used within the replay window."""

    error_type = "IdempotencyConflict"
    status_code = 409
    default_code = ErrorCode.DUPLICATE_UPGRADE_REQUEST


class AmountMismatch(BillingError):
    """Stripe reported a different amount than computed. Fatal."""

    error_type = "AmountMismatch"
    status_code = 500
    default_code = ErrorCode.AMOUNT_MISMATCH


class ProcessorError(BillingError):
    """Base class for Stripe call failures."""

    error_type = "PaymentGatewayError"
    status_code = 502
    default_code = ErrorCode.STRIPE_API_ERROR


class ProcessorTransientError(ProcessorError):
    """Connection failure, timeout or 5xx. Safe to retry."""

    status_code = 503
    default_code = ErrorCode.STRIPE_UNAVAILABLE


class ProcessorFatalError(ProcessorError):
    """Card decline, invalid request or other 4xx. Surfaced immediately."""


class SignatureInvalid(BillingError):
    """Webhook payload failed signature verification."""

    error_type = "SignatureInvalid"
    status_code = 400
    default_code = ErrorCode.INVALID_SIGNATURE


@dataclass(frozen=True)
class Success(Generic[T]):
    """Successful operation result."""

    value: T

    @property
    def ok(self) -> bool:
        return True

    def unwrap(self) -> T:
        return self.value


@dataclass(frozen=True)
class Failure:
    """Failed operation result carrying one of the taxonomy errors."""

    error: BillingError

    @property
    def ok(self) -> bool:
        return False

    @property
    def code(self) -> str:
        return self.error.code

    def unwrap(self) -> Any:
        raise self.error


Outcome = Union[Success[T], Failure]


def returns_outcome(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[Outcome[T]]]:
    """
    Wrap an async operation so taxonomy errors come back as ``Failure``.

    Anything outside the taxonomy (database errors, bugs) still propagates.
    """

    @wraps(func)
    async def wrapper(*args: Any, **kwargs: Any) -> Outcome[T]:
        try:
            return Success(await func(*args, **kwargs))
        except BillingError as exc:
            return Failure(exc)

    return wrapper
