"""Billing endpoints: checkout, upgrades, refunds, payment methods and quotas."""
from typing import Any, List

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from edubilling.adapters.stripe_adapter import StripeAdapter
from edubilling.api.deps import (
    current_user_id,
    get_checkout_service,
    get_current_account,
    get_current_user,
    get_db,
    get_notifier,
    get_seat_usage,
    get_stripe_adapter,
    require_operator,
)
from edubilling.config import settings
from edubilling.errors import ValidationError
from edubilling.integrations.notification_service import NotificationService
from edubilling.models.account import Account
from edubilling.schemas.checkout import (
    CheckoutIntentRequest,
    CheckoutIntentResponse,
    CheckoutRequest,
    CheckoutResponse,
    UpgradePreviewResponse,
    UpgradeRequest,
    UpgradeResponse,
)
from edubilling.schemas.error import ErrorCode
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
from edubilling.schemas.quota import QuotaDecisionResponse, UsageSummary
from edubilling.services.checkout_service import CheckoutService
from edubilling.services.payment_method_service import PaymentMethodService
from edubilling.services.plan_catalog import PlanCatalog
from edubilling.services.quota_service import QuotaService, ResourceKind, SeatUsageProvider
from edubilling.services.refund_service import RefundService

router = APIRouter(prefix="/billing", tags=["Billing"])


# Purchases


@router.post("/checkout-session", response_model=CheckoutResponse, status_code=status.HTTP_201_CREATED)
async def create_checkout_session(
    request: CheckoutRequest,
    account: Account = Depends(get_current_account),
    user: dict = Depends(get_current_user),
    service: CheckoutService = Depends(get_checkout_service),
) -> CheckoutResponse:
    """
    Start a hosted Stripe Checkout purchase.

    - **plan_slug**: Plan to buy
    - **purchase_type**: subscription (monthly) or one_time (yearly)
    - **addons**: Extra teacher and student seats
    """
    outcome = await service.create_checkout(
        account, request.plan_slug, request.purchase_type, request.addons, user_id=current_user_id(user)
    )
    return outcome.unwrap()


@router.post("/checkout-session-intent", response_model=CheckoutIntentResponse, status_code=status.HTTP_201_CREATED)
async def create_checkout_intent(
    request: CheckoutIntentRequest,
    account: Account = Depends(get_current_account),
    user: dict = Depends(get_current_user),
    service: CheckoutService = Depends(get_checkout_service),
) -> CheckoutIntentResponse:
    """
    Start an embedded purchase confirmed with Stripe.js.

    The first monthly purchase of an account starts with a free trial.
    """
    outcome = await service.create_checkout_intent(
        account,
        request.plan_slug,
        request.purchase_type,
        request.addons,
        payment_method_id=request.payment_method_id,
        user_id=current_user_id(user),
    )
    return outcome.unwrap()


@router.post("/upgrade-preview", response_model=UpgradePreviewResponse)
async def upgrade_preview(
    request: UpgradeRequest,
    account: Account = Depends(get_current_account),
    service: CheckoutService = Depends(get_checkout_service),
) -> UpgradePreviewResponse:
    """Price a plan, seat or billing cycle change. Nothing is charged."""
    outcome = await service.upgrade_preview(account, request.new_plan_slug, request.purchase_type, request.addons)
    return outcome.unwrap()


@router.post("/upgrade", response_model=UpgradeResponse)
async def upgrade(
    request: UpgradeRequest,
    account: Account = Depends(get_current_account),
    user: dict = Depends(get_current_user),
    service: CheckoutService = Depends(get_checkout_service),
) -> UpgradeResponse:
    """
    Change plan, seats or billing cycle.

    Unused paid time is credited against the new price. When nothing is due
    the change applies immediately.
    """
    outcome = await service.create_upgrade(
        account,
        request.new_plan_slug,
        request.purchase_type,
        request.addons,
        idempotency_key=request.idempotency_key,
        user_id=current_user_id(user),
    )
    return outcome.unwrap()


@router.get("/payment-status/{reference}", response_model=PaymentResponse)
async def payment_status(
    reference: str,
    account: Account = Depends(get_current_account),
    service: CheckoutService = Depends(get_checkout_service),
) -> PaymentResponse:
    """Look up a payment by ledger id, payment intent, checkout session or subscription id."""
    payment = (await service.payment_status(account, reference)).unwrap()
    return PaymentResponse.model_validate(payment)


# Refunds


@router.post("/refund-request", response_model=RefundResponse, status_code=status.HTTP_201_CREATED)
async def request_refund(
    request: RefundRequestCreate,
    account: Account = Depends(get_current_account),
    user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    processor: StripeAdapter = Depends(get_stripe_adapter),
    notifier: NotificationService = Depends(get_notifier),
) -> RefundResponse:
    """Request a refund of the latest payment. Refunds are issued after review."""
    service = RefundService(db, processor, notifier)
    refund = (await service.request_refund(account, current_user_id(user), request.reason)).unwrap()
    return RefundResponse.model_validate(refund)


@router.post("/refund-approve", response_model=RefundResponse)
async def approve_refund(
    request: RefundApprove,
    operator: dict = Depends(require_operator),
    db: AsyncSession = Depends(get_db),
    processor: StripeAdapter = Depends(get_stripe_adapter),
    notifier: NotificationService = Depends(get_notifier),
) -> RefundResponse:
    """Approve a refund request and issue the refund. Operators only."""
    service = RefundService(db, processor, notifier)
    refund = (await service.approve_refund(request.request_id)).unwrap()
    return RefundResponse.model_validate(refund)


# Catalog and configuration


@router.get("/plans", response_model=PlanList)
async def list_plans(db: AsyncSession = Depends(get_db)) -> PlanList:
    """List purchasable plans."""
    plans = await PlanCatalog(db).list_plans()
    return PlanList(items=[PlanResponse.model_validate(p) for p in plans], total=len(plans))


@router.get("/config")
async def billing_config() -> dict[str, Any]:
    """Client-side billing configuration."""
    return {
        "publishable_key": settings.stripe_publishable_key,
        "currency": settings.currency,
        "trial_days": settings.trial_days,
    }


# Payment methods and history


@router.get("/payment-history", response_model=PaymentList)
async def payment_history(
    limit: int = Query(50, ge=1, le=200, description="Maximum rows returned"),
    account: Account = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
    processor: StripeAdapter = Depends(get_stripe_adapter),
) -> PaymentList:
    """Payments of the account, newest first."""
    payments = await PaymentMethodService(db, processor).payment_history(account, limit=limit)
    return PaymentList(items=[PaymentResponse.model_validate(p) for p in payments], total=len(payments))


@router.get("/payment-methods", response_model=List[PaymentMethodResponse])
async def list_payment_methods(
    account: Account = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
    processor: StripeAdapter = Depends(get_stripe_adapter),
) -> List[PaymentMethodResponse]:
    """Saved cards of the account."""
    methods = await PaymentMethodService(db, processor).list_payment_methods(account)
    return [PaymentMethodResponse(**m) for m in methods]


@router.post("/setup-intent")
async def create_setup_intent(
    account: Account = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
    processor: StripeAdapter = Depends(get_stripe_adapter),
) -> dict[str, Any]:
    """Start saving a card for later charges."""
    setup_intent = await PaymentMethodService(db, processor).create_setup_intent(account)
    return {"setup_intent_id": setup_intent["id"], "client_secret": setup_intent["client_secret"]}


@router.post("/payment-methods/default")
async def set_default_payment_method(
    request: SetDefaultPaymentMethod,
    account: Account = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
    processor: StripeAdapter = Depends(get_stripe_adapter),
) -> dict[str, str]:
    """Use a saved card for future invoices."""
    await PaymentMethodService(db, processor).set_default_payment_method(account, request.payment_method_id)
    return {"status": "ok", "payment_method_id": request.payment_method_id}


@router.delete("/payment-methods/{payment_method_id}", status_code=status.HTTP_204_NO_CONTENT)
async def detach_payment_method(
    payment_method_id: str,
    account: Account = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
    processor: StripeAdapter = Depends(get_stripe_adapter),
) -> Response:
    """Remove a saved card."""
    await PaymentMethodService(db, processor).detach_payment_method(account, payment_method_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/billing-portal")
async def billing_portal(
    account: Account = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
    processor: StripeAdapter = Depends(get_stripe_adapter),
) -> dict[str, str]:
    """Open the Stripe billing portal."""
    url = await PaymentMethodService(db, processor).create_portal_session(account)
    return {"url": url}


# Quotas


@router.get("/quota/{kind}", response_model=QuotaDecisionResponse)
async def check_quota(
    kind: str,
    requested: int = Query(1, ge=1, description="Resources about to be added"),
    account: Account = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
    usage: SeatUsageProvider = Depends(get_seat_usage),
) -> QuotaDecisionResponse:
    """Check whether more teachers, students or classes fit in the plan."""
    try:
        resource = ResourceKind(kind)
    except ValueError:
        raise ValidationError(
            f"Unknown resource kind '{kind}'. Use teacher, student or class.",
            code=ErrorCode.INVALID_RESOURCE_KIND,
        )
    decision = await QuotaService(db, usage).check(account.id, resource, requested)
    return QuotaDecisionResponse(
        kind=decision.kind.value,
        allowed=decision.allowed,
        requested=decision.requested,
        current=decision.current,
        maximum=decision.maximum,
        remaining=decision.remaining,
        message=decision.message,
    )


@router.get("/quota", response_model=UsageSummary)
async def usage_summary(
    account: Account = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
    usage: SeatUsageProvider = Depends(get_seat_usage),
) -> UsageSummary:
    """Current, maximum and remaining seats per resource kind."""
    return UsageSummary(**await QuotaService(db, usage).usage_summary(account.id))
