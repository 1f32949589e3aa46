"""Integration tests for new purchases and purchase guardrails."""
from datetime import timedelta, timezone
from uuid import UUID

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from conftest import NOW, make_account, make_payment, minutes_ago
from edubilling.errors import ProcessorFatalError
from edubilling.models.account import Account, AccountPaymentStatus, BillingCycle, SubscriptionStatus
from edubilling.models.payment import Payment, PaymentMode, PaymentStatus
from edubilling.models.plan import Plan
from edubilling.schemas.checkout import AddonSelection, PurchaseType
from edubilling.schemas.error import ErrorCode
from edubilling.services.checkout_service import CheckoutService
from edubilling.services.reconciler import WebhookReconciler


def _service(db: AsyncSession, fake_stripe, product_cache, notifier) -> CheckoutService:
    return CheckoutService(db, fake_stripe, product_cache, notifier=notifier, clock=lambda: NOW)


@pytest.mark.asyncio
async def test_monthly_purchase_with_teacher_seats(
    db_session: AsyncSession, account: Account, single_class_plan: Plan, fake_stripe, product_cache, notifier
) -> None:
    """$25 plan with 2 extra teachers: $35 charged, teacher cap 1 + 2 once paid."""
    service = _service(db_session, fake_stripe, product_cache, notifier)

    outcome = await service.create_checkout_intent(
        account, "single-class", PurchaseType.SUBSCRIPTION, AddonSelection(teacher_seats=2)
    )

    assert outcome.ok
    response = outcome.unwrap()
    assert response.amount == 3500
    assert response.intent_type == "payment"
    assert response.trial is False

    payment = await db_session.get(Payment, response.payment_id)
    assert payment.status is PaymentStatus.PENDING
    assert payment.mode is PaymentMode.SUBSCRIPTION
    assert payment.amount == 3500
    assert payment.addons["teacher_seats"] == 2
    assert payment.stripe_subscription_id is not None

    [subscription_call] = fake_stripe.called("create_subscription")
    assert [(i["unit_amount"], i["quantity"]) for i in subscription_call["items"]] == [(2500, 1), (500, 2)]
    assert subscription_call["metadata"]["payment_id"] == str(payment.id)
    assert subscription_call["trial_days"] is None

    settled = await WebhookReconciler(db_session, notifier).settle_success(payment)
    await db_session.commit()

    assert settled
    await db_session.refresh(account)
    assert account.subscription_status is SubscriptionStatus.ACTIVE
    assert account.payment_status is AccountPaymentStatus.PAID
    assert account.billing_cycle is BillingCycle.MONTHLY
    assert account.teacher_limit == 3
    assert account.plan_id == single_class_plan.id


@pytest.mark.asyncio
async def test_first_monthly_purchase_starts_a_trial(
    db_session: AsyncSession, single_class_plan: Plan, fake_stripe, product_cache, notifier
) -> None:
    account = await make_account(db_session, has_used_trial=False)
    service = _service(db_session, fake_stripe, product_cache, notifier)

    response = (await service.create_checkout_intent(account, "single-class", PurchaseType.SUBSCRIPTION, AddonSelection())).unwrap()

    assert response.trial is True
    assert response.trial_days == 7
    assert response.intent_type == "setup"
    payment = await db_session.get(Payment, response.payment_id)
    assert payment.status is PaymentStatus.TRIALING
    assert fake_stripe.called("create_subscription")[0]["trial_days"] == 7
    await db_session.refresh(account)
    assert account.has_used_trial is True


@pytest.mark.asyncio
async def test_rejected_trial_subscription_keeps_the_trial_available(
    db_session: AsyncSession, single_class_plan: Plan, fake_stripe, product_cache, notifier
) -> None:
    account = await make_account(db_session, has_used_trial=False)
    fake_stripe.failures["create_subscription"] = ProcessorFatalError("Your card was declined.")
    service = _service(db_session, fake_stripe, product_cache, notifier)

    outcome = await service.create_checkout_intent(account, "single-class", PurchaseType.SUBSCRIPTION, AddonSelection())

    assert outcome.code == ErrorCode.STRIPE_API_ERROR
    await db_session.refresh(account)
    assert account.has_used_trial is False
    payment = await service.ledger.latest_for_account(account.id)
    await db_session.refresh(payment)
    assert payment.status is PaymentStatus.CANCELLED


@pytest.mark.asyncio
async def test_yearly_purchase_creates_a_payment_intent(
    db_session: AsyncSession, account: Account, single_class_plan: Plan, fake_stripe, product_cache, notifier
) -> None:
    service = _service(db_session, fake_stripe, product_cache, notifier)

    response = (
        await service.create_checkout_intent(account, "single-class", PurchaseType.ONE_TIME, AddonSelection(teacher_seats=1))
    ).unwrap()

    assert response.amount == 30000
    assert response.intent_type == "payment"
    payment = await db_session.get(Payment, response.payment_id)
    assert payment.mode is PaymentMode.ONE_TIME
    assert payment.stripe_payment_intent_id.startswith("pi_test_")
    assert fake_stripe.called("create_payment_intent")[0]["amount"] == 30000
    assert account.stripe_customer_id is not None


@pytest.mark.asyncio
async def test_hosted_checkout_session(
    db_session: AsyncSession, account: Account, single_class_plan: Plan, fake_stripe, product_cache, notifier
) -> None:
    service = _service(db_session, fake_stripe, product_cache, notifier)

    response = (await service.create_checkout(account, "single-class", PurchaseType.ONE_TIME, AddonSelection())).unwrap()

    assert response.amount == 24000
    assert response.url.startswith("https://checkout.stripe.test/")
    [session_call] = fake_stripe.called("create_checkout_session")
    assert session_call["mode"] == "payment"
    assert session_call["success_url"].endswith("/billing/success?session_id={CHECKOUT_SESSION_ID}")
    payment = await db_session.get(Payment, response.payment_id)
    assert payment.stripe_checkout_session_id == response.session_id


@pytest.mark.asyncio
async def test_product_ids_are_resolved_once(
    db_session: AsyncSession, single_class_plan: Plan, fake_stripe, product_cache, notifier
) -> None:
    service = _service(db_session, fake_stripe, product_cache, notifier)
    first = await make_account(db_session, has_used_trial=True)
    second = await make_account(db_session, has_used_trial=True)

    for account in (first, second):
        outcome = await service.create_checkout(account, "single-class", PurchaseType.SUBSCRIPTION, AddonSelection(teacher_seats=1))
        assert outcome.ok

    # plan product and teacher addon product, each searched once
    assert len(fake_stripe.called("find_or_create_product")) == 2


@pytest.mark.asyncio
async def test_unknown_plan(db_session: AsyncSession, account: Account, fake_stripe, product_cache, notifier) -> None:
    service = _service(db_session, fake_stripe, product_cache, notifier)

    outcome = await service.create_checkout_intent(account, "no-such-plan", PurchaseType.ONE_TIME, AddonSelection())

    assert not outcome.ok
    assert outcome.code == ErrorCode.PLAN_NOT_FOUND
    assert fake_stripe.calls == []


@pytest.mark.asyncio
async def test_too_many_addon_seats_are_rejected_before_stripe(
    db_session: AsyncSession, account: Account, single_class_plan: Plan, fake_stripe, product_cache, notifier
) -> None:
    service = _service(db_session, fake_stripe, product_cache, notifier)

    outcome = await service.create_checkout(account, "single-class", PurchaseType.ONE_TIME, AddonSelection(teacher_seats=1001))

    assert outcome.code == ErrorCode.INVALID_ADDON_COUNT
    assert fake_stripe.calls == []


@pytest.mark.asyncio
async def test_second_purchase_within_an_hour_is_rate_limited(
    db_session: AsyncSession, account: Account, single_class_plan: Plan, fake_stripe, product_cache, notifier
) -> None:
    await make_payment(db_session, account, single_class_plan, status=PaymentStatus.PENDING, created_at=minutes_ago(10))
    service = _service(db_session, fake_stripe, product_cache, notifier)

    outcome = await service.create_checkout_intent(account, "single-class", PurchaseType.SUBSCRIPTION, AddonSelection())

    assert outcome.code == ErrorCode.RATE_LIMIT_EXCEEDED
    assert outcome.error.status_code == 429
    assert "50 minute(s)" in outcome.error.message
    assert outcome.error.context["minutes_remaining"] == 50


@pytest.mark.asyncio
async def test_cancelled_and_failed_rows_do_not_trigger_guardrails(
    db_session: AsyncSession, account: Account, single_class_plan: Plan, fake_stripe, product_cache, notifier
) -> None:
    await make_payment(db_session, account, single_class_plan, status=PaymentStatus.CANCELLED, created_at=minutes_ago(1))
    await make_payment(db_session, account, single_class_plan, status=PaymentStatus.FAILED, created_at=minutes_ago(2))
    service = _service(db_session, fake_stripe, product_cache, notifier)

    outcome = await service.create_checkout_intent(account, "single-class", PurchaseType.ONE_TIME, AddonSelection())

    assert outcome.ok


@pytest.mark.asyncio
async def test_yearly_plan_cannot_be_bought_twice_in_a_week(
    db_session: AsyncSession, account: Account, single_class_plan: Plan, fake_stripe, product_cache, notifier
) -> None:
    await make_payment(db_session, account, single_class_plan, created_at=NOW - timedelta(days=2))
    service = _service(db_session, fake_stripe, product_cache, notifier)

    outcome = await service.create_checkout_intent(account, "single-class", PurchaseType.ONE_TIME, AddonSelection())

    assert outcome.code == ErrorCode.DUPLICATE_YEARLY_PURCHASE
    assert outcome.error.context["days_until_allowed"] == 5


@pytest.mark.asyncio
async def test_live_subscription_blocks_a_new_purchase(
    db_session: AsyncSession, single_class_plan: Plan, fake_stripe, product_cache, notifier
) -> None:
    account = await make_account(
        db_session,
        has_used_trial=True,
        subscription_status=SubscriptionStatus.ACTIVE,
        billing_cycle=BillingCycle.MONTHLY,
        stripe_subscription_id="sub_live",
    )
    await make_payment(
        db_session, account, single_class_plan, mode=PaymentMode.SUBSCRIPTION, created_at=NOW - timedelta(days=40)
    )
    renews = NOW + timedelta(days=20)
    fake_stripe.subscriptions["sub_live"] = {
        "id": "sub_live",
        "status": "active",
        "current_period_end": int(renews.replace(tzinfo=timezone.utc).timestamp()),
        "metadata": {},
        "items": [],
    }
    service = _service(db_session, fake_stripe, product_cache, notifier)

    outcome = await service.create_checkout_intent(account, "single-class", PurchaseType.SUBSCRIPTION, AddonSelection())

    assert outcome.code == ErrorCode.ACTIVE_SUBSCRIPTION_EXISTS
    assert renews.date().isoformat() in outcome.error.message
    assert fake_stripe.called("create_subscription") == []


@pytest.mark.asyncio
async def test_amount_mismatch_cancels_the_charge(
    db_session: AsyncSession, account: Account, single_class_plan: Plan, fake_stripe, product_cache, notifier
) -> None:
    fake_stripe.amount_drift = 500
    service = _service(db_session, fake_stripe, product_cache, notifier)

    outcome = await service.create_checkout_intent(account, "single-class", PurchaseType.ONE_TIME, AddonSelection())

    assert outcome.code == ErrorCode.AMOUNT_MISMATCH
    assert outcome.error.status_code == 500
    [intent_call] = fake_stripe.called("create_payment_intent")
    payment = await db_session.get(Payment, UUID(intent_call["metadata"]["payment_id"]))
    await db_session.refresh(payment)
    assert payment.status is PaymentStatus.CANCELLED
    assert payment.failure_reason.startswith("amount_mismatch")
    assert len(fake_stripe.called("cancel_payment_intent")) == 1


@pytest.mark.asyncio
async def test_stripe_failure_cancels_the_pending_row(
    db_session: AsyncSession, account: Account, single_class_plan: Plan, fake_stripe, product_cache, notifier
) -> None:
    fake_stripe.failures["create_payment_intent"] = ProcessorFatalError("Your card was declined.")
    service = _service(db_session, fake_stripe, product_cache, notifier)

    outcome = await service.create_checkout_intent(account, "single-class", PurchaseType.ONE_TIME, AddonSelection())

    assert outcome.code == ErrorCode.STRIPE_API_ERROR
    payment = await service.ledger.latest_for_account(account.id)
    await db_session.refresh(payment)
    assert payment.status is PaymentStatus.CANCELLED
    assert "declined" in payment.failure_reason


@pytest.mark.asyncio
async def test_payment_status_of_another_account_is_forbidden(
    db_session: AsyncSession, account: Account, single_class_plan: Plan, fake_stripe, product_cache, notifier
) -> None:
    other = await make_account(db_session)
    payment = await make_payment(db_session, other, single_class_plan, stripe_payment_intent_id="pi_other")
    service = _service(db_session, fake_stripe, product_cache, notifier)

    by_reference = await service.payment_status(account, "pi_other")
    by_id = await service.payment_status(other, str(payment.id))
    missing = await service.payment_status(account, "pi_missing")

    assert by_reference.code == ErrorCode.PAYMENT_ACCESS_DENIED
    assert by_id.unwrap().id == payment.id
    assert missing.code == ErrorCode.PAYMENT_NOT_FOUND
