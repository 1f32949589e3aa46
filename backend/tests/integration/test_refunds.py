"""Integration tests for the refund request and approval workflow."""
from datetime import timedelta
from uuid import uuid4

import pytest
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from conftest import NOW, make_payment
from edubilling.errors import ProcessorFatalError
from edubilling.models.account import Account
from edubilling.models.payment import PaymentStatus
from edubilling.models.plan import Plan
from edubilling.models.refund import RefundRequest, RefundStatus
from edubilling.schemas.error import ErrorCode
from edubilling.services.refund_service import RefundService


def _service(db_session, fake_stripe, notifier) -> RefundService:
    return RefundService(db_session, fake_stripe, notifier, clock=lambda: NOW)


@pytest.mark.asyncio
async def test_request_refund_for_latest_payment(
    db_session: AsyncSession, account: Account, single_class_plan: Plan, fake_stripe, notifier
) -> None:
    payment = await make_payment(
        db_session, account, single_class_plan, stripe_payment_intent_id="pi_paid", created_at=NOW - timedelta(days=3)
    )
    user_id = uuid4()

    outcome = await _service(db_session, fake_stripe, notifier).request_refund(account, user_id, "Bought the wrong plan")

    assert outcome.ok
    refund = outcome.value
    assert refund.payment_id == payment.id
    assert refund.user_id == user_id
    assert refund.amount == payment.amount
    assert refund.status is RefundStatus.PENDING
    assert notifier.refund_alerts == [
        {
            "account_email": account.owner_email,
            "amount": payment.amount,
            "reason": "Bought the wrong plan",
            "payment_id": str(payment.id),
            "status": "requested",
        }
    ]
    # nothing moves in Stripe until an operator approves
    assert fake_stripe.called("create_refund") == []


@pytest.mark.asyncio
async def test_second_request_for_same_payment_is_rejected(
    db_session: AsyncSession, account: Account, single_class_plan: Plan, fake_stripe, notifier
) -> None:
    await make_payment(db_session, account, single_class_plan, created_at=NOW - timedelta(days=3))
    service = _service(db_session, fake_stripe, notifier)
    await service.request_refund(account, None, "first")

    outcome = await service.request_refund(account, None, "second")

    assert not outcome.ok
    assert outcome.code == ErrorCode.REFUND_ALREADY_REQUESTED
    assert len(notifier.refund_alerts) == 1


@pytest.mark.asyncio
async def test_refund_window_is_thirty_days(
    db_session: AsyncSession, account: Account, single_class_plan: Plan, fake_stripe, notifier
) -> None:
    await make_payment(db_session, account, single_class_plan, created_at=NOW - timedelta(days=31))

    outcome = await _service(db_session, fake_stripe, notifier).request_refund(account, None, "too late")

    assert not outcome.ok
    assert outcome.code == ErrorCode.REFUND_WINDOW_EXPIRED
    assert notifier.refund_alerts == []


@pytest.mark.asyncio
async def test_only_succeeded_payments_are_refundable(
    db_session: AsyncSession, account: Account, single_class_plan: Plan, fake_stripe, notifier
) -> None:
    await make_payment(db_session, account, single_class_plan, status=PaymentStatus.FAILED, created_at=NOW)

    outcome = await _service(db_session, fake_stripe, notifier).request_refund(account, None, "never paid")

    assert not outcome.ok
    assert outcome.code == ErrorCode.PAYMENT_NOT_FOUND


@pytest.mark.asyncio
async def test_approve_refund_issues_it_in_stripe(
    db_session: AsyncSession, account: Account, single_class_plan: Plan, fake_stripe, notifier
) -> None:
    payment = await make_payment(
        db_session, account, single_class_plan, stripe_payment_intent_id="pi_paid", created_at=NOW - timedelta(days=3)
    )
    service = _service(db_session, fake_stripe, notifier)
    refund = (await service.request_refund(account, None, "School closed")).unwrap()

    outcome = await service.approve_refund(refund.id)

    assert outcome.ok
    approved = outcome.value
    assert approved.status is RefundStatus.APPROVED
    assert approved.approved_at == NOW
    assert approved.stripe_refund_id.startswith("re_test_")
    [call] = fake_stripe.called("create_refund")
    assert call["payment_intent_id"] == "pi_paid"
    assert call["amount"] == payment.amount
    assert call["metadata"]["refund_request_id"] == str(refund.id)
    assert notifier.refund_alerts[-1]["status"] == "approved"

    again = await service.approve_refund(refund.id)
    assert not again.ok
    assert again.code == ErrorCode.REFUND_ALREADY_PROCESSED
    assert len(fake_stripe.called("create_refund")) == 1


@pytest.mark.asyncio
async def test_approve_unknown_request(db_session: AsyncSession, fake_stripe, notifier) -> None:
    outcome = await _service(db_session, fake_stripe, notifier).approve_refund(uuid4())

    assert not outcome.ok
    assert outcome.code == ErrorCode.REFUND_REQUEST_NOT_FOUND


@pytest.mark.asyncio
async def test_request_approved_elsewhere_is_not_refunded_twice(
    db_session: AsyncSession, account: Account, single_class_plan: Plan, fake_stripe, notifier
) -> None:
    """A concurrent approval already claimed the request; this session still holds it as pending."""
    await make_payment(
        db_session, account, single_class_plan, stripe_payment_intent_id="pi_paid", created_at=NOW - timedelta(days=3)
    )
    service = _service(db_session, fake_stripe, notifier)
    refund = (await service.request_refund(account, None, "Double click")).unwrap()
    await db_session.execute(
        update(RefundRequest)
        .where(RefundRequest.id == refund.id)
        .values(status=RefundStatus.APPROVED)
        .execution_options(synchronize_session=False)
    )
    await db_session.commit()
    assert refund.status is RefundStatus.PENDING

    outcome = await service.approve_refund(refund.id)

    assert not outcome.ok
    assert outcome.code == ErrorCode.REFUND_ALREADY_PROCESSED
    assert fake_stripe.called("create_refund") == []
    assert notifier.refund_alerts[-1]["status"] == "requested"


@pytest.mark.asyncio
async def test_stripe_failure_leaves_the_request_pending(
    db_session: AsyncSession, account: Account, single_class_plan: Plan, fake_stripe, notifier
) -> None:
    await make_payment(
        db_session, account, single_class_plan, stripe_payment_intent_id="pi_paid", created_at=NOW - timedelta(days=3)
    )
    service = _service(db_session, fake_stripe, notifier)
    refund = (await service.request_refund(account, None, "School closed")).unwrap()
    fake_stripe.failures["create_refund"] = ProcessorFatalError("Charge already refunded elsewhere.")

    failed = await service.approve_refund(refund.id)

    assert not failed.ok
    assert failed.code == ErrorCode.STRIPE_API_ERROR
    await db_session.refresh(refund)
    assert refund.status is RefundStatus.PENDING
    assert refund.approved_at is None

    retried = await service.approve_refund(refund.id)

    assert retried.ok
    assert retried.value.status is RefundStatus.APPROVED
    assert len(fake_stripe.called("create_refund")) == 2
