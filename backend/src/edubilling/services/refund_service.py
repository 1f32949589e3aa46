"""Refund request and approval workflow."""
from datetime import datetime, timedelta
from typing import Any, Callable, Optional
from uuid import UUID

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from edubilling.adapters.stripe_adapter import StripeAdapter
from edubilling.config import settings
from edubilling.errors import NotFound, PolicyViolation, ValidationError, returns_outcome
from edubilling.integrations.notification_service import NotificationService
from edubilling.metrics import refunds_total
from edubilling.models.account import Account
from edubilling.models.payment import PaymentStatus
from edubilling.models.refund import RefundRequest, RefundStatus
from edubilling.schemas.error import ErrorCode
from edubilling.services.ledger_service import LedgerService
from edubilling.utils.dates import utcnow

logger = structlog.get_logger(__name__)


class RefundService:
    """
    Refunds are requested by the customer and issued only after an operator
    approves them. One request per payment, within the refund window.
    """

    def __init__(
        self,
        db: AsyncSession,
        processor: StripeAdapter,
        notifier: Optional[NotificationService] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize refund service."""
        self.db = db
        self.processor = processor
        self.notifier = notifier or NotificationService()
        self.clock = clock
        self.ledger = LedgerService(db)

    async def _request_for_payment(self, payment_id: UUID) -> Optional[RefundRequest]:
        result = await self.db.execute(select(RefundRequest).where(RefundRequest.payment_id == payment_id))
        return result.scalar_one_or_none()

    @returns_outcome
    async def request_refund(self, account: Account, user_id: Optional[UUID], reason: str) -> RefundRequest:
        """
        Request a refund of the account's latest payment.

        Args:
            account: Requesting account
            user_id: Requesting user
            reason: Reason given by the customer

        Returns:
            Pending refund request

        Raises:
            NotFound: The account has no succeeded payment
            PolicyViolation: Outside the refund window, or already requested
        """
        payment = await self.ledger.latest_for_account(account.id, statuses=(PaymentStatus.SUCCEEDED,))
        if payment is None:
            raise NotFound("No payment to refund", code=ErrorCode.PAYMENT_NOT_FOUND)

        window = timedelta(days=settings.refund_window_days)
        if self.clock() - payment.created_at > window:
            raise PolicyViolation(
                f"Refunds are only available within {settings.refund_window_days} days of payment",
                code=ErrorCode.REFUND_WINDOW_EXPIRED,
                context={"payment_id": str(payment.id), "paid_at": payment.created_at.isoformat()},
            )

        if await self._request_for_payment(payment.id) is not None:
            raise PolicyViolation(
                "A refund was already requested for this payment",
                code=ErrorCode.REFUND_ALREADY_REQUESTED,
                context={"payment_id": str(payment.id)},
            )

        refund = RefundRequest(
            payment_id=payment.id,
            user_id=user_id,
            account_id=account.id,
            amount=payment.amount,
            status=RefundStatus.PENDING,
            reason=reason,
        )
        self.db.add(refund)
        await self.db.commit()

        refunds_total.labels(status="requested").inc()
        logger.info(
            "refund_requested",
            refund_id=str(refund.id),
            payment_id=str(payment.id),
            account_id=str(account.id),
            amount=payment.amount,
        )
        await self.notifier.send_refund_alert(
            account_email=account.owner_email,
            amount=payment.amount,
            reason=reason,
            payment_id=str(payment.id),
        )
        return refund

    @returns_outcome
    async def approve_refund(self, request_id: UUID) -> RefundRequest:
        """
        Approve a refund request and issue the refund in Stripe.

        The request is claimed with a conditional update before Stripe is
        called, so concurrent approvals issue one refund. A failed Stripe call
        releases the claim.

        Raises:
            NotFound: Unknown request
            PolicyViolation: The request was already processed
            ValidationError: The payment has no charge to refund
        """
        refund = await self.db.get(RefundRequest, request_id)
        if refund is None:
            raise NotFound(f"Refund request {request_id} not found", code=ErrorCode.REFUND_REQUEST_NOT_FOUND)

        payment = await self.ledger.get(refund.payment_id)
        if payment is None or not payment.stripe_payment_intent_id:
            raise ValidationError(
                "The payment has no Stripe charge to refund",
                code=ErrorCode.MISSING_REQUIRED_FIELD,
                context={"payment_id": str(refund.payment_id)},
            )

        if not await self._claim(refund.id, RefundStatus.PENDING, RefundStatus.APPROVED, approved_at=self.clock()):
            await self.db.refresh(refund)
            raise PolicyViolation(
                f"Refund request is already {refund.status.value}",
                code=ErrorCode.REFUND_ALREADY_PROCESSED,
            )
        await self.db.commit()

        try:
            stripe_refund = await self.processor.create_refund(
                payment.stripe_payment_intent_id,
                refund.amount,
                metadata={"refund_request_id": str(refund.id), "payment_id": str(payment.id)},
            )
        except Exception:
            await self._claim(refund.id, RefundStatus.APPROVED, RefundStatus.PENDING, approved_at=None)
            await self.db.commit()
            logger.warning("refund_claim_released", refund_id=str(refund.id), payment_id=str(payment.id))
            raise

        await self.db.refresh(refund)
        refund.stripe_refund_id = stripe_refund["id"]
        await self.db.commit()

        refunds_total.labels(status="approved").inc()
        logger.info(
            "refund_approved",
            refund_id=str(refund.id),
            payment_id=str(payment.id),
            stripe_refund_id=stripe_refund["id"],
            amount=refund.amount,
        )

        account = await self.db.get(Account, refund.account_id)
        await self.notifier.send_refund_alert(
            account_email=account.owner_email if account else "",
            amount=refund.amount,
            reason=refund.reason,
            payment_id=str(payment.id),
            status="approved",
        )
        return refund

    async def _claim(self, request_id: UUID, from_status: RefundStatus, to_status: RefundStatus, **values: Any) -> bool:
        """Move a request from ``from_status`` to ``to_status``; False if it was not in ``from_status``."""
        result = await self.db.execute(
            update(RefundRequest)
            .where(RefundRequest.id == request_id, RefundRequest.status == from_status)
            .values(status=to_status, **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1
