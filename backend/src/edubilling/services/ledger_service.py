"""Payment ledger: append-mostly record of charge and subscription attempts."""
from datetime import datetime, timedelta
from typing import Any, Iterable, Optional
from uuid import UUID

import structlog
from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from edubilling.models.payment import Payment, PaymentMode, PaymentStatus
from edubilling.utils.dates import utcnow

logger = structlog.get_logger(__name__)

TERMINAL_STATUSES = (PaymentStatus.SUCCEEDED, PaymentStatus.FAILED, PaymentStatus.CANCELLED)
OPEN_STATUSES = (PaymentStatus.PENDING, PaymentStatus.TRIALING, PaymentStatus.PAST_DUE)


class LedgerService:
    """
    Data access for payment ledger rows.

    Status changes go through ``transition``, a conditional UPDATE that only
    matches rows still in one of the expected source statuses. The affected
    row count tells the caller whether it won the transition; concurrent
    deliveries of the same event see zero rows and skip side effects.
    """

    def __init__(self, db: AsyncSession):
        """Initialize ledger service with database session."""
        self.db = db

    async def create_entry(
        self,
        account_id: UUID,
        plan_id: UUID,
        mode: PaymentMode,
        amount: int,
        currency: str,
        addons: dict[str, int],
        metadata: Optional[dict[str, Any]] = None,
        status: PaymentStatus = PaymentStatus.PENDING,
        idempotency_key: Optional[str] = None,
        user_id: Optional[UUID] = None,
    ) -> Payment:
        """
        Add a ledger row. The caller commits.

        Args:
            account_id: Account being charged
            plan_id: Plan being bought
            mode: one_time or subscription
            amount: Amount in cents
            currency: ISO currency code
            addons: Addon snapshot (seats, addon_cost, total_cost, base_plan_price)
            metadata: Conversion type, credit amounts and other context
            status: Initial status
            idempotency_key: Client-supplied idempotency key
            user_id: Paying user, when known

        Returns:
            Created payment row
        """
        payment = Payment(
            account_id=account_id,
            plan_id=plan_id,
            user_id=user_id,
            mode=mode,
            amount=amount,
            currency=currency,
            status=status,
            addons=dict(addons),
            extra_metadata=dict(metadata or {}),
            idempotency_key=idempotency_key,
        )
        self.db.add(payment)
        await self.db.flush()

        logger.info(
            "ledger_entry_created",
            payment_id=str(payment.id),
            account_id=str(account_id),
            mode=mode.value,
            amount=amount,
            status=status.value,
        )
        return payment

    async def get(self, payment_id: UUID) -> Optional[Payment]:
        """Get a ledger row by ID."""
        return await self.db.get(Payment, payment_id)

    async def get_by_reference(self, reference: str) -> Optional[Payment]:
        """
        Find a ledger row by its ID or any Stripe reference.

        Args:
            reference: Ledger UUID, payment intent, checkout session or subscription ID

        Returns:
            Most recent matching row, if any
        """
        try:
            payment = await self.get(UUID(reference))
        except ValueError:
            payment = None
        if payment is not None:
            return payment

        result = await self.db.execute(
            select(Payment)
            .where(
                or_(
                    Payment.stripe_payment_intent_id == reference,
                    Payment.stripe_checkout_session_id == reference,
                    Payment.stripe_subscription_id == reference,
                )
            )
            .order_by(Payment.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def find_by_payment_intent(self, payment_intent_id: str) -> Optional[Payment]:
        """Find the ledger row for a payment intent."""
        result = await self.db.execute(select(Payment).where(Payment.stripe_payment_intent_id == payment_intent_id))
        return result.scalar_one_or_none()

    async def find_by_checkout_session(self, session_id: str) -> Optional[Payment]:
        """Find the ledger row for a hosted checkout session."""
        result = await self.db.execute(select(Payment).where(Payment.stripe_checkout_session_id == session_id))
        return result.scalar_one_or_none()

    async def find_by_subscription(self, subscription_id: str) -> list[Payment]:
        """All ledger rows for a subscription, newest first."""
        result = await self.db.execute(
            select(Payment)
            .where(Payment.stripe_subscription_id == subscription_id)
            .order_by(Payment.created_at.desc())
        )
        return list(result.scalars().all())

    async def latest_for_account(
        self,
        account_id: UUID,
        statuses: Optional[Iterable[PaymentStatus]] = None,
        mode: Optional[PaymentMode] = None,
    ) -> Optional[Payment]:
        """
        Most recent ledger row for an account.

        Args:
            account_id: Account ID
            statuses: Only consider these statuses
            mode: Only consider this mode
        """
        query = select(Payment).where(Payment.account_id == account_id)
        if statuses is not None:
            query = query.where(Payment.status.in_(list(statuses)))
        if mode is not None:
            query = query.where(Payment.mode == mode)
        result = await self.db.execute(query.order_by(Payment.created_at.desc()).limit(1))
        return result.scalar_one_or_none()

    async def find_recent_by_idempotency_key(self, account_id: UUID, key: str, since: datetime) -> Optional[Payment]:
        """Find a row created with the same idempotency key after ``since``."""
        result = await self.db.execute(
            select(Payment)
            .where(
                Payment.account_id == account_id,
                Payment.idempotency_key == key,
                Payment.created_at >= since,
            )
            .order_by(Payment.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def history(self, account_id: UUID, limit: int = 50) -> list[Payment]:
        """Ledger rows for an account, newest first."""
        result = await self.db.execute(
            select(Payment)
            .where(Payment.account_id == account_id)
            .order_by(Payment.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def attach_references(
        self,
        payment: Payment,
        payment_intent_id: Optional[str] = None,
        subscription_id: Optional[str] = None,
        checkout_session_id: Optional[str] = None,
    ) -> None:
        """Record Stripe references returned for a ledger row. The caller commits."""
        if payment_intent_id:
            payment.stripe_payment_intent_id = payment_intent_id
        if subscription_id:
            payment.stripe_subscription_id = subscription_id
        if checkout_session_id:
            payment.stripe_checkout_session_id = checkout_session_id
        await self.db.flush()

    async def merge_metadata(self, payment: Payment, values: dict[str, Any]) -> None:
        """Merge keys into a row's metadata. The caller commits."""
        payment.extra_metadata = {**(payment.extra_metadata or {}), **values}
        await self.db.flush()

    async def transition(
        self,
        payment_id: UUID,
        to_status: PaymentStatus,
        from_statuses: Iterable[PaymentStatus] = OPEN_STATUSES,
        **values: Any,
    ) -> bool:
        """
        Move a row to ``to_status`` if it is still in one of ``from_statuses``.

        Args:
            payment_id: Ledger row ID
            to_status: Target status
            from_statuses: Statuses the row may currently be in
            **values: Extra columns to set in the same statement

        Returns:
            True if this call changed the row, False if it was already moved
        """
        result = await self.db.execute(
            update(Payment)
            .where(Payment.id == payment_id, Payment.status.in_(list(from_statuses)))
            .values(status=to_status, updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        applied = result.rowcount == 1
        logger.info(
            "ledger_transition",
            payment_id=str(payment_id),
            to_status=to_status.value,
            applied=applied,
        )
        return applied

    async def transition_subscription_rows(
        self,
        subscription_id: str,
        to_status: PaymentStatus,
        from_statuses: Iterable[PaymentStatus] = OPEN_STATUSES,
    ) -> int:
        """
        Move every matching row of a subscription to ``to_status``.

        Returns:
            Number of rows changed
        """
        result = await self.db.execute(
            update(Payment)
            .where(Payment.stripe_subscription_id == subscription_id, Payment.status.in_(list(from_statuses)))
            .values(status=to_status, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    async def claim_notification(self, payment_id: UUID) -> bool:
        """
        Stamp ``email_sent_at`` if nobody has yet.

        Returns:
            True if the caller should send the notification
        """
        result = await self.db.execute(
            update(Payment)
            .where(Payment.id == payment_id, Payment.email_sent_at.is_(None))
            .values(email_sent_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    @staticmethod
    def created_within(payment: Payment, window: timedelta, now: Optional[datetime] = None) -> bool:
        """Whether a row was created less than ``window`` ago."""
        return (now or utcnow()) - payment.created_at < window
