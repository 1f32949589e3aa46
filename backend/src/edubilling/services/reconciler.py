"""Webhook reconciler: applies confirmed Stripe events to the ledger and accounts."""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional
from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from edubilling.config import settings
from edubilling.integrations.notification_service import NotificationService
from edubilling.metrics import payment_amount_total, payments_settled_total, refunds_total, webhooks_received_total
from edubilling.models.account import Account, AccountPaymentStatus, BillingCycle, SubscriptionStatus
from edubilling.models.payment import Payment, PaymentMode, PaymentStatus
from edubilling.models.refund import RefundRequest, RefundStatus
from edubilling.schemas.checkout import AddonSelection
from edubilling.services.ledger_service import LedgerService
from edubilling.services.plan_catalog import PlanCatalog
from edubilling.services.proration import ConversionType
from edubilling.services.quota_service import QuotaService, SeatUsageProvider
from edubilling.services.user_directory import UserDirectory
from edubilling.utils.dates import add_months, add_years, from_timestamp, utcnow

logger = structlog.get_logger(__name__)

# Rows that may still become succeeded. A failed intent can be retried by the
# customer and succeed later, so FAILED is included.
SETTLEABLE_STATUSES = (PaymentStatus.PENDING, PaymentStatus.TRIALING, PaymentStatus.PAST_DUE, PaymentStatus.FAILED)

IGNORED_EVENTS = frozenset(
    {
        "charge.succeeded",
        "charge.updated",
        "mandate.updated",
        "payment_intent.created",
        "payment_intent.processing",
    }
)


@dataclass
class _Notification:
    payment_id: UUID
    to: str
    succeeded: bool
    plan_name: str
    amount: int
    failure_reason: Optional[str] = None


def addons_from_snapshot(snapshot: dict[str, Any] | None) -> AddonSelection:
    """Rebuild the addon selection stored on a ledger row."""
    snapshot = snapshot or {}
    return AddonSelection(
        teacher_seats=int(snapshot.get("teacher_seats") or 0),
        student_seats=int(snapshot.get("student_seats") or 0),
    )


def _metadata_payment_id(obj: dict[str, Any]) -> Optional[UUID]:
    raw = (obj.get("metadata") or {}).get("payment_id")
    if not raw:
        return None
    try:
        return UUID(raw)
    except ValueError:
        return None


def _invoice_period_end(invoice: dict[str, Any]) -> Optional[datetime]:
    lines = (invoice.get("lines") or {}).get("data") or [{}]
    return from_timestamp((lines[0].get("period") or {}).get("end"))


class WebhookReconciler:
    """
    Applies Stripe webhook events.

    Each event is handled in one transaction. Terminal ledger transitions are
    status-gated, so a redelivered or concurrently delivered event finds the
    row already moved and applies no side effects. Notifications are sent
    only after the transaction commits, and at most once per ledger row.
    """

    def __init__(
        self,
        db: AsyncSession,
        notifier: Optional[NotificationService] = None,
        usage: Optional[SeatUsageProvider] = None,
    ):
        """
        Initialize reconciler.

        Args:
            db: Database session
            notifier: Notification integration
            usage: Seat counter used when applying plan limits
        """
        self.db = db
        self.notifier = notifier or NotificationService()
        self.ledger = LedgerService(db)
        self.catalog = PlanCatalog(db)
        self.quota = QuotaService(db, usage)
        self.users = UserDirectory(db)
        self._outbox: list[_Notification] = []
        self._handlers: dict[str, Callable[[dict[str, Any]], Awaitable[str]]] = {
            "payment_intent.succeeded": self._on_payment_intent_succeeded,
            "payment_intent.payment_failed": self._on_payment_intent_failed,
            "checkout.session.completed": self._on_checkout_session_completed,
            "invoice.payment_succeeded": self._on_invoice_paid,
            "invoice.paid": self._on_invoice_paid,
            "invoice.payment_failed": self._on_invoice_payment_failed,
            "customer.subscription.created": self._on_subscription_created,
            "customer.subscription.updated": self._on_subscription_updated,
            "customer.subscription.deleted": self._on_subscription_deleted,
            "charge.refunded": self._on_charge_refunded,
        }

    async def handle_event(self, event: dict[str, Any]) -> str:
        """
        Apply one verified Stripe event.

        Args:
            event: Verified event payload

        Returns:
            Outcome: handled, duplicate, unmatched or ignored

        Raises:
            Exception: Any handler failure, after rolling back
        """
        event_type = event["type"]
        obj = event["data"]["object"]
        handler = self._handlers.get(event_type)

        if handler is None:
            logger.info(
                "stripe_webhook_unhandled_event",
                event_type=event_type,
                event_id=event.get("id"),
                known_ignored=event_type in IGNORED_EVENTS,
            )
            webhooks_received_total.labels(event_type=event_type, outcome="ignored").inc()
            return "ignored"

        try:
            outcome = await handler(obj)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            self._outbox.clear()
            webhooks_received_total.labels(event_type=event_type, outcome="error").inc()
            raise

        webhooks_received_total.labels(event_type=event_type, outcome=outcome).inc()
        logger.info("stripe_webhook_processed", event_type=event_type, event_id=event.get("id"), outcome=outcome)
        await self.flush_notifications()
        return outcome

    # Settlement

    async def settle_success(self, payment: Payment, confirmed_at: Optional[datetime] = None) -> bool:
        """
        Mark a ledger row succeeded and apply its effects to the account.

        Effects: owner user resolved (created on first purchase), plan and
        status set, subscription window started from ``confirmed_at``, plan
        limits widened by the addon snapshot, conversion side effects, one
        success notification. The caller commits.

        Args:
            payment: Ledger row to settle
            confirmed_at: When Stripe confirmed the payment (defaults to now)

        Returns:
            True if this call settled the row, False if it was already settled
        """
        confirmed_at = confirmed_at or utcnow()
        if not await self.ledger.transition(payment.id, PaymentStatus.SUCCEEDED, from_statuses=SETTLEABLE_STATUSES):
            logger.info(
                "payment_already_settled",
                payment_id=str(payment.id),
                payment_intent_id=payment.stripe_payment_intent_id,
            )
            return False

        await self.db.refresh(payment)
        account = await self.db.get(Account, payment.account_id)
        plan = await self.catalog.get_by_id(payment.plan_id)

        owner = await self.users.resolve_owner(account, plan)
        payment.user_id = owner.id

        start = confirmed_at.date()
        account.plan_id = plan.id
        account.payment_status = AccountPaymentStatus.PAID
        account.subscription_start_date = start
        if payment.mode is PaymentMode.SUBSCRIPTION:
            account.subscription_status = SubscriptionStatus.ACTIVE
            account.billing_cycle = BillingCycle.MONTHLY
            account.subscription_end_date = add_months(start, 1)
            if payment.stripe_subscription_id:
                account.stripe_subscription_id = payment.stripe_subscription_id
        else:
            account.subscription_status = SubscriptionStatus.PAID
            account.billing_cycle = BillingCycle.YEARLY
            account.subscription_end_date = add_years(start, 1)

        conversion_type = payment.conversion_type
        if conversion_type == ConversionType.MONTHLY_TO_YEARLY.value:
            # old subscription runs out at period end; it no longer bills this account
            account.stripe_subscription_id = None
        elif conversion_type == ConversionType.YEARLY_TO_MONTHLY.value:
            account.credit_balance = int((payment.extra_metadata or {}).get("balance_remainder") or 0)

        await self.quota.apply_plan_limits(account, plan, addons_from_snapshot(payment.addons))
        await self.db.flush()

        payments_settled_total.labels(status="succeeded", mode=payment.mode.value).inc()
        payment_amount_total.labels(currency=payment.currency).inc(payment.amount)
        logger.info(
            "payment_settled",
            payment_id=str(payment.id),
            account_id=str(account.id),
            plan=plan.slug,
            mode=payment.mode.value,
            conversion_type=conversion_type,
            subscription_end_date=str(account.subscription_end_date),
        )

        await self._queue_notification(payment, account, plan.name, succeeded=True)
        return True

    async def _mark_failed(self, payment: Payment, reason: str, to_status: PaymentStatus = PaymentStatus.FAILED) -> bool:
        from_statuses = (PaymentStatus.PENDING, PaymentStatus.TRIALING)
        if to_status is PaymentStatus.FAILED:
            from_statuses += (PaymentStatus.PAST_DUE,)
        if not await self.ledger.transition(payment.id, to_status, from_statuses=from_statuses, failure_reason=reason):
            logger.info("payment_failure_already_recorded", payment_id=str(payment.id))
            return False

        await self.db.refresh(payment)
        account = await self.db.get(Account, payment.account_id)
        account.payment_status = AccountPaymentStatus.FAILED
        await self.db.flush()

        payments_settled_total.labels(status=to_status.value, mode=payment.mode.value).inc()
        logger.warning(
            "payment_failed",
            payment_id=str(payment.id),
            account_id=str(account.id),
            reason=reason,
        )

        plan = await self.catalog.get_by_id(payment.plan_id)
        await self._queue_notification(payment, account, plan.name, succeeded=False, failure_reason=reason)
        return True

    async def _queue_notification(
        self,
        payment: Payment,
        account: Account,
        plan_name: str,
        succeeded: bool,
        failure_reason: Optional[str] = None,
    ) -> None:
        if not await self.ledger.claim_notification(payment.id):
            return
        self._outbox.append(
            _Notification(
                payment_id=payment.id,
                to=account.owner_email,
                succeeded=succeeded,
                plan_name=plan_name,
                amount=payment.amount,
                failure_reason=failure_reason,
            )
        )

    async def flush_notifications(self) -> None:
        """Send notifications queued by committed settlements."""
        outbox, self._outbox = self._outbox, []
        for item in outbox:
            await self.notifier.send_payment_notification(
                to=item.to,
                succeeded=item.succeeded,
                plan_name=item.plan_name,
                amount=item.amount,
                failure_reason=item.failure_reason,
            )

    # Lookups

    async def _payment_for_intent(self, intent: dict[str, Any]) -> Optional[Payment]:
        payment = await self.ledger.find_by_payment_intent(intent["id"])
        if payment is not None:
            return payment

        payment_id = _metadata_payment_id(intent)
        if payment_id is None:
            return None
        payment = await self.ledger.get(payment_id)
        if payment is not None and not payment.stripe_payment_intent_id:
            await self.ledger.attach_references(payment, payment_intent_id=intent["id"])
        return payment

    async def _account_for_subscription(self, subscription: dict[str, Any]) -> Optional[Account]:
        result = await self.db.execute(select(Account).where(Account.stripe_subscription_id == subscription["id"]))
        account = result.scalar_one_or_none()
        if account is None and subscription.get("customer"):
            result = await self.db.execute(select(Account).where(Account.stripe_customer_id == subscription["customer"]))
            account = result.scalar_one_or_none()
        return account

    # Handlers

    async def _on_payment_intent_succeeded(self, intent: dict[str, Any]) -> str:
        payment = await self._payment_for_intent(intent)
        if payment is None:
            logger.warning("stripe_webhook_payment_not_found", payment_intent_id=intent["id"])
            return "unmatched"
        return "handled" if await self.settle_success(payment) else "duplicate"

    async def _on_payment_intent_failed(self, intent: dict[str, Any]) -> str:
        payment = await self._payment_for_intent(intent)
        if payment is None:
            logger.warning("stripe_webhook_payment_not_found", payment_intent_id=intent["id"])
            return "unmatched"
        error = intent.get("last_payment_error") or {}
        reason = error.get("message") or "Payment failed"
        return "handled" if await self._mark_failed(payment, reason) else "duplicate"

    async def _on_checkout_session_completed(self, session: dict[str, Any]) -> str:
        payment = await self.ledger.find_by_checkout_session(session["id"])
        if payment is None:
            payment_id = _metadata_payment_id(session)
            payment = await self.ledger.get(payment_id) if payment_id else None
        if payment is None:
            logger.warning("stripe_webhook_session_not_found", session_id=session["id"])
            return "unmatched"

        await self.ledger.attach_references(
            payment,
            payment_intent_id=session.get("payment_intent") if payment.stripe_payment_intent_id is None else None,
            subscription_id=session.get("subscription"),
        )
        if session.get("payment_status") not in ("paid", "no_payment_required"):
            logger.info("checkout_session_awaiting_payment", session_id=session["id"], payment_id=str(payment.id))
            return "handled"
        return "handled" if await self.settle_success(payment) else "duplicate"

    async def _on_invoice_paid(self, invoice: dict[str, Any]) -> str:
        subscription_id = invoice.get("subscription")
        payment = None
        if invoice.get("payment_intent"):
            payment = await self.ledger.find_by_payment_intent(invoice["payment_intent"])
        if payment is None and subscription_id:
            rows = await self.ledger.find_by_subscription(subscription_id)
            payment = next((row for row in rows if row.status in SETTLEABLE_STATUSES), None)
            if payment is None and rows:
                return await self._extend_renewal(subscription_id, invoice)
        if payment is None:
            logger.warning("stripe_webhook_invoice_unmatched", invoice_id=invoice.get("id"), subscription_id=subscription_id)
            return "unmatched"
        if payment.status is PaymentStatus.TRIALING and not invoice.get("amount_paid"):
            # the $0 invoice opening a trial; the row settles on the first charged invoice
            return await self._start_trial(
                payment, subscription_id or payment.stripe_subscription_id, _invoice_period_end(invoice)
            )
        return "handled" if await self.settle_success(payment) else "duplicate"

    async def _extend_renewal(self, subscription_id: str, invoice: dict[str, Any]) -> str:
        if invoice.get("billing_reason") != "subscription_cycle":
            return "duplicate"
        result = await self.db.execute(select(Account).where(Account.stripe_subscription_id == subscription_id))
        account = result.scalar_one_or_none()
        if account is None:
            return "unmatched"

        period_end = _invoice_period_end(invoice)
        today = utcnow().date()
        account.subscription_status = SubscriptionStatus.ACTIVE
        account.payment_status = AccountPaymentStatus.PAID
        account.subscription_end_date = period_end.date() if period_end else add_months(today, 1)
        logger.info(
            "subscription_renewed",
            account_id=str(account.id),
            subscription_id=subscription_id,
            subscription_end_date=str(account.subscription_end_date),
        )
        return "handled"

    async def _on_invoice_payment_failed(self, invoice: dict[str, Any]) -> str:
        subscription_id = invoice.get("subscription")
        reason = ((invoice.get("last_finalization_error") or {}).get("message")) or "Invoice payment failed"
        outcome = "unmatched"

        payment = await self.ledger.find_by_payment_intent(invoice["payment_intent"]) if invoice.get("payment_intent") else None
        if payment is not None:
            outcome = "handled" if await self._mark_failed(payment, reason) else "duplicate"

        if subscription_id:
            moved = await self.ledger.transition_subscription_rows(
                subscription_id, PaymentStatus.PAST_DUE, from_statuses=(PaymentStatus.PENDING, PaymentStatus.TRIALING)
            )
            result = await self.db.execute(select(Account).where(Account.stripe_subscription_id == subscription_id))
            account = result.scalar_one_or_none()
            if account is not None:
                account.payment_status = AccountPaymentStatus.FAILED
                outcome = "handled"
            elif moved:
                outcome = "handled"
        return outcome

    async def _on_subscription_created(self, subscription: dict[str, Any]) -> str:
        rows = await self.ledger.find_by_subscription(subscription["id"])
        payment = rows[0] if rows else None
        if payment is None:
            payment_id = _metadata_payment_id(subscription)
            payment = await self.ledger.get(payment_id) if payment_id else None
        if payment is None:
            logger.warning("stripe_webhook_subscription_unmatched", subscription_id=subscription["id"])
            return "unmatched"

        if subscription.get("status") != "trialing" or payment.status is not PaymentStatus.TRIALING:
            logger.info(
                "subscription_created",
                subscription_id=subscription["id"],
                status=subscription.get("status"),
                payment_id=str(payment.id),
            )
            return "handled"

        return await self._start_trial(payment, subscription["id"], from_timestamp(subscription.get("trial_end")))

    async def _start_trial(self, payment: Payment, subscription_id: str, trial_end: Optional[datetime]) -> str:
        """
        Put the account on the trial of a trialing ledger row.

        Reached from whichever of ``customer.subscription.created`` and the
        $0 first invoice lands first; the second one is a duplicate. The row
        stays trialing and no payment notification is sent.
        """
        account = await self.db.get(Account, payment.account_id)
        if account.subscription_status is SubscriptionStatus.TRIALING and account.stripe_subscription_id == subscription_id:
            return "duplicate"

        plan = await self.catalog.get_by_id(payment.plan_id)
        trial_end = trial_end or (utcnow() + timedelta(days=settings.trial_days))
        account.plan_id = plan.id
        account.subscription_status = SubscriptionStatus.TRIALING
        account.billing_cycle = BillingCycle.MONTHLY
        account.subscription_start_date = utcnow().date()
        account.subscription_end_date = trial_end.date()
        account.has_used_trial = True
        account.stripe_subscription_id = subscription_id
        await self.quota.apply_plan_limits(account, plan, addons_from_snapshot(payment.addons))

        logger.info(
            "trial_started",
            account_id=str(account.id),
            subscription_id=subscription_id,
            payment_id=str(payment.id),
            trial_end=str(account.subscription_end_date),
        )
        return "handled"

    async def _on_subscription_updated(self, subscription: dict[str, Any]) -> str:
        account = await self._account_for_subscription(subscription)
        if account is None or account.stripe_subscription_id != subscription["id"]:
            logger.info("subscription_update_for_superseded_subscription", subscription_id=subscription["id"])
            return "ignored"

        status = subscription.get("status")
        if status == "active":
            account.subscription_status = SubscriptionStatus.ACTIVE
            account.payment_status = AccountPaymentStatus.PAID
        elif status == "past_due":
            account.subscription_status = SubscriptionStatus.PAST_DUE

        rows = await self.ledger.find_by_subscription(subscription["id"])
        if rows:
            await self.ledger.merge_metadata(
                rows[0], {"cancel_at_period_end": bool(subscription.get("cancel_at_period_end"))}
            )

        metadata = subscription.get("metadata") or {}
        if "teacher_seats" in metadata or "student_seats" in metadata:
            addons = addons_from_snapshot(metadata)
            plan = await self.catalog.get_by_id(account.plan_id)
            await self.quota.apply_plan_limits(account, plan, addons)

        logger.info(
            "subscription_updated",
            account_id=str(account.id),
            subscription_id=subscription["id"],
            status=status,
            cancel_at_period_end=bool(subscription.get("cancel_at_period_end")),
        )
        return "handled"

    async def _on_subscription_deleted(self, subscription: dict[str, Any]) -> str:
        await self.ledger.transition_subscription_rows(subscription["id"], PaymentStatus.CANCELLED)

        account = await self._account_for_subscription(subscription)
        if account is None:
            return "unmatched"
        if account.stripe_subscription_id != subscription["id"]:
            # superseded by a yearly purchase; the account is billed elsewhere
            logger.info("superseded_subscription_ended", account_id=str(account.id), subscription_id=subscription["id"])
            return "handled"

        account.stripe_subscription_id = None
        account.subscription_status = SubscriptionStatus.CANCELLED
        logger.info("subscription_cancelled", account_id=str(account.id), subscription_id=subscription["id"])
        return "handled"

    async def _on_charge_refunded(self, charge: dict[str, Any]) -> str:
        intent_id = charge.get("payment_intent")
        payment = await self.ledger.find_by_payment_intent(intent_id) if intent_id else None
        if payment is None:
            return "unmatched"

        result = await self.db.execute(select(RefundRequest).where(RefundRequest.payment_id == payment.id))
        refund = result.scalar_one_or_none()
        if refund is None or refund.status is RefundStatus.COMPLETED:
            return "duplicate" if refund else "unmatched"

        refund.status = RefundStatus.COMPLETED
        refunds_total.labels(status="completed").inc()
        logger.info("refund_completed", refund_id=str(refund.id), payment_id=str(payment.id))
        return "handled"
