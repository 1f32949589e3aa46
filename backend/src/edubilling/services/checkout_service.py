"""Checkout and upgrade orchestration."""
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional
from uuid import UUID

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from edubilling.adapters.stripe_adapter import StripeAdapter
from edubilling.cache import ProductCache
from edubilling.config import settings
from edubilling.errors import (
    AmountMismatch,
    Forbidden,
    IdempotencyConflict,
    NotFound,
    PolicyViolation,
    ProcessorError,
    ProcessorTransientError,
    ValidationError,
    returns_outcome,
)
from edubilling.integrations.notification_service import NotificationService
from edubilling.metrics import (
    amount_mismatch_total,
    checkouts_created_total,
    guardrail_rejections_total,
    orphaned_stripe_objects_total,
    upgrades_created_total,
)
from edubilling.models.account import Account, BillingCycle, SubscriptionStatus
from edubilling.models.payment import Payment, PaymentMode, PaymentStatus
from edubilling.models.plan import Plan
from edubilling.schemas.checkout import (
    AddonSelection,
    CheckoutIntentResponse,
    CheckoutResponse,
    PriceBreakdown,
    PurchaseType,
    UpgradePreviewResponse,
    UpgradeResponse,
)
from edubilling.schemas.error import ErrorCode
from edubilling.services import proration
from edubilling.services.ledger_service import LedgerService
from edubilling.services.payment_method_service import PaymentMethodService
from edubilling.services.plan_catalog import PlanCatalog, price_breakdown
from edubilling.services.product_resolver import ProductResolver
from edubilling.services.proration import BillingSource, ConversionType, PriorCharge, ProrationInput, ProrationQuote
from edubilling.services.quota_service import SeatUsageProvider, validate_addons
from edubilling.services.reconciler import WebhookReconciler, addons_from_snapshot
from edubilling.utils.dates import from_timestamp, utcnow

logger = structlog.get_logger(__name__)

GUARDED_STATUSES = (PaymentStatus.SUCCEEDED, PaymentStatus.PENDING, PaymentStatus.TRIALING)
LIVE_SUBSCRIPTION_STATUSES = ("active", "trialing")


def amounts_agree(expected: int, reported: int, tolerance_percent: float) -> bool:
    """Whether a processor-reported amount is within tolerance of the computed one."""
    return abs(reported - expected) <= expected * tolerance_percent / 100


def _checkout_mode(purchase_type: PurchaseType) -> str:
    return "subscription" if purchase_type is PurchaseType.SUBSCRIPTION else "payment"


def _stripe_metadata(
    payment: Payment,
    account: Account,
    plan: Plan,
    purchase_type: PurchaseType,
    addons: AddonSelection,
    **extra: Any,
) -> dict[str, str]:
    # Stripe metadata values are strings
    metadata = {
        "payment_id": str(payment.id),
        "account_id": str(account.id),
        "plan_id": str(plan.id),
        "plan_slug": plan.slug,
        "purchase_type": purchase_type.value,
        "teacher_seats": str(addons.teacher_seats),
        "student_seats": str(addons.student_seats),
    }
    metadata.update({key: str(value) for key, value in extra.items() if value is not None})
    return metadata


@dataclass
class UpgradePlan:
    """A priced upgrade, before anything is charged."""

    source: BillingSource
    current_plan: Optional[Plan]
    plan: Plan
    purchase_type: PurchaseType
    addons: AddonSelection
    breakdown: PriceBreakdown
    quote: ProrationQuote
    subscription: Optional[dict[str, Any]] = None


@dataclass
class _ChargeResult:
    client_secret: Optional[str]
    intent_type: Optional[str]
    status: str


class CheckoutService:
    """
    Orchestrates purchases and plan changes.

    Every purchase writes a pending ledger row and commits it before Stripe is
    called, so a Stripe object never exists without a local record pointing
    at it. Confirmation arrives later through the webhook reconciler; the
    only local settlement is an upgrade with nothing to charge.
    """

    def __init__(
        self,
        db: AsyncSession,
        processor: StripeAdapter,
        product_cache: ProductCache,
        notifier: Optional[NotificationService] = None,
        usage: Optional[SeatUsageProvider] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize checkout service.

        Args:
            db: Database session
            processor: Stripe adapter
            product_cache: Cache of Stripe product IDs
            notifier: Notification integration used by local settlement
            usage: Seat counter used when applying plan limits
            clock: Source of the current time
        """
        self.db = db
        self.processor = processor
        self.notifier = notifier or NotificationService()
        self.usage = usage
        self.clock = clock
        self.ledger = LedgerService(db)
        self.catalog = PlanCatalog(db)
        self.products = ProductResolver(processor, product_cache)
        self.customers = PaymentMethodService(db, processor)
        self._charge_steps: dict[ConversionType, Callable[..., Awaitable[_ChargeResult]]] = {
            ConversionType.TRIAL_TO_MONTHLY: self._charge_new_subscription,
            ConversionType.YEARLY_TO_MONTHLY: self._charge_new_subscription,
            ConversionType.TRIAL_TO_YEARLY: self._charge_intent,
            ConversionType.MONTHLY_TO_YEARLY: self._charge_intent,
            ConversionType.YEARLY_CHANGE: self._charge_intent,
            ConversionType.MONTHLY_CHANGE: self._change_subscription_items,
        }

    # New purchases

    @returns_outcome
    async def create_checkout(
        self,
        account: Account,
        plan_slug: str,
        purchase_type: PurchaseType,
        addons: AddonSelection,
        user_id: Optional[UUID] = None,
    ) -> CheckoutResponse:
        """
        Start a hosted Stripe Checkout purchase.

        Args:
            account: Purchasing account
            plan_slug: Plan to buy
            purchase_type: subscription (monthly) or one_time (yearly)
            addons: Addon seats
            user_id: Authenticated user making the purchase

        Returns:
            Session id and redirect URL
        """
        now = self.clock()
        validate_addons(addons)
        plan = await self.catalog.get_by_slug(plan_slug)
        breakdown = price_breakdown(plan, purchase_type.cycle, addons)
        await self._check_guardrails(account, purchase_type, now)

        customer_id = await self.customers.ensure_customer(account)
        payment = await self.ledger.create_entry(
            account_id=account.id,
            plan_id=plan.id,
            mode=purchase_type.mode,
            amount=breakdown.total,
            currency=settings.currency,
            addons=breakdown.snapshot(),
            metadata={"flow": "checkout_session"},
            user_id=user_id,
        )
        await self.db.commit()

        metadata = _stripe_metadata(payment, account, plan, purchase_type, addons)
        try:
            items = await self.products.line_items(plan, breakdown)
            session = await self.processor.create_checkout_session(
                customer_id=customer_id,
                mode=_checkout_mode(purchase_type),
                items=items,
                metadata=metadata,
                success_url=f"{settings.frontend_url}/billing/success?session_id={{CHECKOUT_SESSION_ID}}",
                cancel_url=f"{settings.frontend_url}/billing/cancel",
            )
        except ProcessorError as exc:
            await self._abandon_after_processor_error(exc, "create_checkout_session", payment, account, plan)
            raise

        await self._record_processor_object(
            payment,
            account,
            operation="create_checkout_session",
            orphan=("checkout_session", session["id"]),
            expected=breakdown.total,
            reported=session.get("amount_total"),
            checkout_session_id=session["id"],
        )

        checkouts_created_total.labels(flow="session", mode=purchase_type.mode.value).inc()
        logger.info(
            "checkout_session_created",
            payment_id=str(payment.id),
            account_id=str(account.id),
            plan=plan.slug,
            amount=breakdown.total,
            session_id=session["id"],
        )
        return CheckoutResponse(
            payment_id=payment.id,
            session_id=session["id"],
            url=session["url"],
            amount=breakdown.total,
            currency=settings.currency,
            mode=purchase_type.mode,
            breakdown=breakdown,
        )

    @returns_outcome
    async def create_checkout_intent(
        self,
        account: Account,
        plan_slug: str,
        purchase_type: PurchaseType,
        addons: AddonSelection,
        payment_method_id: Optional[str] = None,
        user_id: Optional[UUID] = None,
    ) -> CheckoutIntentResponse:
        """
        Start an embedded purchase confirmed client-side with Stripe.js.

        Yearly purchases create a payment intent. Monthly purchases create a
        subscription with one line item per priced product; the first monthly
        purchase of an account starts with a free trial and returns a setup
        intent secret instead.

        Args:
            account: Purchasing account
            plan_slug: Plan to buy
            purchase_type: subscription (monthly) or one_time (yearly)
            addons: Addon seats
            payment_method_id: Saved card to charge
            user_id: Authenticated user making the purchase

        Returns:
            Client secret and price breakdown
        """
        now = self.clock()
        validate_addons(addons)
        plan = await self.catalog.get_by_slug(plan_slug)
        breakdown = price_breakdown(plan, purchase_type.cycle, addons)
        await self._check_guardrails(account, purchase_type, now)

        trial = purchase_type is PurchaseType.SUBSCRIPTION and not account.has_used_trial
        customer_id = await self.customers.ensure_customer(account)
        payment = await self.ledger.create_entry(
            account_id=account.id,
            plan_id=plan.id,
            mode=purchase_type.mode,
            amount=breakdown.total,
            currency=settings.currency,
            addons=breakdown.snapshot(),
            metadata={"flow": "intent", "trial": trial},
            status=PaymentStatus.TRIALING if trial else PaymentStatus.PENDING,
            user_id=user_id,
        )
        if trial:
            # one trial per account
            account.has_used_trial = True
        await self.db.commit()

        metadata = _stripe_metadata(payment, account, plan, purchase_type, addons)
        if purchase_type is PurchaseType.ONE_TIME:
            operation = "create_payment_intent"
            try:
                intent = await self.processor.create_payment_intent(
                    amount=breakdown.total,
                    currency=settings.currency,
                    customer_id=customer_id,
                    metadata=metadata,
                    payment_method_id=payment_method_id,
                    description=f"{plan.name} plan (yearly)",
                )
            except ProcessorError as exc:
                await self._abandon_after_processor_error(exc, operation, payment, account, plan)
                raise
            await self._record_processor_object(
                payment,
                account,
                operation=operation,
                orphan=("payment_intent", intent["id"]),
                expected=breakdown.total,
                reported=intent["amount"],
                payment_intent_id=intent["id"],
            )
            client_secret, intent_type = intent["client_secret"], "payment"
        else:
            operation = "create_subscription"
            try:
                items = await self.products.line_items(plan, breakdown)
                subscription = await self.processor.create_subscription(
                    customer_id=customer_id,
                    items=items,
                    metadata=metadata,
                    trial_days=settings.trial_days if trial else None,
                    payment_method_id=payment_method_id,
                )
            except ProcessorError as exc:
                if trial:
                    account.has_used_trial = False
                await self._abandon_after_processor_error(exc, operation, payment, account, plan)
                raise
            await self._record_processor_object(
                payment,
                account,
                operation=operation,
                orphan=("subscription", subscription["id"]),
                expected=breakdown.total,
                reported=subscription["amount"],
                subscription_id=subscription["id"],
                payment_intent_id=subscription.get("payment_intent_id"),
            )
            client_secret, intent_type = subscription["client_secret"], subscription["intent_type"]

        checkouts_created_total.labels(flow="intent", mode=purchase_type.mode.value).inc()
        logger.info(
            "checkout_intent_created",
            payment_id=str(payment.id),
            account_id=str(account.id),
            plan=plan.slug,
            amount=breakdown.total,
            trial=trial,
        )
        return CheckoutIntentResponse(
            payment_id=payment.id,
            client_secret=client_secret,
            intent_type=intent_type,
            amount=breakdown.total,
            currency=settings.currency,
            mode=purchase_type.mode,
            breakdown=breakdown,
            trial=trial,
            trial_days=settings.trial_days if trial else 0,
        )

    # Upgrades

    @returns_outcome
    async def upgrade_preview(
        self,
        account: Account,
        new_plan_slug: str,
        purchase_type: PurchaseType,
        addons: Optional[AddonSelection] = None,
    ) -> UpgradePreviewResponse:
        """Price a plan or cycle change without charging anything."""
        upgrade = await self.plan_upgrade(account, new_plan_slug, purchase_type, addons, self.clock())
        return UpgradePreviewResponse(
            current_plan=upgrade.current_plan.slug if upgrade.current_plan else None,
            new_plan=upgrade.plan.slug,
            conversion_type=upgrade.quote.conversion_type.value,
            credit=upgrade.quote.credit,
            breakdown=upgrade.breakdown,
            total_addon_cost=upgrade.breakdown.addon_cost,
            amount_due=upgrade.quote.amount_due,
            balance_remainder=upgrade.quote.balance_remainder,
            no_payment_required=upgrade.quote.no_payment_required,
        )

    @returns_outcome
    async def create_upgrade(
        self,
        account: Account,
        new_plan_slug: str,
        purchase_type: PurchaseType,
        addons: Optional[AddonSelection] = None,
        idempotency_key: Optional[str] = None,
        user_id: Optional[UUID] = None,
    ) -> UpgradeResponse:
        """
        Change plan, addon seats or billing cycle, charging the prorated difference.

        Args:
            account: Account changing plan
            new_plan_slug: Target plan
            purchase_type: Target cycle
            addons: New addon totals (None keeps the current seats)
            idempotency_key: Client key; reuse within the window is rejected
            user_id: Authenticated user making the change

        Returns:
            What to confirm client-side, or a completed upgrade when nothing is due
        """
        now = self.clock()
        if idempotency_key:
            since = now - timedelta(minutes=settings.upgrade_idempotency_window_minutes)
            existing = await self.ledger.find_recent_by_idempotency_key(account.id, idempotency_key, since)
            if existing is not None:
                raise IdempotencyConflict(
                    "This upgrade request was already submitted",
                    context={"payment_id": str(existing.id)},
                )

        upgrade = await self.plan_upgrade(account, new_plan_slug, purchase_type, addons, now)
        quote = upgrade.quote
        customer_id = await self.customers.ensure_customer(account)

        payment = await self.ledger.create_entry(
            account_id=account.id,
            plan_id=upgrade.plan.id,
            mode=purchase_type.mode,
            amount=quote.amount_due,
            currency=settings.currency,
            addons=upgrade.breakdown.snapshot(),
            metadata={
                "flow": "upgrade",
                "conversion_type": quote.conversion_type.value,
                "credit": quote.credit,
                "days_remaining": quote.days_remaining,
                "new_total": quote.new_total,
                "balance_remainder": quote.balance_remainder,
                "previous_plan_id": str(account.plan_id) if account.plan_id else None,
                "superseded_subscription_id": account.stripe_subscription_id,
            },
            idempotency_key=idempotency_key,
            user_id=user_id,
        )
        await self.db.commit()

        step = self._charge_steps[quote.conversion_type]
        result = await step(account, upgrade, payment, customer_id)

        upgrades_created_total.labels(
            conversion_type=quote.conversion_type.value,
            charged=str(not quote.no_payment_required).lower(),
        ).inc()
        logger.info(
            "upgrade_created",
            payment_id=str(payment.id),
            account_id=str(account.id),
            conversion_type=quote.conversion_type.value,
            plan=upgrade.plan.slug,
            credit=quote.credit,
            amount_due=quote.amount_due,
            status=result.status,
        )
        return UpgradeResponse(
            payment_id=payment.id,
            conversion_type=quote.conversion_type.value,
            client_secret=result.client_secret,
            intent_type=result.intent_type,
            amount=quote.amount_due,
            credit=quote.credit,
            breakdown=upgrade.breakdown,
            no_payment_required=quote.no_payment_required,
            status=result.status,
        )

    async def plan_upgrade(
        self,
        account: Account,
        new_plan_slug: str,
        purchase_type: PurchaseType,
        addons: Optional[AddonSelection],
        now: datetime,
    ) -> UpgradePlan:
        """
        Detect the billing source and price an upgrade.

        Raises:
            ValidationError: No billing source, bad addons, or nothing would change
            NotFound: Unknown plan
        """
        plan = await self.catalog.get_by_slug(new_plan_slug)
        current_plan = await self.catalog.get_by_id(account.plan_id) if account.plan_id else None
        source, prior, subscription = await self._billing_source(account, current_plan)

        current_addons = await self._current_addons(account, subscription)
        selected = addons if addons is not None else current_addons
        validate_addons(selected)

        target = purchase_type.cycle
        unchanged = (
            source is not BillingSource.TRIAL
            and source.value == target.value
            and current_plan is not None
            and current_plan.id == plan.id
            and selected == current_addons
        )
        if unchanged:
            raise ValidationError(
                f"You are already on the {plan.name} plan with this billing cycle and these seats",
                code=ErrorCode.ALREADY_ON_PLAN,
            )

        breakdown = price_breakdown(plan, target, selected)
        quote = proration.quote(
            ProrationInput(source=source, target_cycle=target, new_total=breakdown.total, prior=prior, now=now)
        )
        return UpgradePlan(
            source=source,
            current_plan=current_plan,
            plan=plan,
            purchase_type=purchase_type,
            addons=selected,
            breakdown=breakdown,
            quote=quote,
            subscription=subscription,
        )

    async def _billing_source(
        self, account: Account, current_plan: Optional[Plan]
    ) -> tuple[BillingSource, Optional[PriorCharge], Optional[dict[str, Any]]]:
        status = account.subscription_status
        if status in (SubscriptionStatus.TRIAL, SubscriptionStatus.TRIALING):
            return BillingSource.TRIAL, None, None

        if (
            account.billing_cycle is BillingCycle.MONTHLY
            and account.stripe_subscription_id
            and status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE)
        ):
            subscription = await self.processor.retrieve_subscription(account.stripe_subscription_id)
            base = await self.products.base_item(current_plan, subscription["items"]) if current_plan else None
            if base is None and subscription["items"]:
                base = subscription["items"][0]
            purchased_at = from_timestamp(subscription.get("current_period_start")) or self.clock()
            prior = PriorCharge(
                total_paid=base["unit_amount"] * base["quantity"] if base else 0,
                addon_cost=0,
                purchased_at=purchased_at,
            )
            return BillingSource.MONTHLY, prior, subscription

        if account.billing_cycle in (BillingCycle.YEARLY, BillingCycle.ONE_TIME) and status is SubscriptionStatus.PAID:
            paid = await self.ledger.latest_for_account(
                account.id, statuses=(PaymentStatus.SUCCEEDED,), mode=PaymentMode.ONE_TIME
            )
            if paid is not None:
                snapshot = paid.addons or {}
                prior = PriorCharge(
                    total_paid=paid.amount,
                    addon_cost=int(snapshot.get("addon_cost") or 0),
                    purchased_at=paid.created_at,
                    base_plan_price=snapshot.get("base_plan_price"),
                )
                return BillingSource.YEARLY, prior, None

        raise ValidationError(
            "No active trial, subscription or yearly plan to upgrade from",
            code=ErrorCode.NO_BILLING_SOURCE,
            context={"subscription_status": status.value if status else None},
        )

    async def _current_addons(self, account: Account, subscription: Optional[dict[str, Any]]) -> AddonSelection:
        metadata = (subscription or {}).get("metadata") or {}
        if "teacher_seats" in metadata or "student_seats" in metadata:
            return addons_from_snapshot(metadata)
        paid = await self.ledger.latest_for_account(account.id, statuses=(PaymentStatus.SUCCEEDED,))
        return addons_from_snapshot(paid.addons if paid else None)

    # Upgrade charge steps

    async def _charge_intent(
        self, account: Account, upgrade: UpgradePlan, payment: Payment, customer_id: str
    ) -> _ChargeResult:
        quote = upgrade.quote
        superseded = account.stripe_subscription_id if quote.conversion_type is ConversionType.MONTHLY_TO_YEARLY else None

        if quote.no_payment_required:
            if superseded:
                await self._cancel_at_period_end(superseded, payment, account, upgrade.plan)
            await self._settle_locally(payment)
            return _ChargeResult(client_secret=None, intent_type=None, status=PaymentStatus.SUCCEEDED.value)

        operation = "create_payment_intent"
        metadata = _stripe_metadata(
            payment,
            account,
            upgrade.plan,
            upgrade.purchase_type,
            upgrade.addons,
            conversion_type=quote.conversion_type.value,
            credit=quote.credit,
        )
        try:
            intent = await self.processor.create_payment_intent(
                amount=quote.amount_due,
                currency=settings.currency,
                customer_id=customer_id,
                metadata=metadata,
                description=f"Upgrade to {upgrade.plan.name} ({quote.conversion_type.value})",
            )
        except ProcessorError as exc:
            await self._abandon_after_processor_error(exc, operation, payment, account, upgrade.plan)
            raise

        await self._record_processor_object(
            payment,
            account,
            operation=operation,
            orphan=("payment_intent", intent["id"]),
            expected=quote.amount_due,
            reported=intent["amount"],
            payment_intent_id=intent["id"],
        )

        if superseded:
            try:
                await self._cancel_at_period_end(superseded, payment, account, upgrade.plan)
            except ProcessorError:
                await self._cancel_orphan("payment_intent", intent["id"])
                raise
        return _ChargeResult(client_secret=intent["client_secret"], intent_type="payment", status=PaymentStatus.PENDING.value)

    async def _charge_new_subscription(
        self, account: Account, upgrade: UpgradePlan, payment: Payment, customer_id: str
    ) -> _ChargeResult:
        quote = upgrade.quote
        operation = "create_subscription"
        metadata = _stripe_metadata(
            payment,
            account,
            upgrade.plan,
            upgrade.purchase_type,
            upgrade.addons,
            conversion_type=quote.conversion_type.value,
            credit=quote.credit,
        )

        credited = False
        try:
            if quote.conversion_type is ConversionType.YEARLY_TO_MONTHLY and quote.credit > 0:
                # the first invoice draws on the balance; the rest stays for later invoices
                await self.processor.create_balance_transaction(
                    customer_id, -quote.credit, f"Unused yearly plan credit ({quote.days_remaining} days)"
                )
                credited = True
            items = await self.products.line_items(upgrade.plan, upgrade.breakdown)
            subscription = await self.processor.create_subscription(
                customer_id=customer_id,
                items=items,
                metadata=metadata,
                trial_end="now" if quote.conversion_type is ConversionType.TRIAL_TO_MONTHLY else None,
            )
        except ProcessorError as exc:
            if credited:
                await self._reverse_credit(customer_id, quote.credit, payment)
            await self._abandon_after_processor_error(exc, operation, payment, account, upgrade.plan)
            raise

        await self._record_processor_object(
            payment,
            account,
            operation=operation,
            orphan=("subscription", subscription["id"]),
            expected=upgrade.breakdown.total,
            reported=subscription["amount"],
            subscription_id=subscription["id"],
            payment_intent_id=subscription.get("payment_intent_id"),
        )

        trialing_subscription = account.stripe_subscription_id
        if quote.conversion_type is ConversionType.TRIAL_TO_MONTHLY and trialing_subscription:
            # the trial subscription is replaced; its deletion must not cancel the account
            account.stripe_subscription_id = None
            await self.db.commit()
            await self._cancel_orphan("subscription", trialing_subscription, superseded=True)

        return _ChargeResult(
            client_secret=subscription["client_secret"],
            intent_type=subscription["intent_type"] if subscription["client_secret"] else None,
            status=PaymentStatus.PENDING.value,
        )

    async def _change_subscription_items(
        self, account: Account, upgrade: UpgradePlan, payment: Payment, customer_id: str
    ) -> _ChargeResult:
        quote = upgrade.quote
        operation = "update_subscription"
        subscription_id = account.stripe_subscription_id
        metadata = _stripe_metadata(
            payment,
            account,
            upgrade.plan,
            upgrade.purchase_type,
            upgrade.addons,
            conversion_type=quote.conversion_type.value,
        )
        try:
            items = await self.products.line_items(upgrade.plan, upgrade.breakdown)
            updated = await self.processor.replace_subscription_items(
                subscription_id,
                current_items=upgrade.subscription["items"] if upgrade.subscription else [],
                new_items=items,
                metadata=metadata,
            )
        except ProcessorError as exc:
            await self._abandon_after_processor_error(exc, operation, payment, account, upgrade.plan)
            raise

        # Stripe prorates by the second; its invoice amount is what gets charged
        payment.amount = updated["amount_due"]
        await self.ledger.merge_metadata(payment, {"estimated_amount": quote.amount_due})
        await self._record_processor_object(
            payment,
            account,
            operation=operation,
            orphan=None,
            expected=None,
            reported=None,
            subscription_id=updated["id"],
            payment_intent_id=updated.get("payment_intent_id"),
        )
        return _ChargeResult(
            client_secret=updated["client_secret"],
            intent_type="payment" if updated["client_secret"] else None,
            status=PaymentStatus.PENDING.value,
        )

    async def _cancel_at_period_end(self, subscription_id: str, payment: Payment, account: Account, plan: Plan) -> None:
        try:
            await self.processor.set_cancel_at_period_end(
                subscription_id, metadata={"superseded_by_payment_id": str(payment.id)}
            )
        except ProcessorError as exc:
            await self._abandon_after_processor_error(exc, "cancel_at_period_end", payment, account, plan)
            raise

    async def _settle_locally(self, payment: Payment) -> None:
        reconciler = WebhookReconciler(self.db, self.notifier, self.usage)
        await reconciler.settle_success(payment, confirmed_at=self.clock())
        await self.db.commit()
        await reconciler.flush_notifications()
        logger.info("upgrade_settled_without_charge", payment_id=str(payment.id))

    async def _reverse_credit(self, customer_id: str, credit: int, payment: Payment) -> None:
        try:
            await self.processor.create_balance_transaction(customer_id, credit, "Reversal of unused yearly plan credit")
        except ProcessorError as exc:
            logger.error(
                "balance_credit_reversal_failed",
                customer_id=customer_id,
                credit=credit,
                payment_id=str(payment.id),
                error=exc.message,
            )

    # Status

    @returns_outcome
    async def payment_status(self, account: Account, reference: str) -> Payment:
        """
        Look up a ledger row by ID or Stripe reference.

        Raises:
            NotFound: No row matches
            Forbidden: The row belongs to another account
        """
        payment = await self.ledger.get_by_reference(reference)
        if payment is None:
            raise NotFound(f"Payment {reference} not found", code=ErrorCode.PAYMENT_NOT_FOUND)
        if payment.account_id != account.id:
            raise Forbidden("This payment belongs to another account", code=ErrorCode.PAYMENT_ACCESS_DENIED)
        return payment

    # Guardrails

    async def _check_guardrails(self, account: Account, purchase_type: PurchaseType, now: datetime) -> None:
        latest = await self.ledger.latest_for_account(account.id, statuses=GUARDED_STATUSES)
        if latest is None:
            return

        try:
            await self._reject_live_subscription(account)
            if purchase_type is PurchaseType.ONE_TIME:
                yearly = await self.ledger.latest_for_account(
                    account.id, statuses=(PaymentStatus.SUCCEEDED,), mode=PaymentMode.ONE_TIME
                )
                self._reject_duplicate_yearly(yearly, now)
            self._reject_rapid_purchase(latest, now)
        except PolicyViolation as exc:
            guardrail_rejections_total.labels(code=exc.code).inc()
            logger.info("purchase_rejected", account_id=str(account.id), code=exc.code, reason=exc.message)
            raise

    async def _reject_live_subscription(self, account: Account) -> None:
        if not account.stripe_subscription_id:
            return
        try:
            subscription = await self.processor.retrieve_subscription(account.stripe_subscription_id)
        except ProcessorTransientError:
            raise
        except ProcessorError as exc:
            # subscription no longer exists in Stripe
            logger.warning(
                "subscription_lookup_failed",
                account_id=str(account.id),
                subscription_id=account.stripe_subscription_id,
                error=exc.message,
            )
            return

        if subscription["status"] in LIVE_SUBSCRIPTION_STATUSES:
            renews = from_timestamp(subscription.get("current_period_end"))
            renews_on = renews.date().isoformat() if renews else "the end of the current period"
            raise PolicyViolation(
                f"You already have an {subscription['status']} subscription that renews on {renews_on}. "
                "Change your plan with an upgrade instead of a new purchase.",
                code=ErrorCode.ACTIVE_SUBSCRIPTION_EXISTS,
                context={"subscription_status": subscription["status"], "renews_on": renews_on},
            )

    def _reject_duplicate_yearly(self, yearly: Optional[Payment], now: datetime) -> None:
        if yearly is None:
            return
        window = timedelta(days=settings.yearly_duplicate_window_days)
        elapsed = now - yearly.created_at
        if elapsed < window:
            days_left = max(1, math.ceil((window - elapsed) / timedelta(days=1)))
            raise PolicyViolation(
                f"You bought a yearly plan recently. You can buy again in {days_left} day(s), "
                "or change plans with an upgrade.",
                code=ErrorCode.DUPLICATE_YEARLY_PURCHASE,
                context={"days_until_allowed": days_left},
            )

    def _reject_rapid_purchase(self, latest: Payment, now: datetime) -> None:
        window = timedelta(minutes=settings.purchase_cooldown_minutes)
        elapsed = now - latest.created_at
        if elapsed < window:
            minutes_left = max(1, math.ceil((window - elapsed) / timedelta(minutes=1)))
            raise PolicyViolation(
                f"Please wait {minutes_left} minute(s) before making another purchase.",
                code=ErrorCode.RATE_LIMIT_EXCEEDED,
                context={"minutes_remaining": minutes_left},
            )

    # Failure handling

    async def _abandon(self, payment: Payment, reason: str) -> None:
        await self.ledger.transition(
            payment.id,
            PaymentStatus.CANCELLED,
            from_statuses=(PaymentStatus.PENDING, PaymentStatus.TRIALING),
            failure_reason=reason,
        )
        await self.db.commit()

    async def _abandon_after_processor_error(
        self, exc: ProcessorError, operation: str, payment: Payment, account: Account, plan: Plan
    ) -> None:
        logger.error(
            "stripe_call_failed",
            operation=operation,
            account_id=str(account.id),
            plan=plan.slug,
            amount=payment.amount,
            payment_id=str(payment.id),
            error_code=exc.code,
            transient=isinstance(exc, ProcessorTransientError),
            error=exc.message,
        )
        await self._abandon(payment, f"{operation}: {exc.message}")

    async def _record_processor_object(
        self,
        payment: Payment,
        account: Account,
        operation: str,
        orphan: Optional[tuple[str, str]],
        expected: Optional[int],
        reported: Optional[int],
        **references: Optional[str],
    ) -> None:
        """Check the charged amount, then point the ledger row at the Stripe object."""
        if expected is not None and reported is not None and not amounts_agree(
            expected, reported, settings.amount_tolerance_percent
        ):
            amount_mismatch_total.labels(operation=operation).inc()
            logger.error(
                "amount_mismatch",
                operation=operation,
                payment_id=str(payment.id),
                account_id=str(account.id),
                expected=expected,
                reported=reported,
            )
            if orphan:
                await self._cancel_orphan(*orphan)
            await self._abandon(payment, f"amount_mismatch: expected {expected}, got {reported}")
            raise AmountMismatch(
                f"Stripe reported {reported} but {expected} was expected",
                context={"expected": expected, "reported": reported, "operation": operation},
            )

        payment_id = payment.id
        try:
            await self.ledger.attach_references(payment, **references)
            await self.db.commit()
        except SQLAlchemyError as exc:
            await self.db.rollback()
            logger.error("ledger_attach_failed", payment_id=str(payment_id), operation=operation, error=str(exc))
            if orphan:
                await self._cancel_orphan(*orphan)
            raise

    async def _cancel_orphan(self, object_type: str, object_id: str, superseded: bool = False) -> None:
        """Best-effort cancel of a Stripe object nothing local will track."""
        cancel = {
            "payment_intent": self.processor.cancel_payment_intent,
            "subscription": self.processor.cancel_subscription,
            "checkout_session": self.processor.expire_checkout_session,
        }[object_type]
        try:
            await cancel(object_id)
            cancelled = True
        except ProcessorError as exc:
            cancelled = False
            logger.error("stripe_object_cancel_failed", object_type=object_type, object_id=object_id, error=exc.message)

        if not superseded:
            orphaned_stripe_objects_total.labels(object_type=object_type, cancelled=str(cancelled).lower()).inc()
        logger.info("stripe_object_cancelled", object_type=object_type, object_id=object_id, cancelled=cancelled)
