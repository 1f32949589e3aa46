"""In-memory stand-in for the Stripe adapter.

Subclasses the real adapter so webhook signature verification stays real;
every network call is replaced by a recorded, deterministic response.
"""
import itertools
from typing import Any, Optional

from edubilling.adapters.stripe_adapter import StripeAdapter
from edubilling.errors import ProcessorError


class FakeStripeAdapter(StripeAdapter):
    """
    Records calls and answers like Stripe would.

    Attributes:
        calls: (operation, kwargs) for every call, in order
        failures: operation name -> error raised on the next call
        amount_drift: added to every amount Stripe "reports", to simulate mismatches
        subscriptions: subscriptions returned by ``retrieve_subscription``
        payment_methods: payment method id -> owning customer id
        proration_amount_due: invoice amount returned when subscription items are replaced
    """

    def __init__(self) -> None:
        super().__init__()
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.failures: dict[str, ProcessorError] = {}
        self.amount_drift = 0
        self.subscriptions: dict[str, dict[str, Any]] = {}
        self.payment_methods: dict[str, str] = {}
        self.proration_amount_due = 0
        self._ids = itertools.count(1)

    def _record(self, operation: str, **kwargs: Any) -> None:
        self.calls.append((operation, kwargs))
        error = self.failures.pop(operation, None)
        if error is not None:
            raise error

    def _next_id(self, prefix: str) -> str:
        return f"{prefix}_test_{next(self._ids)}"

    def called(self, operation: str) -> list[dict[str, Any]]:
        """Keyword arguments of every call to ``operation``."""
        return [kwargs for name, kwargs in self.calls if name == operation]

    async def create_customer(self, email: str, name: str, metadata: dict[str, Any] | None = None) -> str:
        self._record("create_customer", email=email, name=name, metadata=metadata)
        return self._next_id("cus")

    async def create_balance_transaction(self, customer_id: str, amount: int, description: str) -> str:
        self._record("create_balance_transaction", customer_id=customer_id, amount=amount, description=description)
        return self._next_id("cbtxn")

    async def create_payment_intent(
        self,
        amount: int,
        currency: str,
        customer_id: str,
        metadata: dict[str, Any] | None = None,
        payment_method_id: str | None = None,
        description: str | None = None,
    ) -> dict[str, Any]:
        self._record(
            "create_payment_intent",
            amount=amount,
            currency=currency,
            customer_id=customer_id,
            metadata=metadata,
            payment_method_id=payment_method_id,
            description=description,
        )
        intent_id = self._next_id("pi")
        return {
            "id": intent_id,
            "status": "requires_payment_method",
            "amount": amount + self.amount_drift,
            "currency": currency,
            "client_secret": f"{intent_id}_secret",
        }

    async def cancel_payment_intent(self, payment_intent_id: str) -> None:
        self._record("cancel_payment_intent", payment_intent_id=payment_intent_id)

    async def create_subscription(
        self,
        customer_id: str,
        items: list[dict[str, Any]],
        metadata: dict[str, Any] | None = None,
        trial_days: int | None = None,
        trial_end: str | None = None,
        payment_method_id: str | None = None,
    ) -> dict[str, Any]:
        self._record(
            "create_subscription",
            customer_id=customer_id,
            items=items,
            metadata=metadata,
            trial_days=trial_days,
            trial_end=trial_end,
            payment_method_id=payment_method_id,
        )
        subscription_id = self._next_id("sub")
        trialing = bool(trial_days)
        payment_intent_id = None if trialing else self._next_id("pi")
        return {
            "id": subscription_id,
            "status": "trialing" if trialing else "incomplete",
            "client_secret": f"{subscription_id}_seti_secret" if trialing else f"{payment_intent_id}_secret",
            "intent_type": "setup" if trialing else "payment",
            "amount": sum(i["unit_amount"] * i["quantity"] for i in items) + self.amount_drift,
            "payment_intent_id": payment_intent_id,
            "items": [
                {"id": self._next_id("si"), "price_id": self._next_id("price"), **item} for item in items
            ],
        }

    async def retrieve_subscription(self, subscription_id: str) -> dict[str, Any]:
        self._record("retrieve_subscription", subscription_id=subscription_id)
        return self.subscriptions[subscription_id]

    async def replace_subscription_items(
        self,
        subscription_id: str,
        current_items: list[dict[str, Any]],
        new_items: list[dict[str, Any]],
        metadata: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        self._record(
            "replace_subscription_items",
            subscription_id=subscription_id,
            current_items=current_items,
            new_items=new_items,
            metadata=metadata,
        )
        payment_intent_id = self._next_id("pi") if self.proration_amount_due else None
        return {
            "id": subscription_id,
            "status": "active",
            "amount_due": self.proration_amount_due,
            "client_secret": f"{payment_intent_id}_secret" if payment_intent_id else None,
            "payment_intent_id": payment_intent_id,
            "items": new_items,
        }

    async def set_cancel_at_period_end(self, subscription_id: str, metadata: dict[str, Any] | None = None) -> None:
        self._record("set_cancel_at_period_end", subscription_id=subscription_id, metadata=metadata)

    async def cancel_subscription(self, subscription_id: str) -> None:
        self._record("cancel_subscription", subscription_id=subscription_id)

    async def create_checkout_session(
        self,
        customer_id: str,
        mode: str,
        items: list[dict[str, Any]],
        metadata: dict[str, Any],
        success_url: str,
        cancel_url: str,
    ) -> dict[str, Any]:
        self._record(
            "create_checkout_session",
            customer_id=customer_id,
            mode=mode,
            items=items,
            metadata=metadata,
            success_url=success_url,
            cancel_url=cancel_url,
        )
        session_id = self._next_id("cs")
        return {
            "id": session_id,
            "url": f"https://checkout.stripe.test/{session_id}",
            "amount_total": sum(i["unit_amount"] * i["quantity"] for i in items) + self.amount_drift,
            "currency": "usd",
        }

    async def expire_checkout_session(self, session_id: str) -> None:
        self._record("expire_checkout_session", session_id=session_id)

    async def create_portal_session(self, customer_id: str, return_url: str) -> str:
        self._record("create_portal_session", customer_id=customer_id, return_url=return_url)
        return f"https://billing.stripe.test/{customer_id}"

    async def list_payment_methods(self, customer_id: str) -> list[dict[str, Any]]:
        self._record("list_payment_methods", customer_id=customer_id)
        return [
            {"id": pm_id, "brand": "visa", "last4": "4242", "exp_month": 12, "exp_year": 2030, "is_default": False}
            for pm_id, owner in self.payment_methods.items()
            if owner == customer_id
        ]

    async def create_setup_intent(self, customer_id: str) -> dict[str, Any]:
        self._record("create_setup_intent", customer_id=customer_id)
        setup_intent_id = self._next_id("seti")
        return {"id": setup_intent_id, "client_secret": f"{setup_intent_id}_secret"}

    async def retrieve_payment_method(self, payment_method_id: str) -> dict[str, Any]:
        self._record("retrieve_payment_method", payment_method_id=payment_method_id)
        return {"id": payment_method_id, "customer": self.payment_methods.get(payment_method_id)}

    async def set_default_payment_method(self, customer_id: str, payment_method_id: str) -> None:
        self._record("set_default_payment_method", customer_id=customer_id, payment_method_id=payment_method_id)

    async def detach_payment_method(self, payment_method_id: str) -> None:
        self._record("detach_payment_method", payment_method_id=payment_method_id)
        self.payment_methods.pop(payment_method_id, None)

    async def create_refund(self, payment_intent_id: str, amount: int, metadata: dict[str, Any] | None = None) -> dict[str, Any]:
        self._record("create_refund", payment_intent_id=payment_intent_id, amount=amount, metadata=metadata)
        return {"id": self._next_id("re"), "status": "pending", "amount": amount}

    async def find_or_create_product(self, name: str, description: str) -> str:
        self._record("find_or_create_product", name=name, description=description)
        return f"prod_{name.lower().replace(' ', '_')}"


class RecordingNotifier:
    """Notification double that keeps what would have been sent."""

    def __init__(self) -> None:
        self.payments: list[dict[str, Any]] = []
        self.refund_alerts: list[dict[str, Any]] = []

    async def send_payment_notification(
        self,
        to: str,
        succeeded: bool,
        plan_name: str,
        amount: int,
        failure_reason: Optional[str] = None,
    ) -> dict:
        self.payments.append(
            {"to": to, "succeeded": succeeded, "plan_name": plan_name, "amount": amount, "failure_reason": failure_reason}
        )
        return {"status": "queued", "to": to}

    async def send_refund_alert(
        self,
        account_email: str,
        amount: int,
        reason: Optional[str],
        payment_id: str,
        status: str = "requested",
    ) -> bool:
        self.refund_alerts.append(
            {"account_email": account_email, "amount": amount, "reason": reason, "payment_id": payment_id, "status": status}
        )
        return True
