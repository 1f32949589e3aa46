"""Stripe payment gateway adapter."""
import asyncio
import json
from typing import Any, Callable
from uuid import uuid4

import stripe
import structlog

from edubilling.config import settings
from edubilling.errors import ProcessorError, ProcessorFatalError, ProcessorTransientError, SignatureInvalid
from edubilling.utils.retry import RetryPolicy, linear_backoff

logger = structlog.get_logger(__name__)


def translate_stripe_error(exc: stripe.StripeError, operation: str) -> ProcessorError:
    """
    Map a Stripe exception onto the processor error classes.

    Connection failures and 5xx responses are transient; everything else
    (card declines, invalid requests, auth failures, 429) is fatal.
    """
    http_status = getattr(exc, "http_status", None)
    context = {
        "operation": operation,
        "stripe_code": getattr(exc, "code", None),
        "http_status": http_status,
    }
    message = getattr(exc, "user_message", None) or str(exc) or "Stripe request failed"

    if isinstance(exc, (stripe.APIConnectionError, stripe.APIError)) or (http_status or 0) >= 500:
        return ProcessorTransientError(message, context=context)
    return ProcessorFatalError(message, context=context)


def _price_item(product_id: str, unit_amount: int, quantity: int, currency: str, recurring: bool) -> dict[str, Any]:
    price_data: dict[str, Any] = {
        "currency": currency,
        "product": product_id,
        "unit_amount": unit_amount,
    }
    if recurring:
        price_data["recurring"] = {"interval": "month"}
    return {"price_data": price_data, "quantity": quantity}


def _subscription_items(subscription: Any) -> list[dict[str, Any]]:
    items = []
    for item in subscription["items"]["data"]:
        price = item["price"]
        items.append(
            {
                "id": item["id"],
                "price_id": price["id"],
                "product_id": price["product"] if isinstance(price["product"], str) else price["product"]["id"],
                "unit_amount": price["unit_amount"] or 0,
                "quantity": item.get("quantity") or 1,
                "current_period_start": item.get("current_period_start"),
                "current_period_end": item.get("current_period_end"),
            }
        )
    return items


def _invoice_client_secret(invoice: Any) -> str | None:
    if not invoice or isinstance(invoice, str):
        return None
    payment_intent = invoice.get("payment_intent")
    if payment_intent and not isinstance(payment_intent, str):
        return payment_intent.get("client_secret")
    confirmation = invoice.get("confirmation_secret")
    if confirmation:
        return confirmation.get("client_secret")
    return None


class StripeAdapter:
    """
    Adapter for Stripe payment gateway integration.

    Every call runs the blocking Stripe client in a worker thread under a
    caller-level timeout and the shared retry policy. Create calls carry one
    idempotency key across all retry attempts so a retried request never
    creates a second object in Stripe.
    """

    def __init__(self, retry_policy: RetryPolicy | None = None, timeout: float | None = None):
        """Initialize Stripe adapter with API key and call policy."""
        stripe.api_key = settings.stripe_secret_key
        stripe.api_version = settings.stripe_api_version
        stripe.max_network_retries = 0
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=settings.stripe_max_attempts,
            backoff=linear_backoff(settings.stripe_backoff_seconds),
        )
        self.timeout = timeout or settings.stripe_timeout_seconds

    async def _call(self, operation: str, fn: Callable[..., Any], *args: Any, idempotent: bool = False, **params: Any) -> Any:
        if idempotent:
            params["idempotency_key"] = f"{operation}-{uuid4()}"

        async def attempt() -> Any:
            try:
                return await asyncio.wait_for(asyncio.to_thread(fn, *args, **params), timeout=self.timeout)
            except asyncio.TimeoutError as exc:
                raise ProcessorTransientError(
                    f"Stripe {operation} timed out after {self.timeout}s",
                    context={"operation": operation},
                ) from exc
            except stripe.StripeError as exc:
                raise translate_stripe_error(exc, operation) from exc

        return await self.retry_policy.run(attempt, name=f"stripe.{operation}")

    # Customers

    async def create_customer(self, email: str, name: str, metadata: dict[str, Any] | None = None) -> str:
        """
        Create a Stripe customer.

        Args:
            email: Customer email
            name: Customer name
            metadata: Additional metadata

        Returns:
            Stripe customer ID
        """
        customer = await self._call(
            "create_customer",
            stripe.Customer.create,
            idempotent=True,
            email=email,
            name=name,
            metadata=metadata or {},
        )
        return customer.id

    async def create_balance_transaction(self, customer_id: str, amount: int, description: str) -> str:
        """
        Adjust the customer's invoice balance. Negative amounts are credit.

        Returns:
            Balance transaction ID
        """
        transaction = await self._call(
            "create_balance_transaction",
            stripe.Customer.create_balance_transaction,
            customer_id,
            idempotent=True,
            amount=amount,
            currency=settings.currency,
            description=description,
        )
        return transaction.id

    # Payment intents

    async def create_payment_intent(
        self,
        amount: int,
        currency: str,
        customer_id: str,
        metadata: dict[str, Any] | None = None,
        payment_method_id: str | None = None,
        description: str | None = None,
    ) -> dict[str, Any]:
        """
        Create a payment intent confirmed client-side.

        Args:
            amount: Amount in cents
            currency: ISO currency code
            customer_id: Stripe customer ID
            metadata: Additional metadata
            payment_method_id: Saved payment method to attach, if any
            description: Statement description

        Returns:
            Payment intent details
        """
        params: dict[str, Any] = {
            "amount": amount,
            "currency": currency.lower(),
            "customer": customer_id,
            "metadata": metadata or {},
            "automatic_payment_methods": {"enabled": True},
            "setup_future_usage": "off_session",
        }
        if payment_method_id:
            params["payment_method"] = payment_method_id
        if description:
            params["description"] = description

        payment_intent = await self._call("create_payment_intent", stripe.PaymentIntent.create, idempotent=True, **params)
        return {
            "id": payment_intent.id,
            "status": payment_intent.status,
            "amount": payment_intent.amount,
            "currency": payment_intent.currency,
            "client_secret": payment_intent.client_secret,
        }

    async def cancel_payment_intent(self, payment_intent_id: str) -> None:
        """Cancel a payment intent that will never be confirmed."""
        await self._call("cancel_payment_intent", stripe.PaymentIntent.cancel, payment_intent_id)

    # Subscriptions

    async def create_subscription(
        self,
        customer_id: str,
        items: list[dict[str, Any]],
        metadata: dict[str, Any] | None = None,
        trial_days: int | None = None,
        trial_end: str | None = None,
        payment_method_id: str | None = None,
    ) -> dict[str, Any]:
        """
        Create a monthly subscription with one line item per priced product.

        Args:
            customer_id: Stripe customer ID
            items: Line items as ``{"product_id", "unit_amount", "quantity"}``
            metadata: Additional metadata
            trial_days: Trial length, collected with a setup intent
            trial_end: ``"now"`` to end an existing trial immediately
            payment_method_id: Default payment method for the subscription

        Returns:
            Subscription details with the client secret to confirm
        """
        params: dict[str, Any] = {
            "customer": customer_id,
            "items": [
                _price_item(i["product_id"], i["unit_amount"], i["quantity"], settings.currency, recurring=True)
                for i in items
            ],
            "metadata": metadata or {},
            "payment_behavior": "default_incomplete",
            "payment_settings": {"save_default_payment_method": "on_subscription"},
            "expand": ["latest_invoice.payment_intent", "pending_setup_intent"],
        }
        if trial_days:
            params["trial_period_days"] = trial_days
        if trial_end:
            params["trial_end"] = trial_end
        if payment_method_id:
            params["default_payment_method"] = payment_method_id

        subscription = await self._call("create_subscription", stripe.Subscription.create, idempotent=True, **params)

        setup_intent = subscription.get("pending_setup_intent")
        if setup_intent and not isinstance(setup_intent, str):
            client_secret, intent_type = setup_intent.get("client_secret"), "setup"
        else:
            client_secret, intent_type = _invoice_client_secret(subscription.get("latest_invoice")), "payment"

        items_out = _subscription_items(subscription)
        latest_invoice = subscription.get("latest_invoice")
        payment_intent = latest_invoice.get("payment_intent") if latest_invoice and not isinstance(latest_invoice, str) else None
        return {
            "id": subscription.id,
            "status": subscription.status,
            "client_secret": client_secret,
            "intent_type": intent_type,
            "amount": sum(i["unit_amount"] * i["quantity"] for i in items_out),
            "payment_intent_id": payment_intent.get("id") if payment_intent and not isinstance(payment_intent, str) else payment_intent,
            "items": items_out,
        }

    async def retrieve_subscription(self, subscription_id: str) -> dict[str, Any]:
        """
        Retrieve a subscription with its items.

        Returns:
            Subscription status, period bounds and items
        """
        subscription = await self._call("retrieve_subscription", stripe.Subscription.retrieve, subscription_id)
        items = _subscription_items(subscription)
        period_start = subscription.get("current_period_start") or (items[0]["current_period_start"] if items else None)
        period_end = subscription.get("current_period_end") or (items[0]["current_period_end"] if items else None)
        return {
            "id": subscription.id,
            "status": subscription.status,
            "customer": subscription.get("customer"),
            "current_period_start": period_start,
            "current_period_end": period_end,
            "cancel_at_period_end": bool(subscription.get("cancel_at_period_end")),
            "metadata": dict(subscription.get("metadata") or {}),
            "items": items,
        }

    async def replace_subscription_items(
        self,
        subscription_id: str,
        current_items: list[dict[str, Any]],
        new_items: list[dict[str, Any]],
        metadata: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """
        Swap all items on a subscription and invoice the proration now.

        Args:
            subscription_id: Stripe subscription ID
            current_items: Items returned by ``retrieve_subscription``
            new_items: Items as ``{"product_id", "unit_amount", "quantity"}``
            metadata: Metadata merged onto the subscription

        Returns:
            Subscription details with the proration invoice amount and client secret
        """
        items: list[dict[str, Any]] = [{"id": item["id"], "deleted": True} for item in current_items]
        items.extend(
            _price_item(i["product_id"], i["unit_amount"], i["quantity"], settings.currency, recurring=True)
            for i in new_items
        )
        subscription = await self._call(
            "update_subscription",
            stripe.Subscription.modify,
            subscription_id,
            idempotent=True,
            items=items,
            metadata=metadata or {},
            proration_behavior="always_invoice",
            payment_behavior="default_incomplete",
            expand=["latest_invoice.payment_intent"],
        )
        latest_invoice = subscription.get("latest_invoice")
        payment_intent = latest_invoice.get("payment_intent") if latest_invoice else None
        return {
            "id": subscription.id,
            "status": subscription.status,
            "amount_due": latest_invoice.get("amount_due", 0) if latest_invoice else 0,
            "client_secret": _invoice_client_secret(latest_invoice),
            "payment_intent_id": payment_intent.get("id") if payment_intent and not isinstance(payment_intent, str) else payment_intent,
            "items": _subscription_items(subscription),
        }

    async def set_cancel_at_period_end(self, subscription_id: str, metadata: dict[str, Any] | None = None) -> None:
        """Let a subscription run out at the end of the paid period."""
        await self._call(
            "cancel_at_period_end",
            stripe.Subscription.modify,
            subscription_id,
            cancel_at_period_end=True,
            metadata=metadata or {},
        )

    async def cancel_subscription(self, subscription_id: str) -> None:
        """Cancel a subscription immediately."""
        await self._call("cancel_subscription", stripe.Subscription.cancel, subscription_id)

    # Checkout and billing portal

    async def create_checkout_session(
        self,
        customer_id: str,
        mode: str,
        items: list[dict[str, Any]],
        metadata: dict[str, Any],
        success_url: str,
        cancel_url: str,
    ) -> dict[str, Any]:
        """
        Create a hosted Checkout session.

        Args:
            customer_id: Stripe customer ID
            mode: ``"payment"`` or ``"subscription"``
            items: Line items as ``{"product_id", "unit_amount", "quantity"}``
            metadata: Metadata copied onto the session and the resulting object
            success_url: Redirect after payment
            cancel_url: Redirect on cancel

        Returns:
            Session id, URL and total
        """
        recurring = mode == "subscription"
        params: dict[str, Any] = {
            "customer": customer_id,
            "mode": mode,
            "line_items": [
                _price_item(i["product_id"], i["unit_amount"], i["quantity"], settings.currency, recurring=recurring)
                for i in items
            ],
            "metadata": metadata,
            "success_url": success_url,
            "cancel_url": cancel_url,
        }
        if recurring:
            params["subscription_data"] = {"metadata": metadata}
        else:
            params["payment_intent_data"] = {"metadata": metadata}

        session = await self._call("create_checkout_session", stripe.checkout.Session.create, idempotent=True, **params)
        return {
            "id": session.id,
            "url": session.url,
            "amount_total": session.amount_total,
            "currency": session.currency,
        }

    async def expire_checkout_session(self, session_id: str) -> None:
        """Expire an open Checkout session."""
        await self._call("expire_checkout_session", stripe.checkout.Session.expire, session_id)

    async def create_portal_session(self, customer_id: str, return_url: str) -> str:
        """
        Create a billing portal session.

        Returns:
            Portal URL
        """
        session = await self._call(
            "create_portal_session",
            stripe.billing_portal.Session.create,
            customer=customer_id,
            return_url=return_url,
        )
        return session.url

    # Payment methods

    async def list_payment_methods(self, customer_id: str) -> list[dict[str, Any]]:
        """
        List saved cards for a customer, flagging the default one.

        Returns:
            Card summaries
        """
        customer = await self._call("retrieve_customer", stripe.Customer.retrieve, customer_id)
        invoice_settings = customer.get("invoice_settings") or {}
        default_id = invoice_settings.get("default_payment_method")
        if default_id and not isinstance(default_id, str):
            default_id = default_id.get("id")

        methods = await self._call("list_payment_methods", stripe.PaymentMethod.list, customer=customer_id, type="card")
        return [
            {
                "id": pm.id,
                "brand": pm.card.brand if pm.card else None,
                "last4": pm.card.last4 if pm.card else None,
                "exp_month": pm.card.exp_month if pm.card else None,
                "exp_year": pm.card.exp_year if pm.card else None,
                "is_default": pm.id == default_id,
            }
            for pm in methods.data
        ]

    async def create_setup_intent(self, customer_id: str) -> dict[str, Any]:
        """
        Create a setup intent to save a card for later.

        Returns:
            Setup intent id and client secret
        """
        setup_intent = await self._call(
            "create_setup_intent",
            stripe.SetupIntent.create,
            idempotent=True,
            customer=customer_id,
            payment_method_types=["card"],
            usage="off_session",
        )
        return {"id": setup_intent.id, "client_secret": setup_intent.client_secret}

    async def retrieve_payment_method(self, payment_method_id: str) -> dict[str, Any]:
        """Retrieve a payment method and the customer it is attached to."""
        pm = await self._call("retrieve_payment_method", stripe.PaymentMethod.retrieve, payment_method_id)
        return {"id": pm.id, "customer": pm.get("customer")}

    async def set_default_payment_method(self, customer_id: str, payment_method_id: str) -> None:
        """Use a saved card for future invoices."""
        await self._call(
            "set_default_payment_method",
            stripe.Customer.modify,
            customer_id,
            invoice_settings={"default_payment_method": payment_method_id},
        )

    async def detach_payment_method(self, payment_method_id: str) -> None:
        """
        Detach payment method from customer.

        Args:
            payment_method_id: Stripe payment method ID
        """
        await self._call("detach_payment_method", stripe.PaymentMethod.detach, payment_method_id)

    # Refunds

    async def create_refund(self, payment_intent_id: str, amount: int, metadata: dict[str, Any] | None = None) -> dict[str, Any]:
        """
        Refund (part of) a payment intent.

        Returns:
            Refund id, status and amount
        """
        refund = await self._call(
            "create_refund",
            stripe.Refund.create,
            idempotent=True,
            payment_intent=payment_intent_id,
            amount=amount,
            metadata=metadata or {},
        )
        return {"id": refund.id, "status": refund.status, "amount": refund.amount}

    # Products

    async def find_or_create_product(self, name: str, description: str) -> str:
        """
        Find an active product by exact name, creating it when missing.

        Returns:
            Stripe product ID
        """
        escaped = name.replace('"', '\\"')
        found = await self._call(
            "search_products",
            stripe.Product.search,
            query=f'active:"true" AND name:"{escaped}"',
            limit=1,
        )
        if found.data:
            return found.data[0].id

        product = await self._call(
            "create_product",
            stripe.Product.create,
            idempotent=True,
            name=name,
            description=description,
        )
        logger.info("stripe_product_created", product_id=product.id, name=name)
        return product.id

    # Webhooks

    async def construct_webhook_event(self, payload: bytes, signature: str) -> dict[str, Any]:
        """
        Construct and verify webhook event.

        Args:
            payload: Raw webhook body
            signature: Value of the Stripe-Signature header

        Returns:
            Verified event as a plain dict

        Raises:
            SignatureInvalid: If the payload or the signature is invalid
        """
        try:
            stripe.Webhook.construct_event(payload, signature, settings.stripe_webhook_secret)
        except ValueError as e:
            raise SignatureInvalid(f"Invalid payload: {e}") from e
        except stripe.SignatureVerificationError as e:
            raise SignatureInvalid(f"Invalid signature: {e}") from e
        return json.loads(payload)
