"""Payment method service: Stripe customer, saved cards, billing portal and history."""
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from edubilling.adapters.stripe_adapter import StripeAdapter
from edubilling.config import settings
from edubilling.errors import NotFound
from edubilling.models.account import Account
from edubilling.models.payment import Payment
from edubilling.schemas.error import ErrorCode
from edubilling.services.ledger_service import LedgerService

logger = structlog.get_logger(__name__)


class PaymentMethodService:
    """Service layer for payment method operations."""

    def __init__(self, db: AsyncSession, stripe_adapter: StripeAdapter):
        """Initialize payment method service."""
        self.db = db
        self.stripe = stripe_adapter

    async def ensure_customer(self, account: Account) -> str:
        """
        Get the account's Stripe customer, creating it on first use.

        Args:
            account: Account to bill

        Returns:
            Stripe customer ID
        """
        if account.stripe_customer_id:
            return account.stripe_customer_id

        customer_id = await self.stripe.create_customer(
            email=account.owner_email,
            name=account.owner_name or account.owner_email,
            metadata={"account_id": str(account.id)},
        )
        account.stripe_customer_id = customer_id
        await self.db.commit()

        logger.info("stripe_customer_created", account_id=str(account.id), customer_id=customer_id)
        return customer_id

    def _require_customer(self, account: Account) -> str:
        if not account.stripe_customer_id:
            raise NotFound(
                "No saved payment details for this account",
                code=ErrorCode.PAYMENT_METHOD_NOT_FOUND,
            )
        return account.stripe_customer_id

    async def list_payment_methods(self, account: Account) -> list[dict[str, Any]]:
        """
        List saved cards of an account.

        Returns:
            Card summaries, empty when the account has never paid
        """
        if not account.stripe_customer_id:
            return []
        return await self.stripe.list_payment_methods(account.stripe_customer_id)

    async def create_setup_intent(self, account: Account) -> dict[str, Any]:
        """Start saving a new card for later charges."""
        customer_id = await self.ensure_customer(account)
        return await self.stripe.create_setup_intent(customer_id)

    async def _owned_payment_method(self, account: Account, payment_method_id: str) -> dict[str, Any]:
        customer_id = self._require_customer(account)
        payment_method = await self.stripe.retrieve_payment_method(payment_method_id)
        if payment_method.get("customer") != customer_id:
            raise NotFound(
                f"Payment method {payment_method_id} not found",
                code=ErrorCode.PAYMENT_METHOD_NOT_FOUND,
            )
        return payment_method

    async def set_default_payment_method(self, account: Account, payment_method_id: str) -> None:
        """
        Use a saved card for future invoices.

        Raises:
            NotFound: The card is not attached to this account's customer
        """
        await self._owned_payment_method(account, payment_method_id)
        await self.stripe.set_default_payment_method(account.stripe_customer_id, payment_method_id)
        logger.info("default_payment_method_set", account_id=str(account.id), payment_method_id=payment_method_id)

    async def detach_payment_method(self, account: Account, payment_method_id: str) -> None:
        """
        Remove a saved card.

        Raises:
            NotFound: The card is not attached to this account's customer
        """
        await self._owned_payment_method(account, payment_method_id)
        await self.stripe.detach_payment_method(payment_method_id)
        logger.info("payment_method_detached", account_id=str(account.id), payment_method_id=payment_method_id)

    async def create_portal_session(self, account: Account) -> str:
        """
        Open the Stripe billing portal.

        Returns:
            Portal URL
        """
        customer_id = self._require_customer(account)
        return await self.stripe.create_portal_session(customer_id, return_url=f"{settings.frontend_url}/billing")

    async def payment_history(self, account: Account, limit: int = 50) -> list[Payment]:
        """Ledger rows of an account, newest first."""
        return await LedgerService(self.db).history(account.id, limit=limit)
