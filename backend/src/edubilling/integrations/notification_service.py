"""Notification integration for billing emails and operator alerts."""
from typing import Any

import httpx
import structlog

from edubilling.config import settings

logger = structlog.get_logger(__name__)


class NotificationService:
    """
    Outbound notifications.

    E-mail delivery belongs to the mail service; this class hands it a
    subject, body and template and records what was sent. Refund alerts are
    posted to the operators' Slack channel when a webhook URL is configured.
    Sending is fire-and-forget: failures are logged, never raised.
    """

    def __init__(self, slack_webhook_url: str | None = None, http_client: httpx.AsyncClient | None = None):
        """
        Initialize notification service.

        Args:
            slack_webhook_url: Slack incoming webhook for refund alerts
            http_client: Shared HTTP client (one is created per call if omitted)
        """
        self.slack_webhook_url = slack_webhook_url if slack_webhook_url is not None else settings.slack_refund_webhook_url
        self.http_client = http_client

    async def send_email(
        self,
        to: str,
        subject: str,
        body: str,
        template: str | None = None,
        template_vars: dict[str, Any] | None = None,
    ) -> dict:
        """
        Send email notification.

        Args:
            to: Recipient email address
            subject: Email subject
            body: Email body (plain text)
            template: Optional template name
            template_vars: Optional template variables

        Returns:
            Dictionary with send status
        """
        logger.info(
            "email_notification",
            to=to,
            subject=subject,
            template=template,
            template_vars=template_vars or {},
        )
        return {"status": "queued", "to": to, "subject": subject, "template": template}

    async def send_payment_notification(
        self,
        to: str,
        succeeded: bool,
        plan_name: str,
        amount: int,
        failure_reason: str | None = None,
    ) -> dict:
        """
        Tell the account owner how a payment went.

        Args:
            to: Owner email address
            succeeded: Whether the payment succeeded
            plan_name: Plan that was bought
            amount: Amount in cents
            failure_reason: Stripe failure message for failed payments

        Returns:
            Send status dictionary
        """
        if succeeded:
            subject = f"Payment received for {plan_name}"
            body = f"Thank you! We received your payment of ${amount / 100:.2f} for the {plan_name} plan."
        else:
            subject = f"Payment failed for {plan_name}"
            body = (
                f"Your payment of ${amount / 100:.2f} for the {plan_name} plan could not be processed"
                f"{': ' + failure_reason if failure_reason else '.'}"
                " Please update your payment method and try again."
            )

        return await self.send_email(
            to=to,
            subject=subject,
            body=body,
            template="payment_succeeded" if succeeded else "payment_failed",
            template_vars={"plan_name": plan_name, "amount": amount, "failure_reason": failure_reason},
        )

    async def send_refund_alert(
        self,
        account_email: str,
        amount: int,
        reason: str | None,
        payment_id: str,
        status: str = "requested",
    ) -> bool:
        """
        Alert operators about a refund request or approval.

        Args:
            account_email: Account owner email
            amount: Refund amount in cents
            reason: Reason given by the customer
            payment_id: Ledger payment ID
            status: requested or approved

        Returns:
            True if the alert was delivered
        """
        text = (
            f"Refund {status}: ${amount / 100:.2f} for {account_email} "
            f"(payment {payment_id}). Reason: {reason or 'n/a'}"
        )
        logger.info("refund_alert", status=status, account_email=account_email, amount=amount, payment_id=payment_id)

        if not self.slack_webhook_url:
            return False

        try:
            if self.http_client is not None:
                response = await self.http_client.post(self.slack_webhook_url, json={"text": text})
            else:
                async with httpx.AsyncClient(timeout=settings.notification_timeout_seconds) as client:
                    response = await client.post(self.slack_webhook_url, json={"text": text})
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning("refund_alert_failed", error=str(e), payment_id=payment_id)
            return False
        return True
