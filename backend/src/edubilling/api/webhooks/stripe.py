"""Stripe webhook endpoint."""
from typing import Any

import structlog
from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from edubilling.adapters.stripe_adapter import StripeAdapter
from edubilling.api.deps import get_db, get_notifier, get_seat_usage, get_stripe_adapter
from edubilling.errors import SignatureInvalid
from edubilling.integrations.notification_service import NotificationService
from edubilling.services.quota_service import SeatUsageProvider
from edubilling.services.reconciler import WebhookReconciler

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/webhooks/stripe", tags=["webhooks"])


@router.post("")
async def handle_stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    stripe_adapter: StripeAdapter = Depends(get_stripe_adapter),
    notifier: NotificationService = Depends(get_notifier),
    usage: SeatUsageProvider = Depends(get_seat_usage),
) -> Any:
    """
    Handle incoming Stripe webhook events.

    The signature is verified before anything is read from the payload. Every
    verified event is acknowledged with 200, including event types nothing
    here handles; Stripe retries anything else, so a failed handler answers
    500 after its transaction is rolled back.

    Raises:
        SignatureInvalid: Missing or bad signature (rendered as 400)
    """
    body = await request.body()
    signature = request.headers.get("stripe-signature")

    if not signature:
        logger.error("stripe_webhook_missing_signature")
        raise SignatureInvalid("Missing Stripe signature")

    try:
        event = await stripe_adapter.construct_webhook_event(body, signature)
    except SignatureInvalid as e:
        logger.error("stripe_webhook_verification_failed", error=e.message)
        raise

    logger.info("stripe_webhook_received", event_type=event.get("type"), event_id=event.get("id"))

    reconciler = WebhookReconciler(db, notifier, usage)
    try:
        outcome = await reconciler.handle_event(event)
    except Exception as e:
        logger.exception(
            "stripe_webhook_processing_failed",
            event_type=event.get("type"),
            event_id=event.get("id"),
            error=str(e),
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"status": "error", "event_type": event.get("type")},
        )

    return {"status": "success", "event_type": event.get("type"), "outcome": outcome}
