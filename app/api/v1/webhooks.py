from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, PlainTextResponse
import json
import stripe
from app.api.v1.deps import get_reconciler
from app.core.config import settings
from app.core.exceptions import BillingConfigurationError
from app.services.subscription_reconciler import SubscriptionReconciler
import logging

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing/webhooks", tags=["webhooks"])


def verify_event(payload: bytes, sig_header: str) -> dict:
    """
    Check the Stripe-Signature header against the raw body and parse it.

    Raises ``stripe.SignatureVerificationError`` or ``ValueError``.
    """
    webhook_secret = settings.STRIPE_WEBHOOK_SECRET
    if webhook_secret:
        if not sig_header:
            raise stripe.SignatureVerificationError("No stripe-signature header value was provided.", sig_header)
        stripe.WebhookSignature.verify_header(
            payload.decode("utf-8"),
            sig_header,
            webhook_secret,
            settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS,
        )
    event = json.loads(payload)
    if not isinstance(event, dict) or "type" not in event:
        raise ValueError("Invalid payload")
    return event


@router.post("/stripe", include_in_schema=False)
async def stripe_webhook(
    request: Request,
    reconciler: SubscriptionReconciler = Depends(get_reconciler),
):
    """
    Handle Stripe webhook events.
    Unknown event types are acknowledged; a failure inside a known handler
    answers 500 so Stripe redelivers.
    """
    if not settings.STRIPE_WEBHOOK_SECRET and not settings.TEST_MODE:
        raise BillingConfigurationError("Webhook secret not configured")

    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")

    try:
        event = verify_event(payload, sig_header)
    except (ValueError, stripe.SignatureVerificationError) as e:
        logger.error(f"Webhook signature verification failed: {e}")
        return PlainTextResponse(f"Webhook Error: {e}", status_code=400)

    try:
        await reconciler.handle_event(event)
    except Exception:
        logger.exception(f"Error processing webhook {event.get('type')} ({event.get('id')})")
        return JSONResponse(status_code=500, content={"error": "Webhook processing failed"})

    return {"received": True}
