"""Stripe webhook endpoint: verification at the edge, processing in the dispatcher."""

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from sunroad_billing.core.config import get_settings
from sunroad_billing.core.exceptions import InvalidWebhookError
from sunroad_billing.db.base import get_session_factory
from sunroad_billing.services.event_verifier import verify_event
from sunroad_billing.services.webhook_dispatcher import (
    StripeWebhookDispatcher,
    WebhookOutcome,
    build_dispatcher,
)

logger = structlog.get_logger(__name__)

router = APIRouter()


def get_dispatcher() -> StripeWebhookDispatcher:
    return build_dispatcher(get_settings(), get_session_factory())


@router.post("/webhooks/stripe")
async def stripe_webhook(request: Request, dispatcher: StripeWebhookDispatcher = Depends(get_dispatcher)):
    """Handle Stripe webhook events with signature verification."""
    settings = get_settings()
    if not settings.stripe_webhook_secret:
        logger.error("stripe_webhook_secret_missing")
        raise HTTPException(status_code=503, detail="Stripe webhook endpoint is not configured")

    # Signatures cover the literal bytes; never verify a re-serialized body.
    body = await request.body()
    sig_header = request.headers.get("stripe-signature")

    if not sig_header:
        raise HTTPException(status_code=400, detail="Missing stripe-signature header")

    try:
        event = verify_event(
            body,
            sig_header,
            settings.stripe_webhook_secret,
            tolerance=settings.stripe_webhook_tolerance_seconds,
        )
    except InvalidWebhookError as e:
        logger.warning("stripe_webhook_rejected", reason=str(e))
        raise HTTPException(status_code=400, detail=str(e))

    outcome = await dispatcher.dispatch(event)

    if outcome is WebhookOutcome.FAILED:
        return JSONResponse(status_code=500, content={"detail": "Webhook processing failed"})
    if outcome is WebhookOutcome.DUPLICATE:
        return {"status": "duplicate"}
    if outcome is WebhookOutcome.LIVEMODE_MISMATCH:
        return {"status": "ignored", "reason": "livemode_mismatch"}
    return {"status": "ok"}
