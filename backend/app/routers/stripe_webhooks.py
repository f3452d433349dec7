"""Stripe webhook endpoint.

WHAT: Receives Stripe billing events and hands them to StripeWebhookPipeline
WHY: Subscription state (and the user's tier) is driven entirely by Stripe

RESPONSE CODES:
    200: processed, ignored or duplicate (Stripe stops retrying)
    400: bad signature or unusable payload (retrying cannot help)
    500: webhook secret not configured, or unexpected processing error
    502: Stripe API unreachable while fetching the subscription
    503: database unavailable

    Stripe retries every non-2xx for up to three days, so every retryable
    failure leaves the event re-admittable.

REFERENCES:
    - app/services/stripe_webhook_service.py
    - https://docs.stripe.com/webhooks
"""

import asyncio
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from .. import schemas
from ..database import get_db
from ..deps import Settings, get_settings
from ..services.billing_errors import RetryableWebhookError, WebhookRejected
from ..services.stripe_webhook_service import StripeWebhookPipeline

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/stripe",
    tags=["Webhooks"],
)


@router.post(
    "/webhook",
    response_model=schemas.WebhookResponse,
    summary="Stripe webhook handler",
    description="""
    Receives and processes Stripe webhook events.

    Handled events:
        - customer.subscription.created / updated / deleted
        - invoice.payment_succeeded / invoice.payment_failed
        - checkout.session.completed

    Other event types are acknowledged and recorded as ignored.

    Security:
        - Stripe-Signature header verified against STRIPE_WEBHOOK_SECRET
        - Idempotent: each Stripe event id is applied at most once
    """,
)
async def handle_stripe_webhook(
    request: Request,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """Process one Stripe webhook delivery."""
    if settings.STRIPE_WEBHOOK_SECRET is None:
        logger.error("[STRIPE_WEBHOOK] STRIPE_WEBHOOK_SECRET not set, refusing webhook")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook secret not configured",
        )

    # Raw body: the signature covers these exact bytes
    body = await request.body()
    signature = request.headers.get("stripe-signature")

    pipeline = StripeWebhookPipeline(db, settings)
    try:
        outcome = await asyncio.to_thread(pipeline.handle, body, signature)
    except WebhookRejected as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.message)
    except RetryableWebhookError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)

    return schemas.WebhookResponse(
        received=True,
        event_id=outcome.event_id,
        event_type=outcome.event_type,
        outcome=outcome.recorded,
        action=outcome.action,
        duplicate=outcome.duplicate,
    )
