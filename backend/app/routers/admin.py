"""Admin endpoints for webhook operations.

WHAT: Protected endpoints to inspect and replay failed Stripe webhooks, and to
      re-sync a single subscription straight from Stripe
WHY: Stripe gives up after three days of retries; an operator can replay
     stored events once the underlying problem (database, Stripe API) is fixed.
     Events that never arrived leave nothing to replay, so those
     subscriptions are re-read instead.

SECURITY: Protected by the X-Admin-Secret header (ADMIN_SECRET environment variable)
"""

import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from .. import schemas
from ..database import get_db
from ..deps import Settings, get_settings, verify_admin_secret
from ..services.billing_errors import RetryableWebhookError
from ..services.stripe_webhook_service import (
    DEFAULT_FAILED_LIMIT,
    StripeWebhookPipeline,
    list_failed_events,
)

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/admin",
    tags=["Admin"],
)


@router.get(
    "/stripe/failed-webhooks",
    response_model=schemas.FailedWebhookList,
    summary="List failed Stripe webhook events",
    description="""
    Newest failed events first. `limit` is clamped to 1..100.

    Requires X-Admin-Secret header.
    """,
)
def get_failed_webhooks(
    limit: Optional[int] = Query(DEFAULT_FAILED_LIMIT),
    db: Session = Depends(get_db),
    _: bool = Depends(verify_admin_secret),
):
    rows = list_failed_events(db, limit)
    return schemas.FailedWebhookList(
        count=len(rows),
        events=[schemas.FailedWebhookEvent.model_validate(row) for row in rows],
    )


@router.post(
    "/stripe/retry-failed-webhooks",
    response_model=schemas.ReplayResponse,
    summary="Replay failed Stripe webhook events",
    description="""
    Re-runs the stored payload of failed events through the webhook pipeline,
    oldest first. Events that fail again stay failed and are reported.

    Requires X-Admin-Secret header.
    """,
)
async def retry_failed_webhooks(
    limit: int = Query(10),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    _: bool = Depends(verify_admin_secret),
):
    pipeline = StripeWebhookPipeline(db, settings)
    results = await asyncio.to_thread(pipeline.replay_failed, limit)

    succeeded = sum(1 for r in results if r.success)
    logger.info(f"[ADMIN] Webhook replay: {succeeded}/{len(results)} succeeded")

    return schemas.ReplayResponse(
        attempted=len(results),
        succeeded=succeeded,
        failed=len(results) - succeeded,
        results=[
            schemas.ReplayedWebhook(
                event_id=r.event_id,
                event_type=r.event_type,
                success=r.success,
                action=r.action,
                error=r.error,
            )
            for r in results
        ],
    )


@router.post(
    "/stripe/sync-subscription/{subscription_id}",
    response_model=schemas.SubscriptionSyncResponse,
    summary="Re-sync a subscription from Stripe",
    description="""
    Fetches the subscription from the Stripe API and reconciles it into local
    state, for subscriptions whose webhooks were missed. The owning user's
    tier is updated as for a webhook.

    404 when Stripe does not know the subscription or no local user owns it.

    Requires X-Admin-Secret header.
    """,
)
async def sync_subscription(
    subscription_id: str,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    _: bool = Depends(verify_admin_secret),
):
    pipeline = StripeWebhookPipeline(db, settings)
    try:
        result = await asyncio.to_thread(pipeline.sync_subscription, subscription_id)
    except RetryableWebhookError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)

    if result is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No subscription found")

    logger.info(f"[ADMIN] Synced subscription {subscription_id}: {result.status.value}")
    return schemas.SubscriptionSyncResponse(
        subscription_id=result.subscription_id,
        user_id=result.user_id,
        status=result.status,
        cancel_at_period_end=result.cancel_at_period_end,
        action=result.action,
    )
