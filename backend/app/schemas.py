"""Pydantic schemas for request/response payloads."""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .models import SubscriptionStatusEnum, WebhookOutcomeEnum


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(
        description="Service status",
        examples=["ok"],
    )

    model_config = {
        "json_schema_extra": {
            "example": {
                "status": "ok"
            }
        }
    }


# =============================================================================
# STRIPE WEBHOOK SCHEMAS
# =============================================================================


class WebhookResponse(BaseModel):
    """Standard webhook response.

    WHAT: Acknowledges webhook receipt
    WHY: Stripe only needs a 2xx; the body makes duplicates and ignored
         events visible in the Stripe dashboard delivery log
    """

    received: bool = Field(default=True, description="Webhook received successfully")
    event_id: Optional[str] = Field(None, description="Stripe event id")
    event_type: Optional[str] = Field(None, description="Event type processed")
    outcome: Optional[WebhookOutcomeEnum] = Field(None, description="Ledger outcome (processed, ignored)")
    action: Optional[str] = Field(None, description="Action taken (created, updated, stale, duplicate, ...)")
    duplicate: bool = Field(default=False, description="Event was already settled or in flight")


class FailedWebhookEvent(BaseModel):
    """A webhook event whose last processing attempt failed."""

    stripe_event_id: str
    event_type: str
    attempts: int
    processing_error: Optional[str] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class FailedWebhookList(BaseModel):
    count: int = Field(description="Number of events returned")
    events: List[FailedWebhookEvent] = Field(default_factory=list)


class ReplayedWebhook(BaseModel):
    event_id: str
    event_type: str
    success: bool
    action: Optional[str] = None
    error: Optional[str] = None


class ReplayResponse(BaseModel):
    """Result of replaying failed webhook events.

    WHAT: Per-event replay results plus totals
    WHY: One failing replay does not stop the batch, so callers need the
         breakdown to see which events are still failing
    """

    attempted: int
    succeeded: int
    failed: int
    results: List[ReplayedWebhook] = Field(default_factory=list)


class SubscriptionSyncResponse(BaseModel):
    """Result of re-syncing one subscription from Stripe."""

    success: bool = True
    subscription_id: str
    user_id: int
    status: SubscriptionStatusEnum
    cancel_at_period_end: bool
    action: str = Field(description="Reconcile result (created, updated, stale)")
