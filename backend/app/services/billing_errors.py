"""
Billing Webhook Exceptions
==========================

Exception types raised by the Stripe webhook pipeline.

WHY THIS FILE EXISTS
--------------------
Webhook failures split into two families that the HTTP boundary must treat
differently:

    1. Rejections (WebhookRejected)
       - Bad or missing signature
       - Verified body that is not a usable event
       -> 400. The provider would retry with identical bytes and fail again.

    2. Retryable failures (RetryableWebhookError)
       - Store unavailable / transaction aborted
       - Provider API unreachable while fetching a subscription
       - Unexpected processing bug
       -> 5xx. No settled event row is left behind, so the provider's own
          retry is admitted and re-applies the event.

Duplicates and unmapped provider statuses are NOT errors and have no class
here: a duplicate is acknowledged with 200, an unmapped status resolves to
the `unknown` canonical state.

RELATED FILES
-------------
- app/services/stripe_webhook_service.py: Raises these exceptions
- app/routers/stripe_webhooks.py: Maps them to HTTP status codes
"""

from typing import Optional


class BillingWebhookError(Exception):
    """
    Base exception for webhook pipeline errors.

    PARAMETERS:
        message: Human-readable error description
        event_id: Stripe event id when it is already known
    """

    def __init__(self, message: str, event_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.event_id = event_id


class WebhookRejected(BillingWebhookError):
    """Terminal rejection. Never retried, never recorded."""


class InvalidSignature(WebhookRejected):
    """Signature header missing, malformed, expired or not matching the body."""


class InvalidPayload(WebhookRejected):
    """Signed body could not be parsed into a Stripe event envelope."""


class RetryableWebhookError(BillingWebhookError):
    """Failure the provider should retry. Surfaced as a 5xx response."""

    status_code = 500


class TransientStoreFailure(RetryableWebhookError):
    """Database error while admitting, reconciling or finalizing an event."""

    status_code = 503


class ProviderFetchFailure(RetryableWebhookError):
    """Stripe API call failed while resolving the subscription for an event."""

    status_code = 502


class WebhookProcessingError(RetryableWebhookError):
    """Unexpected error during event processing."""

    status_code = 500
