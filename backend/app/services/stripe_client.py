"""Stripe REST client for subscription lookups.

WHAT: Fetches the current subscription object from the Stripe API
WHY: Invoice and checkout events only reference the subscription by id; the
     reconciler needs its status and billing period

Only the single read the webhook pipeline needs is implemented. Errors are
raised as ProviderFetchFailure so the webhook is answered with a 5xx and
Stripe redelivers it later.

REFERENCES:
    - https://docs.stripe.com/api/subscriptions/retrieve
"""

import logging
from typing import Optional

import httpx
from pydantic import ValidationError

from ..deps import Settings
from .billing_errors import ProviderFetchFailure
from .stripe_events import StripeSubscriptionObject

logger = logging.getLogger(__name__)


class StripeSubscriptionClient:
    """Minimal synchronous Stripe API client.

    Usage:
        client = StripeSubscriptionClient.from_settings(get_settings())
        subscription = client.fetch_subscription("sub_123")
    """

    def __init__(
        self,
        secret_key: Optional[str],
        api_url: str = "https://api.stripe.com",
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.secret_key = secret_key
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    @classmethod
    def from_settings(cls, settings: Settings) -> "StripeSubscriptionClient":
        secret = settings.STRIPE_SECRET_KEY.get_secret_value() if settings.STRIPE_SECRET_KEY else None
        return cls(
            secret_key=secret,
            api_url=settings.STRIPE_API_URL,
            timeout=settings.STRIPE_API_TIMEOUT_SECONDS,
        )

    def fetch_subscription(self, subscription_id: str) -> Optional[StripeSubscriptionObject]:
        """Retrieve a subscription by id.

        Returns:
            The subscription, or None if Stripe does not know the id

        Raises:
            ProviderFetchFailure: Not configured, network error, 5xx/429,
                or an unparseable response
        """
        if not self.secret_key:
            raise ProviderFetchFailure("STRIPE_SECRET_KEY not configured")

        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                response = client.get(
                    f"{self.api_url}/v1/subscriptions/{subscription_id}",
                    auth=(self.secret_key, ""),
                )
        except httpx.HTTPError as e:
            logger.error(f"[STRIPE_API] Subscription fetch failed for {subscription_id}: {e}")
            raise ProviderFetchFailure(f"Stripe API request failed: {e}")

        if response.status_code == 404:
            logger.warning(f"[STRIPE_API] Subscription {subscription_id} not found")
            return None

        if response.status_code != 200:
            logger.error(
                f"[STRIPE_API] Subscription fetch for {subscription_id} returned {response.status_code}"
            )
            raise ProviderFetchFailure(f"Stripe API returned {response.status_code}")

        try:
            return StripeSubscriptionObject.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise ProviderFetchFailure(f"Unexpected subscription payload: {e}")
