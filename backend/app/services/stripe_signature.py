"""Stripe webhook signature verification.

WHAT: Validates the Stripe-Signature header against the raw request body
WHY: Anyone can POST to the webhook URL; only bodies signed with the shared
     secret may touch subscription state

The header looks like `t=1700000000,v1=<hex hmac>,v0=...`. The HMAC-SHA256 is
computed over `"{t}.{raw body}"`, so verification must run on the exact bytes
received. Parsing and re-serializing the JSON first changes those bytes and
breaks the signature.

REFERENCES:
    - https://docs.stripe.com/webhooks#verify-events
    - app/services/stripe_events.py (parsing after verification)
"""

import logging
from typing import Optional

import stripe

from .billing_errors import InvalidSignature
from .stripe_events import WebhookEvent, parse_stripe_event

logger = logging.getLogger(__name__)

DEFAULT_TOLERANCE_SECONDS = 300


def verify_stripe_event(
    payload: bytes,
    signature_header: Optional[str],
    secret: str,
    tolerance: int = DEFAULT_TOLERANCE_SECONDS,
) -> WebhookEvent:
    """Verify a webhook delivery and return the parsed event.

    The comparison is constant-time (delegated to stripe.WebhookSignature)
    and deliveries older than `tolerance` seconds are rejected to limit
    replay of captured requests.

    Args:
        payload: Raw request body bytes, unparsed
        signature_header: Stripe-Signature header value
        secret: Endpoint signing secret (whsec_...)
        tolerance: Maximum accepted age of the signed timestamp

    Returns:
        WebhookEvent

    Raises:
        InvalidSignature: Header missing, malformed or not matching
        InvalidPayload: Signature valid but body is not a usable event
    """
    if not signature_header:
        logger.warning("[STRIPE_WEBHOOK] Missing Stripe-Signature header")
        raise InvalidSignature("Missing Stripe-Signature header")

    if not payload:
        raise InvalidSignature("Empty request body")

    try:
        body_text = payload.decode("utf-8")
    except UnicodeDecodeError:
        raise InvalidSignature("Request body is not valid UTF-8")

    try:
        stripe.WebhookSignature.verify_header(body_text, signature_header, secret, tolerance)
    except stripe.SignatureVerificationError as e:
        # Header values are attacker-controlled; only the reason is logged
        logger.warning(f"[STRIPE_WEBHOOK] Signature verification failed: {e}")
        raise InvalidSignature("Invalid signature")

    return parse_stripe_event(body_text, raw_body=payload)
