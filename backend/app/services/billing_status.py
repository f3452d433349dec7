"""Stripe status mapping.

WHAT: Maps Stripe subscription status strings to SubscriptionStatusEnum
WHY: Internal state uses a closed set; Stripe adds statuses over time and
     an unfamiliar value must never break reconciliation.

REFERENCES:
    - https://docs.stripe.com/api/subscriptions/object#subscription_object-status
    - app/models.py (SubscriptionStatusEnum)
"""

import logging
from typing import Optional

from ..models import SubscriptionStatusEnum, UserTierEnum

logger = logging.getLogger(__name__)


STRIPE_STATUS_MAP = {
    "active": SubscriptionStatusEnum.active,
    "trialing": SubscriptionStatusEnum.trialing,
    "past_due": SubscriptionStatusEnum.past_due,
    # Retries exhausted but invoices still open; no access, same as past_due
    "unpaid": SubscriptionStatusEnum.past_due,
    "canceled": SubscriptionStatusEnum.canceled,
    "incomplete": SubscriptionStatusEnum.incomplete,
    # First invoice never paid within 23h; the subscription is dead
    "incomplete_expired": SubscriptionStatusEnum.canceled,
    # Trial ended without a payment method; resumes once one is added
    "paused": SubscriptionStatusEnum.incomplete,
}

# Coarse lifecycle order, used to break ties between same-second events
LIFECYCLE_RANK = {
    SubscriptionStatusEnum.unknown: -1,
    SubscriptionStatusEnum.incomplete: 0,
    SubscriptionStatusEnum.trialing: 1,
    SubscriptionStatusEnum.active: 2,
    SubscriptionStatusEnum.past_due: 3,
    SubscriptionStatusEnum.canceled: 4,
}

PAID_STATUSES = frozenset({SubscriptionStatusEnum.active, SubscriptionStatusEnum.trialing})


def map_stripe_status(raw_status: Optional[str]) -> SubscriptionStatusEnum:
    """Map a Stripe status string to the canonical status.

    Total: unmapped or missing values return `unknown` and are logged as a
    mapping gap instead of raising.
    """
    status = STRIPE_STATUS_MAP.get(raw_status) if isinstance(raw_status, str) else None
    if status is None:
        logger.warning(f"[BILLING_STATUS] Unmapped Stripe status {raw_status!r}, using 'unknown'")
        return SubscriptionStatusEnum.unknown
    return status


def grants_paid_access(status: SubscriptionStatusEnum) -> bool:
    return status in PAID_STATUSES


def tier_for_status(status: SubscriptionStatusEnum) -> UserTierEnum:
    """User tier implied by a subscription status (pro while paid, else free)."""
    return UserTierEnum.pro if grants_paid_access(status) else UserTierEnum.free
