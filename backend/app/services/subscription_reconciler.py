"""Subscription reconciliation.

WHAT: Applies a mapped subscription update to the local Subscription row and
      keeps the owning user's tier in sync
WHY: Stripe delivers events out of order. Without an ordering check a late
     `active` could overwrite a newer `canceled` (or the reverse) and leave a
     user with access they no longer pay for.

ORDERING:
    Each row stores `last_event_at`, the Stripe `created` timestamp of the
    event that last wrote it. An update is applied only when it is not older:

        event_at > stored   -> apply
        event_at < stored   -> stale, row unchanged
        event_at == stored  -> later current_period_end wins, then the higher
                               lifecycle rank, equal rank applies again

    Stripe timestamps have one second resolution, so same-second events are
    common during checkout (created + updated + invoice within one second).

CONCURRENCY:
    The row is read with SELECT ... FOR UPDATE, so on PostgreSQL a second
    worker reconciling the same subscription waits until the first commits
    and then compares against the committed state. The write itself is a
    conditional UPDATE that only matches while `last_event_id` is still the
    value the decision was based on. A lost race (rowcount 0, possible where
    row locks are not supported) re-reads and decides again.

TRANSACTIONS:
    The reconciler only flushes. The webhook pipeline commits the row change
    together with the idempotency ledger entry.

REFERENCES:
    - app/services/billing_status.py (LIFECYCLE_RANK, tier_for_status)
    - app/services/stripe_webhook_service.py (caller)
"""

import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import update as sql_update
from sqlalchemy.orm import Session

from ..models import (
    Subscription,
    SubscriptionPlanEnum,
    SubscriptionStatusEnum,
    User,
    UserTierEnum,
)
from .billing_errors import TransientStoreFailure
from .billing_status import LIFECYCLE_RANK, tier_for_status

logger = logging.getLogger(__name__)

MAX_WRITE_ATTEMPTS = 3


class ReconcileResult(str, enum.Enum):
    created = "created"
    updated = "updated"
    stale = "stale"


@dataclass(frozen=True)
class SubscriptionUpdate:
    """Desired subscription state derived from one Stripe event."""

    user_id: int
    subscription_id: str
    status: SubscriptionStatusEnum
    event_id: str
    event_at: datetime
    current_period_end: Optional[datetime] = None
    current_period_start: Optional[datetime] = None
    customer_id: Optional[str] = None
    price_id: Optional[str] = None
    plan: Optional[SubscriptionPlanEnum] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None
    trial_end: Optional[datetime] = None


def _values(update: SubscriptionUpdate) -> Dict[str, Any]:
    """Column values written for `update`."""
    values: Dict[str, Any] = {
        "status": update.status,
        "current_period_end": update.current_period_end,
        "cancel_at_period_end": update.cancel_at_period_end,
        "canceled_at": update.canceled_at,
        "trial_end": update.trial_end,
        "last_event_at": update.event_at,
        "last_event_id": update.event_id,
    }
    # Optional fields only overwrite when the event carried them
    if update.current_period_start is not None:
        values["current_period_start"] = update.current_period_start
    if update.customer_id:
        values["stripe_customer_id"] = update.customer_id
    if update.price_id:
        values["plan_price_id"] = update.price_id
    if update.plan is not None:
        values["plan"] = update.plan
    return values


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes even for timezone=True columns
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _compare(left: Optional[datetime], right: Optional[datetime]) -> int:
    """Three-way compare where a missing value sorts first."""
    left, right = _as_utc(left), _as_utc(right)
    if left == right:
        return 0
    if left is None:
        return -1
    if right is None:
        return 1
    return 1 if left > right else -1


def is_newer(update: SubscriptionUpdate, record: Subscription) -> bool:
    """Decide whether `update` may overwrite `record`."""
    by_time = _compare(update.event_at, record.last_event_at)
    if by_time != 0:
        return by_time > 0

    by_period = _compare(update.current_period_end, record.current_period_end)
    if by_period != 0:
        return by_period > 0

    stored_status = record.status or SubscriptionStatusEnum.unknown
    return LIFECYCLE_RANK[update.status] >= LIFECYCLE_RANK[stored_status]


class SubscriptionReconciler:
    """Writes SubscriptionUpdate values into the subscriptions table.

    Usage:
        reconciler = SubscriptionReconciler(db)
        result = reconciler.reconcile(update)
        db.commit()  # owned by the caller
    """

    def __init__(self, db: Session):
        self.db = db

    def find_by_subscription_id(self, subscription_id: str) -> Optional[Subscription]:
        return (
            self.db.query(Subscription)
            .filter(Subscription.stripe_subscription_id == subscription_id)
            .first()
        )

    def find_by_customer_id(self, customer_id: str) -> Optional[Subscription]:
        return (
            self.db.query(Subscription)
            .filter(Subscription.stripe_customer_id == customer_id)
            .order_by(Subscription.created_at.desc())
            .first()
        )

    def lock_subscription(self, subscription_id: str) -> Optional[Subscription]:
        """Load the current committed row and lock it for this transaction.

        populate_existing replaces whatever an earlier read in this session
        left in the identity map.
        """
        return (
            self.db.query(Subscription)
            .filter(Subscription.stripe_subscription_id == subscription_id)
            .populate_existing()
            .with_for_update()
            .first()
        )

    def reconcile(self, update: SubscriptionUpdate) -> ReconcileResult:
        for attempt in range(1, MAX_WRITE_ATTEMPTS + 1):
            record = self.lock_subscription(update.subscription_id)

            if record is None:
                return self._create(update)

            if not is_newer(update, record):
                logger.info(
                    f"[RECONCILE] Stale event {update.event_id} for {update.subscription_id}: "
                    f"event_at={update.event_at.isoformat()} "
                    f"stored={_as_utc(record.last_event_at).isoformat() if record.last_event_at else None} "
                    f"(status {update.status.value} not applied, keeping {record.status.value})"
                )
                return ReconcileResult.stale

            previous = record.status
            if self._write_if_unchanged(record, update):
                logger.info(
                    f"[RECONCILE] Updated subscription {update.subscription_id}: "
                    f"{previous.value if previous else None} -> {update.status.value}"
                )
                self._sync_tier(record.user_id)
                return ReconcileResult.updated

            logger.info(
                f"[RECONCILE] Subscription {update.subscription_id} changed concurrently "
                f"(attempt {attempt}), re-reading"
            )

        raise TransientStoreFailure(
            f"Subscription {update.subscription_id} kept changing concurrently",
            event_id=update.event_id,
        )

    def _create(self, update: SubscriptionUpdate) -> ReconcileResult:
        # A concurrent insert of the same id fails on the unique index and the
        # event is retried as an update
        record = Subscription(
            user_id=update.user_id,
            stripe_subscription_id=update.subscription_id,
            **_values(update),
        )
        self.db.add(record)
        self.db.flush()
        logger.info(
            f"[RECONCILE] Created subscription {update.subscription_id} "
            f"for user {update.user_id} status={update.status.value}"
        )
        self._sync_tier(record.user_id)
        return ReconcileResult.created

    def _write_if_unchanged(self, record: Subscription, update: SubscriptionUpdate) -> bool:
        """Apply `update` only if the row still carries the event that was compared.

        Returns:
            False if another writer changed the row after it was read
        """
        if record.last_event_id is None:
            unchanged = Subscription.last_event_id.is_(None)
        else:
            unchanged = Subscription.last_event_id == record.last_event_id

        result = self.db.execute(
            sql_update(Subscription)
            .where(Subscription.id == record.id, unchanged)
            .values(**_values(update))
            .execution_options(synchronize_session=False)
        )
        self.db.expire(record)
        return result.rowcount == 1

    def _sync_tier(self, user_id: int) -> None:
        """Set the user's tier from all of their subscriptions.

        A user keeps paid access while any subscription grants it, so canceling
        one of two subscriptions does not downgrade them.
        """
        user = self.db.get(User, user_id)
        if user is None:
            logger.warning(f"[RECONCILE] User {user_id} not found, tier not synced")
            return

        statuses = [
            status for (status,) in
            self.db.query(Subscription.status).filter(Subscription.user_id == user_id).all()
        ]
        tier = max((tier_for_status(s) for s in statuses), default=UserTierEnum.free)

        if user.tier != tier.value:
            logger.info(f"[RECONCILE] User {user_id} tier {user.tier} -> {tier.value}")
            user.tier = tier.value
            self.db.flush()
