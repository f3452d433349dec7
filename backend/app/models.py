"""SQLAlchemy ORM models and enums.

This module defines the billing schema: users (owned by the auth layer, only
`tier` is written here), Stripe subscriptions, and the processed-event table
that backs webhook idempotency.
"""

from datetime import datetime, timezone
import enum

from sqlalchemy import Column, String, DateTime, Enum, Integer, ForeignKey, JSON, Text, Boolean
from sqlalchemy.orm import relationship, declarative_base


# Single Base used by the entire application
Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Enums ---------------------------------------------------------

class SubscriptionStatusEnum(str, enum.Enum):
    """Canonical subscription status.

    Closed set, decoupled from Stripe's vocabulary. Provider statuses that
    have no mapping resolve to `unknown` instead of being stored verbatim.
    """
    trialing = "trialing"
    active = "active"
    past_due = "past_due"
    canceled = "canceled"
    incomplete = "incomplete"
    unknown = "unknown"


class SubscriptionPlanEnum(str, enum.Enum):
    monthly = "monthly"
    yearly = "yearly"


class WebhookOutcomeEnum(str, enum.Enum):
    """Lifecycle of a processed-event row.

    - pending: admitted, effect being applied in the same transaction
    - processed: effect applied
    - ignored: acknowledged, nothing to apply (unhandled type, unknown user)
    - failed: last attempt errored; a provider retry is re-admitted
    """
    pending = "pending"
    processed = "processed"
    ignored = "ignored"
    failed = "failed"


class UserTierEnum(int, enum.Enum):
    anonymous = 0
    free = 1
    pro = 2


# Core models ----------------------------------------------------

class User(Base):
    """User account.

    Owned by the authentication layer. The billing core only reads `id` and
    writes `tier` when a subscription changes.
    """
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String, unique=True, index=True, nullable=False)
    tier = Column(Integer, nullable=False, default=UserTierEnum.free.value)
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    subscriptions = relationship("Subscription", back_populates="user")

    def __str__(self):
        return self.email


class Subscription(Base):
    """Stripe subscription mirrored into local state.

    Mutated only by `SubscriptionReconciler`. `last_event_at` is the
    ordering signal: updates carrying an older provider timestamp are
    rejected so out-of-order deliveries cannot roll state back.
    """
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    stripe_subscription_id = Column(String, unique=True, nullable=False, index=True)
    stripe_customer_id = Column(String, nullable=True, index=True)
    status = Column(
        Enum(SubscriptionStatusEnum, values_callable=lambda obj: [e.value for e in obj]),
        nullable=False,
        default=SubscriptionStatusEnum.unknown,
    )
    plan = Column(
        Enum(SubscriptionPlanEnum, values_callable=lambda obj: [e.value for e in obj]),
        nullable=True,
    )
    plan_price_id = Column(String, nullable=True)
    current_period_start = Column(DateTime(timezone=True), nullable=True)
    current_period_end = Column(DateTime(timezone=True), nullable=True)
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)
    canceled_at = Column(DateTime(timezone=True), nullable=True)
    trial_end = Column(DateTime(timezone=True), nullable=True)

    # Ordering signal (Stripe event `created`) and the event that set it
    last_event_at = Column(DateTime(timezone=True), nullable=True)
    last_event_id = Column(String, nullable=True)

    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    user = relationship("User", back_populates="subscriptions")

    def __str__(self):
        return f"{self.stripe_subscription_id} ({self.status.value if self.status else 'n/a'})"


class StripeWebhookEvent(Base):
    """Processed Stripe event, one row per provider event id.

    The unique constraint on `stripe_event_id` is the only synchronization
    primitive for webhook idempotency. `payload_json` keeps the verified body
    so failed events can be replayed.
    """
    __tablename__ = "stripe_webhook_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    stripe_event_id = Column(String, unique=True, nullable=False, index=True)
    event_type = Column(String, nullable=False, index=True)
    payload_json = Column(JSON, nullable=True)
    outcome = Column(
        Enum(WebhookOutcomeEnum, values_callable=lambda obj: [e.value for e in obj]),
        nullable=False,
        default=WebhookOutcomeEnum.pending,
        index=True,
    )
    processing_error = Column(Text, nullable=True)
    attempts = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), default=_utcnow, index=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)

    def __str__(self):
        return f"{self.stripe_event_id} [{self.outcome.value if self.outcome else 'n/a'}]"
