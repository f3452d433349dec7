"""Stripe webhook ingestion pipeline.

WHAT: Turns one signed Stripe delivery into at most one settled change of
      subscription state
WHY: Stripe delivers at least once, out of order and in parallel. Every
     delivery must be verified, admitted exactly once, mapped onto the closed
     status set and reconciled against newer state before it is acknowledged.

FLOW:
    received -> verified -> admitted  -> mapped -> reconciled -> done
                         -> duplicate_skipped
             -> rejected                 (InvalidSignature / InvalidPayload)
    any state -> failed                  (RetryableWebhookError subclasses)

    The idempotency ledger row, the subscription write and the finalize
    update share one transaction. On failure that transaction is rolled back
    and a separate transaction records the event as `failed`, which the next
    provider retry re-admits.

EVENTS:
    - customer.subscription.*       embedded subscription object
    - invoice.payment_succeeded/failed, checkout.session.completed
                                    subscription fetched from the Stripe API
    - anything else                 acknowledged and recorded as ignored

REFERENCES:
    - app/services/stripe_signature.py
    - app/services/webhook_idempotency.py
    - app/services/subscription_reconciler.py
    - app/routers/stripe_webhooks.py (HTTP boundary)
"""

import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..deps import Settings
from ..models import (
    StripeWebhookEvent,
    SubscriptionPlanEnum,
    SubscriptionStatusEnum,
    User,
    WebhookOutcomeEnum,
)
from ..telemetry import capture_exception
from .billing_errors import (
    BillingWebhookError,
    RetryableWebhookError,
    TransientStoreFailure,
    WebhookProcessingError,
)
from .billing_status import map_stripe_status
from .stripe_client import StripeSubscriptionClient
from .stripe_events import (
    CheckoutCompleted,
    InvoicePayment,
    StripeSubscriptionObject,
    SubscriptionChanged,
    WebhookEvent,
    from_unix,
    parse_stripe_event,
)
from .stripe_signature import verify_stripe_event
from .subscription_reconciler import SubscriptionReconciler, SubscriptionUpdate
from .webhook_idempotency import Admission, WebhookIdempotencyGuard

logger = logging.getLogger(__name__)

SubscriptionFetcher = Callable[[str], Optional[StripeSubscriptionObject]]

DEFAULT_FAILED_LIMIT = 50
MAX_FAILED_LIMIT = 100


class PipelineState(str, enum.Enum):
    done = "done"
    duplicate_skipped = "duplicate_skipped"


@dataclass(frozen=True)
class WebhookOutcome:
    """Terminal, successful result of handling one event.

    Attributes:
        state: done or duplicate_skipped
        recorded: Ledger outcome written for this event (None for duplicates)
        action: What happened, e.g. "created", "stale", "user_not_found"
    """

    event_id: str
    event_type: str
    state: PipelineState
    recorded: Optional[WebhookOutcomeEnum] = None
    action: Optional[str] = None

    @property
    def duplicate(self) -> bool:
        return self.state is PipelineState.duplicate_skipped


@dataclass(frozen=True)
class ReplayResult:
    event_id: str
    event_type: str
    success: bool
    action: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class SyncResult:
    """Outcome of re-reading one subscription from Stripe."""

    subscription_id: str
    user_id: int
    status: SubscriptionStatusEnum
    cancel_at_period_end: bool
    action: str


def clamp_limit(limit: Optional[int], default: int = DEFAULT_FAILED_LIMIT) -> int:
    if limit is None:
        return default
    return max(1, min(limit, MAX_FAILED_LIMIT))


def list_failed_events(db: Session, limit: Optional[int] = DEFAULT_FAILED_LIMIT) -> List[StripeWebhookEvent]:
    """Failed ledger rows, newest first."""
    return (
        db.query(StripeWebhookEvent)
        .filter(StripeWebhookEvent.outcome == WebhookOutcomeEnum.failed)
        .order_by(StripeWebhookEvent.created_at.desc())
        .limit(clamp_limit(limit))
        .all()
    )


class StripeWebhookPipeline:
    """Verifies, admits and applies Stripe webhook events.

    Usage:
        pipeline = StripeWebhookPipeline(db, get_settings())
        outcome = pipeline.handle(raw_body, request.headers.get("stripe-signature"))

    Args:
        db: Session; the pipeline owns commit/rollback for each event
        settings: Application settings (webhook secret, price ids)
        fetch_subscription: Subscription lookup by id, defaults to the
            Stripe REST client built from settings
    """

    def __init__(
        self,
        db: Session,
        settings: Settings,
        fetch_subscription: Optional[SubscriptionFetcher] = None,
    ):
        self.db = db
        self.settings = settings
        if fetch_subscription is None:
            fetch_subscription = StripeSubscriptionClient.from_settings(settings).fetch_subscription
        self.fetch_subscription = fetch_subscription
        self.guard = WebhookIdempotencyGuard(db)
        self.reconciler = SubscriptionReconciler(db)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def handle(self, payload: bytes, signature_header: Optional[str]) -> WebhookOutcome:
        """Verify and process one raw delivery.

        Raises:
            InvalidSignature, InvalidPayload: Rejected, answer 400
            RetryableWebhookError: Failed, answer 5xx so Stripe retries
        """
        secret = self.settings.STRIPE_WEBHOOK_SECRET
        if secret is None:
            raise WebhookProcessingError("STRIPE_WEBHOOK_SECRET not configured")

        event = verify_stripe_event(
            payload,
            signature_header,
            secret.get_secret_value(),
            tolerance=self.settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS,
        )
        logger.info(f"[STRIPE_WEBHOOK] Received {event.type} ({event.id})")
        return self.process(event)

    def process(self, event: WebhookEvent) -> WebhookOutcome:
        """Admit, apply and settle an already verified event.

        A subscription the event only references is fetched from Stripe
        before the ledger row is inserted, so no transaction or index lock
        is held across the API call.
        """
        try:
            fetched = self._fetch_referenced(event)
            if self.guard.admit(event) is Admission.duplicate:
                self.db.rollback()
                return WebhookOutcome(
                    event_id=event.id,
                    event_type=event.type,
                    state=PipelineState.duplicate_skipped,
                    action="duplicate",
                )

            recorded, action = self._apply(event, fetched)
            self.guard.finalize(event.id, recorded)
            self.db.commit()

        except RetryableWebhookError as e:
            self._record_failure(event, e)
            e.event_id = event.id
            raise
        except SQLAlchemyError as e:
            self._record_failure(event, e)
            raise TransientStoreFailure(f"Database error: {type(e).__name__}", event_id=event.id) from e
        except Exception as e:
            self._record_failure(event, e)
            raise WebhookProcessingError(f"Processing failed: {type(e).__name__}", event_id=event.id) from e

        logger.info(f"[STRIPE_WEBHOOK] Settled {event.id} as {recorded.value} ({action})")
        return WebhookOutcome(
            event_id=event.id,
            event_type=event.type,
            state=PipelineState.done,
            recorded=recorded,
            action=action,
        )

    def replay_failed(self, limit: int = 10) -> List[ReplayResult]:
        """Re-run stored payloads of failed events, oldest first.

        Signatures were verified at first receipt, so the stored body is
        trusted. One failing replay does not stop the batch.
        """
        rows = (
            self.db.query(StripeWebhookEvent)
            .filter(StripeWebhookEvent.outcome == WebhookOutcomeEnum.failed)
            .order_by(StripeWebhookEvent.created_at.asc())
            .limit(clamp_limit(limit, default=10))
            .all()
        )
        stored = [(row.stripe_event_id, row.event_type, row.payload_json) for row in rows]
        # Release the read transaction before each event opens its own
        self.db.rollback()

        results: List[ReplayResult] = []
        for event_id, event_type, body in stored:
            if not isinstance(body, dict):
                results.append(ReplayResult(event_id, event_type, False, error="No stored payload"))
                continue
            try:
                outcome = self.process(parse_stripe_event(body))
            except BillingWebhookError as e:
                logger.warning(f"[STRIPE_WEBHOOK] Replay of {event_id} failed: {e.message}")
                results.append(ReplayResult(event_id, event_type, False, error=e.message))
                continue
            results.append(ReplayResult(event_id, event_type, True, action=outcome.action))

        logger.info(
            f"[STRIPE_WEBHOOK] Replayed {len(results)} failed event(s), "
            f"{sum(1 for r in results if r.success)} succeeded"
        )
        return results

    def sync_subscription(self, subscription_id: str) -> Optional[SyncResult]:
        """Re-read a subscription from Stripe and reconcile it.

        Recovery path for missed webhooks. The fetch time is the ordering
        signal: the fetched object already reflects every event Stripe
        created before it, and any event created later still applies.

        Returns:
            SyncResult, or None if Stripe does not know the subscription or
            no local user owns it

        Raises:
            ProviderFetchFailure: Stripe API unreachable
            TransientStoreFailure: Database error, nothing was written
        """
        subscription = self.fetch_subscription(subscription_id)
        if subscription is None:
            logger.warning(f"[STRIPE_SYNC] Subscription {subscription_id} not found in Stripe")
            return None

        synced_at = datetime.now(timezone.utc)
        try:
            outcome, action = self._reconcile(
                f"sync_{synced_at:%Y%m%dT%H%M%S%f}",
                synced_at,
                subscription,
            )
            if outcome is WebhookOutcomeEnum.ignored:
                self.db.rollback()
                return None

            record = self.reconciler.find_by_subscription_id(subscription.id)
            result = SyncResult(
                subscription_id=subscription.id,
                user_id=record.user_id,
                status=record.status,
                cancel_at_period_end=record.cancel_at_period_end,
                action=action,
            )
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"[STRIPE_SYNC] Sync of {subscription_id} failed: {e}", exc_info=e)
            capture_exception(e, extra={"stripe_subscription_id": subscription_id})
            raise TransientStoreFailure(f"Database error: {type(e).__name__}") from e

        logger.info(f"[STRIPE_SYNC] Synced {subscription_id}: {result.status.value} ({action})")
        return result

    # ------------------------------------------------------------------
    # Event handlers
    # ------------------------------------------------------------------

    def _fetch_referenced(self, event: WebhookEvent) -> Optional[StripeSubscriptionObject]:
        """Subscription referenced by an invoice or checkout event, if any."""
        payload = event.payload
        if not isinstance(payload, (InvoicePayment, CheckoutCompleted)):
            return None

        settled = self.guard.is_settled(event.id)
        # Release the read transaction before the API call
        self.db.rollback()
        if settled:
            return None

        if isinstance(payload, InvoicePayment) and payload.subscription_id:
            return self.fetch_subscription(payload.subscription_id)
        if isinstance(payload, CheckoutCompleted) and payload.user_id is not None and payload.subscription_id:
            return self.fetch_subscription(payload.subscription_id)
        return None

    def _apply(
        self,
        event: WebhookEvent,
        fetched: Optional[StripeSubscriptionObject] = None,
    ) -> Tuple[WebhookOutcomeEnum, str]:
        payload = event.payload

        if isinstance(payload, SubscriptionChanged):
            return self._reconcile(event.id, event.created, payload.subscription, deleted=payload.deleted)

        if isinstance(payload, InvoicePayment):
            if not payload.subscription_id:
                logger.info(f"[STRIPE_WEBHOOK] Invoice event {event.id} has no subscription, ignoring")
                return WebhookOutcomeEnum.ignored, "no_subscription"
            if fetched is None:
                return WebhookOutcomeEnum.ignored, "subscription_not_found"
            return self._reconcile(event.id, event.created, fetched)

        if isinstance(payload, CheckoutCompleted):
            if payload.user_id is None:
                logger.warning(f"[STRIPE_WEBHOOK] Checkout {event.id} has no userId, ignoring")
                return WebhookOutcomeEnum.ignored, "no_user_id"
            if not payload.subscription_id:
                return WebhookOutcomeEnum.ignored, "no_subscription"
            if fetched is None:
                return WebhookOutcomeEnum.ignored, "subscription_not_found"
            return self._reconcile(event.id, event.created, fetched, user_hint=payload.user_id)

        logger.debug(f"[STRIPE_WEBHOOK] Unhandled event type {event.type}")
        return WebhookOutcomeEnum.ignored, "unhandled"

    def _reconcile(
        self,
        event_id: str,
        event_at: datetime,
        subscription: StripeSubscriptionObject,
        deleted: bool = False,
        user_hint: Optional[int] = None,
    ) -> Tuple[WebhookOutcomeEnum, str]:
        user_id = self._resolve_user(
            subscription,
            user_hint if user_hint is not None else subscription.metadata_user_id,
        )
        if user_id is None:
            logger.warning(
                f"[STRIPE_WEBHOOK] No user for subscription {subscription.id} "
                f"(customer {subscription.customer}), ignoring {event_id}"
            )
            return WebhookOutcomeEnum.ignored, "user_not_found"

        if deleted:
            status = SubscriptionStatusEnum.canceled
            canceled_at = from_unix(subscription.canceled_at) or event_at
        else:
            status = map_stripe_status(subscription.status)
            canceled_at = from_unix(subscription.canceled_at)

        update = SubscriptionUpdate(
            user_id=user_id,
            subscription_id=subscription.id,
            status=status,
            event_id=event_id,
            event_at=event_at,
            current_period_end=subscription.period_end,
            current_period_start=subscription.period_start,
            customer_id=subscription.customer,
            price_id=subscription.price_id,
            plan=self._plan_for(subscription),
            cancel_at_period_end=subscription.is_canceling,
            canceled_at=canceled_at,
            trial_end=from_unix(subscription.trial_end),
        )
        result = self.reconciler.reconcile(update)
        return WebhookOutcomeEnum.processed, result.value

    def _resolve_user(self, subscription: StripeSubscriptionObject, user_hint: Optional[int]) -> Optional[int]:
        """Owner of a subscription: existing record, then customer, then metadata."""
        existing = self.reconciler.find_by_subscription_id(subscription.id)
        if existing is not None:
            return existing.user_id

        if subscription.customer:
            by_customer = self.reconciler.find_by_customer_id(subscription.customer)
            if by_customer is not None:
                return by_customer.user_id

        if user_hint is not None and self.db.get(User, user_hint) is not None:
            return user_hint
        return None

    def _plan_for(self, subscription: StripeSubscriptionObject) -> Optional[SubscriptionPlanEnum]:
        price_id = subscription.price_id
        if price_id and price_id == self.settings.STRIPE_PRICE_MONTHLY:
            return SubscriptionPlanEnum.monthly
        if price_id and price_id == self.settings.STRIPE_PRICE_YEARLY:
            return SubscriptionPlanEnum.yearly

        interval = subscription.price_interval
        if interval == "month":
            return SubscriptionPlanEnum.monthly
        if interval == "year":
            return SubscriptionPlanEnum.yearly
        return None

    # ------------------------------------------------------------------
    # Failure handling
    # ------------------------------------------------------------------

    def _record_failure(self, event: WebhookEvent, error: BaseException) -> None:
        """Roll back the event transaction and mark the event failed."""
        logger.error(f"[STRIPE_WEBHOOK] Processing {event.id} ({event.type}) failed: {error}", exc_info=error)
        capture_exception(error, extra={"stripe_event_id": event.id, "stripe_event_type": event.type})

        self.db.rollback()
        try:
            self.guard.record_failure(event, error)
        except SQLAlchemyError as record_error:
            # Store unreachable: the provider retry is still admitted since no row was settled
            logger.error(
                f"[STRIPE_WEBHOOK] Could not record failure for {event.id}: {record_error}",
                exc_info=record_error,
            )
            self.db.rollback()
