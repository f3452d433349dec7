"""Webhook idempotency guard.

WHAT: Admits each Stripe event id at most once, using the stripe_webhook_events
      table as a durable ledger
WHY: Stripe delivers at least once and retries in parallel; two workers can
     receive the same event id at the same moment

The admit check is ONE atomic statement against the store:

    INSERT ... ON CONFLICT (stripe_event_id) DO NOTHING

If no row was inserted, a second atomic statement re-admits an event whose
previous attempt failed:

    UPDATE ... SET outcome='pending' WHERE stripe_event_id=? AND outcome='failed'

A read-then-write would let two concurrent deliveries both observe "absent".
The unique index makes the second insert wait for the first transaction and
then either conflict (first committed) or succeed (first rolled back).

The pending row is written in the caller's transaction, together with the
reconciliation effect and `finalize`. A crash before commit therefore leaves
no row at all and the provider's retry is admitted normally.

REFERENCES:
    - https://www.postgresql.org/docs/current/sql-insert.html#SQL-ON-CONFLICT
    - app/services/stripe_webhook_service.py (transaction owner)
"""

import enum
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from ..models import StripeWebhookEvent, WebhookOutcomeEnum
from .stripe_events import WebhookEvent

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 2000

_INSERTS = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}


class Admission(str, enum.Enum):
    admitted = "admitted"
    duplicate = "duplicate"


class WebhookIdempotencyGuard:
    """Durable admit/finalize bookkeeping for Stripe events.

    Usage:
        guard = WebhookIdempotencyGuard(db)
        if guard.admit(event) is Admission.admitted:
            ...apply effect...
            guard.finalize(event.id, WebhookOutcomeEnum.processed)
            db.commit()
    """

    def __init__(self, db: Session):
        self.db = db

    def _insert_if_absent(self, values: Dict[str, Any]) -> bool:
        """Insert a ledger row unless the event id already exists.

        Returns:
            True if this call inserted the row
        """
        dialect = self.db.get_bind().dialect.name
        insert_fn = _INSERTS.get(dialect)
        if insert_fn is None:
            raise RuntimeError(f"Unsupported database dialect for webhook idempotency: {dialect}")

        stmt = (
            insert_fn(StripeWebhookEvent)
            .values(**values)
            .on_conflict_do_nothing(index_elements=[StripeWebhookEvent.stripe_event_id])
        )
        result = self.db.execute(stmt)
        return result.rowcount == 1

    def admit(self, event: WebhookEvent) -> Admission:
        """Atomically claim an event id for processing.

        Returns:
            Admission.admitted if the caller now owns the event,
            Admission.duplicate if it is settled or in flight elsewhere
        """
        inserted = self._insert_if_absent({
            "stripe_event_id": event.id,
            "event_type": event.type,
            "payload_json": event.body,
            "outcome": WebhookOutcomeEnum.pending,
            "attempts": 1,
            "created_at": datetime.now(timezone.utc),
        })
        if inserted:
            logger.debug(f"[IDEMPOTENCY] Admitted new event {event.id}")
            return Admission.admitted

        # Previous attempt failed: re-claim it with a conditional write
        result = self.db.execute(
            update(StripeWebhookEvent)
            .where(
                StripeWebhookEvent.stripe_event_id == event.id,
                StripeWebhookEvent.outcome == WebhookOutcomeEnum.failed,
            )
            .values(
                outcome=WebhookOutcomeEnum.pending,
                attempts=StripeWebhookEvent.attempts + 1,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            logger.info(f"[IDEMPOTENCY] Re-admitted previously failed event {event.id}")
            return Admission.admitted

        logger.info(f"[IDEMPOTENCY] Duplicate event {event.id}, skipping")
        return Admission.duplicate

    def finalize(self, event_id: str, outcome: WebhookOutcomeEnum) -> None:
        """Settle an admitted event. Runs inside the caller's transaction."""
        self.db.execute(
            update(StripeWebhookEvent)
            .where(
                StripeWebhookEvent.stripe_event_id == event_id,
                StripeWebhookEvent.outcome == WebhookOutcomeEnum.pending,
            )
            .values(
                outcome=outcome,
                processing_error=None,
                processed_at=datetime.now(timezone.utc),
            )
            .execution_options(synchronize_session=False)
        )

    def record_failure(self, event: WebhookEvent, error: BaseException) -> None:
        """Mark an event as failed in its own transaction.

        Must be called after the failed transaction was rolled back. A failed
        row is re-admitted by the next delivery. Settled rows are never
        downgraded.
        """
        message = f"{type(error).__name__}: {error}"[:MAX_ERROR_LENGTH]
        inserted = self._insert_if_absent({
            "stripe_event_id": event.id,
            "event_type": event.type,
            "payload_json": event.body,
            "outcome": WebhookOutcomeEnum.failed,
            "processing_error": message,
            "attempts": 1,
            "created_at": datetime.now(timezone.utc),
        })
        if not inserted:
            self.db.execute(
                update(StripeWebhookEvent)
                .where(
                    StripeWebhookEvent.stripe_event_id == event.id,
                    StripeWebhookEvent.outcome.in_([WebhookOutcomeEnum.pending, WebhookOutcomeEnum.failed]),
                )
                .values(outcome=WebhookOutcomeEnum.failed, processing_error=message)
                .execution_options(synchronize_session=False)
            )
        self.db.commit()
        logger.info(f"[IDEMPOTENCY] Recorded failure for event {event.id}")

    def get_record(self, event_id: str) -> Optional[StripeWebhookEvent]:
        return (
            self.db.query(StripeWebhookEvent)
            .filter(StripeWebhookEvent.stripe_event_id == event_id)
            .first()
        )

    def is_settled(self, event_id: str) -> bool:
        """Whether the event already has a processed or ignored row.

        A plain read used to skip work for redeliveries; admission still
        goes through `admit`.
        """
        outcome = (
            self.db.query(StripeWebhookEvent.outcome)
            .filter(StripeWebhookEvent.stripe_event_id == event_id)
            .scalar()
        )
        return outcome in (WebhookOutcomeEnum.processed, WebhookOutcomeEnum.ignored)
