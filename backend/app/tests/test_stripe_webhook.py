"""Stripe webhook endpoint tests.

WHAT: End-to-end tests for POST /api/stripe/webhook
WHY: The endpoint is the only writer of subscription state; signature checks,
     duplicates, ordering and failure codes must hold at the HTTP boundary
REFERENCES:
    - app/routers/stripe_webhooks.py
    - app/services/stripe_webhook_service.py
"""

import json
from datetime import datetime, timezone
from unittest.mock import patch

from sqlalchemy.exc import OperationalError

from app.deps import Settings, get_settings
from app.models import (
    StripeWebhookEvent,
    Subscription,
    SubscriptionPlanEnum,
    SubscriptionStatusEnum,
    User,
    UserTierEnum,
    WebhookOutcomeEnum,
)
from app.services.billing_errors import ProviderFetchFailure
from app.services.stripe_client import StripeSubscriptionClient
from app.services.stripe_events import StripeSubscriptionObject, parse_stripe_event
from app.services.stripe_webhook_service import StripeWebhookPipeline
from app.services.subscription_reconciler import SubscriptionReconciler

from conftest import sign_payload, stripe_event, subscription_object


def _subscription(db, subscription_id="sub_123"):
    return (
        db.query(Subscription)
        .filter(Subscription.stripe_subscription_id == subscription_id)
        .first()
    )


def _ledger(db, event_id):
    return (
        db.query(StripeWebhookEvent)
        .filter(StripeWebhookEvent.stripe_event_id == event_id)
        .first()
    )


# ============================================================================
# Signature verification
# ============================================================================

class TestSignature:

    def test_rejects_wrong_secret(self, client, test_db_session, test_user):
        event = stripe_event("evt_bad", "customer.subscription.created", subscription_object(user_id=test_user.id))
        body = json.dumps(event).encode("utf-8")

        response = client.post(
            "/api/stripe/webhook",
            content=body,
            headers={"Stripe-Signature": sign_payload(body, secret="whsec_other")},
        )

        assert response.status_code == 400
        assert _ledger(test_db_session, "evt_bad") is None
        assert _subscription(test_db_session) is None

    def test_rejects_missing_header(self, client, test_db_session):
        event = stripe_event("evt_nosig", "customer.subscription.created", subscription_object())

        response = client.post("/api/stripe/webhook", content=json.dumps(event).encode("utf-8"))

        assert response.status_code == 400
        assert _ledger(test_db_session, "evt_nosig") is None

    def test_rejects_tampered_body(self, client, test_user):
        event = stripe_event("evt_tamper", "customer.subscription.created", subscription_object(user_id=test_user.id))
        body = json.dumps(event).encode("utf-8")
        signature = sign_payload(body)

        tampered = body.replace(b'"active"', b'"canceled"')
        response = client.post("/api/stripe/webhook", content=tampered, headers={"Stripe-Signature": signature})

        assert response.status_code == 400

    def test_rejects_signed_body_that_is_not_an_event(self, post_event):
        response = post_event({"type": "customer.subscription.created", "data": {}})

        assert response.status_code == 400

    def test_missing_webhook_secret_returns_500(self, app, client):
        app.dependency_overrides[get_settings] = lambda: Settings(STRIPE_WEBHOOK_SECRET=None)
        body = json.dumps(stripe_event("evt_cfg", "invoice.paid", {})).encode("utf-8")

        response = client.post("/api/stripe/webhook", content=body, headers={"Stripe-Signature": sign_payload(body)})

        assert response.status_code == 500


# ============================================================================
# Subscription events
# ============================================================================

class TestSubscriptionEvents:

    def test_created_event_creates_subscription_and_upgrades_user(self, post_event, test_db_session, test_user):
        event = stripe_event("evt_1", "customer.subscription.created", subscription_object(user_id=test_user.id))

        response = post_event(event)

        assert response.status_code == 200
        data = response.json()
        assert data["event_id"] == "evt_1"
        assert data["outcome"] == "processed"
        assert data["action"] == "created"
        assert data["duplicate"] is False

        sub = _subscription(test_db_session)
        assert sub.user_id == test_user.id
        assert sub.status == SubscriptionStatusEnum.active
        assert sub.plan == SubscriptionPlanEnum.monthly
        assert sub.stripe_customer_id == "cus_123"
        assert sub.last_event_id == "evt_1"

        test_db_session.refresh(test_user)
        assert test_user.tier == UserTierEnum.pro.value
        assert _ledger(test_db_session, "evt_1").outcome == WebhookOutcomeEnum.processed

    def test_duplicate_delivery_is_applied_once(self, client, test_db_session, test_user):
        event = stripe_event("evt_dup", "customer.subscription.created", subscription_object(user_id=test_user.id))
        body = json.dumps(event).encode("utf-8")
        headers = {"Stripe-Signature": sign_payload(body)}

        with patch.object(SubscriptionReconciler, "reconcile", wraps=SubscriptionReconciler(test_db_session).reconcile) as reconcile:
            first = client.post("/api/stripe/webhook", content=body, headers=headers)
            second = client.post("/api/stripe/webhook", content=body, headers=headers)

        assert first.status_code == 200
        assert second.status_code == 200
        assert second.json()["duplicate"] is True
        assert reconcile.call_count == 1

        assert test_db_session.query(Subscription).count() == 1
        record = _ledger(test_db_session, "evt_dup")
        assert record.outcome == WebhookOutcomeEnum.processed
        assert record.attempts == 1

    def test_older_event_does_not_roll_back_state(self, post_event, test_db_session, test_user):
        newer = stripe_event(
            "evt_1", "customer.subscription.updated",
            subscription_object(user_id=test_user.id, status="active"),
            created=1735689700,
        )
        older = stripe_event(
            "evt_2", "customer.subscription.updated",
            subscription_object(user_id=test_user.id, status="canceled"),
            created=1735689600,
        )

        assert post_event(newer).status_code == 200
        response = post_event(older)

        assert response.status_code == 200
        assert response.json()["action"] == "stale"
        sub = _subscription(test_db_session)
        assert sub.status == SubscriptionStatusEnum.active
        assert sub.last_event_id == "evt_1"
        assert sub.current_period_end.replace(tzinfo=timezone.utc) == datetime(2025, 3, 1, tzinfo=timezone.utc)
        # The stale event is settled, not left for retry
        assert _ledger(test_db_session, "evt_2").outcome == WebhookOutcomeEnum.processed

    def test_deleted_event_cancels_and_downgrades(self, post_event, test_db_session, test_user):
        post_event(stripe_event(
            "evt_1", "customer.subscription.created",
            subscription_object(user_id=test_user.id),
            created=1735689600,
        ))

        # Stripe may still report the old status on the deleted object
        response = post_event(stripe_event(
            "evt_2", "customer.subscription.deleted",
            subscription_object(status="active"),
            created=1735689700,
        ))

        assert response.status_code == 200
        sub = _subscription(test_db_session)
        assert sub.status == SubscriptionStatusEnum.canceled
        assert sub.canceled_at is not None
        test_db_session.refresh(test_user)
        assert test_user.tier == UserTierEnum.free.value

    def test_unknown_status_is_stored_as_unknown(self, post_event, test_db_session, test_user):
        response = post_event(stripe_event(
            "evt_odd", "customer.subscription.updated",
            subscription_object(user_id=test_user.id, status="some_future_status"),
        ))

        assert response.status_code == 200
        assert _subscription(test_db_session).status == SubscriptionStatusEnum.unknown
        test_db_session.refresh(test_user)
        assert test_user.tier == UserTierEnum.free.value

    def test_subscription_without_known_user_is_ignored(self, post_event, test_db_session):
        response = post_event(stripe_event(
            "evt_orphan", "customer.subscription.created",
            subscription_object(customer="cus_nobody"),
        ))

        assert response.status_code == 200
        assert response.json()["outcome"] == "ignored"
        assert response.json()["action"] == "user_not_found"
        assert _subscription(test_db_session) is None
        assert _ledger(test_db_session, "evt_orphan").outcome == WebhookOutcomeEnum.ignored

    def test_user_resolved_by_customer_id(self, post_event, test_db_session, test_user):
        post_event(stripe_event(
            "evt_1", "customer.subscription.created",
            subscription_object(subscription_id="sub_old", user_id=test_user.id, customer="cus_42"),
        ))

        # New subscription for the same customer, no metadata
        response = post_event(stripe_event(
            "evt_2", "customer.subscription.created",
            subscription_object(subscription_id="sub_new", customer="cus_42"),
        ))

        assert response.json()["action"] == "created"
        assert _subscription(test_db_session, "sub_new").user_id == test_user.id

    def test_unhandled_event_type_is_acknowledged(self, post_event, test_db_session):
        response = post_event(stripe_event("evt_cust", "customer.created", {"id": "cus_1", "object": "customer"}))

        assert response.status_code == 200
        assert response.json()["outcome"] == "ignored"
        assert response.json()["action"] == "unhandled"
        assert _ledger(test_db_session, "evt_cust").outcome == WebhookOutcomeEnum.ignored


# ============================================================================
# Invoice and checkout events (subscription fetched from Stripe)
# ============================================================================

class TestFetchedSubscriptionEvents:

    def test_invoice_payment_failed_marks_past_due(self, post_event, test_db_session, test_user):
        post_event(stripe_event(
            "evt_1", "customer.subscription.created",
            subscription_object(user_id=test_user.id),
            created=1735689600,
        ))
        fetched = StripeSubscriptionObject.model_validate(subscription_object(status="past_due"))

        with patch.object(StripeSubscriptionClient, "fetch_subscription", return_value=fetched) as fetch:
            response = post_event(stripe_event(
                "evt_inv", "invoice.payment_failed",
                {"id": "in_1", "object": "invoice", "customer": "cus_123", "subscription": "sub_123"},
                created=1735689700,
            ))

        assert response.status_code == 200
        fetch.assert_called_once_with("sub_123")
        assert _subscription(test_db_session).status == SubscriptionStatusEnum.past_due
        test_db_session.refresh(test_user)
        assert test_user.tier == UserTierEnum.free.value

    def test_subscription_fetched_outside_event_transaction(self, test_db_session, settings, test_user):
        fetched = StripeSubscriptionObject.model_validate(subscription_object(user_id=test_user.id))
        in_transaction = []

        def fetch(subscription_id):
            in_transaction.append(test_db_session.in_transaction())
            return fetched

        pipeline = StripeWebhookPipeline(test_db_session, settings, fetch_subscription=fetch)
        event = parse_stripe_event(stripe_event(
            "evt_tx", "invoice.payment_succeeded",
            {"id": "in_tx", "object": "invoice", "customer": "cus_123", "subscription": "sub_123"},
        ))

        first = pipeline.process(event)
        redelivered = pipeline.process(event)

        assert first.action == "created"
        assert redelivered.duplicate is True
        # Redelivery of a settled event skips the API call
        assert in_transaction == [False]
        assert _ledger(test_db_session, "evt_tx").outcome == WebhookOutcomeEnum.processed

    def test_invoice_without_subscription_is_ignored(self, post_event):
        with patch.object(StripeSubscriptionClient, "fetch_subscription") as fetch:
            response = post_event(stripe_event(
                "evt_oneoff", "invoice.payment_succeeded",
                {"id": "in_2", "object": "invoice", "customer": "cus_123", "subscription": None},
            ))

        assert response.json()["action"] == "no_subscription"
        fetch.assert_not_called()

    def test_checkout_completed_creates_subscription(self, post_event, test_db_session, test_user):
        fetched = StripeSubscriptionObject.model_validate(
            subscription_object(subscription_id="sub_chk", customer="cus_chk", price_id="price_yearly")
        )
        session = {
            "id": "cs_1",
            "object": "checkout.session",
            "customer": "cus_chk",
            "subscription": "sub_chk",
            "metadata": {"userId": str(test_user.id)},
        }

        with patch.object(StripeSubscriptionClient, "fetch_subscription", return_value=fetched):
            response = post_event(stripe_event("evt_chk", "checkout.session.completed", session))

        assert response.status_code == 200
        assert response.json()["action"] == "created"
        sub = _subscription(test_db_session, "sub_chk")
        assert sub.user_id == test_user.id
        assert sub.plan == SubscriptionPlanEnum.yearly

    def test_checkout_without_user_id_is_ignored(self, post_event):
        session = {"id": "cs_2", "object": "checkout.session", "subscription": "sub_x", "metadata": {}}

        response = post_event(stripe_event("evt_chk2", "checkout.session.completed", session))

        assert response.json()["action"] == "no_user_id"


# ============================================================================
# Failure handling
# ============================================================================

class TestFailures:

    def test_provider_failure_returns_502_and_retry_succeeds(self, post_event, test_db_session, test_user):
        invoice = stripe_event(
            "evt_retry", "invoice.payment_succeeded",
            {"id": "in_3", "object": "invoice", "customer": "cus_123", "subscription": "sub_123"},
        )

        with patch.object(StripeSubscriptionClient, "fetch_subscription", side_effect=ProviderFetchFailure("timeout")):
            failed = post_event(invoice)

        assert failed.status_code == 502
        record = _ledger(test_db_session, "evt_retry")
        assert record.outcome == WebhookOutcomeEnum.failed
        assert "timeout" in record.processing_error

        fetched = StripeSubscriptionObject.model_validate(subscription_object(user_id=test_user.id))
        with patch.object(StripeSubscriptionClient, "fetch_subscription", return_value=fetched):
            retried = post_event(invoice)

        assert retried.status_code == 200
        assert retried.json()["duplicate"] is False
        test_db_session.expire_all()
        record = _ledger(test_db_session, "evt_retry")
        assert record.outcome == WebhookOutcomeEnum.processed
        assert record.attempts == 2
        assert _subscription(test_db_session).status == SubscriptionStatusEnum.active

    def test_store_failure_returns_503_without_settling(self, post_event, test_db_session, test_user):
        event = stripe_event("evt_db", "customer.subscription.created", subscription_object(user_id=test_user.id))
        error = OperationalError("UPDATE subscriptions", {}, Exception("database is locked"))

        with patch.object(SubscriptionReconciler, "reconcile", side_effect=error):
            response = post_event(event)

        assert response.status_code == 503
        assert _subscription(test_db_session) is None
        assert _ledger(test_db_session, "evt_db").outcome == WebhookOutcomeEnum.failed

    def test_unexpected_error_returns_500(self, post_event, test_db_session, test_user):
        event = stripe_event("evt_bug", "customer.subscription.created", subscription_object(user_id=test_user.id))

        with patch.object(SubscriptionReconciler, "reconcile", side_effect=KeyError("boom")):
            response = post_event(event)

        assert response.status_code == 500
        assert _ledger(test_db_session, "evt_bug").outcome == WebhookOutcomeEnum.failed
        test_db_session.refresh(test_user)
        assert test_db_session.get(User, test_user.id).tier == UserTierEnum.free.value
