"""
Stripe Event Parsing and Signature Tests (Unit)
===============================================

WHAT: Unit tests for Stripe-Signature verification and event parsing.
WHY: Everything downstream trusts the WebhookEvent these produce.

REFERENCES:
- backend/app/services/stripe_signature.py
- backend/app/services/stripe_events.py
"""

import hashlib
import hmac
import json
import time
from datetime import datetime, timezone

import pytest

from app.services.billing_errors import InvalidPayload, InvalidSignature
from app.services.stripe_events import (
    CheckoutCompleted,
    InvoicePayment,
    SubscriptionChanged,
    UnhandledEvent,
    parse_stripe_event,
)
from app.services.stripe_signature import verify_stripe_event

SECRET = "whsec_unit"


def _sign(payload: bytes, secret: str = SECRET, timestamp: int = None) -> str:
    ts = timestamp if timestamp is not None else int(time.time())
    digest = hmac.new(secret.encode(), f"{ts}.".encode() + payload, hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"


def _body(event_type="customer.subscription.updated", obj=None, **overrides) -> bytes:
    event = {
        "id": "evt_1",
        "type": event_type,
        "created": 1735689600,
        "data": {"object": obj if obj is not None else {"id": "sub_1", "status": "active"}},
    }
    event.update(overrides)
    return json.dumps(event).encode("utf-8")


# -- signature ---------------------------------------------------------------

def test_valid_signature_returns_event() -> None:
    body = _body()

    event = verify_stripe_event(body, _sign(body), SECRET)

    assert event.id == "evt_1"
    assert event.created == datetime(2025, 1, 1, tzinfo=timezone.utc)
    assert event.raw_body == body


@pytest.mark.parametrize(
    "header",
    [
        None,
        "",
        "garbage",
        "t=123",
        "v1=deadbeef",
    ],
)
def test_malformed_headers_are_rejected(header) -> None:
    with pytest.raises(InvalidSignature):
        verify_stripe_event(_body(), header, SECRET)


def test_wrong_secret_is_rejected() -> None:
    body = _body()
    with pytest.raises(InvalidSignature):
        verify_stripe_event(body, _sign(body, secret="whsec_other"), SECRET)


def test_expired_timestamp_is_rejected() -> None:
    body = _body()
    old = int(time.time()) - 3600
    with pytest.raises(InvalidSignature):
        verify_stripe_event(body, _sign(body, timestamp=old), SECRET, tolerance=300)


def test_body_modified_after_signing_is_rejected() -> None:
    body = _body()
    header = _sign(body)
    with pytest.raises(InvalidSignature):
        verify_stripe_event(body + b" ", header, SECRET)


def test_empty_body_is_rejected() -> None:
    with pytest.raises(InvalidSignature):
        verify_stripe_event(b"", _sign(b""), SECRET)


def test_signed_non_json_is_invalid_payload() -> None:
    body = b"not json"
    with pytest.raises(InvalidPayload):
        verify_stripe_event(body, _sign(body), SECRET)


def test_signed_out_of_range_created_is_invalid_payload() -> None:
    body = _body(created=10**20)

    with pytest.raises(InvalidPayload) as exc_info:
        verify_stripe_event(body, _sign(body), SECRET)

    assert exc_info.value.event_id == "evt_1"


# -- parsing -----------------------------------------------------------------

def test_subscription_events_parse_to_subscription_changed() -> None:
    obj = {
        "id": "sub_1",
        "customer": {"id": "cus_1", "object": "customer"},
        "status": "trialing",
        "metadata": {"userId": "7"},
        "items": {"data": [{
            "price": {"id": "price_m", "recurring": {"interval": "month"}},
            "current_period_start": 1735689600,
            "current_period_end": 1738368000,
        }]},
    }

    event = parse_stripe_event(_body("customer.subscription.deleted", obj))

    assert isinstance(event.payload, SubscriptionChanged)
    assert event.payload.deleted is True
    sub = event.payload.subscription
    assert sub.customer == "cus_1"
    assert sub.metadata_user_id == 7
    assert sub.price_id == "price_m"
    assert sub.price_interval == "month"
    assert sub.period_end == datetime(2025, 2, 1, tzinfo=timezone.utc)


def test_invoice_subscription_id_from_parent_details() -> None:
    obj = {
        "id": "in_1",
        "customer": "cus_1",
        "parent": {"subscription_details": {"subscription": "sub_9"}},
    }

    event = parse_stripe_event(_body("invoice.payment_failed", obj))

    assert event.payload == InvoicePayment(subscription_id="sub_9", customer_id="cus_1", succeeded=False)


def test_checkout_user_id_falls_back_to_client_reference() -> None:
    obj = {"id": "cs_1", "subscription": "sub_1", "customer": "cus_1", "client_reference_id": "12", "metadata": None}

    event = parse_stripe_event(_body("checkout.session.completed", obj))

    assert event.payload == CheckoutCompleted(subscription_id="sub_1", customer_id="cus_1", user_id=12)


def test_unknown_event_type_is_unhandled() -> None:
    event = parse_stripe_event(_body("charge.refunded", {"id": "ch_1"}))

    assert isinstance(event.payload, UnhandledEvent)


@pytest.mark.parametrize(
    "body",
    [
        b"[]",
        json.dumps({"type": "x", "created": 1, "data": {"object": {}}}).encode(),
        json.dumps({"id": "evt_1", "type": "x", "created": 1, "data": {}}).encode(),
        _body(created=10**20),
        _body(created=-10**15),
        _body("customer.subscription.updated", {"id": "sub_1", "current_period_end": 10**20}),
        _body("customer.subscription.updated", {"status": "active"}),
    ],
)
def test_invalid_envelopes_raise_invalid_payload(body) -> None:
    with pytest.raises(InvalidPayload):
        parse_stripe_event(body)


def test_invalid_payload_keeps_event_id_when_known() -> None:
    with pytest.raises(InvalidPayload) as exc_info:
        parse_stripe_event(_body("customer.subscription.updated", {"status": "active"}))

    assert exc_info.value.event_id == "evt_1"
