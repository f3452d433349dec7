"""Stripe event parsing.

WHAT: Validates a verified Stripe event body and turns it into a WebhookEvent
      carrying one tagged payload variant per known event kind.
WHY: Provider payloads are dynamic JSON. Shape checks happen here, once,
     before any field is read by the pipeline; unknown kinds become an
     explicit UnhandledEvent instead of falling through.

Event kinds:
    - customer.subscription.created / updated / deleted -> SubscriptionChanged
    - invoice.payment_succeeded / invoice.payment_failed -> InvoicePayment
    - checkout.session.completed                        -> CheckoutCompleted
    - anything else                                     -> UnhandledEvent

REFERENCES:
    - https://docs.stripe.com/api/events/object
    - app/services/stripe_signature.py (calls parse_stripe_event after HMAC check)
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .billing_errors import InvalidPayload


SUBSCRIPTION_EVENT_TYPES = frozenset({
    "customer.subscription.created",
    "customer.subscription.updated",
    "customer.subscription.deleted",
})
INVOICE_EVENT_TYPES = frozenset({
    "invoice.payment_succeeded",
    "invoice.payment_failed",
})
CHECKOUT_COMPLETED = "checkout.session.completed"


def from_unix(value: Optional[int]) -> Optional[datetime]:
    """Stripe timestamps are unix seconds; None stays None."""
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


def _check_timestamp(value: Optional[int]) -> Optional[int]:
    # Converted here so an out-of-range value fails validation, not processing
    try:
        from_unix(value)
    except (OverflowError, OSError, ValueError) as e:
        raise ValueError(f"timestamp out of range: {value}") from e
    return value


def _expandable_id(value: Any) -> Any:
    # Expandable fields arrive either as an id string or as the expanded object
    if isinstance(value, dict):
        return value.get("id")
    return value


# =============================================================================
# PROVIDER OBJECT SHAPES
# =============================================================================

class StripeSubscriptionObject(BaseModel):
    """The subset of a Stripe subscription object the reconciler needs."""

    model_config = ConfigDict(extra="ignore")

    id: str
    customer: Optional[str] = None
    status: Optional[str] = None
    current_period_start: Optional[int] = None
    current_period_end: Optional[int] = None
    cancel_at_period_end: bool = False
    cancel_at: Optional[int] = None
    canceled_at: Optional[int] = None
    trial_end: Optional[int] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    items: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("current_period_start", "current_period_end", "cancel_at", "canceled_at", "trial_end")
    @classmethod
    def _timestamp_in_range(cls, value: Optional[int]) -> Optional[int]:
        return _check_timestamp(value)

    @field_validator("customer", mode="before")
    @classmethod
    def _normalize_customer(cls, value: Any) -> Any:
        return _expandable_id(value)

    @field_validator("metadata", "items", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        return value or {}

    def _first_item(self) -> Dict[str, Any]:
        data = self.items.get("data") or []
        return data[0] if data and isinstance(data[0], dict) else {}

    @property
    def price_id(self) -> Optional[str]:
        price = self._first_item().get("price") or {}
        return price.get("id") if isinstance(price, dict) else price

    @property
    def price_interval(self) -> Optional[str]:
        price = self._first_item().get("price") or {}
        recurring = price.get("recurring") if isinstance(price, dict) else None
        return recurring.get("interval") if isinstance(recurring, dict) else None

    @property
    def period_start(self) -> Optional[datetime]:
        # API versions from 2025-03-31 moved billing periods onto the items
        return from_unix(self.current_period_start or self._first_item().get("current_period_start"))

    @property
    def period_end(self) -> Optional[datetime]:
        return from_unix(self.current_period_end or self._first_item().get("current_period_end"))

    @property
    def metadata_user_id(self) -> Optional[int]:
        return parse_user_id(self.metadata.get("userId"))

    @property
    def is_canceling(self) -> bool:
        """Scheduled to end, by the period-end flag or an explicit cancel_at date."""
        return self.cancel_at_period_end or (self.cancel_at is not None and self.status == "active")


class StripeInvoiceObject(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    customer: Optional[str] = None
    subscription: Optional[str] = None
    parent: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("customer", "subscription", mode="before")
    @classmethod
    def _normalize_ids(cls, value: Any) -> Any:
        return _expandable_id(value)

    @field_validator("parent", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        return value or {}

    @property
    def subscription_id(self) -> Optional[str]:
        if self.subscription:
            return self.subscription
        # Newer API versions nest it under parent.subscription_details
        details = self.parent.get("subscription_details") or {}
        return _expandable_id(details.get("subscription"))


class StripeCheckoutSessionObject(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    customer: Optional[str] = None
    subscription: Optional[str] = None
    client_reference_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("customer", "subscription", mode="before")
    @classmethod
    def _normalize_ids(cls, value: Any) -> Any:
        return _expandable_id(value)

    @field_validator("metadata", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        return value or {}

    @property
    def user_id(self) -> Optional[int]:
        return parse_user_id(self.metadata.get("userId")) or parse_user_id(self.client_reference_id)


class StripeEventEnvelope(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    type: str
    created: int
    data: Dict[str, Any]

    @field_validator("data")
    @classmethod
    def _require_object(cls, value: Dict[str, Any]) -> Dict[str, Any]:
        if not isinstance(value.get("object"), dict):
            raise ValueError("data.object must be an object")
        return value

    @field_validator("created")
    @classmethod
    def _created_in_range(cls, value: int) -> int:
        return _check_timestamp(value)


def parse_user_id(value: Any) -> Optional[int]:
    try:
        user_id = int(value)
    except (TypeError, ValueError):
        return None
    return user_id if user_id > 0 else None


# =============================================================================
# TAGGED PAYLOAD VARIANTS
# =============================================================================

@dataclass(frozen=True)
class SubscriptionChanged:
    subscription: StripeSubscriptionObject
    deleted: bool = False


@dataclass(frozen=True)
class InvoicePayment:
    subscription_id: Optional[str]
    customer_id: Optional[str]
    succeeded: bool


@dataclass(frozen=True)
class CheckoutCompleted:
    subscription_id: Optional[str]
    customer_id: Optional[str]
    user_id: Optional[int]


@dataclass(frozen=True)
class UnhandledEvent:
    pass


EventPayload = Union[SubscriptionChanged, InvoicePayment, CheckoutCompleted, UnhandledEvent]


@dataclass(frozen=True)
class WebhookEvent:
    """A verified Stripe event. Immutable once received.

    Attributes:
        id: Stripe event id, stable across redeliveries of the same event
        type: Stripe event type
        created: Provider timestamp; the ordering signal for reconciliation
        payload: Tagged variant for the event kind
        body: Parsed JSON body as received (stored for replay)
        raw_body: Exact signed bytes (empty when rebuilt from storage)
        received_at: Arrival time at this service
    """

    id: str
    type: str
    created: datetime
    payload: EventPayload
    body: Dict[str, Any]
    raw_body: bytes = b""
    received_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def _build_payload(event_type: str, obj: Dict[str, Any]) -> EventPayload:
    if event_type in SUBSCRIPTION_EVENT_TYPES:
        return SubscriptionChanged(
            subscription=StripeSubscriptionObject.model_validate(obj),
            deleted=event_type == "customer.subscription.deleted",
        )
    if event_type in INVOICE_EVENT_TYPES:
        invoice = StripeInvoiceObject.model_validate(obj)
        return InvoicePayment(
            subscription_id=invoice.subscription_id,
            customer_id=invoice.customer,
            succeeded=event_type == "invoice.payment_succeeded",
        )
    if event_type == CHECKOUT_COMPLETED:
        session = StripeCheckoutSessionObject.model_validate(obj)
        return CheckoutCompleted(
            subscription_id=session.subscription,
            customer_id=session.customer,
            user_id=session.user_id,
        )
    return UnhandledEvent()


def parse_stripe_event(body: Union[bytes, str, Dict[str, Any]], raw_body: bytes = b"") -> WebhookEvent:
    """Parse an event body into a WebhookEvent.

    Args:
        body: Raw JSON (bytes/str) or an already-decoded dict from storage
        raw_body: The signed bytes, kept for auditing

    Raises:
        InvalidPayload: Body is not JSON or not a valid event of its kind
    """
    if isinstance(body, dict):
        data = body
    else:
        try:
            data = json.loads(body)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise InvalidPayload(f"Event body is not valid JSON: {e}")
    if not isinstance(data, dict):
        raise InvalidPayload("Event body must be a JSON object")

    try:
        envelope = StripeEventEnvelope.model_validate(data)
        payload = _build_payload(envelope.type, envelope.data["object"])
    except ValidationError as e:
        raise InvalidPayload(
            f"Invalid event payload: {e.error_count()} validation error(s)",
            event_id=data.get("id") if isinstance(data.get("id"), str) else None,
        )

    return WebhookEvent(
        id=envelope.id,
        type=envelope.type,
        created=from_unix(envelope.created),
        payload=payload,
        body=data,
        raw_body=raw_body,
    )
