"""
Payment provider event types.

A verified delivery is parsed into an ``EventEnvelope`` and then narrowed to
one concrete event class. The dispatcher routes on the class, never on the
raw ``type`` string.
"""
from dataclasses import dataclass, field
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from app.core.exceptions import ValidationException

CHECKOUT_SESSION_COMPLETED = "checkout.session.completed"
PAYMENT_INTENT_SUCCEEDED = "payment_intent.succeeded"
PAYMENT_INTENT_PAYMENT_FAILED = "payment_intent.payment_failed"
CHARGE_SUCCEEDED = "charge.succeeded"


class EventEnvelope(BaseModel):
    """Uniquely identified, typed notification. Immutable once received."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str = Field(min_length=1)
    type: str = Field(min_length=1)
    created: int = 0
    livemode: bool = False
    data: dict[str, Any] = Field(default_factory=dict)

    @property
    def payload(self) -> dict[str, Any]:
        obj = self.data.get("object")
        return obj if isinstance(obj, dict) else {}


class CustomerDetails(BaseModel):
    model_config = ConfigDict(extra="ignore")

    email: Optional[str] = None
    name: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[dict[str, Any]] = None


class LineItem(BaseModel):
    model_config = ConfigDict(extra="ignore")

    description: Optional[str] = None
    quantity: Optional[int] = None
    amount_total: Optional[int] = None


class CheckoutSession(BaseModel):
    """The fields of a completed checkout session the pipeline reads"""

    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1)
    amount_total: Optional[int] = None
    currency: Optional[str] = None
    payment_status: Optional[str] = None
    payment_intent: Optional[str] = None
    customer_email: Optional[str] = None
    customer_details: CustomerDetails = Field(default_factory=CustomerDetails)
    metadata: dict[str, Any] = Field(default_factory=dict)
    consent: Optional[dict[str, Any]] = None
    consent_collection: Optional[dict[str, Any]] = None
    shipping_details: Optional[dict[str, Any]] = None
    line_items: list[LineItem] = Field(default_factory=list)

    @property
    def email(self) -> Optional[str]:
        return self.customer_details.email or self.customer_email

    @property
    def shipping_address(self) -> Optional[dict[str, Any]]:
        if self.shipping_details and self.shipping_details.get("address"):
            return self.shipping_details["address"]
        return None


@dataclass(frozen=True)
class CheckoutSessionCompleted:
    envelope: EventEnvelope
    session: CheckoutSession


@dataclass(frozen=True)
class PaymentIntentSucceeded:
    envelope: EventEnvelope
    payment_intent_id: str
    amount: Optional[int] = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PaymentIntentFailed:
    envelope: EventEnvelope
    payment_intent_id: str
    failure_code: Optional[str] = None
    failure_message: Optional[str] = None


@dataclass(frozen=True)
class ChargeSucceeded:
    envelope: EventEnvelope
    charge_id: str
    payment_intent_id: Optional[str] = None


@dataclass(frozen=True)
class UnhandledEvent:
    envelope: EventEnvelope


WebhookEvent = Union[
    CheckoutSessionCompleted,
    PaymentIntentSucceeded,
    PaymentIntentFailed,
    ChargeSucceeded,
    UnhandledEvent,
]


def _expandable_id(value: Any) -> Optional[str]:
    """Expandable fields arrive as an id string or as the expanded object"""
    if isinstance(value, str):
        return value or None
    if isinstance(value, dict):
        return value.get("id")
    return None


def _require_object_id(envelope: EventEnvelope) -> str:
    object_id = envelope.payload.get("id")
    if not object_id:
        raise ValidationException(
            f"Event {envelope.id} of type {envelope.type} carries no object id",
            field="data.object.id",
        )
    return str(object_id)


def parse_envelope(raw: dict[str, Any]) -> EventEnvelope:
    try:
        return EventEnvelope.model_validate(raw)
    except ValidationError as e:
        raise ValidationException(
            "Event envelope is malformed",
            details={"errors": e.errors(include_url=False, include_input=False)},
        ) from e


def parse_event(envelope: EventEnvelope) -> WebhookEvent:
    """Narrow an envelope to its concrete event class"""
    obj = envelope.payload

    if envelope.type == CHECKOUT_SESSION_COMPLETED:
        data = dict(obj)
        data["payment_intent"] = _expandable_id(obj.get("payment_intent"))
        line_items = obj.get("line_items")
        if isinstance(line_items, dict):
            data["line_items"] = line_items.get("data") or []
        elif line_items is None:
            data.pop("line_items", None)
        if data.get("customer_details") is None:
            data.pop("customer_details", None)
        if data.get("metadata") is None:
            data["metadata"] = {}
        try:
            session = CheckoutSession.model_validate(data)
        except ValidationError as e:
            raise ValidationException(
                "Checkout session payload is malformed",
                field="data.object",
                details={
                    "event_id": envelope.id,
                    "errors": e.errors(include_url=False, include_input=False),
                },
            ) from e
        return CheckoutSessionCompleted(envelope=envelope, session=session)

    if envelope.type == PAYMENT_INTENT_SUCCEEDED:
        return PaymentIntentSucceeded(
            envelope=envelope,
            payment_intent_id=_require_object_id(envelope),
            amount=obj.get("amount"),
            metadata=obj.get("metadata") or {},
        )

    if envelope.type == PAYMENT_INTENT_PAYMENT_FAILED:
        last_error = obj.get("last_payment_error") or {}
        return PaymentIntentFailed(
            envelope=envelope,
            payment_intent_id=_require_object_id(envelope),
            failure_code=last_error.get("code"),
            failure_message=last_error.get("message"),
        )

    if envelope.type == CHARGE_SUCCEEDED:
        return ChargeSucceeded(
            envelope=envelope,
            charge_id=_require_object_id(envelope),
            payment_intent_id=_expandable_id(obj.get("payment_intent")),
        )

    return UnhandledEvent(envelope=envelope)
