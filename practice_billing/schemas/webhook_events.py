"""
Stripe webhook event schemas.

WHAT: Pydantic models for the Stripe events the billing service reacts to,
plus a catch-all for everything else.

WHY: The raw event body is decoded exactly once, right after signature
verification. Handlers then receive a typed event whose shape was checked
at the boundary, instead of digging through nested dicts. The set of
handled events is closed; any other type lands on UnhandledEvent and is
acknowledged without side effects.

HOW: ``decode_event`` reads the ``type`` field and validates the body
against the matching model, falling back to UnhandledEvent. Unknown fields
are ignored so new Stripe API fields never break decoding.
"""

from typing import Annotated, Any, Dict, List, Literal, Optional, Type, Union

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from practice_billing.core.exceptions import WebhookPayloadError


def _id_of(value: Any) -> Any:
    """Collapse an expanded Stripe object to its id."""
    if isinstance(value, dict):
        return value.get("id")
    return value


# Stripe fields that hold an id, or the object itself when expanded
ExpandableId = Annotated[Optional[str], BeforeValidator(_id_of)]


class StripeModel(BaseModel):
    model_config = ConfigDict(extra="ignore")


# ============================================================================
# Event payload objects
# ============================================================================


class PaymentIntentObject(StripeModel):
    id: str
    status: Optional[str] = None
    amount: Optional[int] = None
    customer: ExpandableId = None
    payment_method: ExpandableId = None
    metadata: Dict[str, str] = Field(default_factory=dict)


class ChargeObject(StripeModel):
    id: str
    status: Optional[str] = None
    amount: Optional[int] = None
    customer: ExpandableId = None
    payment_intent: ExpandableId = None
    metadata: Dict[str, str] = Field(default_factory=dict)


class PriceObject(StripeModel):
    id: str


class SubscriptionItemObject(StripeModel):
    id: Optional[str] = None
    price: PriceObject
    current_period_end: Optional[int] = None


class SubscriptionItemList(StripeModel):
    data: List[SubscriptionItemObject] = Field(default_factory=list)


class SubscriptionObject(StripeModel):
    id: str
    status: str
    customer: ExpandableId = None
    metadata: Dict[str, str] = Field(default_factory=dict)
    items: SubscriptionItemList = Field(default_factory=SubscriptionItemList)
    current_period_end: Optional[int] = None
    canceled_at: Optional[int] = None

    @property
    def price_id(self) -> Optional[str]:
        return self.items.data[0].price.id if self.items.data else None

    @property
    def period_end_timestamp(self) -> Optional[int]:
        """Subscription-level period end, falling back to the first item's."""
        if self.current_period_end is not None:
            return self.current_period_end
        if self.items.data:
            return self.items.data[0].current_period_end
        return None


# ============================================================================
# Events
# ============================================================================


class PaymentIntentData(StripeModel):
    object: PaymentIntentObject


class ChargeData(StripeModel):
    object: ChargeObject


class SubscriptionData(StripeModel):
    object: SubscriptionObject


class BaseEvent(StripeModel):
    id: str
    created: Optional[int] = None
    livemode: bool = False


class PaymentIntentSucceededEvent(BaseEvent):
    type: Literal["payment_intent.succeeded"]
    data: PaymentIntentData


class ChargeSucceededEvent(BaseEvent):
    type: Literal["charge.succeeded"]
    data: ChargeData


class SubscriptionChangedEvent(BaseEvent):
    """customer.subscription.created and .updated carry the same payload."""

    type: Literal["customer.subscription.created", "customer.subscription.updated"]
    data: SubscriptionData


class SubscriptionDeletedEvent(BaseEvent):
    type: Literal["customer.subscription.deleted"]
    data: SubscriptionData


class UnhandledEvent(BaseEvent):
    type: str
    data: Dict[str, Any] = Field(default_factory=dict)


WebhookEvent = Union[
    PaymentIntentSucceededEvent,
    ChargeSucceededEvent,
    SubscriptionChangedEvent,
    SubscriptionDeletedEvent,
    UnhandledEvent,
]

EVENT_MODELS: Dict[str, Type[BaseEvent]] = {
    "payment_intent.succeeded": PaymentIntentSucceededEvent,
    "charge.succeeded": ChargeSucceededEvent,
    "customer.subscription.created": SubscriptionChangedEvent,
    "customer.subscription.updated": SubscriptionChangedEvent,
    "customer.subscription.deleted": SubscriptionDeletedEvent,
}


def _describe(error: PydanticValidationError) -> List[str]:
    return [
        f"{'.'.join(str(part) for part in item['loc'])}: {item['msg']}"
        for item in error.errors()
    ]


class _EventEnvelope(StripeModel):
    id: str
    type: str


def decode_event(payload: Union[bytes, str]) -> WebhookEvent:
    """
    Decode a verified webhook body into its typed event.

    Raises:
        WebhookPayloadError: If the body is not a Stripe event, or a handled
            event type is missing fields its handler needs
    """
    try:
        envelope = _EventEnvelope.model_validate_json(payload)
    except PydanticValidationError as e:
        raise WebhookPayloadError(
            message="Webhook body is not a Stripe event",
            errors=_describe(e),
        ) from e

    model = EVENT_MODELS.get(envelope.type, UnhandledEvent)
    try:
        return model.model_validate_json(payload)
    except PydanticValidationError as e:
        raise WebhookPayloadError(
            message=f"Malformed {envelope.type} event",
            event_id=envelope.id,
            event_type=envelope.type,
            errors=_describe(e),
        ) from e
