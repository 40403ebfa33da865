"""
Billing schemas for API request/response validation.

WHAT: Pydantic schemas for the billing action endpoint, the plan listing,
the session usage endpoints and the webhook acknowledgement.

WHY: The front end speaks camelCase JSON (organizationId, priceId,
clientSecret). Declaring aliases here keeps the services in snake_case
while the wire format stays what the client expects.

HOW: Pydantic v2 models with ``populate_by_name`` so tests and services
can build them with either spelling.
"""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, model_validator

# FHIR resource id syntax
ORGANIZATION_ID_PATTERN = r"^[A-Za-z0-9\-\.]{1,64}$"
PRICE_ID_PATTERN = r"^price_[A-Za-z0-9]+$"


class BillingAction(str, Enum):
    """Actions the billing endpoint accepts."""

    CREATE = "create"
    UPGRADE = "upgrade"
    CANCEL = "cancel"


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


# ============================================================================
# Billing actions
# ============================================================================


class BillingActionRequest(CamelModel):
    """
    Request body of POST /api/billing/actions.

    WHY: priceId is optional on the wire because cancel does not need it;
    the model validator enforces it for create and upgrade.
    """

    organization_id: str = Field(
        ...,
        alias="organizationId",
        pattern=ORGANIZATION_ID_PATTERN,
        description="FHIR Organization id",
    )
    action: BillingAction
    price_id: Optional[str] = Field(
        None,
        alias="priceId",
        pattern=PRICE_ID_PATTERN,
        description="Stripe price id of the target plan",
    )
    customer_name: Optional[str] = Field(None, alias="customerName", max_length=200)
    customer_email: Optional[EmailStr] = Field(None, alias="customerEmail")

    @model_validator(mode="after")
    def price_required_for_purchase(self) -> "BillingActionRequest":
        if self.action in (BillingAction.CREATE, BillingAction.UPGRADE) and not self.price_id:
            raise ValueError(f"priceId is required for {self.action.value}")
        return self


class BillingActionResponse(CamelModel):
    """
    Result of a billing action.

    - create: clientSecret + PaymentIntent status
    - upgrade: status "upgraded", or clientSecret + "requires_payment"
    - cancel: status "canceled"
    """

    client_secret: Optional[str] = Field(None, alias="clientSecret")
    status: Optional[str] = None


# ============================================================================
# Plans
# ============================================================================


class PlanResponse(CamelModel):
    price_id: str = Field(..., alias="priceId")
    amount_cents: int = Field(..., alias="amountCents")
    currency: str
    interval: str
    session_entitlement: int = Field(..., alias="sessionEntitlement")


class PlanListResponse(CamelModel):
    mode: str
    catalog_version: str = Field(..., alias="catalogVersion")
    free_tier_sessions: int = Field(..., alias="freeTierSessions")
    plans: List[PlanResponse]


# ============================================================================
# Session usage
# ============================================================================


class UsageResponse(CamelModel):
    """Session usage of one organization for the current period."""

    organization_id: str = Field(..., alias="organizationId")
    status: Optional[str] = None
    plan_price_id: Optional[str] = Field(None, alias="planPriceId")
    sessions_used: int = Field(..., alias="sessionsUsed")
    sessions_allowed: int = Field(..., alias="sessionsAllowed")
    sessions_remaining: int = Field(..., alias="sessionsRemaining")
    last_reset: Optional[datetime] = Field(None, alias="lastReset")
    period_end: Optional[datetime] = Field(None, alias="periodEnd")


# ============================================================================
# Webhooks
# ============================================================================


class WebhookAckResponse(CamelModel):
    received: bool = True
    event_id: str = Field(..., alias="eventId")
    event_type: str = Field(..., alias="eventType")
    handled: bool
