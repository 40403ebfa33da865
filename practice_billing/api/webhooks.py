"""
Stripe webhook endpoint.

WHAT: POST /webhooks/stripe receives every Stripe event for the account.

WHY: Webhooks carry the asynchronous half of billing: confirmed first
payments, renewals, failed payments and cancellations.

SECURITY (OWASP A02):
- The raw body is verified against the Stripe-Signature header before it
  is parsed, and signatures older than the tolerance are refused
- No authentication beyond the signature; the route is not user-facing

Unlike a generic acknowledgement endpoint, processing errors are NOT
swallowed: the structured error response is non-2xx so Stripe redelivers,
and the handlers are idempotent.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request

from practice_billing.core.deps import get_webhook_router
from practice_billing.schemas.billing import WebhookAckResponse
from practice_billing.services.webhook_router import WebhookEventRouter

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


@router.post(
    "/stripe",
    response_model=WebhookAckResponse,
    summary="Stripe webhook",
    description="Verifies and applies a Stripe event.",
)
async def stripe_webhook(
    request: Request,
    event_router: WebhookEventRouter = Depends(get_webhook_router),
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
):
    """
    Handle one Stripe webhook delivery.

    Returns:
        Acknowledgment with the event id, type and whether a handler ran
    """
    # Raw body; re-serialized JSON would not match the signature
    payload = await request.body()
    outcome = await event_router.receive(payload, stripe_signature)

    return WebhookAckResponse(
        received=True,
        event_id=outcome.event_id,
        event_type=outcome.event_type,
        handled=outcome.handled,
    )
