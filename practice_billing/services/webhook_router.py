"""
Stripe webhook event router.

WHAT: Applies verified Stripe events to Stripe itself (subscription
creation after the first payment) and to the FHIR Organization record.

WHY: Webhooks are the only path by which asynchronous Stripe outcomes
reach the record: a confirmed first payment, renewals, failed payments,
cancellations made in the Stripe dashboard. Stripe delivers at least once
and in no particular order, so every handler is safe to run twice and all
record writes go through the version-checked writer.

HOW:
- ``receive`` verifies the signature and decodes the body, auditing
  refusals, then hands the event to ``dispatch``
- ``dispatch`` looks the event type up in a handler table; types without a
  handler are audited and acknowledged
- Handler errors are audited and re-raised so the endpoint answers non-2xx
  and Stripe redelivers
- Subscription creation uses an idempotency key derived from the
  PaymentIntent id, and is skipped when the customer already has an
  active subscription
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, Optional, Union

from practice_billing.core.exceptions import AppException, ValidationError, WebhookPayloadError
from practice_billing.dao.organization_billing import OrganizationBillingDAO
from practice_billing.schemas.webhook_events import (
    ChargeSucceededEvent,
    PaymentIntentSucceededEvent,
    SubscriptionChangedEvent,
    SubscriptionDeletedEvent,
    WebhookEvent,
    decode_event,
)
from practice_billing.services.audit import AuditService
from practice_billing.services.billing_state import (
    BillingTrigger,
    OrganizationBillingState,
    SubscriptionStatus,
    utcnow,
)
from practice_billing.services.plan_catalog import PlanCatalog
from practice_billing.services.stripe_gateway import StripeGateway
from practice_billing.services.validators import require_organization_id

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WebhookOutcome:
    """What the webhook endpoint acknowledges back to Stripe."""

    event_id: str
    event_type: str
    handled: bool


def subscription_idempotency_key(payment_intent_id: str) -> str:
    return f"subscription-from-{payment_intent_id}"


class WebhookEventRouter:
    """
    Routes decoded Stripe events to their handlers.

    Example:
        router = WebhookEventRouter(gateway, organizations, catalog, audit)
        outcome = await router.dispatch(decode_event(body))
    """

    def __init__(
        self,
        gateway: StripeGateway,
        organizations: OrganizationBillingDAO,
        catalog: PlanCatalog,
        audit: AuditService,
    ):
        self.gateway = gateway
        self.organizations = organizations
        self.catalog = catalog
        self.audit = audit
        self._handlers: Dict[str, Callable[[WebhookEvent], Awaitable[None]]] = {
            "payment_intent.succeeded": self.handle_payment_intent_succeeded,
            "charge.succeeded": self.handle_charge_succeeded,
            "customer.subscription.created": self.handle_subscription_changed,
            "customer.subscription.updated": self.handle_subscription_changed,
            "customer.subscription.deleted": self.handle_subscription_deleted,
        }

    async def receive(self, payload: bytes, signature: Optional[str]) -> WebhookOutcome:
        """
        Verify, decode and dispatch one raw webhook delivery.

        Raises:
            WebhookSignatureError: If the signature does not verify
            WebhookPayloadError: If the verified body is not a usable event
            AppException: Whatever the handler raised
        """
        try:
            self.gateway.verify_webhook_signature(payload, signature)
            event = decode_event(payload)
        except AppException as e:
            await self.audit.record("webhook-rejected", {"error": e.to_dict()})
            raise
        return await self.dispatch(event)

    async def dispatch(self, event: WebhookEvent) -> WebhookOutcome:
        """
        Run the handler registered for the event's type.

        Returns:
            WebhookOutcome; ``handled`` is False for types without a handler

        Raises:
            AppException: Whatever the handler raised, after auditing it
        """
        handler = self._handlers.get(event.type)
        if handler is None:
            logger.info(
                f"Ignoring unhandled webhook event type {event.type}",
                extra={"event_id": event.id, "event_type": event.type},
            )
            await self.audit.record(
                "webhook-ignored",
                {"event_id": event.id, "event_type": event.type},
            )
            return WebhookOutcome(event_id=event.id, event_type=event.type, handled=False)

        logger.info(
            f"Processing webhook event {event.id} ({event.type})",
            extra={"event_id": event.id, "event_type": event.type},
        )
        try:
            await handler(event)
        except AppException as e:
            await self.audit.record(
                "webhook-failed",
                {"event_id": event.id, "event_type": event.type, "error": e.to_dict()},
            )
            raise
        return WebhookOutcome(event_id=event.id, event_type=event.type, handled=True)

    # ========================================================================
    # payment_intent.succeeded
    # ========================================================================

    async def handle_payment_intent_succeeded(self, event: PaymentIntentSucceededEvent) -> None:
        """
        Turn a confirmed first payment into a recurring subscription.

        HOW:
        1. Re-fetch the PaymentIntent (the event copy may be stale)
        2. Resolve organization and plan from its metadata
        3. Attach the card to the customer and make it the default
        4. Create the subscription, anchored one interval ahead so the
           period already paid is not billed again

        The subscription webhooks that follow update the FHIR record.
        """
        intent = await self.gateway.retrieve_payment_intent(event.data.object.id)
        organization_id = intent.metadata.get("organizationId")
        price_id = intent.metadata.get("priceId")
        if not organization_id or not price_id:
            raise WebhookPayloadError(
                message="PaymentIntent metadata lacks organizationId or priceId",
                event_id=event.id,
                payment_intent_id=intent.id,
            )
        organization_id = require_organization_id(organization_id)
        if not intent.customer_id or not intent.payment_method_id:
            raise WebhookPayloadError(
                message="PaymentIntent has no customer or payment method",
                event_id=event.id,
                payment_intent_id=intent.id,
            )

        plan = self.catalog.resolve(self.gateway.mode, price_id)

        await self.audit.track(
            "stripe-attach-payment-method",
            self.gateway.attach_payment_method(intent.payment_method_id, intent.customer_id),
            organization_id=organization_id,
            describe=lambda attached: {"newly_attached": attached},
            payment_method_id=intent.payment_method_id,
            customer_id=intent.customer_id,
        )
        await self.audit.track(
            "stripe-set-default-payment-method",
            self.gateway.set_default_payment_method(intent.customer_id, intent.payment_method_id),
            organization_id=organization_id,
            customer_id=intent.customer_id,
        )

        existing = await self.gateway.list_active_subscriptions(intent.customer_id)
        if existing:
            logger.info(
                f"Customer {intent.customer_id} already has subscription {existing[0].id}; "
                f"not creating another for {intent.id}",
                extra={"organization_id": organization_id, "payment_intent_id": intent.id},
            )
            await self.audit.record(
                "stripe-create-subscription-skipped",
                {
                    "event_id": event.id,
                    "payment_intent_id": intent.id,
                    "subscription_id": existing[0].id,
                },
                organization_id=organization_id,
            )
            return

        await self.audit.track(
            "stripe-create-subscription",
            self.gateway.create_subscription(
                customer_id=intent.customer_id,
                price_id=plan.price_id,
                payment_method_id=intent.payment_method_id,
                metadata={"organizationId": organization_id, "priceId": plan.price_id},
                idempotency_key=subscription_idempotency_key(intent.id),
                billing_cycle_anchor=plan.next_billing_date(utcnow()),
            ),
            organization_id=organization_id,
            describe=lambda sub: {"subscription_id": sub.id, "status": sub.status},
            event_id=event.id,
            payment_intent_id=intent.id,
            price_id=plan.price_id,
        )

    # ========================================================================
    # charge.succeeded
    # ========================================================================

    async def handle_charge_succeeded(self, event: ChargeSucceededEvent) -> None:
        charge = event.data.object
        await self.audit.record(
            "webhook-charge-succeeded",
            {
                "event_id": event.id,
                "charge_id": charge.id,
                "payment_intent_id": charge.payment_intent,
                "amount": charge.amount,
            },
            organization_id=charge.metadata.get("organizationId"),
        )

    # ========================================================================
    # customer.subscription.*
    # ========================================================================

    async def _organization_of(
        self, event: Union[SubscriptionChangedEvent, SubscriptionDeletedEvent]
    ) -> Optional[str]:
        subscription = event.data.object
        organization_id = subscription.metadata.get("organizationId")
        if not organization_id:
            logger.warning(
                f"Subscription {subscription.id} has no organizationId metadata; "
                f"ignoring {event.type}",
                extra={"event_id": event.id, "subscription_id": subscription.id},
            )
            await self.audit.record(
                "webhook-missing-organization",
                {"event_id": event.id, "event_type": event.type, "subscription_id": subscription.id},
            )
            return None
        try:
            return require_organization_id(organization_id)
        except ValidationError as e:
            logger.warning(
                f"Subscription {subscription.id} has malformed organizationId metadata; "
                f"ignoring {event.type}",
                extra={"event_id": event.id, "subscription_id": subscription.id},
            )
            await self.audit.record(
                "webhook-invalid-organization",
                {
                    "event_id": event.id,
                    "event_type": event.type,
                    "subscription_id": subscription.id,
                    "error": e.to_dict(),
                },
            )
            return None

    async def handle_subscription_changed(self, event: SubscriptionChangedEvent) -> None:
        """
        Mirror a created or updated subscription onto the record.

        sessions_allowed follows the catalog entitlement of the new price,
        or the free tier when the price is not in the active catalog.
        A late update for the subscription already recorded as canceled
        leaves the record alone.
        """
        organization_id = await self._organization_of(event)
        if organization_id is None:
            return

        subscription = event.data.object
        status = SubscriptionStatus.parse(subscription.status)
        plan = (
            self.catalog.find(self.gateway.mode, subscription.price_id)
            if subscription.price_id
            else None
        )
        if plan is None and subscription.price_id:
            logger.warning(
                f"Price {subscription.price_id} of subscription {subscription.id} "
                f"is not in the plan catalog; granting the free tier",
                extra={"organization_id": organization_id, "price_id": subscription.price_id},
            )
        sessions_allowed = (
            plan.session_entitlement if plan else self.organizations.free_tier_sessions
        )
        period_end = (
            datetime.fromtimestamp(subscription.period_end_timestamp, tz=timezone.utc)
            if subscription.period_end_timestamp is not None
            else None
        )

        def sync(current: OrganizationBillingState) -> OrganizationBillingState:
            if (
                current.subscription_id == subscription.id
                and current.status == SubscriptionStatus.CANCELED
                and status != SubscriptionStatus.CANCELED
            ):
                # Stripe never reactivates a canceled subscription
                return current
            return current.evolve(
                status=status,
                plan_price_id=subscription.price_id or current.plan_price_id,
                subscription_id=subscription.id,
                period_end=period_end or current.period_end,
                sessions_allowed=sessions_allowed,
            )

        await self.audit.track(
            "fhir-subscription-synced",
            self.organizations.apply(organization_id, BillingTrigger.SUBSCRIPTION_SYNCED, sync),
            organization_id=organization_id,
            describe=lambda result: {"written": result.written, "version_id": result.version_id},
            event_id=event.id,
            subscription_id=subscription.id,
            status=subscription.status,
            price_id=subscription.price_id,
        )

    async def handle_subscription_deleted(self, event: SubscriptionDeletedEvent) -> None:
        """
        Mark the record canceled.

        Only status and period end change. A deletion of a subscription
        other than the one on record (an older, replaced one) is ignored.
        """
        organization_id = await self._organization_of(event)
        if organization_id is None:
            return

        subscription = event.data.object
        ended_at = (
            datetime.fromtimestamp(subscription.canceled_at, tz=timezone.utc)
            if subscription.canceled_at is not None
            else utcnow()
        )

        def mark_canceled(current: OrganizationBillingState) -> OrganizationBillingState:
            if current.subscription_id and current.subscription_id != subscription.id:
                return current
            return current.evolve(status=SubscriptionStatus.CANCELED, period_end=ended_at)

        await self.audit.track(
            "fhir-subscription-deleted",
            self.organizations.apply(organization_id, BillingTrigger.SUBSCRIPTION_DELETED, mark_canceled),
            organization_id=organization_id,
            describe=lambda result: {"written": result.written, "version_id": result.version_id},
            event_id=event.id,
            subscription_id=subscription.id,
        )
