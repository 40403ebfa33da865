"""
Billing action service for session-plan subscriptions.

WHAT: Business logic behind the synchronous billing actions a practice
administrator triggers from the billing page: create, upgrade and cancel.

WHY: Each action changes Stripe and the FHIR Organization record, two
systems without a shared transaction. This service orders the steps so
the record never claims more than Stripe has done, audits every step, and
reports a partial failure explicitly when the second system refuses.

HOW: Integrates with:
- StripeGateway for customers, PaymentIntents and subscriptions
- OrganizationBillingDAO for version-checked record writes
- PlanCatalog for price -> entitlement resolution
- AuditService for step-by-step audit entries

Design decisions:
- create only collects the first payment; the subscription is created by
  the payment_intent.succeeded webhook once Stripe confirms the charge
- upgrade bills the prorated difference immediately
- cancel is immediate and drops the organization to the free tier
"""

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, List, Optional

from practice_billing.core.exceptions import (
    AppException,
    CustomerNotFoundError,
    PartialFailureError,
    StripeError,
    SubscriptionAlreadyExistsError,
    SubscriptionNotFoundError,
    ValidationError,
)
from practice_billing.dao.organization_billing import OrganizationBillingDAO
from practice_billing.schemas.billing import BillingAction, BillingActionRequest
from practice_billing.services.audit import AuditService
from practice_billing.services.billing_state import (
    BillingTrigger,
    OrganizationBillingState,
    SubscriptionStatus,
    TransitionOutcome,
    utcnow,
)
from practice_billing.services.plan_catalog import Plan, PlanCatalog
from practice_billing.services.stripe_gateway import (
    PaymentIntent,
    StripeCustomer,
    StripeGateway,
    StripeSubscription,
)
from practice_billing.services.validators import require_organization_id, require_price_id

logger = logging.getLogger(__name__)

UPGRADED = "upgraded"
REQUIRES_PAYMENT = "requires_payment"


@dataclass(frozen=True)
class BillingActionResult:
    """What the billing page needs to continue: a client secret and/or a status."""

    status: Optional[str] = None
    client_secret: Optional[str] = None


class BillingService:
    """
    Service for synchronous billing actions.

    Example:
        service = BillingService(gateway, organizations, catalog, audit)
        result = await service.create_subscription("org-123", "price_...")
        # front end confirms result.client_secret with Stripe.js
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

    # ========================================================================
    # Dispatch
    # ========================================================================

    async def handle_action(self, request: BillingActionRequest) -> BillingActionResult:
        """Run the action named in a billing request."""
        if request.action == BillingAction.CREATE:
            return await self.create_subscription(
                request.organization_id,
                request.price_id,
                customer_name=request.customer_name,
                customer_email=request.customer_email,
            )
        if request.action == BillingAction.UPGRADE:
            return await self.upgrade_subscription(request.organization_id, request.price_id)
        return await self.cancel_subscription(request.organization_id)

    # ========================================================================
    # Shared steps
    # ========================================================================

    async def _resolve_plan(self, organization_id: str, price_id: str) -> Plan:
        mode = self.gateway.mode
        return await self.audit.track(
            "plan-lookup",
            self._lookup(mode, price_id),
            organization_id=organization_id,
            describe=lambda plan: {
                "session_entitlement": plan.session_entitlement,
                "amount_cents": plan.amount_cents,
                "catalog_version": self.catalog.version,
            },
            price_id=price_id,
            mode=mode.value,
        )

    async def _lookup(self, mode, price_id: str) -> Plan:
        return self.catalog.resolve(mode, price_id)

    async def _find_customer(self, organization_id: str) -> Optional[StripeCustomer]:
        return await self.audit.track(
            "stripe-find-customer",
            self.gateway.find_customer_by_organization(organization_id),
            organization_id=organization_id,
            describe=lambda customer: {"customer_id": customer.id if customer else None},
        )

    async def _require_customer(self, organization_id: str) -> StripeCustomer:
        customer = await self._find_customer(organization_id)
        if customer is None:
            raise CustomerNotFoundError(organization_id=organization_id)
        return customer

    async def _active_subscriptions(
        self, organization_id: str, customer: StripeCustomer
    ) -> List[StripeSubscription]:
        return await self.audit.track(
            "stripe-list-subscriptions",
            self.gateway.list_active_subscriptions(customer.id),
            organization_id=organization_id,
            describe=lambda subs: {"subscription_ids": [sub.id for sub in subs]},
            customer_id=customer.id,
        )

    async def _require_active_subscription(
        self, organization_id: str, customer: StripeCustomer
    ) -> StripeSubscription:
        subscriptions = await self._active_subscriptions(organization_id, customer)
        if not subscriptions:
            raise SubscriptionNotFoundError(
                organization_id=organization_id,
                customer_id=customer.id,
            )
        return subscriptions[0]

    async def _rejections_audited(
        self,
        action: BillingAction,
        organization_id: Optional[str],
        operation: Awaitable[BillingActionResult],
        **details: Any,
    ) -> BillingActionResult:
        """
        Await an action, recording ``<action>-rejected`` if it raises.

        Guard refusals (conflicts, missing customer, bad input) happen
        outside any tracked step, so this is where they reach the audit log.
        """
        try:
            return await operation
        except AppException as e:
            try:
                attributed = require_organization_id(organization_id)
            except ValidationError:
                attributed = None
            await self.audit.record(
                f"{action.value}-rejected",
                {"error": e.to_dict(), "organization_id": organization_id, **details},
                organization_id=attributed,
            )
            raise

    async def _write_record(
        self,
        organization_id: str,
        trigger: BillingTrigger,
        mutate,
        **details: Any,
    ):
        return await self.audit.track(
            f"fhir-{trigger.value.replace('_', '-')}",
            self.organizations.apply(organization_id, trigger, mutate),
            organization_id=organization_id,
            describe=lambda result: {
                "outcome": result.outcome.value,
                "written": result.written,
                "version_id": result.version_id,
                "attempts": result.attempts,
            },
            **details,
        )

    # ========================================================================
    # create
    # ========================================================================

    async def create_subscription(
        self,
        organization_id: str,
        price_id: Optional[str],
        customer_name: Optional[str] = None,
        customer_email: Optional[str] = None,
    ) -> BillingActionResult:
        """
        Start a plan purchase by creating the first PaymentIntent.

        HOW:
        1. Resolve the plan; refuse if the record already shows an active plan
        2. Find or create the organization's Stripe customer; refuse if it
           already has an active subscription
        3. Create the PaymentIntent for the plan amount
        4. Record the pending purchase on the Organization

        Returns:
            BillingActionResult with the PaymentIntent client secret and status

        Raises:
            ValidationError: Malformed input or missing Stripe secret
            PlanNotFoundError: Price id not in the active catalog mode
            SubscriptionAlreadyExistsError: Organization is already paying
            PartialFailureError: PaymentIntent created but record write failed
        """
        return await self._rejections_audited(
            BillingAction.CREATE,
            organization_id,
            self._create_subscription(organization_id, price_id, customer_name, customer_email),
            price_id=price_id,
        )

    async def _create_subscription(
        self,
        organization_id: str,
        price_id: Optional[str],
        customer_name: Optional[str],
        customer_email: Optional[str],
    ) -> BillingActionResult:
        organization_id = require_organization_id(organization_id)
        price_id = require_price_id(price_id)
        plan = await self._resolve_plan(organization_id, price_id)

        state = await self.audit.track(
            "fhir-read-organization",
            self.organizations.get_state(organization_id),
            organization_id=organization_id,
            describe=lambda s: {"status": s.status.value if s.status else None},
        )
        if state.status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING):
            raise SubscriptionAlreadyExistsError(
                organization_id=organization_id,
                status=state.status.value,
            )

        customer = await self._find_customer(organization_id)
        if customer is not None:
            if customer_name or customer_email:
                customer = await self.audit.track(
                    "stripe-update-customer",
                    self.gateway.update_customer(customer.id, customer_name, customer_email),
                    organization_id=organization_id,
                    customer_id=customer.id,
                )
            if await self._active_subscriptions(organization_id, customer):
                raise SubscriptionAlreadyExistsError(
                    organization_id=organization_id,
                    customer_id=customer.id,
                )
        else:
            customer = await self.audit.track(
                "stripe-create-customer",
                self.gateway.create_customer(organization_id, customer_name, customer_email),
                organization_id=organization_id,
                describe=lambda c: {"customer_id": c.id},
            )

        intent = await self.audit.track(
            "stripe-create-payment-intent",
            self.gateway.create_payment_intent(
                customer_id=customer.id,
                amount_cents=plan.amount_cents,
                currency=plan.currency,
                metadata={"organizationId": organization_id, "priceId": plan.price_id},
            ),
            organization_id=organization_id,
            describe=lambda pi: {"payment_intent_id": pi.id, "status": pi.status},
            customer_id=customer.id,
            amount_cents=plan.amount_cents,
        )
        if not intent.client_secret:
            intent = await self.gateway.retrieve_payment_intent(intent.id)
            if not intent.client_secret:
                raise StripeError(
                    message="Stripe returned a payment intent without a client secret",
                    payment_intent_id=intent.id,
                )

        def mark_pending(current: OrganizationBillingState) -> OrganizationBillingState:
            return current.evolve(
                status=SubscriptionStatus.parse(intent.status) or SubscriptionStatus.REQUIRES_PAYMENT_METHOD,
                plan_price_id=plan.price_id,
                sessions_allowed=plan.session_entitlement,
                last_reset=utcnow(),
            )

        try:
            result = await self._write_record(
                organization_id,
                BillingTrigger.CREATE,
                mark_pending,
                payment_intent_id=intent.id,
                price_id=plan.price_id,
            )
        except AppException as e:
            compensated = await self._cancel_payment_intent(organization_id, intent)
            raise PartialFailureError(
                message="Payment was prepared but the organization record could not be updated",
                completed_steps=["customer", "payment_intent"],
                compensated=compensated,
                organization_id=organization_id,
                payment_intent_id=intent.id,
                cause=e.__class__.__name__,
            ) from e

        if result.outcome == TransitionOutcome.SKIP:
            # Another request activated the organization while this one ran.
            await self._cancel_payment_intent(organization_id, intent)
            raise SubscriptionAlreadyExistsError(
                organization_id=organization_id,
                status=result.state.status.value if result.state.status else None,
            )

        logger.info(
            f"Started {plan.price_id} purchase for organization {organization_id}",
            extra={
                "organization_id": organization_id,
                "payment_intent_id": intent.id,
                "price_id": plan.price_id,
            },
        )
        return BillingActionResult(status=intent.status, client_secret=intent.client_secret)

    async def _cancel_payment_intent(self, organization_id: str, intent: PaymentIntent) -> bool:
        """Compensate a PaymentIntent the record never learned about."""
        try:
            await self.audit.track(
                "stripe-cancel-payment-intent",
                self.gateway.cancel_payment_intent(intent.id),
                organization_id=organization_id,
                payment_intent_id=intent.id,
            )
        except AppException:
            logger.error(
                f"Could not cancel payment intent {intent.id} after failed record write",
                extra={"organization_id": organization_id, "payment_intent_id": intent.id},
            )
            return False
        return True

    # ========================================================================
    # upgrade
    # ========================================================================

    async def upgrade_subscription(
        self,
        organization_id: str,
        price_id: Optional[str],
    ) -> BillingActionResult:
        """
        Move an active subscription to another plan.

        Returns:
            ``status="upgraded"`` when the prorated invoice is settled, or
            ``status="requires_payment"`` with the invoice's client secret
            when the customer must confirm the payment

        Raises:
            SubscriptionNotFoundError: Record is not active or Stripe has no
                active subscription
            CustomerNotFoundError: No Stripe customer for the organization
            ValidationError: Target plan equals the current one
            PartialFailureError: Stripe changed but the record write failed
        """
        return await self._rejections_audited(
            BillingAction.UPGRADE,
            organization_id,
            self._upgrade_subscription(organization_id, price_id),
            price_id=price_id,
        )

    async def _upgrade_subscription(
        self, organization_id: str, price_id: Optional[str]
    ) -> BillingActionResult:
        organization_id = require_organization_id(organization_id)
        price_id = require_price_id(price_id)
        plan = await self._resolve_plan(organization_id, price_id)

        state = await self.organizations.get_state(organization_id)
        if state.status != SubscriptionStatus.ACTIVE:
            raise SubscriptionNotFoundError(
                message="No active subscription to upgrade",
                organization_id=organization_id,
                status=state.status.value if state.status else None,
            )

        customer = await self._require_customer(organization_id)
        subscription = await self._require_active_subscription(organization_id, customer)
        if subscription.price_id == plan.price_id:
            raise ValidationError(
                message="Organization is already on this plan",
                organization_id=organization_id,
                price_id=plan.price_id,
            )

        updated = await self.audit.track(
            "stripe-update-subscription",
            self.gateway.change_subscription_price(
                subscription,
                plan.price_id,
                metadata={"organizationId": organization_id, "priceId": plan.price_id},
            ),
            organization_id=organization_id,
            describe=lambda sub: {
                "status": sub.status,
                "invoice_status": sub.latest_invoice.status if sub.latest_invoice else None,
            },
            subscription_id=subscription.id,
            previous_price_id=subscription.price_id,
            price_id=plan.price_id,
        )

        def apply_plan(current: OrganizationBillingState) -> OrganizationBillingState:
            return current.evolve(
                plan_price_id=plan.price_id,
                subscription_id=updated.id,
                sessions_allowed=plan.session_entitlement,
            )

        try:
            await self._write_record(
                organization_id,
                BillingTrigger.UPGRADE,
                apply_plan,
                subscription_id=updated.id,
                price_id=plan.price_id,
            )
        except AppException as e:
            raise PartialFailureError(
                message="Subscription was changed but the organization record could not be updated",
                completed_steps=["subscription_update"],
                compensated=False,
                organization_id=organization_id,
                subscription_id=updated.id,
                cause=e.__class__.__name__,
            ) from e

        invoice = updated.latest_invoice
        if invoice is not None and not invoice.is_paid and invoice.payment_intent_client_secret:
            return BillingActionResult(
                status=REQUIRES_PAYMENT,
                client_secret=invoice.payment_intent_client_secret,
            )
        return BillingActionResult(status=UPGRADED)

    # ========================================================================
    # cancel
    # ========================================================================

    async def cancel_subscription(self, organization_id: str) -> BillingActionResult:
        """
        Cancel the active subscription immediately.

        The record drops to the free tier right away; the later
        customer.subscription.deleted webhook only confirms the status.

        Raises:
            CustomerNotFoundError, SubscriptionNotFoundError: Nothing to cancel
            PartialFailureError: Stripe canceled but the record write failed
        """
        return await self._rejections_audited(
            BillingAction.CANCEL,
            organization_id,
            self._cancel_subscription(organization_id),
        )

    async def _cancel_subscription(self, organization_id: str) -> BillingActionResult:
        organization_id = require_organization_id(organization_id)
        mode = self.gateway.mode
        logger.debug(
            f"Canceling subscription of organization {organization_id} ({mode.value} mode)",
            extra={"organization_id": organization_id},
        )

        customer = await self._require_customer(organization_id)
        subscription = await self._require_active_subscription(organization_id, customer)

        await self.audit.track(
            "stripe-cancel-subscription",
            self.gateway.cancel_subscription(subscription.id),
            organization_id=organization_id,
            describe=lambda sub: {"status": sub.status},
            subscription_id=subscription.id,
        )

        free_tier = self.organizations.free_tier_sessions

        def drop_to_free_tier(current: OrganizationBillingState) -> OrganizationBillingState:
            now = utcnow()
            return current.evolve(
                status=SubscriptionStatus.CANCELED,
                subscription_id=subscription.id,
                period_end=now,
                sessions_allowed=free_tier,
                last_reset=now,
            )

        try:
            await self._write_record(
                organization_id,
                BillingTrigger.CANCEL,
                drop_to_free_tier,
                subscription_id=subscription.id,
            )
        except AppException as e:
            raise PartialFailureError(
                message="Subscription was canceled but the organization record could not be updated",
                completed_steps=["subscription_cancel"],
                compensated=False,
                organization_id=organization_id,
                subscription_id=subscription.id,
                cause=e.__class__.__name__,
            ) from e

        return BillingActionResult(status=SubscriptionStatus.CANCELED.value)

