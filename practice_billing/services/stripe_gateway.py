"""
Stripe payment gateway adapter for session-plan billing.

WHAT: Async interface to the Stripe operations the billing actions and
webhook handlers need: customer lookup by organization, PaymentIntents for
the first charge, payment method attachment, subscription create / price
change / cancel, and webhook signature verification.

WHY: Keeping every Stripe call behind one adapter gives:
1. One place that maps SDK errors to application exceptions
2. A bounded timeout on every call, with timeouts kept distinct from
   definitive rejections (a timed-out call may still have happened)
3. Small dataclasses instead of raw StripeObjects in the business logic,
   so services and tests never depend on SDK internals

HOW: Uses the Stripe Python SDK's async methods (``*_async``) with the API
key and pinned API version passed per request, each wrapped in
``asyncio.wait_for``.

Design decisions:
- Customer per organization, located by ``metadata['organizationId']``
- First payment via PaymentIntent (client-side confirmation); the
  subscription is created by the payment_intent.succeeded webhook
- No automatic retries: callers decide, using the ``retryable`` flag
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Dict, List, Optional

import stripe

from practice_billing.core.config import settings
from practice_billing.core.exceptions import (
    PaymentGatewayTimeoutError,
    StripeError,
    ValidationError,
    WebhookSignatureError,
)
from practice_billing.services.plan_catalog import BillingMode, mode_from_secret_key

logger = logging.getLogger(__name__)

# Stripe error code for attaching a payment method the customer already has
PAYMENT_METHOD_ALREADY_ATTACHED = "resource_already_exists"


# ============================================================================
# Data Classes
# ============================================================================


def _expandable_id(value: Any) -> Optional[str]:
    """Return the id of a Stripe field that may be an id or an expanded object."""
    if isinstance(value, dict):
        return value.get("id")
    return value


def _from_timestamp(value: Optional[int]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


@dataclass
class StripeCustomer:
    """Represents a Stripe customer."""

    id: str
    """Stripe customer ID (cus_xxx)."""

    email: Optional[str] = None
    name: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_stripe(cls, obj: Dict[str, Any]) -> "StripeCustomer":
        return cls(
            id=obj["id"],
            email=obj.get("email"),
            name=obj.get("name"),
            metadata=dict(obj.get("metadata") or {}),
        )


@dataclass
class PaymentIntent:
    """
    Represents a Stripe PaymentIntent.

    WHY: The first payment of a plan is collected with a PaymentIntent
    confirmed by the front end using ``client_secret``.
    """

    id: str
    """Stripe PaymentIntent ID (pi_xxx)."""

    amount: int
    """Amount in cents."""

    currency: str
    status: str
    """Payment status (succeeded, processing, requires_payment_method, etc.)."""

    client_secret: Optional[str] = None
    customer_id: Optional[str] = None
    payment_method_id: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_stripe(cls, obj: Dict[str, Any]) -> "PaymentIntent":
        return cls(
            id=obj["id"],
            amount=obj.get("amount") or 0,
            currency=obj.get("currency") or "usd",
            status=obj.get("status") or "",
            client_secret=obj.get("client_secret"),
            customer_id=_expandable_id(obj.get("customer")),
            payment_method_id=_expandable_id(obj.get("payment_method")),
            metadata=dict(obj.get("metadata") or {}),
        )


@dataclass
class StripeInvoice:
    """Latest invoice of a subscription, as returned after a price change."""

    id: str
    status: Optional[str] = None
    payment_intent_id: Optional[str] = None
    payment_intent_client_secret: Optional[str] = None
    payment_intent_status: Optional[str] = None

    @property
    def is_paid(self) -> bool:
        return self.status == "paid"

    @classmethod
    def from_stripe(cls, obj: Dict[str, Any]) -> "StripeInvoice":
        intent = obj.get("payment_intent")
        if isinstance(intent, dict):
            return cls(
                id=obj["id"],
                status=obj.get("status"),
                payment_intent_id=intent.get("id"),
                payment_intent_client_secret=intent.get("client_secret"),
                payment_intent_status=intent.get("status"),
            )
        return cls(id=obj["id"], status=obj.get("status"), payment_intent_id=intent)


@dataclass
class StripeSubscription:
    """
    Represents a Stripe subscription with a single price item.

    WHY: Session plans are one price per subscription, so the first item
    carries the plan.
    """

    id: str
    """Stripe subscription ID (sub_xxx)."""

    status: str
    customer_id: Optional[str] = None
    price_id: Optional[str] = None
    item_id: Optional[str] = None
    current_period_end: Optional[datetime] = None
    canceled_at: Optional[datetime] = None
    metadata: Dict[str, str] = field(default_factory=dict)
    latest_invoice: Optional[StripeInvoice] = None

    @classmethod
    def from_stripe(cls, obj: Dict[str, Any]) -> "StripeSubscription":
        items = (obj.get("items") or {}).get("data") or []
        first_item = items[0] if items else {}
        price = first_item.get("price") or {}
        period_end = obj.get("current_period_end") or first_item.get("current_period_end")
        invoice = obj.get("latest_invoice")
        return cls(
            id=obj["id"],
            status=obj.get("status") or "",
            customer_id=_expandable_id(obj.get("customer")),
            price_id=price.get("id") if isinstance(price, dict) else price,
            item_id=first_item.get("id"),
            current_period_end=_from_timestamp(period_end),
            canceled_at=_from_timestamp(obj.get("canceled_at")),
            metadata=dict(obj.get("metadata") or {}),
            latest_invoice=StripeInvoice.from_stripe(invoice) if isinstance(invoice, dict) else None,
        )


# ============================================================================
# Stripe Gateway
# ============================================================================


class StripeGateway:
    """
    Service for Stripe billing operations.

    Example:
        gateway = StripeGateway(api_key="sk_test_...")
        customer = await gateway.find_customer_by_organization("org-123")
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        api_version: str = settings.STRIPE_API_VERSION,
        timeout: float = settings.STRIPE_TIMEOUT_SECONDS,
        webhook_tolerance: int = settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS,
    ):
        """
        Initialize Stripe gateway.

        Args:
            api_key: Stripe secret key; its prefix selects the billing mode
            webhook_secret: Signing secret of the webhook endpoint (whsec_xxx)
            api_version: Pinned Stripe API version
            timeout: Upper bound in seconds for every Stripe call
            webhook_tolerance: Maximum signature age in seconds
        """
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self._api_version = api_version
        self._timeout = timeout
        self._webhook_tolerance = webhook_tolerance

    @property
    def mode(self) -> BillingMode:
        """
        Billing mode selected by the secret key.

        Raises:
            ValidationError: If the secret key is missing or malformed
        """
        return mode_from_secret_key(self.api_key)

    def _options(self, **extra: Any) -> Dict[str, Any]:
        if not self.api_key:
            raise ValidationError(
                message="Stripe secret key is not configured",
                setting="STRIPE_SECRET_KEY",
            )
        return {"api_key": self.api_key, "stripe_version": self._api_version, **extra}

    async def _call(self, operation: str, awaitable: Awaitable[Any], **context: Any) -> Any:
        """
        Await a Stripe SDK call with timeout and error mapping.

        StripeObject results (lists included) come back as plain nested
        dicts; current SDK releases no longer subclass dict.

        Raises:
            PaymentGatewayTimeoutError: On timeout or connection failure
            StripeError: On any error Stripe returned
        """
        try:
            result = await asyncio.wait_for(awaitable, timeout=self._timeout)
        except asyncio.TimeoutError as e:
            logger.warning(
                f"Stripe {operation} timed out after {self._timeout}s",
                extra={"operation": operation, **context},
            )
            raise PaymentGatewayTimeoutError(
                message=f"Stripe {operation} timed out",
                operation=operation,
                timeout=self._timeout,
                **context,
            ) from e
        except stripe.APIConnectionError as e:
            logger.warning(
                f"Stripe {operation} connection error: {e}",
                extra={"operation": operation, **context},
            )
            raise PaymentGatewayTimeoutError(
                message=f"Could not reach Stripe for {operation}",
                operation=operation,
                stripe_error=str(e),
                **context,
            ) from e
        except stripe.StripeError as e:
            logger.error(
                f"Stripe {operation} error: {e}",
                extra={"operation": operation, "stripe_code": e.code, **context},
            )
            raise StripeError(
                message=f"Stripe {operation} failed",
                operation=operation,
                stripe_error=e.user_message or str(e),
                stripe_code=e.code,
                **context,
            ) from e

        if isinstance(result, stripe.StripeObject):
            return result.to_dict()
        return result

    # ========================================================================
    # Customer Management
    # ========================================================================

    async def find_customer_by_organization(self, organization_id: str) -> Optional[StripeCustomer]:
        """
        Find the customer created for an organization.

        Note:
            Stripe search is eventually consistent; a customer created a few
            seconds ago may not be returned yet.
        """
        result = await self._call(
            "customer search",
            stripe.Customer.search_async(
                query=f"metadata['organizationId']:'{organization_id}'",
                limit=1,
                **self._options(),
            ),
            organization_id=organization_id,
        )
        data = result["data"]
        return StripeCustomer.from_stripe(data[0]) if data else None

    async def create_customer(
        self,
        organization_id: str,
        name: Optional[str] = None,
        email: Optional[str] = None,
    ) -> StripeCustomer:
        params: Dict[str, Any] = {"metadata": {"organizationId": organization_id}}
        if name:
            params["name"] = name
        if email:
            params["email"] = email

        customer = await self._call(
            "customer create",
            stripe.Customer.create_async(**params, **self._options()),
            organization_id=organization_id,
        )

        logger.info(
            f"Created Stripe customer {customer['id']} for organization {organization_id}",
            extra={"stripe_customer_id": customer["id"], "organization_id": organization_id},
        )
        return StripeCustomer.from_stripe(customer)

    async def update_customer(
        self,
        customer_id: str,
        name: Optional[str] = None,
        email: Optional[str] = None,
    ) -> StripeCustomer:
        """Update contact details; fields left as None are not sent."""
        params: Dict[str, Any] = {}
        if name:
            params["name"] = name
        if email:
            params["email"] = email

        customer = await self._call(
            "customer update",
            stripe.Customer.modify_async(customer_id, **params, **self._options()),
            customer_id=customer_id,
        )
        return StripeCustomer.from_stripe(customer)

    async def set_default_payment_method(self, customer_id: str, payment_method_id: str) -> None:
        await self._call(
            "customer default payment method",
            stripe.Customer.modify_async(
                customer_id,
                invoice_settings={"default_payment_method": payment_method_id},
                **self._options(),
            ),
            customer_id=customer_id,
        )

    # ========================================================================
    # Payment Intents
    # ========================================================================

    async def create_payment_intent(
        self,
        customer_id: str,
        amount_cents: int,
        currency: str,
        metadata: Dict[str, str],
    ) -> PaymentIntent:
        """
        Create the PaymentIntent for the first period of a plan.

        WHY: ``setup_future_usage=off_session`` saves the card so the
        subscription created after payment can charge it; redirects are
        disabled because the front end confirms in place.
        """
        intent = await self._call(
            "payment intent create",
            stripe.PaymentIntent.create_async(
                amount=amount_cents,
                currency=currency,
                customer=customer_id,
                metadata=metadata,
                automatic_payment_methods={"enabled": True, "allow_redirects": "never"},
                setup_future_usage="off_session",
                **self._options(),
            ),
            customer_id=customer_id,
        )

        logger.info(
            f"Created payment intent {intent['id']} for customer {customer_id}",
            extra={
                "payment_intent_id": intent["id"],
                "stripe_customer_id": customer_id,
                "amount_cents": amount_cents,
            },
        )
        return PaymentIntent.from_stripe(intent)

    async def retrieve_payment_intent(self, payment_intent_id: str) -> PaymentIntent:
        intent = await self._call(
            "payment intent retrieve",
            stripe.PaymentIntent.retrieve_async(payment_intent_id, **self._options()),
            payment_intent_id=payment_intent_id,
        )
        return PaymentIntent.from_stripe(intent)

    async def cancel_payment_intent(self, payment_intent_id: str) -> PaymentIntent:
        intent = await self._call(
            "payment intent cancel",
            stripe.PaymentIntent.cancel_async(payment_intent_id, **self._options()),
            payment_intent_id=payment_intent_id,
        )
        logger.info(
            f"Canceled payment intent {payment_intent_id}",
            extra={"payment_intent_id": payment_intent_id},
        )
        return PaymentIntent.from_stripe(intent)

    # ========================================================================
    # Payment Methods
    # ========================================================================

    async def attach_payment_method(self, payment_method_id: str, customer_id: str) -> bool:
        """
        Attach a payment method to a customer.

        Returns:
            True if attached now, False if it was already attached
        """
        try:
            await self._call(
                "payment method attach",
                stripe.PaymentMethod.attach_async(
                    payment_method_id,
                    customer=customer_id,
                    **self._options(),
                ),
                payment_method_id=payment_method_id,
                customer_id=customer_id,
            )
        except StripeError as e:
            if e.context.get("stripe_code") == PAYMENT_METHOD_ALREADY_ATTACHED:
                logger.info(
                    f"Payment method {payment_method_id} already attached to {customer_id}",
                    extra={"payment_method_id": payment_method_id, "stripe_customer_id": customer_id},
                )
                return False
            raise
        return True

    # ========================================================================
    # Subscriptions
    # ========================================================================

    async def list_active_subscriptions(
        self, customer_id: str, limit: int = 10
    ) -> List[StripeSubscription]:
        result = await self._call(
            "subscription list",
            stripe.Subscription.list_async(
                customer=customer_id,
                status="active",
                limit=limit,
                **self._options(),
            ),
            customer_id=customer_id,
        )
        return [StripeSubscription.from_stripe(sub) for sub in result["data"]]

    async def create_subscription(
        self,
        customer_id: str,
        price_id: str,
        payment_method_id: str,
        metadata: Dict[str, str],
        idempotency_key: str,
        billing_cycle_anchor: Optional[datetime] = None,
    ) -> StripeSubscription:
        """
        Create a single-item subscription charged to a saved payment method.

        Args:
            billing_cycle_anchor: First renewal date. When set, proration is
                disabled so the period already paid by the PaymentIntent is
                not invoiced again.
            idempotency_key: Makes redelivered webhooks create at most one
                subscription
        """
        params: Dict[str, Any] = {
            "customer": customer_id,
            "items": [{"price": price_id}],
            "default_payment_method": payment_method_id,
            "metadata": metadata,
        }
        if billing_cycle_anchor is not None:
            params["billing_cycle_anchor"] = int(billing_cycle_anchor.timestamp())
            params["proration_behavior"] = "none"

        subscription = await self._call(
            "subscription create",
            stripe.Subscription.create_async(
                **params,
                **self._options(idempotency_key=idempotency_key),
            ),
            customer_id=customer_id,
            price_id=price_id,
        )

        logger.info(
            f"Created subscription {subscription['id']} for customer {customer_id}",
            extra={
                "subscription_id": subscription["id"],
                "stripe_customer_id": customer_id,
                "price_id": price_id,
            },
        )
        return StripeSubscription.from_stripe(subscription)

    async def change_subscription_price(
        self,
        subscription: StripeSubscription,
        new_price_id: str,
        metadata: Dict[str, str],
    ) -> StripeSubscription:
        """
        Move the subscription's single item to a new price.

        WHY: ``always_invoice`` bills the prorated difference immediately and
        ``allow_incomplete`` keeps the change even if that invoice needs
        customer action; the expanded invoice tells the caller whether it does.
        """
        if not subscription.item_id:
            raise ValidationError(
                message="Subscription has no item to change",
                subscription_id=subscription.id,
            )

        updated = await self._call(
            "subscription update",
            stripe.Subscription.modify_async(
                subscription.id,
                items=[{"id": subscription.item_id, "price": new_price_id}],
                proration_behavior="always_invoice",
                payment_behavior="allow_incomplete",
                metadata=metadata,
                expand=["latest_invoice.payment_intent"],
                **self._options(),
            ),
            subscription_id=subscription.id,
            price_id=new_price_id,
        )

        logger.info(
            f"Changed subscription {subscription.id} to {new_price_id}",
            extra={
                "subscription_id": subscription.id,
                "previous_price_id": subscription.price_id,
                "price_id": new_price_id,
            },
        )
        return StripeSubscription.from_stripe(updated)

    async def cancel_subscription(self, subscription_id: str) -> StripeSubscription:
        canceled = await self._call(
            "subscription cancel",
            stripe.Subscription.cancel_async(subscription_id, **self._options()),
            subscription_id=subscription_id,
        )
        logger.info(
            f"Canceled subscription {subscription_id}",
            extra={"subscription_id": subscription_id},
        )
        return StripeSubscription.from_stripe(canceled)

    # ========================================================================
    # Webhook Handling
    # ========================================================================

    def verify_webhook_signature(self, payload: bytes, signature: Optional[str]) -> None:
        """
        Verify that a webhook body was signed by Stripe.

        HOW: HMAC-SHA256 check of the Stripe-Signature header against the
        endpoint secret, rejecting signatures older than the tolerance.

        Raises:
            ValidationError: If the webhook secret is not configured
            WebhookSignatureError: If the header is missing or invalid
        """
        if not self.webhook_secret:
            raise ValidationError(
                message="Stripe webhook secret is not configured",
                setting="STRIPE_WEBHOOK_SECRET",
            )
        if not signature:
            raise WebhookSignatureError(message="Missing Stripe-Signature header")

        try:
            stripe.WebhookSignature.verify_header(
                payload.decode("utf-8"),
                signature,
                self.webhook_secret,
                tolerance=self._webhook_tolerance,
            )
        except (stripe.SignatureVerificationError, UnicodeDecodeError) as e:
            logger.warning(f"Webhook signature verification failed: {e}")
            raise WebhookSignatureError(stripe_error=str(e)) from e


# ============================================================================
# Module-level convenience functions
# ============================================================================


def get_stripe_gateway() -> StripeGateway:
    """Build a gateway from settings (FastAPI dependency)."""
    return StripeGateway(
        api_key=settings.STRIPE_SECRET_KEY,
        webhook_secret=settings.STRIPE_WEBHOOK_SECRET,
    )
