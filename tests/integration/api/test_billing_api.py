"""
Billing API Integration Tests.

WHAT: Endpoint tests for the billing actions, plan list and session usage.

WHY: The billing page depends on the exact JSON shapes: camelCase fields,
a client secret only when a payment is needed, and one error format for
both malformed requests and failed actions.

HOW: The real application with Stripe mocked, the FHIR server replaced by
an in-memory store and the audit trail in SQLite.
"""

import pytest

from practice_billing.core.exceptions import StripeError
from practice_billing.dao.audit_log import AuditLogDAO
from practice_billing.services.billing_state import OrganizationBillingState, SubscriptionStatus

from tests.factories import (
    ORG_ID,
    PRICE_30,
    PRICE_45,
    extension_value,
    make_customer,
    make_subscription,
    organization_resource,
)

pytestmark = pytest.mark.integration

ACTIONS_URL = "/api/billing/actions"


def seed(fhir_store, **state) -> None:
    fhir_store.put(organization_resource(state=OrganizationBillingState(**state)))


@pytest.mark.asyncio
class TestCreateAction:
    async def test_create_returns_client_secret(self, client, fhir_store, gateway):
        fhir_store.put(organization_resource())

        response = await client.post(
            ACTIONS_URL,
            json={
                "organizationId": ORG_ID,
                "action": "create",
                "priceId": PRICE_30,
                "customerName": "Lakeside Counseling",
                "customerEmail": "billing@lakesidecounseling.com",
            },
        )

        assert response.status_code == 200
        assert response.json() == {
            "clientSecret": "pi_123_secret_abc",
            "status": "requires_payment_method",
        }
        gateway.create_customer.assert_awaited_once()
        stored = fhir_store.get()
        assert extension_value(stored, "subscription-plan") == PRICE_30
        assert extension_value(stored, "subscription-sessions-allowed") == 30

    async def test_create_when_active(self, client, fhir_store, gateway):
        seed(fhir_store, status=SubscriptionStatus.ACTIVE, plan_price_id=PRICE_30)

        response = await client.post(
            ACTIONS_URL, json={"organizationId": ORG_ID, "action": "create", "priceId": PRICE_45}
        )

        assert response.status_code == 409
        assert response.json()["error"] == "SubscriptionAlreadyExistsError"
        gateway.create_payment_intent.assert_not_called()

    async def test_unknown_price(self, client, fhir_store):
        fhir_store.put(organization_resource())

        response = await client.post(
            ACTIONS_URL,
            json={"organizationId": ORG_ID, "action": "create", "priceId": "price_unknown"},
        )

        assert response.status_code == 404
        assert response.json()["error"] == "PlanNotFoundError"

    async def test_stripe_failure_is_bad_gateway(self, client, fhir_store, gateway):
        fhir_store.put(organization_resource())
        gateway.create_payment_intent.side_effect = StripeError(
            message="Stripe payment intent create failed", stripe_code="card_declined"
        )

        response = await client.post(
            ACTIONS_URL, json={"organizationId": ORG_ID, "action": "create", "priceId": PRICE_30}
        )

        assert response.status_code == 502
        assert response.json()["details"]["stripe_code"] == "card_declined"
        assert fhir_store.updates == []

    async def test_request_id_reaches_audit_trail(self, client, fhir_store, db_session):
        fhir_store.put(organization_resource())

        response = await client.post(
            ACTIONS_URL,
            json={"organizationId": ORG_ID, "action": "create", "priceId": PRICE_30},
            headers={"X-Request-ID": "support-4711"},
        )

        assert response.headers["X-Request-ID"] == "support-4711"
        logs = await AuditLogDAO(db_session).get_by_request("support-4711")
        categories = [log.category for log in logs]
        assert "stripe-create-payment-intent-completed" in categories
        assert "fhir-create-completed" in categories


@pytest.mark.asyncio
class TestUpgradeAndCancel:
    async def test_upgrade(self, client, fhir_store, gateway):
        seed(fhir_store, status=SubscriptionStatus.ACTIVE, plan_price_id=PRICE_30, sessions_allowed=30)
        gateway.find_customer_by_organization.return_value = make_customer()
        gateway.list_active_subscriptions.return_value = [make_subscription(price_id=PRICE_30)]

        response = await client.post(
            ACTIONS_URL, json={"organizationId": ORG_ID, "action": "upgrade", "priceId": PRICE_45}
        )

        assert response.status_code == 200
        assert response.json() == {"status": "upgraded"}
        assert extension_value(fhir_store.get(), "subscription-sessions-allowed") == 45

    async def test_cancel(self, client, fhir_store, gateway):
        seed(fhir_store, status=SubscriptionStatus.ACTIVE, plan_price_id=PRICE_30, sessions_allowed=30)
        gateway.find_customer_by_organization.return_value = make_customer()
        gateway.list_active_subscriptions.return_value = [make_subscription()]

        response = await client.post(ACTIONS_URL, json={"organizationId": ORG_ID, "action": "cancel"})

        assert response.status_code == 200
        assert response.json() == {"status": "canceled"}
        gateway.cancel_subscription.assert_awaited_once_with("sub_123")
        assert extension_value(fhir_store.get(), "subscription-sessions-allowed") == 10

    async def test_cancel_without_customer(self, client, fhir_store):
        seed(fhir_store, status=SubscriptionStatus.ACTIVE)

        response = await client.post(ACTIONS_URL, json={"organizationId": ORG_ID, "action": "cancel"})

        assert response.status_code == 404
        assert response.json()["error"] == "CustomerNotFoundError"


@pytest.mark.asyncio
class TestActionValidation:
    """Malformed requests are rejected before any Stripe or FHIR call."""

    @pytest.mark.parametrize(
        "body",
        [
            {"action": "create", "priceId": PRICE_30},
            {"organizationId": ORG_ID, "action": "refund", "priceId": PRICE_30},
            {"organizationId": ORG_ID, "action": "create"},
            {"organizationId": ORG_ID, "action": "upgrade", "priceId": "prod_123"},
            {"organizationId": "org/../Patient", "action": "cancel"},
            {"organizationId": ORG_ID, "action": "create", "priceId": PRICE_30, "customerEmail": "nope"},
        ],
    )
    async def test_rejected(self, client, gateway, body):
        response = await client.post(ACTIONS_URL, json=body)

        assert response.status_code == 400
        data = response.json()
        assert data["error"] == "ValidationError"
        assert data["status_code"] == 400
        assert data["details"]["errors"]
        gateway.find_customer_by_organization.assert_not_called()


@pytest.mark.asyncio
class TestPlans:
    async def test_lists_test_mode_plans(self, client):
        response = await client.get("/api/billing/plans")

        assert response.status_code == 200
        data = response.json()
        assert data["mode"] == "test"
        assert data["freeTierSessions"] == 10
        assert len(data["plans"]) == 11
        assert data["plans"][0] == {
            "priceId": PRICE_30,
            "amountCents": 2900,
            "currency": "usd",
            "interval": "month",
            "sessionEntitlement": 30,
        }


@pytest.mark.asyncio
class TestSessionUsage:
    async def test_get_usage(self, client, fhir_store):
        seed(
            fhir_store,
            status=SubscriptionStatus.ACTIVE,
            plan_price_id=PRICE_30,
            sessions_used=4,
            sessions_allowed=30,
        )

        response = await client.get(f"/api/billing/organizations/{ORG_ID}/usage")

        assert response.status_code == 200
        data = response.json()
        assert data["organizationId"] == ORG_ID
        assert data["sessionsUsed"] == 4
        assert data["sessionsRemaining"] == 26
        assert data["planPriceId"] == PRICE_30

    async def test_unknown_organization(self, client):
        response = await client.get("/api/billing/organizations/org-404/usage")

        assert response.status_code == 404
        assert response.json()["error"] == "OrganizationNotFoundError"

    async def test_record_session(self, client, fhir_store):
        seed(fhir_store, status=SubscriptionStatus.ACTIVE, sessions_used=0, sessions_allowed=30)

        response = await client.post(f"/api/billing/organizations/{ORG_ID}/sessions")

        assert response.status_code == 201
        assert response.json()["sessionsUsed"] == 1

    async def test_record_session_over_limit(self, client, fhir_store):
        seed(fhir_store, status=SubscriptionStatus.ACTIVE, sessions_used=10, sessions_allowed=10)

        response = await client.post(f"/api/billing/organizations/{ORG_ID}/sessions")

        assert response.status_code == 422
        assert response.json()["error"] == "SessionLimitReachedError"


@pytest.mark.asyncio
class TestHealth:
    async def test_health(self, client):
        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
