"""
FastAPI dependencies for the billing services.

WHY: Dependencies build each service from settings and its collaborators in
one place, so route handlers stay thin and tests can swap any layer through
``app.dependency_overrides`` (a fake FHIR store, a mocked Stripe gateway, an
in-memory audit database).
"""

from fastapi import Depends, Request

from practice_billing.core.config import settings
from practice_billing.dao.organization_billing import OrganizationBillingDAO
from practice_billing.db.session import AsyncSessionLocal
from practice_billing.services.audit import AuditService
from practice_billing.services.billing_service import BillingService
from practice_billing.services.fhir_client import FhirClient
from practice_billing.services.plan_catalog import PlanCatalog
from practice_billing.services.stripe_gateway import StripeGateway, get_stripe_gateway
from practice_billing.services.usage_service import UsageService
from practice_billing.services.webhook_router import WebhookEventRouter


def get_plan_catalog(request: Request) -> PlanCatalog:
    """Catalog loaded once at startup (see ``create_app``)."""
    return request.app.state.plan_catalog


def get_payment_gateway() -> StripeGateway:
    return get_stripe_gateway()


def get_fhir_client() -> FhirClient:
    return FhirClient(
        base_url=settings.FHIR_BASE_URL,
        access_token=settings.FHIR_ACCESS_TOKEN,
        timeout=settings.FHIR_TIMEOUT_SECONDS,
    )


def get_organization_billing_dao(
    client: FhirClient = Depends(get_fhir_client),
) -> OrganizationBillingDAO:
    return OrganizationBillingDAO(
        client,
        extension_base_url=settings.FHIR_EXTENSION_BASE_URL,
        free_tier_sessions=settings.FREE_TIER_SESSIONS,
        max_conflict_retries=settings.FHIR_MAX_CONFLICT_RETRIES,
    )


def get_audit_service() -> AuditService:
    """
    Audit service writing through its own sessions.

    WHY: Audit entries are committed independently of any request
    transaction so they survive a failed billing action.
    """
    return AuditService(AsyncSessionLocal)


def get_billing_service(
    gateway: StripeGateway = Depends(get_payment_gateway),
    organizations: OrganizationBillingDAO = Depends(get_organization_billing_dao),
    catalog: PlanCatalog = Depends(get_plan_catalog),
    audit: AuditService = Depends(get_audit_service),
) -> BillingService:
    return BillingService(gateway, organizations, catalog, audit)


def get_webhook_router(
    gateway: StripeGateway = Depends(get_payment_gateway),
    organizations: OrganizationBillingDAO = Depends(get_organization_billing_dao),
    catalog: PlanCatalog = Depends(get_plan_catalog),
    audit: AuditService = Depends(get_audit_service),
) -> WebhookEventRouter:
    return WebhookEventRouter(gateway, organizations, catalog, audit)


def get_usage_service(
    organizations: OrganizationBillingDAO = Depends(get_organization_billing_dao),
) -> UsageService:
    return UsageService(organizations)
