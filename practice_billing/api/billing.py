"""
Billing API endpoints for session-plan subscriptions.

WHAT: REST API endpoints used by the practice billing page:
1. POST /billing/actions - Create, upgrade or cancel a subscription
2. GET /billing/plans - List the plans of the active billing mode
3. GET /billing/organizations/{id}/usage - Session usage of the period
4. POST /billing/organizations/{id}/sessions - Consume one session

WHY: The billing page drives the whole purchase flow: it sends an action,
receives a PaymentIntent client secret when a payment is needed, and
confirms it with Stripe.js. Everything asynchronous after that arrives
through the Stripe webhook endpoint.

Errors are rendered by the application exception handlers as
``{error, message, status_code, details}``.
"""

import logging

from fastapi import APIRouter, Depends, status

from practice_billing.core.config import settings
from practice_billing.core.deps import (
    get_billing_service,
    get_payment_gateway,
    get_plan_catalog,
    get_usage_service,
)
from practice_billing.schemas.billing import (
    BillingActionRequest,
    BillingActionResponse,
    PlanListResponse,
    PlanResponse,
    UsageResponse,
)
from practice_billing.services.billing_service import BillingService
from practice_billing.services.plan_catalog import PlanCatalog
from practice_billing.services.stripe_gateway import StripeGateway
from practice_billing.services.usage_service import UsageService, UsageSummary

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["Billing"])


def _usage_response(summary: UsageSummary) -> UsageResponse:
    return UsageResponse(
        organization_id=summary.organization_id,
        status=summary.status,
        plan_price_id=summary.plan_price_id,
        sessions_used=summary.sessions_used,
        sessions_allowed=summary.sessions_allowed,
        sessions_remaining=summary.sessions_remaining,
        last_reset=summary.last_reset,
        period_end=summary.period_end,
    )


# ============================================================================
# Billing Actions
# ============================================================================


@router.post(
    "/actions",
    response_model=BillingActionResponse,
    response_model_exclude_none=True,
    summary="Run a billing action",
    description="Create, upgrade or cancel the organization's session-plan subscription.",
)
async def billing_action(
    request: BillingActionRequest,
    service: BillingService = Depends(get_billing_service),
):
    """
    Run one billing action.

    Returns:
        clientSecret and status for create (and for an upgrade whose
        prorated invoice needs payment), status only otherwise
    """
    logger.info(
        f"Billing action {request.action.value} for organization {request.organization_id}",
        extra={"organization_id": request.organization_id, "action": request.action.value},
    )
    result = await service.handle_action(request)
    return BillingActionResponse(client_secret=result.client_secret, status=result.status)


# ============================================================================
# Plan Information
# ============================================================================


@router.get(
    "/plans",
    response_model=PlanListResponse,
    summary="List available session plans",
    description="Returns the plans of the billing mode selected by the Stripe secret key.",
)
async def list_plans(
    catalog: PlanCatalog = Depends(get_plan_catalog),
    gateway: StripeGateway = Depends(get_payment_gateway),
):
    mode = gateway.mode
    return PlanListResponse(
        mode=mode.value,
        catalog_version=catalog.version,
        free_tier_sessions=settings.FREE_TIER_SESSIONS,
        plans=[
            PlanResponse(
                price_id=plan.price_id,
                amount_cents=plan.amount_cents,
                currency=plan.currency,
                interval=plan.interval.value,
                session_entitlement=plan.session_entitlement,
            )
            for plan in catalog.plans_for(mode)
        ],
    )


# ============================================================================
# Session Usage
# ============================================================================


@router.get(
    "/organizations/{organization_id}/usage",
    response_model=UsageResponse,
    summary="Get session usage",
)
async def get_usage(
    organization_id: str,
    service: UsageService = Depends(get_usage_service),
):
    summary = await service.get_usage(organization_id)
    return _usage_response(summary)


@router.post(
    "/organizations/{organization_id}/sessions",
    response_model=UsageResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Record a therapy session",
    description="Consumes one session of the current period; 422 when the plan limit is reached.",
)
async def record_session(
    organization_id: str,
    service: UsageService = Depends(get_usage_service),
):
    summary = await service.record_session(organization_id)
    return _usage_response(summary)
