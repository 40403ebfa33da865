"""
Main FastAPI application.

WHY: This is the entry point for the billing service. It configures
middleware, routes, exception handlers and the plan catalog shared by all
requests.
"""

import logging

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

from practice_billing.api import billing, webhooks
from practice_billing.core.config import settings
from practice_billing.core.exception_handlers import (
    app_exception_handler,
    generic_exception_handler,
    http_exception_handler,
    validation_exception_handler,
)
from practice_billing.core.exceptions import AppException
from practice_billing.db.session import engine
from practice_billing.middleware import RequestContextMiddleware
from practice_billing.services.plan_catalog import load_plan_catalog, mode_from_secret_key

logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    """
    Create and configure FastAPI application.

    WHY: Factory pattern allows easier testing with different configurations
    and makes it possible to create multiple app instances if needed.

    Returns:
        Configured FastAPI application instance
    """
    app = FastAPI(
        title=settings.PROJECT_NAME,
        description="Session-plan billing for practices (Stripe + FHIR)",
        version=settings.VERSION,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        openapi_url="/api/openapi.json",
    )

    # Register exception handlers
    # WHY: Every failure leaves as {error, message, status_code, details};
    # webhook callers rely on the status code to decide on redelivery
    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)

    # Request id for logs and audit entries
    app.add_middleware(RequestContextMiddleware)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Loaded once; a malformed catalog file fails startup
    app.state.plan_catalog = load_plan_catalog(settings.PLAN_CATALOG_PATH)
    if settings.stripe_configured:
        mode = mode_from_secret_key(settings.STRIPE_SECRET_KEY)
        if not app.state.plan_catalog.plans_for(mode):
            logger.warning(
                f"Plan catalog {app.state.plan_catalog.version} has no {mode.value} plans; "
                f"every purchase will be rejected",
                extra={"mode": mode.value},
            )

    @app.get("/health", tags=["health"])
    async def health_check() -> dict:
        """
        Health check endpoint.

        WHY: Allows load balancers and monitoring to verify service health
        without calling Stripe or the FHIR server.
        """
        return {
            "status": "healthy",
            "version": settings.VERSION,
            "stripe_configured": settings.stripe_configured,
            "catalog_version": app.state.plan_catalog.version,
        }

    @app.on_event("shutdown")
    async def shutdown_event():
        """Release pooled audit database connections."""
        await engine.dispose()

    # Register API routers
    app.include_router(billing.router, prefix=settings.API_PREFIX)
    app.include_router(webhooks.router, prefix=settings.API_PREFIX)

    return app


# Create app instance
# WHY: Creating the app instance here allows it to be imported by uvicorn
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "practice_billing.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG,
        log_level="info" if settings.DEBUG else "warning",
    )
