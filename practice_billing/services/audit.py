"""
Billing audit service.

WHAT: Service layer for recording billing audit entries with request context.

WHY: Stripe and the FHIR server are updated in separate steps, so a request
can fail halfway. Recording every step before and after it runs gives
operators the exact point of divergence. This service provides:
- Automatic request id extraction from the request context middleware
- A ``track`` helper that brackets an external call with started/completed/
  failed entries and re-raises the original error
- Error handling that never lets an audit failure break a billing operation

HOW: Each entry is written and committed in its own short-lived session
from the injected session factory, so entries survive even when the
surrounding request fails.
"""

import logging
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from pydantic_core import to_jsonable_python
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from practice_billing.core.exceptions import AppException
from practice_billing.dao.audit_log import AuditLogDAO
from practice_billing.middleware.request_context import get_request_context
from practice_billing.models.audit_log import BillingAuditLog


# Logger for audit service errors (not audit events themselves)
logger = logging.getLogger(__name__)

T = TypeVar("T")


class AuditService:
    """
    Service for creating billing audit entries.

    Example:
        customer = await audit.track(
            "stripe-create-customer",
            gateway.create_customer(organization_id, name, email),
            organization_id=organization_id,
            describe=lambda c: {"customer_id": c.id},
        )
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        """
        Initialize audit service with a session factory.

        Args:
            session_factory: Factory producing independent async sessions
        """
        self._session_factory = session_factory

    def _get_request_id(self) -> Optional[str]:
        ctx = get_request_context()
        return ctx.request_id if ctx else None

    async def record(
        self,
        category: str,
        payload: Optional[Dict[str, Any]] = None,
        organization_id: Optional[str] = None,
    ) -> Optional[BillingAuditLog]:
        """
        Record one audit entry.

        Args:
            category: Step name with phase suffix
            payload: Step details; datetimes and dataclasses are converted
                to JSON-compatible values
            organization_id: FHIR Organization id, if known

        Returns:
            Created BillingAuditLog or None if logging failed

        Note:
            This method never raises exceptions to prevent audit
            logging from breaking billing operations. Errors are
            logged to the application logger instead.
        """
        try:
            async with self._session_factory() as session:
                log = await AuditLogDAO(session).create(
                    category=category,
                    payload=to_jsonable_python(payload) if payload is not None else None,
                    organization_id=organization_id,
                    request_id=self._get_request_id(),
                )
                await session.commit()
                return log

        except Exception as e:
            # Log error but don't raise - an audit outage must not block billing
            logger.error(
                f"Failed to create billing audit entry: {e}",
                exc_info=True,
                extra={"category": category, "organization_id": organization_id},
            )
            return None

    async def track(
        self,
        category: str,
        operation: Awaitable[T],
        organization_id: Optional[str] = None,
        describe: Optional[Callable[[T], Dict[str, Any]]] = None,
        **details: Any,
    ) -> T:
        """
        Run one external step between audit entries.

        WHAT: Writes ``<category>-started``, awaits the operation, then writes
        ``<category>-completed`` (with ``describe(result)`` merged in) or
        ``<category>-failed`` (with the serialized error) and re-raises.

        Args:
            category: Step name, e.g. "stripe-create-payment-intent"
            operation: Awaitable performing the external call
            organization_id: FHIR Organization id, if known
            describe: Optional projection of the result into audit payload
            **details: Step inputs recorded on every entry

        Returns:
            The operation's result
        """
        await self.record(f"{category}-started", details or None, organization_id)
        try:
            result = await operation
        except AppException as exc:
            await self.record(
                f"{category}-failed",
                {**details, "error": exc.to_dict()},
                organization_id,
            )
            raise
        except Exception as exc:
            await self.record(
                f"{category}-failed",
                {**details, "error": {"error": exc.__class__.__name__, "message": str(exc)}},
                organization_id,
            )
            raise

        completed = dict(details)
        if describe is not None:
            completed.update(describe(result))
        await self.record(f"{category}-completed", completed or None, organization_id)
        return result
