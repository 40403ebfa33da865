"""
Billing Audit Log Data Access Object (DAO).

WHAT: Data access layer for the billing audit trail.

WHY: Audit entries must be tamper-proof. This DAO is the only code that
touches the table and it refuses updates and deletes.

HOW: Plain SQLAlchemy async session operations; the caller owns the
transaction.
"""

from datetime import datetime
from typing import Optional, List, Dict, Any
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from practice_billing.models.audit_log import BillingAuditLog
from practice_billing.core.exceptions import AuditLogImmutableError


class AuditLogDAO:
    """Data Access Object for billing audit entries."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        category: str,
        payload: Optional[Dict[str, Any]] = None,
        organization_id: Optional[str] = None,
        request_id: Optional[str] = None,
    ) -> BillingAuditLog:
        """
        Create a new audit entry.

        Args:
            category: Step name with its phase suffix
            payload: JSON-serializable step details
            organization_id: FHIR Organization id, if known
            request_id: Id of the HTTP request that produced the entry

        Returns:
            The created BillingAuditLog entry
        """
        log = BillingAuditLog(
            category=category,
            payload=payload,
            organization_id=organization_id,
            request_id=request_id,
        )
        self.session.add(log)
        await self.session.flush()
        await self.session.refresh(log)
        return log

    async def get_by_id(self, log_id: int) -> Optional[BillingAuditLog]:
        result = await self.session.execute(
            select(BillingAuditLog).where(BillingAuditLog.id == log_id)
        )
        return result.scalar_one_or_none()

    async def get_by_organization(
        self,
        organization_id: str,
        skip: int = 0,
        limit: int = 100,
    ) -> List[BillingAuditLog]:
        """
        Retrieve the audit trail of one organization, oldest first.

        WHY: Reconciling a diverged subscription means replaying the steps in
        the order they happened.
        """
        result = await self.session.execute(
            select(BillingAuditLog)
            .where(BillingAuditLog.organization_id == organization_id)
            .order_by(BillingAuditLog.created_at.asc(), BillingAuditLog.id.asc())
            .offset(skip)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def get_by_request(self, request_id: str) -> List[BillingAuditLog]:
        result = await self.session.execute(
            select(BillingAuditLog)
            .where(BillingAuditLog.request_id == request_id)
            .order_by(BillingAuditLog.id.asc())
        )
        return list(result.scalars().all())

    async def get_by_category_prefix(
        self,
        prefix: str,
        since: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[BillingAuditLog]:
        """
        Retrieve entries whose category starts with a prefix.

        Example: ``get_by_category_prefix("webhook-")`` lists every webhook
        event the service has processed.
        """
        query = select(BillingAuditLog).where(BillingAuditLog.category.startswith(prefix))
        if since is not None:
            query = query.where(BillingAuditLog.created_at >= since)
        result = await self.session.execute(
            query.order_by(BillingAuditLog.created_at.desc()).limit(limit)
        )
        return list(result.scalars().all())

    async def update(self, log_id: int, **kwargs: Any) -> None:
        """
        Attempt to update an audit entry (BLOCKED).

        Raises:
            AuditLogImmutableError: Always raised - updates not allowed
        """
        raise AuditLogImmutableError(
            "Billing audit entries are immutable and cannot be updated."
        )

    async def delete(self, log_id: int) -> None:
        """
        Attempt to delete an audit entry (BLOCKED).

        Raises:
            AuditLogImmutableError: Always raised - deletions not allowed
        """
        raise AuditLogImmutableError(
            "Billing audit entries cannot be deleted."
        )
