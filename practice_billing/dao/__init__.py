"""
Data Access Object (DAO) package.

WHY: DAOs keep storage details (SQL for the audit trail, FHIR for the
Organization record) out of the billing services.
"""

from practice_billing.dao.audit_log import AuditLogDAO
from practice_billing.dao.organization_billing import (
    BillingWriteResult,
    OrganizationBillingDAO,
)

__all__ = [
    "AuditLogDAO",
    "BillingWriteResult",
    "OrganizationBillingDAO",
]
