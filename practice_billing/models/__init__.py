"""
Database models package.

WHY: Centralizing model imports ensures Alembic can discover all models
for migration generation.
"""

from practice_billing.models.base import Base, CreatedAtMixin, PrimaryKeyMixin
from practice_billing.models.audit_log import BillingAuditLog

__all__ = [
    "Base",
    "CreatedAtMixin",
    "PrimaryKeyMixin",
    "BillingAuditLog",
]
