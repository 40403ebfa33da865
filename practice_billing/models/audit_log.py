"""
Billing Audit Log Model.

WHAT: SQLAlchemy model for the append-only billing audit trail.

WHY: Every Stripe and FHIR step of a billing action or webhook is recorded
before and after it runs. When Stripe and the Organization record disagree,
these rows are what an operator reads to find out which step failed.

HOW: Immutable table keyed by category (e.g. "stripe-create-customer-started",
"webhook-customer.subscription.updated-failed") with a free-form JSON payload.
Organization ids are FHIR ids, so they are stored as strings.
"""

from sqlalchemy import Column, String, JSON

from practice_billing.models.base import Base, CreatedAtMixin, PrimaryKeyMixin


class BillingAuditLog(Base, PrimaryKeyMixin, CreatedAtMixin):
    """
    Immutable audit entry for one billing step.

    Fields:
    - category: Step name plus phase suffix (started/completed/failed)
    - organization_id: FHIR Organization id, nullable for unattributed events
    - request_id: Correlates the entries of one HTTP request
    - payload: Step inputs, outputs or the serialized error
    - created_at: Timestamp (from CreatedAtMixin)
    """

    __tablename__ = "billing_audit_logs"

    category = Column(String(120), nullable=False, index=True)
    organization_id = Column(String(64), nullable=True, index=True)
    request_id = Column(String(64), nullable=True, index=True)

    # NOTE: SQLAlchemy JSON maps to JSON on PostgreSQL and SQLite alike
    payload = Column(JSON, nullable=True)

    def __repr__(self) -> str:
        return (
            f"<BillingAuditLog(id={self.id}, category={self.category}, "
            f"organization_id={self.organization_id})>"
        )
