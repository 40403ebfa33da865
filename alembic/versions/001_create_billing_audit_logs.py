"""Create billing_audit_logs table

Revision ID: 001
Revises:
Create Date: 2025-03-14

WHAT: Creates the billing_audit_logs table for the billing step trail.

WHY: Billing actions and webhooks change Stripe and the FHIR Organization
record in separate steps. Each step is recorded before and after it runs so
a divergence between the two systems can be traced to the failing step.

HOW: Append-only table. Organization ids are FHIR ids (strings), not
foreign keys, because organizations live on the FHIR server.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """
    Create billing_audit_logs with indexes for incident review.

    Indexes follow the common queries:
    - By organization (everything that happened to one practice)
    - By request (all steps of one billing action or webhook delivery)
    - By category (all failed record writes)
    - By time window
    """
    op.create_table(
        'billing_audit_logs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('category', sa.String(length=120), nullable=False),
        sa.Column('organization_id', sa.String(length=64), nullable=True),
        sa.Column('request_id', sa.String(length=64), nullable=True),
        sa.Column('payload', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id')
    )

    op.create_index('ix_billing_audit_logs_id', 'billing_audit_logs', ['id'])
    op.create_index('ix_billing_audit_logs_category', 'billing_audit_logs', ['category'])
    op.create_index('ix_billing_audit_logs_organization_id', 'billing_audit_logs', ['organization_id'])
    op.create_index('ix_billing_audit_logs_request_id', 'billing_audit_logs', ['request_id'])
    op.create_index('ix_billing_audit_logs_created_at', 'billing_audit_logs', ['created_at'])


def downgrade() -> None:
    """
    Drop billing_audit_logs.

    Note: This will lose all audit data - use with caution in production.
    """
    op.drop_index('ix_billing_audit_logs_created_at', table_name='billing_audit_logs')
    op.drop_index('ix_billing_audit_logs_request_id', table_name='billing_audit_logs')
    op.drop_index('ix_billing_audit_logs_organization_id', table_name='billing_audit_logs')
    op.drop_index('ix_billing_audit_logs_category', table_name='billing_audit_logs')
    op.drop_index('ix_billing_audit_logs_id', table_name='billing_audit_logs')
    op.drop_table('billing_audit_logs')
