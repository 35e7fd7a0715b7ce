"""Initial schema: credentials, tenants, billing and export jobs

Revision ID: 0001_initial_schema
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '0001_initial_schema'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

CENTS = sa.Numeric(18, 6)


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
    ]


def upgrade() -> None:
    """Create all tables and enable pgcrypto for token encryption."""
    op.execute('CREATE EXTENSION IF NOT EXISTS pgcrypto')

    op.create_table(
        'credentials',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('company_id', sa.String(length=100), nullable=True),
        sa.Column('location_id', sa.String(length=100), nullable=True),
        sa.Column('credential_class', sa.String(length=20), nullable=False),
        sa.Column('scope_key', sa.String(length=100), nullable=False),
        sa.Column('access_token', postgresql.BYTEA(), nullable=False),
        sa.Column('refresh_token', postgresql.BYTEA(), nullable=True),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('user_type', sa.String(length=50), nullable=True),
        sa.Column('scopes', sa.String(length=2000), nullable=True),
        sa.Column('installation_id', sa.String(length=36), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('scope_key', 'credential_class', name='uq_credential_scope_class'),
        sa.CheckConstraint("credential_class IN ('company', 'location')", name='ck_credential_class'),
        sa.CheckConstraint(
            "credential_class = 'company' OR location_id IS NOT NULL",
            name='ck_location_credential_has_location',
        ),
    )
    op.create_index('ix_credentials_company_id', 'credentials', ['company_id'])
    op.create_index('ix_credentials_location_id', 'credentials', ['location_id'])

    op.create_table(
        'archived_credentials',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('original_credential_id', sa.String(length=36), nullable=False),
        sa.Column('company_id', sa.String(length=100), nullable=True),
        sa.Column('location_id', sa.String(length=100), nullable=True),
        sa.Column('credential_class', sa.String(length=20), nullable=False),
        sa.Column('access_token', postgresql.BYTEA(), nullable=False),
        sa.Column('refresh_token', postgresql.BYTEA(), nullable=True),
        sa.Column('original_created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('original_expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('archived_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('deletion_reason', sa.String(length=50), nullable=False),
        sa.Column('installation_id', sa.String(length=36), nullable=True),
        sa.Column('webhook_data', postgresql.JSONB(), nullable=True),
        sa.Column('auto_delete_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('ix_archived_credentials_company_id', 'archived_credentials', ['company_id'])
    op.create_index('ix_archived_credentials_location_id', 'archived_credentials', ['location_id'])
    op.create_index('ix_archived_credentials_auto_delete', 'archived_credentials', ['auto_delete_at'])

    op.create_table(
        'tenant_locations',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('location_id', sa.String(length=100), nullable=False, unique=True),
        sa.Column('company_id', sa.String(length=100), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=True),
        sa.Column('email', sa.String(length=255), nullable=True),
        sa.Column('phone', sa.String(length=50), nullable=True),
        sa.Column('timezone', sa.String(length=64), nullable=True),
        sa.Column('is_installed', sa.Boolean(), nullable=False),
        *_timestamps(),
    )
    op.create_index('ix_tenant_locations_company_id', 'tenant_locations', ['company_id'])

    op.create_table(
        'installations',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('app_id', sa.String(length=100), nullable=True),
        sa.Column('company_id', sa.String(length=100), nullable=True),
        sa.Column('location_id', sa.String(length=100), nullable=True),
        sa.Column('user_id', sa.String(length=100), nullable=True),
        sa.Column('plan_id', sa.String(length=100), nullable=True),
        sa.Column('company_name', sa.String(length=255), nullable=True),
        sa.Column('trial', postgresql.JSONB(), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('installed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('uninstalled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('raw_webhook_data', postgresql.JSONB(), nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_installations_company_id', 'installations', ['company_id'])
    op.create_index('ix_installations_location_id', 'installations', ['location_id'])
    op.create_index('ix_installation_scope', 'installations', ['company_id', 'location_id', 'status'])

    op.create_table(
        'billing_transactions',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('location_id', sa.String(length=100), nullable=False),
        sa.Column('company_id', sa.String(length=100), nullable=False),
        sa.Column('export_type', sa.String(length=20), nullable=False),
        sa.Column('user_id', sa.String(length=100), nullable=True),
        sa.Column('conversations_count', sa.Integer(), nullable=False),
        sa.Column('sms_count', sa.Integer(), nullable=False),
        sa.Column('email_count', sa.Integer(), nullable=False),
        sa.Column('conversations_unit_price', CENTS, nullable=False),
        sa.Column('sms_unit_price', CENTS, nullable=False),
        sa.Column('email_unit_price', CENTS, nullable=False),
        sa.Column('discount_percent', sa.Integer(), nullable=False),
        sa.Column('base_amount', CENTS, nullable=False),
        sa.Column('discount_amount', CENTS, nullable=False),
        sa.Column('final_amount', CENTS, nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('meter_charges', postgresql.JSONB(), nullable=True),
        sa.Column('charge_ledger', postgresql.JSONB(), nullable=True),
        sa.Column('charge_ids', sa.String(length=1000), nullable=True),
        sa.Column('needs_reconciliation', sa.Boolean(), nullable=False),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('export_job_id', sa.String(length=36), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "status IN ('pending', 'charged', 'failed')", name='ck_billing_transaction_status'
        ),
    )
    op.create_index(
        'ix_billing_transactions_location_created', 'billing_transactions', ['location_id', 'created_at']
    )
    op.create_index(
        'ix_billing_transactions_company_status', 'billing_transactions', ['company_id', 'status']
    )

    op.create_table(
        'export_jobs',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('location_id', sa.String(length=100), nullable=False),
        sa.Column('company_id', sa.String(length=100), nullable=False),
        sa.Column(
            'billing_transaction_id',
            sa.String(length=36),
            sa.ForeignKey('billing_transactions.id'),
            nullable=False,
            unique=True,
        ),
        sa.Column('user_id', sa.String(length=100), nullable=True),
        sa.Column('notification_email', sa.String(length=255), nullable=True),
        sa.Column('export_type', sa.String(length=20), nullable=False),
        sa.Column('format', sa.String(length=10), nullable=False),
        sa.Column('filters', postgresql.JSONB(), nullable=True),
        sa.Column('total_items', sa.Integer(), nullable=False),
        sa.Column('processed_items', sa.Integer(), nullable=False),
        sa.Column('batch_size', sa.Integer(), nullable=False),
        sa.Column('current_batch', sa.Integer(), nullable=False),
        sa.Column('total_batches', sa.Integer(), nullable=False),
        sa.Column('cursor', sa.Text(), nullable=True),
        sa.Column('retry_count', sa.Integer(), nullable=False),
        sa.Column('max_retries', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('output_location', sa.String(length=1000), nullable=True),
        sa.Column('last_processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False),
        *_timestamps(),
        sa.CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed', 'paused')",
            name='ck_export_job_status',
        ),
        sa.CheckConstraint("status != 'completed' OR cursor IS NULL", name='ck_completed_job_has_no_cursor'),
        sa.CheckConstraint('processed_items >= 0', name='ck_processed_items_non_negative'),
        sa.CheckConstraint('retry_count <= max_retries', name='ck_retry_count_bounded'),
    )
    op.create_index('ix_export_jobs_location_created', 'export_jobs', ['location_id', 'created_at'])
    op.create_index('ix_export_jobs_status_last_processed', 'export_jobs', ['status', 'last_processed_at'])


def downgrade() -> None:
    """Drop all tables; pgcrypto is left installed."""
    op.drop_table('export_jobs')
    op.drop_table('billing_transactions')
    op.drop_table('installations')
    op.drop_table('tenant_locations')
    op.drop_table('archived_credentials')
    op.drop_table('credentials')
