"""Initial payment, ledger and withdrawal schema.

Revision ID: 0001_initial_payment_schema
Revises:
Create Date: 2026-10-19
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '0001_initial_payment_schema'
down_revision = None
branch_labels = None
depends_on = None

KEY_BLOCKING_STATUSES = (
    "'created', 'initiated', 'partially_refunded', "
    "'pending_confirmation', 'refunded', 'succeeded'"
)


def upgrade() -> None:
    op.create_table(
        'payments',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('item_type', sa.String(32), nullable=False),
        sa.Column('item_id', sa.String(64), nullable=False),
        sa.Column('instructor_id', sa.String(64), nullable=False, index=True),
        sa.Column('category_id', sa.String(64), nullable=True),
        sa.Column('buyer_id', sa.String(64), nullable=False, index=True),
        sa.Column('cart_id', sa.String(64), nullable=False),
        sa.Column('gross_amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('refunded_amount', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('gateway', sa.String(32), nullable=False),
        sa.Column('status', sa.String(32), nullable=False, server_default='created', index=True),
        sa.Column('idempotency_key', sa.String(64), nullable=False, index=True),
        sa.Column('provider_reference', sa.String(255), nullable=True),
        sa.Column('provider_txn_id', sa.String(255), nullable=True, index=True),
        sa.Column('checkout_data', postgresql.JSONB(), nullable=True),
        sa.Column('raw_provider_payload', postgresql.JSONB(), nullable=True),
        sa.Column('failure_reason', sa.Text(), nullable=True),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('initiated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('confirmed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('failed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('refunded_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint('gross_amount > 0', name='ck_payments_gross_amount_positive'),
    )
    # One open or paid payment per checkout
    op.create_index(
        'uq_payments_idempotency_key_active',
        'payments',
        ['idempotency_key'],
        unique=True,
        postgresql_where=sa.text(f"status IN ({KEY_BLOCKING_STATUSES})"),
    )
    op.create_index('ix_payments_gateway_provider_reference', 'payments', ['gateway', 'provider_reference'])
    op.create_index('ix_payments_status_expires_at', 'payments', ['status', 'expires_at'])

    op.create_table(
        'webhook_events',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('provider', sa.String(32), nullable=False),
        sa.Column('provider_event_id', sa.String(255), nullable=False),
        sa.Column('event_type', sa.String(32), nullable=False),
        sa.Column('payment_id', postgresql.UUID(as_uuid=True), nullable=True, index=True),
        sa.Column('provider_txn_id', sa.String(255), nullable=True),
        sa.Column('merchant_reference', sa.String(255), nullable=True),
        sa.Column('provider_refund_id', sa.String(255), nullable=True),
        sa.Column('amount', sa.Numeric(12, 2), nullable=True),
        sa.Column('currency', sa.String(3), nullable=True),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('outcome', sa.String(32), nullable=True),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('payload', postgresql.JSONB(), nullable=True),
        sa.Column('received_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint('provider', 'provider_event_id', name='uq_webhook_events_provider_event_id'),
    )
    op.create_index('ix_webhook_events_status_received_at', 'webhook_events', ['status', 'received_at'])

    op.create_table(
        'security_audit_events',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('provider', sa.String(32), nullable=False, index=True),
        sa.Column('reason', sa.String(64), nullable=False),
        sa.Column('remote_addr', sa.String(64), nullable=True),
        sa.Column('body_sha256', sa.String(64), nullable=False),
        sa.Column('headers', postgresql.JSONB(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    op.create_table(
        'commission_settings',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('name', sa.String(200), nullable=False),
        sa.Column('scope', sa.String(20), nullable=False, server_default='global'),
        sa.Column('scope_id', sa.String(64), nullable=True),
        sa.Column('platform_rate', sa.Numeric(5, 2), nullable=False),
        sa.Column('instructor_rate', sa.Numeric(5, 2), nullable=False),
        sa.Column('hold_period_days', sa.Integer(), nullable=False, server_default='14'),
        sa.Column('priority', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('minimum_sale_amount', sa.Numeric(12, 2), nullable=True),
        sa.Column('start_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('end_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint(
            'platform_rate >= 0 AND instructor_rate >= 0 AND platform_rate + instructor_rate <= 100',
            name='ck_commission_settings_rates',
        ),
        sa.CheckConstraint(
            'hold_period_days >= 0 AND hold_period_days <= 365',
            name='ck_commission_settings_hold_period',
        ),
    )
    op.create_index('ix_commission_settings_scope', 'commission_settings', ['scope', 'scope_id'])

    op.create_table(
        'instructor_accounts',
        sa.Column('instructor_id', sa.String(64), primary_key=True),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    op.create_table(
        'earnings_ledger_entries',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('instructor_id', sa.String(64), nullable=False),
        sa.Column('account', sa.String(20), nullable=False, server_default='instructor'),
        sa.Column('payment_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('payments.id', ondelete='RESTRICT'),
                  nullable=True, index=True),
        sa.Column('withdrawal_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('reverses_entry_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('earnings_ledger_entries.id', ondelete='RESTRICT'),
                  nullable=True, index=True),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('state', sa.String(20), nullable=False),
        # Commission snapshot taken at sale time
        sa.Column('gross_amount', sa.Numeric(12, 2), nullable=True),
        sa.Column('platform_rate', sa.Numeric(5, 2), nullable=True),
        sa.Column('instructor_rate', sa.Numeric(5, 2), nullable=True),
        sa.Column('hold_period_days', sa.Integer(), nullable=True),
        sa.Column('commission_setting_id', sa.Integer(), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('available_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('matured_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index(
        'ix_ledger_instructor_account_state',
        'earnings_ledger_entries',
        ['instructor_id', 'account', 'state'],
    )
    op.create_index('ix_ledger_state_available_at', 'earnings_ledger_entries', ['state', 'available_at'])

    op.create_table(
        'withdrawal_methods',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('name', sa.String(100), nullable=False, unique=True),
        sa.Column('display_name', sa.String(200), nullable=False),
        sa.Column('method_type', sa.String(32), nullable=False),
        sa.Column('min_amount', sa.Numeric(12, 2), nullable=False, server_default='100'),
        sa.Column('max_amount', sa.Numeric(12, 2), nullable=False, server_default='50000'),
        sa.Column('fee_percentage', sa.Numeric(5, 2), nullable=False, server_default='0'),
        sa.Column('fixed_fee', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('is_enabled', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    op.create_table(
        'withdrawal_requests',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('instructor_id', sa.String(64), nullable=False),
        sa.Column('method_id', sa.Integer(),
                  sa.ForeignKey('withdrawal_methods.id', ondelete='RESTRICT'),
                  nullable=False),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('fee', sa.Numeric(12, 2), nullable=False),
        sa.Column('net_amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('rejection_reason', sa.String(32), nullable=True),
        sa.Column('rejection_note', sa.Text(), nullable=True),
        sa.Column('external_reference', sa.String(255), nullable=True),
        sa.Column('reviewed_by', sa.String(64), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('approved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('rejected_at', sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint('amount > 0', name='ck_withdrawal_requests_amount_positive'),
    )
    op.create_index(
        'ix_withdrawal_requests_instructor_status',
        'withdrawal_requests',
        ['instructor_id', 'status'],
    )

    op.create_table(
        'refunds',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('payment_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('payments.id', ondelete='RESTRICT'),
                  nullable=False, index=True),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('reason', sa.Text(), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('provider_refund_id', sa.String(255), nullable=True, index=True),
        sa.Column('initiated_by_provider', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('requested_by', sa.String(64), nullable=True),
        sa.Column('failure_reason', sa.Text(), nullable=True),
        sa.Column('raw_provider_payload', postgresql.JSONB(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
    )

    op.create_table(
        'bank_transfers',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('payment_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('payments.id', ondelete='RESTRICT'),
                  nullable=False, unique=True),
        sa.Column('reference_number', sa.String(32), nullable=False, unique=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='awaiting_proof', index=True),
        sa.Column('proof_url', sa.Text(), nullable=True),
        sa.Column('sender_name', sa.String(200), nullable=True),
        sa.Column('sender_account', sa.String(100), nullable=True),
        sa.Column('proof_submitted_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('reviewed_by', sa.String(64), nullable=True),
        sa.Column('review_notes', sa.Text(), nullable=True),
        sa.Column('reviewed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    op.create_table(
        'reconciliation_items',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('kind', sa.String(40), nullable=False, index=True),
        sa.Column('payment_id', postgresql.UUID(as_uuid=True), nullable=True, index=True),
        sa.Column('refund_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('withdrawal_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('instructor_id', sa.String(64), nullable=True),
        sa.Column('summary', sa.Text(), nullable=False),
        sa.Column('details', postgresql.JSONB(), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='open', index=True),
        sa.Column('resolved_by', sa.String(64), nullable=True),
        sa.Column('resolution_note', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('resolved_at', sa.DateTime(timezone=True), nullable=True),
    )


def downgrade() -> None:
    op.drop_table('reconciliation_items')
    op.drop_table('bank_transfers')
    op.drop_table('refunds')
    op.drop_index('ix_withdrawal_requests_instructor_status', table_name='withdrawal_requests')
    op.drop_table('withdrawal_requests')
    op.drop_table('withdrawal_methods')
    op.drop_index('ix_ledger_state_available_at', table_name='earnings_ledger_entries')
    op.drop_index('ix_ledger_instructor_account_state', table_name='earnings_ledger_entries')
    op.drop_table('earnings_ledger_entries')
    op.drop_table('instructor_accounts')
    op.drop_index('ix_commission_settings_scope', table_name='commission_settings')
    op.drop_table('commission_settings')
    op.drop_table('security_audit_events')
    op.drop_index('ix_webhook_events_status_received_at', table_name='webhook_events')
    op.drop_table('webhook_events')
    op.drop_index('ix_payments_status_expires_at', table_name='payments')
    op.drop_index('ix_payments_gateway_provider_reference', table_name='payments')
    op.drop_index('uq_payments_idempotency_key_active', table_name='payments')
    op.drop_table('payments')
