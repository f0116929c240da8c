"""Credit ledger schema: batches, aggregates, transactions, alerts

Revision ID: 5e2c7a91d4b3
Revises: 
Create Date: 2026-10-17 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '5e2c7a91d4b3'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create the four ledger tables."""
    # 1. Credit batches (authoritative source of every balance)
    op.create_table(
        'credit_batches',
        sa.Column('id', sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.Column('batch_id', sa.UUID(), nullable=False),
        sa.Column('user_id', sa.String(length=64), nullable=False),
        sa.Column('credits_purchased', sa.Numeric(15, 2), nullable=False),
        sa.Column('credits_remaining', sa.Numeric(15, 2), nullable=False),
        sa.Column('credits_used', sa.Numeric(15, 2), nullable=False, server_default='0'),
        sa.Column('purchase_date', sa.DateTime(), nullable=False),
        sa.Column('expiry_date', sa.DateTime(), nullable=False),
        sa.Column('is_expired', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('expired_at', sa.DateTime(), nullable=True),
        sa.Column(
            'batch_type',
            sa.Enum('purchase', 'bonus', 'adjustment', 'refund', name='credit_batch_type'),
            nullable=False,
            server_default='purchase',
        ),
        sa.Column('package_ref', sa.String(), nullable=True),
        sa.Column('payment_reference', sa.String(), nullable=True),
        sa.Column('extra_metadata', postgresql.JSONB(), nullable=False, server_default='{}'),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint('credits_remaining >= 0', name='ck_credit_batches_remaining_non_negative'),
        sa.CheckConstraint('credits_remaining <= credits_purchased', name='ck_credit_batches_remaining_le_purchased'),
        sa.CheckConstraint('credits_used >= 0', name='ck_credit_batches_used_non_negative'),
        sa.UniqueConstraint('payment_reference', 'batch_type', name='uq_credit_batches_payment_reference_type'),
    )
    op.create_index(op.f('ix_credit_batches_batch_id'), 'credit_batches', ['batch_id'], unique=True)
    op.create_index(op.f('ix_credit_batches_user_id'), 'credit_batches', ['user_id'])
    op.create_index(op.f('ix_credit_batches_payment_reference'), 'credit_batches', ['payment_reference'])
    op.create_index(op.f('ix_credit_batches_created_at'), 'credit_batches', ['created_at'])
    op.create_index('ix_credit_batches_user_fifo', 'credit_batches', ['user_id', 'is_expired', 'purchase_date', 'id'])
    op.create_index('ix_credit_batches_expiry_scan', 'credit_batches', ['is_expired', 'expiry_date'])

    # 2. Per-user aggregates (available_credits is generated)
    op.create_table(
        'user_credit_aggregates',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.Column('user_id', sa.String(length=64), nullable=False),
        sa.Column('total_credits', sa.Numeric(15, 2), nullable=False, server_default='0'),
        sa.Column('used_credits', sa.Numeric(15, 2), nullable=False, server_default='0'),
        sa.Column('expired_credits', sa.Numeric(15, 2), nullable=False, server_default='0'),
        sa.Column(
            'available_credits',
            sa.Numeric(15, 2),
            sa.Computed('total_credits - used_credits - expired_credits', persisted=True),
        ),
        sa.Column('last_purchase_at', sa.DateTime(), nullable=True),
        sa.Column('last_usage_at', sa.DateTime(), nullable=True),
        sa.Column('last_expiry_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_user_credit_aggregates_id'), 'user_credit_aggregates', ['id'])
    op.create_index(op.f('ix_user_credit_aggregates_user_id'), 'user_credit_aggregates', ['user_id'], unique=True)
    op.create_index(op.f('ix_user_credit_aggregates_created_at'), 'user_credit_aggregates', ['created_at'])

    # 3. Transaction log (append-only)
    op.create_table(
        'credit_transactions',
        sa.Column('id', sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.Column('transaction_id', sa.UUID(), nullable=False),
        sa.Column('user_id', sa.String(length=64), nullable=False),
        sa.Column(
            'type',
            sa.Enum('purchase', 'bonus', 'usage', 'adjustment', 'refund', 'expiry', name='credit_transaction_type'),
            nullable=False,
        ),
        sa.Column('amount', sa.Numeric(15, 2), nullable=False),
        sa.Column('balance_before', sa.Numeric(15, 2), nullable=False),
        sa.Column('balance_after', sa.Numeric(15, 2), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('reference_type', sa.String(), nullable=True),
        sa.Column('reference_id', sa.String(), nullable=True),
        sa.Column('idempotency_key', sa.String(), nullable=False),
        sa.Column('extra_metadata', postgresql.JSONB(), nullable=False, server_default='{}'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_credit_transactions_transaction_id'), 'credit_transactions', ['transaction_id'], unique=True)
    op.create_index(op.f('ix_credit_transactions_user_id'), 'credit_transactions', ['user_id'])
    op.create_index(op.f('ix_credit_transactions_type'), 'credit_transactions', ['type'])
    op.create_index(op.f('ix_credit_transactions_reference_id'), 'credit_transactions', ['reference_id'])
    op.create_index(op.f('ix_credit_transactions_idempotency_key'), 'credit_transactions', ['idempotency_key'], unique=True)
    op.create_index(op.f('ix_credit_transactions_created_at'), 'credit_transactions', ['created_at'])

    # 4. Alerts (append-only, cooldown scans by user + type + created_at)
    op.create_table(
        'credit_alerts',
        sa.Column('id', sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.Column('alert_id', sa.UUID(), nullable=False),
        sa.Column('user_id', sa.String(length=64), nullable=False),
        sa.Column(
            'alert_type',
            sa.Enum('credits_expiring', 'credits_expired', 'low_credits', 'no_credits', name='credit_alert_type'),
            nullable=False,
        ),
        sa.Column('threshold_value', sa.Numeric(15, 2), nullable=True),
        sa.Column('current_value', sa.Numeric(15, 2), nullable=True),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('is_sent', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('sent_at', sa.DateTime(), nullable=True),
        sa.Column('email_sent', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('push_sent', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('extra_metadata', postgresql.JSONB(), nullable=False, server_default='{}'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_credit_alerts_alert_id'), 'credit_alerts', ['alert_id'], unique=True)
    op.create_index(op.f('ix_credit_alerts_user_id'), 'credit_alerts', ['user_id'])
    op.create_index(op.f('ix_credit_alerts_created_at'), 'credit_alerts', ['created_at'])
    op.create_index('ix_credit_alerts_user_type_created', 'credit_alerts', ['user_id', 'alert_type', 'created_at'])


def downgrade() -> None:
    """Drop all ledger tables and enum types."""
    op.drop_table('credit_alerts')
    op.drop_table('credit_transactions')
    op.drop_table('user_credit_aggregates')
    op.drop_table('credit_batches')
    op.execute('DROP TYPE IF EXISTS credit_alert_type')
    op.execute('DROP TYPE IF EXISTS credit_transaction_type')
    op.execute('DROP TYPE IF EXISTS credit_batch_type')
