"""initial schema

Revision ID: 2025_10_08_0000
Revises:
Create Date: 2025-10-08 08:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID


# revision identifiers, used by Alembic.
revision: str = '2025_10_08_0000'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create wallet, ledger, session and payout tables."""

    # ========================================================================
    # Create wallets table
    # ========================================================================
    op.create_table(
        'wallets',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', UUID(as_uuid=True), nullable=False),
        sa.Column('user_type', sa.String(20), nullable=False, server_default='student'),
        sa.Column('balance', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('locked_balance', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint('balance >= 0', name='ck_wallet_balance_non_negative'),
        sa.CheckConstraint('locked_balance >= 0', name='ck_wallet_locked_non_negative'),
        sa.UniqueConstraint('user_id', name='uq_wallet_user'),
    )

    # ========================================================================
    # Create token_transactions table
    # ========================================================================
    op.create_table(
        'token_transactions',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('wallet_id', UUID(as_uuid=True), nullable=False),
        sa.Column('user_id', UUID(as_uuid=True), nullable=False),
        sa.Column('transaction_type', sa.String(20), nullable=False),
        sa.Column('amount_tokens', sa.BigInteger(), nullable=False),
        sa.Column('amount_usd', sa.Numeric(12, 2), nullable=False),
        sa.Column('token_rate', sa.Numeric(10, 4), nullable=False),
        sa.Column('balance_before', sa.BigInteger(), nullable=False),
        sa.Column('balance_after', sa.BigInteger(), nullable=False),
        sa.Column('description', sa.String(), nullable=False),
        sa.Column('related_entity_type', sa.String(50), nullable=True),
        sa.Column('related_entity_id', sa.String(255), nullable=True),
        sa.Column('idempotency_key', sa.String(255), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='completed'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint('amount_tokens > 0', name='ck_token_tx_amount_positive'),
        sa.CheckConstraint('balance_after >= 0', name='ck_token_tx_balance_non_negative'),
        sa.CheckConstraint(
            "transaction_type IN ('purchase', 'deduction', 'refund', 'bonus', 'earning', 'withdrawal', 'fee')",
            name='ck_token_tx_type',
        ),
        sa.UniqueConstraint('idempotency_key', name='uq_token_tx_idempotency'),
        sa.ForeignKeyConstraint(['wallet_id'], ['wallets.id'], name='fk_token_tx_wallet', ondelete='RESTRICT'),
    )

    # Indexes for token_transactions
    op.create_index('ix_token_transactions_wallet_id', 'token_transactions', ['wallet_id'])
    op.create_index('idx_token_tx_user_created', 'token_transactions', ['user_id', 'created_at'])
    op.create_index(
        'idx_token_tx_related', 'token_transactions', ['related_entity_type', 'related_entity_id'],
        postgresql_where=sa.text('related_entity_id IS NOT NULL'),
    )

    # ========================================================================
    # Create class_sessions table
    # ========================================================================
    op.create_table(
        'class_sessions',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('teacher_id', UUID(as_uuid=True), nullable=False),
        sa.Column('student_id', UUID(as_uuid=True), nullable=False),
        sa.Column('class_id', UUID(as_uuid=True), nullable=True),
        sa.Column('title', sa.String(255), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='scheduled'),
        sa.Column('scheduled_start', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('scheduled_end', sa.DateTime(timezone=True), nullable=False),
        sa.Column('actual_start', sa.DateTime(timezone=True), nullable=True),
        sa.Column('actual_end', sa.DateTime(timezone=True), nullable=True),
        sa.Column('duration_minutes', sa.Integer(), nullable=True),
        sa.Column('meeting_id', sa.String(255), nullable=True),
        sa.Column('tokens_charged', sa.Integer(), nullable=False, server_default='10'),
        sa.Column('tokens_deducted_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('tokens_credited_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('tokens_refunded_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('teacher_earning_usd', sa.Numeric(12, 2), nullable=True),
        sa.Column('student_cost_usd', sa.Numeric(12, 2), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint('tokens_charged >= 0', name='ck_session_tokens_non_negative'),
        sa.CheckConstraint(
            "status IN ('scheduled', 'in_progress', 'paused', 'completed', 'cancelled', 'no_show')",
            name='ck_session_status',
        ),
    )

    # Indexes for class_sessions
    op.create_index('ix_class_sessions_teacher_id', 'class_sessions', ['teacher_id'])
    op.create_index('ix_class_sessions_student_id', 'class_sessions', ['student_id'])
    op.create_index('idx_sessions_teacher_status', 'class_sessions', ['teacher_id', 'status'])
    op.create_index('idx_sessions_created_at', 'class_sessions', ['created_at'])

    # ========================================================================
    # Create session_time_tracker table
    # ========================================================================
    op.create_table(
        'session_time_tracker',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('session_id', UUID(as_uuid=True), nullable=False),
        sa.Column('start_time', sa.DateTime(timezone=True), nullable=False),
        sa.Column('pause_time', sa.DateTime(timezone=True), nullable=True),
        sa.Column('resume_time', sa.DateTime(timezone=True), nullable=True),
        sa.Column('total_paused_seconds', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_active_seconds', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text('true')),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint('total_paused_seconds >= 0', name='ck_tracker_paused_non_negative'),
        sa.CheckConstraint('total_active_seconds >= 0', name='ck_tracker_active_non_negative'),
        sa.ForeignKeyConstraint(['session_id'], ['class_sessions.id'], name='fk_tracker_session', ondelete='CASCADE'),
    )

    op.create_index('idx_tracker_session_created', 'session_time_tracker', ['session_id', 'created_at'])

    # ========================================================================
    # Create withdrawal_requests table
    # ========================================================================
    op.create_table(
        'withdrawal_requests',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', UUID(as_uuid=True), nullable=False),
        sa.Column('wallet_id', UUID(as_uuid=True), nullable=False),
        sa.Column('payment_method_id', sa.String(255), nullable=False),
        sa.Column('amount_usd', sa.Numeric(12, 2), nullable=False),
        sa.Column('tokens_to_convert', sa.BigInteger(), nullable=False),
        sa.Column('conversion_rate', sa.Numeric(10, 4), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('provider', sa.String(20), nullable=False, server_default='stripe'),
        sa.Column('provider_transaction_id', sa.String(255), nullable=True),
        sa.Column('failure_reason', sa.Text(), nullable=True),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint('amount_usd > 0', name='ck_withdrawal_amount_positive'),
        sa.CheckConstraint('tokens_to_convert > 0', name='ck_withdrawal_tokens_positive'),
        sa.CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed', 'cancelled')",
            name='ck_withdrawal_status',
        ),
        sa.CheckConstraint("provider IN ('stripe', 'mpesa', 'bank_transfer')", name='ck_withdrawal_provider'),
        sa.ForeignKeyConstraint(['wallet_id'], ['wallets.id'], name='fk_withdrawal_wallet', ondelete='RESTRICT'),
    )

    op.create_index('ix_withdrawal_requests_user_id', 'withdrawal_requests', ['user_id'])

    # ========================================================================
    # Create token_pricing table
    # ========================================================================
    op.create_table(
        'token_pricing',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_type', sa.String(20), nullable=False),
        sa.Column('tokens_per_dollar', sa.Numeric(10, 4), nullable=False),
        sa.Column('dollars_per_token', sa.Numeric(10, 4), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text('true')),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
    )

    op.create_index(
        'uq_token_pricing_active_user_type', 'token_pricing', ['user_type'],
        unique=True, postgresql_where=sa.text('is_active'),
    )

    # Seed default rates
    op.execute(
        "INSERT INTO token_pricing (user_type, tokens_per_dollar, dollars_per_token) VALUES "
        "('student', 10, 0.10), ('teacher', 25, 0.04)"
    )

    # ========================================================================
    # Create payment_customers table
    # ========================================================================
    op.create_table(
        'payment_customers',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', UUID(as_uuid=True), nullable=False),
        sa.Column('provider', sa.String(20), nullable=False, server_default='stripe'),
        sa.Column('customer_id', sa.String(255), nullable=False),
        sa.Column('email', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.UniqueConstraint('user_id', 'provider', name='uq_payment_customer_user'),
    )


def downgrade() -> None:
    """Drop all tables."""
    op.drop_table('payment_customers')
    op.drop_index('uq_token_pricing_active_user_type', table_name='token_pricing')
    op.drop_table('token_pricing')
    op.drop_table('withdrawal_requests')
    op.drop_table('session_time_tracker')
    op.drop_table('class_sessions')
    op.drop_table('token_transactions')
    op.drop_table('wallets')
