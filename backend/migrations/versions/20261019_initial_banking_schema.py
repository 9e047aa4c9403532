"""Initial schema: users, ledger and bank aggregation tables

Revision ID: 20261019_initial_banking
Revises:
Create Date: 2026-10-19

Creates:
1. users - account owners, with their Bridge user uuid
2. categories / transactions / user_categorization_patterns - the ledger
3. bank_connections / bank_accounts / bank_transactions - aggregator data
"""

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '20261019_initial_banking'
down_revision = None
branch_labels = None
depends_on = None


CONNECTION_STATUSES = ('pending', 'active', 'error', 'expired', 'disconnected', 'disabled')


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), nullable=False, autoincrement=True),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('name', sa.String(255), nullable=True),
        sa.Column('bridge_user_uuid', sa.String(64), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)
    op.create_index('ix_users_bridge_user_uuid', 'users', ['bridge_user_uuid'], unique=True)

    op.create_table(
        'categories',
        sa.Column('id', sa.Integer(), nullable=False, autoincrement=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('type', sa.String(20), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'name', 'type', name='uq_category_user_name_type'),
    )
    op.create_index('ix_categories_user_id', 'categories', ['user_id'])
    op.create_index('ix_categories_name', 'categories', ['name'])

    # =========================================================================
    # Bank connections (one per Bridge item)
    # =========================================================================
    op.create_table(
        'bank_connections',
        sa.Column('id', sa.Integer(), nullable=False, autoincrement=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('provider', sa.String(50), nullable=False),
        sa.Column('provider_connection_id', sa.String(100), nullable=False),
        sa.Column('bank_name', sa.String(255), nullable=True),
        sa.Column('bank_logo_url', sa.String(500), nullable=True),
        sa.Column('status', sa.Enum(*CONNECTION_STATUSES, name='connectionstatus', native_enum=False, length=20), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('last_sync_at', sa.DateTime(), nullable=True),
        sa.Column('last_successful_sync_at', sa.DateTime(), nullable=True),
        sa.Column('error_count', sa.Integer(), nullable=False),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('last_error_at', sa.DateTime(), nullable=True),
        sa.Column('auto_sync_enabled', sa.Boolean(), nullable=False),
        sa.Column('sync_frequency_hours', sa.Integer(), nullable=False),
        sa.Column('provider_metadata', sa.JSON(), nullable=True),
        sa.Column('deleted_at', sa.DateTime(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'provider_connection_id', name='uq_bank_connection_user_item'),
    )
    op.create_index('ix_bank_connections_user_id', 'bank_connections', ['user_id'])
    op.create_index('ix_bank_connections_status', 'bank_connections', ['status'])
    op.create_index('ix_bank_connections_deleted_at', 'bank_connections', ['deleted_at'])

    op.create_table(
        'bank_accounts',
        sa.Column('id', sa.Integer(), nullable=False, autoincrement=True),
        sa.Column('bank_connection_id', sa.Integer(), sa.ForeignKey('bank_connections.id', ondelete='CASCADE'), nullable=False),
        sa.Column('external_id', sa.String(100), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('type', sa.String(20), nullable=False),
        sa.Column('balance', sa.Numeric(14, 2), nullable=True),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('iban', sa.String(34), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('last_balance_update', sa.DateTime(), nullable=True),
        sa.Column('provider_metadata', sa.JSON(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('bank_connection_id', 'external_id', name='uq_bank_account_connection_external'),
    )
    op.create_index('ix_bank_accounts_bank_connection_id', 'bank_accounts', ['bank_connection_id'])

    # =========================================================================
    # Ledger transactions
    # =========================================================================
    op.create_table(
        'transactions',
        sa.Column('id', sa.Integer(), nullable=False, autoincrement=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('category_id', sa.Integer(), sa.ForeignKey('categories.id'), nullable=True),
        sa.Column('type', sa.String(20), nullable=False),
        sa.Column('amount', sa.Numeric(14, 2), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('transaction_date', sa.Date(), nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('source', sa.String(50), nullable=True),
        sa.Column('auto_imported', sa.Boolean(), nullable=False),
        sa.Column('auto_categorized', sa.Boolean(), nullable=False),
        sa.Column('is_from_bridge', sa.Boolean(), nullable=False),
        sa.Column('bank_connection_id', sa.Integer(), sa.ForeignKey('bank_connections.id', ondelete='SET NULL'), nullable=True),
        sa.Column('external_transaction_id', sa.String(100), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'external_transaction_id', name='uq_transaction_user_external_id'),
    )
    op.create_index('ix_transactions_user_id', 'transactions', ['user_id'])
    op.create_index('ix_transactions_category_id', 'transactions', ['category_id'])
    op.create_index('ix_transactions_transaction_date', 'transactions', ['transaction_date'])
    op.create_index('idx_transactions_user_date', 'transactions', ['user_id', 'transaction_date'])

    op.create_table(
        'user_categorization_patterns',
        sa.Column('id', sa.Integer(), nullable=False, autoincrement=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('category_id', sa.Integer(), sa.ForeignKey('categories.id', ondelete='CASCADE'), nullable=False),
        sa.Column('pattern', sa.String(100), nullable=False),
        sa.Column('match_count', sa.Integer(), nullable=False),
        sa.Column('confidence', sa.Float(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'pattern', 'category_id', name='uq_pattern_user_pattern_category'),
    )
    op.create_index('ix_user_categorization_patterns_user_id', 'user_categorization_patterns', ['user_id'])

    # =========================================================================
    # Raw imported bank transactions
    # =========================================================================
    op.create_table(
        'bank_transactions',
        sa.Column('id', sa.Integer(), nullable=False, autoincrement=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('bank_connection_id', sa.Integer(), sa.ForeignKey('bank_connections.id', ondelete='SET NULL'), nullable=True),
        sa.Column('bank_account_id', sa.Integer(), sa.ForeignKey('bank_accounts.id', ondelete='SET NULL'), nullable=True),
        sa.Column('external_id', sa.String(100), nullable=False),
        sa.Column('amount', sa.Numeric(14, 2), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('merchant_name', sa.String(255), nullable=True),
        sa.Column('merchant_category', sa.String(100), nullable=True),
        sa.Column('transaction_date', sa.Date(), nullable=False),
        sa.Column('value_date', sa.Date(), nullable=True),
        sa.Column('account_balance_after', sa.Numeric(14, 2), nullable=True),
        sa.Column('raw_data', sa.JSON(), nullable=True),
        sa.Column('processing_status', sa.String(20), nullable=False),
        sa.Column('suggested_category_id', sa.Integer(), sa.ForeignKey('categories.id', ondelete='SET NULL'), nullable=True),
        sa.Column('confidence_score', sa.Float(), nullable=True),
        sa.Column('converted_transaction_id', sa.Integer(), sa.ForeignKey('transactions.id', ondelete='SET NULL'), nullable=True),
        sa.Column('imported_at', sa.DateTime(), nullable=False),
        sa.Column('categorized_at', sa.DateTime(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'external_id', name='uq_bank_transaction_user_external'),
    )
    op.create_index('ix_bank_transactions_user_id', 'bank_transactions', ['user_id'])
    op.create_index('ix_bank_transactions_bank_connection_id', 'bank_transactions', ['bank_connection_id'])
    op.create_index('ix_bank_transactions_transaction_date', 'bank_transactions', ['transaction_date'])
    op.create_index('ix_bank_transactions_processing_status', 'bank_transactions', ['processing_status'])
    op.create_index('idx_bank_transactions_status', 'bank_transactions', ['user_id', 'processing_status'])


def downgrade() -> None:
    op.drop_table('bank_transactions')
    op.drop_table('user_categorization_patterns')
    op.drop_table('transactions')
    op.drop_table('bank_accounts')
    op.drop_table('bank_connections')
    op.drop_table('categories')
    op.drop_table('users')
