"""initial schema

Revision ID: 2026_10_01_0000
Revises:
Create Date: 2026-10-01 08:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import ARRAY, JSONB


# revision identifiers, used by Alembic.
revision: str = '2026_10_01_0000'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
    ]


def upgrade() -> None:
    """Create initial database schema."""

    # ========================================================================
    # Accounts
    # ========================================================================
    op.create_table(
        'users',
        sa.Column('id', sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column('username', sa.String(64), nullable=False, unique=True),
        sa.Column('password_hash', sa.String(255), nullable=False),
        sa.Column('email', sa.String(255), nullable=True),
        sa.Column('credits', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('role', sa.String(20), nullable=False, server_default='user'),
        sa.Column('account_type', sa.String(20), nullable=False, server_default='uid_manager'),
        sa.Column('is_paused', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('is_locked', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('lock_reason', sa.String(255), nullable=True),
        sa.Column('device_fingerprint', sa.String(64), nullable=True),
        sa.Column('discord_id', sa.String(64), nullable=True),
        sa.Column('discord_username', sa.String(128), nullable=True),
        sa.Column('discord_verified', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('guest_pass_used', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('guest_pass_type', sa.String(20), nullable=True),
        sa.Column('guest_pass_expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('youtube_subscribed', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('instagram_followed', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('two_factor_enabled', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('two_factor_secret', sa.String(64), nullable=True),
        sa.Column('backup_codes', ARRAY(sa.String(64)), nullable=False, server_default='{}'),
        sa.Column('created_by', sa.String(64), nullable=True),
        sa.Column('last_login_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.CheckConstraint('credits >= 0', name='ck_users_credits_non_negative'),
        sa.CheckConstraint(
            "role IN ('guest', 'user', 'limited_admin', 'owner', 'super_admin')",
            name='ck_users_role_valid',
        ),
    )
    op.create_index('idx_users_role', 'users', ['role'])
    op.create_index('idx_users_created_at', 'users', ['created_at'])

    op.create_table(
        'resellers',
        sa.Column('id', sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column('username', sa.String(64), nullable=False, unique=True),
        sa.Column('password_hash', sa.String(255), nullable=False),
        sa.Column('email', sa.String(255), nullable=True),
        sa.Column('credits', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('assigned_products', ARRAY(sa.String(64)), nullable=False, server_default='{}'),
        sa.Column('seller_key', sa.String(255), nullable=True),
        sa.Column('total_clients_created', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_by', sa.String(64), nullable=True),
        sa.Column('last_login_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),

        sa.CheckConstraint('credits >= 0', name='ck_resellers_credits_non_negative'),
    )

    op.create_table(
        'clients',
        sa.Column('id', sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column('username', sa.String(64), nullable=False, unique=True),
        sa.Column('password_hash', sa.String(255), nullable=False),
        sa.Column('product_key', sa.String(64), nullable=False, server_default='UID_BYPASS'),
        sa.Column('assigned_username', sa.String(64), nullable=True),
        sa.Column('assigned_uid', sa.String(64), nullable=True),
        sa.Column('custom_download_link', sa.String(500), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('hwid_reset_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_hwid_reset_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('created_by', sa.String(80), nullable=False),
        sa.Column('last_login_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index('idx_clients_created_by', 'clients', ['created_by'])
    op.create_index('idx_clients_assigned_uid', 'clients', ['assigned_uid'])

    # ========================================================================
    # Catalog
    # ========================================================================
    op.create_table(
        'products',
        sa.Column('id', sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column('key', sa.String(64), nullable=False, unique=True),
        sa.Column('name', sa.String(128), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('packages', JSONB(), nullable=False, server_default='[]'),
        sa.Column('seller_key', sa.String(255), nullable=True),
        sa.Column('allow_hwid_reset', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('max_free_hwid_resets', sa.Integer(), nullable=False, server_default='5'),
        sa.Column('hwid_reset_price', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('download_link', sa.String(500), nullable=True),
        sa.Column('setup_video_url', sa.String(500), nullable=True),
        sa.Column('announcement', sa.Text(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.CheckConstraint('max_free_hwid_resets >= 0', name='ck_products_free_resets_non_negative'),
    )

    op.create_table(
        'package_configs',
        sa.Column('family', sa.String(16), primary_key=True),
        sa.Column('packages', JSONB(), nullable=False, server_default='[]'),
        sa.Column('updated_by', sa.String(64), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.CheckConstraint("family IN ('uid', 'aimkill')", name='ck_package_configs_family'),
    )

    # ========================================================================
    # Provisioned resources
    # ========================================================================
    op.create_table(
        'uids',
        sa.Column('id', sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column('uid', sa.String(64), nullable=False, unique=True),
        sa.Column('username', sa.String(80), nullable=False),
        sa.Column('package_key', sa.String(32), nullable=False),
        sa.Column('duration_hours', sa.Integer(), nullable=False),
        sa.Column('credits_spent', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('is_guest_pass', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        *_timestamps(),
    )
    op.create_index('idx_uids_username', 'uids', ['username'])

    op.create_table(
        'aimkill_keys',
        sa.Column('id', sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column('license_key', sa.String(128), nullable=False, unique=True),
        sa.Column('username', sa.String(80), nullable=False),
        sa.Column('package_key', sa.String(32), nullable=False),
        sa.Column('duration_days', sa.Integer(), nullable=False),
        sa.Column('credits_spent', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('is_placeholder', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        *_timestamps(),
    )
    op.create_index('idx_aimkill_keys_username', 'aimkill_keys', ['username'])

    op.create_table(
        'aimkill_accounts',
        sa.Column('id', sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column('account_username', sa.String(64), nullable=False, unique=True),
        sa.Column('username', sa.String(80), nullable=False),
        sa.Column('package_key', sa.String(32), nullable=False),
        sa.Column('duration_days', sa.Integer(), nullable=False),
        sa.Column('credits_spent', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        *_timestamps(),
    )
    op.create_index('idx_aimkill_accounts_username', 'aimkill_accounts', ['username'])

    # ========================================================================
    # Ledger and audit
    # ========================================================================
    op.create_table(
        'invoices',
        sa.Column('id', sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column('invoice_number', sa.String(32), nullable=False, unique=True),
        sa.Column('username', sa.String(80), nullable=False),
        sa.Column('invoice_type', sa.String(32), nullable=False),
        sa.Column('status', sa.String(16), nullable=False, server_default='paid'),
        sa.Column('description', sa.String(255), nullable=False),
        sa.Column('credits', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('subtotal', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('tax', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('total', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('currency', sa.String(8), nullable=False, server_default='INR'),
        sa.Column('payment_id', sa.String(128), nullable=True, unique=True),
        sa.Column('payment_method', sa.String(32), nullable=True),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),

        sa.CheckConstraint(
            "invoice_type IN ('credit_purchase', 'uid_creation', 'license_creation', "
            "'aimkill_account_creation', 'refund')",
            name='ck_invoices_type_valid',
        ),
        sa.CheckConstraint(
            "status IN ('pending', 'paid', 'cancelled', 'refunded')",
            name='ck_invoices_status_valid',
        ),
    )
    op.create_index('idx_invoices_username', 'invoices', ['username'])
    op.create_index('idx_invoices_created_at', 'invoices', ['created_at'])

    op.create_table(
        'activities',
        sa.Column('id', sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column('username', sa.String(80), nullable=False),
        sa.Column('principal_kind', sa.String(16), nullable=False, server_default='user'),
        sa.Column('action', sa.String(64), nullable=False),
        sa.Column('description', sa.String(500), nullable=False),
        *_timestamps(),
    )
    op.create_index('idx_activities_username_created', 'activities', ['username', 'created_at'])

    op.create_table(
        'login_history',
        sa.Column('id', sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column('username', sa.String(80), nullable=False),
        sa.Column('principal_kind', sa.String(16), nullable=False, server_default='user'),
        sa.Column('success', sa.Boolean(), nullable=False),
        sa.Column('ip_address', sa.String(64), nullable=True),
        sa.Column('user_agent', sa.String(500), nullable=True),
        *_timestamps(),
    )
    op.create_index('idx_login_history_username_created', 'login_history', ['username', 'created_at'])

    op.create_table(
        'chat_messages',
        sa.Column('id', sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column('username', sa.String(80), nullable=False),
        sa.Column('sender', sa.String(16), nullable=False),
        sa.Column('sender_name', sa.String(80), nullable=False),
        sa.Column('body', sa.Text(), nullable=False),
        sa.Column('is_read', sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),

        sa.CheckConstraint("sender IN ('user', 'admin')", name='ck_chat_sender_valid'),
    )
    op.create_index('idx_chat_username_created', 'chat_messages', ['username', 'created_at'])

    op.create_table(
        'reconciliation_records',
        sa.Column('id', sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column('resource_kind', sa.String(32), nullable=False),
        sa.Column('identifier', sa.Text(), nullable=False),
        sa.Column('username', sa.String(80), nullable=False),
        sa.Column('service', sa.String(32), nullable=False),
        sa.Column('error', sa.Text(), nullable=False),
        sa.Column('resolved', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('resolved_by', sa.String(64), nullable=True),
        sa.Column('resolved_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index('idx_reconciliation_unresolved', 'reconciliation_records', ['resolved', 'created_at'])

    # ========================================================================
    # Singletons
    # ========================================================================
    op.create_table(
        'api_config',
        sa.Column('id', sa.Integer(), primary_key=True, server_default='1'),
        sa.Column('base_url', sa.String(500), nullable=True),
        sa.Column('api_key', sa.String(255), nullable=True),
        sa.Column('genzauth_seller_key', sa.String(255), nullable=True),
        sa.Column('updated_by', sa.String(64), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.CheckConstraint('id = 1', name='ck_api_config_singleton'),
    )

    op.create_table(
        'guest_policy',
        sa.Column('id', sa.Integer(), primary_key=True, server_default='1'),
        sa.Column('allow_free_uid', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('allow_free_aimkill', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('max_duration', sa.String(16), nullable=False, server_default='1day'),
        sa.Column('require_social_verification', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('youtube_channel_url', sa.String(500), nullable=True),
        sa.Column('instagram_url', sa.String(500), nullable=True),
        sa.Column('video_url', sa.String(500), nullable=True),
        sa.Column('updated_by', sa.String(64), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.CheckConstraint('id = 1', name='ck_guest_policy_singleton'),
    )


def downgrade() -> None:
    """Drop all tables."""
    for table in (
        'guest_policy',
        'api_config',
        'reconciliation_records',
        'chat_messages',
        'login_history',
        'activities',
        'invoices',
        'aimkill_accounts',
        'aimkill_keys',
        'uids',
        'package_configs',
        'products',
        'clients',
        'resellers',
        'users',
    ):
        op.drop_table(table)
