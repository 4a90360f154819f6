"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.
Resources are owned by username string, not by foreign key.
"""

from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    ARRAY,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    event,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from license_portal.config import settings
from license_portal.models.domain import (
    AccountSnapshot,
    AccountType,
    GuestPolicySnapshot,
    ResourceStatus,
    Role,
    TierFlags,
    derive_status,
)


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class ProvisionedResourceMixin:
    """Status is always derived from expires_at, never stored."""

    expires_at: Mapped[datetime]

    @property
    def status(self) -> ResourceStatus:
        return derive_status(self.expires_at, utc_now())


class User(Base):
    """
    ORM model for users table.

    End-user, guest and admin accounts. The admin tier lives in `role`;
    boolean tier flags are derived from it.
    """

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)

    credits: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    role: Mapped[str] = mapped_column(String(20), nullable=False, default=Role.USER.value)
    account_type: Mapped[str] = mapped_column(
        String(20), nullable=False, default=AccountType.UID_MANAGER.value
    )

    # Lock state
    is_paused: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_locked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    lock_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)
    device_fingerprint: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # Guest entitlement state
    discord_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    discord_username: Mapped[str | None] = mapped_column(String(128), nullable=True)
    discord_verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    guest_pass_used: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    guest_pass_type: Mapped[str | None] = mapped_column(String(20), nullable=True)
    guest_pass_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    youtube_subscribed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    instagram_followed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Two-factor authentication
    two_factor_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    two_factor_secret: Mapped[str | None] = mapped_column(String(64), nullable=True)
    backup_codes: Mapped[list[str]] = mapped_column(
        ARRAY(String(64)), nullable=False, default=list
    )

    created_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    last_login_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("credits >= 0", name="ck_users_credits_non_negative"),
        CheckConstraint(
            "role IN ('guest', 'user', 'limited_admin', 'owner', 'super_admin')",
            name="ck_users_role_valid",
        ),
        Index("idx_users_role", "role"),
        Index("idx_users_created_at", "created_at"),
    )

    @property
    def role_enum(self) -> Role:
        return Role(self.role)

    @property
    def is_bootstrap(self) -> bool:
        return self.username == settings.bootstrap_admin_username

    @property
    def is_guest(self) -> bool:
        return self.role == Role.GUEST.value

    @property
    def tier(self) -> TierFlags:
        return self.role_enum.flags()

    def snapshot(self) -> AccountSnapshot:
        return AccountSnapshot(
            username=self.username,
            role=self.role_enum,
            credits=self.credits,
            is_paused=self.is_paused,
            is_locked=self.is_locked,
            discord_verified=self.discord_verified,
            guest_pass_used=self.guest_pass_used,
            youtube_subscribed=self.youtube_subscribed,
            instagram_followed=self.instagram_followed,
            two_factor_enabled=self.two_factor_enabled,
            is_bootstrap=self.is_bootstrap,
        )

    def __repr__(self) -> str:
        return f"<User(username={self.username}, role={self.role}, credits={self.credits})>"


@event.listens_for(User, "before_insert")
@event.listens_for(User, "before_update")
def _normalize_user_tier(mapper: Any, connection: Any, target: User) -> None:
    """Every persist leaves exactly one valid tier; the bootstrap account is always super-admin."""
    role = Role(target.role or Role.USER.value)
    if target.username == settings.bootstrap_admin_username:
        role = Role.SUPER_ADMIN
    target.role = role.value
    if target.username:
        target.username = target.username.strip().lower()


class Reseller(Base):
    """ORM model for resellers table."""

    __tablename__ = "resellers"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    credits: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    assigned_products: Mapped[list[str]] = mapped_column(
        ARRAY(String(64)), nullable=False, default=list
    )
    seller_key: Mapped[str | None] = mapped_column(String(255), nullable=True)
    total_clients_created: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    last_login_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (CheckConstraint("credits >= 0", name="ck_resellers_credits_non_negative"),)


class Client(Base):
    """ORM model for clients table (end customers created by resellers or admins)."""

    __tablename__ = "clients"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    product_key: Mapped[str] = mapped_column(String(64), nullable=False, default="UID_BYPASS")
    assigned_username: Mapped[str | None] = mapped_column(String(64), nullable=True)
    assigned_uid: Mapped[str | None] = mapped_column(String(64), nullable=True)
    custom_download_link: Mapped[str | None] = mapped_column(String(500), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    hwid_reset_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_hwid_reset_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by: Mapped[str] = mapped_column(String(80), nullable=False)
    last_login_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        Index("idx_clients_created_by", "created_by"),
        Index("idx_clients_assigned_uid", "assigned_uid"),
    )

    @property
    def is_expired(self) -> bool:
        return self.expires_at is not None and utc_now() > self.expires_at


class Product(Base):
    """ORM model for products table. Referenced by `key` from clients."""

    __tablename__ = "products"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    key: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    packages: Mapped[list[dict[str, Any]]] = mapped_column(JSONB, nullable=False, default=list)
    seller_key: Mapped[str | None] = mapped_column(String(255), nullable=True)
    allow_hwid_reset: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    max_free_hwid_resets: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    hwid_reset_price: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    download_link: Mapped[str | None] = mapped_column(String(500), nullable=True)
    setup_video_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    announcement: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("max_free_hwid_resets >= 0", name="ck_products_free_resets_non_negative"),
    )


class Uid(ProvisionedResourceMixin, Base):
    """ORM model for uids table."""

    __tablename__ = "uids"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    uid: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    username: Mapped[str] = mapped_column(String(80), nullable=False)
    package_key: Mapped[str] = mapped_column(String(32), nullable=False)
    duration_hours: Mapped[int] = mapped_column(Integer, nullable=False)
    credits_spent: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_guest_pass: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (Index("idx_uids_username", "username"),)


class AimkillKey(ProvisionedResourceMixin, Base):
    """ORM model for aimkill_keys table (GenzAuth license keys)."""

    __tablename__ = "aimkill_keys"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    license_key: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    username: Mapped[str] = mapped_column(String(80), nullable=False)
    package_key: Mapped[str] = mapped_column(String(32), nullable=False)
    duration_days: Mapped[int] = mapped_column(Integer, nullable=False)
    credits_spent: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_placeholder: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (Index("idx_aimkill_keys_username", "username"),)


class AimkillAccount(ProvisionedResourceMixin, Base):
    """ORM model for aimkill_accounts table (GenzAuth user accounts)."""

    __tablename__ = "aimkill_accounts"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    account_username: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    username: Mapped[str] = mapped_column(String(80), nullable=False)
    package_key: Mapped[str] = mapped_column(String(32), nullable=False)
    duration_days: Mapped[int] = mapped_column(Integer, nullable=False)
    credits_spent: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (Index("idx_aimkill_accounts_username", "username"),)


class Invoice(Base):
    """
    ORM model for invoices table.

    Append-only ledger. Numbers are `INV-<year>-<6-digit seq>`.
    """

    __tablename__ = "invoices"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    invoice_number: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    username: Mapped[str] = mapped_column(String(80), nullable=False)
    invoice_type: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="paid")
    description: Mapped[str] = mapped_column(String(255), nullable=False)
    credits: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    subtotal: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=0)
    tax: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=0)
    total: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(8), nullable=False, default="INR")
    payment_id: Mapped[str | None] = mapped_column(String(128), nullable=True, unique=True)
    payment_method: Mapped[str | None] = mapped_column(String(32), nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint(
            "invoice_type IN ('credit_purchase', 'uid_creation', 'license_creation', "
            "'aimkill_account_creation', 'refund')",
            name="ck_invoices_type_valid",
        ),
        CheckConstraint(
            "status IN ('pending', 'paid', 'cancelled', 'refunded')",
            name="ck_invoices_status_valid",
        ),
        Index("idx_invoices_username", "username"),
        Index("idx_invoices_created_at", "created_at"),
    )


class Activity(Base):
    """ORM model for activities table. Capped as a whole by ActivityService."""

    __tablename__ = "activities"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(80), nullable=False)
    principal_kind: Mapped[str] = mapped_column(String(16), nullable=False, default="user")
    action: Mapped[str] = mapped_column(String(64), nullable=False)
    description: Mapped[str] = mapped_column(String(500), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (Index("idx_activities_username_created", "username", "created_at"),)


class LoginHistory(Base):
    """ORM model for login_history table."""

    __tablename__ = "login_history"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(80), nullable=False)
    principal_kind: Mapped[str] = mapped_column(String(16), nullable=False, default="user")
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(500), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (Index("idx_login_history_username_created", "username", "created_at"),)


class ChatMessage(Base):
    """ORM model for chat_messages table. One conversation per username."""

    __tablename__ = "chat_messages"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(80), nullable=False)
    sender: Mapped[str] = mapped_column(String(16), nullable=False)
    sender_name: Mapped[str] = mapped_column(String(80), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    is_read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("sender IN ('user', 'admin')", name="ck_chat_sender_valid"),
        Index("idx_chat_username_created", "username", "created_at"),
    )


class ApiConfig(Base):
    """Singleton row (id=1) holding runtime API credentials."""

    __tablename__ = "api_config"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, default=1)
    base_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    api_key: Mapped[str | None] = mapped_column(String(255), nullable=True)
    genzauth_seller_key: Mapped[str | None] = mapped_column(String(255), nullable=True)
    updated_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (CheckConstraint("id = 1", name="ck_api_config_singleton"),)


class GuestPolicy(Base):
    """Singleton row (id=1) holding the guest free-pass rules."""

    __tablename__ = "guest_policy"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, default=1)
    allow_free_uid: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    allow_free_aimkill: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    max_duration: Mapped[str] = mapped_column(String(16), nullable=False, default="1day")
    require_social_verification: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    youtube_channel_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    instagram_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    video_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    updated_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (CheckConstraint("id = 1", name="ck_guest_policy_singleton"),)

    def snapshot(self) -> GuestPolicySnapshot:
        return GuestPolicySnapshot(
            allow_free_uid=self.allow_free_uid,
            allow_free_aimkill=self.allow_free_aimkill,
            max_duration=self.max_duration,
            require_social_verification=self.require_social_verification,
        )


class PackageConfig(Base):
    """Package price list for one resource family (`uid` in hours, `aimkill` in days)."""

    __tablename__ = "package_configs"

    family: Mapped[str] = mapped_column(String(16), primary_key=True)
    packages: Mapped[list[dict[str, Any]]] = mapped_column(JSONB, nullable=False, default=list)
    updated_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("family IN ('uid', 'aimkill')", name="ck_package_configs_family"),
    )


class ReconciliationRecord(Base):
    """An external resource that exists upstream but has no local row."""

    __tablename__ = "reconciliation_records"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    resource_kind: Mapped[str] = mapped_column(String(32), nullable=False)
    identifier: Mapped[str] = mapped_column(Text, nullable=False)
    username: Mapped[str] = mapped_column(String(80), nullable=False)
    service: Mapped[str] = mapped_column(String(32), nullable=False)
    error: Mapped[str] = mapped_column(Text, nullable=False)
    resolved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    resolved_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (Index("idx_reconciliation_unresolved", "resolved", "created_at"),)
