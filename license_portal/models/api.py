"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
"""

from datetime import UTC, datetime
from decimal import Decimal

from pydantic import BaseModel, Field, field_validator

from license_portal.db.models import (
    Activity,
    AimkillAccount,
    AimkillKey,
    ChatMessage,
    Client,
    GuestPolicy,
    Invoice,
    LoginHistory,
    Product,
    ReconciliationRecord,
    Reseller,
    Uid,
    User,
)
from license_portal.models.domain import (
    GUEST_DURATION_LADDER,
    AccountType,
    PackageSpec,
    Role,
    format_time_left,
    normalize_tier,
)

# ============================================================================
# Shared
# ============================================================================


class ActionResponse(BaseModel):
    """Envelope every mutation returns."""

    success: bool = True
    message: str


class CountResponse(ActionResponse):
    count: int


class ErrorDetail(BaseModel):
    """Body of `detail` on every error response."""

    error: str
    reason: str | None = None


# ============================================================================
# Accounts
# ============================================================================


class AccountResponse(BaseModel):
    """A user account as shown to itself and to admins."""

    username: str
    email: str | None
    role: Role
    account_type: AccountType
    credits: int
    is_admin: bool
    is_super_admin: bool
    is_owner: bool
    is_limited_admin: bool
    admin_level: str
    is_guest: bool
    is_paused: bool
    is_locked: bool
    discord_verified: bool
    youtube_subscribed: bool
    instagram_followed: bool
    guest_pass_used: bool
    guest_pass_type: str | None
    guest_pass_expires_at: datetime | None
    two_factor_enabled: bool
    created_at: datetime
    last_login_at: datetime | None

    @classmethod
    def from_user(cls, user: User) -> "AccountResponse":
        tier = user.tier
        return cls(
            username=user.username,
            email=user.email,
            role=user.role_enum,
            account_type=AccountType(user.account_type),
            credits=user.credits,
            is_admin=tier.is_admin,
            is_super_admin=tier.is_super_admin,
            is_owner=tier.is_owner,
            is_limited_admin=tier.is_limited_admin,
            admin_level=tier.admin_level,
            is_guest=user.is_guest,
            is_paused=user.is_paused,
            is_locked=user.is_locked,
            discord_verified=user.discord_verified,
            youtube_subscribed=user.youtube_subscribed,
            instagram_followed=user.instagram_followed,
            guest_pass_used=user.guest_pass_used,
            guest_pass_type=user.guest_pass_type,
            guest_pass_expires_at=user.guest_pass_expires_at,
            two_factor_enabled=user.two_factor_enabled,
            created_at=user.created_at,
            last_login_at=user.last_login_at,
        )


class RegisterRequest(BaseModel):
    """POST /api/auth/register request body."""

    username: str = Field(..., min_length=3, max_length=32)
    password: str = Field(..., min_length=1, max_length=128)
    email: str | None = Field(None, max_length=255)
    account_type: AccountType = AccountType.UID_MANAGER
    guest: bool = False


class LoginRequest(BaseModel):
    """Login body shared by users, resellers and clients."""

    username: str = Field(..., min_length=1, max_length=64)
    password: str = Field(..., min_length=1, max_length=128)
    two_factor_code: str | None = Field(None, max_length=16)


class LoginResponse(BaseModel):
    success: bool
    message: str
    requires_two_factor: bool = False
    account: AccountResponse | None = None


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(..., min_length=1)
    new_password: str = Field(..., min_length=1, max_length=128)


class TwoFactorCodeRequest(BaseModel):
    code: str = Field(..., min_length=6, max_length=16)


class TwoFactorDisableRequest(BaseModel):
    password: str = Field(..., min_length=1)
    code: str = Field(..., min_length=6, max_length=16)


class TwoFactorSetupResponse(BaseModel):
    success: bool = True
    secret: str
    provisioning_uri: str


class BackupCodesResponse(BaseModel):
    """Backup codes are only ever returned once, right after enabling 2FA."""

    success: bool = True
    message: str
    backup_codes: list[str]


class TwoFactorStatusResponse(BaseModel):
    enabled: bool
    backup_codes_remaining: int


# ============================================================================
# Packages and products
# ============================================================================


class PackageResponse(BaseModel):
    key: str
    display: str
    duration: int
    unit: str
    credits: int
    price: float
    popular: bool

    @classmethod
    def from_spec(cls, spec: PackageSpec) -> "PackageResponse":
        return cls(
            key=spec.key,
            display=spec.display,
            duration=spec.duration,
            unit=spec.unit.value,
            credits=spec.credits,
            price=spec.price,
            popular=spec.popular,
        )


class PackageEntry(BaseModel):
    """One stored price-list entry. UID packages use `hours`, others `days`."""

    key: str = Field(..., min_length=1, max_length=32)
    display: str | None = Field(None, max_length=64)
    hours: int | None = Field(None, gt=0)
    days: int | None = Field(None, gt=0)
    credits: int = Field(..., ge=0)
    price: float = Field(0, ge=0)
    popular: bool = False


class PackagesUpdateRequest(BaseModel):
    packages: list[PackageEntry] = Field(..., min_length=1)


class ProductRequest(BaseModel):
    """Product create/update body. On update, omitted fields are left alone."""

    name: str | None = Field(None, min_length=1, max_length=128)
    description: str | None = None
    packages: list[PackageEntry] | None = None
    seller_key: str | None = Field(None, max_length=255)
    allow_hwid_reset: bool | None = None
    max_free_hwid_resets: int | None = Field(None, ge=0)
    hwid_reset_price: int | None = Field(None, ge=0)
    download_link: str | None = Field(None, max_length=500)
    setup_video_url: str | None = Field(None, max_length=500)
    announcement: str | None = None
    is_active: bool | None = None


class CreateProductRequest(ProductRequest):
    key: str = Field(..., min_length=1, max_length=64)
    name: str = Field(..., min_length=1, max_length=128)


class ProductResponse(BaseModel):
    key: str
    name: str
    description: str | None
    packages: list[PackageEntry]
    has_seller_key: bool
    allow_hwid_reset: bool
    max_free_hwid_resets: int
    hwid_reset_price: int
    download_link: str | None
    setup_video_url: str | None
    announcement: str | None
    is_active: bool

    @classmethod
    def from_product(cls, product: Product) -> "ProductResponse":
        return cls(
            key=product.key,
            name=product.name,
            description=product.description,
            packages=[PackageEntry(**raw) for raw in product.packages],
            has_seller_key=bool(product.seller_key),
            allow_hwid_reset=product.allow_hwid_reset,
            max_free_hwid_resets=product.max_free_hwid_resets,
            hwid_reset_price=product.hwid_reset_price,
            download_link=product.download_link,
            setup_video_url=product.setup_video_url,
            announcement=product.announcement,
            is_active=product.is_active,
        )


# ============================================================================
# Provisioned resources
# ============================================================================


def _time_left(expires_at: datetime) -> str:
    return format_time_left(expires_at, datetime.now(UTC))


class CreateUidRequest(BaseModel):
    uid: str = Field(..., min_length=1, max_length=64)
    package: str = Field(..., min_length=1, max_length=32)


class UidResponse(BaseModel):
    uid: str
    username: str
    package: str
    duration_hours: int
    credits_spent: int
    is_guest_pass: bool
    status: str
    time_left: str
    expires_at: datetime
    created_at: datetime

    @classmethod
    def from_record(cls, record: Uid) -> "UidResponse":
        return cls(
            uid=record.uid,
            username=record.username,
            package=record.package_key,
            duration_hours=record.duration_hours,
            credits_spent=record.credits_spent,
            is_guest_pass=record.is_guest_pass,
            status=record.status.value,
            time_left=_time_left(record.expires_at),
            expires_at=record.expires_at,
            created_at=record.created_at,
        )


class UidCreatedResponse(ActionResponse):
    uid: UidResponse
    credits_remaining: int


class CreateKeysRequest(BaseModel):
    package: str = Field(..., min_length=1, max_length=32)
    quantity: int = Field(1, ge=1, le=50)
    allow_placeholder: bool = False


class LicenseKeyResponse(BaseModel):
    license_key: str
    username: str
    package: str
    duration_days: int
    credits_spent: int
    is_placeholder: bool
    status: str
    time_left: str
    expires_at: datetime
    created_at: datetime

    @classmethod
    def from_record(cls, record: AimkillKey) -> "LicenseKeyResponse":
        return cls(
            license_key=record.license_key,
            username=record.username,
            package=record.package_key,
            duration_days=record.duration_days,
            credits_spent=record.credits_spent,
            is_placeholder=record.is_placeholder,
            status=record.status.value,
            time_left=_time_left(record.expires_at),
            expires_at=record.expires_at,
            created_at=record.created_at,
        )


class KeysCreatedResponse(ActionResponse):
    keys: list[LicenseKeyResponse]
    created: int
    failed: int
    credits_spent: int
    credits_remaining: int
    errors: list[str]
    test_mode: bool


class CreateAimkillAccountRequest(BaseModel):
    account_username: str = Field(..., min_length=3, max_length=64)
    password: str = Field(..., min_length=1, max_length=128)
    package: str = Field(..., min_length=1, max_length=32)


class AimkillAccountResponse(BaseModel):
    account_username: str
    username: str
    package: str
    duration_days: int
    credits_spent: int
    status: str
    time_left: str
    expires_at: datetime
    created_at: datetime

    @classmethod
    def from_record(cls, record: AimkillAccount) -> "AimkillAccountResponse":
        return cls(
            account_username=record.account_username,
            username=record.username,
            package=record.package_key,
            duration_days=record.duration_days,
            credits_spent=record.credits_spent,
            status=record.status.value,
            time_left=_time_left(record.expires_at),
            expires_at=record.expires_at,
            created_at=record.created_at,
        )


class AimkillAccountCreatedResponse(ActionResponse):
    account: AimkillAccountResponse
    password: str
    credits_remaining: int


# ============================================================================
# Ledger and audit
# ============================================================================


class InvoiceResponse(BaseModel):
    invoice_number: str
    username: str
    invoice_type: str
    status: str
    description: str
    credits: int
    subtotal: Decimal
    tax: Decimal
    total: Decimal
    currency: str
    payment_id: str | None
    payment_method: str | None
    paid_at: datetime | None
    created_at: datetime

    @classmethod
    def from_record(cls, record: Invoice) -> "InvoiceResponse":
        return cls(
            invoice_number=record.invoice_number,
            username=record.username,
            invoice_type=record.invoice_type,
            status=record.status,
            description=record.description,
            credits=record.credits,
            subtotal=record.subtotal,
            tax=record.tax,
            total=record.total,
            currency=record.currency,
            payment_id=record.payment_id,
            payment_method=record.payment_method,
            paid_at=record.paid_at,
            created_at=record.created_at,
        )


class ActivityResponse(BaseModel):
    username: str
    action: str
    description: str
    created_at: datetime

    @classmethod
    def from_record(cls, record: Activity) -> "ActivityResponse":
        return cls(
            username=record.username,
            action=record.action,
            description=record.description,
            created_at=record.created_at,
        )


class LoginHistoryResponse(BaseModel):
    username: str
    principal_kind: str
    success: bool
    ip_address: str | None
    user_agent: str | None
    created_at: datetime

    @classmethod
    def from_record(cls, record: LoginHistory) -> "LoginHistoryResponse":
        return cls(
            username=record.username,
            principal_kind=record.principal_kind,
            success=record.success,
            ip_address=record.ip_address,
            user_agent=record.user_agent,
            created_at=record.created_at,
        )


# ============================================================================
# Admin
# ============================================================================


class GiveCreditsRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=64)
    amount: int = Field(..., gt=0, le=1_000_000)


class CreateAccountRequest(BaseModel):
    username: str = Field(..., min_length=3, max_length=32)
    password: str = Field(..., min_length=1, max_length=128)
    role: Role = Role.USER
    account_type: AccountType = AccountType.UID_MANAGER
    credits: int | None = Field(None, ge=0)
    email: str | None = Field(None, max_length=255)
    # Older admin clients send tier flags instead of `role`
    is_admin: bool = False
    is_super_admin: bool = False
    is_owner: bool = False
    is_limited_admin: bool = False

    def resolved_role(self) -> Role:
        """`role`, unless tier flags were sent; flags collapse to the highest tier."""
        if not (self.is_admin or self.is_super_admin or self.is_owner or self.is_limited_admin):
            return self.role
        return normalize_tier(
            is_admin=self.is_admin,
            is_super_admin=self.is_super_admin,
            is_owner=self.is_owner,
            is_limited_admin=self.is_limited_admin,
        )


class PauseRequest(BaseModel):
    paused: bool


class AccountTypeRequest(BaseModel):
    account_type: AccountType


class UpgradeGuestRequest(BaseModel):
    credits: int = Field(0, ge=0)


class VerificationRequest(BaseModel):
    """Omitting `username` applies the change to every account."""

    username: str | None = Field(None, max_length=64)
    verified: bool = True


class GuestPassRequest(BaseModel):
    """Omitting `username` applies the change to every guest."""

    username: str | None = Field(None, max_length=64)


class GuestDeletionResponse(ActionResponse):
    uids_removed: int
    remote_failures: int


class StatsResponse(BaseModel):
    total_users: int
    total_guests: int
    total_uids: int
    active_uids: int
    total_license_keys: int
    total_aimkill_accounts: int
    credits_in_circulation: int
    unresolved_reconciliations: int


class GuestPolicyRequest(BaseModel):
    allow_free_uid: bool | None = None
    allow_free_aimkill: bool | None = None
    max_duration: str | None = None
    require_social_verification: bool | None = None
    youtube_channel_url: str | None = Field(None, max_length=500)
    instagram_url: str | None = Field(None, max_length=500)
    video_url: str | None = Field(None, max_length=500)

    @field_validator("max_duration")
    @classmethod
    def validate_max_duration(cls, v: str | None) -> str | None:
        if v is not None and v not in GUEST_DURATION_LADDER:
            raise ValueError(f"max_duration must be one of {', '.join(GUEST_DURATION_LADDER)}")
        return v


class GuestPolicyResponse(BaseModel):
    allow_free_uid: bool
    allow_free_aimkill: bool
    max_duration: str
    require_social_verification: bool
    youtube_channel_url: str | None
    instagram_url: str | None
    video_url: str | None

    @classmethod
    def from_policy(cls, policy: GuestPolicy) -> "GuestPolicyResponse":
        return cls(
            allow_free_uid=policy.allow_free_uid,
            allow_free_aimkill=policy.allow_free_aimkill,
            max_duration=policy.max_duration,
            require_social_verification=policy.require_social_verification,
            youtube_channel_url=policy.youtube_channel_url,
            instagram_url=policy.instagram_url,
            video_url=policy.video_url,
        )


class ApiConfigRequest(BaseModel):
    base_url: str | None = Field(None, max_length=500)
    api_key: str | None = Field(None, max_length=255)


class GenzAuthConfigRequest(BaseModel):
    seller_key: str = Field(..., max_length=255)


class ApiConfigResponse(BaseModel):
    """Secrets are reported masked."""

    base_url: str | None
    api_key_masked: str
    seller_key_masked: str
    uid_api_configured: bool
    genzauth_configured: bool


class ReconciliationResponse(BaseModel):
    id: int
    resource_kind: str
    identifier: str
    username: str
    service: str
    error: str
    resolved: bool
    resolved_by: str | None
    resolved_at: datetime | None
    created_at: datetime

    @classmethod
    def from_record(cls, record: ReconciliationRecord) -> "ReconciliationResponse":
        return cls(
            id=record.id,
            resource_kind=record.resource_kind,
            identifier=record.identifier,
            username=record.username,
            service=record.service,
            error=record.error,
            resolved=record.resolved,
            resolved_by=record.resolved_by,
            resolved_at=record.resolved_at,
            created_at=record.created_at,
        )


# ============================================================================
# Resellers
# ============================================================================


class ResellerResponse(BaseModel):
    id: int
    username: str
    email: str | None
    credits: int
    is_active: bool
    assigned_products: list[str]
    has_seller_key: bool
    total_clients_created: int
    created_at: datetime
    last_login_at: datetime | None

    @classmethod
    def from_reseller(cls, reseller: Reseller) -> "ResellerResponse":
        return cls(
            id=reseller.id,
            username=reseller.username,
            email=reseller.email,
            credits=reseller.credits,
            is_active=reseller.is_active,
            assigned_products=list(reseller.assigned_products),
            has_seller_key=bool(reseller.seller_key),
            total_clients_created=reseller.total_clients_created,
            created_at=reseller.created_at,
            last_login_at=reseller.last_login_at,
        )


class CreateResellerRequest(BaseModel):
    username: str = Field(..., min_length=3, max_length=32)
    password: str | None = Field(None, max_length=128)
    auto_password: bool = False
    email: str | None = Field(None, max_length=255)
    credits: int = Field(0, ge=0)
    seller_key: str | None = Field(None, max_length=255)
    assigned_products: list[str] = Field(default_factory=list)


class UpdateResellerRequest(BaseModel):
    credits: int | None = Field(None, ge=0)
    seller_key: str | None = Field(None, max_length=255)
    assigned_products: list[str] | None = None
    is_active: bool | None = None
    email: str | None = Field(None, max_length=255)
    password: str | None = Field(None, max_length=128)


class ResellerCreatedResponse(ActionResponse):
    reseller: ResellerResponse
    password: str
    auto_generated: bool


class ClientResponse(BaseModel):
    id: int
    username: str
    product: str
    assigned_username: str | None
    assigned_uid: str | None
    custom_download_link: str | None
    is_active: bool
    expires_at: datetime | None
    hwid_reset_count: int
    last_hwid_reset_at: datetime | None
    notes: str | None
    created_by: str
    created_at: datetime
    last_login_at: datetime | None

    @classmethod
    def from_client(cls, client: Client) -> "ClientResponse":
        return cls(
            id=client.id,
            username=client.username,
            product=client.product_key,
            assigned_username=client.assigned_username,
            assigned_uid=client.assigned_uid,
            custom_download_link=client.custom_download_link,
            is_active=client.is_active,
            expires_at=client.expires_at,
            hwid_reset_count=client.hwid_reset_count,
            last_hwid_reset_at=client.last_hwid_reset_at,
            notes=client.notes,
            created_by=client.created_by,
            created_at=client.created_at,
            last_login_at=client.last_login_at,
        )


class CreateClientRequest(BaseModel):
    """Reseller client creation. `assigned_uid` is required for UID_BYPASS."""

    username: str = Field(..., min_length=3, max_length=32)
    product: str = Field(..., min_length=1, max_length=64)
    package: str = Field(..., min_length=1, max_length=32)
    password: str | None = Field(None, max_length=128)
    auto_password: bool = False
    assigned_uid: str | None = Field(None, max_length=64)


class ClientCreatedResponse(ActionResponse):
    client: ClientResponse
    password: str
    auto_generated: bool
    credits_remaining: int
    genzauth_created: bool
    uid_created: bool
    warning: str | None = None


class ResellerKeyRequest(BaseModel):
    days: int = Field(30, ge=1, le=3650)


class ResellerAimkillAccountRequest(BaseModel):
    account_username: str = Field(..., min_length=3, max_length=64)
    package: str = Field(..., min_length=1, max_length=32)
    password: str | None = Field(None, max_length=128)
    auto_password: bool = False


class ResellerProfileResponse(BaseModel):
    reseller: ResellerResponse
    products: list[ProductResponse]


# ============================================================================
# Clients
# ============================================================================


class ClientInfoResponse(BaseModel):
    client: ClientResponse
    product_name: str | None
    download_link: str | None
    setup_video_url: str | None
    announcement: str | None
    allow_hwid_reset: bool
    free_hwid_resets_left: int
    uid_expires_at: datetime | None
    uid_status: str | None


class ClientUidRequest(BaseModel):
    uid: str = Field(..., min_length=1, max_length=64)
    days: int = Field(..., ge=1)


class HwidResetResponse(ActionResponse):
    reset_at: datetime
    reset_count: int
    free_resets_left: int


class AdminCreateClientRequest(BaseModel):
    username: str = Field(..., min_length=3, max_length=32)
    password: str = Field(..., min_length=1, max_length=128)
    product: str = Field(..., min_length=1, max_length=64)
    assigned_username: str | None = Field(None, max_length=64)
    assigned_uid: str | None = Field(None, max_length=64)
    notes: str | None = None
    custom_download_link: str | None = Field(None, max_length=500)
    expires_at: datetime | None = None


class AdminUpdateClientRequest(BaseModel):
    password: str | None = Field(None, max_length=128)
    assigned_username: str | None = Field(None, max_length=64)
    assigned_uid: str | None = Field(None, max_length=64)
    notes: str | None = None
    custom_download_link: str | None = Field(None, max_length=500)
    is_active: bool | None = None
    expires_at: datetime | None = None


# ============================================================================
# Payments
# ============================================================================


class CreatePaymentRequest(BaseModel):
    credits: int = Field(..., ge=1, le=100_000)


class PaymentResponse(ActionResponse):
    payment_id: str
    status: str
    pay_address: str | None
    pay_amount: float | None
    pay_currency: str


class PaymentWebhookRequest(BaseModel):
    """Crypto processor IPN body. Only these two fields are read."""

    payment_id: str
    payment_status: str

    @field_validator("payment_id", mode="before")
    @classmethod
    def coerce_payment_id(cls, v: object) -> str:
        """The processor sends numeric ids."""
        return str(v)


class PaymentWebhookResponse(BaseModel):
    status: str
    payment_id: str


class PaymentStatusResponse(BaseModel):
    payment_id: str
    payment_status: str
    invoice_status: str
    credits: int


# ============================================================================
# Chat
# ============================================================================


class ChatSendRequest(BaseModel):
    message: str = Field(..., min_length=1)
    to_username: str | None = Field(None, max_length=80)


class ChatMessageResponse(BaseModel):
    id: int
    conversation: str
    sender: str
    sender_name: str
    message: str
    is_read: bool
    created_at: datetime

    @classmethod
    def from_record(cls, record: ChatMessage) -> "ChatMessageResponse":
        return cls(
            id=record.id,
            conversation=record.username,
            sender=record.sender,
            sender_name=record.sender_name,
            message=record.body,
            is_read=record.is_read,
            created_at=record.created_at,
        )


class ChatStatsResponse(BaseModel):
    total_messages: int
    unread_messages: int
    conversations: list[str]


# ============================================================================
# Health
# ============================================================================


class HealthResponse(BaseModel):
    status: str
    database: str
    uid_api_configured: bool
    genzauth_configured: bool
    payments_configured: bool
    timestamp: datetime
