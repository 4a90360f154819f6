"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum


class AccountType(str, Enum):
    """Product family an end-user account works with."""

    UID_MANAGER = "UID_MANAGER"
    AIMKILL = "AIMKILL"


class Role(str, Enum):
    """Admin tier of a user account. Exactly one holds at a time."""

    GUEST = "guest"
    USER = "user"
    LIMITED_ADMIN = "limited_admin"
    OWNER = "owner"
    SUPER_ADMIN = "super_admin"

    @property
    def rank(self) -> int:
        return _ROLE_RANK[self]

    @property
    def is_staff(self) -> bool:
        """Staff roles may use the admin surface."""
        return self in (Role.LIMITED_ADMIN, Role.OWNER, Role.SUPER_ADMIN)

    @property
    def admin_level(self) -> str:
        return _ADMIN_LEVEL[self]

    def flags(self) -> "TierFlags":
        """Boolean view of the tier as exposed to API consumers."""
        return TierFlags(
            is_admin=self == Role.SUPER_ADMIN,
            is_super_admin=self == Role.SUPER_ADMIN,
            is_owner=self == Role.OWNER,
            is_limited_admin=self == Role.LIMITED_ADMIN,
            admin_level=self.admin_level,
        )


_ROLE_RANK = {
    Role.GUEST: 0,
    Role.USER: 1,
    Role.LIMITED_ADMIN: 2,
    Role.OWNER: 3,
    Role.SUPER_ADMIN: 4,
}

_ADMIN_LEVEL = {
    Role.GUEST: "none",
    Role.USER: "none",
    Role.LIMITED_ADMIN: "limited",
    Role.OWNER: "owner",
    Role.SUPER_ADMIN: "super",
}


@dataclass(frozen=True)
class TierFlags:
    """Flag view of a role."""

    is_admin: bool
    is_super_admin: bool
    is_owner: bool
    is_limited_admin: bool
    admin_level: str


def normalize_tier(
    is_admin: bool = False,
    is_super_admin: bool = False,
    is_owner: bool = False,
    is_limited_admin: bool = False,
    is_guest: bool = False,
) -> Role:
    """
    Collapse a set of tier flags into exactly one role.

    Priority: super-admin, owner, limited-admin, admin (promoted to
    super-admin), then guest or plain user.
    """
    if is_super_admin:
        return Role.SUPER_ADMIN
    if is_owner:
        return Role.OWNER
    if is_limited_admin:
        return Role.LIMITED_ADMIN
    if is_admin:
        return Role.SUPER_ADMIN
    if is_guest:
        return Role.GUEST
    return Role.USER


class PrincipalKind(str, Enum):
    """Which session marker identified the caller."""

    USER = "user"
    CLIENT = "client"
    RESELLER = "reseller"


class Capability(str, Enum):
    """Things a principal may be allowed to do."""

    SPEND_CREDITS = "spend_credits"
    CREATE_RESOURCES = "create_resources"
    DELETE_RESOURCES = "delete_resources"
    MANAGE_USERS = "manage_users"
    MANAGE_PRODUCTS = "manage_products"
    MANAGE_ADMINS = "manage_admins"
    MANAGE_CONFIG = "manage_config"
    CREATE_CLIENTS = "create_clients"
    RESET_HWID = "reset_hwid"
    CHAT = "chat"


_USER_CAPABILITIES = frozenset(
    {
        Capability.SPEND_CREDITS,
        Capability.CREATE_RESOURCES,
        Capability.DELETE_RESOURCES,
        Capability.CHAT,
    }
)
_STAFF_CAPABILITIES = _USER_CAPABILITIES | {
    Capability.MANAGE_USERS,
    Capability.MANAGE_PRODUCTS,
}
_ROLE_CAPABILITIES: dict[Role, frozenset[Capability]] = {
    Role.GUEST: frozenset({Capability.CREATE_RESOURCES, Capability.CHAT}),
    Role.USER: _USER_CAPABILITIES,
    Role.LIMITED_ADMIN: _STAFF_CAPABILITIES,
    Role.OWNER: _STAFF_CAPABILITIES,
    Role.SUPER_ADMIN: _STAFF_CAPABILITIES | {Capability.MANAGE_ADMINS},
}
_KIND_CAPABILITIES: dict[PrincipalKind, frozenset[Capability]] = {
    PrincipalKind.RESELLER: frozenset(
        {Capability.SPEND_CREDITS, Capability.CREATE_CLIENTS, Capability.CREATE_RESOURCES}
    ),
    PrincipalKind.CLIENT: frozenset({Capability.RESET_HWID, Capability.CHAT}),
}


@dataclass(frozen=True)
class Principal:
    """
    Resolved caller identity.

    `is_bootstrap` marks the single hardcoded super-admin account. It is an
    intentional, irrevocable escape hatch: that account keeps every admin
    capability regardless of its stored role.
    """

    kind: PrincipalKind
    username: str
    role: Role = Role.USER
    is_bootstrap: bool = False

    def __post_init__(self) -> None:
        if not self.username:
            raise ValueError("username cannot be empty")
        if self.is_bootstrap and self.kind != PrincipalKind.USER:
            raise ValueError("Only user accounts can be the bootstrap account")

    @property
    def capabilities(self) -> frozenset[Capability]:
        if self.kind != PrincipalKind.USER:
            return _KIND_CAPABILITIES[self.kind]
        caps = _ROLE_CAPABILITIES[self.role]
        if self.is_bootstrap:
            caps = _STAFF_CAPABILITIES | {Capability.MANAGE_ADMINS, Capability.MANAGE_CONFIG}
        return caps

    def can(self, capability: Capability) -> bool:
        return capability in self.capabilities

    @property
    def is_admin(self) -> bool:
        """Admin surface access: staff role or the bootstrap account."""
        return self.kind == PrincipalKind.USER and (self.role.is_staff or self.is_bootstrap)

    @property
    def can_manage_admins(self) -> bool:
        return self.can(Capability.MANAGE_ADMINS)

    @property
    def is_guest(self) -> bool:
        return self.kind == PrincipalKind.USER and self.role == Role.GUEST and not self.is_bootstrap

    @property
    def owner_tag(self) -> str:
        """Value stored in `created_by` columns for resources this principal owns."""
        if self.kind == PrincipalKind.RESELLER:
            return f"reseller:{self.username}"
        if self.kind == PrincipalKind.CLIENT:
            return f"client:{self.username}"
        return self.username


class ResourceKind(str, Enum):
    """Actions the entitlement guard knows about."""

    UID = "uid"
    LICENSE_KEY = "license_key"
    AIMKILL_ACCOUNT = "aimkill_account"
    RESELLER_CLIENT = "reseller_client"
    HWID_RESET = "hwid_reset"

    @property
    def requires_two_factor(self) -> bool:
        return self in (ResourceKind.UID, ResourceKind.LICENSE_KEY, ResourceKind.AIMKILL_ACCOUNT)

    @property
    def guest_family(self) -> str | None:
        """Which guest policy toggle governs this kind (None: guests never allowed)."""
        if self == ResourceKind.UID:
            return "uid"
        if self in (ResourceKind.LICENSE_KEY, ResourceKind.AIMKILL_ACCOUNT):
            return "aimkill"
        return None


class DenialReason(str, Enum):
    """Structured reason codes the UI uses to prompt remediation."""

    ACCOUNT_PAUSED = "account_paused"
    ACCOUNT_LOCKED = "account_locked"
    ACCOUNT_DISABLED = "account_disabled"
    GUEST_FEATURE_DISABLED = "guest_feature_disabled"
    DISCORD_VERIFICATION_REQUIRED = "discord_verification_required"
    GUEST_PASS_USED = "guest_pass_used"
    DURATION_NOT_ALLOWED = "duration_not_allowed"
    GUEST_QUANTITY_LIMIT = "guest_quantity_limit"
    SOCIAL_VERIFICATION_REQUIRED = "social_verification_required"
    INSUFFICIENT_CREDITS = "insufficient_credits"
    TWO_FACTOR_REQUIRED = "two_factor_required"
    WRONG_ACCOUNT_TYPE = "wrong_account_type"
    PRODUCT_NOT_ASSIGNED = "product_not_assigned"
    HWID_RESET_NOT_ALLOWED = "hwid_reset_not_allowed"
    HWID_RESET_QUOTA_EXHAUSTED = "hwid_reset_quota_exhausted"
    COOLDOWN_ACTIVE = "cooldown_active"
    DEVICE_LOCKED = "device_locked"
    NOT_OWNER = "not_owner"


class InvoiceType(str, Enum):
    CREDIT_PURCHASE = "credit_purchase"
    UID_CREATION = "uid_creation"
    LICENSE_CREATION = "license_creation"
    AIMKILL_ACCOUNT_CREATION = "aimkill_account_creation"
    REFUND = "refund"


class InvoiceStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class DurationUnit(str, Enum):
    HOURS = "hours"
    DAYS = "days"


class ResourceStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"


@dataclass(frozen=True)
class PackageSpec:
    """A priced duration from a package list."""

    key: str
    display: str
    duration: int
    unit: DurationUnit
    credits: int
    price: float = 0.0
    popular: bool = False

    def __post_init__(self) -> None:
        if self.duration <= 0:
            raise ValueError(f"Package duration must be positive: {self.duration}")
        if self.credits < 0:
            raise ValueError(f"Package credits cannot be negative: {self.credits}")

    @property
    def duration_hours(self) -> int:
        return self.duration * 24 if self.unit == DurationUnit.DAYS else self.duration

    @property
    def duration_days(self) -> float:
        return self.duration if self.unit == DurationUnit.DAYS else self.duration / 24

    def expires_at(self, now: datetime) -> datetime:
        if self.unit == DurationUnit.DAYS:
            return now + timedelta(days=self.duration)
        return now + timedelta(hours=self.duration)


# Values an admin may pick for the guest pass ceiling, shortest first
GUEST_DURATION_LADDER: tuple[str, ...] = ("1day", "3days", "7days", "15days", "30days")

_DURATION_RE = re.compile(r"^(\d+)days?$")


def guest_ceiling_days(max_duration: str) -> int:
    """Number of days in a ladder value such as `7days`."""
    match = _DURATION_RE.match(max_duration)
    if not match or int(match.group(1)) <= 0:
        raise ValueError(f"Invalid guest max duration: {max_duration}")
    return int(match.group(1))


@dataclass(frozen=True)
class GuestPolicySnapshot:
    """Guest free-pass rules currently in force."""

    allow_free_uid: bool = True
    allow_free_aimkill: bool = False
    max_duration: str = "1day"
    require_social_verification: bool = False

    def __post_init__(self) -> None:
        if self.max_duration not in GUEST_DURATION_LADDER:
            raise ValueError(f"Guest max duration must be one of {GUEST_DURATION_LADDER}")

    @property
    def max_days(self) -> int:
        return guest_ceiling_days(self.max_duration)

    def allows(self, package: PackageSpec) -> bool:
        return package.duration_hours <= self.max_days * 24


@dataclass(frozen=True)
class AccountSnapshot:
    """The parts of an account the entitlement guard reads."""

    username: str
    role: Role
    credits: int
    is_paused: bool = False
    is_locked: bool = False
    discord_verified: bool = False
    guest_pass_used: bool = False
    youtube_subscribed: bool = False
    instagram_followed: bool = False
    two_factor_enabled: bool = False
    is_bootstrap: bool = False

    def __post_init__(self) -> None:
        if self.credits < 0:
            raise ValueError(f"Credits cannot be negative: {self.credits}")

    @property
    def is_guest(self) -> bool:
        return self.role == Role.GUEST and not self.is_bootstrap

    @property
    def is_exempt(self) -> bool:
        """Admins and owners are never paused out or asked for 2FA."""
        return self.role.is_staff or self.is_bootstrap

    @property
    def social_verified(self) -> bool:
        return self.youtube_subscribed and self.instagram_followed


@dataclass(frozen=True)
class EntitlementRequest:
    """What the caller wants to do."""

    kind: ResourceKind
    package: PackageSpec | None = None
    quantity: int = 1

    def __post_init__(self) -> None:
        if self.quantity < 1:
            raise ValueError(f"Quantity must be at least 1: {self.quantity}")

    @property
    def cost(self) -> int:
        if self.package is None:
            return 0
        return self.package.credits * self.quantity


@dataclass(frozen=True)
class GuardResult:
    """Outcome of an entitlement check."""

    allowed: bool
    cost: int
    denial_reason: DenialReason | None = None
    message: str | None = None

    def __post_init__(self) -> None:
        if self.allowed and self.denial_reason is not None:
            raise ValueError("An allowed result cannot carry a denial reason")
        if not self.allowed and self.denial_reason is None:
            raise ValueError("A denied result must carry a denial reason")

    @classmethod
    def allow(cls, cost: int) -> "GuardResult":
        return cls(allowed=True, cost=cost)

    @classmethod
    def deny(cls, reason: DenialReason, message: str, cost: int = 0) -> "GuardResult":
        return cls(allowed=False, cost=cost, denial_reason=reason, message=message)


def derive_status(expires_at: datetime, now: datetime) -> ResourceStatus:
    """Status of a provisioned resource, recomputed on every read."""
    return ResourceStatus.EXPIRED if now > expires_at else ResourceStatus.ACTIVE


def format_time_left(expires_at: datetime, now: datetime) -> str:
    """Human readable remaining time, e.g. `2d 5h` or `3h 12m`."""
    remaining = expires_at - now
    if remaining.total_seconds() <= 0:
        return "Expired"
    hours = int(remaining.total_seconds() // 3600)
    minutes = int((remaining.total_seconds() % 3600) // 60)
    if hours > 24:
        return f"{hours // 24}d {hours % 24}h"
    return f"{hours}h {minutes}m"


class ExternalOutcome(str, Enum):
    """The three outcomes every external provisioning call can have."""

    SUCCESS = "success"
    FAILED = "failed"
    NOT_CONFIGURED = "not_configured"


@dataclass(frozen=True)
class ExternalResult:
    """Normalized response from an external provisioning service."""

    outcome: ExternalOutcome
    data: str | None = None
    error: str | None = None
    is_placeholder: bool = False

    @property
    def success(self) -> bool:
        return self.outcome == ExternalOutcome.SUCCESS

    @property
    def is_test_mode(self) -> bool:
        return self.outcome == ExternalOutcome.NOT_CONFIGURED or self.is_placeholder


@dataclass(frozen=True)
class KeyBatchResult:
    """Result of creating several license keys one after another."""

    keys: tuple[ExternalResult, ...] = field(default_factory=tuple)
    failures: tuple[str, ...] = field(default_factory=tuple)

    @property
    def created(self) -> int:
        return len(self.keys)

    @property
    def failed(self) -> int:
        return len(self.failures)
