"""
Authentication Service - Passwords, login, registration and two-factor auth.

Passwords are hashed with Argon2. TOTP codes accept a window of two steps
either side; backup codes are stored as sha256 digests and are single use.
"""

import hashlib
import re
import secrets
import string
from dataclasses import dataclass
from datetime import UTC, datetime

import pyotp
from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from license_portal.config import settings
from license_portal.db.models import Client, Reseller, User
from license_portal.exceptions import (
    AuthenticationError,
    EntitlementDeniedError,
    ResourceConflictError,
    ValidationFailedError,
)
from license_portal.models.domain import AccountType, DenialReason, Principal, PrincipalKind, Role
from license_portal.services import fingerprint
from license_portal.services.activity import ActivityService

logger = get_logger(__name__)

_USERNAME_RE = re.compile(r"^[a-z0-9_.-]{3,32}$")
MIN_PASSWORD_LENGTH = 6
BACKUP_CODE_COUNT = 10
TOTP_VALID_WINDOW = 2

_hasher = PasswordHasher()


def hash_password(password: str) -> str:
    return _hasher.hash(password)


def verify_password(password_hash: str, password: str) -> bool:
    try:
        return _hasher.verify(password_hash, password)
    except (VerifyMismatchError, VerificationError, InvalidHashError):
        return False


def generate_password(length: int = 10, symbols: bool = False) -> str:
    """Random password for auto-created accounts; alphanumeric unless `symbols`."""
    alphabet = string.ascii_letters + string.digits
    if symbols:
        alphabet += "!@#$%^&*"
    return "".join(secrets.choice(alphabet) for _ in range(length))


def normalize_username(raw: str) -> str:
    username = raw.strip().lower()
    if not _USERNAME_RE.match(username):
        raise ValidationFailedError(
            "Username must be 3-32 characters: letters, digits, '.', '-' or '_'"
        )
    return username


def validate_new_password(password: str) -> None:
    if len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationFailedError(
            f"Password must be at least {MIN_PASSWORD_LENGTH} characters"
        )


def hash_backup_code(code: str) -> str:
    return hashlib.sha256(code.strip().upper().encode("utf-8")).hexdigest()


def generate_backup_codes(count: int = BACKUP_CODE_COUNT) -> list[str]:
    return [secrets.token_hex(4).upper() for _ in range(count)]


def principal_for(user: User) -> Principal:
    return Principal(
        kind=PrincipalKind.USER,
        username=user.username,
        role=user.role_enum,
        is_bootstrap=user.is_bootstrap,
    )


@dataclass(frozen=True)
class LoginOutcome:
    """Either an authenticated principal or a request for a 2FA code."""

    principal: Principal | None
    requires_two_factor: bool = False


@dataclass(frozen=True)
class TwoFactorSetup:
    secret: str
    provisioning_uri: str


class AuthService:
    """Credential checks for all principal kinds."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session
        self.activity = ActivityService(session)

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    async def register(
        self,
        username: str,
        password: str,
        email: str | None = None,
        account_type: AccountType = AccountType.UID_MANAGER,
        as_guest: bool = False,
    ) -> User:
        """Self-service registration. Guests start with 0 credits."""
        username = normalize_username(username)
        validate_new_password(password)
        if username == settings.bootstrap_admin_username:
            raise ResourceConflictError("User", username)
        if await self.find_user(username) is not None:
            raise ResourceConflictError("User", username)

        user = User(
            username=username,
            password_hash=hash_password(password),
            email=email,
            account_type=account_type.value,
            role=(Role.GUEST if as_guest else Role.USER).value,
            credits=0 if as_guest else settings.register_credits,
            created_by="self",
        )
        self.session.add(user)
        try:
            await self.session.flush()
        except IntegrityError as exc:
            await self.session.rollback()
            raise ResourceConflictError("User", username) from exc

        await self.activity.log(username, "register", "Account registered")
        await self.session.commit()
        logger.info("user_registered", username=username, guest=as_guest)
        return user

    async def login(
        self,
        username: str,
        password: str,
        user_agent: str | None,
        ip_address: str | None,
        two_factor_code: str | None = None,
    ) -> LoginOutcome:
        """
        Verify credentials in order: password, paused, locked, device, 2FA.

        Raises:
            AuthenticationError: bad password or bad 2FA code
            EntitlementDeniedError: paused, locked or device mismatch
        """
        username = username.strip().lower()
        user = await self.find_user(username)
        if user is None or not verify_password(user.password_hash, password):
            await self._record_failure(username, user_agent, ip_address, PrincipalKind.USER)
            raise AuthenticationError("Invalid username or password")

        staff = user.role_enum.is_staff or user.is_bootstrap
        if user.is_paused and not staff:
            raise EntitlementDeniedError(
                DenialReason.ACCOUNT_PAUSED,
                "Your account has been paused. Please contact an administrator.",
            )
        if user.is_locked and not staff:
            raise EntitlementDeniedError(
                DenialReason.ACCOUNT_LOCKED,
                user.lock_reason or "Your account is locked. Please contact an administrator.",
            )

        if fingerprint.applies_to(user.role_enum, user.is_bootstrap):
            if not fingerprint.matches(user.device_fingerprint, user_agent):
                await self._record_failure(username, user_agent, ip_address, PrincipalKind.USER)
                raise EntitlementDeniedError(
                    DenialReason.DEVICE_LOCKED,
                    "This account is locked to another device. Ask an administrator "
                    "to reset your device lock.",
                )
            if user.device_fingerprint is None:
                user.device_fingerprint = fingerprint.compute_fingerprint(user_agent)

        if user.two_factor_enabled:
            if not two_factor_code:
                return LoginOutcome(principal=None, requires_two_factor=True)
            if not self._check_second_factor(user, two_factor_code):
                await self._record_failure(username, user_agent, ip_address, PrincipalKind.USER)
                raise AuthenticationError("Invalid 2FA code")

        user.last_login_at = datetime.now(UTC)
        await self.activity.record_login(username, True, ip_address, user_agent)
        await self.activity.log(username, "login", "Logged in")
        await self.session.commit()

        logger.info("user_logged_in", username=username, role=user.role)
        return LoginOutcome(principal=principal_for(user))

    async def change_password(self, user: User, current: str, new: str) -> None:
        if not verify_password(user.password_hash, current):
            raise AuthenticationError("Current password is incorrect")
        validate_new_password(new)
        user.password_hash = hash_password(new)
        await self.activity.log(user.username, "password-change", "Password changed")
        await self.session.commit()
        logger.info("password_changed", username=user.username)

    # ------------------------------------------------------------------
    # Two-factor
    # ------------------------------------------------------------------

    async def begin_two_factor(self, user: User) -> TwoFactorSetup:
        if user.two_factor_enabled:
            raise ValidationFailedError("2FA is already enabled")
        secret = pyotp.random_base32()
        user.two_factor_secret = secret
        await self.session.commit()
        uri = pyotp.TOTP(secret).provisioning_uri(name=user.username, issuer_name=settings.api_title)
        return TwoFactorSetup(secret=secret, provisioning_uri=uri)

    async def confirm_two_factor(self, user: User, code: str) -> list[str]:
        """Enable 2FA once the first code checks out. Returns plaintext backup codes."""
        if user.two_factor_enabled:
            raise ValidationFailedError("2FA is already enabled")
        if not user.two_factor_secret:
            raise ValidationFailedError("Start 2FA setup first")
        if not pyotp.TOTP(user.two_factor_secret).verify(code.strip(), valid_window=TOTP_VALID_WINDOW):
            raise AuthenticationError("Invalid 2FA code")

        codes = generate_backup_codes()
        user.two_factor_enabled = True
        user.backup_codes = [hash_backup_code(c) for c in codes]
        await self.activity.log(user.username, "2fa-enable", "Two-factor authentication enabled")
        await self.session.commit()
        logger.info("two_factor_enabled", username=user.username)
        return codes

    async def disable_two_factor(self, user: User, password: str, code: str) -> None:
        if not user.two_factor_enabled:
            raise ValidationFailedError("2FA is not enabled")
        if not verify_password(user.password_hash, password):
            raise AuthenticationError("Password is incorrect")
        if not self._check_second_factor(user, code):
            raise AuthenticationError("Invalid 2FA code")

        user.two_factor_enabled = False
        user.two_factor_secret = None
        user.backup_codes = []
        await self.activity.log(user.username, "2fa-disable", "Two-factor authentication disabled")
        await self.session.commit()
        logger.info("two_factor_disabled", username=user.username)

    def _check_second_factor(self, user: User, code: str) -> bool:
        """TOTP code, or a backup code which is consumed on use."""
        code = code.strip()
        if user.two_factor_secret and pyotp.TOTP(user.two_factor_secret).verify(
            code, valid_window=TOTP_VALID_WINDOW
        ):
            return True

        digest = hash_backup_code(code)
        if digest in user.backup_codes:
            user.backup_codes = [c for c in user.backup_codes if c != digest]
            logger.info("backup_code_used", username=user.username, remaining=len(user.backup_codes))
            return True
        return False

    # ------------------------------------------------------------------
    # Resellers and clients
    # ------------------------------------------------------------------

    async def login_reseller(
        self, username: str, password: str, user_agent: str | None, ip_address: str | None
    ) -> Principal:
        username = username.strip().lower()
        result = await self.session.execute(select(Reseller).where(Reseller.username == username))
        reseller = result.scalar_one_or_none()
        if reseller is None or not verify_password(reseller.password_hash, password):
            await self._record_failure(username, user_agent, ip_address, PrincipalKind.RESELLER)
            raise AuthenticationError("Invalid username or password")
        if not reseller.is_active:
            raise EntitlementDeniedError(
                DenialReason.ACCOUNT_DISABLED, "Your reseller account has been disabled."
            )

        reseller.last_login_at = datetime.now(UTC)
        await self.activity.record_login(
            username, True, ip_address, user_agent, PrincipalKind.RESELLER
        )
        await self.session.commit()
        logger.info("reseller_logged_in", username=username)
        return Principal(kind=PrincipalKind.RESELLER, username=username)

    async def login_client(
        self, username: str, password: str, user_agent: str | None, ip_address: str | None
    ) -> Principal:
        username = username.strip().lower()
        result = await self.session.execute(select(Client).where(Client.username == username))
        client = result.scalar_one_or_none()
        if client is None or not verify_password(client.password_hash, password):
            await self._record_failure(username, user_agent, ip_address, PrincipalKind.CLIENT)
            raise AuthenticationError("Invalid username or password")
        if not client.is_active:
            raise EntitlementDeniedError(
                DenialReason.ACCOUNT_DISABLED, "Your account has been disabled."
            )
        if client.is_expired:
            raise EntitlementDeniedError(
                DenialReason.ACCOUNT_DISABLED, "Your account has expired. Please contact your reseller."
            )

        client.last_login_at = datetime.now(UTC)
        await self.activity.record_login(
            username, True, ip_address, user_agent, PrincipalKind.CLIENT
        )
        await self.activity.log(username, "login", "Client logged in", PrincipalKind.CLIENT)
        await self.session.commit()
        logger.info("client_logged_in", username=username)
        return Principal(kind=PrincipalKind.CLIENT, username=username)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def find_user(self, username: str) -> User | None:
        result = await self.session.execute(select(User).where(User.username == username))
        return result.scalar_one_or_none()

    async def _record_failure(
        self,
        username: str,
        user_agent: str | None,
        ip_address: str | None,
        kind: PrincipalKind,
    ) -> None:
        logger.warning("login_failed", username=username, kind=kind.value)
        await self.activity.record_login(username, False, ip_address, user_agent, kind)
        await self.session.commit()
