"""
Tests for AuthService - password hashing, login checks and two-factor auth.
"""

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, patch

import pyotp
import pytest

from license_portal.exceptions import (
    AuthenticationError,
    EntitlementDeniedError,
    ResourceConflictError,
    ValidationFailedError,
)
from license_portal.models.domain import DenialReason, Role
from license_portal.services.auth import (
    AuthService,
    generate_backup_codes,
    generate_password,
    hash_backup_code,
    hash_password,
    normalize_username,
    verify_password,
)
from license_portal.services.fingerprint import compute_fingerprint
from tests.conftest import make_client, make_reseller, make_result, make_user

BROWSER = "Mozilla/5.0 (Windows NT 10.0; Win64; x64)"


@pytest.fixture
def auth(db_session) -> AuthService:
    service = AuthService(db_session)
    service.activity.log = AsyncMock()
    service.activity.record_login = AsyncMock()
    return service


class TestHelpers:
    def test_password_roundtrip(self):
        hashed = hash_password("hunter22")
        assert hashed != "hunter22"
        assert verify_password(hashed, "hunter22")
        assert not verify_password(hashed, "hunter23")

    def test_verify_rejects_garbage_hash(self):
        assert not verify_password("not-a-hash", "anything")

    def test_backup_code_hash_ignores_case_and_spaces(self):
        assert hash_backup_code(" abcd1234 ") == hash_backup_code("ABCD1234")

    def test_backup_codes_are_unique(self):
        codes = generate_backup_codes()
        assert len(codes) == 10
        assert len(set(codes)) == 10
        assert all(len(c) == 8 for c in codes)

    def test_generated_password(self):
        password = generate_password()
        assert len(password) == 10
        assert password.isalnum()

    def test_normalize_username(self):
        assert normalize_username("  Alice ") == "alice"
        with pytest.raises(ValidationFailedError):
            normalize_username("a")
        with pytest.raises(ValidationFailedError):
            normalize_username("bad name")


class TestLogin:
    @pytest.mark.asyncio
    async def test_wrong_password(self, auth):
        user = make_user(password_hash=hash_password("right-pass"))
        with patch.object(auth, "find_user", AsyncMock(return_value=user)):
            with pytest.raises(AuthenticationError):
                await auth.login("alice", "wrong-pass", BROWSER, "1.2.3.4")
        auth.activity.record_login.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_unknown_user(self, auth):
        with patch.object(auth, "find_user", AsyncMock(return_value=None)):
            with pytest.raises(AuthenticationError):
                await auth.login("ghost", "whatever", BROWSER, None)

    @pytest.mark.asyncio
    async def test_paused_user_denied(self, auth):
        user = make_user(password_hash=hash_password("secret1"), is_paused=True)
        with patch.object(auth, "find_user", AsyncMock(return_value=user)):
            with pytest.raises(EntitlementDeniedError) as exc_info:
                await auth.login("alice", "secret1", BROWSER, None)
        assert exc_info.value.reason == DenialReason.ACCOUNT_PAUSED

    @pytest.mark.asyncio
    async def test_locked_user_sees_reason(self, auth):
        user = make_user(
            password_hash=hash_password("secret1"), is_locked=True, lock_reason="Chargeback"
        )
        with patch.object(auth, "find_user", AsyncMock(return_value=user)):
            with pytest.raises(EntitlementDeniedError) as exc_info:
                await auth.login("alice", "secret1", BROWSER, None)
        assert exc_info.value.message == "Chargeback"

    @pytest.mark.asyncio
    async def test_first_login_stores_fingerprint(self, auth):
        user = make_user(password_hash=hash_password("secret1"), two_factor_enabled=False)
        with patch.object(auth, "find_user", AsyncMock(return_value=user)):
            outcome = await auth.login("alice", "secret1", BROWSER, None)

        assert outcome.principal is not None
        assert outcome.principal.username == "alice"
        assert user.device_fingerprint == compute_fingerprint(BROWSER)
        assert user.last_login_at is not None

    @pytest.mark.asyncio
    async def test_other_device_denied(self, auth):
        user = make_user(
            password_hash=hash_password("secret1"),
            device_fingerprint=compute_fingerprint("Other Browser"),
        )
        with patch.object(auth, "find_user", AsyncMock(return_value=user)):
            with pytest.raises(EntitlementDeniedError) as exc_info:
                await auth.login("alice", "secret1", BROWSER, None)
        assert exc_info.value.reason == DenialReason.DEVICE_LOCKED

    @pytest.mark.asyncio
    async def test_staff_skip_device_lock(self, auth):
        user = make_user(
            username="helper",
            role=Role.LIMITED_ADMIN,
            password_hash=hash_password("secret1"),
            device_fingerprint=compute_fingerprint("Other Browser"),
            two_factor_enabled=False,
        )
        with patch.object(auth, "find_user", AsyncMock(return_value=user)):
            outcome = await auth.login("helper", "secret1", BROWSER, None)
        assert outcome.principal is not None
        assert outcome.principal.is_admin

    @pytest.mark.asyncio
    async def test_two_factor_code_requested(self, auth):
        user = make_user(password_hash=hash_password("secret1"), two_factor_secret=pyotp.random_base32())
        with patch.object(auth, "find_user", AsyncMock(return_value=user)):
            outcome = await auth.login("alice", "secret1", BROWSER, None)

        assert outcome.requires_two_factor
        assert outcome.principal is None
        assert user.last_login_at is None

    @pytest.mark.asyncio
    async def test_two_factor_code_accepted(self, auth):
        secret = pyotp.random_base32()
        user = make_user(password_hash=hash_password("secret1"), two_factor_secret=secret)
        with patch.object(auth, "find_user", AsyncMock(return_value=user)):
            outcome = await auth.login(
                "alice", "secret1", BROWSER, None, two_factor_code=pyotp.TOTP(secret).now()
            )
        assert outcome.principal is not None

    @pytest.mark.asyncio
    async def test_backup_code_is_single_use(self, auth):
        user = make_user(
            password_hash=hash_password("secret1"),
            two_factor_secret=pyotp.random_base32(),
            backup_codes=[hash_backup_code("ABCD1234")],
            device_fingerprint=compute_fingerprint(BROWSER),
        )
        with patch.object(auth, "find_user", AsyncMock(return_value=user)):
            outcome = await auth.login("alice", "secret1", BROWSER, None, two_factor_code="abcd1234")
            assert outcome.principal is not None
            assert user.backup_codes == []

            with pytest.raises(AuthenticationError):
                await auth.login("alice", "secret1", BROWSER, None, two_factor_code="abcd1234")


class TestTwoFactorSetup:
    @pytest.mark.asyncio
    async def test_enable_flow(self, auth):
        user = make_user(two_factor_enabled=False)

        setup = await auth.begin_two_factor(user)
        assert setup.provisioning_uri.startswith("otpauth://totp/")

        codes = await auth.confirm_two_factor(user, pyotp.TOTP(setup.secret).now())

        assert user.two_factor_enabled
        assert len(codes) == 10
        assert user.backup_codes == [hash_backup_code(c) for c in codes]

    @pytest.mark.asyncio
    async def test_confirm_rejects_bad_code(self, auth):
        user = make_user(two_factor_enabled=False, two_factor_secret=pyotp.random_base32())
        with pytest.raises(AuthenticationError):
            await auth.confirm_two_factor(user, "000000x")
        assert not user.two_factor_enabled

    @pytest.mark.asyncio
    async def test_disable_requires_password(self, auth):
        secret = pyotp.random_base32()
        user = make_user(password_hash=hash_password("secret1"), two_factor_secret=secret)
        with pytest.raises(AuthenticationError):
            await auth.disable_two_factor(user, "wrong-pass", pyotp.TOTP(secret).now())

        await auth.disable_two_factor(user, "secret1", pyotp.TOTP(secret).now())
        assert not user.two_factor_enabled
        assert user.two_factor_secret is None


class TestRegister:
    @pytest.mark.asyncio
    async def test_bootstrap_name_is_reserved(self, auth):
        with pytest.raises(ResourceConflictError):
            await auth.register("admin", "secret1")

    @pytest.mark.asyncio
    async def test_existing_username(self, auth):
        with patch.object(auth, "find_user", AsyncMock(return_value=make_user())):
            with pytest.raises(ResourceConflictError):
                await auth.register("alice", "secret1")

    @pytest.mark.asyncio
    async def test_short_password(self, auth):
        with pytest.raises(ValidationFailedError):
            await auth.register("newbie", "12345")

    @pytest.mark.asyncio
    async def test_guest_starts_with_zero_credits(self, auth, db_session):
        with patch.object(auth, "find_user", AsyncMock(return_value=None)):
            user = await auth.register("visitor", "secret1", as_guest=True)
        assert user.role == Role.GUEST.value
        assert user.credits == 0
        db_session.commit.assert_awaited_once()


class TestResellerAndClientLogin:
    @pytest.mark.asyncio
    async def test_reseller_login(self, auth, db_session):
        reseller = make_reseller(password_hash=hash_password("secret1"))
        db_session.execute.return_value = make_result(scalar=reseller)

        principal = await auth.login_reseller("shop", "secret1", BROWSER, None)

        assert principal.owner_tag == "reseller:shop"

    @pytest.mark.asyncio
    async def test_disabled_reseller(self, auth, db_session):
        reseller = make_reseller(password_hash=hash_password("secret1"), is_active=False)
        db_session.execute.return_value = make_result(scalar=reseller)

        with pytest.raises(EntitlementDeniedError):
            await auth.login_reseller("shop", "secret1", BROWSER, None)

    @pytest.mark.asyncio
    async def test_expired_client(self, auth, db_session):
        client = make_client(
            password_hash=hash_password("secret1"),
            expires_at=datetime.now(UTC) - timedelta(days=1),
        )
        db_session.execute.return_value = make_result(scalar=client)

        with pytest.raises(EntitlementDeniedError):
            await auth.login_client("buyer", "secret1", BROWSER, None)
