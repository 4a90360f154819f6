"""
Tests for the entitlement guard.

The guard is pure, so every rule is tested against hand-built snapshots.
"""

from datetime import UTC, datetime, timedelta

import pytest
from hypothesis import given
from hypothesis import strategies as st

from license_portal.exceptions import (
    CooldownActiveError,
    EntitlementDeniedError,
    InsufficientCreditsError,
)
from license_portal.models.domain import (
    AccountSnapshot,
    DenialReason,
    DurationUnit,
    EntitlementRequest,
    GuestPolicySnapshot,
    PackageSpec,
    ResourceKind,
    Role,
)
from license_portal.services import entitlement

ONE_DAY = PackageSpec("1day", "1 Day", 24, DurationUnit.HOURS, 1)
SEVEN_DAYS = PackageSpec("7days", "7 Days", 168, DurationUnit.HOURS, 5)
NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def account(**overrides) -> AccountSnapshot:
    fields = {"username": "alice", "role": Role.USER, "credits": 10, "two_factor_enabled": True}
    fields.update(overrides)
    return AccountSnapshot(**fields)


def guest(**overrides) -> AccountSnapshot:
    fields = {"role": Role.GUEST, "credits": 0, "discord_verified": True, "two_factor_enabled": False}
    fields.update(overrides)
    return account(**fields)


# ============================================================================
# Regular accounts
# ============================================================================


class TestRegularAccounts:
    def test_allows_with_enough_credits(self, default_policy):
        result = entitlement.evaluate(account(), EntitlementRequest(ResourceKind.UID, SEVEN_DAYS), default_policy)
        assert result.allowed
        assert result.cost == 5

    def test_exact_balance_is_enough(self, default_policy):
        result = entitlement.evaluate(
            account(credits=5), EntitlementRequest(ResourceKind.UID, SEVEN_DAYS), default_policy
        )
        assert result.allowed

    def test_denies_insufficient_credits(self, default_policy):
        result = entitlement.evaluate(
            account(credits=4), EntitlementRequest(ResourceKind.UID, SEVEN_DAYS), default_policy
        )
        assert not result.allowed
        assert result.denial_reason == DenialReason.INSUFFICIENT_CREDITS
        assert result.cost == 5

    def test_paused_account_denied_first(self, default_policy):
        result = entitlement.evaluate(
            account(is_paused=True, credits=0), EntitlementRequest(ResourceKind.UID, ONE_DAY), default_policy
        )
        assert result.denial_reason == DenialReason.ACCOUNT_PAUSED

    def test_locked_account_denied(self, default_policy):
        result = entitlement.evaluate(
            account(is_locked=True), EntitlementRequest(ResourceKind.UID, ONE_DAY), default_policy
        )
        assert result.denial_reason == DenialReason.ACCOUNT_LOCKED

    def test_two_factor_required_for_uid_creation(self, default_policy):
        result = entitlement.evaluate(
            account(two_factor_enabled=False), EntitlementRequest(ResourceKind.UID, ONE_DAY), default_policy
        )
        assert result.denial_reason == DenialReason.TWO_FACTOR_REQUIRED

    def test_staff_exempt_from_pause_and_two_factor(self, default_policy):
        owner = account(role=Role.OWNER, is_paused=True, two_factor_enabled=False)
        result = entitlement.evaluate(owner, EntitlementRequest(ResourceKind.UID, ONE_DAY), default_policy)
        assert result.allowed

    def test_staff_still_pay(self, default_policy):
        owner = account(role=Role.OWNER, credits=0)
        result = entitlement.evaluate(owner, EntitlementRequest(ResourceKind.UID, ONE_DAY), default_policy)
        assert result.denial_reason == DenialReason.INSUFFICIENT_CREDITS

    @given(credits=st.integers(0, 500), quantity=st.integers(1, 50), price=st.integers(0, 20))
    def test_allowed_never_costs_more_than_balance(self, credits, quantity, price):
        package = PackageSpec("p", "P", 1, DurationUnit.DAYS, price)
        result = entitlement.evaluate(
            account(credits=credits),
            EntitlementRequest(ResourceKind.LICENSE_KEY, package, quantity),
            GuestPolicySnapshot(),
        )
        assert result.allowed == (price * quantity <= credits)
        if result.allowed:
            assert result.cost <= credits


# ============================================================================
# Guest free pass
# ============================================================================


class TestGuestFreePass:
    def test_verified_guest_gets_free_uid(self, default_policy):
        result = entitlement.evaluate(guest(), EntitlementRequest(ResourceKind.UID, ONE_DAY), default_policy)
        assert result.allowed
        assert result.cost == 0

    def test_guest_needs_discord(self, default_policy):
        result = entitlement.evaluate(
            guest(discord_verified=False), EntitlementRequest(ResourceKind.UID, ONE_DAY), default_policy
        )
        assert result.denial_reason == DenialReason.DISCORD_VERIFICATION_REQUIRED

    def test_pass_is_single_use(self, default_policy):
        result = entitlement.evaluate(
            guest(guest_pass_used=True), EntitlementRequest(ResourceKind.UID, ONE_DAY), default_policy
        )
        assert result.denial_reason == DenialReason.GUEST_PASS_USED

    def test_aimkill_disabled_by_default(self, default_policy):
        result = entitlement.evaluate(
            guest(), EntitlementRequest(ResourceKind.LICENSE_KEY, ONE_DAY), default_policy
        )
        assert result.denial_reason == DenialReason.GUEST_FEATURE_DISABLED

    def test_duration_above_ceiling(self, default_policy):
        result = entitlement.evaluate(guest(), EntitlementRequest(ResourceKind.UID, SEVEN_DAYS), default_policy)
        assert result.denial_reason == DenialReason.DURATION_NOT_ALLOWED

    def test_raised_ceiling_allows_longer_packages(self):
        policy = GuestPolicySnapshot(max_duration="7days")
        result = entitlement.evaluate(guest(), EntitlementRequest(ResourceKind.UID, SEVEN_DAYS), policy)
        assert result.allowed

    def test_quantity_limited_to_one(self):
        policy = GuestPolicySnapshot(allow_free_aimkill=True)
        result = entitlement.evaluate(
            guest(), EntitlementRequest(ResourceKind.LICENSE_KEY, ONE_DAY, quantity=2), policy
        )
        assert result.denial_reason == DenialReason.GUEST_QUANTITY_LIMIT

    def test_social_verification_when_required(self):
        policy = GuestPolicySnapshot(require_social_verification=True)
        denied = entitlement.evaluate(
            guest(youtube_subscribed=True), EntitlementRequest(ResourceKind.UID, ONE_DAY), policy
        )
        allowed = entitlement.evaluate(
            guest(youtube_subscribed=True, instagram_followed=True),
            EntitlementRequest(ResourceKind.UID, ONE_DAY),
            policy,
        )
        assert denied.denial_reason == DenialReason.SOCIAL_VERIFICATION_REQUIRED
        assert allowed.allowed

    def test_guest_never_needs_two_factor(self, default_policy):
        result = entitlement.evaluate(
            guest(two_factor_enabled=False), EntitlementRequest(ResourceKind.UID, ONE_DAY), default_policy
        )
        assert result.allowed

    def test_guest_cannot_reset_hwid(self, default_policy):
        result = entitlement.evaluate(guest(), EntitlementRequest(ResourceKind.HWID_RESET), default_policy)
        assert result.denial_reason == DenialReason.GUEST_FEATURE_DISABLED


# ============================================================================
# HWID resets and resellers
# ============================================================================


class TestHwidReset:
    def evaluate(self, **overrides):
        fields = {
            "allow_hwid_reset": True,
            "reset_count": 0,
            "max_free_resets": 5,
            "reset_price": 2,
            "last_reset_at": None,
            "cooldown_hours": 24,
            "now": NOW,
        }
        fields.update(overrides)
        return entitlement.evaluate_hwid_reset(**fields)

    def test_first_reset_allowed(self):
        assert self.evaluate().allowed

    def test_product_disallows(self):
        assert self.evaluate(allow_hwid_reset=False).denial_reason == DenialReason.HWID_RESET_NOT_ALLOWED

    def test_cooldown(self):
        result = self.evaluate(last_reset_at=NOW - timedelta(hours=23))
        assert result.denial_reason == DenialReason.COOLDOWN_ACTIVE

    def test_cooldown_over_after_24_hours(self):
        assert self.evaluate(last_reset_at=NOW - timedelta(hours=24)).allowed

    def test_quota_exhausted_reports_price(self):
        result = self.evaluate(reset_count=5)
        assert result.denial_reason == DenialReason.HWID_RESET_QUOTA_EXHAUSTED
        assert result.cost == 2

    def test_hours_until_rounds_up(self):
        assert entitlement.hours_until(NOW - timedelta(hours=20, minutes=30), 24, NOW) == 4
        assert entitlement.hours_until(NOW - timedelta(hours=30), 24, NOW) == 0


class TestReseller:
    def test_allows_assigned_product(self):
        assert entitlement.evaluate_reseller(True, ["AIMKILL"], "AIMKILL", 10, 5).allowed

    def test_disabled(self):
        result = entitlement.evaluate_reseller(False, ["AIMKILL"], "AIMKILL", 10, 5)
        assert result.denial_reason == DenialReason.ACCOUNT_DISABLED

    def test_unassigned_product(self):
        result = entitlement.evaluate_reseller(True, ["AIMKILL"], "SILENT_AIM", 10, 5)
        assert result.denial_reason == DenialReason.PRODUCT_NOT_ASSIGNED

    def test_any_product_when_key_is_none(self):
        assert entitlement.evaluate_reseller(True, [], None, 1, 1).allowed

    def test_insufficient(self):
        result = entitlement.evaluate_reseller(True, ["AIMKILL"], "AIMKILL", 4, 5)
        assert result.denial_reason == DenialReason.INSUFFICIENT_CREDITS


class TestEnsureAllowed:
    def test_allowed_is_silent(self, default_policy):
        result = entitlement.evaluate(account(), EntitlementRequest(ResourceKind.UID, ONE_DAY), default_policy)
        entitlement.ensure_allowed(result)

    def test_insufficient_credits_raises_typed_error(self, default_policy):
        result = entitlement.evaluate(
            account(credits=1), EntitlementRequest(ResourceKind.UID, SEVEN_DAYS), default_policy
        )
        with pytest.raises(InsufficientCreditsError) as exc_info:
            entitlement.ensure_allowed(result, available_credits=1)
        assert exc_info.value.required == 5
        assert exc_info.value.available == 1

    def test_cooldown_raises_with_hours(self):
        result = entitlement.evaluate_hwid_reset(True, 0, 5, 0, NOW - timedelta(hours=1), 24, NOW)
        with pytest.raises(CooldownActiveError) as exc_info:
            entitlement.ensure_allowed(result, hours_remaining=23)
        assert exc_info.value.hours_remaining == 23

    def test_other_denials_raise_entitlement_error(self, default_policy):
        result = entitlement.evaluate(
            guest(discord_verified=False), EntitlementRequest(ResourceKind.UID, ONE_DAY), default_policy
        )
        with pytest.raises(EntitlementDeniedError) as exc_info:
            entitlement.ensure_allowed(result)
        assert exc_info.value.reason == DenialReason.DISCORD_VERIFICATION_REQUIRED
