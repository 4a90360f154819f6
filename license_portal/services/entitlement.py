"""
Entitlement Guard - Pure allow/deny decisions for credit-gated actions.

NO SIDE EFFECTS - Every function here is a predicate over the snapshot it is
given. Callers re-evaluate on every attempt; results are never cached.
"""

from datetime import datetime, timedelta
from math import ceil

from license_portal.exceptions import (
    CooldownActiveError,
    EntitlementDeniedError,
    InsufficientCreditsError,
)
from license_portal.models.domain import (
    AccountSnapshot,
    DenialReason,
    EntitlementRequest,
    GuardResult,
    GuestPolicySnapshot,
)


def evaluate(
    account: AccountSnapshot,
    request: EntitlementRequest,
    policy: GuestPolicySnapshot,
) -> GuardResult:
    """
    Decide whether `account` may perform `request`.

    Rules run in order and the first failure wins:
    1. paused or locked accounts (staff exempt)
    2. guest free pass rules
    3. credit balance for everyone else
    4. 2FA for non-staff, non-guest UID/key creation
    """
    cost = request.cost

    if not account.is_exempt:
        if account.is_paused:
            return GuardResult.deny(
                DenialReason.ACCOUNT_PAUSED,
                "Your account has been paused. Please contact an administrator.",
                cost,
            )
        if account.is_locked:
            return GuardResult.deny(
                DenialReason.ACCOUNT_LOCKED,
                "Your account is locked. Please contact an administrator.",
                cost,
            )

    if account.is_guest:
        return _evaluate_guest(account, request, policy)

    if account.credits < cost:
        return GuardResult.deny(
            DenialReason.INSUFFICIENT_CREDITS,
            f"Insufficient credits. Required: {cost}, Available: {account.credits}",
            cost,
        )

    if request.kind.requires_two_factor and not account.is_exempt:
        if not account.two_factor_enabled:
            return GuardResult.deny(
                DenialReason.TWO_FACTOR_REQUIRED,
                "Two-factor authentication must be enabled before creating UIDs or keys.",
                cost,
            )

    return GuardResult.allow(cost)


def _evaluate_guest(
    account: AccountSnapshot,
    request: EntitlementRequest,
    policy: GuestPolicySnapshot,
) -> GuardResult:
    family = request.kind.guest_family
    if family is None:
        return GuardResult.deny(
            DenialReason.GUEST_FEATURE_DISABLED,
            "Guest accounts cannot perform this action.",
        )

    enabled = policy.allow_free_uid if family == "uid" else policy.allow_free_aimkill
    if not enabled:
        label = "UID" if family == "uid" else "Aimkill"
        return GuardResult.deny(
            DenialReason.GUEST_FEATURE_DISABLED,
            f"Free {label} creation is currently disabled for guest accounts.",
        )

    if not account.discord_verified:
        return GuardResult.deny(
            DenialReason.DISCORD_VERIFICATION_REQUIRED,
            "Please verify your Discord account to use your free pass.",
        )

    if account.guest_pass_used:
        return GuardResult.deny(
            DenialReason.GUEST_PASS_USED,
            "You have already used your free guest pass.",
        )

    if request.quantity > 1:
        return GuardResult.deny(
            DenialReason.GUEST_QUANTITY_LIMIT,
            "Guest accounts can only create 1 item.",
        )

    if request.package is not None and not policy.allows(request.package):
        return GuardResult.deny(
            DenialReason.DURATION_NOT_ALLOWED,
            f"Guest accounts can only create items up to {policy.max_days} day(s).",
        )

    if policy.require_social_verification and not account.social_verified:
        return GuardResult.deny(
            DenialReason.SOCIAL_VERIFICATION_REQUIRED,
            "Please subscribe on YouTube and follow on Instagram to use your free pass.",
        )

    # The free pass is the payment
    return GuardResult.allow(0)


def hours_until(last_event: datetime, cooldown_hours: int, now: datetime) -> int:
    """Whole hours left before a cooldown started at `last_event` expires (0 when over)."""
    remaining = (last_event + timedelta(hours=cooldown_hours)) - now
    if remaining.total_seconds() <= 0:
        return 0
    return ceil(remaining.total_seconds() / 3600)


def evaluate_hwid_reset(
    allow_hwid_reset: bool,
    reset_count: int,
    max_free_resets: int,
    reset_price: int,
    last_reset_at: datetime | None,
    cooldown_hours: int,
    now: datetime,
) -> GuardResult:
    """Decide whether a client may reset its hardware binding."""
    if not allow_hwid_reset:
        return GuardResult.deny(
            DenialReason.HWID_RESET_NOT_ALLOWED,
            "HWID reset is not available for this product.",
        )

    if last_reset_at is not None:
        remaining = hours_until(last_reset_at, cooldown_hours, now)
        if remaining > 0:
            return GuardResult.deny(
                DenialReason.COOLDOWN_ACTIVE,
                f"HWID reset is on cooldown. Please wait {remaining} hour(s) "
                "before trying again.",
            )

    if reset_count >= max_free_resets:
        return GuardResult.deny(
            DenialReason.HWID_RESET_QUOTA_EXHAUSTED,
            f"All {max_free_resets} free HWID resets have been used. Further resets cost "
            f"{reset_price} credit(s); please contact your reseller.",
            reset_price,
        )

    return GuardResult.allow(0)


def ensure_allowed(
    result: GuardResult,
    available_credits: int = 0,
    hours_remaining: int = 0,
) -> None:
    """Raise the typed denial for a refused GuardResult."""
    if result.allowed:
        return

    assert result.denial_reason is not None
    if result.denial_reason == DenialReason.INSUFFICIENT_CREDITS:
        raise InsufficientCreditsError(result.cost, available_credits)
    if result.denial_reason == DenialReason.COOLDOWN_ACTIVE:
        raise CooldownActiveError(hours_remaining)
    raise EntitlementDeniedError(result.denial_reason, result.message or "", result.cost)


def evaluate_reseller(
    is_active: bool,
    assigned_products: list[str],
    product_key: str | None,
    credits: int,
    cost: int,
) -> GuardResult:
    """Decide whether a reseller may sell `product_key` (None: any product) at `cost` credits."""
    if not is_active:
        return GuardResult.deny(
            DenialReason.ACCOUNT_DISABLED, "Your reseller account has been disabled.", cost
        )
    if product_key is not None and product_key not in assigned_products:
        return GuardResult.deny(
            DenialReason.PRODUCT_NOT_ASSIGNED, "You do not have access to this product", cost
        )
    if credits < cost:
        return GuardResult.deny(
            DenialReason.INSUFFICIENT_CREDITS,
            f"Insufficient credits. Required: {cost}, Available: {credits}",
            cost,
        )
    return GuardResult.allow(cost)
