"""
Tests for exception classes.

Covers the hierarchy and the typed attributes the HTTP layer reads.
"""

import pytest

from license_portal.exceptions import (
    AuthenticationError,
    AuthorizationError,
    CooldownActiveError,
    EntitlementDeniedError,
    InsufficientCreditsError,
    PaymentProviderError,
    PortalError,
    ProvisioningNotConfiguredError,
    ReconciliationRequiredError,
    ResourceConflictError,
    ResourceNotFoundError,
    UpstreamError,
    ValidationFailedError,
    WriteVerificationError,
)
from license_portal.models.domain import DenialReason, ResourceKind


class TestPortalError:
    def test_portal_error_is_exception(self):
        assert issubclass(PortalError, Exception)

    @pytest.mark.parametrize(
        "exc_class",
        [
            ValidationFailedError,
            EntitlementDeniedError,
            ResourceConflictError,
            ResourceNotFoundError,
            UpstreamError,
            ProvisioningNotConfiguredError,
            ReconciliationRequiredError,
            WriteVerificationError,
            PaymentProviderError,
            AuthenticationError,
            AuthorizationError,
        ],
    )
    def test_all_inherit_from_portal_error(self, exc_class):
        assert issubclass(exc_class, PortalError)


class TestInsufficientCreditsError:
    def test_is_an_entitlement_denial(self):
        error = InsufficientCreditsError(required=15, available=4)

        assert isinstance(error, EntitlementDeniedError)
        assert error.reason == DenialReason.INSUFFICIENT_CREDITS
        assert error.cost == 15

    def test_message(self):
        assert str(InsufficientCreditsError(required=15, available=4)) == (
            "Insufficient credits. Required: 15, Available: 4"
        )


class TestCooldownActiveError:
    def test_hours_remaining(self):
        error = CooldownActiveError(hours_remaining=22)

        assert error.reason == DenialReason.COOLDOWN_ACTIVE
        assert error.hours_remaining == 22
        assert "22 hour(s)" in str(error)


class TestEntitlementDeniedError:
    def test_attributes(self):
        error = EntitlementDeniedError(DenialReason.GUEST_PASS_USED, "Free pass already used")

        assert error.reason == DenialReason.GUEST_PASS_USED
        assert error.message == "Free pass already used"
        assert error.cost == 0


class TestResourceErrors:
    def test_conflict(self):
        error = ResourceConflictError("UID", "12345678")
        assert str(error) == "UID already exists: 12345678"
        assert error.identifier == "12345678"

    def test_not_found(self):
        assert str(ResourceNotFoundError("Invoice", "INV-1")) == "Invoice not found: INV-1"


class TestUpstreamErrors:
    def test_upstream(self):
        error = UpstreamError("genzauth", "Invalid seller key")
        assert error.service == "genzauth"
        assert str(error) == "genzauth error: Invalid seller key"

    def test_not_configured_default_message(self):
        error = ProvisioningNotConfiguredError("uid_api")
        assert error.message == "uid_api is not configured. Please contact an administrator."

    def test_not_configured_custom_message(self):
        assert ProvisioningNotConfiguredError("genzauth", "No seller key").message == "No seller key"


class TestReconciliationRequiredError:
    def test_carries_record_id(self):
        error = ReconciliationRequiredError(ResourceKind.UID, "12345678", 42)

        assert error.kind == ResourceKind.UID
        assert error.record_id == 42
        assert str(error).startswith("uid 12345678 was provisioned externally")


class TestPrefixedMessages:
    def test_write_verification(self):
        assert str(WriteVerificationError("no id")) == "Write verification failed: no id"

    def test_payment_provider(self):
        assert str(PaymentProviderError("timeout")) == "Payment provider error: timeout"

    def test_authentication(self):
        error = AuthenticationError("Invalid credentials")
        assert error.message == "Invalid credentials"
        assert str(error) == "Authentication failed: Invalid credentials"
