"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.
"""

from license_portal.models.domain import DenialReason, ResourceKind


class PortalError(Exception):
    """Base exception for all portal errors."""

    pass


class ValidationFailedError(PortalError):
    """Raised when input is rejected before any I/O happens."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class EntitlementDeniedError(PortalError):
    """Raised when the entitlement guard refuses an action."""

    def __init__(self, reason: DenialReason, message: str, cost: int = 0) -> None:
        self.reason = reason
        self.message = message
        self.cost = cost
        super().__init__(message)


class InsufficientCreditsError(EntitlementDeniedError):
    """Raised when an account cannot pay for the requested package."""

    def __init__(self, required: int, available: int) -> None:
        self.required = required
        self.available = available
        super().__init__(
            DenialReason.INSUFFICIENT_CREDITS,
            f"Insufficient credits. Required: {required}, Available: {available}",
            cost=required,
        )


class CooldownActiveError(EntitlementDeniedError):
    """Raised when a rate-limited action is attempted too soon."""

    def __init__(self, hours_remaining: int) -> None:
        self.hours_remaining = hours_remaining
        super().__init__(
            DenialReason.COOLDOWN_ACTIVE,
            f"HWID reset is on cooldown. Please wait {hours_remaining} hour(s) "
            "before trying again.",
        )


class ResourceConflictError(PortalError):
    """Raised when an identifier is already taken."""

    def __init__(self, resource: str, identifier: str) -> None:
        self.resource = resource
        self.identifier = identifier
        super().__init__(f"{resource} already exists: {identifier}")


class ResourceNotFoundError(PortalError):
    """Raised when a requested record doesn't exist."""

    def __init__(self, resource: str, identifier: str) -> None:
        self.resource = resource
        self.identifier = identifier
        super().__init__(f"{resource} not found: {identifier}")


class UpstreamError(PortalError):
    """Raised when an external provisioning service fails or rejects a call."""

    def __init__(self, service: str, message: str) -> None:
        self.service = service
        self.message = message
        super().__init__(f"{service} error: {message}")


class ProvisioningNotConfiguredError(PortalError):
    """Raised when an external service has no credential configured."""

    def __init__(self, service: str, message: str | None = None) -> None:
        self.service = service
        self.message = message or (
            f"{service} is not configured. Please contact an administrator."
        )
        super().__init__(self.message)


class ReconciliationRequiredError(PortalError):
    """Raised when an external resource exists but local persistence failed."""

    def __init__(self, kind: ResourceKind, identifier: str, record_id: int | None) -> None:
        self.kind = kind
        self.identifier = identifier
        self.record_id = record_id
        super().__init__(
            f"{kind.value} {identifier} was provisioned externally but could not be "
            "saved; flagged for manual reconciliation"
        )


class WriteVerificationError(PortalError):
    """Raised when database write verification fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Write verification failed: {message}")


class PaymentProviderError(PortalError):
    """Raised when payment provider operation fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Payment provider error: {message}")


class AuthenticationError(PortalError):
    """Raised when authentication fails (bad credentials, bad 2FA code)."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Authentication failed: {message}")


class AuthorizationError(PortalError):
    """Raised when the caller lacks the capability for an action."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)
