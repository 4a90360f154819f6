"""
FastAPI Dependencies - Session resolution, role gates and upstream clients.

NO DICTIONARIES - All dependencies return typed objects.
"""

from collections.abc import AsyncGenerator

from fastapi import Depends, Header, HTTPException, Request, Response, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from license_portal.config import settings
from license_portal.db.models import Client, Reseller, User
from license_portal.db.session import get_write_db
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
from license_portal.models.domain import Capability, Principal, PrincipalKind
from license_portal.observability.metrics import metrics
from license_portal.services.auth import principal_for
from license_portal.services.credentials import (
    ApiConfigService,
    build_genzauth_client,
    build_uid_client,
)
from license_portal.services.genzauth import GenzAuthClient
from license_portal.services.nowpayments_provider import NowPaymentsProvider
from license_portal.services.resellers import GenzAuthFactory
from license_portal.services.sessions import SessionTokenService
from license_portal.services.uid_api import UidApiClient

logger = get_logger(__name__)


# ============================================================================
# Sessions
# ============================================================================


def get_session_tokens() -> SessionTokenService:
    return SessionTokenService(settings.session_secret, settings.session_expire_hours)


def set_session_cookie(response: Response, token: str) -> None:
    response.set_cookie(
        settings.session_cookie_name,
        token,
        max_age=settings.session_expire_hours * 3600,
        httponly=True,
        samesite="lax",
        secure=settings.public_base_url.startswith("https://"),
    )


def clear_session_cookie(response: Response) -> None:
    response.delete_cookie(settings.session_cookie_name)


def extract_token(request: Request, authorization: str | None) -> str | None:
    """Authorization header first, then the session cookie."""
    if authorization and authorization.startswith("Bearer "):
        return authorization.removeprefix("Bearer ").strip() or None
    return request.cookies.get(settings.session_cookie_name)


async def resolve_principal(
    db: AsyncSession, tokens: SessionTokenService, token: str | None
) -> Principal | None:
    """
    Turn a session token into a Principal.

    One path for all three principal kinds; the token's `kind` claim picks
    which table backs it. Deleted or disabled accounts resolve to None.
    """
    if not token:
        return None
    claims = tokens.verify(token)
    if claims is None:
        return None

    if claims.kind == PrincipalKind.USER:
        result = await db.execute(select(User).where(User.username == claims.username))
        user = result.scalar_one_or_none()
        return principal_for(user) if user is not None else None

    if claims.kind == PrincipalKind.RESELLER:
        result = await db.execute(
            select(Reseller.is_active).where(Reseller.username == claims.username)
        )
        active = result.scalar_one_or_none()
        return Principal(kind=claims.kind, username=claims.username) if active else None

    result = await db.execute(select(Client).where(Client.username == claims.username))
    client = result.scalar_one_or_none()
    if client is None or not client.is_active or client.is_expired:
        return None
    return Principal(kind=claims.kind, username=claims.username)


async def get_optional_principal(
    request: Request,
    authorization: str | None = Header(None),
    db: AsyncSession = Depends(get_write_db),
    tokens: SessionTokenService = Depends(get_session_tokens),
) -> Principal | None:
    return await resolve_principal(db, tokens, extract_token(request, authorization))


async def get_principal(
    principal: Principal | None = Depends(get_optional_principal),
) -> Principal:
    if principal is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error": "Not authenticated"},
            headers={"WWW-Authenticate": "Bearer"},
        )
    return principal


# ============================================================================
# Role gates
# ============================================================================


def _forbidden(message: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail={"error": message})


async def require_user(principal: Principal = Depends(get_principal)) -> Principal:
    """Any user-kind account, guests included."""
    if principal.kind != PrincipalKind.USER:
        raise _forbidden("User account required")
    return principal


async def require_admin(principal: Principal = Depends(require_user)) -> Principal:
    if not principal.is_admin:
        logger.warning("admin_access_denied", username=principal.username)
        raise _forbidden("Admin access required")
    return principal


async def require_super_admin(principal: Principal = Depends(require_admin)) -> Principal:
    if not principal.can_manage_admins:
        raise _forbidden("Super admin access required")
    return principal


async def require_bootstrap_admin(principal: Principal = Depends(require_admin)) -> Principal:
    """Only the main admin account may touch upstream credentials."""
    if not principal.can(Capability.MANAGE_CONFIG):
        raise _forbidden("Only the main admin can change API configuration")
    return principal


async def require_reseller(principal: Principal = Depends(get_principal)) -> Principal:
    if principal.kind != PrincipalKind.RESELLER:
        raise _forbidden("Reseller login required")
    return principal


async def require_client(principal: Principal = Depends(get_principal)) -> Principal:
    if principal.kind != PrincipalKind.CLIENT:
        raise _forbidden("Client login required")
    return principal


async def require_chat(principal: Principal = Depends(get_principal)) -> Principal:
    if not principal.can(Capability.CHAT):
        raise _forbidden("Chat is not available for this account")
    return principal


async def get_current_user(
    principal: Principal = Depends(require_user),
    db: AsyncSession = Depends(get_write_db),
) -> User:
    result = await db.execute(select(User).where(User.username == principal.username))
    user = result.scalar_one_or_none()
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail={"error": "Account no longer exists"}
        )
    return user


# ============================================================================
# Upstream clients
# ============================================================================


async def get_uid_client(
    db: AsyncSession = Depends(get_write_db),
) -> AsyncGenerator[UidApiClient, None]:
    """UID API client built from the stored configuration."""
    effective = await ApiConfigService(db).get_effective()
    client = build_uid_client(effective)
    try:
        yield client
    finally:
        await client.close()


async def get_genzauth_client(
    db: AsyncSession = Depends(get_write_db),
) -> AsyncGenerator[GenzAuthClient, None]:
    """GenzAuth client on the global seller key (stored, then environment)."""
    seller_key = await ApiConfigService(db).resolve_seller_key()
    client = build_genzauth_client(seller_key)
    try:
        yield client
    finally:
        await client.close()


def get_genzauth_factory() -> GenzAuthFactory:
    """Per-request factory for callers whose seller key depends on the reseller or product."""
    return build_genzauth_client


async def get_payment_provider() -> AsyncGenerator[NowPaymentsProvider, None]:
    provider = NowPaymentsProvider(
        api_key=settings.nowpayments_api_key,
        base_url=settings.nowpayments_base_url,
        pay_currency=settings.nowpayments_pay_currency,
        timeout=settings.nowpayments_timeout_seconds,
    )
    try:
        yield provider
    finally:
        await provider.close()


# ============================================================================
# Error mapping
# ============================================================================


def http_error(exc: PortalError, operation: str = "request") -> HTTPException:
    """Map a domain exception to the HTTP status and `{error, reason}` detail."""
    code = status.HTTP_500_INTERNAL_SERVER_ERROR
    detail: dict[str, str | int | None] = {"error": str(exc)}

    if isinstance(exc, ValidationFailedError):
        code = status.HTTP_400_BAD_REQUEST
        detail = {"error": exc.message}
    elif isinstance(exc, InsufficientCreditsError):
        code = status.HTTP_402_PAYMENT_REQUIRED
        detail = {
            "error": exc.message,
            "reason": exc.reason.value,
            "required": exc.required,
            "available": exc.available,
        }
    elif isinstance(exc, CooldownActiveError):
        code = status.HTTP_429_TOO_MANY_REQUESTS
        detail = {
            "error": exc.message,
            "reason": exc.reason.value,
            "hours_remaining": exc.hours_remaining,
        }
    elif isinstance(exc, EntitlementDeniedError):
        code = status.HTTP_403_FORBIDDEN
        detail = {"error": exc.message, "reason": exc.reason.value}
    elif isinstance(exc, AuthorizationError):
        code = status.HTTP_403_FORBIDDEN
        detail = {"error": exc.message, "reason": "not_owner"}
    elif isinstance(exc, AuthenticationError):
        code = status.HTTP_401_UNAUTHORIZED
        detail = {"error": exc.message}
    elif isinstance(exc, ResourceConflictError):
        code = status.HTTP_409_CONFLICT
    elif isinstance(exc, ResourceNotFoundError):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, UpstreamError):
        code = status.HTTP_502_BAD_GATEWAY
        detail = {"error": exc.message, "service": exc.service}
    elif isinstance(exc, PaymentProviderError):
        code = status.HTTP_502_BAD_GATEWAY
        detail = {"error": exc.message, "service": "nowpayments"}
    elif isinstance(exc, ProvisioningNotConfiguredError):
        code = status.HTTP_503_SERVICE_UNAVAILABLE
        detail = {"error": exc.message, "service": exc.service}
    elif isinstance(exc, ReconciliationRequiredError):
        detail = {"error": str(exc), "reconciliation_id": exc.record_id}
    elif isinstance(exc, WriteVerificationError):
        detail = {"error": "Operation failed, please retry"}

    if code >= 500:
        metrics.record_error(type(exc).__name__, operation)
        logger.error("request_failed", operation=operation, error=str(exc), status_code=code)

    return HTTPException(status_code=code, detail=detail)
