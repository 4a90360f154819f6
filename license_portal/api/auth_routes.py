"""
Auth API routes - Registration, login, sessions and two-factor authentication.
"""

from fastapi import APIRouter, Depends, Request, Response, status
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from license_portal.api.dependencies import (
    clear_session_cookie,
    get_current_user,
    get_session_tokens,
    http_error,
    set_session_cookie,
)
from license_portal.db.models import User
from license_portal.db.session import get_write_db
from license_portal.exceptions import PortalError
from license_portal.models.api import (
    AccountResponse,
    ActionResponse,
    BackupCodesResponse,
    ChangePasswordRequest,
    LoginRequest,
    LoginResponse,
    RegisterRequest,
    TwoFactorCodeRequest,
    TwoFactorDisableRequest,
    TwoFactorSetupResponse,
    TwoFactorStatusResponse,
)
from license_portal.models.domain import PrincipalKind
from license_portal.services.auth import AuthService
from license_portal.services.sessions import SessionTokenService

logger = get_logger(__name__)
router = APIRouter(prefix="/api/auth", tags=["auth"])


def client_ip(request: Request) -> str | None:
    return request.client.host if request.client else None


@router.post("/register", response_model=LoginResponse, status_code=status.HTTP_201_CREATED)
async def register(
    body: RegisterRequest,
    response: Response,
    db: AsyncSession = Depends(get_write_db),
    tokens: SessionTokenService = Depends(get_session_tokens),
) -> LoginResponse:
    """Create an account and start a session for it."""
    try:
        user = await AuthService(db).register(
            username=body.username,
            password=body.password,
            email=body.email,
            account_type=body.account_type,
            as_guest=body.guest,
        )
    except PortalError as exc:
        raise http_error(exc, "register") from exc

    set_session_cookie(response, tokens.issue(PrincipalKind.USER, user.username))
    return LoginResponse(
        success=True,
        message="Registration successful",
        account=AccountResponse.from_user(user),
    )


@router.post("/login", response_model=LoginResponse)
async def login(
    body: LoginRequest,
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_write_db),
    tokens: SessionTokenService = Depends(get_session_tokens),
) -> LoginResponse:
    """
    Log a user in.

    Accounts with 2FA enabled get `requires_two_factor` back until the same
    credentials are posted again with `two_factor_code`.
    """
    service = AuthService(db)
    try:
        outcome = await service.login(
            username=body.username,
            password=body.password,
            user_agent=request.headers.get("user-agent"),
            ip_address=client_ip(request),
            two_factor_code=body.two_factor_code,
        )
    except PortalError as exc:
        raise http_error(exc, "login") from exc

    if outcome.requires_two_factor or outcome.principal is None:
        return LoginResponse(
            success=False,
            message="Two-factor code required",
            requires_two_factor=True,
        )

    user = await service.find_user(outcome.principal.username)
    assert user is not None
    set_session_cookie(response, tokens.issue(PrincipalKind.USER, user.username))
    return LoginResponse(
        success=True,
        message="Login successful",
        account=AccountResponse.from_user(user),
    )


@router.post("/logout", response_model=ActionResponse)
async def logout(response: Response) -> ActionResponse:
    clear_session_cookie(response)
    return ActionResponse(message="Logged out")


@router.get("/me", response_model=AccountResponse)
async def me(user: User = Depends(get_current_user)) -> AccountResponse:
    return AccountResponse.from_user(user)


@router.post("/change-password", response_model=ActionResponse)
async def change_password(
    body: ChangePasswordRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_write_db),
) -> ActionResponse:
    try:
        await AuthService(db).change_password(user, body.current_password, body.new_password)
    except PortalError as exc:
        raise http_error(exc, "change_password") from exc
    return ActionResponse(message="Password changed successfully")


# ============================================================================
# Two-factor authentication
# ============================================================================


@router.get("/2fa/status", response_model=TwoFactorStatusResponse)
async def two_factor_status(user: User = Depends(get_current_user)) -> TwoFactorStatusResponse:
    return TwoFactorStatusResponse(
        enabled=user.two_factor_enabled,
        backup_codes_remaining=len(user.backup_codes),
    )


@router.post("/2fa/setup", response_model=TwoFactorSetupResponse)
async def two_factor_setup(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_write_db),
) -> TwoFactorSetupResponse:
    try:
        setup = await AuthService(db).begin_two_factor(user)
    except PortalError as exc:
        raise http_error(exc, "2fa_setup") from exc
    return TwoFactorSetupResponse(secret=setup.secret, provisioning_uri=setup.provisioning_uri)


@router.post("/2fa/verify", response_model=BackupCodesResponse)
async def two_factor_verify(
    body: TwoFactorCodeRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_write_db),
) -> BackupCodesResponse:
    try:
        codes = await AuthService(db).confirm_two_factor(user, body.code)
    except PortalError as exc:
        raise http_error(exc, "2fa_verify") from exc
    return BackupCodesResponse(
        message="Two-factor authentication enabled. Store these backup codes safely.",
        backup_codes=codes,
    )


@router.post("/2fa/disable", response_model=ActionResponse)
async def two_factor_disable(
    body: TwoFactorDisableRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_write_db),
) -> ActionResponse:
    try:
        await AuthService(db).disable_two_factor(user, body.password, body.code)
    except PortalError as exc:
        raise http_error(exc, "2fa_disable") from exc
    return ActionResponse(message="Two-factor authentication disabled")
