"""
Reseller API routes - Reseller sessions, client sales and key generation.
"""

from fastapi import APIRouter, Depends, Request, Response, status
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from license_portal.api.auth_routes import client_ip
from license_portal.api.dependencies import (
    clear_session_cookie,
    get_genzauth_factory,
    get_session_tokens,
    get_uid_client,
    http_error,
    require_reseller,
    set_session_cookie,
)
from license_portal.db.session import get_read_db, get_write_db
from license_portal.exceptions import PortalError
from license_portal.models.api import (
    ActionResponse,
    AimkillAccountCreatedResponse,
    AimkillAccountResponse,
    ClientCreatedResponse,
    ClientResponse,
    CreateClientRequest,
    KeysCreatedResponse,
    LicenseKeyResponse,
    LoginRequest,
    ProductResponse,
    ResellerAimkillAccountRequest,
    ResellerKeyRequest,
    ResellerProfileResponse,
    ResellerResponse,
)
from license_portal.models.domain import Principal, PrincipalKind
from license_portal.services.auth import AuthService
from license_portal.services.resellers import GenzAuthFactory, ResellerService
from license_portal.services.sessions import SessionTokenService
from license_portal.services.uid_api import UidApiClient

logger = get_logger(__name__)
router = APIRouter(prefix="/api/reseller", tags=["reseller"])


@router.post("/login", response_model=ActionResponse)
async def login(
    body: LoginRequest,
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_write_db),
    tokens: SessionTokenService = Depends(get_session_tokens),
) -> ActionResponse:
    try:
        principal = await AuthService(db).login_reseller(
            body.username,
            body.password,
            request.headers.get("user-agent"),
            client_ip(request),
        )
    except PortalError as exc:
        raise http_error(exc, "reseller_login") from exc
    set_session_cookie(response, tokens.issue(PrincipalKind.RESELLER, principal.username))
    return ActionResponse(message="Login successful")


@router.post("/logout", response_model=ActionResponse)
async def logout(response: Response) -> ActionResponse:
    clear_session_cookie(response)
    return ActionResponse(message="Logged out")


@router.get("/me", response_model=ResellerProfileResponse)
async def profile(
    principal: Principal = Depends(require_reseller),
    db: AsyncSession = Depends(get_read_db),
) -> ResellerProfileResponse:
    """The reseller's balance plus the products it may sell."""
    service = ResellerService(db)
    try:
        reseller = await service.get_reseller(principal.username)
    except PortalError as exc:
        raise http_error(exc, "reseller_profile") from exc
    products = await service.products_for(reseller)
    return ResellerProfileResponse(
        reseller=ResellerResponse.from_reseller(reseller),
        products=[ProductResponse.from_product(p) for p in products],
    )


@router.delete("/account", response_model=ActionResponse)
async def delete_own_account(
    response: Response,
    principal: Principal = Depends(require_reseller),
    db: AsyncSession = Depends(get_write_db),
) -> ActionResponse:
    try:
        await ResellerService(db).delete_reseller(principal, principal.username)
    except PortalError as exc:
        raise http_error(exc, "reseller_delete_account") from exc
    clear_session_cookie(response)
    return ActionResponse(message="Account deleted")


# ============================================================================
# Clients
# ============================================================================


@router.post("/clients", response_model=ClientCreatedResponse, status_code=status.HTTP_201_CREATED)
async def create_client(
    body: CreateClientRequest,
    principal: Principal = Depends(require_reseller),
    db: AsyncSession = Depends(get_write_db),
    uid_client: UidApiClient = Depends(get_uid_client),
    genzauth_factory: GenzAuthFactory = Depends(get_genzauth_factory),
) -> ClientCreatedResponse:
    """
    Sell a client account.

    UID_BYPASS clients get their UID registered upstream; when that fails no
    client is created and no credits are spent.
    """
    service = ResellerService(db, uid_client=uid_client, genzauth_factory=genzauth_factory)
    try:
        result = await service.create_client(
            principal,
            username=body.username,
            product_key=body.product,
            package_key=body.package,
            password=body.password,
            auto_password=body.auto_password,
            assigned_uid=body.assigned_uid,
        )
    except PortalError as exc:
        raise http_error(exc, "reseller_create_client") from exc

    return ClientCreatedResponse(
        message=f"Client {result.client.username} created",
        client=ClientResponse.from_client(result.client),
        password=result.password,
        auto_generated=result.auto_generated,
        credits_remaining=result.credits_remaining,
        genzauth_created=result.genzauth_created,
        uid_created=result.uid_created,
        warning=result.warning,
    )


@router.get("/clients", response_model=list[ClientResponse])
async def list_clients(
    principal: Principal = Depends(require_reseller),
    db: AsyncSession = Depends(get_read_db),
) -> list[ClientResponse]:
    clients = await ResellerService(db).list_clients(principal)
    return [ClientResponse.from_client(c) for c in clients]


@router.delete("/clients/{client_id}", response_model=ActionResponse)
async def delete_client(
    client_id: int,
    principal: Principal = Depends(require_reseller),
    db: AsyncSession = Depends(get_write_db),
) -> ActionResponse:
    try:
        await ResellerService(db).delete_client(principal, client_id)
    except PortalError as exc:
        raise http_error(exc, "reseller_delete_client") from exc
    return ActionResponse(message="Client deleted")


# ============================================================================
# Keys and Aimkill accounts
# ============================================================================


@router.post("/keys", response_model=KeysCreatedResponse, status_code=status.HTTP_201_CREATED)
async def generate_key(
    body: ResellerKeyRequest,
    principal: Principal = Depends(require_reseller),
    db: AsyncSession = Depends(get_write_db),
    genzauth_factory: GenzAuthFactory = Depends(get_genzauth_factory),
) -> KeysCreatedResponse:
    service = ResellerService(db, genzauth_factory=genzauth_factory)
    try:
        key = await service.generate_license_key(principal, body.days)
        reseller = await service.get_reseller(principal.username)
    except PortalError as exc:
        raise http_error(exc, "reseller_generate_key") from exc

    return KeysCreatedResponse(
        message="License key generated",
        keys=[LicenseKeyResponse.from_record(key)],
        created=1,
        failed=0,
        credits_spent=key.credits_spent,
        credits_remaining=reseller.credits,
        errors=[],
        test_mode=key.is_placeholder,
    )


@router.get("/keys", response_model=list[LicenseKeyResponse])
async def list_keys(
    principal: Principal = Depends(require_reseller),
    db: AsyncSession = Depends(get_read_db),
) -> list[LicenseKeyResponse]:
    keys = await ResellerService(db).list_license_keys(principal)
    return [LicenseKeyResponse.from_record(k) for k in keys]


@router.post(
    "/aimkill-accounts",
    response_model=AimkillAccountCreatedResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_aimkill_account(
    body: ResellerAimkillAccountRequest,
    principal: Principal = Depends(require_reseller),
    db: AsyncSession = Depends(get_write_db),
    genzauth_factory: GenzAuthFactory = Depends(get_genzauth_factory),
) -> AimkillAccountCreatedResponse:
    service = ResellerService(db, genzauth_factory=genzauth_factory)
    try:
        record, password = await service.create_aimkill_account(
            principal,
            account_username=body.account_username,
            package_key=body.package,
            password=body.password,
            auto_password=body.auto_password,
        )
        reseller = await service.get_reseller(principal.username)
    except PortalError as exc:
        raise http_error(exc, "reseller_create_aimkill_account") from exc

    return AimkillAccountCreatedResponse(
        message=f"Aimkill account {record.account_username} created",
        account=AimkillAccountResponse.from_record(record),
        password=password,
        credits_remaining=reseller.credits,
    )


@router.get("/aimkill-accounts", response_model=list[AimkillAccountResponse])
async def list_aimkill_accounts(
    principal: Principal = Depends(require_reseller),
    db: AsyncSession = Depends(get_read_db),
) -> list[AimkillAccountResponse]:
    accounts = await ResellerService(db).list_aimkill_accounts(principal)
    return [AimkillAccountResponse.from_record(a) for a in accounts]
