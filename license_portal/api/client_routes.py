"""
Client API routes - Client sessions, product info, UID bypass and HWID resets.
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
    require_client,
    set_session_cookie,
)
from license_portal.db.session import get_read_db, get_write_db
from license_portal.exceptions import PortalError
from license_portal.models.api import (
    ActionResponse,
    ClientInfoResponse,
    ClientResponse,
    ClientUidRequest,
    HwidResetResponse,
    LoginRequest,
    UidCreatedResponse,
    UidResponse,
)
from license_portal.models.domain import Principal, PrincipalKind
from license_portal.services.auth import AuthService
from license_portal.services.clients import ClientService
from license_portal.services.resellers import GenzAuthFactory
from license_portal.services.sessions import SessionTokenService
from license_portal.services.uid_api import UidApiClient

logger = get_logger(__name__)
router = APIRouter(prefix="/api/client", tags=["client"])


@router.post("/login", response_model=ActionResponse)
async def login(
    body: LoginRequest,
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_write_db),
    tokens: SessionTokenService = Depends(get_session_tokens),
) -> ActionResponse:
    """Disabled and expired clients are refused here as well as on every request."""
    try:
        principal = await AuthService(db).login_client(
            body.username,
            body.password,
            request.headers.get("user-agent"),
            client_ip(request),
        )
    except PortalError as exc:
        raise http_error(exc, "client_login") from exc
    set_session_cookie(response, tokens.issue(PrincipalKind.CLIENT, principal.username))
    return ActionResponse(message="Login successful")


@router.post("/logout", response_model=ActionResponse)
async def logout(response: Response) -> ActionResponse:
    clear_session_cookie(response)
    return ActionResponse(message="Logged out")


@router.get("/info", response_model=ClientInfoResponse)
async def info(
    principal: Principal = Depends(require_client),
    db: AsyncSession = Depends(get_read_db),
) -> ClientInfoResponse:
    try:
        details = await ClientService(db).info(principal)
    except PortalError as exc:
        raise http_error(exc, "client_info") from exc

    product = details.product
    free_left = (
        max(product.max_free_hwid_resets - details.client.hwid_reset_count, 0) if product else 0
    )
    return ClientInfoResponse(
        client=ClientResponse.from_client(details.client),
        product_name=product.name if product else None,
        download_link=details.download_link,
        setup_video_url=product.setup_video_url if product else None,
        announcement=product.announcement if product else None,
        allow_hwid_reset=bool(product and product.allow_hwid_reset),
        free_hwid_resets_left=free_left,
        uid_expires_at=details.uid_expires_at,
        uid_status=details.uid_status.value if details.uid_status else None,
    )


@router.post("/uid", response_model=UidCreatedResponse, status_code=status.HTTP_201_CREATED)
async def create_uid(
    body: ClientUidRequest,
    principal: Principal = Depends(require_client),
    db: AsyncSession = Depends(get_write_db),
    uid_client: UidApiClient = Depends(get_uid_client),
) -> UidCreatedResponse:
    """UID_BYPASS clients register their own UID on one of the product's day packages."""
    try:
        record = await ClientService(db, uid_client=uid_client).create_uid_bypass(
            principal, body.uid, body.days
        )
    except PortalError as exc:
        raise http_error(exc, "client_create_uid") from exc
    return UidCreatedResponse(
        message=f"UID {record.uid} created successfully",
        uid=UidResponse.from_record(record),
        credits_remaining=0,
    )


@router.post("/reset-hwid", response_model=HwidResetResponse)
async def reset_hwid(
    principal: Principal = Depends(require_client),
    db: AsyncSession = Depends(get_write_db),
    genzauth_factory: GenzAuthFactory = Depends(get_genzauth_factory),
) -> HwidResetResponse:
    try:
        outcome = await ClientService(db, genzauth_factory=genzauth_factory).reset_hwid(principal)
    except PortalError as exc:
        raise http_error(exc, "client_reset_hwid") from exc
    return HwidResetResponse(
        message="HWID reset successfully",
        reset_at=outcome.reset_at,
        reset_count=outcome.reset_count,
        free_resets_left=outcome.free_resets_left,
    )
