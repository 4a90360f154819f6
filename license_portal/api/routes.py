"""
API routes - Packages, UIDs, Aimkill keys and accounts, invoices and history.

Every create goes through ProvisioningService, which locks the account,
runs the entitlement guard and commits resource, debit and invoice together.
"""

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from license_portal.api.dependencies import (
    get_genzauth_client,
    get_optional_principal,
    get_uid_client,
    http_error,
    require_user,
)
from license_portal.db.session import get_read_db, get_write_db
from license_portal.exceptions import PortalError
from license_portal.models.api import (
    ActionResponse,
    ActivityResponse,
    AimkillAccountCreatedResponse,
    AimkillAccountResponse,
    CreateAimkillAccountRequest,
    CreateKeysRequest,
    CreateUidRequest,
    GuestPolicyResponse,
    InvoiceResponse,
    KeysCreatedResponse,
    LicenseKeyResponse,
    LoginHistoryResponse,
    PackageResponse,
    UidCreatedResponse,
    UidResponse,
)
from license_portal.models.domain import Capability, Principal
from license_portal.services.activity import ActivityService
from license_portal.services.auth import AuthService
from license_portal.services.catalog import (
    AIMKILL_FAMILY,
    UID_FAMILY,
    CatalogService,
    filter_for_guest,
)
from license_portal.services.genzauth import GenzAuthClient
from license_portal.services.guest_policy import GuestPolicyService
from license_portal.services.invoices import InvoiceService
from license_portal.services.provisioning import ProvisioningService
from license_portal.services.uid_api import UidApiClient

logger = get_logger(__name__)
router = APIRouter(prefix="/api", tags=["portal"])


def _require_delete(principal: Principal) -> None:
    if not principal.can(Capability.DELETE_RESOURCES):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"error": "Guests cannot delete resources", "reason": "guest_feature_disabled"},
        )


def _scope(principal: Principal) -> str | None:
    """Admins read every account's rows, everyone else only their own."""
    return None if principal.is_admin else principal.username


async def _credits_of(db: AsyncSession, username: str) -> int:
    user = await AuthService(db).find_user(username)
    return user.credits if user else 0


# ============================================================================
# Packages
# ============================================================================


async def _packages(
    family: str, db: AsyncSession, principal: Principal | None
) -> list[PackageResponse]:
    packages = await CatalogService(db).get_packages(family)
    if principal is not None and principal.is_guest:
        packages = filter_for_guest(packages, await GuestPolicyService(db).snapshot())
    return [PackageResponse.from_spec(p) for p in packages]


@router.get("/packages/uid", response_model=list[PackageResponse])
async def uid_packages(
    db: AsyncSession = Depends(get_write_db),
    principal: Principal | None = Depends(get_optional_principal),
) -> list[PackageResponse]:
    """UID packages. Guests only see durations within the guest ceiling."""
    return await _packages(UID_FAMILY, db, principal)


@router.get("/packages/aimkill", response_model=list[PackageResponse])
async def aimkill_packages(
    db: AsyncSession = Depends(get_write_db),
    principal: Principal | None = Depends(get_optional_principal),
) -> list[PackageResponse]:
    return await _packages(AIMKILL_FAMILY, db, principal)


@router.get("/guest-policy", response_model=GuestPolicyResponse)
async def guest_policy(db: AsyncSession = Depends(get_write_db)) -> GuestPolicyResponse:
    return GuestPolicyResponse.from_policy(await GuestPolicyService(db).get())


# ============================================================================
# UIDs
# ============================================================================


@router.post("/uids", response_model=UidCreatedResponse, status_code=status.HTTP_201_CREATED)
async def create_uid(
    body: CreateUidRequest,
    principal: Principal = Depends(require_user),
    db: AsyncSession = Depends(get_write_db),
    uid_client: UidApiClient = Depends(get_uid_client),
) -> UidCreatedResponse:
    try:
        record = await ProvisioningService(db, uid_client=uid_client).create_uid(
            principal.username, body.uid, body.package
        )
    except PortalError as exc:
        raise http_error(exc, "create_uid") from exc

    return UidCreatedResponse(
        message=f"UID {record.uid} created successfully",
        uid=UidResponse.from_record(record),
        credits_remaining=await _credits_of(db, principal.username),
    )


@router.get("/uids", response_model=list[UidResponse])
async def list_uids(
    principal: Principal = Depends(require_user),
    db: AsyncSession = Depends(get_read_db),
) -> list[UidResponse]:
    records = await ProvisioningService(db).list_uids(principal.username)
    return [UidResponse.from_record(r) for r in records]


@router.delete("/uids/{uid}", response_model=ActionResponse)
async def delete_uid(
    uid: str,
    principal: Principal = Depends(require_user),
    db: AsyncSession = Depends(get_write_db),
    uid_client: UidApiClient = Depends(get_uid_client),
) -> ActionResponse:
    _require_delete(principal)
    try:
        await ProvisioningService(db, uid_client=uid_client).delete_uid(principal, uid)
    except PortalError as exc:
        raise http_error(exc, "delete_uid") from exc
    return ActionResponse(message=f"UID {uid} deleted")


# ============================================================================
# Aimkill license keys
# ============================================================================


@router.post("/keys", response_model=KeysCreatedResponse, status_code=status.HTTP_201_CREATED)
async def create_keys(
    body: CreateKeysRequest,
    principal: Principal = Depends(require_user),
    db: AsyncSession = Depends(get_write_db),
    genzauth: GenzAuthClient = Depends(get_genzauth_client),
) -> KeysCreatedResponse:
    """Create one or more keys. Partial success charges only for keys created."""
    try:
        outcome = await ProvisioningService(db, genzauth=genzauth).create_license_keys(
            principal.username, body.package, body.quantity, body.allow_placeholder
        )
    except PortalError as exc:
        raise http_error(exc, "create_keys") from exc

    created = len(outcome.keys)
    message = f"Created {created} key(s)"
    if outcome.failed:
        message += f", {outcome.failed} failed"
    return KeysCreatedResponse(
        message=message,
        keys=[LicenseKeyResponse.from_record(k) for k in outcome.keys],
        created=created,
        failed=outcome.failed,
        credits_spent=outcome.credits_spent,
        credits_remaining=await _credits_of(db, principal.username),
        errors=list(outcome.errors),
        test_mode=any(k.is_placeholder for k in outcome.keys),
    )


@router.get("/keys", response_model=list[LicenseKeyResponse])
async def list_keys(
    principal: Principal = Depends(require_user),
    db: AsyncSession = Depends(get_read_db),
) -> list[LicenseKeyResponse]:
    records = await ProvisioningService(db).list_license_keys(principal.username)
    return [LicenseKeyResponse.from_record(r) for r in records]


@router.delete("/keys/{license_key}", response_model=ActionResponse)
async def delete_key(
    license_key: str,
    principal: Principal = Depends(require_user),
    db: AsyncSession = Depends(get_write_db),
    genzauth: GenzAuthClient = Depends(get_genzauth_client),
) -> ActionResponse:
    _require_delete(principal)
    try:
        await ProvisioningService(db, genzauth=genzauth).delete_license_key(principal, license_key)
    except PortalError as exc:
        raise http_error(exc, "delete_key") from exc
    return ActionResponse(message="Key deleted")


# ============================================================================
# Aimkill accounts
# ============================================================================


@router.post(
    "/aimkill-accounts",
    response_model=AimkillAccountCreatedResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_aimkill_account(
    body: CreateAimkillAccountRequest,
    principal: Principal = Depends(require_user),
    db: AsyncSession = Depends(get_write_db),
    genzauth: GenzAuthClient = Depends(get_genzauth_client),
) -> AimkillAccountCreatedResponse:
    try:
        record = await ProvisioningService(db, genzauth=genzauth).create_aimkill_account(
            principal.username, body.account_username, body.password, body.package
        )
    except PortalError as exc:
        raise http_error(exc, "create_aimkill_account") from exc

    return AimkillAccountCreatedResponse(
        message=f"Aimkill account {record.account_username} created",
        account=AimkillAccountResponse.from_record(record),
        password=body.password,
        credits_remaining=await _credits_of(db, principal.username),
    )


@router.get("/aimkill-accounts", response_model=list[AimkillAccountResponse])
async def list_aimkill_accounts(
    principal: Principal = Depends(require_user),
    db: AsyncSession = Depends(get_read_db),
) -> list[AimkillAccountResponse]:
    records = await ProvisioningService(db).list_aimkill_accounts(principal.username)
    return [AimkillAccountResponse.from_record(r) for r in records]


@router.delete("/aimkill-accounts/{account_username}", response_model=ActionResponse)
async def delete_aimkill_account(
    account_username: str,
    principal: Principal = Depends(require_user),
    db: AsyncSession = Depends(get_write_db),
    genzauth: GenzAuthClient = Depends(get_genzauth_client),
) -> ActionResponse:
    _require_delete(principal)
    try:
        await ProvisioningService(db, genzauth=genzauth).delete_aimkill_account(
            principal, account_username
        )
    except PortalError as exc:
        raise http_error(exc, "delete_aimkill_account") from exc
    return ActionResponse(message=f"Aimkill account {account_username} deleted")


# ============================================================================
# Invoices and history
# ============================================================================


@router.get("/invoices", response_model=list[InvoiceResponse])
async def list_invoices(
    principal: Principal = Depends(require_user),
    db: AsyncSession = Depends(get_read_db),
) -> list[InvoiceResponse]:
    records = await InvoiceService(db).list_for(_scope(principal))
    return [InvoiceResponse.from_record(r) for r in records]


@router.get("/activity", response_model=list[ActivityResponse])
async def recent_activity(
    principal: Principal = Depends(require_user),
    db: AsyncSession = Depends(get_read_db),
) -> list[ActivityResponse]:
    records = await ActivityService(db).recent_activity(_scope(principal))
    return [ActivityResponse.from_record(r) for r in records]


@router.get("/login-history", response_model=list[LoginHistoryResponse])
async def login_history(
    principal: Principal = Depends(require_user),
    db: AsyncSession = Depends(get_read_db),
) -> list[LoginHistoryResponse]:
    records = await ActivityService(db).recent_logins(_scope(principal))
    return [LoginHistoryResponse.from_record(r) for r in records]
