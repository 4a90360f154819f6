"""
Admin API routes for managing the portal.

Every route requires a staff role or the main admin account. Upstream
credential routes are restricted to the main admin.
"""

from typing import Literal

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from license_portal.api.dependencies import (
    get_genzauth_client,
    get_uid_client,
    http_error,
    require_admin,
    require_bootstrap_admin,
)
from license_portal.db.session import get_read_db, get_write_db
from license_portal.exceptions import PortalError
from license_portal.models.api import (
    AccountResponse,
    AccountTypeRequest,
    ActionResponse,
    AdminCreateClientRequest,
    AdminUpdateClientRequest,
    AimkillAccountResponse,
    ApiConfigRequest,
    ApiConfigResponse,
    ClientResponse,
    CountResponse,
    CreateAccountRequest,
    CreateProductRequest,
    CreateResellerRequest,
    GenzAuthConfigRequest,
    GiveCreditsRequest,
    GuestDeletionResponse,
    GuestPassRequest,
    GuestPolicyRequest,
    GuestPolicyResponse,
    LicenseKeyResponse,
    PackageResponse,
    PackagesUpdateRequest,
    PauseRequest,
    ProductRequest,
    ProductResponse,
    ReconciliationResponse,
    ResellerCreatedResponse,
    ResellerResponse,
    StatsResponse,
    UidResponse,
    UpdateResellerRequest,
    UpgradeGuestRequest,
    VerificationRequest,
)
from license_portal.models.domain import Principal, Role
from license_portal.services.accounts import AccountAdminService
from license_portal.services.catalog import CatalogService
from license_portal.services.clients import ClientService
from license_portal.services.credentials import ApiConfigService, EffectiveApiConfig
from license_portal.services.genzauth import GenzAuthClient, mask_key
from license_portal.services.guest_policy import GuestPolicyService
from license_portal.services.provisioning import ProvisioningService
from license_portal.services.resellers import ResellerService
from license_portal.services.uid_api import UidApiClient

logger = get_logger(__name__)
router = APIRouter(prefix="/api/admin", tags=["admin"])

PackageFamily = Literal["uid", "aimkill"]


# ============================================================================
# Accounts
# ============================================================================


@router.get("/users", response_model=list[AccountResponse])
async def list_users(
    admin: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_read_db),
) -> list[AccountResponse]:
    """Owners and limited admins only see user and guest accounts."""
    users = await AccountAdminService(db).list_users(admin)
    return [AccountResponse.from_user(u) for u in users]


@router.get("/stats", response_model=StatsResponse)
async def stats(
    admin: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_read_db),
) -> StatsResponse:
    result = await AccountAdminService(db).stats()
    return StatsResponse(
        total_users=result.total_users,
        total_guests=result.total_guests,
        total_uids=result.total_uids,
        active_uids=result.active_uids,
        total_license_keys=result.total_license_keys,
        total_aimkill_accounts=result.total_aimkill_accounts,
        credits_in_circulation=result.credits_in_circulation,
        unresolved_reconciliations=result.unresolved_reconciliations,
    )


@router.post("/users", response_model=AccountResponse, status_code=status.HTTP_201_CREATED)
async def create_account(
    body: CreateAccountRequest,
    admin: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_write_db),
) -> AccountResponse:
    """Creating staff accounts is reserved to the main admin."""
    try:
        user = await AccountAdminService(db).create_account(
            admin,
            username=body.username,
            password=body.password,
            role=body.resolved_role(),
            account_type=body.account_type,
            credits=body.credits,
            email=body.email,
        )
    except PortalError as exc:
        raise http_error(exc, "create_account") from exc
    return AccountResponse.from_user(user)


@router.post("/owners", response_model=AccountResponse, status_code=status.HTTP_201_CREATED)
async def create_owner(
    body: CreateAccountRequest,
    admin: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_write_db),
) -> AccountResponse:
    try:
        user = await AccountAdminService(db).create_account(
            admin,
            username=body.username,
            password=body.password,
            role=Role.OWNER,
            account_type=body.account_type,
            credits=body.credits,
            email=body.email,
        )
    except PortalError as exc:
        raise http_error(exc, "create_owner") from exc
    return AccountResponse.from_user(user)


@router.post("/credits", response_model=AccountResponse)
async def give_credits(
    body: GiveCreditsRequest,
    admin: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_write_db),
) -> AccountResponse:
    try:
        user = await AccountAdminService(db).give_credits(admin, body.username, body.amount)
    except PortalError as exc:
        raise http_error(exc, "give_credits") from exc
    return AccountResponse.from_user(user)


@router.post("/users/{username}/pause", response_model=AccountResponse)
async def set_paused(
    username: str,
    body: PauseRequest,
    admin: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_write_db),
) -> AccountResponse:
    try:
        user = await AccountAdminService(db).set_paused(admin, username, body.paused)
    except PortalError as exc:
        raise http_error(exc, "set_paused") from exc
    return AccountResponse.from_user(user)


@router.post("/users/{username}/reset-device", response_model=AccountResponse)
async def reset_device_lock(
    username: str,
    admin: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_write_db),
) -> AccountResponse:
    try:
        user = await AccountAdminService(db).reset_device_lock(admin, username)
    except PortalError as exc:
        raise http_error(exc, "reset_device_lock") from exc
    return AccountResponse.from_user(user)


@router.post("/users/{username}/account-type", response_model=AccountResponse)
async def update_account_type(
    username: str,
    body: AccountTypeRequest,
    admin: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_write_db),
) -> AccountResponse:
    try:
        user = await AccountAdminService(db).update_account_type(admin, username, body.account_type)
    except PortalError as exc:
        raise http_error(exc, "update_account_type") from exc
    return AccountResponse.from_user(user)


@router.post("/users/{username}/upgrade", response_model=AccountResponse)
async def upgrade_guest(
    username: str,
    body: UpgradeGuestRequest,
    admin: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_write_db),
) -> AccountResponse:
    try:
        user = await AccountAdminService(db).upgrade_guest(admin, username, body.credits)
    except PortalError as exc:
        raise http_error(exc, "upgrade_guest") from exc
    return AccountResponse.from_user(user)


@router.delete("/users/{username}", response_model=ActionResponse)
async def delete_user(
    username: str,
    admin: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_write_db),
) -> ActionResponse:
    try:
        await AccountAdminService(db).delete_user(admin, username)
    except PortalError as exc:
        raise http_error(exc, "delete_user") from exc
    return ActionResponse(message=f"User {username} deleted")


# ============================================================================
# Guests
# ============================================================================


@router.get("/guests", response_model=list[AccountResponse])
async def list_guests(
    admin: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_read_db),
) -> list[AccountResponse]:
    return [AccountResponse.from_user(u) for u in await AccountAdminService(db).list_guests()]


@router.delete("/guests/{username}", response_model=GuestDeletionResponse)
async def delete_guest(
    username: str,
    admin: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_write_db),
    uid_client: UidApiClient = Depends(get_uid_client),
) -> GuestDeletionResponse:
    try:
        result = await AccountAdminService(db).delete_guest(admin, username, uid_client)
    except PortalError as exc:
        raise http_error(exc, "delete_guest") from exc
    return GuestDeletionResponse(
        message=f"Guest {username} deleted",
        uids_removed=result.uids_removed,
        remote_failures=result.remote_failures,
    )


@router.delete("/guests", response_model=GuestDeletionResponse)
async def delete_all_guests(
    admin: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_write_db),
    uid_client: UidApiClient = Depends(get_uid_client),
) -> GuestDeletionResponse:
    try:
        results = await AccountAdminService(db).delete_all_guests(admin, uid_client)
    except PortalError as exc:
        raise http_error(exc, "delete_all_guests") from exc
    return GuestDeletionResponse(
        message=f"Deleted {len(results)} guest account(s)",
        uids_removed=sum(r.uids_removed for r in results),
        remote_failures=sum(r.remote_failures for r in results),
    )


@router.post("/verify/discord", response_model=CountResponse)
async def verify_discord(
    body: VerificationRequest,
    admin: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_write_db),
) -> CountResponse:
    """Omit `username` to apply to every account."""
    try:
        count = await AccountAdminService(db).set_discord_verified(
            admin, body.username, body.verified
        )
    except PortalError as exc:
        raise http_error(exc, "verify_discord") from exc
    state = "verified" if body.verified else "unverified"
    return CountResponse(message=f"Discord {state} for {count} account(s)", count=count)


@router.post("/verify/social", response_model=CountResponse)
async def verify_social(
    body: VerificationRequest,
    admin: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_write_db),
) -> CountResponse:
    try:
        count = await AccountAdminService(db).set_social_verified(
            admin, body.username, body.verified
        )
    except PortalError as exc:
        raise http_error(exc, "verify_social") from exc
    state = "verified" if body.verified else "unverified"
    return CountResponse(message=f"Social {state} for {count} account(s)", count=count)


@router.get("/guest-passes", response_model=list[AccountResponse])
async def list_guest_passes(
    admin: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_read_db),
) -> list[AccountResponse]:
    return [
        AccountResponse.from_user(u) for u in await AccountAdminService(db).list_guest_passes()
    ]


@router.post("/guest-passes/restore", response_model=CountResponse)
async def restore_guest_pass(
    body: GuestPassRequest,
    admin: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_write_db),
) -> CountResponse:
    try:
        count = await AccountAdminService(db).restore_guest_pass(admin, body.username)
    except PortalError as exc:
        raise http_error(exc, "restore_guest_pass") from exc
    return CountResponse(message=f"Restored {count} guest pass(es)", count=count)


@router.post("/guest-passes/disable", response_model=CountResponse)
async def disable_guest_pass(
    body: GuestPassRequest,
    admin: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_write_db),
) -> CountResponse:
    try:
        count = await AccountAdminService(db).disable_guest_pass(admin, body.username)
    except PortalError as exc:
        raise http_error(exc, "disable_guest_pass") from exc
    return CountResponse(message=f"Disabled {count} guest pass(es)", count=count)


@router.post("/guest-passes/reset-all", response_model=CountResponse)
async def reset_all_guest_passes(
    admin: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_write_db),
) -> CountResponse:
    count = await AccountAdminService(db).reset_all_guest_passes(admin)
    return CountResponse(message=f"Reset {count} guest account(s)", count=count)


@router.get("/guest-policy", response_model=GuestPolicyResponse)
async def get_guest_policy(
    admin: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_write_db),
) -> GuestPolicyResponse:
    return GuestPolicyResponse.from_policy(await GuestPolicyService(db).get())


@router.put("/guest-policy", response_model=GuestPolicyResponse)
async def update_guest_policy(
    body: GuestPolicyRequest,
    admin: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_write_db),
) -> GuestPolicyResponse:
    """YouTube watch links in `video_url` are stored as embed URLs."""
    try:
        policy = await GuestPolicyService(db).update(
            admin.username, **body.model_dump(exclude_none=True)
        )
    except PortalError as exc:
        raise http_error(exc, "update_guest_policy") from exc
    return GuestPolicyResponse.from_policy(policy)


# ============================================================================
# Provisioned resources
# ============================================================================


@router.get("/uids", response_model=list[UidResponse])
async def list_all_uids(
    admin: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_read_db),
) -> list[UidResponse]:
    return [UidResponse.from_record(r) for r in await ProvisioningService(db).list_uids(None)]


@router.get("/keys", response_model=list[LicenseKeyResponse])
async def list_all_keys(
    admin: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_read_db),
) -> list[LicenseKeyResponse]:
    records = await ProvisioningService(db).list_license_keys(None)
    return [LicenseKeyResponse.from_record(r) for r in records]


@router.delete("/keys/{license_key}", response_model=ActionResponse)
async def delete_key(
    license_key: str,
    admin: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_write_db),
    genzauth: GenzAuthClient = Depends(get_genzauth_client),
) -> ActionResponse:
    try:
        await ProvisioningService(db, genzauth=genzauth).delete_license_key(admin, license_key)
    except PortalError as exc:
        raise http_error(exc, "admin_delete_key") from exc
    return ActionResponse(message="Key deleted")


@router.delete("/keys", response_model=CountResponse)
async def delete_all_keys(
    username: str | None = Query(None, description="Only delete this account's keys"),
    admin: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_write_db),
    genzauth: GenzAuthClient = Depends(get_genzauth_client),
) -> CountResponse:
    count = await ProvisioningService(db, genzauth=genzauth).delete_all_license_keys(username)
    logger.info("admin_mass_key_delete", by=admin.username, username=username, count=count)
    return CountResponse(message=f"Deleted {count} key(s)", count=count)


@router.get("/aimkill-accounts", response_model=list[AimkillAccountResponse])
async def list_all_aimkill_accounts(
    admin: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_read_db),
) -> list[AimkillAccountResponse]:
    records = await ProvisioningService(db).list_aimkill_accounts(None)
    return [AimkillAccountResponse.from_record(r) for r in records]


# ============================================================================
# Packages and products
# ============================================================================


@router.get("/packages/{family}", response_model=list[PackageResponse])
async def get_packages(
    family: PackageFamily,
    admin: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_read_db),
) -> list[PackageResponse]:
    return [PackageResponse.from_spec(p) for p in await CatalogService(db).get_packages(family)]


@router.put("/packages/{family}", response_model=list[PackageResponse])
async def update_packages(
    family: PackageFamily,
    body: PackagesUpdateRequest,
    admin: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_write_db),
) -> list[PackageResponse]:
    try:
        specs = await CatalogService(db).update_packages(
            family, [p.model_dump(exclude_none=True) for p in body.packages], admin.username
        )
    except PortalError as exc:
        raise http_error(exc, "update_packages") from exc
    return [PackageResponse.from_spec(p) for p in specs]


@router.get("/products", response_model=list[ProductResponse])
async def list_products(
    admin: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_read_db),
) -> list[ProductResponse]:
    return [ProductResponse.from_product(p) for p in await CatalogService(db).list_products()]


@router.post("/products", response_model=ProductResponse, status_code=status.HTTP_201_CREATED)
async def create_product(
    body: CreateProductRequest,
    admin: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_write_db),
) -> ProductResponse:
    fields = body.model_dump(exclude_none=True, exclude={"key", "name"})
    try:
        product = await CatalogService(db).create_product(body.key, body.name, **fields)
    except PortalError as exc:
        raise http_error(exc, "create_product") from exc
    return ProductResponse.from_product(product)


@router.put("/products/{key}", response_model=ProductResponse)
async def update_product(
    key: str,
    body: ProductRequest,
    admin: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_write_db),
) -> ProductResponse:
    try:
        product = await CatalogService(db).update_product(key, **body.model_dump(exclude_none=True))
    except PortalError as exc:
        raise http_error(exc, "update_product") from exc
    return ProductResponse.from_product(product)


@router.delete("/products/{key}", response_model=ActionResponse)
async def delete_product(
    key: str,
    admin: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_write_db),
) -> ActionResponse:
    try:
        await CatalogService(db).delete_product(key)
    except PortalError as exc:
        raise http_error(exc, "delete_product") from exc
    return ActionResponse(message=f"Product {key} deleted")


# ============================================================================
# Upstream configuration (main admin only)
# ============================================================================


def _config_response(effective: EffectiveApiConfig) -> ApiConfigResponse:
    return ApiConfigResponse(
        base_url=effective.base_url,
        api_key_masked=mask_key(effective.api_key),
        seller_key_masked=mask_key(effective.seller_key),
        uid_api_configured=effective.uid_api_configured,
        genzauth_configured=effective.genzauth_configured,
    )


@router.get("/api-config", response_model=ApiConfigResponse)
async def get_api_config(
    admin: Principal = Depends(require_bootstrap_admin),
    db: AsyncSession = Depends(get_read_db),
) -> ApiConfigResponse:
    return _config_response(await ApiConfigService(db).get_effective())


@router.put("/api-config", response_model=ApiConfigResponse)
async def update_api_config(
    body: ApiConfigRequest,
    admin: Principal = Depends(require_bootstrap_admin),
    db: AsyncSession = Depends(get_write_db),
) -> ApiConfigResponse:
    effective = await ApiConfigService(db).update(
        admin.username, base_url=body.base_url, api_key=body.api_key
    )
    return _config_response(effective)


@router.put("/genzauth-config", response_model=ApiConfigResponse)
async def update_genzauth_config(
    body: GenzAuthConfigRequest,
    admin: Principal = Depends(require_bootstrap_admin),
    db: AsyncSession = Depends(get_write_db),
) -> ApiConfigResponse:
    effective = await ApiConfigService(db).update(admin.username, seller_key=body.seller_key)
    return _config_response(effective)


# ============================================================================
# Resellers
# ============================================================================


@router.get("/resellers", response_model=list[ResellerResponse])
async def list_resellers(
    admin: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_read_db),
) -> list[ResellerResponse]:
    resellers = await ResellerService(db).list_resellers()
    return [ResellerResponse.from_reseller(r) for r in resellers]


@router.post(
    "/resellers", response_model=ResellerCreatedResponse, status_code=status.HTTP_201_CREATED
)
async def create_reseller(
    body: CreateResellerRequest,
    admin: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_write_db),
) -> ResellerCreatedResponse:
    try:
        result = await ResellerService(db).create_reseller(
            admin,
            username=body.username,
            password=body.password,
            auto_password=body.auto_password,
            email=body.email,
            credits=body.credits,
            seller_key=body.seller_key,
            assigned_products=body.assigned_products,
        )
    except PortalError as exc:
        raise http_error(exc, "create_reseller") from exc
    return ResellerCreatedResponse(
        message=f"Reseller {result.reseller.username} created",
        reseller=ResellerResponse.from_reseller(result.reseller),
        password=result.password,
        auto_generated=result.auto_generated,
    )


@router.put("/resellers/{username}", response_model=ResellerResponse)
async def update_reseller(
    username: str,
    body: UpdateResellerRequest,
    admin: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_write_db),
) -> ResellerResponse:
    try:
        reseller = await ResellerService(db).update_reseller(
            admin,
            username,
            credits=body.credits,
            seller_key=body.seller_key,
            assigned_products=body.assigned_products,
            is_active=body.is_active,
            email=body.email,
            password=body.password,
        )
    except PortalError as exc:
        raise http_error(exc, "update_reseller") from exc
    return ResellerResponse.from_reseller(reseller)


@router.delete("/resellers/{username}", response_model=ActionResponse)
async def delete_reseller(
    username: str,
    admin: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_write_db),
) -> ActionResponse:
    try:
        await ResellerService(db).delete_reseller(admin, username)
    except PortalError as exc:
        raise http_error(exc, "delete_reseller") from exc
    return ActionResponse(message=f"Reseller {username} deleted")


# ============================================================================
# Clients
# ============================================================================


@router.get("/clients", response_model=list[ClientResponse])
async def list_clients(
    admin: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_read_db),
) -> list[ClientResponse]:
    return [ClientResponse.from_client(c) for c in await ClientService(db).list_clients()]


@router.post("/clients", response_model=ClientResponse, status_code=status.HTTP_201_CREATED)
async def create_client(
    body: AdminCreateClientRequest,
    admin: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_write_db),
) -> ClientResponse:
    try:
        client = await ClientService(db).create_client(
            admin,
            username=body.username,
            password=body.password,
            product_key=body.product,
            assigned_username=body.assigned_username,
            assigned_uid=body.assigned_uid,
            notes=body.notes,
            custom_download_link=body.custom_download_link,
            expires_at=body.expires_at,
        )
    except PortalError as exc:
        raise http_error(exc, "admin_create_client") from exc
    return ClientResponse.from_client(client)


@router.put("/clients/{client_id}", response_model=ClientResponse)
async def update_client(
    client_id: int,
    body: AdminUpdateClientRequest,
    admin: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_write_db),
) -> ClientResponse:
    fields = body.model_dump(exclude_unset=True, exclude={"password"})
    try:
        client = await ClientService(db).update_client(
            admin, client_id, password=body.password, **fields
        )
    except PortalError as exc:
        raise http_error(exc, "admin_update_client") from exc
    return ClientResponse.from_client(client)


@router.delete("/clients/{client_id}", response_model=ActionResponse)
async def delete_client(
    client_id: int,
    admin: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_write_db),
) -> ActionResponse:
    try:
        await ClientService(db).delete_client(admin, client_id)
    except PortalError as exc:
        raise http_error(exc, "admin_delete_client") from exc
    return ActionResponse(message="Client deleted")


# ============================================================================
# Reconciliation
# ============================================================================


@router.get("/reconciliation", response_model=list[ReconciliationResponse])
async def list_reconciliations(
    include_resolved: bool = Query(False),
    admin: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_read_db),
) -> list[ReconciliationResponse]:
    records = await AccountAdminService(db).list_reconciliations(include_resolved)
    return [ReconciliationResponse.from_record(r) for r in records]


@router.post("/reconciliation/{record_id}/resolve", response_model=ReconciliationResponse)
async def resolve_reconciliation(
    record_id: int,
    admin: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_write_db),
) -> ReconciliationResponse:
    try:
        record = await AccountAdminService(db).resolve_reconciliation(admin, record_id)
    except PortalError as exc:
        raise http_error(exc, "resolve_reconciliation") from exc
    return ReconciliationResponse.from_record(record)
