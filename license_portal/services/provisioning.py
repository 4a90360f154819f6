"""
Provisioning Service - Credit-gated creation of UIDs, license keys and Aimkill accounts.

Every create follows the same sequence:
1. Lock the account row (SELECT FOR UPDATE) and run the entitlement guard
2. Reject duplicates before any external call
3. Call the external service; failure leaves local state untouched
4. Persist the resource, debit credits or consume the guest pass, append the
   invoice, then commit everything in one transaction
5. If that commit fails, record a reconciliation row and raise

Deletes remove the local row even when the best-effort external delete fails.
"""

import re
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from license_portal.db.models import (
    AimkillAccount,
    AimkillKey,
    ReconciliationRecord,
    Uid,
    User,
)
from license_portal.exceptions import (
    AuthorizationError,
    ProvisioningNotConfiguredError,
    ReconciliationRequiredError,
    ResourceConflictError,
    ResourceNotFoundError,
    UpstreamError,
    ValidationFailedError,
    WriteVerificationError,
)
from license_portal.models.domain import (
    EntitlementRequest,
    ExternalOutcome,
    ExternalResult,
    GuardResult,
    InvoiceType,
    PackageSpec,
    Principal,
    ResourceKind,
)
from license_portal.observability.metrics import metrics
from license_portal.observability.tracing import trace_operation
from license_portal.services import entitlement
from license_portal.services.activity import ActivityService
from license_portal.services.catalog import AIMKILL_FAMILY, UID_FAMILY, CatalogService
from license_portal.services.genzauth import GenzAuthClient
from license_portal.services.guest_policy import GuestPolicyService
from license_portal.services.invoices import InvoiceService
from license_portal.services.uid_api import UidApiClient

logger = get_logger(__name__)

_UID_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")
AIMKILL_USERNAME_PREFIX = "DC"
MIN_ACCOUNT_PASSWORD_LENGTH = 6
MAX_KEYS_PER_REQUEST = 50


def raise_for_external(service: str, result: ExternalResult) -> None:
    """Map a non-successful external result to the matching exception."""
    if result.success:
        return
    if result.outcome == ExternalOutcome.NOT_CONFIGURED:
        raise ProvisioningNotConfiguredError(service)
    raise UpstreamError(service, result.error or "Unknown error")


async def record_reconciliation(
    session: AsyncSession,
    kind: ResourceKind,
    identifier: str,
    username: str,
    service: str,
    error: str,
) -> int | None:
    """Persist a needs-manual-reconciliation row in its own transaction."""
    record = ReconciliationRecord(
        resource_kind=kind.value,
        identifier=identifier,
        username=username,
        service=service,
        error=error[:2000],
    )
    try:
        session.add(record)
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.critical(
            "reconciliation_record_failed",
            resource_kind=kind.value,
            identifier=identifier,
            username=username,
            error=str(exc),
        )
        return None

    metrics.record_reconciliation(kind.value)
    logger.error(
        "external_resource_orphaned",
        resource_kind=kind.value,
        identifier=identifier,
        username=username,
        service=service,
        record_id=record.id,
    )
    return record.id


@asynccontextmanager
async def persist_or_reconcile(
    session: AsyncSession,
    kind: ResourceKind,
    identifier: str,
    username: str,
    service: str | None,
) -> AsyncIterator[None]:
    """
    Wrap the local writes that follow a successful external call.

    The block's writes are committed together on exit. Any database failure
    rolls them back and leaves a reconciliation row for the external resource.
    With `service=None` nothing exists upstream, so a failure is reported as
    a plain write failure without a reconciliation row.
    """
    try:
        yield
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        if service is None:
            logger.error(
                "local_write_failed", resource_kind=kind.value, identifier=identifier, error=str(exc)
            )
            raise WriteVerificationError(f"{kind.value} {identifier} could not be saved") from exc
        record_id = await record_reconciliation(
            session, kind, identifier, username, service, str(exc)
        )
        raise ReconciliationRequiredError(kind, identifier, record_id) from exc


@dataclass(frozen=True)
class KeyCreation:
    """Outcome of a multi-key request."""

    keys: tuple[AimkillKey, ...]
    failed: int
    credits_spent: int
    errors: tuple[str, ...]


class ProvisioningService:
    """Runs the provisioning workflow for end-user accounts."""

    def __init__(
        self,
        session: AsyncSession,
        uid_client: UidApiClient | None = None,
        genzauth: GenzAuthClient | None = None,
    ) -> None:
        self.session = session
        self.uid_client = uid_client
        self.genzauth = genzauth
        self.catalog = CatalogService(session)
        self.invoices = InvoiceService(session)
        self.activity = ActivityService(session)

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def create_uid(self, username: str, uid: str, package_key: str) -> Uid:
        """
        Register a UID for `username` on the chosen hour-based package.

        Raises:
            ValidationFailedError, EntitlementDeniedError, ResourceConflictError,
            UpstreamError, ProvisioningNotConfiguredError, ReconciliationRequiredError
        """
        uid = uid.strip()
        if not _UID_RE.match(uid):
            raise ValidationFailedError("UID must be 1-64 letters, digits, '-' or '_'")
        if self.uid_client is None:
            raise ProvisioningNotConfiguredError("uid_api")

        package = await self.catalog.find_package(UID_FAMILY, package_key)

        with trace_operation("create_uid", uid=uid, package=package.key):
            user = await self._lock_user(username)
            guard = await self._guard(user, EntitlementRequest(ResourceKind.UID, package))

            if await self._uid_exists(uid):
                raise ResourceConflictError("UID", uid)

            result = await self.uid_client.create_uid(uid, package.duration_hours)
            raise_for_external("uid_api", result)

            now = datetime.now(UTC)
            record = Uid(
                uid=uid,
                username=user.username,
                package_key=package.key,
                duration_hours=package.duration_hours,
                credits_spent=guard.cost,
                is_guest_pass=user.is_guest,
                expires_at=package.expires_at(now),
            )
            async with persist_or_reconcile(
                self.session, ResourceKind.UID, uid, user.username, "uid_api"
            ):
                self.session.add(record)
                await self._settle(user, guard, package, now)

                if not user.is_guest:
                    await self.invoices.record(
                        user.username,
                        InvoiceType.UID_CREATION,
                        guard.cost,
                        f"UID {uid} ({package.display})",
                    )
                await self.activity.log(
                    user.username,
                    "uid-create",
                    f"Guest used free pass: {uid}"
                    if user.is_guest
                    else f"Created UID {uid} with {package.display} package",
                )

        metrics.record_provisioned(ResourceKind.UID.value, guard.cost)
        logger.info(
            "uid_created",
            uid=uid,
            username=user.username,
            package=package.key,
            credits_spent=guard.cost,
            guest_pass=user.is_guest,
        )
        return record

    async def create_license_keys(
        self,
        username: str,
        package_key: str,
        quantity: int,
        allow_placeholder: bool = False,
    ) -> KeyCreation:
        """
        Create `quantity` Aimkill license keys.

        Credits are charged only for keys actually created. Placeholder keys
        are only produced when `allow_placeholder` is set and GenzAuth has no
        seller key.
        """
        if not 1 <= quantity <= MAX_KEYS_PER_REQUEST:
            raise ValidationFailedError(f"Quantity must be between 1 and {MAX_KEYS_PER_REQUEST}")
        if self.genzauth is None:
            raise ProvisioningNotConfiguredError("genzauth")

        package = await self.catalog.find_package(AIMKILL_FAMILY, package_key)
        days = int(package.duration_days)

        with trace_operation("create_license_keys", package=package.key, quantity=quantity):
            user = await self._lock_user(username)
            guard = await self._guard(
                user, EntitlementRequest(ResourceKind.LICENSE_KEY, package, quantity)
            )

            batch = await self.genzauth.create_licenses(days, quantity, allow_placeholder)
            if batch.created == 0:
                if not self.genzauth.is_configured:
                    raise ProvisioningNotConfiguredError("genzauth")
                raise UpstreamError("genzauth", batch.failures[0] if batch.failures else "No keys created")

            now = datetime.now(UTC)
            per_key = 0 if user.is_guest else package.credits
            keys = tuple(
                AimkillKey(
                    license_key=str(result.data),
                    username=user.username,
                    package_key=package.key,
                    duration_days=days,
                    credits_spent=per_key,
                    is_placeholder=result.is_placeholder,
                    expires_at=package.expires_at(now),
                )
                for result in batch.keys
            )
            spent = per_key * batch.created

            async with persist_or_reconcile(
                self.session,
                ResourceKind.LICENSE_KEY,
                ",".join(k.license_key for k in keys),
                user.username,
                "genzauth",
            ):
                self.session.add_all(keys)
                await self._settle(user, GuardResult.allow(spent), package, now)

                if not user.is_guest:
                    await self.invoices.record(
                        user.username,
                        InvoiceType.LICENSE_CREATION,
                        spent,
                        f"{batch.created} x Aimkill key ({package.display})",
                    )
                await self.activity.log(
                    user.username,
                    "key-create",
                    f"Created {batch.created} Aimkill key(s) ({package.display})",
                )

        metrics.record_provisioned(ResourceKind.LICENSE_KEY.value, spent, batch.created)
        logger.info(
            "license_keys_created",
            username=user.username,
            package=package.key,
            created=batch.created,
            failed=batch.failed,
            credits_spent=spent,
            placeholders=sum(1 for k in keys if k.is_placeholder),
        )
        return KeyCreation(
            keys=keys, failed=batch.failed, credits_spent=spent, errors=batch.failures
        )

    async def create_aimkill_account(
        self, username: str, account_username: str, password: str, package_key: str
    ) -> AimkillAccount:
        """Create a GenzAuth user account that logs into the Aimkill loader."""
        account_username = account_username.strip()
        validate_aimkill_credentials(account_username, password)
        if self.genzauth is None:
            raise ProvisioningNotConfiguredError("genzauth")

        package = await self.catalog.find_package(AIMKILL_FAMILY, package_key)
        days = int(package.duration_days)

        with trace_operation("create_aimkill_account", account=account_username):
            user = await self._lock_user(username)
            guard = await self._guard(
                user, EntitlementRequest(ResourceKind.AIMKILL_ACCOUNT, package)
            )

            if await self._aimkill_account_exists(account_username):
                raise ResourceConflictError("Aimkill account", account_username)

            result = await self.genzauth.create_user(account_username, password, days)
            raise_for_external("genzauth", result)

            now = datetime.now(UTC)
            record = AimkillAccount(
                account_username=account_username,
                username=user.username,
                package_key=package.key,
                duration_days=days,
                credits_spent=guard.cost,
                expires_at=package.expires_at(now),
            )
            async with persist_or_reconcile(
                self.session,
                ResourceKind.AIMKILL_ACCOUNT,
                account_username,
                user.username,
                "genzauth",
            ):
                self.session.add(record)
                await self._settle(user, guard, package, now)

                if not user.is_guest:
                    await self.invoices.record(
                        user.username,
                        InvoiceType.AIMKILL_ACCOUNT_CREATION,
                        guard.cost,
                        f"Aimkill account {account_username} ({package.display})",
                    )
                await self.activity.log(
                    user.username,
                    "aimkill-account-create",
                    f"Created Aimkill account {account_username} ({package.display})",
                )

        metrics.record_provisioned(ResourceKind.AIMKILL_ACCOUNT.value, guard.cost)
        logger.info(
            "aimkill_account_created",
            account=account_username,
            username=user.username,
            credits_spent=guard.cost,
        )
        return record

    # ------------------------------------------------------------------
    # Delete
    # ------------------------------------------------------------------

    async def delete_uid(self, principal: Principal, uid: str) -> None:
        record = await self._owned(Uid, Uid.uid, uid, principal, "UID")
        if self.uid_client is not None:
            result = await self.uid_client.delete_uid(uid)
            if not result.success:
                logger.warning("uid_external_delete_failed", uid=uid, error=result.error)
        await self.session.delete(record)
        await self.activity.log(principal.username, "uid-delete", f"Deleted UID {uid}")
        await self.session.commit()
        logger.info("uid_deleted", uid=uid, by=principal.username)

    async def delete_license_key(self, principal: Principal, license_key: str) -> None:
        record = await self._owned(
            AimkillKey, AimkillKey.license_key, license_key, principal, "License key"
        )
        if self.genzauth is not None and not record.is_placeholder:
            result = await self.genzauth.delete_license(license_key)
            if not result.success:
                logger.warning("license_external_delete_failed", error=result.error)
        await self.session.delete(record)
        await self.activity.log(principal.username, "key-delete", "Deleted Aimkill key")
        await self.session.commit()
        logger.info("license_key_deleted", by=principal.username)

    async def delete_aimkill_account(self, principal: Principal, account_username: str) -> None:
        record = await self._owned(
            AimkillAccount,
            AimkillAccount.account_username,
            account_username,
            principal,
            "Aimkill account",
        )
        if self.genzauth is not None:
            result = await self.genzauth.delete_user(account_username)
            if not result.success:
                logger.warning(
                    "aimkill_account_external_delete_failed",
                    account=account_username,
                    error=result.error,
                )
        await self.session.delete(record)
        await self.activity.log(
            principal.username, "aimkill-account-delete", f"Deleted Aimkill account {account_username}"
        )
        await self.session.commit()
        logger.info("aimkill_account_deleted", account=account_username, by=principal.username)

    async def delete_all_license_keys(self, username: str | None = None) -> int:
        """Admin mass delete. Remote deletes are best effort."""
        stmt = select(AimkillKey)
        if username is not None:
            stmt = stmt.where(AimkillKey.username == username)
        keys = list((await self.session.execute(stmt)).scalars().all())

        if self.genzauth is not None:
            for key in keys:
                if key.is_placeholder:
                    continue
                result = await self.genzauth.delete_license(key.license_key)
                if not result.success:
                    logger.warning("license_external_delete_failed", error=result.error)

        await self.session.execute(
            delete(AimkillKey).where(AimkillKey.id.in_([k.id for k in keys]))
        )
        await self.session.commit()
        logger.info("license_keys_mass_deleted", count=len(keys), username=username)
        return len(keys)

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    async def list_uids(self, username: str | None) -> list[Uid]:
        stmt = select(Uid).order_by(Uid.created_at.desc())
        if username is not None:
            stmt = stmt.where(Uid.username == username)
        return list((await self.session.execute(stmt)).scalars().all())

    async def list_license_keys(self, username: str | None) -> list[AimkillKey]:
        stmt = select(AimkillKey).order_by(AimkillKey.created_at.desc())
        if username is not None:
            stmt = stmt.where(AimkillKey.username == username)
        return list((await self.session.execute(stmt)).scalars().all())

    async def list_aimkill_accounts(self, username: str | None) -> list[AimkillAccount]:
        stmt = select(AimkillAccount).order_by(AimkillAccount.created_at.desc())
        if username is not None:
            stmt = stmt.where(AimkillAccount.username == username)
        return list((await self.session.execute(stmt)).scalars().all())

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _lock_user(self, username: str) -> User:
        stmt = select(User).where(User.username == username).with_for_update()
        user = (await self.session.execute(stmt)).scalar_one_or_none()
        if user is None:
            raise ResourceNotFoundError("User", username)
        return user

    async def _guard(self, user: User, request: EntitlementRequest) -> GuardResult:
        policy = await GuestPolicyService(self.session).snapshot()
        result = entitlement.evaluate(user.snapshot(), request, policy)
        metrics.record_entitlement(
            request.kind.value,
            result.allowed,
            result.denial_reason.value if result.denial_reason else None,
        )
        if not result.allowed:
            logger.info(
                "entitlement_denied",
                username=user.username,
                kind=request.kind.value,
                reason=result.denial_reason.value if result.denial_reason else None,
            )
        entitlement.ensure_allowed(result, available_credits=user.credits)
        return result

    async def _settle(
        self, user: User, guard: GuardResult, package: PackageSpec, now: datetime
    ) -> None:
        """Debit credits or consume the guest pass, then verify the balance invariant."""
        if user.is_guest:
            user.guest_pass_used = True
            user.guest_pass_type = package.key
            user.guest_pass_expires_at = package.expires_at(now)
        else:
            credits_after = user.credits - guard.cost
            if credits_after < 0:
                raise WriteVerificationError(
                    f"Debit would leave {user.username} with {credits_after} credits"
                )
            user.credits = credits_after
        await self.session.flush()

    async def _uid_exists(self, uid: str) -> bool:
        result = await self.session.execute(select(Uid.id).where(Uid.uid == uid))
        return result.first() is not None

    async def _aimkill_account_exists(self, account_username: str) -> bool:
        result = await self.session.execute(
            select(AimkillAccount.id).where(AimkillAccount.account_username == account_username)
        )
        return result.first() is not None

    async def _owned(
        self, model: type[Any], column: Any, value: str, principal: Principal, label: str
    ) -> Any:
        record = (await self.session.execute(select(model).where(column == value))).scalar_one_or_none()
        if record is None:
            raise ResourceNotFoundError(label, value)
        if not principal.is_admin and record.username != principal.owner_tag:
            raise AuthorizationError(f"{label} belongs to another account")
        return record


def validate_aimkill_credentials(account_username: str, password: str) -> None:
    if not account_username.startswith(AIMKILL_USERNAME_PREFIX):
        raise ValidationFailedError(
            f'Username must start with "{AIMKILL_USERNAME_PREFIX}" (e.g. DCplayer1)'
        )
    if len(password) < MIN_ACCOUNT_PASSWORD_LENGTH:
        raise ValidationFailedError(
            f"Password must be at least {MIN_ACCOUNT_PASSWORD_LENGTH} characters"
        )
