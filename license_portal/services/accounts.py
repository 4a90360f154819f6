"""
Account Administration Service - Staff operations on end-user accounts.

Tier changes go through `Role`; the bootstrap account can never be paused,
deleted or demoted.
"""

from dataclasses import dataclass
from datetime import UTC, datetime

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from license_portal.config import settings
from license_portal.db.models import (
    Activity,
    AimkillAccount,
    AimkillKey,
    Invoice,
    LoginHistory,
    ReconciliationRecord,
    Uid,
    User,
)
from license_portal.exceptions import (
    AuthorizationError,
    ResourceConflictError,
    ResourceNotFoundError,
    ValidationFailedError,
)
from license_portal.models.domain import AccountType, InvoiceType, Principal, Role
from license_portal.services.activity import ActivityService
from license_portal.services.auth import hash_password, normalize_username, validate_new_password
from license_portal.services.invoices import InvoiceService
from license_portal.services.uid_api import UidApiClient

logger = get_logger(__name__)


@dataclass(frozen=True)
class PortalStats:
    total_users: int
    total_guests: int
    total_uids: int
    active_uids: int
    total_license_keys: int
    total_aimkill_accounts: int
    credits_in_circulation: int
    unresolved_reconciliations: int


@dataclass(frozen=True)
class GuestDeletion:
    deleted: bool
    uids_removed: int
    remote_failures: int


def initial_credits(role: Role, account_type: AccountType) -> int:
    """Starting balance for an account created by staff."""
    if role == Role.OWNER:
        return settings.owner_initial_credits
    if role == Role.SUPER_ADMIN:
        return settings.bootstrap_admin_credits
    if account_type == AccountType.AIMKILL:
        return settings.aimkill_account_credits
    return settings.register_credits


class AccountAdminService:
    """User management behind the admin surface."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session
        self.activity = ActivityService(session)
        self.invoices = InvoiceService(session)

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    async def get_user(self, username: str) -> User:
        result = await self.session.execute(select(User).where(User.username == username))
        user = result.scalar_one_or_none()
        if user is None:
            raise ResourceNotFoundError("User", username)
        return user

    async def list_users(self, viewer: Principal) -> list[User]:
        """Owners and limited admins see plain accounts only; super-admins see everyone."""
        stmt = select(User).order_by(User.created_at.desc())
        if not viewer.can_manage_admins:
            stmt = stmt.where(User.role.in_([Role.USER.value, Role.GUEST.value]))
        return list((await self.session.execute(stmt)).scalars().all())

    async def list_guests(self) -> list[User]:
        stmt = select(User).where(User.role == Role.GUEST.value).order_by(User.created_at.desc())
        return list((await self.session.execute(stmt)).scalars().all())

    async def stats(self) -> PortalStats:
        now = datetime.now(UTC)

        async def count(stmt) -> int:
            return int((await self.session.execute(stmt)).scalar_one() or 0)

        return PortalStats(
            total_users=await count(select(func.count(User.id))),
            total_guests=await count(
                select(func.count(User.id)).where(User.role == Role.GUEST.value)
            ),
            total_uids=await count(select(func.count(Uid.id))),
            active_uids=await count(select(func.count(Uid.id)).where(Uid.expires_at > now)),
            total_license_keys=await count(select(func.count(AimkillKey.id))),
            total_aimkill_accounts=await count(select(func.count(AimkillAccount.id))),
            credits_in_circulation=await count(select(func.coalesce(func.sum(User.credits), 0))),
            unresolved_reconciliations=await count(
                select(func.count(ReconciliationRecord.id)).where(
                    ReconciliationRecord.resolved.is_(False)
                )
            ),
        )

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def create_account(
        self,
        actor: Principal,
        username: str,
        password: str,
        role: Role = Role.USER,
        account_type: AccountType = AccountType.UID_MANAGER,
        credits: int | None = None,
        email: str | None = None,
    ) -> User:
        """
        Create an account on behalf of staff.

        Only the bootstrap account may create super-admins and owners.
        """
        if role in (Role.SUPER_ADMIN, Role.OWNER, Role.LIMITED_ADMIN) and not actor.is_bootstrap:
            raise AuthorizationError("Only the main admin can create admin or owner accounts")
        username = normalize_username(username)
        validate_new_password(password)
        if credits is not None and credits < 0:
            raise ValidationFailedError("Credits cannot be negative")

        user = User(
            username=username,
            password_hash=hash_password(password),
            email=email,
            role=role.value,
            account_type=account_type.value,
            credits=initial_credits(role, account_type) if credits is None else credits,
            created_by=actor.username,
        )
        self.session.add(user)
        try:
            await self.session.flush()
        except IntegrityError as exc:
            await self.session.rollback()
            raise ResourceConflictError("User", username) from exc

        await self.activity.log(
            actor.username, "account-create", f"Created {role.value} account {username}"
        )
        await self.session.commit()
        logger.info(
            "account_created",
            username=username,
            role=role.value,
            account_type=account_type.value,
            credits=user.credits,
            created_by=actor.username,
        )
        return user

    # ------------------------------------------------------------------
    # Credits and state
    # ------------------------------------------------------------------

    async def give_credits(self, actor: Principal, username: str, amount: int) -> User:
        """Grant credits and record a paid purchase invoice in the same transaction."""
        if amount <= 0:
            raise ValidationFailedError("Amount must be a positive number of credits")
        user = await self._lock(username)
        user.credits += amount
        await self.invoices.record(
            user.username,
            InvoiceType.CREDIT_PURCHASE,
            amount,
            f"{amount} credits added by {actor.username}",
            payment_method="admin",
        )
        await self.activity.log(user.username, "credits-added", f"Received {amount} credits")
        await self.session.commit()
        logger.info("credits_given", username=user.username, amount=amount, by=actor.username)
        return user

    async def set_paused(self, actor: Principal, username: str, paused: bool) -> User:
        user = await self._get_mutable(actor, username)
        user.is_paused = paused
        await self.activity.log(
            actor.username,
            "account-pause" if paused else "account-resume",
            f"{'Paused' if paused else 'Resumed'} {user.username}",
        )
        await self.session.commit()
        logger.info("account_pause_changed", username=user.username, paused=paused)
        return user

    async def reset_device_lock(self, actor: Principal, username: str) -> User:
        user = await self.get_user(username)
        user.device_fingerprint = None
        user.is_locked = False
        user.lock_reason = None
        await self.activity.log(actor.username, "device-reset", f"Reset device lock for {username}")
        await self.session.commit()
        logger.info("device_lock_reset", username=username, by=actor.username)
        return user

    async def update_account_type(
        self, actor: Principal, username: str, account_type: AccountType
    ) -> User:
        user = await self.get_user(username)
        user.account_type = account_type.value
        await self.session.commit()
        logger.info(
            "account_type_updated", username=username, account_type=account_type.value,
            by=actor.username,
        )
        return user

    async def upgrade_guest(self, actor: Principal, username: str, credits: int = 0) -> User:
        user = await self.get_user(username)
        if not user.is_guest:
            raise ValidationFailedError(f"{username} is not a guest account")
        user.role = Role.USER.value
        user.credits += max(credits, 0)
        await self.activity.log(actor.username, "guest-upgrade", f"Upgraded guest {username}")
        await self.session.commit()
        logger.info("guest_upgraded", username=username, credits=credits, by=actor.username)
        return user

    # ------------------------------------------------------------------
    # Delete
    # ------------------------------------------------------------------

    async def delete_user(self, actor: Principal, username: str) -> None:
        """Remove an account and everything it owns locally."""
        user = await self._get_mutable(actor, username)
        await self._cascade(user.username)
        await self.session.delete(user)
        await self.session.commit()
        logger.info("account_deleted", username=username, by=actor.username)

    async def delete_guest(
        self, actor: Principal, username: str, uid_client: UidApiClient | None
    ) -> GuestDeletion:
        """Delete a guest and its UIDs; remote UID deletes are best effort."""
        user = await self._get_mutable(actor, username)
        if not user.is_guest:
            raise ValidationFailedError(f"{username} is not a guest account")

        uids = list(
            (await self.session.execute(select(Uid.uid).where(Uid.username == username)))
            .scalars()
            .all()
        )
        failures = 0
        if uid_client is not None:
            for uid in uids:
                result = await uid_client.delete_uid(uid)
                if not result.success:
                    failures += 1
                    logger.warning("guest_uid_remote_delete_failed", uid=uid, error=result.error)

        await self._cascade(username)
        await self.session.delete(user)
        await self.session.commit()
        logger.info(
            "guest_deleted", username=username, uids=len(uids), remote_failures=failures,
            by=actor.username,
        )
        return GuestDeletion(deleted=True, uids_removed=len(uids), remote_failures=failures)

    async def delete_all_guests(
        self, actor: Principal, uid_client: UidApiClient | None
    ) -> list[GuestDeletion]:
        results = []
        for guest in await self.list_guests():
            results.append(await self.delete_guest(actor, guest.username, uid_client))
        return results

    # ------------------------------------------------------------------
    # Verification and guest pass
    # ------------------------------------------------------------------

    async def set_discord_verified(
        self, actor: Principal, username: str | None, verified: bool
    ) -> int:
        """Set one account's Discord flag, or every account's when `username` is None."""
        return await self._bulk_flag(
            actor, username, "discord-verify", discord_verified=verified
        )

    async def set_social_verified(
        self, actor: Principal, username: str | None, verified: bool
    ) -> int:
        return await self._bulk_flag(
            actor,
            username,
            "social-verify",
            youtube_subscribed=verified,
            instagram_followed=verified,
        )

    async def restore_guest_pass(self, actor: Principal, username: str | None) -> int:
        """Give the free pass back so the guest can use it again."""
        return await self._bulk_flag(
            actor,
            username,
            "guest-pass-restore",
            guests_only=True,
            guest_pass_used=False,
            guest_pass_type=None,
            guest_pass_expires_at=None,
        )

    async def disable_guest_pass(self, actor: Principal, username: str | None) -> int:
        """Mark the free pass consumed without creating anything."""
        return await self._bulk_flag(
            actor, username, "guest-pass-disable", guests_only=True, guest_pass_used=True
        )

    async def reset_all_guest_passes(self, actor: Principal) -> int:
        """Restore every pass and clear verification so guests start over."""
        return await self._bulk_flag(
            actor,
            None,
            "guest-pass-reset",
            guests_only=True,
            guest_pass_used=False,
            guest_pass_type=None,
            guest_pass_expires_at=None,
            discord_verified=False,
            youtube_subscribed=False,
            instagram_followed=False,
        )

    async def list_guest_passes(self) -> list[User]:
        stmt = (
            select(User)
            .where(User.role == Role.GUEST.value, User.guest_pass_used.is_(True))
            .order_by(User.updated_at.desc())
        )
        return list((await self.session.execute(stmt)).scalars().all())

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    async def list_reconciliations(self, include_resolved: bool = False) -> list[ReconciliationRecord]:
        stmt = select(ReconciliationRecord).order_by(ReconciliationRecord.created_at.desc())
        if not include_resolved:
            stmt = stmt.where(ReconciliationRecord.resolved.is_(False))
        return list((await self.session.execute(stmt)).scalars().all())

    async def resolve_reconciliation(self, actor: Principal, record_id: int) -> ReconciliationRecord:
        record = await self.session.get(ReconciliationRecord, record_id)
        if record is None:
            raise ResourceNotFoundError("Reconciliation record", str(record_id))
        record.resolved = True
        record.resolved_by = actor.username
        record.resolved_at = datetime.now(UTC)
        await self.session.commit()
        logger.info("reconciliation_resolved", record_id=record_id, by=actor.username)
        return record

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _lock(self, username: str) -> User:
        stmt = select(User).where(User.username == username).with_for_update()
        user = (await self.session.execute(stmt)).scalar_one_or_none()
        if user is None:
            raise ResourceNotFoundError("User", username)
        return user

    async def _get_mutable(self, actor: Principal, username: str) -> User:
        """Load an account the actor may pause or delete."""
        user = await self.get_user(username)
        if user.is_bootstrap:
            raise AuthorizationError("The main admin account cannot be modified")
        if user.role_enum.is_staff and not actor.can_manage_admins:
            raise AuthorizationError("Only a super admin can modify admin accounts")
        if user.username == actor.username:
            raise ValidationFailedError("You cannot do this to your own account")
        return user

    async def _cascade(self, username: str) -> None:
        for model in (Uid, AimkillKey, AimkillAccount, Activity, LoginHistory, Invoice):
            await self.session.execute(delete(model).where(model.username == username))

    async def _bulk_flag(
        self,
        actor: Principal,
        username: str | None,
        action: str,
        guests_only: bool = False,
        **values: object,
    ) -> int:
        stmt = update(User).values(**values).execution_options(synchronize_session=False)
        if username is not None:
            await self.get_user(username)
            stmt = stmt.where(User.username == username)
        if guests_only:
            stmt = stmt.where(User.role == Role.GUEST.value)
        result = await self.session.execute(stmt)
        affected = result.rowcount or 0
        await self.activity.log(
            actor.username, action, f"{action} for {username or 'all accounts'} ({affected})"
        )
        await self.session.commit()
        logger.info(action.replace("-", "_"), target=username or "*", affected=affected)
        return affected
