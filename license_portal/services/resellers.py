"""
Reseller Service - Reseller accounts and the clients they sell.

Resources a reseller creates are owned by the tag `reseller:<username>`.
Creating a UID_BYPASS client registers its UID upstream; if that call fails
the client row is discarded and the reseller keeps its credits.
"""

from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from license_portal.config import settings
from license_portal.db.models import AimkillAccount, AimkillKey, Client, Product, Reseller, Uid
from license_portal.exceptions import (
    AuthorizationError,
    ProvisioningNotConfiguredError,
    ResourceConflictError,
    ResourceNotFoundError,
    UpstreamError,
    ValidationFailedError,
)
from license_portal.models.domain import (
    ExternalOutcome,
    ExternalResult,
    GuardResult,
    Principal,
    PrincipalKind,
    ResourceKind,
)
from license_portal.observability.metrics import metrics
from license_portal.observability.tracing import trace_operation
from license_portal.services import entitlement
from license_portal.services.activity import ActivityService
from license_portal.services.auth import (
    generate_password,
    hash_password,
    normalize_username,
    validate_new_password,
)
from license_portal.services.catalog import CatalogService, product_package
from license_portal.services.credentials import ApiConfigService, build_genzauth_client
from license_portal.services.genzauth import GenzAuthClient
from license_portal.services.provisioning import (
    persist_or_reconcile,
    raise_for_external,
    validate_aimkill_credentials,
)
from license_portal.services.uid_api import UidApiClient

logger = get_logger(__name__)

UID_BYPASS = "UID_BYPASS"
AIMKILL = "AIMKILL"
SELLER_KEY_MISSING = (
    "GenzAuth seller key not configured. Add it to the AIMKILL product, "
    "to this reseller, or to the global GenzAuth configuration."
)

GenzAuthFactory = Callable[[str | None], GenzAuthClient]


@dataclass(frozen=True)
class ClientCreation:
    """A new client plus the plaintext password shown to the reseller once."""

    client: Client
    password: str
    auto_generated: bool
    credits_remaining: int
    genzauth_created: bool
    uid_created: bool
    warning: str | None = None


@dataclass(frozen=True)
class ResellerCreation:
    reseller: Reseller
    password: str
    auto_generated: bool


def reseller_tag(username: str) -> str:
    return f"reseller:{username}"


class ResellerService:
    """Reseller self-service and admin management of resellers."""

    def __init__(
        self,
        session: AsyncSession,
        uid_client: UidApiClient | None = None,
        genzauth_factory: GenzAuthFactory = build_genzauth_client,
    ) -> None:
        self.session = session
        self.uid_client = uid_client
        self.genzauth_factory = genzauth_factory
        self.catalog = CatalogService(session)
        self.api_config = ApiConfigService(session)
        self.activity = ActivityService(session)

    # ------------------------------------------------------------------
    # Admin management
    # ------------------------------------------------------------------

    async def list_resellers(self) -> list[Reseller]:
        stmt = select(Reseller).order_by(Reseller.created_at.desc())
        return list((await self.session.execute(stmt)).scalars().all())

    async def get_reseller(self, username: str) -> Reseller:
        result = await self.session.execute(select(Reseller).where(Reseller.username == username))
        reseller = result.scalar_one_or_none()
        if reseller is None:
            raise ResourceNotFoundError("Reseller", username)
        return reseller

    async def create_reseller(
        self,
        actor: Principal,
        username: str,
        password: str | None = None,
        auto_password: bool = False,
        email: str | None = None,
        credits: int = 0,
        seller_key: str | None = None,
        assigned_products: list[str] | None = None,
    ) -> ResellerCreation:
        username = normalize_username(username)
        password = self._choose_password(password, auto_password, length=12, symbols=True)
        if credits < 0:
            raise ValidationFailedError("Credits cannot be negative")

        reseller = Reseller(
            username=username,
            password_hash=hash_password(password),
            email=email,
            credits=credits,
            seller_key=(seller_key or "").strip() or None,
            assigned_products=await self._validated_products(assigned_products or []),
            created_by=actor.username,
        )
        self.session.add(reseller)
        try:
            await self.session.flush()
        except IntegrityError as exc:
            await self.session.rollback()
            raise ResourceConflictError("Reseller", username) from exc

        await self.activity.log(actor.username, "reseller-create", f"Created reseller {username}")
        await self.session.commit()
        logger.info("reseller_created", username=username, credits=credits, by=actor.username)
        return ResellerCreation(reseller=reseller, password=password, auto_generated=auto_password)

    async def update_reseller(
        self,
        actor: Principal,
        username: str,
        credits: int | None = None,
        seller_key: str | None = None,
        assigned_products: list[str] | None = None,
        is_active: bool | None = None,
        email: str | None = None,
        password: str | None = None,
    ) -> Reseller:
        reseller = await self.get_reseller(username)
        if credits is not None:
            if credits < 0:
                raise ValidationFailedError("Credits cannot be negative")
            reseller.credits = credits
        if seller_key is not None:
            reseller.seller_key = seller_key.strip() or None
        if assigned_products is not None:
            reseller.assigned_products = await self._validated_products(assigned_products)
        if is_active is not None:
            reseller.is_active = is_active
        if email is not None:
            reseller.email = email.strip() or None
        if password and password.strip():
            validate_new_password(password)
            reseller.password_hash = hash_password(password)

        await self.session.commit()
        logger.info("reseller_updated", username=username, by=actor.username)
        return reseller

    async def delete_reseller(self, actor: Principal, username: str) -> None:
        reseller = await self.get_reseller(username)
        await self.session.delete(reseller)
        await self.session.commit()
        logger.info("reseller_deleted", username=username, by=actor.username)

    # ------------------------------------------------------------------
    # Client management
    # ------------------------------------------------------------------

    async def create_client(
        self,
        principal: Principal,
        username: str,
        product_key: str,
        package_key: str,
        password: str | None = None,
        auto_password: bool = False,
        assigned_uid: str | None = None,
    ) -> ClientCreation:
        """
        Sell a client account.

        Order: lock reseller, guard, uniqueness, external call, then persist
        the client, any UID row and the debit in one transaction.
        """
        username = normalize_username(username)
        password = self._choose_password(password, auto_password)
        assigned_uid = (assigned_uid or "").strip() or None

        with trace_operation("reseller_create_client", product=product_key):
            reseller = await self._lock(principal.username)
            product = await self.catalog.get_product(product_key)
            package = product_package(product, package_key)

            guard = entitlement.evaluate_reseller(
                reseller.is_active,
                reseller.assigned_products,
                product.key,
                reseller.credits,
                package.credits,
            )
            self._record_guard(guard)
            entitlement.ensure_allowed(guard, available_credits=reseller.credits)

            if await self._client_exists(username):
                raise ResourceConflictError("Client", username)
            if product.key == UID_BYPASS and assigned_uid is not None:
                if not assigned_uid.isdigit():
                    raise ValidationFailedError("UID must contain only numbers")
                if await self._uid_taken(assigned_uid):
                    raise ResourceConflictError("UID", assigned_uid)

            now = datetime.now(UTC)
            expires_at = package.expires_at(now)
            tag = reseller_tag(reseller.username)
            client = Client(
                username=username,
                password_hash=hash_password(password),
                product_key=product.key,
                assigned_uid=assigned_uid,
                is_active=True,
                expires_at=expires_at,
                created_by=tag,
            )
            self.session.add(client)
            await self.session.flush()

            warning: str | None = None
            genzauth_created = False
            if product.key == AIMKILL:
                warning = await self._create_genzauth_user(
                    reseller, product, username, password, int(package.duration_days)
                )
                genzauth_created = warning is None
                if genzauth_created:
                    client.assigned_username = username

            uid_created = False
            if product.key == UID_BYPASS and assigned_uid is not None:
                await self._register_client_uid(client, assigned_uid, package.duration_hours)
                uid_created = True

            async with persist_or_reconcile(
                self.session,
                ResourceKind.RESELLER_CLIENT,
                username,
                tag,
                "uid_api" if uid_created else ("genzauth" if genzauth_created else None),
            ):
                if uid_created:
                    self.session.add(
                        Uid(
                            uid=assigned_uid,
                            username=tag,
                            package_key=package.key,
                            duration_hours=package.duration_hours,
                            credits_spent=0,
                            expires_at=expires_at,
                        )
                    )
                reseller.credits -= guard.cost
                reseller.total_clients_created += 1
                await self.activity.log(
                    reseller.username,
                    "client-create",
                    f"Created client {username} for {product.key} ({package.display})",
                    PrincipalKind.RESELLER,
                )

        metrics.record_provisioned(ResourceKind.RESELLER_CLIENT.value, guard.cost)
        logger.info(
            "reseller_client_created",
            reseller=reseller.username,
            client=username,
            product=product.key,
            package=package.key,
            credits_spent=guard.cost,
            credits_remaining=reseller.credits,
            genzauth_created=genzauth_created,
            uid_created=uid_created,
        )
        return ClientCreation(
            client=client,
            password=password,
            auto_generated=auto_password,
            credits_remaining=reseller.credits,
            genzauth_created=genzauth_created,
            uid_created=uid_created,
            warning=f"Client created but GenzAuth account failed: {warning}" if warning else None,
        )

    async def list_clients(self, principal: Principal) -> list[Client]:
        stmt = (
            select(Client)
            .where(Client.created_by == reseller_tag(principal.username))
            .order_by(Client.created_at.desc())
        )
        return list((await self.session.execute(stmt)).scalars().all())

    async def delete_client(self, principal: Principal, client_id: int) -> None:
        client = await self.session.get(Client, client_id)
        if client is None:
            raise ResourceNotFoundError("Client", str(client_id))
        if client.created_by != reseller_tag(principal.username):
            raise AuthorizationError("You do not have permission to delete this client")
        await self.session.delete(client)
        await self.activity.log(
            principal.username, "client-delete", f"Deleted client {client.username}",
            PrincipalKind.RESELLER,
        )
        await self.session.commit()
        logger.info("reseller_client_deleted", reseller=principal.username, client=client.username)

    # ------------------------------------------------------------------
    # License keys and Aimkill accounts
    # ------------------------------------------------------------------

    async def generate_license_key(self, principal: Principal, days: int) -> AimkillKey:
        """One GenzAuth license key for a flat credit cost."""
        if days <= 0:
            raise ValidationFailedError("Duration must be a positive number (in days)")

        reseller = await self._lock(principal.username)
        if not reseller.assigned_products:
            raise AuthorizationError(
                "You do not have any products assigned. Contact admin to assign products."
            )
        cost = settings.license_key_cost
        guard = entitlement.evaluate_reseller(
            reseller.is_active, reseller.assigned_products, None, reseller.credits, cost
        )
        self._record_guard(guard)
        entitlement.ensure_allowed(guard, available_credits=reseller.credits)

        genzauth = await self._genzauth_for(reseller)
        try:
            result = await genzauth.create_license(days)
        finally:
            await genzauth.close()
        raise_for_external("genzauth", result)

        tag = reseller_tag(reseller.username)
        record = AimkillKey(
            license_key=str(result.data),
            username=tag,
            package_key=f"{days}day",
            duration_days=days,
            credits_spent=cost,
            expires_at=datetime.now(UTC) + timedelta(days=days),
        )
        async with persist_or_reconcile(
            self.session, ResourceKind.LICENSE_KEY, record.license_key, tag, "genzauth"
        ):
            self.session.add(record)
            reseller.credits -= cost
            await self.activity.log(
                reseller.username, "key-create", f"Generated {days}-day license key",
                PrincipalKind.RESELLER,
            )

        metrics.record_provisioned(ResourceKind.LICENSE_KEY.value, cost)
        logger.info("reseller_license_generated", reseller=reseller.username, days=days)
        return record

    async def create_aimkill_account(
        self,
        principal: Principal,
        account_username: str,
        package_key: str,
        password: str | None = None,
        auto_password: bool = False,
    ) -> tuple[AimkillAccount, str]:
        """GenzAuth user account priced from the AIMKILL product packages."""
        password = self._choose_password(password, auto_password)
        account_username = account_username.strip()
        validate_aimkill_credentials(account_username, password)

        reseller = await self._lock(principal.username)
        product = await self.catalog.get_product(AIMKILL)
        package = product_package(product, package_key)
        guard = entitlement.evaluate_reseller(
            reseller.is_active, reseller.assigned_products, AIMKILL,
            reseller.credits, package.credits,
        )
        self._record_guard(guard)
        entitlement.ensure_allowed(guard, available_credits=reseller.credits)

        exists = await self.session.execute(
            select(AimkillAccount.id).where(AimkillAccount.account_username == account_username)
        )
        if exists.first() is not None:
            raise ResourceConflictError("Aimkill account", account_username)

        days = int(package.duration_days)
        genzauth = await self._genzauth_for(reseller, product)
        try:
            result = await genzauth.create_user(account_username, password, days)
        finally:
            await genzauth.close()
        raise_for_external("genzauth", result)

        tag = reseller_tag(reseller.username)
        record = AimkillAccount(
            account_username=account_username,
            username=tag,
            package_key=package.key,
            duration_days=days,
            credits_spent=guard.cost,
            expires_at=package.expires_at(datetime.now(UTC)),
        )
        async with persist_or_reconcile(
            self.session, ResourceKind.AIMKILL_ACCOUNT, account_username, tag, "genzauth"
        ):
            self.session.add(record)
            reseller.credits -= guard.cost
            await self.activity.log(
                reseller.username,
                "aimkill-account-create",
                f"Created Aimkill account {account_username}",
                PrincipalKind.RESELLER,
            )

        metrics.record_provisioned(ResourceKind.AIMKILL_ACCOUNT.value, guard.cost)
        logger.info(
            "reseller_aimkill_account_created",
            reseller=reseller.username,
            account=account_username,
            credits_spent=guard.cost,
        )
        return record, password

    async def list_license_keys(self, principal: Principal) -> list[AimkillKey]:
        stmt = (
            select(AimkillKey)
            .where(AimkillKey.username == reseller_tag(principal.username))
            .order_by(AimkillKey.created_at.desc())
        )
        return list((await self.session.execute(stmt)).scalars().all())

    async def list_aimkill_accounts(self, principal: Principal) -> list[AimkillAccount]:
        stmt = (
            select(AimkillAccount)
            .where(AimkillAccount.username == reseller_tag(principal.username))
            .order_by(AimkillAccount.created_at.desc())
        )
        return list((await self.session.execute(stmt)).scalars().all())

    async def products_for(self, reseller: Reseller) -> list[Product]:
        stmt = select(Product).where(Product.key.in_(reseller.assigned_products))
        return list((await self.session.execute(stmt)).scalars().all())

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _lock(self, username: str) -> Reseller:
        stmt = select(Reseller).where(Reseller.username == username).with_for_update()
        reseller = (await self.session.execute(stmt)).scalar_one_or_none()
        if reseller is None:
            raise ResourceNotFoundError("Reseller", username)
        return reseller

    async def _genzauth_for(
        self, reseller: Reseller, product: Product | None = None
    ) -> GenzAuthClient:
        if product is None:
            product = await self.catalog.find_product(AIMKILL)
        seller_key = await self.api_config.resolve_seller_key(
            reseller_key=reseller.seller_key,
            product_key=product.seller_key if product else None,
        )
        if not seller_key:
            raise ProvisioningNotConfiguredError("genzauth", SELLER_KEY_MISSING)
        return self.genzauth_factory(seller_key)

    async def _create_genzauth_user(
        self, reseller: Reseller, product: Product, username: str, password: str, days: int
    ) -> str | None:
        """Create the loader account for an AIMKILL client. Returns a warning on failure."""
        try:
            genzauth = await self._genzauth_for(reseller, product)
        except ProvisioningNotConfiguredError as exc:
            logger.warning("reseller_client_genzauth_skipped", client=username)
            return exc.message
        try:
            result = await genzauth.create_user(username, password, days)
        finally:
            await genzauth.close()
        if not result.success:
            logger.warning("reseller_client_genzauth_failed", client=username, error=result.error)
            return result.error or "Failed to create GenzAuth account"
        return None

    async def _register_client_uid(self, client: Client, uid: str, hours: int) -> None:
        """Register the client's UID upstream; on failure discard the client row."""
        if self.uid_client is None:
            result = ExternalResult(
                outcome=ExternalOutcome.NOT_CONFIGURED, error="UID API is not configured"
            )
        else:
            result = await self.uid_client.create_uid(uid, hours)
        if result.success:
            return

        await self.session.delete(client)
        await self.session.flush()
        await self.session.rollback()
        logger.warning(
            "reseller_client_rolled_back", client=client.username, uid=uid, error=result.error
        )
        if result.outcome == ExternalOutcome.NOT_CONFIGURED:
            raise ProvisioningNotConfiguredError("uid_api")
        raise UpstreamError(
            "uid_api",
            f"Failed to create UID: {result.error or 'Unknown error'}. "
            "Client account was not created.",
        )

    async def _client_exists(self, username: str) -> bool:
        result = await self.session.execute(select(Client.id).where(Client.username == username))
        return result.first() is not None

    async def _uid_taken(self, uid: str) -> bool:
        result = await self.session.execute(select(Uid.id).where(Uid.uid == uid))
        if result.first() is not None:
            return True
        result = await self.session.execute(select(Client.id).where(Client.assigned_uid == uid))
        return result.first() is not None

    async def _validated_products(self, keys: list[str]) -> list[str]:
        for key in keys:
            await self.catalog.get_product(key)
        return list(dict.fromkeys(keys))

    @staticmethod
    def _choose_password(
        password: str | None, auto_password: bool, length: int = 10, symbols: bool = False
    ) -> str:
        if auto_password:
            return generate_password(length, symbols=symbols)
        if not password:
            raise ValidationFailedError("Password is required or set autoPassword to true")
        validate_new_password(password)
        return password

    @staticmethod
    def _record_guard(guard: GuardResult) -> None:
        metrics.record_entitlement(
            ResourceKind.RESELLER_CLIENT.value,
            guard.allowed,
            guard.denial_reason.value if guard.denial_reason else None,
        )
