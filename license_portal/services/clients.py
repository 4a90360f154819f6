"""
Client Service - End-customer self service and admin client management.

HWID resets are rate limited per client (24 h cooldown) and capped by the
product's free reset quota.
"""

from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from license_portal.config import settings
from license_portal.db.models import Client, Product, Reseller, Uid
from license_portal.exceptions import (
    EntitlementDeniedError,
    ProvisioningNotConfiguredError,
    ResourceConflictError,
    ResourceNotFoundError,
    ValidationFailedError,
)
from license_portal.models.domain import (
    DenialReason,
    Principal,
    PrincipalKind,
    ResourceKind,
    ResourceStatus,
)
from license_portal.observability.metrics import metrics
from license_portal.services import entitlement
from license_portal.services.activity import ActivityService
from license_portal.services.auth import hash_password, normalize_username, validate_new_password
from license_portal.services.catalog import CatalogService, find_product_package
from license_portal.services.credentials import ApiConfigService, build_genzauth_client
from license_portal.services.genzauth import GenzAuthClient
from license_portal.services.provisioning import persist_or_reconcile, raise_for_external
from license_portal.services.uid_api import UidApiClient

logger = get_logger(__name__)

UID_BYPASS = "UID_BYPASS"
_CLIENT_UPDATE_FIELDS = frozenset(
    {"assigned_username", "assigned_uid", "notes", "custom_download_link", "is_active", "expires_at"}
)


@dataclass(frozen=True)
class ClientInfo:
    """What the client dashboard shows."""

    client: Client
    product: Product | None
    download_link: str | None
    uid_expires_at: datetime | None
    uid_status: ResourceStatus | None


@dataclass(frozen=True)
class HwidResetOutcome:
    reset_at: datetime
    reset_count: int
    free_resets_left: int


def resolve_download_link(client: Client, product: Product | None) -> str | None:
    """The client's own link wins over the product default."""
    return client.custom_download_link or (product.download_link if product else None) or None


class ClientService:
    """Operations performed by or on client accounts."""

    def __init__(
        self,
        session: AsyncSession,
        uid_client: UidApiClient | None = None,
        genzauth_factory: Callable[[str | None], GenzAuthClient] = build_genzauth_client,
    ) -> None:
        self.session = session
        self.uid_client = uid_client
        self.genzauth_factory = genzauth_factory
        self.catalog = CatalogService(session)
        self.activity = ActivityService(session)

    async def get_client(self, username: str) -> Client:
        result = await self.session.execute(select(Client).where(Client.username == username))
        client = result.scalar_one_or_none()
        if client is None:
            raise ResourceNotFoundError("Client", username)
        return client

    async def info(self, principal: Principal) -> ClientInfo:
        client = await self.get_client(principal.username)
        product = await self.catalog.find_product(client.product_key)

        uid_record: Uid | None = None
        if client.assigned_uid:
            result = await self.session.execute(select(Uid).where(Uid.uid == client.assigned_uid))
            uid_record = result.scalar_one_or_none()

        return ClientInfo(
            client=client,
            product=product,
            download_link=resolve_download_link(client, product),
            uid_expires_at=uid_record.expires_at if uid_record else None,
            uid_status=uid_record.status if uid_record else None,
        )

    # ------------------------------------------------------------------
    # Self service
    # ------------------------------------------------------------------

    async def create_uid_bypass(self, principal: Principal, uid: str, days: int) -> Uid:
        """Register a UID for a UID_BYPASS client on one of the product's day packages."""
        uid = uid.strip()
        if not uid.isdigit():
            raise ValidationFailedError("UID must contain only numbers")
        if self.uid_client is None:
            raise ProvisioningNotConfiguredError("uid_api")

        client = await self._lock(principal.username)
        self._ensure_active(client)
        if client.product_key != UID_BYPASS:
            raise EntitlementDeniedError(
                DenialReason.WRONG_ACCOUNT_TYPE,
                "This feature is only available for UID Bypass clients",
            )
        product = await self.catalog.get_product(UID_BYPASS)
        package = find_product_package(product, days)

        existing = await self.session.execute(select(Uid.id).where(Uid.uid == uid))
        if existing.first() is not None:
            raise ResourceConflictError("UID", uid)

        result = await self.uid_client.create_uid(uid, package.duration_hours)
        raise_for_external("uid_api", result)

        record = Uid(
            uid=uid,
            username=client.created_by,
            package_key=package.key,
            duration_hours=package.duration_hours,
            credits_spent=0,
            expires_at=package.expires_at(datetime.now(UTC)),
        )
        async with persist_or_reconcile(
            self.session, ResourceKind.UID, uid, client.created_by, "uid_api"
        ):
            self.session.add(record)
            client.assigned_uid = uid
            await self.activity.log(
                client.username, "uid-create", f"Created UID {uid} ({package.display})",
                PrincipalKind.CLIENT,
            )

        metrics.record_provisioned(ResourceKind.UID.value, 0)
        logger.info("client_uid_created", client=client.username, uid=uid, days=days)
        return record

    async def reset_hwid(self, principal: Principal) -> HwidResetOutcome:
        """
        Reset the hardware binding of the client's loader account.

        Raises:
            EntitlementDeniedError: product disallows resets or free quota used up
            CooldownActiveError: last reset was under 24 hours ago
        """
        client = await self._lock(principal.username)
        self._ensure_active(client)
        product = await self.catalog.find_product(client.product_key)

        now = datetime.now(UTC)
        guard = entitlement.evaluate_hwid_reset(
            allow_hwid_reset=bool(product and product.allow_hwid_reset),
            reset_count=client.hwid_reset_count,
            max_free_resets=product.max_free_hwid_resets if product else 0,
            reset_price=product.hwid_reset_price if product else 0,
            last_reset_at=client.last_hwid_reset_at,
            cooldown_hours=settings.hwid_reset_cooldown_hours,
            now=now,
        )
        metrics.record_entitlement(
            ResourceKind.HWID_RESET.value,
            guard.allowed,
            guard.denial_reason.value if guard.denial_reason else None,
        )
        hours_remaining = (
            entitlement.hours_until(
                client.last_hwid_reset_at, settings.hwid_reset_cooldown_hours, now
            )
            if client.last_hwid_reset_at
            else 0
        )
        entitlement.ensure_allowed(guard, hours_remaining=hours_remaining)
        assert product is not None

        if client.assigned_username:
            genzauth = await self._genzauth_for(client, product)
            try:
                result = await genzauth.reset_hwid(client.assigned_username)
            finally:
                await genzauth.close()
            raise_for_external("genzauth", result)

        client.last_hwid_reset_at = now
        client.hwid_reset_count += 1
        await self.activity.log(
            client.username, "hwid-reset", "HWID reset", PrincipalKind.CLIENT
        )
        await self.session.commit()

        logger.info("hwid_reset", client=client.username, reset_count=client.hwid_reset_count)
        return HwidResetOutcome(
            reset_at=now,
            reset_count=client.hwid_reset_count,
            free_resets_left=max(product.max_free_hwid_resets - client.hwid_reset_count, 0),
        )

    # ------------------------------------------------------------------
    # Admin management
    # ------------------------------------------------------------------

    async def list_clients(self) -> list[Client]:
        stmt = select(Client).order_by(Client.created_at.desc())
        return list((await self.session.execute(stmt)).scalars().all())

    async def create_client(
        self,
        actor: Principal,
        username: str,
        password: str,
        product_key: str,
        assigned_username: str | None = None,
        assigned_uid: str | None = None,
        notes: str | None = None,
        custom_download_link: str | None = None,
        expires_at: datetime | None = None,
    ) -> Client:
        username = normalize_username(username)
        validate_new_password(password)
        product = await self.catalog.get_product(product_key)

        client = Client(
            username=username,
            password_hash=hash_password(password),
            product_key=product.key,
            assigned_username=assigned_username or None,
            assigned_uid=assigned_uid or None,
            notes=notes or None,
            custom_download_link=custom_download_link or None,
            expires_at=expires_at,
            created_by=actor.username,
        )
        self.session.add(client)
        try:
            await self.session.flush()
        except IntegrityError as exc:
            await self.session.rollback()
            raise ResourceConflictError("Client", username) from exc

        await self.activity.log(actor.username, "client-create", f"Created client {username}")
        await self.session.commit()
        logger.info("client_created", client=username, product=product.key, by=actor.username)
        return client

    async def update_client(
        self, actor: Principal, client_id: int, password: str | None = None, **fields: Any
    ) -> Client:
        """Username, product and reset history are not editable here."""
        unknown = set(fields) - _CLIENT_UPDATE_FIELDS
        if unknown:
            raise ValidationFailedError(f"Fields cannot be updated: {', '.join(sorted(unknown))}")
        client = await self._by_id(client_id)
        if password:
            validate_new_password(password)
            client.password_hash = hash_password(password)
        for name, value in fields.items():
            setattr(client, name, value)
        await self.session.commit()
        logger.info("client_updated", client=client.username, fields=sorted(fields), by=actor.username)
        return client

    async def delete_client(self, actor: Principal, client_id: int) -> None:
        client = await self._by_id(client_id)
        await self.session.delete(client)
        await self.session.commit()
        logger.info("client_deleted", client=client.username, by=actor.username)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _by_id(self, client_id: int) -> Client:
        client = await self.session.get(Client, client_id)
        if client is None:
            raise ResourceNotFoundError("Client", str(client_id))
        return client

    async def _lock(self, username: str) -> Client:
        stmt = select(Client).where(Client.username == username).with_for_update()
        client = (await self.session.execute(stmt)).scalar_one_or_none()
        if client is None:
            raise ResourceNotFoundError("Client", username)
        return client

    @staticmethod
    def _ensure_active(client: Client) -> None:
        if not client.is_active or client.is_expired:
            raise EntitlementDeniedError(DenialReason.ACCOUNT_DISABLED, "Account is disabled")

    async def _genzauth_for(self, client: Client, product: Product) -> GenzAuthClient:
        reseller_key: str | None = None
        if client.created_by.startswith("reseller:"):
            result = await self.session.execute(
                select(Reseller.seller_key).where(
                    Reseller.username == client.created_by.removeprefix("reseller:")
                )
            )
            reseller_key = result.scalar_one_or_none()

        seller_key = await ApiConfigService(self.session).resolve_seller_key(
            reseller_key=reseller_key, product_key=product.seller_key
        )
        if not seller_key:
            raise ProvisioningNotConfiguredError("genzauth")
        return self.genzauth_factory(seller_key)
