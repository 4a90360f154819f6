"""
Credential Resolution - Runtime API configuration and seller key lookup.

The api_config singleton row overrides environment defaults and is mirrored
into the process environment whenever it is loaded or changed.
"""

import os
from dataclasses import dataclass
from datetime import UTC, datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from license_portal.config import settings
from license_portal.db.models import ApiConfig
from license_portal.services.genzauth import GenzAuthClient, mask_key
from license_portal.services.uid_api import UidApiClient

logger = get_logger(__name__)

ENV_BASE_URL = "BASE_URL"
ENV_API_KEY = "API_KEY"
ENV_SELLER_KEY = "GENZAUTH_SELLER_KEY"


@dataclass(frozen=True)
class EffectiveApiConfig:
    """Stored configuration merged over environment defaults."""

    base_url: str | None
    api_key: str | None
    seller_key: str | None

    @property
    def uid_api_configured(self) -> bool:
        return bool(self.base_url and self.api_key)

    @property
    def genzauth_configured(self) -> bool:
        return bool(self.seller_key)


def resolve_seller_key(
    reseller_key: str | None = None,
    product_key: str | None = None,
    global_key: str | None = None,
    environment_key: str | None = None,
) -> str | None:
    """Most specific non-empty credential wins: reseller, product, global, environment."""
    for candidate in (reseller_key, product_key, global_key, environment_key):
        if candidate:
            return candidate
    return None


def mirror_to_environment(config: EffectiveApiConfig) -> None:
    """Keep process environment in step with the stored configuration."""
    for name, value in (
        (ENV_BASE_URL, config.base_url),
        (ENV_API_KEY, config.api_key),
        (ENV_SELLER_KEY, config.seller_key),
    ):
        if value:
            os.environ[name] = value
        else:
            os.environ.pop(name, None)


def build_uid_client(config: EffectiveApiConfig) -> UidApiClient:
    return UidApiClient(
        base_url=config.base_url,
        api_key=config.api_key,
        timeout=settings.uid_api_timeout_seconds,
    )


def build_genzauth_client(seller_key: str | None) -> GenzAuthClient:
    return GenzAuthClient(
        seller_key=seller_key,
        base_url=settings.genzauth_base_url,
        timeout=settings.genzauth_timeout_seconds,
        batch_delay=settings.genzauth_batch_delay_seconds,
    )


class ApiConfigService:
    """Reads and updates the api_config singleton."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def _get_row(self) -> ApiConfig | None:
        result = await self.session.execute(select(ApiConfig).where(ApiConfig.id == 1))
        return result.scalar_one_or_none()

    async def get_effective(self) -> EffectiveApiConfig:
        row = await self._get_row()
        return EffectiveApiConfig(
            base_url=(row.base_url if row else None) or settings.base_url or None,
            api_key=(row.api_key if row else None) or settings.api_key or None,
            seller_key=(row.genzauth_seller_key if row else None)
            or settings.genzauth_seller_key
            or None,
        )

    async def resolve_seller_key(
        self, reseller_key: str | None = None, product_key: str | None = None
    ) -> str | None:
        row = await self._get_row()
        return resolve_seller_key(
            reseller_key=reseller_key,
            product_key=product_key,
            global_key=row.genzauth_seller_key if row else None,
            environment_key=settings.genzauth_seller_key,
        )

    async def update(
        self,
        updated_by: str,
        base_url: str | None = None,
        api_key: str | None = None,
        seller_key: str | None = None,
    ) -> EffectiveApiConfig:
        """Update the fields that were given, commit, then mirror to the environment."""
        row = await self._get_row()
        if row is None:
            row = ApiConfig(id=1)
            self.session.add(row)

        if base_url is not None:
            row.base_url = base_url.strip() or None
        if api_key is not None:
            row.api_key = api_key.strip() or None
        if seller_key is not None:
            row.genzauth_seller_key = seller_key.strip() or None
        row.updated_by = updated_by
        row.updated_at = datetime.now(UTC)

        await self.session.commit()

        effective = await self.get_effective()
        mirror_to_environment(effective)
        logger.info(
            "api_config_updated",
            updated_by=updated_by,
            uid_api_configured=effective.uid_api_configured,
            genzauth_seller=mask_key(effective.seller_key),
        )
        return effective

    async def load_into_environment(self) -> EffectiveApiConfig:
        effective = await self.get_effective()
        mirror_to_environment(effective)
        return effective
