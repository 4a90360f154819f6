"""
Bootstrap - Seed data applied on every startup.

Idempotent: each step only inserts what is missing.
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from license_portal.config import settings
from license_portal.db.models import User
from license_portal.models.domain import Role
from license_portal.services.auth import hash_password
from license_portal.services.catalog import CatalogService
from license_portal.services.credentials import ApiConfigService, EffectiveApiConfig
from license_portal.services.guest_policy import GuestPolicyService

logger = get_logger(__name__)


async def ensure_bootstrap_admin(session: AsyncSession) -> bool:
    """Create the main admin account if it does not exist. Returns True when created."""
    username = settings.bootstrap_admin_username
    result = await session.execute(select(User.id).where(User.username == username))
    if result.first() is not None:
        return False

    session.add(
        User(
            username=username,
            password_hash=hash_password(settings.admin_password),
            role=Role.SUPER_ADMIN.value,
            credits=settings.bootstrap_admin_credits,
            created_by="system",
        )
    )
    await session.flush()
    logger.info("bootstrap_admin_created", username=username)
    return True


async def bootstrap(session: AsyncSession) -> EffectiveApiConfig:
    """Admin account, catalog, package lists and guest policy, then mirror API config."""
    await ensure_bootstrap_admin(session)

    catalog = CatalogService(session)
    await catalog.ensure_default_products()
    await catalog.ensure_default_packages()
    await GuestPolicyService(session).get()
    await session.commit()

    effective = await ApiConfigService(session).load_into_environment()
    logger.info(
        "bootstrap_complete",
        uid_api_configured=effective.uid_api_configured,
        genzauth_configured=effective.genzauth_configured,
    )
    return effective
