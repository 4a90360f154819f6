"""
Catalog Service - Package price lists and the product catalog.

UID packages are priced in hours; Aimkill and product packages in days.
"""

from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from license_portal.db.models import PackageConfig, Product
from license_portal.exceptions import (
    ResourceConflictError,
    ResourceNotFoundError,
    ValidationFailedError,
)
from license_portal.models.domain import DurationUnit, GuestPolicySnapshot, PackageSpec

logger = get_logger(__name__)

UID_FAMILY = "uid"
AIMKILL_FAMILY = "aimkill"

DEFAULT_UID_PACKAGES: list[dict[str, Any]] = [
    {"key": "1day", "display": "1 Day", "hours": 24, "credits": 1, "price": 0.50},
    {"key": "3days", "display": "3 Days", "hours": 72, "credits": 3, "price": 1.30, "popular": True},
    {"key": "7days", "display": "7 Days", "hours": 168, "credits": 5, "price": 2.33},
    {"key": "14days", "display": "14 Days", "hours": 336, "credits": 10, "price": 3.50},
    {"key": "30days", "display": "30 Days", "hours": 720, "credits": 15, "price": 5.20},
]

DEFAULT_AIMKILL_PACKAGES: list[dict[str, Any]] = [
    {"key": "1day", "display": "1 Day", "days": 1, "credits": 1, "price": 2.99},
    {"key": "3day", "display": "3 Days", "days": 3, "credits": 3, "price": 7.99},
    {"key": "7day", "display": "7 Days", "days": 7, "credits": 7, "price": 14.99, "popular": True},
    {"key": "15day", "display": "15 Days", "days": 15, "credits": 15, "price": 29.99},
    {"key": "30day", "display": "30 Days", "days": 30, "credits": 30, "price": 49.99},
    {"key": "lifetime", "display": "Lifetime (1 Year)", "days": 365, "credits": 100, "price": 99.99},
]

DEFAULT_PRODUCTS: list[dict[str, Any]] = [
    {
        "key": "UID_BYPASS",
        "name": "UID Bypass",
        "description": "Create and manage UID bypass accounts",
        "packages": [
            {"key": "1day", "display": "1 Day", "days": 1, "credits": 1, "price": 0.50},
            {"key": "3days", "display": "3 Days", "days": 3, "credits": 3, "price": 1.30, "popular": True},
            {"key": "7days", "display": "7 Days", "days": 7, "credits": 5, "price": 2.33},
            {"key": "14days", "display": "14 Days", "days": 14, "credits": 10, "price": 3.50},
            {"key": "30days", "display": "30 Days", "days": 30, "credits": 15, "price": 5.20},
        ],
    },
    {
        "key": "AIMKILL",
        "name": "Aimkill",
        "description": "Create Aimkill user accounts",
        "allow_hwid_reset": True,
        "packages": [
            {"key": "1day", "display": "1 Day", "days": 1, "credits": 3, "price": 2.99},
            {"key": "3day", "display": "3 Days", "days": 3, "credits": 8, "price": 7.99},
            {"key": "7day", "display": "7 Days", "days": 7, "credits": 15, "price": 14.99},
            {"key": "15day", "display": "15 Days", "days": 15, "credits": 30, "price": 29.99},
            {"key": "30day", "display": "30 Days", "days": 30, "credits": 50, "price": 49.99},
            {"key": "lifetime", "display": "Lifetime (1 Year)", "days": 365, "credits": 100, "price": 99.99},
        ],
    },
    {
        "key": "SILENT_AIM",
        "name": "Silent Aim",
        "description": "Silent Aim product for clients",
        "packages": [],
    },
]

_PRODUCT_FIELDS = frozenset(
    {
        "name",
        "description",
        "packages",
        "seller_key",
        "allow_hwid_reset",
        "max_free_hwid_resets",
        "hwid_reset_price",
        "download_link",
        "setup_video_url",
        "announcement",
        "is_active",
    }
)


def normalize_product_key(raw: str) -> str:
    """`silent aim` -> `SILENT_AIM`."""
    key = "_".join(raw.strip().upper().split())
    if not key:
        raise ValidationFailedError("Product key is required")
    return key


def package_from_config(family: str, raw: dict[str, Any]) -> PackageSpec:
    """Build a PackageSpec from a stored price-list entry."""
    try:
        if family == UID_FAMILY:
            duration, unit = int(raw["hours"]), DurationUnit.HOURS
        else:
            duration, unit = int(raw["days"]), DurationUnit.DAYS
        return PackageSpec(
            key=str(raw["key"]),
            display=str(raw.get("display") or raw["key"]),
            duration=duration,
            unit=unit,
            credits=int(raw["credits"]),
            price=float(raw.get("price", 0)),
            popular=bool(raw.get("popular", False)),
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise ValidationFailedError(f"Invalid {family} package entry: {raw}") from exc


def default_packages(family: str) -> list[dict[str, Any]]:
    if family == UID_FAMILY:
        return DEFAULT_UID_PACKAGES
    if family == AIMKILL_FAMILY:
        return DEFAULT_AIMKILL_PACKAGES
    raise ValidationFailedError(f"Unknown package family: {family}")


def product_packages(product: Product) -> list[PackageSpec]:
    """Product packages are priced in days."""
    return [package_from_config(AIMKILL_FAMILY, raw) for raw in product.packages]


def find_product_package(product: Product, days: int) -> PackageSpec:
    for package in product_packages(product):
        if package.duration_days == days:
            return package
    raise ValidationFailedError(f"Invalid duration for {product.name}: {days} day(s)")


def product_package(product: Product, key: str) -> PackageSpec:
    for package in product_packages(product):
        if package.key == key:
            return package
    raise ResourceNotFoundError("Package", key)


def filter_for_guest(packages: list[PackageSpec], policy: GuestPolicySnapshot) -> list[PackageSpec]:
    """Only packages at or under the guest duration ceiling."""
    return [p for p in packages if policy.allows(p)]


class CatalogService:
    """Reads and edits package configuration and products."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    # ------------------------------------------------------------------
    # Packages
    # ------------------------------------------------------------------

    async def _raw_packages(self, family: str) -> list[dict[str, Any]]:
        row = await self.session.get(PackageConfig, family)
        if row is None or not row.packages:
            return default_packages(family)
        return row.packages

    async def get_packages(self, family: str) -> list[PackageSpec]:
        return [package_from_config(family, raw) for raw in await self._raw_packages(family)]

    async def find_package(self, family: str, key: str) -> PackageSpec:
        for package in await self.get_packages(family):
            if package.key == key:
                return package
        raise ValidationFailedError(f"Invalid package: {key}")

    async def update_packages(
        self, family: str, packages: list[dict[str, Any]], updated_by: str
    ) -> list[PackageSpec]:
        """Replace a family's price list after validating every entry."""
        default_packages(family)
        specs = [package_from_config(family, raw) for raw in packages]
        if not specs:
            raise ValidationFailedError("At least one package is required")
        if len({s.key for s in specs}) != len(specs):
            raise ValidationFailedError("Package keys must be unique")

        row = await self.session.get(PackageConfig, family)
        if row is None:
            row = PackageConfig(family=family)
            self.session.add(row)
        row.packages = packages
        row.updated_by = updated_by
        await self.session.commit()

        logger.info("packages_updated", family=family, count=len(specs), updated_by=updated_by)
        return specs

    async def ensure_default_packages(self) -> None:
        for family in (UID_FAMILY, AIMKILL_FAMILY):
            if await self.session.get(PackageConfig, family) is None:
                self.session.add(
                    PackageConfig(family=family, packages=default_packages(family), updated_by="system")
                )
        await self.session.flush()

    # ------------------------------------------------------------------
    # Products
    # ------------------------------------------------------------------

    async def list_products(self, active_only: bool = False) -> list[Product]:
        stmt = select(Product).order_by(Product.key)
        if active_only:
            stmt = stmt.where(Product.is_active.is_(True))
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def find_product(self, key: str) -> Product | None:
        result = await self.session.execute(select(Product).where(Product.key == key))
        return result.scalar_one_or_none()

    async def get_product(self, key: str) -> Product:
        product = await self.find_product(key)
        if product is None:
            raise ResourceNotFoundError("Product", key)
        return product

    async def create_product(self, key: str, name: str, **fields: Any) -> Product:
        product_key = normalize_product_key(key)
        if await self.find_product(product_key) is not None:
            raise ResourceConflictError("Product", product_key)

        product = Product(key=product_key, name=name)
        self._apply_fields(product, fields)
        self.session.add(product)
        try:
            await self.session.commit()
        except IntegrityError as exc:
            await self.session.rollback()
            raise ResourceConflictError("Product", product_key) from exc

        logger.info("product_created", product_key=product_key)
        return product

    async def update_product(self, key: str, **fields: Any) -> Product:
        product = await self.get_product(key)
        self._apply_fields(product, fields)
        await self.session.commit()
        logger.info("product_updated", product_key=key, fields=sorted(fields))
        return product

    async def delete_product(self, key: str) -> None:
        product = await self.get_product(key)
        await self.session.delete(product)
        await self.session.commit()
        logger.info("product_deleted", product_key=key)

    async def ensure_default_products(self) -> None:
        for seed in DEFAULT_PRODUCTS:
            if await self.find_product(seed["key"]) is None:
                product = Product(key=seed["key"], name=seed["name"])
                self._apply_fields(product, {k: v for k, v in seed.items() if k not in ("key", "name")})
                self.session.add(product)
        await self.session.flush()

    @staticmethod
    def _apply_fields(product: Product, fields: dict[str, Any]) -> None:
        unknown = set(fields) - _PRODUCT_FIELDS
        if unknown:
            raise ValidationFailedError(f"Unknown product fields: {', '.join(sorted(unknown))}")
        if "packages" in fields:
            for raw in fields["packages"]:
                package_from_config(AIMKILL_FAMILY, raw)
        if fields.get("max_free_hwid_resets", 0) < 0:
            raise ValidationFailedError("max_free_hwid_resets cannot be negative")
        for name, value in fields.items():
            setattr(product, name, value)
