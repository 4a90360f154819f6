"""
Status API routes - Health check for the portal and its upstreams.

Public endpoint (no auth). Upstreams are reported as configured or not;
they are never called from here.
"""

import time
from datetime import UTC, datetime

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from license_portal.config import settings
from license_portal.db.session import get_write_db
from license_portal.models.api import HealthResponse
from license_portal.services.credentials import ApiConfigService, EffectiveApiConfig

logger = get_logger(__name__)
router = APIRouter(tags=["status"])

STATUS_OK = "ok"
STATUS_DEGRADED = "degraded"


async def check_database(db: AsyncSession) -> bool:
    start = time.perf_counter()
    try:
        await db.execute(text("SELECT 1"))
    except Exception as e:
        logger.warning("database_health_check_failed", error=str(e))
        return False
    logger.debug("database_health_check", latency_ms=int((time.perf_counter() - start) * 1000))
    return True


@router.get("/health", response_model=HealthResponse)
async def health(db: AsyncSession = Depends(get_write_db)) -> HealthResponse:
    database_ok = await check_database(db)
    if database_ok:
        effective = await ApiConfigService(db).get_effective()
    else:
        effective = EffectiveApiConfig(
            base_url=settings.base_url or None,
            api_key=settings.api_key or None,
            seller_key=settings.genzauth_seller_key or None,
        )

    return HealthResponse(
        status=STATUS_OK if database_ok else STATUS_DEGRADED,
        database="connected" if database_ok else "unreachable",
        uid_api_configured=effective.uid_api_configured,
        genzauth_configured=effective.genzauth_configured,
        payments_configured=bool(settings.nowpayments_api_key),
        timestamp=datetime.now(UTC),
    )
