"""
Activity Service - Bounded audit trail and login history.

The activity table as a whole keeps only the newest rows up to the configured cap.
"""

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from license_portal.config import settings
from license_portal.db.models import Activity, LoginHistory
from license_portal.models.domain import PrincipalKind

HISTORY_PAGE_SIZE = 20


class ActivityService:
    """Writes go into the caller's transaction; nothing here commits."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def log(
        self,
        username: str,
        action: str,
        description: str,
        kind: PrincipalKind = PrincipalKind.USER,
    ) -> None:
        """Append an activity row and trim the whole trail to the configured cap."""
        self.session.add(
            Activity(
                username=username,
                principal_kind=kind.value,
                action=action,
                description=description[:500],
            )
        )
        await self.session.flush()

        keep = (
            select(Activity.id)
            .order_by(Activity.created_at.desc(), Activity.id.desc())
            .limit(settings.activity_log_cap)
        )
        await self.session.execute(
            delete(Activity)
            .where(Activity.id.not_in(keep.scalar_subquery()))
            .execution_options(synchronize_session=False)
        )

    async def record_login(
        self,
        username: str,
        success: bool,
        ip_address: str | None,
        user_agent: str | None,
        kind: PrincipalKind = PrincipalKind.USER,
    ) -> None:
        self.session.add(
            LoginHistory(
                username=username,
                principal_kind=kind.value,
                success=success,
                ip_address=ip_address,
                user_agent=(user_agent or "")[:500] or None,
            )
        )
        await self.session.flush()

    async def recent_activity(self, username: str | None) -> list[Activity]:
        """Newest rows for one account, or for everyone when `username` is None."""
        stmt = select(Activity).order_by(Activity.created_at.desc()).limit(HISTORY_PAGE_SIZE)
        if username is not None:
            stmt = stmt.where(Activity.username == username)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def recent_logins(self, username: str | None) -> list[LoginHistory]:
        stmt = (
            select(LoginHistory).order_by(LoginHistory.created_at.desc()).limit(HISTORY_PAGE_SIZE)
        )
        if username is not None:
            stmt = stmt.where(LoginHistory.username == username)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())
