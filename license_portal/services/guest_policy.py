"""
Guest Policy Service - The singleton guest free-pass configuration.
"""

from datetime import UTC, datetime
from urllib.parse import parse_qs, urlparse

from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from license_portal.db.models import GuestPolicy
from license_portal.exceptions import ValidationFailedError
from license_portal.models.domain import GUEST_DURATION_LADDER, GuestPolicySnapshot

logger = get_logger(__name__)


def to_embed_url(url: str) -> str:
    """Turn YouTube watch and short links into embeddable URLs; other URLs pass through."""
    url = url.strip()
    if not url:
        return url

    parsed = urlparse(url)
    video_id: str | None = None
    if parsed.netloc.endswith("youtube.com") and parsed.path == "/watch":
        video_id = parse_qs(parsed.query).get("v", [None])[0]
    elif parsed.netloc.endswith("youtu.be"):
        video_id = parsed.path.lstrip("/").split("/")[0] or None

    if video_id:
        return f"https://www.youtube.com/embed/{video_id}"
    return url


class GuestPolicyService:
    """Reads and updates the guest_policy row (created with defaults on first read)."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self) -> GuestPolicy:
        policy = await self.session.get(GuestPolicy, 1)
        if policy is None:
            policy = GuestPolicy(
                id=1,
                allow_free_uid=True,
                allow_free_aimkill=False,
                max_duration="1day",
                require_social_verification=False,
            )
            self.session.add(policy)
            await self.session.flush()
        return policy

    async def snapshot(self) -> GuestPolicySnapshot:
        return (await self.get()).snapshot()

    async def update(
        self,
        updated_by: str,
        allow_free_uid: bool | None = None,
        allow_free_aimkill: bool | None = None,
        max_duration: str | None = None,
        require_social_verification: bool | None = None,
        youtube_channel_url: str | None = None,
        instagram_url: str | None = None,
        video_url: str | None = None,
    ) -> GuestPolicy:
        if max_duration is not None and max_duration not in GUEST_DURATION_LADDER:
            raise ValidationFailedError(
                f"Invalid duration. Must be one of: {', '.join(GUEST_DURATION_LADDER)}"
            )

        policy = await self.get()
        if allow_free_uid is not None:
            policy.allow_free_uid = allow_free_uid
        if allow_free_aimkill is not None:
            policy.allow_free_aimkill = allow_free_aimkill
        if max_duration is not None:
            policy.max_duration = max_duration
        if require_social_verification is not None:
            policy.require_social_verification = require_social_verification
        if youtube_channel_url is not None:
            policy.youtube_channel_url = youtube_channel_url.strip() or None
        if instagram_url is not None:
            policy.instagram_url = instagram_url.strip() or None
        if video_url is not None:
            policy.video_url = to_embed_url(video_url) or None
        policy.updated_by = updated_by
        policy.updated_at = datetime.now(UTC)

        await self.session.commit()
        logger.info(
            "guest_policy_updated",
            updated_by=updated_by,
            allow_free_uid=policy.allow_free_uid,
            allow_free_aimkill=policy.allow_free_aimkill,
            max_duration=policy.max_duration,
        )
        return policy
