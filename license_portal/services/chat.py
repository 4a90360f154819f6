"""
Chat Service - Support conversations between staff and users or clients.

Each conversation is keyed by the non-staff participant's owner tag, so a
user `bob` and a client `bob` never share a thread.
"""

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from license_portal.config import settings
from license_portal.db.models import ChatMessage, Client
from license_portal.exceptions import ValidationFailedError
from license_portal.models.domain import Principal
from license_portal.services.activity import ActivityService

logger = get_logger(__name__)

HISTORY_LIMIT = 50
SENDER_USER = "user"
SENDER_ADMIN = "admin"


@dataclass(frozen=True)
class ChatStats:
    total_messages: int
    unread_messages: int
    conversations: list[str]


class ChatService:
    """Stores and reads chat messages."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    def _conversation(self, principal: Principal, with_username: str | None) -> str:
        if principal.is_admin:
            if not with_username:
                raise ValidationFailedError("Choose a conversation")
            return with_username
        return principal.owner_tag

    async def send(
        self, principal: Principal, body: str, to_username: str | None = None
    ) -> ChatMessage:
        body = body.strip()
        if not body:
            raise ValidationFailedError("Message cannot be empty")
        if len(body) > settings.chat_message_max_length:
            raise ValidationFailedError(
                f"Message cannot exceed {settings.chat_message_max_length} characters"
            )

        message = ChatMessage(
            username=self._conversation(principal, to_username),
            sender=SENDER_ADMIN if principal.is_admin else SENDER_USER,
            sender_name=principal.username,
            body=body,
        )
        self.session.add(message)
        await self.session.commit()
        logger.info("chat_message_sent", conversation=message.username, sender=message.sender)
        return message

    async def history(
        self, principal: Principal, with_username: str | None = None
    ) -> list[ChatMessage]:
        """The newest messages of one conversation, oldest first."""
        conversation = self._conversation(principal, with_username)
        stmt = (
            select(ChatMessage)
            .where(ChatMessage.username == conversation)
            .order_by(ChatMessage.created_at.desc(), ChatMessage.id.desc())
            .limit(HISTORY_LIMIT)
        )
        messages = list((await self.session.execute(stmt)).scalars().all())
        messages.reverse()
        return messages

    async def mark_read(self, principal: Principal, with_username: str | None = None) -> int:
        """Mark the other side's messages in the conversation as read."""
        conversation = self._conversation(principal, with_username)
        incoming = SENDER_USER if principal.is_admin else SENDER_ADMIN
        result = await self.session.execute(
            update(ChatMessage)
            .where(
                ChatMessage.username == conversation,
                ChatMessage.sender == incoming,
                ChatMessage.is_read.is_(False),
            )
            .values(is_read=True)
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()
        return result.rowcount or 0

    async def chat_clients(self) -> list[Client]:
        stmt = select(Client).where(Client.is_active.is_(True)).order_by(Client.username)
        return list((await self.session.execute(stmt)).scalars().all())

    async def delete_conversation(self, actor: Principal, username: str) -> int:
        result = await self.session.execute(
            delete(ChatMessage).where(ChatMessage.username == username)
        )
        deleted = result.rowcount or 0
        await ActivityService(self.session).log(
            actor.username, "admin-chat", f"Deleted {deleted} messages for user: {username}"
        )
        await self.session.commit()
        logger.info("chat_conversation_deleted", conversation=username, deleted=deleted)
        return deleted

    async def delete_all(self, actor: Principal) -> int:
        result = await self.session.execute(delete(ChatMessage))
        deleted = result.rowcount or 0
        await ActivityService(self.session).log(
            actor.username, "admin-chat", f"Deleted all chat messages ({deleted} total)"
        )
        await self.session.commit()
        logger.info("chat_all_deleted", deleted=deleted)
        return deleted

    async def stats(self) -> ChatStats:
        total = (await self.session.execute(select(func.count(ChatMessage.id)))).scalar_one()
        unread = (
            await self.session.execute(
                select(func.count(ChatMessage.id)).where(ChatMessage.is_read.is_(False))
            )
        ).scalar_one()
        conversations = (
            await self.session.execute(
                select(ChatMessage.username).distinct().order_by(ChatMessage.username)
            )
        ).scalars().all()
        return ChatStats(
            total_messages=int(total or 0),
            unread_messages=int(unread or 0),
            conversations=list(conversations),
        )

    async def prune(self, now: datetime | None = None) -> int:
        """Drop messages older than the retention window."""
        cutoff = (now or datetime.now(UTC)) - timedelta(days=settings.chat_retention_days)
        result = await self.session.execute(
            delete(ChatMessage).where(ChatMessage.created_at < cutoff)
        )
        await self.session.commit()
        deleted = result.rowcount or 0
        if deleted:
            logger.info("chat_messages_pruned", deleted=deleted, cutoff=cutoff.isoformat())
        return deleted
