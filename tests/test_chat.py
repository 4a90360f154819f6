"""
Tests for ChatService.
"""

from unittest.mock import AsyncMock

import pytest

from license_portal.exceptions import ValidationFailedError
from license_portal.services.chat import SENDER_ADMIN, SENDER_USER, ChatService
from tests.conftest import make_result


class TestSend:
    @pytest.mark.asyncio
    async def test_user_message_goes_to_own_conversation(self, db_session, user_principal):
        message = await ChatService(db_session).send(user_principal, "  hello  ")

        assert message.username == "alice"
        assert message.sender == SENDER_USER
        assert message.body == "hello"
        db_session.add.assert_called_once_with(message)
        db_session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_client_conversation_is_tagged(self, db_session, client_principal):
        message = await ChatService(db_session).send(client_principal, "help")
        assert message.username == "client:buyer"

    @pytest.mark.asyncio
    async def test_admin_must_pick_conversation(self, db_session, admin_principal):
        with pytest.raises(ValidationFailedError):
            await ChatService(db_session).send(admin_principal, "hi")

    @pytest.mark.asyncio
    async def test_admin_reply(self, db_session, admin_principal):
        message = await ChatService(db_session).send(admin_principal, "hi", to_username="alice")
        assert message.username == "alice"
        assert message.sender == SENDER_ADMIN
        assert message.sender_name == "boss"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", ["", "   ", "x" * 2001])
    async def test_rejects_bad_bodies(self, db_session, user_principal, body):
        with pytest.raises(ValidationFailedError):
            await ChatService(db_session).send(user_principal, body)
        db_session.add.assert_not_called()


class TestReadAndHistory:
    @pytest.mark.asyncio
    async def test_history_is_oldest_first(self, db_session, user_principal):
        db_session.execute.return_value = make_result(rows=["newest", "older", "oldest"])

        messages = await ChatService(db_session).history(user_principal)

        assert messages == ["oldest", "older", "newest"]

    @pytest.mark.asyncio
    async def test_mark_read_returns_rowcount(self, db_session, user_principal):
        db_session.execute.return_value = make_result(rows=[1, 2])

        assert await ChatService(db_session).mark_read(user_principal) == 2


class TestAdminOperations:
    @pytest.mark.asyncio
    async def test_delete_conversation(self, db_session, admin_principal):
        service = ChatService(db_session)
        db_session.execute.return_value = make_result(rows=[1, 2, 3])

        deleted = await service.delete_conversation(admin_principal, "alice")

        assert deleted == 3
        db_session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_stats(self, db_session):
        db_session.execute = AsyncMock(
            side_effect=[
                make_result(scalar=10),
                make_result(scalar=4),
                make_result(rows=["alice", "client:buyer"]),
            ]
        )

        stats = await ChatService(db_session).stats()

        assert stats.total_messages == 10
        assert stats.unread_messages == 4
        assert stats.conversations == ["alice", "client:buyer"]

    @pytest.mark.asyncio
    async def test_prune(self, db_session):
        db_session.execute.return_value = make_result(rows=[1])
        assert await ChatService(db_session).prune() == 1
