"""
Tests for ClientService - dashboard info, UID bypass and HWID resets.
"""

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from license_portal.exceptions import (
    CooldownActiveError,
    EntitlementDeniedError,
    ResourceConflictError,
    ValidationFailedError,
)
from license_portal.models.domain import DenialReason, ExternalOutcome, ExternalResult
from license_portal.services.clients import ClientService, resolve_download_link
from tests.conftest import make_client, make_product, make_result

OK = ExternalResult(outcome=ExternalOutcome.SUCCESS, data="ok")


def make_genzauth() -> MagicMock:
    genzauth = MagicMock()
    genzauth.reset_hwid = AsyncMock(return_value=OK)
    genzauth.close = AsyncMock()
    return genzauth


def make_service(db_session, client, product=None, genzauth=None, uid_client=None):
    genzauth = genzauth or make_genzauth()
    service = ClientService(db_session, uid_client=uid_client, genzauth_factory=lambda key: genzauth)
    service._lock = AsyncMock(return_value=client)
    service._genzauth_for = AsyncMock(return_value=genzauth)
    service.catalog.find_product = AsyncMock(return_value=product or make_product())
    service.catalog.get_product = AsyncMock(return_value=product or make_product())
    service.activity.log = AsyncMock()
    return service


class TestDownloadLink:
    def test_custom_link_wins(self):
        client = make_client(custom_download_link="https://mine.test/a.zip")
        assert resolve_download_link(client, make_product()) == "https://mine.test/a.zip"

    def test_product_default(self):
        assert resolve_download_link(make_client(), make_product()) == "https://example.com/loader.zip"

    def test_none(self):
        assert resolve_download_link(make_client(), None) is None


class TestHwidReset:
    @pytest.mark.asyncio
    async def test_reset_calls_genzauth(self, db_session, client_principal):
        client = make_client(assigned_username="buyer")
        genzauth = make_genzauth()
        service = make_service(db_session, client, genzauth=genzauth)

        outcome = await service.reset_hwid(client_principal)

        assert outcome.reset_count == 1
        assert outcome.free_resets_left == 4
        assert client.last_hwid_reset_at == outcome.reset_at
        genzauth.reset_hwid.assert_awaited_once_with("buyer")
        genzauth.close.assert_awaited_once()
        db_session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_cooldown(self, db_session, client_principal):
        client = make_client(last_hwid_reset_at=datetime.now(UTC) - timedelta(hours=2), hwid_reset_count=1)
        service = make_service(db_session, client)

        with pytest.raises(CooldownActiveError) as exc_info:
            await service.reset_hwid(client_principal)

        assert exc_info.value.hours_remaining == 22
        assert client.hwid_reset_count == 1

    @pytest.mark.asyncio
    async def test_quota_exhausted(self, db_session, client_principal):
        client = make_client(hwid_reset_count=5)
        service = make_service(db_session, client)

        with pytest.raises(EntitlementDeniedError) as exc_info:
            await service.reset_hwid(client_principal)
        assert exc_info.value.reason == DenialReason.HWID_RESET_QUOTA_EXHAUSTED

    @pytest.mark.asyncio
    async def test_product_disallows(self, db_session, client_principal):
        service = make_service(db_session, make_client(), product=make_product(allow_hwid_reset=False))

        with pytest.raises(EntitlementDeniedError) as exc_info:
            await service.reset_hwid(client_principal)
        assert exc_info.value.reason == DenialReason.HWID_RESET_NOT_ALLOWED

    @pytest.mark.asyncio
    async def test_disabled_client(self, db_session, client_principal):
        service = make_service(db_session, make_client(is_active=False))
        with pytest.raises(EntitlementDeniedError):
            await service.reset_hwid(client_principal)


class TestUidBypass:
    @pytest.mark.asyncio
    async def test_creates_uid_for_reseller(self, db_session, client_principal):
        uid_client = MagicMock()
        uid_client.create_uid = AsyncMock(return_value=OK)
        client = make_client(product_key="UID_BYPASS")
        service = make_service(
            db_session, client, product=make_product("UID_BYPASS"), uid_client=uid_client
        )

        record = await service.create_uid_bypass(client_principal, "123456", 7)

        assert record.username == "reseller:shop"
        assert record.credits_spent == 0
        assert client.assigned_uid == "123456"
        uid_client.create_uid.assert_awaited_once_with("123456", 168)

    @pytest.mark.asyncio
    async def test_wrong_product(self, db_session, client_principal):
        uid_client = MagicMock()
        service = make_service(db_session, make_client(), uid_client=uid_client)

        with pytest.raises(EntitlementDeniedError) as exc_info:
            await service.create_uid_bypass(client_principal, "123456", 7)
        assert exc_info.value.reason == DenialReason.WRONG_ACCOUNT_TYPE

    @pytest.mark.asyncio
    async def test_numeric_uid_only(self, db_session, client_principal):
        service = make_service(db_session, make_client(product_key="UID_BYPASS"), uid_client=MagicMock())
        with pytest.raises(ValidationFailedError):
            await service.create_uid_bypass(client_principal, "abc", 7)

    @pytest.mark.asyncio
    async def test_duplicate_uid(self, db_session, client_principal):
        db_session.execute.return_value = make_result(first=(1,))
        uid_client = MagicMock()
        uid_client.create_uid = AsyncMock(return_value=OK)
        service = make_service(
            db_session,
            make_client(product_key="UID_BYPASS"),
            product=make_product("UID_BYPASS"),
            uid_client=uid_client,
        )

        with pytest.raises(ResourceConflictError):
            await service.create_uid_bypass(client_principal, "123456", 7)
        uid_client.create_uid.assert_not_called()
