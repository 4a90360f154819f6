"""
Tests for ResellerService and seller-key resolution.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from license_portal.db.models import ReconciliationRecord
from license_portal.exceptions import (
    AuthorizationError,
    EntitlementDeniedError,
    InsufficientCreditsError,
    ProvisioningNotConfiguredError,
    ReconciliationRequiredError,
    ResourceConflictError,
    UpstreamError,
    ValidationFailedError,
    WriteVerificationError,
)
from license_portal.models.domain import DenialReason, ExternalOutcome, ExternalResult
from license_portal.services.credentials import resolve_seller_key
from license_portal.services.resellers import ResellerService, reseller_tag
from tests.conftest import make_client, make_product, make_reseller

OK = ExternalResult(outcome=ExternalOutcome.SUCCESS, data="LIC-1")


def make_genzauth(result: ExternalResult = OK) -> MagicMock:
    client = MagicMock()
    client.create_user = AsyncMock(return_value=result)
    client.create_license = AsyncMock(return_value=result)
    client.close = AsyncMock()
    return client


def make_service(db_session, reseller, product=None, genzauth=None, uid_client=None, seller_key="sk"):
    genzauth = genzauth or make_genzauth()
    service = ResellerService(db_session, uid_client=uid_client, genzauth_factory=lambda key: genzauth)
    service._lock = AsyncMock(return_value=reseller)
    service._client_exists = AsyncMock(return_value=False)
    service._uid_taken = AsyncMock(return_value=False)
    service.catalog.get_product = AsyncMock(return_value=product or make_product())
    service.catalog.find_product = AsyncMock(return_value=product or make_product())
    service.api_config.resolve_seller_key = AsyncMock(return_value=seller_key)
    service.activity.log = AsyncMock()
    return service


class TestSellerKeyResolution:
    def test_most_specific_wins(self):
        assert resolve_seller_key("reseller", "product", "global", "env") == "reseller"
        assert resolve_seller_key(None, "product", "global", "env") == "product"
        assert resolve_seller_key("", None, "global", "env") == "global"
        assert resolve_seller_key(None, None, None, "env") == "env"
        assert resolve_seller_key() is None


class TestCreateClient:
    @pytest.mark.asyncio
    async def test_aimkill_client(self, db_session, reseller_principal):
        reseller = make_reseller(credits=50)
        genzauth = make_genzauth()
        service = make_service(db_session, reseller, genzauth=genzauth)

        creation = await service.create_client(
            reseller_principal, "Buyer1", "AIMKILL", "7day", password="secret1"
        )

        assert creation.client.username == "buyer1"
        assert creation.client.created_by == "reseller:shop"
        assert creation.client.assigned_username == "buyer1"
        assert creation.genzauth_created
        assert creation.warning is None
        assert reseller.credits == 35
        assert creation.credits_remaining == 35
        assert reseller.total_clients_created == 1
        genzauth.create_user.assert_awaited_once_with("buyer1", "secret1", 7)
        db_session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_genzauth_failure_is_a_warning(self, db_session, reseller_principal):
        reseller = make_reseller(credits=50)
        genzauth = make_genzauth(ExternalResult(outcome=ExternalOutcome.FAILED, error="user exists"))
        service = make_service(db_session, reseller, genzauth=genzauth)

        creation = await service.create_client(
            reseller_principal, "buyer1", "AIMKILL", "1day", password="secret1"
        )

        assert not creation.genzauth_created
        assert "user exists" in (creation.warning or "")
        assert reseller.credits == 47

    @pytest.mark.asyncio
    async def test_unassigned_product(self, db_session, reseller_principal):
        reseller = make_reseller(assigned_products=["UID_BYPASS"])
        service = make_service(db_session, reseller)

        with pytest.raises(EntitlementDeniedError) as exc_info:
            await service.create_client(reseller_principal, "buyer1", "AIMKILL", "1day", password="secret1")
        assert exc_info.value.reason == DenialReason.PRODUCT_NOT_ASSIGNED

    @pytest.mark.asyncio
    async def test_insufficient_credits(self, db_session, reseller_principal):
        service = make_service(db_session, make_reseller(credits=2))

        with pytest.raises(InsufficientCreditsError):
            await service.create_client(reseller_principal, "buyer1", "AIMKILL", "1day", password="secret1")
        db_session.add.assert_not_called()

    @pytest.mark.asyncio
    async def test_duplicate_client(self, db_session, reseller_principal):
        service = make_service(db_session, make_reseller())
        service._client_exists.return_value = True

        with pytest.raises(ResourceConflictError):
            await service.create_client(reseller_principal, "buyer1", "AIMKILL", "1day", password="secret1")

    @pytest.mark.asyncio
    async def test_password_required_without_auto(self, db_session, reseller_principal):
        service = make_service(db_session, make_reseller())
        with pytest.raises(ValidationFailedError):
            await service.create_client(reseller_principal, "buyer1", "AIMKILL", "1day")

    @pytest.mark.asyncio
    async def test_auto_password(self, db_session, reseller_principal):
        service = make_service(db_session, make_reseller())

        creation = await service.create_client(
            reseller_principal, "buyer1", "AIMKILL", "1day", auto_password=True
        )

        assert creation.auto_generated
        assert len(creation.password) == 10

    @pytest.mark.asyncio
    async def test_uid_failure_rolls_back_client(self, db_session, reseller_principal):
        reseller = make_reseller(credits=50)
        uid_client = MagicMock()
        uid_client.create_uid = AsyncMock(
            return_value=ExternalResult(outcome=ExternalOutcome.FAILED, error="taken upstream")
        )
        product = make_product("UID_BYPASS")
        service = make_service(db_session, reseller, product=product, uid_client=uid_client)

        with pytest.raises(UpstreamError):
            await service.create_client(
                reseller_principal, "buyer1", "UID_BYPASS", "1day", password="secret1", assigned_uid="123456"
            )

        assert reseller.credits == 50
        db_session.delete.assert_awaited_once()
        db_session.rollback.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_unconfigured_uid_api_rolls_back_client(self, db_session, reseller_principal):
        reseller = make_reseller(credits=50)
        uid_client = MagicMock()
        uid_client.create_uid = AsyncMock(
            return_value=ExternalResult(
                outcome=ExternalOutcome.NOT_CONFIGURED, error="UID API is not configured"
            )
        )
        service = make_service(
            db_session, reseller, product=make_product("UID_BYPASS"), uid_client=uid_client
        )

        with pytest.raises(ProvisioningNotConfiguredError):
            await service.create_client(
                reseller_principal, "buyer1", "UID_BYPASS", "1day", password="secret1", assigned_uid="123456"
            )

        assert reseller.credits == 50
        db_session.delete.assert_awaited_once()
        db_session.rollback.assert_awaited_once()
        db_session.commit.assert_not_called()

    @pytest.mark.asyncio
    async def test_missing_uid_client_is_not_configured(self, db_session, reseller_principal):
        service = make_service(db_session, make_reseller(), product=make_product("UID_BYPASS"))

        with pytest.raises(ProvisioningNotConfiguredError):
            await service.create_client(
                reseller_principal, "buyer1", "UID_BYPASS", "1day", password="secret1", assigned_uid="123456"
            )
        db_session.delete.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_commit_failure_after_genzauth_user_is_reconciled(self, db_session, reseller_principal):
        db_session.commit.side_effect = [OperationalError("COMMIT", {}, Exception("lost")), None]
        service = make_service(db_session, make_reseller(credits=50))

        with pytest.raises(ReconciliationRequiredError):
            await service.create_client(reseller_principal, "buyer1", "AIMKILL", "1day", password="secret1")

        reconciliation = db_session.add.call_args[0][0]
        assert isinstance(reconciliation, ReconciliationRecord)
        assert reconciliation.service == "genzauth"
        assert reconciliation.identifier == "buyer1"

    @pytest.mark.asyncio
    async def test_commit_failure_without_upstream_account_is_not_reconciled(
        self, db_session, reseller_principal
    ):
        db_session.commit.side_effect = OperationalError("COMMIT", {}, Exception("lost"))
        genzauth = make_genzauth(ExternalResult(outcome=ExternalOutcome.FAILED, error="user exists"))
        service = make_service(db_session, make_reseller(credits=50), genzauth=genzauth)

        with pytest.raises(WriteVerificationError):
            await service.create_client(reseller_principal, "buyer1", "AIMKILL", "1day", password="secret1")

        added = [call.args[0] for call in db_session.add.call_args_list]
        assert not any(isinstance(row, ReconciliationRecord) for row in added)
        db_session.rollback.assert_awaited_once()
        db_session.commit.assert_awaited_once()


class TestDeleteClient:
    @pytest.mark.asyncio
    async def test_only_own_clients(self, db_session, reseller_principal):
        db_session.get.return_value = make_client(created_by="reseller:other")
        service = make_service(db_session, make_reseller())

        with pytest.raises(AuthorizationError):
            await service.delete_client(reseller_principal, 7)
        db_session.delete.assert_not_called()

    @pytest.mark.asyncio
    async def test_deletes_own_client(self, db_session, reseller_principal):
        client = make_client(created_by=reseller_tag("shop"))
        db_session.get.return_value = client
        service = make_service(db_session, make_reseller())

        await service.delete_client(reseller_principal, 7)

        db_session.delete.assert_awaited_once_with(client)


class TestLicenseKeys:
    @pytest.mark.asyncio
    async def test_generate_key(self, db_session, reseller_principal):
        reseller = make_reseller(credits=50)
        service = make_service(db_session, reseller)

        record = await service.generate_license_key(reseller_principal, 30)

        assert record.license_key == "LIC-1"
        assert record.username == "reseller:shop"
        assert reseller.credits == 50 - record.credits_spent

    @pytest.mark.asyncio
    async def test_no_products_assigned(self, db_session, reseller_principal):
        service = make_service(db_session, make_reseller(assigned_products=[]))
        with pytest.raises(AuthorizationError):
            await service.generate_license_key(reseller_principal, 30)

    @pytest.mark.asyncio
    async def test_missing_seller_key(self, db_session, reseller_principal):
        service = make_service(db_session, make_reseller(), seller_key=None)
        with pytest.raises(ProvisioningNotConfiguredError):
            await service.generate_license_key(reseller_principal, 30)

    @pytest.mark.asyncio
    async def test_invalid_days(self, db_session, reseller_principal):
        service = make_service(db_session, make_reseller())
        with pytest.raises(ValidationFailedError):
            await service.generate_license_key(reseller_principal, 0)
