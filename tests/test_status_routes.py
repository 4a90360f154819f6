"""
Tests for Status API Routes.

Health reports database reachability and which upstreams are configured.
"""

from unittest.mock import AsyncMock

import pytest

from license_portal.api.status_routes import STATUS_DEGRADED, STATUS_OK, check_database
from license_portal.db.models import ApiConfig
from tests.conftest import make_result


class TestCheckDatabase:
    @pytest.mark.asyncio
    async def test_reachable(self, db_session):
        assert await check_database(db_session) is True

    @pytest.mark.asyncio
    async def test_unreachable(self, db_session):
        db_session.execute = AsyncMock(side_effect=ConnectionError("refused"))
        assert await check_database(db_session) is False


class TestHealthEndpoint:
    def test_ok(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == STATUS_OK
        assert body["database"] == "connected"
        assert body["payments_configured"] is False

    def test_stored_config_counts_as_configured(self, client, db_session):
        row = ApiConfig(
            id=1,
            base_url="https://uid.example.com",
            api_key="uid-key",
            genzauth_seller_key="seller",
        )
        db_session.execute.return_value = make_result(scalar=row)

        body = client.get("/health").json()

        assert body["uid_api_configured"] is True
        assert body["genzauth_configured"] is True

    def test_degraded(self, client, db_session):
        db_session.execute = AsyncMock(side_effect=ConnectionError("refused"))

        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == STATUS_DEGRADED
        assert response.json()["database"] == "unreachable"
