"""
Tests for the application entry point - root, metrics, validation errors
and the device fingerprint middleware.
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from license_portal.api.dependencies import get_session_tokens
from license_portal.config import settings
from license_portal.models.domain import PrincipalKind, Role
from license_portal.services.fingerprint import DEVICE_CHANGED_REDIRECT, compute_fingerprint
from tests.conftest import make_result, make_user


class TestRootEndpoints:
    def test_root(self, client):
        response = client.get("/")
        assert response.status_code == 200
        assert response.json()["status"] == "running"

    def test_metrics(self, client):
        response = client.get("/metrics")
        assert response.status_code == 200
        assert "portal_http_requests_total" in response.text


class TestValidationHandler:
    def test_sanitized_errors(self, client, as_principal, user_principal):
        as_principal(user_principal)
        response = client.post("/api/keys", json={"package": "7day", "quantity": 0})

        assert response.status_code == 422
        error = response.json()["detail"][0]
        assert set(error) >= {"type", "loc", "msg"}
        assert error["loc"][-1] == "quantity"


def session_factory_returning(user) -> MagicMock:
    session = AsyncMock()
    session.execute = AsyncMock(return_value=make_result(scalar=user))
    context = MagicMock()
    context.__aenter__ = AsyncMock(return_value=session)
    context.__aexit__ = AsyncMock(return_value=False)
    return MagicMock(return_value=MagicMock(return_value=context))


class TestDeviceFingerprintMiddleware:
    @pytest.fixture
    def user_cookie(self, client):
        token = get_session_tokens().issue(PrincipalKind.USER, "alice")
        client.cookies.set(settings.session_cookie_name, token)
        return client

    def test_other_device_is_signed_out(self, user_cookie):
        user = make_user(device_fingerprint=compute_fingerprint("Phone/1.0"))
        with patch(
            "license_portal.main.get_write_session_factory", session_factory_returning(user)
        ):
            response = user_cookie.get(
                "/dashboard", headers={"user-agent": "Desktop/2.0"}, follow_redirects=False
            )

        assert response.status_code == 303
        assert response.headers["location"] == DEVICE_CHANGED_REDIRECT

    def test_same_device_passes(self, user_cookie):
        user = make_user(device_fingerprint=compute_fingerprint("Phone/1.0"))
        with patch(
            "license_portal.main.get_write_session_factory", session_factory_returning(user)
        ):
            response = user_cookie.get(
                "/dashboard", headers={"user-agent": "Phone/1.0"}, follow_redirects=False
            )

        assert response.status_code == 404

    def test_staff_are_exempt(self, user_cookie):
        user = make_user(role=Role.OWNER, device_fingerprint=compute_fingerprint("Phone/1.0"))
        with patch(
            "license_portal.main.get_write_session_factory", session_factory_returning(user)
        ):
            response = user_cookie.get(
                "/dashboard", headers={"user-agent": "Desktop/2.0"}, follow_redirects=False
            )

        assert response.status_code == 404

    def test_api_paths_never_checked(self, user_cookie):
        factory = session_factory_returning(make_user())
        with patch("license_portal.main.get_write_session_factory", factory):
            user_cookie.get("/api/uids", follow_redirects=False)
        factory.assert_not_called()
