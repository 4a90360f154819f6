"""
Tests for the UID registration API client.
"""

import httpx
import pytest

from license_portal.models.domain import ExternalOutcome
from license_portal.services.uid_api import UidApiClient

BASE_URL = "https://uid.test/api"


def make_client(handler, api_key: str | None = "key-1") -> UidApiClient:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return UidApiClient(BASE_URL, api_key, http_client=http_client)


@pytest.mark.asyncio
async def test_create_uid_sends_query():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, text="created")

    result = await make_client(handler).create_uid("12345678", 72)

    assert result.success
    assert seen[0].method == "POST"
    params = seen[0].url.params
    assert params["api"] == "key-1"
    assert params["action"] == "create"
    assert params["uid"] == "12345678"
    assert params["duration"] == "72"


@pytest.mark.asyncio
async def test_any_body_counts_on_2xx():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"anything": "goes"})

    result = await make_client(handler).delete_uid("12345678")

    assert result.success


@pytest.mark.asyncio
async def test_error_status_fails_with_body_text():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, text="UID already registered")

    result = await make_client(handler).create_uid("12345678", 24)

    assert result.outcome == ExternalOutcome.FAILED
    assert result.error == "UID already registered"


@pytest.mark.asyncio
async def test_connection_error_fails():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    result = await make_client(handler).create_uid("12345678", 24)

    assert result.outcome == ExternalOutcome.FAILED


@pytest.mark.asyncio
async def test_not_configured_makes_no_request():
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    client = make_client(handler, api_key=None)

    assert not client.is_configured
    result = await client.create_uid("12345678", 24)
    assert result.outcome == ExternalOutcome.NOT_CONFIGURED
    assert result.is_test_mode
