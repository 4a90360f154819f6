"""
GenzAuth seller API client.

Every call is a query-string GET carrying the seller key and an operation
`type`. The JSON body's `success` flag decides the outcome; the HTTP status
does not.
"""

import asyncio
import secrets
import string
import time
from typing import Any

import httpx
from structlog import get_logger

from license_portal.models.domain import (
    ExternalOutcome,
    ExternalResult,
    KeyBatchResult,
)
from license_portal.observability.metrics import metrics

logger = get_logger(__name__)

SERVICE_NAME = "genzauth"


def mask_key(seller_key: str | None) -> str:
    """First 8 characters of a credential, for logs."""
    if not seller_key:
        return "none"
    return f"{seller_key[:8]}..."


def generate_placeholder_key() -> str:
    """Clearly labelled stand-in key: TEST-XXXXXXXX-XXXXXXXX-XXXXXXXX."""
    alphabet = string.ascii_uppercase + string.digits
    groups = ["".join(secrets.choice(alphabet) for _ in range(8)) for _ in range(3)]
    return "TEST-" + "-".join(groups)


def extract_license_key(body: dict[str, Any]) -> str | None:
    """GenzAuth returns the new key under one of several shapes."""
    data = body.get("data")
    if isinstance(data, list) and data:
        return str(data[0])
    for field in ("license", "key", "license_key"):
        if body.get(field):
            return str(body[field])
    licenses = body.get("licenses")
    if isinstance(licenses, list) and licenses:
        return str(licenses[0])
    return None


class GenzAuthClient:
    """Thin async wrapper over the GenzAuth seller API."""

    def __init__(
        self,
        seller_key: str | None,
        base_url: str,
        timeout: float = 15.0,
        batch_delay: float = 0.2,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.seller_key = seller_key
        self.base_url = base_url
        self.timeout = timeout
        self.batch_delay = batch_delay
        self._http_client = http_client

    @property
    def http_client(self) -> httpx.AsyncClient:
        """Get HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout)
        return self._http_client

    @property
    def is_configured(self) -> bool:
        return bool(self.seller_key)

    async def _request(self, operation: str, **params: str) -> tuple[ExternalResult, dict[str, Any]]:
        if not self.seller_key:
            logger.warning("genzauth_not_configured", operation=operation)
            metrics.record_external_call(SERVICE_NAME, operation, "not_configured", 0.0)
            return (
                ExternalResult(
                    outcome=ExternalOutcome.NOT_CONFIGURED,
                    error="GenzAuth is not configured",
                ),
                {},
            )

        query = {"sellerkey": self.seller_key, "type": operation, "format": "json", **params}
        start = time.perf_counter()
        try:
            response = await self.http_client.get(self.base_url, params=query)
            body = response.json()
        except httpx.TimeoutException:
            duration = time.perf_counter() - start
            logger.error("genzauth_timeout", operation=operation, seller_key=mask_key(self.seller_key))
            metrics.record_external_call(SERVICE_NAME, operation, "timeout", duration)
            return ExternalResult(outcome=ExternalOutcome.FAILED, error="GenzAuth request timed out"), {}
        except httpx.HTTPError as e:
            duration = time.perf_counter() - start
            logger.error("genzauth_http_error", operation=operation, error=str(e))
            metrics.record_external_call(SERVICE_NAME, operation, "error", duration)
            return ExternalResult(outcome=ExternalOutcome.FAILED, error=str(e)), {}
        except ValueError:
            duration = time.perf_counter() - start
            logger.error("genzauth_invalid_body", operation=operation, status=response.status_code)
            metrics.record_external_call(SERVICE_NAME, operation, "invalid_body", duration)
            return (
                ExternalResult(outcome=ExternalOutcome.FAILED, error="Invalid response from GenzAuth"),
                {},
            )

        duration = time.perf_counter() - start
        if not isinstance(body, dict):
            metrics.record_external_call(SERVICE_NAME, operation, "invalid_body", duration)
            return (
                ExternalResult(outcome=ExternalOutcome.FAILED, error="Invalid response from GenzAuth"),
                {},
            )

        if body.get("success"):
            metrics.record_external_call(SERVICE_NAME, operation, "success", duration)
            logger.info("genzauth_call_succeeded", operation=operation)
            return ExternalResult(outcome=ExternalOutcome.SUCCESS, data=body.get("message")), body

        error = str(body.get("message") or body.get("error") or "GenzAuth request failed")
        metrics.record_external_call(SERVICE_NAME, operation, "rejected", duration)
        logger.warning("genzauth_call_rejected", operation=operation, error=error)
        return ExternalResult(outcome=ExternalOutcome.FAILED, error=error), body

    async def create_license(self, days: int, amount: int = 1) -> ExternalResult:
        """Create a license key; `data` carries the key on success."""
        result, body = await self._request("add", expiry=str(days), amount=str(amount))
        if not result.success:
            return result

        key = extract_license_key(body)
        if key is None:
            logger.error("genzauth_no_key_in_response")
            return ExternalResult(
                outcome=ExternalOutcome.FAILED, error="No key returned from GenzAuth API"
            )
        return ExternalResult(outcome=ExternalOutcome.SUCCESS, data=key)

    async def create_licenses(
        self, days: int, quantity: int, allow_placeholder: bool = False
    ) -> KeyBatchResult:
        """
        Create keys one at a time with a short pause between calls.

        With `allow_placeholder`, an unconfigured service yields labelled
        TEST- keys instead of failures.
        """
        keys: list[ExternalResult] = []
        failures: list[str] = []

        for index in range(quantity):
            if index > 0 and self.batch_delay:
                await asyncio.sleep(self.batch_delay)

            result = await self.create_license(days)
            if result.success:
                keys.append(result)
            elif result.outcome == ExternalOutcome.NOT_CONFIGURED and allow_placeholder:
                keys.append(
                    ExternalResult(
                        outcome=ExternalOutcome.SUCCESS,
                        data=generate_placeholder_key(),
                        is_placeholder=True,
                    )
                )
            elif result.outcome == ExternalOutcome.NOT_CONFIGURED:
                # Every remaining call would fail the same way
                failures.extend([result.error or "GenzAuth is not configured"] * (quantity - index))
                break
            else:
                failures.append(result.error or "Unknown error")

        return KeyBatchResult(keys=tuple(keys), failures=tuple(failures))

    async def delete_license(self, license_key: str) -> ExternalResult:
        result, _ = await self._request("del", license=license_key)
        return result

    async def create_user(self, username: str, password: str, days: int) -> ExternalResult:
        result, _ = await self._request(
            "createuser", username=username, password=password, expiry=str(days)
        )
        return result

    async def delete_user(self, username: str) -> ExternalResult:
        result, _ = await self._request("deluser", user=username)
        return result

    async def reset_hwid(self, username: str) -> ExternalResult:
        result, _ = await self._request("resethwid", user=username)
        return result

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
