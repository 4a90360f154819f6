"""
UID registration API client.

Calls `POST {base_url}?api={key}&action=create|delete&uid=..&duration=..`.
The body is not part of the contract: any JSON or text is accepted and the
HTTP status alone decides success.
"""

import time

import httpx
from structlog import get_logger

from license_portal.models.domain import ExternalOutcome, ExternalResult
from license_portal.observability.metrics import metrics

logger = get_logger(__name__)

SERVICE_NAME = "uid_api"


class UidApiClient:
    """Thin async wrapper over the UID registration API."""

    def __init__(
        self,
        base_url: str | None,
        api_key: str | None,
        timeout: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url
        self.api_key = api_key
        self.timeout = timeout
        self._http_client = http_client

    @property
    def http_client(self) -> httpx.AsyncClient:
        """Get HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout)
        return self._http_client

    @property
    def is_configured(self) -> bool:
        return bool(self.base_url and self.api_key)

    async def _call(self, action: str, **params: str) -> ExternalResult:
        if not self.is_configured:
            logger.warning("uid_api_not_configured", action=action)
            metrics.record_external_call(SERVICE_NAME, action, "not_configured", 0.0)
            return ExternalResult(
                outcome=ExternalOutcome.NOT_CONFIGURED,
                error="UID API is not configured",
            )

        assert self.base_url is not None and self.api_key is not None
        query = {"api": self.api_key, "action": action, **params}
        start = time.perf_counter()
        try:
            response = await self.http_client.post(self.base_url, params=query)
            response.raise_for_status()
        except httpx.TimeoutException:
            metrics.record_external_call(
                SERVICE_NAME, action, "timeout", time.perf_counter() - start
            )
            logger.error("uid_api_timeout", action=action, uid=params.get("uid"))
            return ExternalResult(outcome=ExternalOutcome.FAILED, error="UID API request timed out")
        except httpx.HTTPStatusError as e:
            metrics.record_external_call(
                SERVICE_NAME, action, "rejected", time.perf_counter() - start
            )
            logger.warning(
                "uid_api_rejected",
                action=action,
                uid=params.get("uid"),
                status=e.response.status_code,
            )
            message = e.response.text.strip() or f"UID API returned {e.response.status_code}"
            return ExternalResult(outcome=ExternalOutcome.FAILED, error=message)
        except httpx.HTTPError as e:
            metrics.record_external_call(SERVICE_NAME, action, "error", time.perf_counter() - start)
            logger.error("uid_api_error", action=action, error=str(e))
            return ExternalResult(outcome=ExternalOutcome.FAILED, error=str(e))

        metrics.record_external_call(SERVICE_NAME, action, "success", time.perf_counter() - start)
        logger.info("uid_api_call_succeeded", action=action, uid=params.get("uid"))
        return ExternalResult(outcome=ExternalOutcome.SUCCESS, data=response.text)

    async def create_uid(self, uid: str, duration_hours: int) -> ExternalResult:
        return await self._call("create", uid=uid, duration=str(duration_hours))

    async def delete_uid(self, uid: str) -> ExternalResult:
        return await self._call("delete", uid=uid)

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
