"""
NOWPayments Crypto Provider Implementation.

NO DICTIONARIES - All data uses strongly typed models.
"""

import time

import httpx
from structlog import get_logger

from license_portal.exceptions import PaymentProviderError
from license_portal.observability.metrics import metrics
from license_portal.services.payment_provider import PaymentIntent, PaymentResult

logger = get_logger(__name__)

SERVICE_NAME = "nowpayments"


class NowPaymentsProvider:
    """
    NOWPayments provider implementation.

    Implements the PaymentProvider protocol. Prices are quoted in USD and
    paid in the configured crypto currency.
    """

    def __init__(
        self,
        api_key: str,
        base_url: str,
        pay_currency: str = "usdttrc20",
        timeout: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.pay_currency = pay_currency
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
        return bool(self.api_key)

    async def create_payment(self, intent: PaymentIntent) -> PaymentResult:
        """
        Create a NOWPayments payment.

        Raises:
            PaymentProviderError: If the API rejects the request or is unreachable
        """
        if not self.is_configured:
            raise PaymentProviderError("Crypto payments are not configured")

        logger.info(
            "creating_crypto_payment",
            order_id=intent.order_id,
            amount_usd=intent.amount_usd,
            credits=intent.credits,
        )
        start = time.perf_counter()
        try:
            response = await self.http_client.post(
                f"{self.base_url}/payment",
                json={
                    "price_amount": intent.amount_usd,
                    "price_currency": "usd",
                    "pay_currency": self.pay_currency,
                    "order_id": intent.order_id,
                    "order_description": intent.description,
                    "ipn_callback_url": intent.callback_url,
                },
                headers={"x-api-key": self.api_key},
            )
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPStatusError as exc:
            metrics.record_external_call(
                SERVICE_NAME, "create_payment", "rejected", time.perf_counter() - start
            )
            logger.error(
                "crypto_payment_rejected",
                status=exc.response.status_code,
                text=exc.response.text,
            )
            raise PaymentProviderError(_error_message(exc.response)) from exc
        except (httpx.HTTPError, ValueError) as exc:
            metrics.record_external_call(
                SERVICE_NAME, "create_payment", "error", time.perf_counter() - start
            )
            logger.error("crypto_payment_failed", error=str(exc))
            raise PaymentProviderError("Payment creation failed") from exc

        metrics.record_external_call(
            SERVICE_NAME, "create_payment", "success", time.perf_counter() - start
        )
        if "payment_id" not in body:
            raise PaymentProviderError("Payment provider returned no payment id")

        logger.info(
            "crypto_payment_created",
            payment_id=str(body["payment_id"]),
            status=body.get("payment_status"),
        )
        return PaymentResult(
            payment_id=str(body["payment_id"]),
            status=str(body.get("payment_status", "waiting")),
            pay_address=body.get("pay_address"),
            pay_amount=body.get("pay_amount"),
            pay_currency=str(body.get("pay_currency", self.pay_currency)),
        )

    async def get_payment_status(self, payment_id: str) -> str:
        """
        Fetch the provider-side status of a payment.

        Raises:
            PaymentProviderError: If the lookup fails
        """
        if not self.is_configured:
            raise PaymentProviderError("Crypto payments are not configured")

        start = time.perf_counter()
        try:
            response = await self.http_client.get(
                f"{self.base_url}/payment/{payment_id}",
                headers={"x-api-key": self.api_key},
            )
            response.raise_for_status()
            body = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            metrics.record_external_call(
                SERVICE_NAME, "payment_status", "error", time.perf_counter() - start
            )
            logger.error("crypto_payment_status_failed", payment_id=payment_id, error=str(exc))
            raise PaymentProviderError("Failed to check payment status") from exc

        metrics.record_external_call(
            SERVICE_NAME, "payment_status", "success", time.perf_counter() - start
        )
        return str(body.get("payment_status", "unknown"))

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return "Payment creation failed"
    if isinstance(body, dict) and body.get("message"):
        return str(body["message"])
    return "Payment creation failed"
