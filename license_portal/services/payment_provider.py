"""
Payment Provider Protocol - Provider-agnostic interface.

NO DICTIONARIES - All data uses strongly typed models.
"""

from dataclasses import dataclass
from typing import Protocol

# Statuses after which the payment will never change again and credits are owed
COMPLETED_STATUSES = frozenset({"finished", "confirmed"})
FAILED_STATUSES = frozenset({"failed", "expired", "refunded"})


@dataclass(frozen=True)
class PaymentIntent:
    """A request to collect money for a credit purchase."""

    amount_usd: float
    credits: int
    order_id: str
    description: str
    callback_url: str


@dataclass(frozen=True)
class PaymentResult:
    """Returned after the provider accepted a payment request."""

    payment_id: str
    status: str
    pay_address: str | None
    pay_amount: float | None
    pay_currency: str


@dataclass(frozen=True)
class WebhookEvent:
    """A payment status notification."""

    payment_id: str
    status: str

    @property
    def is_completed(self) -> bool:
        return self.status in COMPLETED_STATUSES

    @property
    def is_failed(self) -> bool:
        return self.status in FAILED_STATUSES


class PaymentProvider(Protocol):
    """
    Payment provider protocol.

    The crypto processor implements this; tests substitute fakes.
    """

    @property
    def is_configured(self) -> bool: ...

    async def create_payment(self, intent: PaymentIntent) -> PaymentResult:
        """
        Create a payment with the provider.

        Raises:
            PaymentProviderError: If payment creation fails
        """
        ...

    async def get_payment_status(self, payment_id: str) -> str:
        """
        Current provider-side status of a payment.

        Raises:
            PaymentProviderError: If the lookup fails
        """
        ...
