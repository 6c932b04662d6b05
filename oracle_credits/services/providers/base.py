"""Payment provider interface. Implementations wrap one provider SDK or REST API."""

from abc import ABC, abstractmethod
from typing import Literal

from pydantic import BaseModel

from oracle_credits.models.credit_transaction import Provider
from oracle_credits.services.packages import CreditPackage

WebhookEventType = Literal["payment.completed", "payment.failed", "session.expired", "payment.refunded"]


class CheckoutSession(BaseModel):
    session_id: str
    redirect_url: str


class CaptureResult(BaseModel):
    success: bool
    credits: int | None = None
    capture_id: str | None = None
    already_captured: bool = False
    error: str | None = None


class PaymentVerification(BaseModel):
    success: bool
    credits: int | None = None
    status: str | None = None


class WebhookEvent(BaseModel):
    """Provider callback normalised to one shape. payment_id is the id recorded at checkout."""

    type: WebhookEventType
    provider: Provider
    payment_id: str
    user_id: str | None = None
    credits: int | None = None
    amount: int | None = None  # minor units
    currency: str | None = None
    reason: str | None = None


class PaymentProvider(ABC):
    """Abstract payment provider (Stripe, PayPal)."""

    name: Provider

    @abstractmethod
    def is_configured(self) -> bool:
        pass

    @abstractmethod
    async def create_checkout_session(
        self,
        user_id: str,
        user_email: str,
        package: CreditPackage,
        success_url: str,
        cancel_url: str,
    ) -> CheckoutSession:
        """Start a checkout; returns the provider session/order id and where to send the payer."""
        pass

    async def capture_payment(self, order_id: str) -> CaptureResult:
        """Synchronously capture an approved order. Providers without explicit capture refuse."""
        return CaptureResult(success=False, error=f"{self.name.value} does not support explicit capture")

    @abstractmethod
    async def verify_payment(self, payment_id: str) -> PaymentVerification:
        """Ask the provider whether the checkout was paid."""
        pass

    @abstractmethod
    async def verify_webhook(self, payload: bytes, headers: dict[str, str]) -> WebhookEvent | None:
        """
        Check the signature and normalise the event.
        Raises InvalidWebhookError on a bad signature; returns None for event types we do not handle.
        """
        pass
