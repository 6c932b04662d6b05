"""PayPal Orders v2 over REST: create order, synchronous capture, webhook signature check."""

import json
from typing import Any

import httpx

from oracle_credits.core.config import get_settings
from oracle_credits.core.exceptions import InvalidWebhookError, ProviderNotConfiguredError
from oracle_credits.core.logging import get_logger
from oracle_credits.models.credit_transaction import Provider
from oracle_credits.services.packages import CreditPackage
from oracle_credits.services.providers.base import (
    CaptureResult,
    CheckoutSession,
    PaymentProvider,
    PaymentVerification,
    WebhookEvent,
)

log = get_logger(__name__)

LIVE_API = "https://api-m.paypal.com"
SANDBOX_API = "https://api-m.sandbox.paypal.com"
REQUEST_TIMEOUT = 15.0
_HANDLED_EVENTS = (
    "PAYMENT.CAPTURE.COMPLETED",
    "PAYMENT.CAPTURE.DENIED",
    "PAYMENT.CAPTURE.REFUNDED",
    "PAYMENT.CAPTURE.REVERSED",
)


def _custom_credits(custom_id: str | None) -> int | None:
    if not custom_id:
        return None
    try:
        return int(json.loads(custom_id).get("credits"))
    except (ValueError, TypeError, AttributeError):
        log.warning("paypal_custom_id_unparseable", custom_id=custom_id)
        return None


class PayPalProvider(PaymentProvider):
    name = Provider.PAYPAL

    def __init__(self, transport: httpx.AsyncBaseTransport | None = None):
        self._transport = transport

    @property
    def api_base(self) -> str:
        return LIVE_API if get_settings().paypal_live else SANDBOX_API

    def is_configured(self) -> bool:
        settings = get_settings()
        return bool(settings.paypal_client_id and settings.paypal_client_secret)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.api_base, timeout=REQUEST_TIMEOUT, transport=self._transport)

    async def _access_token(self, client: httpx.AsyncClient) -> str:
        settings = get_settings()
        r = await client.post(
            "/v1/oauth2/token",
            auth=(settings.paypal_client_id, settings.paypal_client_secret),
            data={"grant_type": "client_credentials"},
        )
        r.raise_for_status()
        return r.json()["access_token"]

    async def _request(self, method: str, path: str, body: dict[str, Any] | None = None) -> dict[str, Any]:
        if not self.is_configured():
            raise ProviderNotConfiguredError("PayPal")
        async with self._client() as client:
            token = await self._access_token(client)
            r = await client.request(
                method,
                path,
                json=body,
                headers={"Authorization": f"Bearer {token}", "Content-Type": "application/json"},
            )
            r.raise_for_status()
            return r.json()

    async def create_checkout_session(
        self,
        user_id: str,
        user_email: str,
        package: CreditPackage,
        success_url: str,
        cancel_url: str,
    ) -> CheckoutSession:
        order = await self._request("POST", "/v2/checkout/orders", {
            "intent": "CAPTURE",
            "purchase_units": [{
                "amount": {"currency_code": package.currency, "value": f"{package.price_cents / 100:.2f}"},
                "description": f"{package.credits} credits",
                "custom_id": json.dumps({"user_id": user_id, "package_id": package.id, "credits": package.credits}),
            }],
            "application_context": {
                "landing_page": "LOGIN",
                "user_action": "PAY_NOW",
                "return_url": success_url,
                "cancel_url": cancel_url,
            },
        })
        approval = next((link["href"] for link in order.get("links", []) if link.get("rel") == "approve"), None)
        if not approval:
            raise RuntimeError("PayPal did not return an approval URL")
        return CheckoutSession(session_id=order["id"], redirect_url=approval)

    async def capture_payment(self, order_id: str) -> CaptureResult:
        try:
            data = await self._request("POST", f"/v2/checkout/orders/{order_id}/capture")
        except httpx.HTTPStatusError as e:
            if e.response.status_code == 422 and "ORDER_ALREADY_CAPTURED" in e.response.text:
                return await self._already_captured(order_id)
            log.warning("paypal_capture_rejected", order_id=order_id, status=e.response.status_code)
            return CaptureResult(success=False, error=f"PayPal returned {e.response.status_code}")
        except httpx.HTTPError as e:
            log.warning("paypal_capture_error", order_id=order_id, error=str(e))
            return CaptureResult(success=False, error="Failed to capture PayPal payment")
        if data.get("status") != "COMPLETED":
            return CaptureResult(success=False, error=f"Payment status: {data.get('status')}")
        unit = (data.get("purchase_units") or [{}])[0]
        captures = (unit.get("payments") or {}).get("captures") or [{}]
        custom_id = captures[0].get("custom_id") or unit.get("custom_id")
        return CaptureResult(success=True, credits=_custom_credits(custom_id), capture_id=captures[0].get("id"))

    async def _already_captured(self, order_id: str) -> CaptureResult:
        """A repeated capture: succeed only if the order really holds a completed capture."""
        verification = await self.verify_payment(order_id)
        if not verification.success:
            return CaptureResult(success=False, error=f"Payment status: {verification.status}")
        log.info("paypal_order_already_captured", order_id=order_id)
        return CaptureResult(success=True, credits=verification.credits, already_captured=True)

    async def verify_payment(self, payment_id: str) -> PaymentVerification:
        try:
            order = await self._request("GET", f"/v2/checkout/orders/{payment_id}")
        except httpx.HTTPError as e:
            log.warning("paypal_verify_error", order_id=payment_id, error=str(e))
            return PaymentVerification(success=False, status="ERROR")
        status = order.get("status")
        # APPROVED means the payer agreed; the money moves only once the order is captured.
        if status == "COMPLETED":
            unit = (order.get("purchase_units") or [{}])[0]
            return PaymentVerification(success=True, credits=_custom_credits(unit.get("custom_id")), status=status)
        return PaymentVerification(success=False, status=status)

    async def _signature_valid(self, event: dict[str, Any], headers: dict[str, str]) -> bool:
        settings = get_settings()
        try:
            data = await self._request("POST", "/v1/notifications/verify-webhook-signature", {
                "auth_algo": headers.get("paypal-auth-algo"),
                "cert_url": headers.get("paypal-cert-url"),
                "transmission_id": headers.get("paypal-transmission-id"),
                "transmission_sig": headers.get("paypal-transmission-sig"),
                "transmission_time": headers.get("paypal-transmission-time"),
                "webhook_id": settings.paypal_webhook_id,
                "webhook_event": event,
            })
        except httpx.HTTPError as e:
            log.warning("paypal_webhook_verify_error", error=str(e))
            return False
        return data.get("verification_status") == "SUCCESS"

    async def verify_webhook(self, payload: bytes, headers: dict[str, str]) -> WebhookEvent | None:
        if not self.is_configured() or not get_settings().paypal_webhook_id:
            raise ProviderNotConfiguredError("PayPal")
        try:
            event = json.loads(payload)
        except ValueError as e:
            raise InvalidWebhookError("Invalid payload") from e
        if not await self._signature_valid(event, headers):
            raise InvalidWebhookError("Invalid signature")

        event_type = event.get("event_type")
        if event_type not in _HANDLED_EVENTS:
            # Includes CHECKOUT.ORDER.APPROVED: credits follow the capture, not the approval.
            log.info("paypal_webhook_ignored", event_type=event_type)
            return None
        resource = event.get("resource") or {}
        # Capture and refund resources carry the order id under related_ids.
        order_id = ((resource.get("supplementary_data") or {}).get("related_ids") or {}).get("order_id")
        if not order_id:
            log.info("paypal_webhook_without_order", event_type=event_type)
            return None

        if event_type == "PAYMENT.CAPTURE.COMPLETED":
            return WebhookEvent(type="payment.completed", provider=self.name, payment_id=order_id)
        if event_type == "PAYMENT.CAPTURE.DENIED":
            return WebhookEvent(type="payment.failed", provider=self.name, payment_id=order_id, reason="capture_denied")
        return WebhookEvent(type="payment.refunded", provider=self.name, payment_id=order_id, reason=event_type.lower())
