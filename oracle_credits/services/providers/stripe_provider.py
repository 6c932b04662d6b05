"""Stripe Checkout: hosted session, asynchronous webhook, redirect-time verify."""

import asyncio

import stripe

from oracle_credits.core.config import get_settings
from oracle_credits.core.exceptions import InvalidWebhookError, ProviderNotConfiguredError
from oracle_credits.core.logging import get_logger
from oracle_credits.models.credit_transaction import Provider
from oracle_credits.services.packages import CreditPackage
from oracle_credits.services.providers.base import (
    CheckoutSession,
    PaymentProvider,
    PaymentVerification,
    WebhookEvent,
)

log = get_logger(__name__)


def get_stripe():
    """Configured Stripe module."""
    settings = get_settings()
    stripe.api_key = settings.stripe_secret_key
    return stripe


def _int_or_none(value) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class StripeProvider(PaymentProvider):
    name = Provider.STRIPE

    def is_configured(self) -> bool:
        return bool(get_settings().stripe_secret_key)

    async def create_checkout_session(
        self,
        user_id: str,
        user_email: str,
        package: CreditPackage,
        success_url: str,
        cancel_url: str,
    ) -> CheckoutSession:
        if not self.is_configured():
            raise ProviderNotConfiguredError("Stripe")
        client = get_stripe()
        session = await asyncio.to_thread(
            client.checkout.Session.create,
            payment_method_types=["card"],
            mode="payment",
            customer_email=user_email or None,
            line_items=[{
                "price_data": {
                    "currency": package.currency.lower(),
                    "product_data": {
                        "name": package.name,
                        "description": f"{package.credits} credits",
                    },
                    "unit_amount": package.price_cents,
                },
                "quantity": 1,
            }],
            success_url=success_url + "?session_id={CHECKOUT_SESSION_ID}",
            cancel_url=cancel_url,
            client_reference_id=user_id,
            metadata={
                "user_id": user_id,
                "package_id": package.id,
                "credits": str(package.credits),
            },
        )
        return CheckoutSession(session_id=session.id, redirect_url=session.url)

    async def verify_payment(self, payment_id: str) -> PaymentVerification:
        if not self.is_configured():
            raise ProviderNotConfiguredError("Stripe")
        client = get_stripe()
        session = await asyncio.to_thread(client.checkout.Session.retrieve, payment_id)
        metadata = session.metadata or {}
        if session.payment_status == "paid":
            return PaymentVerification(success=True, credits=_int_or_none(metadata.get("credits")), status="paid")
        return PaymentVerification(success=False, status=session.payment_status)

    async def verify_webhook(self, payload: bytes, headers: dict[str, str]) -> WebhookEvent | None:
        settings = get_settings()
        if not self.is_configured() or not settings.stripe_webhook_secret:
            raise ProviderNotConfiguredError("Stripe")
        client = get_stripe()
        try:
            event = client.Webhook.construct_event(
                payload, headers.get("stripe-signature", ""), settings.stripe_webhook_secret
            )
        except ValueError as e:
            raise InvalidWebhookError("Invalid payload") from e
        except stripe.SignatureVerificationError as e:
            raise InvalidWebhookError("Invalid signature") from e

        obj = event["data"]["object"]
        if event["type"] == "checkout.session.completed":
            if obj.get("payment_status") != "paid":
                return None
            metadata = obj.get("metadata") or {}
            return WebhookEvent(
                type="payment.completed",
                provider=self.name,
                payment_id=obj["id"],
                user_id=metadata.get("user_id") or obj.get("client_reference_id"),
                credits=_int_or_none(metadata.get("credits")),
                amount=obj.get("amount_total"),
                currency=obj.get("currency"),
            )
        if event["type"] == "checkout.session.async_payment_failed":
            return WebhookEvent(type="payment.failed", provider=self.name, payment_id=obj["id"], reason="async_payment_failed")
        if event["type"] == "checkout.session.expired":
            return WebhookEvent(type="session.expired", provider=self.name, payment_id=obj["id"], reason="session_expired")
        if event["type"] == "charge.refunded":
            # Refunds reference the payment intent; checkouts are recorded by session id.
            sessions = await asyncio.to_thread(
                client.checkout.Session.list, payment_intent=obj.get("payment_intent"), limit=1
            )
            if not sessions.data:
                log.warning("stripe_refund_without_session", payment_intent=obj.get("payment_intent"))
                return None
            return WebhookEvent(
                type="payment.refunded",
                provider=self.name,
                payment_id=sessions.data[0].id,
                amount=obj.get("amount_refunded"),
                currency=obj.get("currency"),
                reason="charge_refunded",
            )
        log.info("stripe_webhook_ignored", event_type=event["type"])
        return None
