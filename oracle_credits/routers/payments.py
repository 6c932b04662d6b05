from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from oracle_credits.deps import get_current_user
from oracle_credits.models.credit_transaction import Provider
from oracle_credits.models.user import User
from oracle_credits.services import checkout, packages, providers, reconciler

router = APIRouter()


class CheckoutRequest(BaseModel):
    package_id: str
    provider: Provider


class CaptureRequest(BaseModel):
    order_id: str


@router.get("/packages")
async def list_packages():
    """Credit packages and which providers can currently take payment."""
    return {
        "packages": packages.list_packages(),
        "providers": providers.configured_providers(),
    }


@router.post("/checkout")
async def create_checkout(body: CheckoutRequest, user: User = Depends(get_current_user)):
    """Start a checkout; the frontend redirects the payer to redirect_url."""
    return await checkout.create_checkout(user.id, body.package_id, body.provider)


@router.post("/paypal/capture")
async def paypal_capture(body: CaptureRequest, user: User = Depends(get_current_user)):
    """Capture an approved PayPal order and credit it (replays if already credited)."""
    return await reconciler.capture_payment(user.id, body.order_id)


@router.get("/stripe/verify/{session_id}")
async def stripe_verify(session_id: str, user: User = Depends(get_current_user)):
    """Redirect-time check of a Stripe session, in case the webhook is late."""
    return await reconciler.verify_checkout(user.id, Provider.STRIPE, session_id)


@router.post("/webhooks/{provider}")
async def provider_webhook(provider: Provider, request: Request):
    """Provider webhook: completed -> credit once, failed/expired -> fail, refunded -> claw back."""
    body = await request.body()
    outcome = await reconciler.handle_webhook(provider, body, {k.lower(): v for k, v in request.headers.items()})
    if outcome is None:
        return {"status": "ignored"}
    return {"status": "ok", "transaction_status": outcome.status, "replayed": outcome.replayed}
