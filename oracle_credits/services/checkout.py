"""Checkout orchestration: provider session plus a PENDING purchase keyed on the provider's id."""

from beanie import PydanticObjectId
from pydantic import BaseModel

from oracle_credits.core.audit import log_event
from oracle_credits.core.config import get_settings
from oracle_credits.core.exceptions import ProviderNotConfiguredError
from oracle_credits.core.logging import get_logger
from oracle_credits.models.credit_transaction import (
    CreditTransaction,
    ExternalRef,
    Provider,
    TransactionKind,
    TransactionStatus,
)
from oracle_credits.services import packages, providers, users

log = get_logger(__name__)


class CheckoutResult(BaseModel):
    provider: Provider
    session_id: str
    redirect_url: str
    transaction_id: str


async def create_checkout(
    user_id: PydanticObjectId,
    package_id: str,
    provider: Provider | str,
    success_url: str | None = None,
    cancel_url: str | None = None,
) -> CheckoutResult:
    """
    Start a purchase. The PENDING row records the credits the server will grant; whatever
    the provider later reports, this amount is what confirmation credits.
    """
    package = packages.get_package(package_id)
    gateway = providers.get_provider(provider)
    if not gateway.is_configured():
        raise ProviderNotConfiguredError(gateway.name.value)
    user = await users.find_user(user_id)

    settings = get_settings()
    success_url = success_url or f"{settings.frontend_url}/payment/success?provider={gateway.name.value}"
    cancel_url = cancel_url or f"{settings.frontend_url}/payment/cancel"
    session = await gateway.create_checkout_session(str(user.id), user.email, package, success_url, cancel_url)

    ref = ExternalRef(provider=gateway.name, payment_id=session.session_id)
    txn = CreditTransaction(
        user_id=user.id,
        kind=TransactionKind.PURCHASE,
        amount=package.credits,
        description=f"Purchase: {package.name} ({package.credits} credits)",
        status=TransactionStatus.PENDING,
        provider=ref.provider,
        provider_payment_id=ref.payment_id,
        external_key=ref.key,
        price_cents=package.price_cents,
        currency=package.currency,
    )
    await txn.insert()
    log.info(
        "checkout_created",
        user_id=str(user.id),
        provider=ref.provider.value,
        session_id=ref.payment_id,
        package_id=package.id,
        credits=package.credits,
    )
    await log_event(
        str(user.id),
        "checkout_created",
        "transaction",
        str(txn.id),
        {"provider": ref.provider.value, "session_id": ref.payment_id, "package_id": package.id},
    )
    return CheckoutResult(
        provider=ref.provider,
        session_id=ref.payment_id,
        redirect_url=session.redirect_url,
        transaction_id=str(txn.id),
    )
