"""Payment provider registry."""

from oracle_credits.core.exceptions import BadRequestError
from oracle_credits.models.credit_transaction import Provider
from oracle_credits.services.providers.base import PaymentProvider
from oracle_credits.services.providers.paypal import PayPalProvider
from oracle_credits.services.providers.stripe_provider import StripeProvider

_providers: dict[Provider, PaymentProvider] = {
    Provider.STRIPE: StripeProvider(),
    Provider.PAYPAL: PayPalProvider(),
}


def get_provider(name: Provider | str) -> PaymentProvider:
    try:
        return _providers[Provider(name)]
    except (ValueError, KeyError):
        raise BadRequestError("Unknown payment provider", code="UNKNOWN_PROVIDER") from None


def configured_providers() -> list[Provider]:
    return [name for name, p in _providers.items() if p.is_configured()]
