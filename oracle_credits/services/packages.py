"""Credit package catalogue. Prices in euro cents."""

from pydantic import BaseModel

from oracle_credits.core.exceptions import InvalidPackageError


class CreditPackage(BaseModel):
    id: str
    name: str
    credits: int
    price_cents: int
    currency: str = "EUR"


CREDIT_PACKAGES = [
    CreditPackage(id="starter", name="Starter", credits=10, price_cents=500),
    CreditPackage(id="basic", name="Basic", credits=25, price_cents=1000),
    CreditPackage(id="popular", name="Popular", credits=60, price_cents=2000),
    CreditPackage(id="value", name="Value", credits=100, price_cents=3000),
    CreditPackage(id="premium", name="Premium", credits=200, price_cents=5000),
]


def list_packages() -> list[CreditPackage]:
    return list(CREDIT_PACKAGES)


def get_package(package_id: str) -> CreditPackage:
    package = next((p for p in CREDIT_PACKAGES if p.id == package_id), None)
    if not package:
        raise InvalidPackageError(package_id)
    return package
