"""Catalog of purchasable credit packages."""

from dataclasses import dataclass
from decimal import Decimal

from credits_service.exceptions import UnknownPackageError


@dataclass(frozen=True)
class CreditPackage:
    """A fixed bundle of credits sold for a fixed price."""

    package_id: str
    credit_amount: Decimal
    bonus_amount: Decimal
    price_amount: int  # Minor currency units (cents)
    currency: str = "usd"

    @property
    def total_credits(self) -> Decimal:
        return self.credit_amount + self.bonus_amount

    @property
    def price_display(self) -> str:
        return f"{self.price_amount / 100:.2f}"


CREDIT_PACKAGES: dict[str, CreditPackage] = {
    package.package_id: package
    for package in (
        CreditPackage("pack_100", Decimal(100), Decimal(0), 999),
        CreditPackage("pack_500", Decimal(500), Decimal(50), 3999),
        CreditPackage("pack_1000", Decimal(1000), Decimal(150), 6999),
        CreditPackage("pack_5000", Decimal(5000), Decimal(1000), 29999),
    )
}


def list_packages() -> list[CreditPackage]:
    """Return the catalog ordered by price."""
    return sorted(CREDIT_PACKAGES.values(), key=lambda p: p.price_amount)


def get_package(package_id: str) -> CreditPackage:
    """Look up a package.

    Raises:
        UnknownPackageError: package_id is not in the catalog.
    """
    try:
        return CREDIT_PACKAGES[package_id]
    except KeyError:
        raise UnknownPackageError(package_id) from None
