"""Credit bundle catalog and money helpers."""

from __future__ import annotations

from dataclasses import dataclass, replace
from decimal import ROUND_HALF_UP, Decimal
import logging
from typing import Any, Dict, Iterable, List, Optional

from fastapi import HTTPException, Request
import stripe

from config import settings

logger = logging.getLogger(__name__)

# Stripe charges these currencies in whole units.
ZERO_DECIMAL_CURRENCIES = frozenset(
    {"bif", "clp", "djf", "gnf", "jpy", "kmf", "krw", "mga", "pyg", "rwf", "ugx", "vnd", "vuv", "xaf", "xof", "xpf"}
)


def round_half_up(value: Decimal) -> int:
    return int(Decimal(value).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def to_minor_units(amount: Any, currency: str) -> int:
    """Convert a major-unit decimal amount into Stripe minor units."""
    value = Decimal(str(amount))
    if (currency or "").lower() in ZERO_DECIMAL_CURRENCIES:
        return round_half_up(value)
    return round_half_up(value * 100)


def from_minor_units(amount: int, currency: str) -> Decimal:
    if (currency or "").lower() in ZERO_DECIMAL_CURRENCIES:
        return Decimal(int(amount))
    return (Decimal(int(amount)) / Decimal(100)).quantize(Decimal("0.01"))


class InvalidBundleError(HTTPException):
    def __init__(self, bundle_id: Optional[str]):
        super().__init__(
            status_code=400,
            detail={"reason": "invalid_bundle", "message": f"Unknown bundle: {bundle_id}"},
        )
        self.bundle_id = bundle_id


@dataclass(frozen=True)
class Bundle:
    id: str
    name: str
    description: str
    price: Decimal
    credits: int
    currency: str = "eur"
    stripe_price_id: Optional[str] = None

    @property
    def price_minor(self) -> int:
        return to_minor_units(self.price, self.currency)

    def to_public_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "price": str(self.price),
            "price_minor": self.price_minor,
            "credits": self.credits,
            "currency": self.currency,
        }


class BundleCatalog:
    """Read-only set of purchasable bundles, built once per process."""

    def __init__(self, bundles: Iterable[Bundle]):
        self._bundles: Dict[str, Bundle] = {}
        for bundle in bundles:
            if int(bundle.credits) <= 0:
                raise ValueError(f"Bundle {bundle.id} must grant at least one credit")
            if bundle.price < 0:
                raise ValueError(f"Bundle {bundle.id} has a negative price")
            self._bundles[bundle.id] = bundle

    def get(self, bundle_id: Optional[str]) -> Bundle:
        bundle = self._bundles.get(str(bundle_id or "").strip().lower())
        if bundle is None:
            raise InvalidBundleError(bundle_id)
        return bundle

    def all(self) -> List[Bundle]:
        return list(self._bundles.values())

    def with_processor_prices(self, gateway) -> "BundleCatalog":
        """Return a copy whose prices come from the Stripe Price objects."""
        refreshed = []
        for bundle in self._bundles.values():
            if not bundle.stripe_price_id:
                refreshed.append(bundle)
                continue
            try:
                price = gateway.retrieve_price(bundle.stripe_price_id)
                currency = str(price.get("currency") or bundle.currency).lower()
                unit_amount = price.get("unit_amount")
                if unit_amount is None:
                    refreshed.append(bundle)
                    continue
                refreshed.append(
                    replace(bundle, price=from_minor_units(int(unit_amount), currency), currency=currency)
                )
            except stripe.StripeError as exc:
                logger.warning("Keeping static price for bundle %s: %s", bundle.id, exc)
                refreshed.append(bundle)
        return BundleCatalog(refreshed)


def build_bundle_catalog(config) -> BundleCatalog:
    currency = (config.BILLING_CURRENCY or "eur").lower()
    return BundleCatalog(
        [
            Bundle(
                id="starter",
                name="Starter Pack",
                description="2 CV analyses",
                price=Decimal("4.99"),
                credits=2,
                currency=currency,
                stripe_price_id=(config.STRIPE_PRICE_ID_STARTER or "").strip() or None,
            ),
            Bundle(
                id="value",
                name="Value Pack",
                description="5 CV analyses",
                price=Decimal("9.99"),
                credits=5,
                currency=currency,
                stripe_price_id=(config.STRIPE_PRICE_ID_VALUE or "").strip() or None,
            ),
        ]
    )


def get_bundle_catalog(request: Request) -> BundleCatalog:
    """FastAPI dependency returning the catalog stored on application state."""
    catalog = getattr(request.app.state, "bundle_catalog", None)
    if catalog is None:
        catalog = build_bundle_catalog(settings)
        request.app.state.bundle_catalog = catalog
    return catalog
