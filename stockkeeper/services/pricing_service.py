"""Shipping and tax for order totals.

Rates are from the Ohio warehouse: four distance zones with a base fee,
a per-item fee and a free shipping threshold, plus a flat state sales tax.
"""
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Protocol

CENT = Decimal("0.01")

ZONE_STATES = {
    "local": {"OH", "PA", "WV", "KY", "IN", "MI"},
    "regional": {"IL", "WI", "NY", "NJ", "MD", "VA", "NC", "SC", "TN", "MO", "IA", "MN"},
    "national": {"CA", "WA", "OR", "TX", "FL", "GA", "AL", "LA", "AZ", "NV", "CO", "UT"},
    "remote": {"AK", "HI", "ME", "VT", "NH", "MT", "WY", "ND", "SD", "NM", "ID"},
}

SHIPPING_RATES = {
    "local": {"base": Decimal("4.99"), "per_item": Decimal("0.50"), "free_threshold": Decimal("50")},
    "regional": {"base": Decimal("7.99"), "per_item": Decimal("0.75"), "free_threshold": Decimal("75")},
    "national": {"base": Decimal("9.99"), "per_item": Decimal("1.00"), "free_threshold": Decimal("100")},
    "remote": {"base": Decimal("14.99"), "per_item": Decimal("1.50"), "free_threshold": Decimal("150")},
}

DAYS_BY_ZONE = {"local": 2, "regional": 4, "national": 6, "remote": 8}
IMPORTED_DAYS = 12

STATE_TAX_RATES = {
    "OH": Decimal("0.0575"),
    "PA": Decimal("0.06"),
    "NY": Decimal("0.08"),
    "CA": Decimal("0.0725"),
    "TX": Decimal("0.0625"),
    "FL": Decimal("0.06"),
    "WA": Decimal("0.065"),
}
DEFAULT_TAX_RATE = Decimal("0.06")

SHIPPING_METHOD = "Standard Shipping"


@dataclass(frozen=True)
class ShippingQuote:
    cost: Decimal
    zone: str
    method: str
    estimated_days: int
    free_shipping: bool
    free_shipping_threshold: Decimal


@dataclass(frozen=True)
class OrderTotals:
    subtotal: Decimal
    shipping: ShippingQuote
    tax_rate: Decimal
    tax_amount: Decimal
    total: Decimal

    @property
    def shipping_cost(self) -> Decimal:
        return self.shipping.cost


class PricingCalculator(Protocol):
    def calculate(self, state: str, subtotal: Decimal, item_count: int, has_imported: bool = False) -> OrderTotals:
        ...


def _money(value) -> Decimal:
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def shipping_zone(state: str) -> str:
    code = (state or "").strip().upper()
    for zone in ("local", "regional", "remote"):
        if code in ZONE_STATES[zone]:
            return zone
    return "national"


def estimated_days(zone: str, has_imported: bool = False) -> int:
    if has_imported:
        return IMPORTED_DAYS
    return DAYS_BY_ZONE.get(zone, 5)


def calculate_shipping(state: str, subtotal: Decimal, item_count: int, has_imported: bool = False) -> ShippingQuote:
    zone = shipping_zone(state)
    rates = SHIPPING_RATES[zone]
    free = Decimal(subtotal) >= rates["free_threshold"]
    cost = Decimal("0.00") if free else _money(rates["base"] + rates["per_item"] * item_count)
    return ShippingQuote(
        cost=cost,
        zone=zone,
        method=SHIPPING_METHOD,
        estimated_days=estimated_days(zone, has_imported),
        free_shipping=free,
        free_shipping_threshold=rates["free_threshold"],
    )


def tax_rate(state: str) -> Decimal:
    return STATE_TAX_RATES.get((state or "").strip().upper(), DEFAULT_TAX_RATE)


def calculate_tax(state: str, subtotal: Decimal) -> Decimal:
    return _money(Decimal(subtotal) * tax_rate(state))


class ZonePricingCalculator:
    """Default calculator; swap in another PricingCalculator for tests or other warehouses."""

    def calculate(self, state: str, subtotal: Decimal, item_count: int, has_imported: bool = False) -> OrderTotals:
        subtotal = _money(subtotal)
        shipping = calculate_shipping(state, subtotal, item_count, has_imported)
        tax = calculate_tax(state, subtotal)
        return OrderTotals(
            subtotal=subtotal,
            shipping=shipping,
            tax_rate=tax_rate(state),
            tax_amount=tax,
            total=_money(subtotal + shipping.cost + tax),
        )


default_calculator = ZonePricingCalculator()
