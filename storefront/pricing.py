"""Order pricing.

All arithmetic is done on ``Decimal``; amounts are quantized to cents only
where a rate is applied (tax). ``subtotal`` and ``total`` are exact sums, so
``total == subtotal + tax + shipping`` holds without rounding drift.
"""
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, Tuple

from shared.utils import Settings

CENTS = Decimal("0.01")


def to_money(value) -> Decimal:
    if isinstance(value, float):
        value = str(value)
    return Decimal(value).quantize(CENTS, rounding=ROUND_HALF_UP)


def format_currency(amount: Decimal) -> str:
    return f"${to_money(amount):,.2f}"


@dataclass(frozen=True)
class PricingConfig:
    tax_rate: Decimal = Decimal("0.08")
    free_shipping_threshold: Decimal = Decimal("50")
    shipping_fee: Decimal = Decimal("10")

    @classmethod
    def from_settings(cls, settings: Settings) -> "PricingConfig":
        return cls(
            tax_rate=Decimal(settings.TAX_RATE),
            free_shipping_threshold=Decimal(settings.FREE_SHIPPING_THRESHOLD),
            shipping_fee=Decimal(settings.SHIPPING_FEE),
        )


@dataclass(frozen=True)
class Totals:
    subtotal: Decimal
    tax: Decimal
    shipping: Decimal
    total: Decimal
    total_items: int


class PricingEngine:
    def __init__(self, config: PricingConfig):
        self.config = config

    def line_subtotal(self, unit_price: Decimal, quantity: int) -> Decimal:
        return to_money(unit_price) * quantity

    def compute(self, lines: Iterable[Tuple[Decimal, int]]) -> Totals:
        subtotal = Decimal("0.00")
        total_items = 0
        for unit_price, quantity in lines:
            subtotal += self.line_subtotal(unit_price, quantity)
            total_items += quantity

        tax = (subtotal * self.config.tax_rate).quantize(CENTS, rounding=ROUND_HALF_UP)
        if subtotal > self.config.free_shipping_threshold:
            shipping = Decimal("0.00")
        else:
            shipping = to_money(self.config.shipping_fee)

        return Totals(
            subtotal=subtotal,
            tax=tax,
            shipping=shipping,
            total=subtotal + tax + shipping,
            total_items=total_items,
        )
