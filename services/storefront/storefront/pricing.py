"""
Storefront Service: 金額計算

金額はすべて Decimal で扱い、小数点以下 2 桁に丸める。
配送料テーブルと税率は外部設定として注入する。
"""

from dataclasses import dataclass, field
from decimal import ROUND_HALF_EVEN, Decimal

CENT = Decimal("0.01")

DEFAULT_SHIPPING_RATES = {
    "express": Decimal("15.99"),
    "standard": Decimal("5.99"),
    "free": Decimal("0.00"),
}
DEFAULT_SHIPPING_COST = Decimal("9.99")
DEFAULT_TAX_RATE = Decimal("0.20")


def to_money(value) -> Decimal:
    """DB から返る float / int / str / Decimal を 2 桁の Decimal にする。"""
    if value is None:
        return Decimal("0.00")
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_EVEN)


@dataclass(frozen=True)
class ShippingRates:
    """配送方法 → 配送料。未知の方法は fallback を使う。"""
    rates: dict = field(default_factory=lambda: dict(DEFAULT_SHIPPING_RATES))
    fallback: Decimal = DEFAULT_SHIPPING_COST

    def cost_for(self, method: str) -> Decimal:
        return to_money(self.rates.get(method, self.fallback))


@dataclass(frozen=True)
class Totals:
    subtotal: Decimal
    shipping_cost: Decimal
    tax_amount: Decimal
    discount_amount: Decimal
    total: Decimal


@dataclass(frozen=True)
class Pricing:
    shipping_rates: ShippingRates = field(default_factory=ShippingRates)
    tax_rate: Decimal = DEFAULT_TAX_RATE
    currency: str = "EUR"

    def totals(
        self,
        lines: list[tuple[Decimal, int]],
        shipping_method: str,
        discount: Decimal = Decimal("0"),
    ) -> Totals:
        """(単価, 数量) の列から注文金額を計算する。"""
        return compute_totals(
            lines,
            self.shipping_rates.cost_for(shipping_method),
            self.tax_rate,
            discount,
        )


def compute_totals(
    lines: list[tuple[Decimal, int]],
    shipping_cost: Decimal,
    tax_rate: Decimal,
    discount: Decimal = Decimal("0"),
) -> Totals:
    """
    total = subtotal + shipping + tax - discount

    税は小計に対して計算する (配送料には掛けない)。
    """
    subtotal = to_money(sum((to_money(price) * qty for price, qty in lines), Decimal("0")))
    tax = to_money(subtotal * tax_rate)
    shipping = to_money(shipping_cost)
    discount = to_money(discount)
    return Totals(
        subtotal=subtotal,
        shipping_cost=shipping,
        tax_amount=tax,
        discount_amount=discount,
        total=to_money(subtotal + shipping + tax - discount),
    )
