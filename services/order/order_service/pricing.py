"""
Order Service - 金額計算

小計・税・送料・合計を注文明細から算出する純粋関数。
税は Decimal で計算し、最小通貨単位への丸め (ROUND_HALF_UP) を 1 回だけ行う。
"""

from decimal import ROUND_HALF_UP, Decimal

from pydantic import BaseModel

from .errors import ValidationError
from .models import Money, OrderItem


class OrderTotals(BaseModel):
    subtotal: Money
    tax: Money
    shipping_cost: Money
    total: Money


def calculate_subtotal(items: list[OrderItem]) -> Money:
    if not items:
        raise ValidationError("items", "at least one item is required")
    subtotal = Money.zero(items[0].unit_price.currency)
    for item in items:
        subtotal = subtotal + item.line_total
    return subtotal


def calculate_tax(subtotal: Money, tax_rate: Decimal | str | float) -> Money:
    # float を経由すると 0.088 のような税率が誤差を含むため文字列から変換する
    rate = tax_rate if isinstance(tax_rate, Decimal) else Decimal(str(tax_rate))
    raw = Decimal(subtotal.amount) * rate
    return Money(
        amount=int(raw.quantize(Decimal("1"), rounding=ROUND_HALF_UP)),
        currency=subtotal.currency,
    )


def compute_totals(
    items: list[OrderItem],
    tax_rate: Decimal | str | float,
    shipping_cost: int,
) -> OrderTotals:
    """
    注文の金額内訳を計算する。

    shipping_cost は明細と同じ通貨の最小通貨単位で受け取る。
    明細の通貨が混在していれば CurrencyMismatchError になる。
    """
    subtotal = calculate_subtotal(items)
    tax = calculate_tax(subtotal, tax_rate)
    shipping = Money(amount=shipping_cost, currency=subtotal.currency)
    return OrderTotals(
        subtotal=subtotal,
        tax=tax,
        shipping_cost=shipping,
        total=subtotal + tax + shipping,
    )
