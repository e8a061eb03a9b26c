from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Tuple

CENT = Decimal("0.01")


def to_money(value: float) -> Decimal:
    # str() keeps the decimal literal the client sent instead of the binary float
    return Decimal(str(value))


def compute_total(lines: Iterable[Tuple[float, int]]) -> float:
    """Sum of unit price x quantity, rounded to cents.

    Exact decimal arithmetic makes the result independent of line order.
    """
    total = sum((to_money(price) * quantity for price, quantity in lines), Decimal("0"))
    return float(total.quantize(CENT, rounding=ROUND_HALF_UP))
