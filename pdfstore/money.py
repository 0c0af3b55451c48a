from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any

Money = Decimal

ZERO = Decimal("0.00")
CENT = Decimal("0.01")


def D(x: Any) -> Money:
    """Coerce ints, strings and floats into a Decimal without float noise."""
    if x is None or x == "":
        return Decimal("0")
    if isinstance(x, Decimal):
        d = x
    else:
        try:
            d = Decimal(str(x))
        except InvalidOperation:
            raise ValueError(f"not a monetary amount: {x!r}")
    # NaN and Infinity parse, but cannot be quantized or compared
    if not d.is_finite():
        raise ValueError(f"not a monetary amount: {x!r}")
    return d


def round_money(x: Any) -> Money:
    return D(x).quantize(CENT, rounding=ROUND_HALF_UP)


def to_minor(x: Any) -> int:
    """R$ 12.345 -> 1235 centavos. Rounds half-up to cents first."""
    return int(round_money(x) * 100)


def from_minor(n: Any) -> Money:
    return round_money(D(n) / 100)


def as_float(x: Any) -> float:
    # orjson cannot serialize Decimal
    return float(round_money(x))
