"""
quoteledger/money.py

Currency helpers shared by the totals calculator, the payment ledger and the models.

IMPORTANT:
- Money is always Decimal. Floats are converted through str() so binary drift never leaks in.
- round2 is applied once per arithmetic step, not only to the final figure.
"""

from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Iterable

CENT = Decimal("0.01")
ZERO = Decimal("0.00")
HUNDRED = Decimal("100")

# Line-item quantity and unit price are stored with this many decimal places.
LINE_PLACES = 4
LINE_UNIT = Decimal(1).scaleb(-LINE_PLACES)


def to_decimal(value: Any) -> Decimal:
    """Convert Numeric/int/str/float/None to Decimal safely (None -> 0.00)."""
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise TypeError("bool is not a monetary value")
    try:
        result = Decimal(str(value).strip().replace(",", "."))
    except (InvalidOperation, ValueError) as exc:
        raise ValueError(f"not a decimal value: {value!r}") from exc
    if not result.is_finite():
        raise ValueError(f"not a finite decimal value: {value!r}")
    return result


def round2(value: Any) -> Decimal:
    """Round to 2 decimal places, half away from zero."""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def exceeds_places(value: Any, places: int) -> bool:
    """True when value carries non-zero digits beyond `places` decimal places."""
    return to_decimal(value).normalize().as_tuple().exponent < -places


def sum_money(values: Iterable[Any]) -> Decimal:
    total = ZERO
    for v in values:
        total += to_decimal(v)
    return round2(total)


def percent_of(amount: Any, rate_percent: Any) -> Decimal:
    """amount * rate / 100, rounded. Rate is always a percent (20 means 20%)."""
    return round2(to_decimal(amount) * to_decimal(rate_percent) / HUNDRED)


def format_money(value: Any) -> str | None:
    if value is None:
        return None
    return str(round2(value))


def format_line_value(value: Any) -> str:
    """Quantity / unit price at LINE_PLACES, or at 2 places when the extra digits are zero."""
    amount = to_decimal(value).quantize(LINE_UNIT, rounding=ROUND_HALF_UP)
    if amount == amount.quantize(CENT):
        amount = amount.quantize(CENT)
    return str(amount)
