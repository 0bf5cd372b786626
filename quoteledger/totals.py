"""
quoteledger/totals.py

Line-item totals calculator.

Order of operations (each step rounded to 2dp):
    line_total  = quantity * unit_price
    subtotal    = sum(line_total)
    adjusted    = subtotal + markup - discount
    vat_amount  = adjusted * vat_rate / 100
    total       = adjusted + vat_amount
    balance_due = max(0, total - amount_paid)

VAT is charged on the adjusted amount (after markup and discount), never on the raw subtotal.
Pure functions: callers persist the result.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Iterable, Optional, Tuple

from .errors import InvalidDiscount, NegativeAdjustedTotal, ValidationFailed
from .money import HUNDRED, LINE_PLACES, ZERO, exceeds_places, percent_of, round2, sum_money, to_decimal


@dataclass(frozen=True)
class Totals:
    subtotal: Decimal
    markup_amount: Decimal
    discount_amount: Decimal
    adjusted: Decimal
    vat_rate: Decimal
    vat_amount: Decimal
    total: Decimal
    deposit_amount: Optional[Decimal]
    amount_paid: Decimal
    balance_due: Decimal

    def as_dict(self) -> dict:
        return {
            "subtotal": str(self.subtotal),
            "markup_amount": str(self.markup_amount),
            "discount_amount": str(self.discount_amount),
            "vat_rate": str(self.vat_rate),
            "vat_amount": str(self.vat_amount),
            "total": str(self.total),
            "deposit_amount": str(self.deposit_amount) if self.deposit_amount is not None else None,
            "amount_paid": str(self.amount_paid),
            "balance_due": str(self.balance_due),
        }


def _non_negative(value: Any, field: str) -> Decimal:
    amount = round2(value)
    if amount < ZERO:
        raise ValidationFailed(f"{field} cannot be negative.", details={"field": field})
    return amount


def validate_vat_rate(vat_rate: Any) -> Decimal:
    """Percent between 0 and 100 with at most 2 decimal places; None is not a rate."""
    if vat_rate is None:
        raise ValidationFailed("VAT rate is required.", details={"field": "vat_rate"})
    rate = to_decimal(vat_rate)
    if exceeds_places(rate, 2):
        raise ValidationFailed("VAT rate allows at most 2 decimal places.", details={"field": "vat_rate"})
    rate = round2(rate)
    if rate < ZERO or rate > HUNDRED:
        raise ValidationFailed("VAT rate must be between 0 and 100.", details={"field": "vat_rate"})
    return rate


def calculate_line_item(quantity: Any, unit_price: Any) -> Decimal:
    """round2(quantity * unit_price) after validating both inputs."""
    qty = to_decimal(quantity)
    price = to_decimal(unit_price)
    if qty <= ZERO:
        raise ValidationFailed("Quantity must be greater than 0.", details={"field": "quantity"})
    if price < ZERO:
        raise ValidationFailed("Unit price must be greater than or equal to 0.", details={"field": "unit_price"})
    for field, value in (("quantity", qty), ("unit_price", price)):
        if exceeds_places(value, LINE_PLACES):
            raise ValidationFailed(
                f"{field} allows at most {LINE_PLACES} decimal places.", details={"field": field}
            )
    return round2(qty * price)


def balance_after(total: Any, amount_paid: Any) -> Decimal:
    """Outstanding balance, clamped at zero (overpayment never yields a negative balance)."""
    balance = round2(to_decimal(total) - to_decimal(amount_paid))
    return balance if balance > ZERO else ZERO


def calculate_totals(
    items: Iterable[Tuple[Any, Any]],
    *,
    vat_rate: Any,
    markup_amount: Any = ZERO,
    discount_amount: Any = ZERO,
    deposit_amount: Any = None,
    amount_paid: Any = ZERO,
) -> Totals:
    """
    Derive every monetary field of a document.

    items: iterable of (quantity, unit_price) pairs.

    Raises:
        ValidationFailed: bad quantity/price/rate or negative markup/discount/deposit,
            or a deposit larger than the total.
        InvalidDiscount: discount > subtotal + markup.
        NegativeAdjustedTotal: adjusted amount below zero.
    """
    rate = validate_vat_rate(vat_rate)
    markup = _non_negative(markup_amount, "markup_amount")
    discount = _non_negative(discount_amount, "discount_amount")
    paid = _non_negative(amount_paid, "amount_paid")

    subtotal = sum_money(calculate_line_item(qty, price) for qty, price in items)

    if discount > round2(subtotal + markup):
        raise InvalidDiscount(details={"discount_amount": str(discount), "limit": str(round2(subtotal + markup))})

    adjusted = round2(subtotal + markup - discount)
    if adjusted < ZERO:
        raise NegativeAdjustedTotal(details={"adjusted": str(adjusted)})

    vat_amount = percent_of(adjusted, rate)
    total = round2(adjusted + vat_amount)

    deposit = None
    if deposit_amount is not None:
        deposit = _non_negative(deposit_amount, "deposit_amount")
        if deposit > total:
            raise ValidationFailed("Deposit cannot exceed the document total.", details={"field": "deposit_amount"})

    return Totals(
        subtotal=subtotal,
        markup_amount=markup,
        discount_amount=discount,
        adjusted=adjusted,
        vat_rate=rate,
        vat_amount=vat_amount,
        total=total,
        deposit_amount=deposit,
        amount_paid=paid,
        balance_due=balance_after(total, paid),
    )


def totals_changed(old: Totals | None, new: Totals) -> bool:
    """True if any figure that drives the document total differs."""
    if old is None:
        return True
    return (
        old.subtotal != new.subtotal
        or old.markup_amount != new.markup_amount
        or old.discount_amount != new.discount_amount
        or old.vat_amount != new.vat_amount
        or old.total != new.total
    )
