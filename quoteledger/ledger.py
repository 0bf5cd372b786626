"""
quoteledger/ledger.py

Payment ledger.

Rules:
- Payments are append-only. amount_paid is always re-derived from the FULL payment history,
  never from a running total stored on the document.
- A payment may not exceed the outstanding balance (rejected, not clamped).
- Payments are recorded on invoices that have been sent and are not cancelled.

IMPORTANT:
- record_payment() only adds rows to the current session. The calling route owns the
  transaction (flush -> audit -> commit) and must have loaded the document FOR UPDATE.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Iterable

from .errors import InvalidDocumentState, Overpayment, ValidationFailed
from .extensions import db
from .models import (
    PAYMENT_METHODS,
    STATUS_CANCELLED,
    STATUS_DRAFT,
    STATUS_PAID,
    STATUS_PARTIALLY_PAID,
    Document,
    Payment,
    utcnow,
)
from .money import ZERO, round2, sum_money
from .totals import balance_after

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PaymentResult:
    amount_paid: Decimal
    balance_due: Decimal
    status: str

    def as_dict(self) -> dict:
        return {
            "amount_paid": str(self.amount_paid),
            "balance_due": str(self.balance_due),
            "status": self.status,
        }


def _amount_of(payment: Any) -> Any:
    return getattr(payment, "amount", payment)


def derive_status(current_status: str, amount_paid: Decimal, balance_due: Decimal) -> str:
    if balance_due == ZERO:
        return STATUS_PAID
    if amount_paid > ZERO:
        return STATUS_PARTIALLY_PAID
    return current_status


def replay(document: Document, payments: Iterable[Any]) -> PaymentResult:
    """Recompute paid/balance/status from a complete payment list. Idempotent."""
    amount_paid = sum_money(_amount_of(p) for p in payments)
    balance_due = balance_after(document.total, amount_paid)
    return PaymentResult(
        amount_paid=amount_paid,
        balance_due=balance_due,
        status=derive_status(document.status, amount_paid, balance_due),
    )


def apply_payment(document: Document, existing_payments: Iterable[Any], amount: Any) -> PaymentResult:
    """
    Validate a new payment against the document and its existing ledger.

    Returns the document's paid/balance/status as they will be once the payment is appended.
    Nothing is mutated.
    """
    amount = round2(amount)
    if amount <= ZERO:
        raise ValidationFailed("Payment amount must be greater than 0.", details={"field": "amount"})

    if not document.is_invoice:
        raise InvalidDocumentState("Payments can only be recorded against invoices.")
    if document.status == STATUS_DRAFT:
        raise InvalidDocumentState("Cannot record payment on a draft invoice. Send the invoice first.")
    if document.status == STATUS_CANCELLED:
        raise InvalidDocumentState("Cannot record payment on a cancelled invoice.")

    existing = [_amount_of(p) for p in existing_payments]
    current = replay(document, existing)
    if amount > current.balance_due:
        raise Overpayment(
            f"Payment amount ({amount}) cannot exceed balance due ({current.balance_due}).",
            details={"amount": str(amount), "balance_due": str(current.balance_due)},
        )

    return replay(document, existing + [amount])


def record_payment(
    document: Document,
    *,
    amount: Any,
    method: str,
    reference: str | None = None,
    notes: str | None = None,
    paid_at: datetime | None = None,
    recorded_by_id: int | None = None,
) -> tuple[Payment, PaymentResult]:
    """Append a Payment row and write the re-derived totals back onto the document."""
    if method not in PAYMENT_METHODS:
        raise ValidationFailed(
            f"Payment method must be one of: {', '.join(PAYMENT_METHODS)}.",
            details={"field": "method"},
        )

    existing = Payment.query.filter_by(document_id=document.id).order_by(Payment.id.asc()).all()
    result = apply_payment(document, existing, amount)

    payment = Payment(
        document_id=document.id,
        amount=round2(amount),
        method=method,
        reference=reference,
        notes=notes,
        paid_at=paid_at or utcnow(),
        recorded_by_id=recorded_by_id,
    )
    db.session.add(payment)

    document.amount_paid = result.amount_paid
    document.balance_due = result.balance_due
    document.status = result.status

    logger.info(
        "Payment of %s recorded on %s (paid=%s balance=%s status=%s)",
        payment.amount,
        document.number,
        result.amount_paid,
        result.balance_due,
        result.status,
    )
    return payment, result
