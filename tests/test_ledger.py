"""Tests for the payment ledger."""

from decimal import Decimal

import pytest

from quoteledger.errors import ImmutableRecordError, InvalidDocumentState, Overpayment, ValidationFailed
from quoteledger.extensions import db
from quoteledger.ledger import apply_payment, record_payment, replay
from quoteledger.lifecycle import cancel, send
from quoteledger.models import STATUS_PAID, STATUS_PARTIALLY_PAID, STATUS_SENT, Payment


@pytest.fixture
def invoice(make_document):
    document = make_document("invoice")
    send(document)
    db.session.commit()
    return document


class TestRecordPayment:
    def test_full_payment_marks_paid(self, invoice, world):
        payment, result = record_payment(invoice, amount="156.00", method="bank", recorded_by_id=world.staff.id)
        db.session.commit()

        assert payment.id is not None
        assert result.amount_paid == Decimal("156.00")
        assert invoice.amount_paid == Decimal("156.00")
        assert invoice.balance_due == Decimal("0.00")
        assert invoice.status == STATUS_PAID

    def test_partial_payments_accumulate(self, invoice):
        record_payment(invoice, amount="50.00", method="cash")
        _, result = record_payment(invoice, amount="6.00", method="card")

        assert result.amount_paid == Decimal("56.00")
        assert result.balance_due == Decimal("100.00")
        assert invoice.status == STATUS_PARTIALLY_PAID

    def test_overpayment_leaves_state_unchanged(self, invoice):
        with pytest.raises(Overpayment):
            record_payment(invoice, amount="200.00", method="bank")

        assert invoice.amount_paid == Decimal("0.00")
        assert invoice.balance_due == Decimal("156.00")
        assert invoice.status == STATUS_SENT
        assert Payment.query.count() == 0

    def test_overpayment_checked_against_ledger(self, invoice):
        record_payment(invoice, amount="100.00", method="bank")
        with pytest.raises(Overpayment):
            record_payment(invoice, amount="56.01", method="bank")

    @pytest.mark.parametrize("amount", ["0", "-5"])
    def test_amount_must_be_positive(self, invoice, amount):
        with pytest.raises(ValidationFailed):
            record_payment(invoice, amount=amount, method="bank")

    def test_unknown_method(self, invoice):
        with pytest.raises(ValidationFailed):
            record_payment(invoice, amount="1", method="bitcoin")

    def test_draft_invoice_rejected(self, make_document):
        draft = make_document("invoice")
        with pytest.raises(InvalidDocumentState):
            record_payment(draft, amount="10", method="bank")

    def test_quote_rejected(self, make_document):
        quote = make_document("quote")
        send(quote)
        with pytest.raises(InvalidDocumentState):
            record_payment(quote, amount="10", method="bank")

    def test_cancelled_invoice_rejected(self, invoice, world):
        cancel(invoice, cancelled_by_id=world.staff.id)
        with pytest.raises(InvalidDocumentState):
            record_payment(invoice, amount="10", method="bank")


class TestReplay:
    def test_replay_is_idempotent(self, invoice):
        record_payment(invoice, amount="10.10", method="bank")
        record_payment(invoice, amount="20.20", method="cash")
        db.session.commit()

        payments = Payment.query.filter_by(document_id=invoice.id).all()
        first = replay(invoice, payments)
        second = replay(invoice, payments)
        assert first == second
        assert first.amount_paid == Decimal("30.30")

    def test_apply_payment_does_not_mutate(self, invoice):
        result = apply_payment(invoice, [Decimal("50")], "6")
        assert result.amount_paid == Decimal("56.00")
        assert invoice.amount_paid == Decimal("0.00")


class TestAppendOnly:
    def test_payment_cannot_be_updated(self, invoice):
        payment, _ = record_payment(invoice, amount="10", method="bank")
        db.session.commit()

        payment.amount = Decimal("1")
        with pytest.raises(ImmutableRecordError):
            db.session.flush()

    def test_payment_cannot_be_deleted(self, invoice):
        payment, _ = record_payment(invoice, amount="10", method="bank")
        db.session.commit()

        db.session.delete(payment)
        with pytest.raises(ImmutableRecordError):
            db.session.flush()
