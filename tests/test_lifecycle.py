"""Tests for the document state machine and the operations around it."""

from datetime import date, timedelta
from decimal import Decimal

import pytest

from quoteledger.errors import (
    ImmutableRecordError,
    InvalidDiscount,
    InvalidDocumentState,
    InvalidTransition,
    NotFound,
    ValidationFailed,
)
from quoteledger.extensions import db
from quoteledger.ledger import record_payment
from quoteledger.lifecycle import (
    accept,
    allowed_transitions,
    cancel,
    create_invoice_from_quote,
    create_revision,
    mark_overdue,
    reject,
    send,
    update_document,
)
from quoteledger.models import (
    STATUS_ACCEPTED,
    STATUS_CANCELLED,
    STATUS_DRAFT,
    STATUS_OVERDUE,
    STATUS_PAID,
    STATUS_REJECTED,
    STATUS_SENT,
    AcceptanceSnapshot,
    Document,
    Revision,
)

NEW_ITEMS = [{"description": "Boiler", "quantity": Decimal("1"), "unit_price": Decimal("900.00")}]


@pytest.fixture
def sent_quote(make_document):
    quote = make_document("quote")
    send(quote)
    db.session.commit()
    return quote


@pytest.fixture
def accepted_quote(sent_quote, world):
    accept(sent_quote, accepted_by_id=world.client_user.id, acceptance_ip="203.0.113.9", acceptance_note="ok")
    db.session.commit()
    return sent_quote


class TestCreate:
    def test_draft_with_totals_and_number(self, make_document):
        quote = make_document("quote")
        assert quote.status == STATUS_DRAFT
        assert quote.number == "Q-000001"
        assert quote.subtotal == Decimal("130.00")
        assert quote.vat_amount == Decimal("26.00")
        assert quote.total == Decimal("156.00")
        assert quote.balance_due == Decimal("156.00")
        assert [line.line_total for line in quote.line_items] == [Decimal("100.00"), Decimal("30.00")]

    def test_business_default_vat_rate(self, make_document):
        quote = make_document("quote", vat_rate=None)
        assert quote.vat_rate == Decimal("20.00")

    def test_requires_line_items(self, make_document):
        with pytest.raises(ValidationFailed):
            make_document("quote", items=[])

    def test_client_of_other_business(self, make_document, world):
        with pytest.raises(NotFound):
            make_document("quote", client_id=world.rival_client.id)

    def test_invalid_discount(self, make_document):
        with pytest.raises(InvalidDiscount):
            make_document("quote", discount_amount=Decimal("500"))


class TestSend:
    def test_send_sets_timestamp_once(self, sent_quote):
        assert sent_quote.status == STATUS_SENT
        first_sent_at = sent_quote.sent_at
        assert first_sent_at is not None

        with pytest.raises(InvalidTransition):
            send(sent_quote)
        assert sent_quote.sent_at == first_sent_at

    def test_invoice_gets_issue_date(self, make_document):
        invoice = make_document("invoice")
        send(invoice)
        assert invoice.issue_date is not None


# ---------------------------------------------------------------------------
# Sub-penny unit prices and fractional quantities are stored at 4 places
# ---------------------------------------------------------------------------

class TestLinePrecision:
    @pytest.mark.parametrize(
        "quantity, unit_price, expected",
        [
            ("1000", "0.475", "475.00"),  # bricks
            ("0.125", "100", "12.50"),  # an eighth of an hour
        ],
    )
    def test_totals_unchanged_after_reload_and_send(self, make_document, quantity, unit_price, expected):
        items = [{"description": "Line", "quantity": Decimal(quantity), "unit_price": Decimal(unit_price)}]
        invoice = make_document("invoice", items=items, vat_rate=Decimal("0"))
        db.session.commit()
        assert invoice.total == Decimal(expected)
        invoice_id = invoice.id

        db.session.expire_all()
        invoice = db.session.get(Document, invoice_id)
        send(invoice)
        db.session.commit()
        db.session.expire_all()

        invoice = db.session.get(Document, invoice_id)
        assert invoice.total == Decimal(expected)
        assert invoice.balance_due == Decimal(expected)
        assert invoice.line_items[0].line_total == Decimal(expected)

    def test_snapshot_and_invoice_keep_unit_price(self, make_document, world):
        items = [{"description": "Bricks", "quantity": Decimal("1000"), "unit_price": Decimal("0.475")}]
        quote = make_document("quote", items=items, vat_rate=Decimal("20"))
        db.session.commit()
        db.session.expire_all()

        quote = db.session.get(Document, quote.id)
        send(quote)
        accept(quote, accepted_by_id=world.client_user.id)
        db.session.commit()

        snapshot = quote.latest_snapshot
        assert snapshot.items_snapshot[0]["unit_price"] == "0.4750"
        assert snapshot.total == Decimal("570.00")

        invoice = create_invoice_from_quote(quote, created_by_id=world.staff.id)
        db.session.commit()
        assert invoice.total == Decimal("570.00")

    @pytest.mark.parametrize("field", ["quantity", "unit_price"])
    def test_more_than_four_places_rejected(self, make_document, field):
        item = {"description": "Line", "quantity": Decimal("1"), "unit_price": Decimal("1")}
        item[field] = Decimal("0.12345")
        with pytest.raises(ValidationFailed) as excinfo:
            make_document("invoice", items=[item])
        assert excinfo.value.details["field"] == field


class TestAccept:
    def test_accept_locks_and_snapshots(self, accepted_quote, world):
        assert accepted_quote.status == STATUS_ACCEPTED
        assert accepted_quote.is_locked is True
        assert accepted_quote.accepted_by_id == world.client_user.id
        assert accepted_quote.acceptance_ip == "203.0.113.9"

        snapshot = accepted_quote.latest_snapshot
        assert snapshot.subtotal == Decimal("130.00")
        assert snapshot.vat_amount == Decimal("26.00")
        assert snapshot.total == Decimal("156.00")
        assert [item["description"] for item in snapshot.items_snapshot] == ["Copper pipe", "Fitting labour"]

    def test_accept_from_draft(self, make_document, world):
        quote = make_document("quote")
        accept(quote, accepted_by_id=world.client_user.id)
        assert quote.status == STATUS_ACCEPTED

    def test_accept_twice(self, accepted_quote, world):
        with pytest.raises(InvalidTransition):
            accept(accepted_quote, accepted_by_id=world.client_user.id)
        assert AcceptanceSnapshot.query.count() == 1

    def test_invoice_cannot_be_accepted(self, make_document, world):
        invoice = make_document("invoice")
        send(invoice)
        with pytest.raises(InvalidTransition):
            accept(invoice, accepted_by_id=world.client_user.id)

    def test_snapshot_is_immutable(self, accepted_quote):
        snapshot = accepted_quote.latest_snapshot
        snapshot.total = Decimal("1.00")
        with pytest.raises(ImmutableRecordError):
            db.session.flush()

    def test_locked_quote_cannot_be_edited(self, accepted_quote):
        with pytest.raises(InvalidDocumentState):
            update_document(accepted_quote, {"line_items": NEW_ITEMS})


class TestReject:
    def test_reject_requires_reason(self, sent_quote, world):
        with pytest.raises(ValidationFailed):
            reject(sent_quote, rejected_by_id=world.client_user.id, reason="  ")
        assert sent_quote.status == STATUS_SENT

    def test_reject(self, sent_quote, world):
        reject(sent_quote, rejected_by_id=world.client_user.id, reason="Too expensive")
        assert sent_quote.status == STATUS_REJECTED
        assert sent_quote.rejected_at is not None
        assert sent_quote.rejection_reason == "Too expensive"

    def test_rejected_quote_cannot_be_accepted(self, sent_quote, world):
        reject(sent_quote, rejected_by_id=world.client_user.id, reason="No")
        with pytest.raises(InvalidTransition):
            accept(sent_quote, accepted_by_id=world.client_user.id)


class TestRevision:
    def test_first_revision_unlocks(self, accepted_quote, world):
        revision = create_revision(accepted_quote, changed_by_id=world.staff.id, change_reason="price update")
        db.session.commit()

        assert revision.revision_number == 1
        assert revision.parent_revision_id is None
        assert revision.totals_data["total"] == "156.00"
        assert accepted_quote.is_locked is False
        assert accepted_quote.status == STATUS_ACCEPTED

    def test_unlocked_quote_is_editable(self, accepted_quote, world):
        create_revision(accepted_quote, changed_by_id=world.staff.id, change_reason="price update")
        changed = update_document(accepted_quote, {"line_items": NEW_ITEMS})

        assert changed is True
        assert accepted_quote.subtotal == Decimal("900.00")
        assert accepted_quote.total == Decimal("1080.00")
        # Accepted terms stay provable
        assert accepted_quote.latest_snapshot.total == Decimal("156.00")

    def test_revision_requires_lock(self, sent_quote, world):
        with pytest.raises(InvalidTransition):
            create_revision(sent_quote, changed_by_id=world.staff.id, change_reason="x")

    def test_revision_requires_reason(self, accepted_quote, world):
        with pytest.raises(ValidationFailed):
            create_revision(accepted_quote, changed_by_id=world.staff.id, change_reason="")

    def test_revisions_chain(self, make_document, world):
        quote = make_document("quote")
        accept(quote, accepted_by_id=world.client_user.id)
        first = create_revision(quote, changed_by_id=world.staff.id, change_reason="one")
        db.session.flush()

        # Relock the quote directly; the public flow only unlocks.
        quote.is_locked = True
        second = create_revision(quote, changed_by_id=world.staff.id, change_reason="two")
        db.session.flush()

        assert second.revision_number == 2
        assert second.parent_revision_id == first.id
        assert Revision.query.filter_by(document_id=quote.id).count() == 2


class TestEditing:
    def test_draft_edit_recomputes(self, make_document):
        quote = make_document("quote")
        update_document(quote, {"markup_amount": Decimal("20"), "discount_amount": Decimal("50")})
        assert quote.total == Decimal("120.00")

    def test_derived_fields_rejected(self, make_document):
        quote = make_document("quote")
        with pytest.raises(ValidationFailed):
            update_document(quote, {"total": "1.00"})
        assert quote.total == Decimal("156.00")

    def test_null_vat_rate_rejected(self, make_document):
        quote = make_document("quote")
        with pytest.raises(ValidationFailed) as excinfo:
            update_document(quote, {"vat_rate": None})
        assert excinfo.value.details == {"field": "vat_rate"}
        assert quote.vat_rate == Decimal("20.00")
        assert quote.total == Decimal("156.00")

    def test_unknown_field_rejected(self, make_document):
        quote = make_document("quote")
        with pytest.raises(ValidationFailed):
            update_document(quote, {"colour": "blue"})

    def test_sent_document_not_editable(self, sent_quote):
        with pytest.raises(InvalidDocumentState):
            update_document(sent_quote, {"title": "New"})

    def test_client_fixed_after_draft(self, accepted_quote, world):
        create_revision(accepted_quote, changed_by_id=world.staff.id, change_reason="fix")
        with pytest.raises(InvalidDocumentState):
            update_document(accepted_quote, {"client_id": world.other_client.id})


class TestCancel:
    def test_cancel_is_terminal(self, sent_quote, world):
        cancel(sent_quote, cancelled_by_id=world.staff.id, reason="Duplicate")
        assert sent_quote.status == STATUS_CANCELLED
        assert allowed_transitions(sent_quote) == []

        with pytest.raises(InvalidDocumentState):
            cancel(sent_quote, cancelled_by_id=world.staff.id)
        with pytest.raises(InvalidDocumentState):
            accept(sent_quote, accepted_by_id=world.client_user.id)
        with pytest.raises(InvalidDocumentState):
            send(sent_quote)


class TestAllowedTransitions:
    def test_draft_quote(self, make_document):
        assert allowed_transitions(make_document("quote")) == ["send", "accept", "reject", "cancel"]

    def test_accepted_quote(self, accepted_quote):
        assert allowed_transitions(accepted_quote) == ["create_revision", "create_invoice", "cancel"]

    def test_sent_invoice(self, make_document):
        invoice = make_document("invoice")
        send(invoice)
        assert allowed_transitions(invoice) == ["record_payment", "cancel"]


class TestCreateInvoiceFromQuote:
    def test_invoice_uses_snapshot(self, accepted_quote, world):
        today = date(2026, 3, 1)
        invoice = create_invoice_from_quote(accepted_quote, created_by_id=world.staff.id, today=today)
        db.session.flush()

        assert invoice.doc_type == "invoice"
        assert invoice.number == "INV-000001"
        assert invoice.status == STATUS_DRAFT
        assert invoice.quote_id == accepted_quote.id
        assert invoice.total == Decimal("156.00")
        assert invoice.issue_date == today
        assert invoice.due_date == today + timedelta(days=30)

    def test_quote_must_be_accepted(self, sent_quote, world):
        with pytest.raises(InvalidTransition):
            create_invoice_from_quote(sent_quote, created_by_id=world.staff.id)

    def test_unlocked_quote_cannot_convert(self, accepted_quote, world):
        create_revision(accepted_quote, changed_by_id=world.staff.id, change_reason="tweak")
        with pytest.raises(InvalidTransition):
            create_invoice_from_quote(accepted_quote, created_by_id=world.staff.id)

    def test_only_once(self, accepted_quote, world):
        create_invoice_from_quote(accepted_quote, created_by_id=world.staff.id)
        db.session.flush()
        with pytest.raises(InvalidTransition):
            create_invoice_from_quote(accepted_quote, created_by_id=world.staff.id)


class TestMarkOverdue:
    def test_past_due_invoices(self, make_document, world):
        late = make_document("invoice", due_date=date(2026, 1, 10))
        on_time = make_document("invoice", due_date=date(2026, 2, 10))
        paid = make_document("invoice", due_date=date(2026, 1, 10))
        for invoice in (late, on_time, paid):
            send(invoice)
        record_payment(paid, amount="156.00", method="bank")
        db.session.flush()

        flagged = mark_overdue(today=date(2026, 2, 1))

        assert flagged == [late]
        assert late.status == STATUS_OVERDUE
        assert on_time.status == STATUS_SENT
        assert paid.status == STATUS_PAID

    def test_overdue_invoice_still_takes_payment(self, make_document):
        invoice = make_document("invoice", due_date=date(2026, 1, 10))
        send(invoice)
        db.session.flush()
        mark_overdue(today=date(2026, 2, 1))

        record_payment(invoice, amount="156.00", method="bank")
        assert invoice.status == STATUS_PAID
