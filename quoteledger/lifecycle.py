"""
quoteledger/lifecycle.py

Document state machine.

    quote:   draft -> sent -> accepted (locked) -> [revision: unlocked] ...
             draft | sent -> rejected
    invoice: draft -> sent -> partially_paid -> paid
             sent | partially_paid -> overdue -> partially_paid | paid
    any non-cancelled status -> cancelled (terminal)

Rules:
- Only draft may be sent; sent_at/accepted_at/rejected_at/cancelled_at are set exactly once.
- Accepting a quote copies its items and totals into an immutable AcceptanceSnapshot and locks it.
- A locked document cannot be edited until staff create a Revision, which records the prior
  state and unlocks it. Status is left unchanged by a revision.
- Nothing may happen to a cancelled document.

IMPORTANT:
- Functions here mutate ORM objects and add rows to the session. They never commit.
  Routes own the transaction boundary (flush -> log_action -> commit).
- Authorization is NOT checked here; see quoteledger/security.py.
"""

from __future__ import annotations

import logging
from datetime import date, timedelta
from typing import Any, Iterable, Optional

from sqlalchemy import func

from .audit import serialize_model
from .errors import InvalidDocumentState, InvalidTransition, NotFound, ValidationFailed
from .extensions import db
from .models import (
    DOC_INVOICE,
    DOC_QUOTE,
    DOC_TYPES,
    ITEM_TYPES,
    STATUS_ACCEPTED,
    STATUS_CANCELLED,
    STATUS_DRAFT,
    STATUS_OVERDUE,
    STATUS_PAID,
    STATUS_PARTIALLY_PAID,
    STATUS_REJECTED,
    STATUS_SENT,
    AcceptanceSnapshot,
    Business,
    Client,
    Document,
    LineItem,
    Revision,
    utcnow,
)
from .money import to_decimal
from .numbering import next_number
from .totals import totals_changed, validate_vat_rate

logger = logging.getLogger(__name__)


# Fields a request may change while the document is editable
EDITABLE_FIELDS = frozenset({"line_items", "markup_amount", "discount_amount", "title", "notes", "terms"})
# ...and additionally only while it is still a draft (fixed once sent)
DRAFT_ONLY_FIELDS = frozenset({"vat_rate", "deposit_amount", "client_id", "due_date", "valid_until"})
# Never settable from outside
DERIVED_FIELDS = frozenset({"subtotal", "vat_amount", "total", "amount_paid", "balance_due"})

QUOTE_RESPONSE_STATUSES = (STATUS_DRAFT, STATUS_SENT)
OVERDUE_CANDIDATE_STATUSES = (STATUS_SENT, STATUS_PARTIALLY_PAID)


# ---------------------------------------------------------------------
# Guards
# ---------------------------------------------------------------------
def ensure_not_cancelled(document: Document) -> None:
    if document.status == STATUS_CANCELLED:
        raise InvalidDocumentState(f"Document {document.number} is cancelled.")


def ensure_editable(document: Document) -> None:
    ensure_not_cancelled(document)
    if document.is_locked:
        raise InvalidDocumentState(
            f"Document {document.number} is locked. Create a revision before editing it."
        )
    if not document.is_editable:
        raise InvalidDocumentState(f"Document {document.number} cannot be edited in status {document.status}.")


def allowed_transitions(document: Document) -> list[str]:
    """Transition names currently open for the document (informational, for API clients)."""
    if document.status == STATUS_CANCELLED:
        return []

    allowed = []
    if document.status == STATUS_DRAFT:
        allowed.append("send")
    if document.is_quote and document.status in QUOTE_RESPONSE_STATUSES:
        allowed.extend(["accept", "reject"])
    if document.is_locked:
        allowed.append("create_revision")
    if document.is_quote and document.status == STATUS_ACCEPTED and document.is_locked:
        allowed.append("create_invoice")
    if document.is_invoice and document.status not in (STATUS_DRAFT, STATUS_PAID):
        allowed.append("record_payment")
    allowed.append("cancel")
    return allowed


# ---------------------------------------------------------------------
# Creation & editing
# ---------------------------------------------------------------------
def resolve_client(business_id: int, client_id: Any) -> Client:
    """Client must exist, be active and belong to the issuing business."""
    client = db.session.get(Client, client_id) if client_id is not None else None
    if client is None or client.business_id != business_id or not client.is_active:
        raise NotFound("Client not found for this business.", details={"field": "client_id"})
    return client


def _as_decimal(value: Any, field: str):
    try:
        return to_decimal(value)
    except (TypeError, ValueError):
        raise ValidationFailed(f"{field} must be a number.", details={"field": field})


def _replace_line_items(document: Document, items: Iterable[dict]) -> None:
    items = list(items)
    if not items:
        raise ValidationFailed("At least one line item is required.", details={"field": "line_items"})

    new_lines = []
    for position, item in enumerate(items):
        description = (item.get("description") or "").strip()
        if not description:
            raise ValidationFailed("Item description is required.", details={"field": f"line_items[{position}].description"})
        item_type = item.get("item_type") or "material"
        if item_type not in ITEM_TYPES:
            raise ValidationFailed(
                f"Item type must be one of: {', '.join(ITEM_TYPES)}.",
                details={"field": f"line_items[{position}].item_type"},
            )
        line = LineItem(
            position=position,
            item_type=item_type,
            description=description[:500],
            unit=item.get("unit"),
            quantity=_as_decimal(item.get("quantity"), f"line_items[{position}].quantity"),
            unit_price=_as_decimal(item.get("unit_price"), f"line_items[{position}].unit_price"),
        )
        line.recalc()
        new_lines.append(line)

    document.line_items = new_lines


def create_document(
    *,
    business: Business,
    doc_type: str,
    client_id: Any,
    line_items: Iterable[dict],
    vat_rate: Any = None,
    markup_amount: Any = None,
    discount_amount: Any = None,
    deposit_amount: Any = None,
    title: Optional[str] = None,
    notes: Optional[str] = None,
    terms: Optional[str] = None,
    due_date: Optional[date] = None,
    valid_until: Optional[date] = None,
    created_by_id: Optional[int] = None,
    quote_id: Optional[int] = None,
) -> Document:
    """Create a draft quote or invoice with its number allocated and totals derived."""
    if doc_type not in DOC_TYPES:
        raise ValidationFailed("doc_type must be 'quote' or 'invoice'.", details={"field": "doc_type"})

    client = resolve_client(business.id, client_id)

    document = Document(
        doc_type=doc_type,
        business_id=business.id,
        client_id=client.id,
        status=STATUS_DRAFT,
        title=title,
        notes=notes,
        terms=terms,
        currency=business.currency,
        due_date=due_date if doc_type == DOC_INVOICE else None,
        valid_until=valid_until if doc_type == DOC_QUOTE else None,
        vat_rate=validate_vat_rate(business.default_vat_rate if vat_rate is None else vat_rate),
        markup_amount=markup_amount or 0,
        discount_amount=discount_amount or 0,
        deposit_amount=deposit_amount,
        is_locked=False,
        created_by_id=created_by_id,
        quote_id=quote_id,
    )
    _replace_line_items(document, line_items)
    document.recalc_totals(amount_paid=0)

    # Number last: a validation failure must not burn a number
    document.number = next_number(doc_type, business)
    db.session.add(document)

    logger.info("Created %s %s for client %s (total=%s)", doc_type, document.number, client.id, document.total)
    return document


def update_document(document: Document, changes: dict) -> bool:
    """
    Apply edits to an editable document and recompute its totals.

    Returns True if the monetary totals changed.
    """
    ensure_editable(document)

    derived = DERIVED_FIELDS.intersection(changes)
    if derived:
        raise ValidationFailed(
            "Derived totals cannot be set directly.",
            details={"fields": sorted(derived)},
        )
    unknown = set(changes) - EDITABLE_FIELDS - DRAFT_ONLY_FIELDS
    if unknown:
        raise ValidationFailed("Unknown fields.", details={"fields": sorted(unknown)})

    draft_only = DRAFT_ONLY_FIELDS.intersection(changes)
    if draft_only and document.status != STATUS_DRAFT:
        raise InvalidDocumentState(
            f"{', '.join(sorted(draft_only))} can only change while the document is a draft."
        )

    before = document.compute_totals()

    if "client_id" in changes:
        document.client_id = resolve_client(document.business_id, changes["client_id"]).id
    if "vat_rate" in changes:
        document.vat_rate = validate_vat_rate(changes["vat_rate"])
    if "deposit_amount" in changes:
        document.deposit_amount = changes["deposit_amount"]
    if "due_date" in changes and document.is_invoice:
        document.due_date = changes["due_date"]
    if "valid_until" in changes and document.is_quote:
        document.valid_until = changes["valid_until"]
    if "markup_amount" in changes:
        document.markup_amount = changes["markup_amount"] or 0
    if "discount_amount" in changes:
        document.discount_amount = changes["discount_amount"] or 0
    for field in ("title", "notes", "terms"):
        if field in changes:
            setattr(document, field, changes[field])
    if "line_items" in changes:
        _replace_line_items(document, changes["line_items"])

    after = document.recalc_totals()
    return totals_changed(before, after)


# ---------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------
def send(document: Document) -> Document:
    """draft -> sent."""
    ensure_not_cancelled(document)
    if document.status != STATUS_DRAFT:
        raise InvalidTransition(f"Only draft documents can be sent (status is {document.status}).")

    document.recalc_totals()
    document.status = STATUS_SENT
    document.sent_at = utcnow()
    if document.is_invoice and document.issue_date is None:
        document.issue_date = document.sent_at.date()

    logger.info("Sent %s %s", document.doc_type, document.number)
    return document


def _ensure_quote_awaiting_response(document: Document, action: str) -> None:
    ensure_not_cancelled(document)
    if not document.is_quote:
        raise InvalidTransition(f"Only quotes can be {action}ed.")
    if document.status not in QUOTE_RESPONSE_STATUSES:
        raise InvalidTransition(f"Cannot {action} quote with status: {document.status}.")


def accept(
    document: Document,
    *,
    accepted_by_id: int,
    acceptance_ip: Optional[str] = None,
    acceptance_note: Optional[str] = None,
) -> AcceptanceSnapshot:
    """Client accepts a quote: snapshot its terms verbatim and lock it."""
    _ensure_quote_awaiting_response(document, "accept")

    totals = document.recalc_totals()
    now = utcnow()

    snapshot = AcceptanceSnapshot(
        items_snapshot=[line.to_dict() for line in document.line_items],
        subtotal=totals.subtotal,
        markup_amount=totals.markup_amount,
        discount_amount=totals.discount_amount,
        vat_rate=totals.vat_rate,
        vat_amount=totals.vat_amount,
        total=totals.total,
        deposit_amount=totals.deposit_amount,
        balance_due=totals.balance_due,
        accepted_by_id=accepted_by_id,
        acceptance_ip=acceptance_ip,
        acceptance_note=acceptance_note,
        created_at=now,
    )
    document.acceptance_snapshots.append(snapshot)

    document.status = STATUS_ACCEPTED
    document.accepted_at = now
    document.accepted_by_id = accepted_by_id
    document.acceptance_ip = acceptance_ip
    document.acceptance_note = acceptance_note
    document.is_locked = True

    logger.info("Quote %s accepted by user %s and locked", document.number, accepted_by_id)
    return snapshot


def reject(document: Document, *, rejected_by_id: int, reason: Optional[str]) -> Document:
    """Client rejects a quote. A reason is mandatory."""
    reason = (reason or "").strip()
    if not reason:
        raise ValidationFailed("rejection_reason is required.", details={"field": "rejection_reason"})
    _ensure_quote_awaiting_response(document, "reject")

    document.status = STATUS_REJECTED
    document.rejected_at = utcnow()
    document.rejected_by_id = rejected_by_id
    document.rejection_reason = reason

    logger.info("Quote %s rejected by user %s", document.number, rejected_by_id)
    return document


def create_revision(document: Document, *, changed_by_id: int, change_reason: Optional[str]) -> Revision:
    """
    Record the current (locked) state as a Revision and unlock the document for editing.

    Caller must hold the document row lock so revision numbers are allocated one at a time;
    the (document_id, revision_number) unique constraint backs this up.
    """
    change_reason = (change_reason or "").strip()
    if not change_reason:
        raise ValidationFailed("change_reason is required.", details={"field": "change_reason"})
    ensure_not_cancelled(document)
    if not document.is_locked:
        raise InvalidTransition("Can only create revisions for locked (accepted) documents.")

    latest = (
        Revision.query.filter_by(document_id=document.id)
        .order_by(Revision.revision_number.desc())
        .first()
    )
    max_number = (
        db.session.query(func.max(Revision.revision_number))
        .filter(Revision.document_id == document.id)
        .scalar()
    )

    revision = Revision(
        revision_number=(max_number or 0) + 1,
        parent_revision_id=latest.id if latest else None,
        changed_by_id=changed_by_id,
        change_reason=change_reason,
        quote_data=serialize_model(document),
        items_data=[line.to_dict() for line in document.line_items],
        totals_data=document.totals_dict(),
    )
    document.revisions.append(revision)

    document.is_locked = False

    logger.info("Revision %s created for %s; document unlocked", revision.revision_number, document.number)
    return revision


def cancel(document: Document, *, cancelled_by_id: int, reason: Optional[str] = None) -> Document:
    """Any status -> cancelled (terminal)."""
    ensure_not_cancelled(document)

    document.status = STATUS_CANCELLED
    document.cancelled_at = utcnow()
    document.cancelled_by_id = cancelled_by_id
    document.cancellation_reason = (reason or "").strip() or None

    logger.info("Cancelled %s %s", document.doc_type, document.number)
    return document


# ---------------------------------------------------------------------
# Quote -> invoice, overdue sweep
# ---------------------------------------------------------------------
def create_invoice_from_quote(
    quote: Document,
    *,
    created_by_id: Optional[int],
    payment_terms_days: int = 30,
    today: Optional[date] = None,
) -> Document:
    """
    Build a draft invoice from an accepted, locked quote.

    The latest AcceptanceSnapshot is the source of truth for items and rates, not the
    quote's current rows.
    """
    ensure_not_cancelled(quote)
    if not quote.is_quote:
        raise InvalidTransition("Invoices can only be created from quotes.")
    if quote.status != STATUS_ACCEPTED:
        raise InvalidTransition(f"Cannot create invoice from quote with status: {quote.status}. Quote must be accepted first.")
    if not quote.is_locked:
        raise InvalidTransition("Quote is not locked. Cannot create invoice.")

    existing = (
        Document.query.filter(Document.quote_id == quote.id, Document.status != STATUS_CANCELLED)
        .first()
    )
    if existing is not None:
        raise InvalidTransition(f"Quote {quote.number} has already been invoiced as {existing.number}.")

    snapshot = quote.latest_snapshot
    if snapshot is None or not snapshot.items_snapshot:
        raise InvalidTransition("No acceptance snapshot found for quote.")

    today = today or utcnow().date()
    due_date = quote.valid_until
    if due_date is None or due_date < today:
        due_date = today + timedelta(days=payment_terms_days)

    items = [
        {
            "description": item["description"],
            "item_type": item.get("item_type") or "material",
            "unit": item.get("unit"),
            "quantity": item["quantity"],
            "unit_price": item["unit_price"],
        }
        for item in snapshot.items_snapshot
    ]

    invoice = create_document(
        business=quote.business,
        doc_type=DOC_INVOICE,
        client_id=quote.client_id,
        line_items=items,
        vat_rate=snapshot.vat_rate,
        markup_amount=snapshot.markup_amount,
        discount_amount=snapshot.discount_amount,
        deposit_amount=snapshot.deposit_amount,
        title=quote.title,
        notes=f"Created from accepted quote {quote.number}",
        terms=quote.terms,
        due_date=due_date,
        created_by_id=created_by_id,
        quote_id=quote.id,
    )
    invoice.issue_date = today
    return invoice


def mark_overdue(today: Optional[date] = None) -> list[Document]:
    """Flag sent / partially paid invoices past their due date as overdue."""
    today = today or utcnow().date()
    candidates = (
        Document.query.filter(
            Document.doc_type == DOC_INVOICE,
            Document.status.in_(OVERDUE_CANDIDATE_STATUSES),
            Document.due_date.isnot(None),
            Document.due_date < today,
        )
        .order_by(Document.id.asc())
        .all()
    )
    for document in candidates:
        document.status = STATUS_OVERDUE
        logger.info("Invoice %s is overdue (due %s)", document.number, document.due_date)
    return candidates
