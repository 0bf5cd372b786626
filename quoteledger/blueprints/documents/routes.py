"""
quoteledger/blueprints/documents/routes.py

Quote / invoice routes.

Includes:
- Create / list / get / edit documents
- Lifecycle transitions (send, accept, reject, revise, cancel, convert to invoice)
- Payment ledger

IMPORTANT:
- UI is never trusted. Access control and validations are server-side.
- Every mutation follows the same transaction shape:
    lifecycle/ledger call -> flush -> log_action -> commit
  Any exception rolls the whole request back (see the error handlers in create_app()).
- Payment recording and revision creation load the document FOR UPDATE.
"""

from __future__ import annotations

import logging

from flask import Blueprint, current_app, g, jsonify, request
from sqlalchemy import false

from ...audit import log_action, serialize_model
from ...errors import NotFound, ValidationFailed
from ...extensions import db
from ...ledger import record_payment
from ...lifecycle import (
    DERIVED_FIELDS,
    DRAFT_ONLY_FIELDS,
    EDITABLE_FIELDS,
    accept,
    allowed_transitions,
    cancel,
    create_document,
    create_invoice_from_quote,
    create_revision,
    reject,
    send,
    update_document,
)
from ...models import (
    DOC_TYPES,
    STATUS_DRAFT,
    Business,
    Document,
    Payment,
    Revision,
)
from ...security import (
    ACTION_ACCEPT,
    ACTION_CANCEL,
    ACTION_CONVERT,
    ACTION_CREATE,
    ACTION_CREATE_REVISION,
    ACTION_EDIT,
    ACTION_RECORD_PAYMENT,
    ACTION_REJECT,
    ACTION_SEND,
    ACTION_VIEW,
    AccountantActor,
    AdminActor,
    ClientActor,
    StaffActor,
    actor_required,
    authorize,
    document_action_required,
)
from ...utils import (
    MAX_PAGE_SIZE,
    client_ip,
    get_json_payload,
    parse_datetime,
    parse_decimal,
    parse_document_fields,
    parse_optional_int,
    parse_pagination,
    parse_text,
)

logger = logging.getLogger(__name__)

documents_bp = Blueprint("documents", __name__, url_prefix="/documents")

CREATE_ONLY_FIELDS = frozenset({"doc_type", "business_id"})


# ---------------------------------------------------------------------
# Loaders
# ---------------------------------------------------------------------
def _load_document(document_id: int, **_: object) -> Document:
    document = db.session.get(Document, document_id)
    if document is None:
        raise NotFound(f"Document {document_id} not found.")
    return document


def _load_document_for_update(document_id: int, **_: object) -> Document:
    """Row-locked load for payment/revision writes (no-op lock on SQLite)."""
    document = (
        Document.query.filter_by(id=document_id)
        .with_for_update()
        .populate_existing()
        .first()
    )
    if document is None:
        raise NotFound(f"Document {document_id} not found.")
    return document


def _document_response(document: Document, status: int = 200, **extra):
    body = {"document": document.to_dict(), "allowed_transitions": allowed_transitions(document)}
    body.update(extra)
    return jsonify(body), status


def _visible_documents_query(actor):
    q = Document.query
    if isinstance(actor, AdminActor):
        return q
    if isinstance(actor, (StaffActor, AccountantActor)):
        return q.filter(Document.business_id == actor.business_id)
    if isinstance(actor, ClientActor):
        return q.filter(Document.client_id == actor.client_id, Document.status != STATUS_DRAFT)
    return q.filter(false())


# ---------------------------------------------------------------------
# Create / list / get / edit
# ---------------------------------------------------------------------
@documents_bp.route("", methods=["POST"])
@actor_required
def create():
    payload = get_json_payload()
    actor = g.actor

    if isinstance(actor, AdminActor):
        business_id = parse_optional_int(payload.get("business_id"), "business_id")
        if business_id is None:
            raise ValidationFailed("business_id is required for admin users.", details={"field": "business_id"})
    else:
        business_id = getattr(actor, "business_id", None)

    authorize(ACTION_CREATE, actor, business_id=business_id)

    business = db.session.get(Business, business_id)
    if business is None:
        raise NotFound("Business not found.")

    derived = DERIVED_FIELDS.intersection(payload)
    if derived:
        raise ValidationFailed("Derived totals cannot be set directly.", details={"fields": sorted(derived)})
    unknown = set(payload) - EDITABLE_FIELDS - DRAFT_ONLY_FIELDS - CREATE_ONLY_FIELDS
    if unknown:
        raise ValidationFailed("Unknown fields.", details={"fields": sorted(unknown)})

    doc_type = payload.get("doc_type")
    if doc_type not in DOC_TYPES:
        raise ValidationFailed("doc_type must be 'quote' or 'invoice'.", details={"field": "doc_type"})
    if "line_items" not in payload:
        raise ValidationFailed("line_items is required.", details={"field": "line_items"})
    if payload.get("client_id") is None:
        raise ValidationFailed("client_id is required.", details={"field": "client_id"})

    fields = parse_document_fields(
        {k: v for k, v in payload.items() if k not in CREATE_ONLY_FIELDS}
    )

    document = create_document(
        business=business,
        doc_type=doc_type,
        created_by_id=actor.user_id,
        **fields,
    )
    db.session.flush()
    log_action(document, "CREATE", before=None, after=serialize_model(document))
    db.session.commit()

    return _document_response(document, 201)


@documents_bp.route("", methods=["GET"])
@actor_required
def list_documents():
    q = _visible_documents_query(g.actor)

    doc_type = (request.args.get("doc_type") or "").strip()
    if doc_type:
        q = q.filter(Document.doc_type == doc_type)
    status = (request.args.get("status") or "").strip()
    if status:
        q = q.filter(Document.status == status)
    client_id = parse_optional_int(request.args.get("client_id"), "client_id")
    if client_id is not None:
        q = q.filter(Document.client_id == client_id)

    page, limit = parse_pagination(request.args)
    result = q.order_by(Document.created_at.desc(), Document.id.desc()).paginate(
        page=page, per_page=limit, max_per_page=MAX_PAGE_SIZE, error_out=False
    )
    return jsonify(
        {
            "documents": [d.to_dict(include_items=False) for d in result.items],
            "page": page,
            "limit": limit,
            "total": result.total,
            "pages": result.pages,
        }
    )


@documents_bp.route("/<int:document_id>", methods=["GET"])
@document_action_required(ACTION_VIEW, _load_document)
def get_document(document_id: int):
    document = g.document
    snapshot = document.latest_snapshot
    return _document_response(
        document,
        acceptance_snapshot=snapshot.to_dict() if snapshot else None,
    )


@documents_bp.route("/<int:document_id>", methods=["PATCH"])
@document_action_required(ACTION_EDIT, _load_document)
def edit(document_id: int):
    document = g.document
    changes = parse_document_fields(get_json_payload())
    if not changes:
        raise ValidationFailed("No changes supplied.")

    before_snapshot = serialize_model(document)
    totals_changed = update_document(document, changes)

    db.session.flush()
    log_action(document, "UPDATE", before=before_snapshot, after=serialize_model(document))
    db.session.commit()

    return _document_response(document, totals_changed=totals_changed)


# ---------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------
@documents_bp.route("/<int:document_id>/send", methods=["POST"])
@document_action_required(ACTION_SEND, _load_document)
def send_document(document_id: int):
    document = g.document
    before_snapshot = serialize_model(document)

    send(document)

    db.session.flush()
    log_action(document, "SEND", before=before_snapshot, after=serialize_model(document))
    db.session.commit()
    return _document_response(document)


@documents_bp.route("/<int:document_id>/accept", methods=["POST"])
@document_action_required(ACTION_ACCEPT, _load_document)
def accept_quote(document_id: int):
    document = g.document
    payload = get_json_payload()
    before_snapshot = serialize_model(document)

    snapshot = accept(
        document,
        accepted_by_id=g.actor.user_id,
        acceptance_ip=client_ip(),
        acceptance_note=parse_text(payload.get("acceptance_note"), "acceptance_note"),
    )

    db.session.flush()
    log_action(document, "ACCEPT", before=before_snapshot, after=serialize_model(document))
    db.session.commit()
    return _document_response(document, acceptance_snapshot=snapshot.to_dict())


@documents_bp.route("/<int:document_id>/reject", methods=["POST"])
@document_action_required(ACTION_REJECT, _load_document)
def reject_quote(document_id: int):
    document = g.document
    payload = get_json_payload()
    before_snapshot = serialize_model(document)

    reject(
        document,
        rejected_by_id=g.actor.user_id,
        reason=parse_text(payload.get("rejection_reason"), "rejection_reason"),
    )

    db.session.flush()
    log_action(document, "REJECT", before=before_snapshot, after=serialize_model(document))
    db.session.commit()
    return _document_response(document)


@documents_bp.route("/<int:document_id>/revisions", methods=["POST"])
@document_action_required(ACTION_CREATE_REVISION, _load_document_for_update)
def add_revision(document_id: int):
    document = g.document
    payload = get_json_payload()
    before_snapshot = serialize_model(document)

    revision = create_revision(
        document,
        changed_by_id=g.actor.user_id,
        change_reason=parse_text(payload.get("change_reason"), "change_reason"),
    )

    db.session.flush()
    log_action(revision, "CREATE", before=None, after=serialize_model(revision))
    log_action(document, "REVISE", before=before_snapshot, after=serialize_model(document))
    db.session.commit()
    return _document_response(document, 201, revision=revision.to_dict())


@documents_bp.route("/<int:document_id>/revisions", methods=["GET"])
@document_action_required(ACTION_VIEW, _load_document)
def list_revisions(document_id: int):
    revisions = (
        Revision.query.filter_by(document_id=document_id)
        .order_by(Revision.revision_number.asc())
        .all()
    )
    return jsonify({"revisions": [r.to_dict() for r in revisions]})


@documents_bp.route("/<int:document_id>/cancel", methods=["POST"])
@document_action_required(ACTION_CANCEL, _load_document)
def cancel_document(document_id: int):
    document = g.document
    payload = get_json_payload()
    before_snapshot = serialize_model(document)

    cancel(
        document,
        cancelled_by_id=g.actor.user_id,
        reason=parse_text(payload.get("reason"), "reason"),
    )

    db.session.flush()
    log_action(document, "CANCEL", before=before_snapshot, after=serialize_model(document))
    db.session.commit()
    return _document_response(document)


@documents_bp.route("/<int:document_id>/invoice", methods=["POST"])
@document_action_required(ACTION_CONVERT, _load_document_for_update)
def convert_to_invoice(document_id: int):
    quote = g.document

    invoice = create_invoice_from_quote(
        quote,
        created_by_id=g.actor.user_id,
        payment_terms_days=current_app.config["INVOICE_PAYMENT_TERMS_DAYS"],
    )

    db.session.flush()
    log_action(invoice, "CREATE", before=None, after=serialize_model(invoice))
    db.session.commit()
    logger.info("Quote %s converted to invoice %s", quote.number, invoice.number)
    return _document_response(invoice, 201)


# ---------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------
@documents_bp.route("/<int:document_id>/payments", methods=["POST"])
@document_action_required(ACTION_RECORD_PAYMENT, _load_document_for_update)
def add_payment(document_id: int):
    document = g.document
    payload = get_json_payload()
    before_snapshot = serialize_model(document)

    payment, result = record_payment(
        document,
        amount=parse_decimal(payload.get("amount"), "amount", required=True),
        method=(payload.get("method") or "bank"),
        reference=parse_text(payload.get("reference"), "reference", max_length=255),
        notes=parse_text(payload.get("notes"), "notes"),
        paid_at=parse_datetime(payload.get("paid_at"), "paid_at"),
        recorded_by_id=g.actor.user_id,
    )

    db.session.flush()
    log_action(payment, "CREATE", before=None, after=serialize_model(payment))
    log_action(document, "PAYMENT", before=before_snapshot, after=serialize_model(document))
    db.session.commit()
    return _document_response(document, 201, payment=payment.to_dict(), totals=result.as_dict())


@documents_bp.route("/<int:document_id>/payments", methods=["GET"])
@document_action_required(ACTION_VIEW, _load_document)
def list_payments(document_id: int):
    payments = (
        Payment.query.filter_by(document_id=document_id)
        .order_by(Payment.id.asc())
        .all()
    )
    return jsonify({"payments": [p.to_dict() for p in payments]})
