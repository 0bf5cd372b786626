"""
Quote Ledger – Domain Models

Covers:
- Businesses, clients and login users (role + business/client affiliation)
- Documents (quotes and invoices) with ordered line items
- Append-only payment ledger, acceptance snapshots and revisions
- Per-business numbering counters
- Audit log

IMPORTANT:
- Derived money fields (subtotal, vat_amount, total, amount_paid, balance_due) are only ever
  written by recalc_totals() / the payment ledger. Routes never assign them from request data.
- Payments, acceptance snapshots and revisions are append-only. The ORM refuses UPDATE/DELETE
  on persisted rows (see the mapper events at the bottom of this module).
- Document rows carry a version counter: SQLAlchemy adds "WHERE version = :old" to every
  UPDATE, so two requests racing on the same document cannot both win.
"""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

from flask_login import UserMixin
from sqlalchemy import event
from werkzeug.security import generate_password_hash, check_password_hash

from .errors import ImmutableRecordError
from .extensions import db
from .money import LINE_PLACES, format_line_value, format_money
from .totals import Totals, calculate_line_item, calculate_totals


# ---------------------------------------------------------------------
# Vocabulary
# ---------------------------------------------------------------------
ROLE_ADMIN = "admin"
ROLE_STAFF = "staff"
ROLE_ACCOUNTANT = "accountant"
ROLE_CLIENT = "client"
ROLES = (ROLE_ADMIN, ROLE_STAFF, ROLE_ACCOUNTANT, ROLE_CLIENT)

DOC_QUOTE = "quote"
DOC_INVOICE = "invoice"
DOC_TYPES = (DOC_QUOTE, DOC_INVOICE)

STATUS_DRAFT = "draft"
STATUS_SENT = "sent"
STATUS_ACCEPTED = "accepted"
STATUS_REJECTED = "rejected"
STATUS_PARTIALLY_PAID = "partially_paid"
STATUS_PAID = "paid"
STATUS_OVERDUE = "overdue"
STATUS_CANCELLED = "cancelled"

PAYMENT_METHODS = ("bank", "cash", "card", "other")
ITEM_TYPES = ("material", "labour", "custom")


def utcnow() -> datetime:
    """Naive UTC timestamp (columns are stored without tz)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _iso(value) -> str | None:
    return value.isoformat() if value is not None else None


# ---------------------------------------------------------------------
# Businesses, clients, users
# ---------------------------------------------------------------------
class Business(db.Model):
    """Issuing business. Owns clients, staff and documents."""

    __tablename__ = "businesses"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)

    # Numbering prefixes: Q-000001, INV-000001
    quote_prefix = db.Column(db.String(20), nullable=False, default="Q")
    invoice_prefix = db.Column(db.String(20), nullable=False, default="INV")

    # Stored as percent (20 means 20%)
    default_vat_rate = db.Column(db.Numeric(5, 2), nullable=False, default=Decimal("20.00"))
    currency = db.Column(db.String(3), nullable=False, default="GBP")

    created_at = db.Column(db.DateTime, default=utcnow, index=True)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    clients = db.relationship("Client", back_populates="business", lazy=True)
    users = db.relationship("User", back_populates="business", lazy=True)

    def prefix_for(self, doc_type: str) -> str:
        return self.quote_prefix if doc_type == DOC_QUOTE else self.invoice_prefix

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "quote_prefix": self.quote_prefix,
            "invoice_prefix": self.invoice_prefix,
            "default_vat_rate": format_money(self.default_vat_rate),
            "currency": self.currency,
        }

    def __repr__(self):
        return f"<Business {self.name}>"


class Client(db.Model):
    """Recipient of quotes and invoices."""

    __tablename__ = "clients"

    id = db.Column(db.Integer, primary_key=True)
    business_id = db.Column(
        db.Integer,
        db.ForeignKey("businesses.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    name = db.Column(db.String(255), nullable=False)
    email = db.Column(db.String(255))
    phone = db.Column(db.String(50))
    company_name = db.Column(db.String(255))
    vat_number = db.Column(db.String(50))

    is_active = db.Column(db.Boolean, default=True, nullable=False, index=True)

    created_at = db.Column(db.DateTime, default=utcnow, index=True)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    business = db.relationship("Business", back_populates="clients")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "business_id": self.business_id,
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
            "company_name": self.company_name,
            "vat_number": self.vat_number,
            "is_active": self.is_active,
        }

    def __repr__(self):
        return f"<Client {self.name}>"


class User(UserMixin, db.Model):
    """
    System login user.

    Affiliation depends on role:
    - staff / accountant -> business_id
    - client             -> client_id
    - admin              -> none (platform-wide)
    """

    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)

    username = db.Column(db.String(80), unique=True, nullable=False, index=True)
    password_hash = db.Column(db.String(255), nullable=False)

    role = db.Column(db.String(20), nullable=False, default=ROLE_STAFF, index=True)
    is_active = db.Column(db.Boolean, default=True, nullable=False)

    business_id = db.Column(
        db.Integer,
        db.ForeignKey("businesses.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    client_id = db.Column(
        db.Integer,
        db.ForeignKey("clients.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    created_at = db.Column(db.DateTime, default=utcnow, index=True)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    business = db.relationship("Business", back_populates="users")
    client = db.relationship("Client", foreign_keys=[client_id])

    def set_password(self, password: str):
        self.password_hash = generate_password_hash(password)

    def check_password(self, password: str) -> bool:
        return check_password_hash(self.password_hash, password)

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "username": self.username,
            "role": self.role,
            "business_id": self.business_id,
            "client_id": self.client_id,
            "is_active": self.is_active,
        }

    def __repr__(self):
        return f"<User {self.username} ({self.role})>"


# ---------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------
class Document(db.Model):
    """A quote or an invoice."""

    __tablename__ = "documents"

    id = db.Column(db.Integer, primary_key=True)

    doc_type = db.Column(db.String(20), nullable=False, index=True)
    number = db.Column(db.String(50), nullable=False, index=True)

    business_id = db.Column(
        db.Integer,
        db.ForeignKey("businesses.id"),
        nullable=False,
        index=True,
    )
    client_id = db.Column(
        db.Integer,
        db.ForeignKey("clients.id"),
        nullable=False,
        index=True,
    )

    status = db.Column(db.String(20), nullable=False, default=STATUS_DRAFT, index=True)

    title = db.Column(db.String(255))
    notes = db.Column(db.Text)
    terms = db.Column(db.Text)
    currency = db.Column(db.String(3), nullable=False, default="GBP")

    issue_date = db.Column(db.Date)
    due_date = db.Column(db.Date, index=True)
    valid_until = db.Column(db.Date)

    # Rate inputs
    vat_rate = db.Column(db.Numeric(5, 2), nullable=False, default=Decimal("0.00"))
    markup_amount = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    discount_amount = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    deposit_amount = db.Column(db.Numeric(12, 2), nullable=True)

    # Derived (recalc_totals / ledger only)
    subtotal = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    vat_amount = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    total = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    amount_paid = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    balance_due = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal("0.00"))

    is_locked = db.Column(db.Boolean, nullable=False, default=False)

    # Lifecycle evidence (each set exactly once)
    sent_at = db.Column(db.DateTime)
    accepted_at = db.Column(db.DateTime)
    accepted_by_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    acceptance_ip = db.Column(db.String(45))
    acceptance_note = db.Column(db.Text)
    rejected_at = db.Column(db.DateTime)
    rejected_by_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    rejection_reason = db.Column(db.Text)
    cancelled_at = db.Column(db.DateTime)
    cancelled_by_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    cancellation_reason = db.Column(db.Text)

    # Invoice created from an accepted quote
    quote_id = db.Column(db.Integer, db.ForeignKey("documents.id"), nullable=True, index=True)

    created_by_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))

    created_at = db.Column(db.DateTime, default=utcnow, index=True)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    version = db.Column(db.Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        db.UniqueConstraint("business_id", "doc_type", "number", name="uq_document_business_number"),
    )

    business = db.relationship("Business")
    client = db.relationship("Client")

    line_items = db.relationship(
        "LineItem",
        back_populates="document",
        order_by="LineItem.position",
        cascade="all, delete-orphan",
    )
    payments = db.relationship(
        "Payment",
        back_populates="document",
        order_by="Payment.id",
        lazy=True,
    )
    acceptance_snapshots = db.relationship(
        "AcceptanceSnapshot",
        back_populates="document",
        order_by="AcceptanceSnapshot.id",
        lazy=True,
    )
    revisions = db.relationship(
        "Revision",
        back_populates="document",
        order_by="Revision.revision_number",
        lazy=True,
    )

    source_quote = db.relationship("Document", remote_side=[id], foreign_keys=[quote_id])

    @property
    def is_quote(self) -> bool:
        return self.doc_type == DOC_QUOTE

    @property
    def is_invoice(self) -> bool:
        return self.doc_type == DOC_INVOICE

    @property
    def is_cancelled(self) -> bool:
        return self.status == STATUS_CANCELLED

    @property
    def is_editable(self) -> bool:
        """
        Line items / markup / discount may change only while:
        - draft, or
        - an accepted quote that a revision has unlocked.
        """
        if self.is_locked or self.is_cancelled:
            return False
        if self.status == STATUS_DRAFT:
            return True
        return self.is_quote and self.status == STATUS_ACCEPTED

    @property
    def latest_snapshot(self):
        return self.acceptance_snapshots[-1] if self.acceptance_snapshots else None

    @property
    def latest_revision(self):
        return self.revisions[-1] if self.revisions else None

    def compute_totals(self, amount_paid=None) -> Totals:
        """Pure totals from current line items and rate inputs."""
        paid = self.amount_paid if amount_paid is None else amount_paid
        return calculate_totals(
            [(line.quantity, line.unit_price) for line in self.line_items],
            vat_rate=self.vat_rate,
            markup_amount=self.markup_amount,
            discount_amount=self.discount_amount,
            deposit_amount=self.deposit_amount,
            amount_paid=paid,
        )

    def recalc_totals(self, amount_paid=None) -> Totals:
        """Recompute every derived money field (line totals included) and store them."""
        for line in self.line_items:
            line.recalc()
        totals = self.compute_totals(amount_paid=amount_paid)
        self.subtotal = totals.subtotal
        self.vat_amount = totals.vat_amount
        self.total = totals.total
        self.amount_paid = totals.amount_paid
        self.balance_due = totals.balance_due
        return totals

    def totals_dict(self) -> dict:
        return {
            "subtotal": format_money(self.subtotal),
            "markup_amount": format_money(self.markup_amount),
            "discount_amount": format_money(self.discount_amount),
            "vat_rate": format_money(self.vat_rate),
            "vat_amount": format_money(self.vat_amount),
            "total": format_money(self.total),
            "deposit_amount": format_money(self.deposit_amount),
            "amount_paid": format_money(self.amount_paid),
            "balance_due": format_money(self.balance_due),
        }

    def to_dict(self, include_items: bool = True) -> dict:
        data = {
            "id": self.id,
            "doc_type": self.doc_type,
            "number": self.number,
            "business_id": self.business_id,
            "client_id": self.client_id,
            "status": self.status,
            "title": self.title,
            "notes": self.notes,
            "terms": self.terms,
            "currency": self.currency,
            "issue_date": _iso(self.issue_date),
            "due_date": _iso(self.due_date),
            "valid_until": _iso(self.valid_until),
            "is_locked": self.is_locked,
            "is_editable": self.is_editable,
            "sent_at": _iso(self.sent_at),
            "accepted_at": _iso(self.accepted_at),
            "accepted_by_id": self.accepted_by_id,
            "acceptance_note": self.acceptance_note,
            "rejected_at": _iso(self.rejected_at),
            "rejected_by_id": self.rejected_by_id,
            "rejection_reason": self.rejection_reason,
            "cancelled_at": _iso(self.cancelled_at),
            "quote_id": self.quote_id,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "version": self.version,
        }
        data.update(self.totals_dict())
        if include_items:
            data["line_items"] = [line.to_dict() for line in self.line_items]
        return data

    def __repr__(self):
        return f"<Document {self.number} ({self.doc_type}, {self.status})>"


class LineItem(db.Model):
    __tablename__ = "line_items"

    id = db.Column(db.Integer, primary_key=True)

    document_id = db.Column(
        db.Integer,
        db.ForeignKey("documents.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    position = db.Column(db.Integer, nullable=False, default=0)
    item_type = db.Column(db.String(20), nullable=False, default="material")
    description = db.Column(db.String(500), nullable=False)
    unit = db.Column(db.String(20))

    # Stored at LINE_PLACES decimals; inputs with more places are rejected.
    quantity = db.Column(db.Numeric(14, LINE_PLACES), nullable=False, default=1)
    unit_price = db.Column(db.Numeric(14, LINE_PLACES), nullable=False, default=0)
    line_total = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal("0.00"))

    created_at = db.Column(db.DateTime, default=utcnow)

    document = db.relationship("Document", back_populates="line_items")

    def recalc(self):
        self.line_total = calculate_line_item(self.quantity, self.unit_price)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "position": self.position,
            "item_type": self.item_type,
            "description": self.description,
            "unit": self.unit,
            "quantity": format_line_value(self.quantity),
            "unit_price": format_line_value(self.unit_price),
            "line_total": format_money(self.line_total),
        }


# ---------------------------------------------------------------------
# Append-only records
# ---------------------------------------------------------------------
class Payment(db.Model):
    """Ledger entry paying down a document. Never updated or deleted."""

    __tablename__ = "payments"

    id = db.Column(db.Integer, primary_key=True)

    document_id = db.Column(
        db.Integer,
        db.ForeignKey("documents.id"),
        nullable=False,
        index=True,
    )

    amount = db.Column(db.Numeric(12, 2), nullable=False)
    method = db.Column(db.String(20), nullable=False)
    reference = db.Column(db.String(255))
    notes = db.Column(db.Text)
    paid_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    recorded_by_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))

    created_at = db.Column(db.DateTime, default=utcnow, index=True)

    document = db.relationship("Document", back_populates="payments")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "document_id": self.document_id,
            "amount": format_money(self.amount),
            "method": self.method,
            "reference": self.reference,
            "notes": self.notes,
            "paid_at": _iso(self.paid_at),
            "recorded_by_id": self.recorded_by_id,
            "created_at": _iso(self.created_at),
        }


class AcceptanceSnapshot(db.Model):
    """Terms of a quote at the moment the client accepted it."""

    __tablename__ = "acceptance_snapshots"

    id = db.Column(db.Integer, primary_key=True)

    document_id = db.Column(
        db.Integer,
        db.ForeignKey("documents.id"),
        nullable=False,
        index=True,
    )

    items_snapshot = db.Column(db.JSON, nullable=False)

    subtotal = db.Column(db.Numeric(12, 2), nullable=False)
    markup_amount = db.Column(db.Numeric(12, 2), nullable=False)
    discount_amount = db.Column(db.Numeric(12, 2), nullable=False)
    vat_rate = db.Column(db.Numeric(5, 2), nullable=False)
    vat_amount = db.Column(db.Numeric(12, 2), nullable=False)
    total = db.Column(db.Numeric(12, 2), nullable=False)
    deposit_amount = db.Column(db.Numeric(12, 2), nullable=True)
    balance_due = db.Column(db.Numeric(12, 2), nullable=False)

    accepted_by_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    acceptance_ip = db.Column(db.String(45))
    acceptance_note = db.Column(db.Text)

    created_at = db.Column(db.DateTime, default=utcnow, index=True)

    document = db.relationship("Document", back_populates="acceptance_snapshots")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "document_id": self.document_id,
            "items": self.items_snapshot,
            "subtotal": format_money(self.subtotal),
            "markup_amount": format_money(self.markup_amount),
            "discount_amount": format_money(self.discount_amount),
            "vat_rate": format_money(self.vat_rate),
            "vat_amount": format_money(self.vat_amount),
            "total": format_money(self.total),
            "deposit_amount": format_money(self.deposit_amount),
            "balance_due": format_money(self.balance_due),
            "accepted_by_id": self.accepted_by_id,
            "acceptance_ip": self.acceptance_ip,
            "acceptance_note": self.acceptance_note,
            "created_at": _iso(self.created_at),
        }


class Revision(db.Model):
    """Prior state of a locked document, captured when staff unlock it for editing."""

    __tablename__ = "revisions"

    id = db.Column(db.Integer, primary_key=True)

    document_id = db.Column(
        db.Integer,
        db.ForeignKey("documents.id"),
        nullable=False,
        index=True,
    )

    revision_number = db.Column(db.Integer, nullable=False)
    parent_revision_id = db.Column(db.Integer, db.ForeignKey("revisions.id"), nullable=True)

    changed_by_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    change_reason = db.Column(db.Text, nullable=False)

    quote_data = db.Column(db.JSON, nullable=False)
    items_data = db.Column(db.JSON, nullable=False)
    totals_data = db.Column(db.JSON, nullable=False)

    created_at = db.Column(db.DateTime, default=utcnow, index=True)

    document = db.relationship("Document", back_populates="revisions")

    __table_args__ = (
        db.UniqueConstraint("document_id", "revision_number", name="uq_revision_document_number"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "document_id": self.document_id,
            "revision_number": self.revision_number,
            "parent_revision_id": self.parent_revision_id,
            "changed_by_id": self.changed_by_id,
            "change_reason": self.change_reason,
            "quote_data": self.quote_data,
            "items_data": self.items_data,
            "totals_data": self.totals_data,
            "created_at": _iso(self.created_at),
        }


# ---------------------------------------------------------------------
# Numbering
# ---------------------------------------------------------------------
class NumberCounter(db.Model):
    """Last allocated sequence value per (business, doc_type)."""

    __tablename__ = "number_counters"

    id = db.Column(db.Integer, primary_key=True)

    business_id = db.Column(
        db.Integer,
        db.ForeignKey("businesses.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    doc_type = db.Column(db.String(20), nullable=False)
    last_value = db.Column(db.Integer, nullable=False, default=0)

    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        db.UniqueConstraint("business_id", "doc_type", name="uq_counter_business_type"),
    )


# ---------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------
class AuditLog(db.Model):
    """Who did what to which entity, with before/after snapshots."""

    __tablename__ = "audit_logs"

    id = db.Column(db.Integer, primary_key=True)

    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    username_snapshot = db.Column(db.String(150), nullable=True)

    entity_type = db.Column(db.String(50), nullable=False, index=True)
    entity_id = db.Column(db.Integer, nullable=False, index=True)

    action = db.Column(db.String(30), nullable=False, index=True)

    before_data = db.Column(db.Text, nullable=True)
    after_data = db.Column(db.Text, nullable=True)

    ip_address = db.Column(db.String(45), nullable=True)

    created_at = db.Column(db.DateTime, default=utcnow, index=True)


# ---------------------------------------------------------------------
# Append-only enforcement
# ---------------------------------------------------------------------
def _reject_update(mapper, connection, target):
    raise ImmutableRecordError(f"{target.__class__.__name__} {target.id} is append-only and cannot be modified.")


def _reject_delete(mapper, connection, target):
    raise ImmutableRecordError(f"{target.__class__.__name__} {target.id} is append-only and cannot be deleted.")


for _model in (Payment, AcceptanceSnapshot, Revision):
    event.listen(_model, "before_update", _reject_update)
    event.listen(_model, "before_delete", _reject_delete)
