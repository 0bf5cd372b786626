"""
quoteledger/blueprints/settings/routes.py

Business settings & client master data.

Scope:
- Business settings: numbering prefixes, default VAT rate, currency
- Clients: list (staff/accountant/admin), create (staff/admin)

SECURITY:
- UI is never trusted. All permissions are enforced here server-side.
- Admins work across businesses and must name the business explicitly (?business_id= / body).

AUDIT:
- CREATE/UPDATE of master data is audited via quoteledger/audit.py.
"""

from __future__ import annotations

from flask import Blueprint, g, jsonify, request

from ...audit import log_action, serialize_model
from ...errors import Forbidden, NotFound, ValidationFailed
from ...extensions import db
from ...models import Business, Client
from ...security import (
    ACTION_MANAGE_BUSINESS,
    ACTION_VIEW_BUSINESS,
    AdminActor,
    ClientActor,
    actor_required,
    authorize,
)
from ...totals import validate_vat_rate
from ...utils import get_json_payload, parse_decimal, parse_optional_int, parse_text

settings_bp = Blueprint("settings", __name__, url_prefix="/settings")

BUSINESS_FIELDS = ("name", "quote_prefix", "invoice_prefix", "default_vat_rate", "currency")


# ----------------------------------------------------------------------
# Helpers
# ----------------------------------------------------------------------
def _business_for(actor, action: str, raw_business_id=None) -> Business:
    """Resolve and authorize the business an actor is working on."""
    if isinstance(actor, ClientActor):
        raise Forbidden("Clients cannot access business settings.")

    if isinstance(actor, AdminActor):
        business_id = parse_optional_int(raw_business_id, "business_id")
        if business_id is None:
            raise ValidationFailed("business_id is required for admin users.", details={"field": "business_id"})
    else:
        business_id = actor.business_id

    authorize(action, actor, business_id=business_id)

    business = db.session.get(Business, business_id)
    if business is None:
        raise NotFound("Business not found.")
    return business


def _parse_prefix(value, field: str) -> str:
    prefix = parse_text(value, field, max_length=20)
    if not prefix:
        raise ValidationFailed(f"{field} cannot be empty.", details={"field": field})
    if not prefix.replace("_", "").isalnum():
        raise ValidationFailed(f"{field} must be alphanumeric.", details={"field": field})
    return prefix.upper()


# ----------------------------------------------------------------------
# Business settings
# ----------------------------------------------------------------------
@settings_bp.route("/business", methods=["GET"])
@actor_required
def get_business():
    business = _business_for(g.actor, ACTION_VIEW_BUSINESS, request.args.get("business_id"))
    return jsonify({"business": business.to_dict()})


@settings_bp.route("/business", methods=["PATCH"])
@actor_required
def update_business():
    payload = get_json_payload()
    business = _business_for(g.actor, ACTION_MANAGE_BUSINESS, payload.pop("business_id", None))

    unknown = set(payload) - set(BUSINESS_FIELDS)
    if unknown:
        raise ValidationFailed("Unknown fields.", details={"fields": sorted(unknown)})

    before_snapshot = serialize_model(business)

    if "name" in payload:
        name = parse_text(payload["name"], "name", max_length=255)
        if not name:
            raise ValidationFailed("name cannot be empty.", details={"field": "name"})
        business.name = name
    if "quote_prefix" in payload:
        business.quote_prefix = _parse_prefix(payload["quote_prefix"], "quote_prefix")
    if "invoice_prefix" in payload:
        business.invoice_prefix = _parse_prefix(payload["invoice_prefix"], "invoice_prefix")
    if business.quote_prefix == business.invoice_prefix:
        raise ValidationFailed("Quote and invoice prefixes must differ.", details={"field": "invoice_prefix"})
    if "default_vat_rate" in payload:
        business.default_vat_rate = validate_vat_rate(
            parse_decimal(payload["default_vat_rate"], "default_vat_rate", required=True)
        )
    if "currency" in payload:
        currency = parse_text(payload["currency"], "currency") or ""
        if len(currency) != 3 or not currency.isalpha():
            raise ValidationFailed("currency must be a 3-letter ISO code.", details={"field": "currency"})
        business.currency = currency.upper()

    db.session.flush()
    log_action(business, "UPDATE", before=before_snapshot, after=serialize_model(business))
    db.session.commit()

    return jsonify({"business": business.to_dict()})


# ----------------------------------------------------------------------
# Clients
# ----------------------------------------------------------------------
@settings_bp.route("/clients", methods=["GET"])
@actor_required
def list_clients():
    business = _business_for(g.actor, ACTION_VIEW_BUSINESS, request.args.get("business_id"))

    q = Client.query.filter_by(business_id=business.id)
    if request.args.get("include_inactive") != "1":
        q = q.filter(Client.is_active.is_(True))
    clients = q.order_by(Client.name.asc()).all()
    return jsonify({"clients": [c.to_dict() for c in clients]})


@settings_bp.route("/clients", methods=["POST"])
@actor_required
def create_client():
    payload = get_json_payload()
    business = _business_for(g.actor, ACTION_MANAGE_BUSINESS, payload.get("business_id"))

    name = parse_text(payload.get("name"), "name", max_length=255)
    if not name:
        raise ValidationFailed("name is required.", details={"field": "name"})

    client = Client(
        business_id=business.id,
        name=name,
        email=parse_text(payload.get("email"), "email", max_length=255),
        phone=parse_text(payload.get("phone"), "phone", max_length=50),
        company_name=parse_text(payload.get("company_name"), "company_name", max_length=255),
        vat_number=parse_text(payload.get("vat_number"), "vat_number", max_length=50),
        is_active=True,
    )
    if client.email and "@" not in client.email:
        raise ValidationFailed("email is not valid.", details={"field": "email"})

    db.session.add(client)
    db.session.flush()
    log_action(client, "CREATE", before=None, after=serialize_model(client))
    db.session.commit()

    return jsonify({"client": client.to_dict()}), 201
