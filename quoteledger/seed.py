"""
quoteledger/seed.py

Bootstrap data.

Rules:
- Safe to run multiple times (idempotent): rows are matched by name/username.
- Every business gets its numbering counters at creation time.
- Demo passwords are for local development only.
"""

from __future__ import annotations

import logging
from decimal import Decimal

from flask import current_app

from .extensions import db
from .models import ROLE_ACCOUNTANT, ROLE_ADMIN, ROLE_CLIENT, ROLE_STAFF, Business, Client, User
from .numbering import ensure_counters

logger = logging.getLogger(__name__)


DEMO_BUSINESS = "Demo Building Services Ltd"

DEMO_CLIENTS = [
    # name, email, company_name
    ("Alice Homeowner", "alice@example.com", None),
    ("Bob Developer", "bob@example.com", "Bob Developments Ltd"),
]

DEMO_USERS = [
    # username, role, client name (client role only)
    ("admin", ROLE_ADMIN, None),
    ("staff", ROLE_STAFF, None),
    ("accountant", ROLE_ACCOUNTANT, None),
    ("alice", ROLE_CLIENT, "Alice Homeowner"),
    ("bob", ROLE_CLIENT, "Bob Developer"),
]


def create_business(
    name: str,
    *,
    quote_prefix: str = "Q",
    invoice_prefix: str = "INV",
    default_vat_rate: Decimal | None = None,
    currency: str | None = None,
) -> Business:
    """Add a business with its counters to the session (caller commits)."""
    business = Business(
        name=name,
        quote_prefix=quote_prefix,
        invoice_prefix=invoice_prefix,
        default_vat_rate=(
            default_vat_rate if default_vat_rate is not None else current_app.config["DEFAULT_VAT_RATE"]
        ),
        currency=currency or current_app.config["DEFAULT_CURRENCY"],
    )
    db.session.add(business)
    db.session.flush()
    ensure_counters(business)
    return business


def seed_demo(password: str = "demo1234") -> Business:
    """
    Create a demo business, two clients and one user per role if they don't exist.

    Returns the demo business.
    """
    business = Business.query.filter_by(name=DEMO_BUSINESS).first()
    if business is None:
        business = create_business(DEMO_BUSINESS)
        logger.info("Seeded business %s", business.name)
    else:
        ensure_counters(business)

    clients = {}
    for name, email, company in DEMO_CLIENTS:
        client = Client.query.filter_by(business_id=business.id, name=name).first()
        if client is None:
            client = Client(business_id=business.id, name=name, email=email, company_name=company, is_active=True)
            db.session.add(client)
            db.session.flush()
        clients[name] = client

    for username, role, client_name in DEMO_USERS:
        if User.query.filter_by(username=username).first():
            continue
        user = User(
            username=username,
            role=role,
            is_active=True,
            business_id=business.id if role in (ROLE_STAFF, ROLE_ACCOUNTANT) else None,
            client_id=clients[client_name].id if client_name else None,
        )
        user.set_password(password)
        db.session.add(user)
        logger.info("Seeded %s user %s", role, username)

    db.session.commit()
    return business
