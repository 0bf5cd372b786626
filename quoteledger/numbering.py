"""
quoteledger/numbering.py

Sequential document numbers per business and document type: Q-000001, INV-000001.

IMPORTANT:
- The counter is advanced with a single SQL "UPDATE ... SET last_value = last_value + 1".
  The database serializes concurrent increments on the same row, so two requests can never
  read the same value. The increment belongs to the caller's transaction.
- Numbers are never reused, even when the document is later cancelled.
"""

from __future__ import annotations

import logging

from sqlalchemy import select, update

from .errors import ValidationFailed
from .extensions import db
from .models import DOC_TYPES, Business, NumberCounter

logger = logging.getLogger(__name__)

PAD_WIDTH = 6


def format_number(prefix: str, value: int, pad_width: int = PAD_WIDTH) -> str:
    return f"{prefix}-{value:0{pad_width}d}"


def _check_type(doc_type: str) -> None:
    if doc_type not in DOC_TYPES:
        raise ValidationFailed(f"Unknown document type: {doc_type!r}.", details={"field": "doc_type"})


def ensure_counters(business: Business) -> None:
    """Create the (business, doc_type) counter rows if missing. Called when a business is created."""
    for doc_type in DOC_TYPES:
        exists = NumberCounter.query.filter_by(business_id=business.id, doc_type=doc_type).first()
        if exists is None:
            db.session.add(NumberCounter(business_id=business.id, doc_type=doc_type, last_value=0))
    db.session.flush()


def next_number(doc_type: str, business: Business) -> str:
    """Allocate the next number for business+doc_type."""
    _check_type(doc_type)

    counter_filter = (
        NumberCounter.business_id == business.id,
        NumberCounter.doc_type == doc_type,
    )

    result = db.session.execute(
        update(NumberCounter)
        .where(*counter_filter)
        .values(last_value=NumberCounter.last_value + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        # First document of this type for the business. A racing creator hits the unique
        # constraint and the request fails with CONFLICT rather than sharing a number.
        ensure_counters(business)
        db.session.execute(
            update(NumberCounter)
            .where(*counter_filter)
            .values(last_value=NumberCounter.last_value + 1)
            .execution_options(synchronize_session=False)
        )

    value = db.session.execute(select(NumberCounter.last_value).where(*counter_filter)).scalar_one()
    number = format_number(business.prefix_for(doc_type), value)
    logger.info("Allocated %s number %s for business %s", doc_type, number, business.id)
    return number


def peek_next_number(doc_type: str, business: Business) -> str:
    """Preview the next number without allocating it."""
    _check_type(doc_type)
    value = db.session.execute(
        select(NumberCounter.last_value).where(
            NumberCounter.business_id == business.id,
            NumberCounter.doc_type == doc_type,
        )
    ).scalar_one_or_none()
    return format_number(business.prefix_for(doc_type), (value or 0) + 1)
