"""
quoteledger/audit.py

Audit trail helpers.

Goals:
- Capture WHO did WHAT to WHICH entity, with BEFORE/AFTER snapshots.
- Store a username snapshot so identity survives later renames.
- Store the client IP for traceability.

IMPORTANT:
- log_action() ADDS an AuditLog entry to the current session.
  The calling route controls transaction boundaries (commit/rollback).
- Entities must be flushed first so they have an id.
"""

from __future__ import annotations

import json
from typing import Any, Dict, Optional

from flask import has_request_context
from flask_login import current_user

from .extensions import db
from .models import AuditLog
from .utils import client_ip


def _safe_str(value: Any) -> Optional[str]:
    """Stable string form of a column value (Decimal/date/datetime -> str)."""
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def serialize_model(instance: Any) -> Dict[str, Optional[str]]:
    """
    Column snapshot of a model instance.

    NOTES:
    - Scalar columns only (no relationships).
    - Values are stringified so the snapshot is JSON-safe on SQLite and PostgreSQL alike.
    """
    return {column.name: _safe_str(getattr(instance, column.name)) for column in instance.__table__.columns}


def log_action(
    entity: Any,
    action: str,
    *,
    before: Optional[Dict[str, Any]] = None,
    after: Optional[Dict[str, Any]] = None,
) -> AuditLog:
    """
    Add an AuditLog entry for entity.

    action is a short verb: CREATE, UPDATE, SEND, ACCEPT, REJECT, REVISE, PAYMENT, CANCEL, ...
    """
    entity_id = getattr(entity, "id", None)
    if entity_id is None:
        raise ValueError("log_action entity must have an 'id' (flush before auditing).")

    user_id = None
    username = None
    ip_address = None
    if has_request_context():
        if current_user.is_authenticated:
            user_id = current_user.id
            username = current_user.username
        ip_address = client_ip()

    entry = AuditLog(
        user_id=user_id,
        username_snapshot=username,
        entity_type=entity.__class__.__name__,
        entity_id=int(entity_id),
        action=str(action),
        before_data=json.dumps(before, ensure_ascii=False) if before else None,
        after_data=json.dumps(after, ensure_ascii=False) if after else None,
        ip_address=ip_address,
    )
    db.session.add(entry)
    return entry
