"""
Request parsing helpers shared by the blueprints.

- Parsers raise ValidationFailed (400) with the offending field in details.
- Money-ish values accept a comma or a dot as decimal separator.
- client_ip() is used for acceptance evidence and the audit log.
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any

from flask import request

from .errors import ValidationFailed
from .money import to_decimal


def client_ip() -> str | None:
    """First X-Forwarded-For hop if present, else the socket peer address."""
    forwarded = request.headers.get("X-Forwarded-For", "")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first[:45]
    return request.remote_addr


def get_json_payload() -> dict:
    """Request body as a JSON object ({} for an empty body)."""
    payload = request.get_json(silent=True)
    if payload is None:
        if request.get_data(cache=True):
            raise ValidationFailed("Request body must be valid JSON.")
        return {}
    if not isinstance(payload, dict):
        raise ValidationFailed("Request body must be a JSON object.")
    return payload


def parse_decimal(value: Any, field: str, *, required: bool = False) -> Decimal | None:
    """Parse decimal from user input (accepts comma or dot)."""
    if value is None or (isinstance(value, str) and value.strip() == ""):
        if required:
            raise ValidationFailed(f"{field} is required.", details={"field": field})
        return None
    try:
        return to_decimal(value)
    except (TypeError, ValueError):
        raise ValidationFailed(f"{field} must be a number.", details={"field": field})


def parse_optional_int(value: Any, field: str) -> int | None:
    if value is None or (isinstance(value, str) and value.strip() == ""):
        return None
    if isinstance(value, bool):
        raise ValidationFailed(f"{field} must be an integer.", details={"field": field})
    try:
        return int(str(value).strip())
    except ValueError:
        raise ValidationFailed(f"{field} must be an integer.", details={"field": field})


DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100


def parse_pagination(args) -> tuple[int, int]:
    """(page, limit) from query args; page >= 1, 1 <= limit <= MAX_PAGE_SIZE."""
    page = parse_optional_int(args.get("page"), "page")
    limit = parse_optional_int(args.get("limit"), "limit")
    page = 1 if page is None else page
    limit = DEFAULT_PAGE_SIZE if limit is None else limit
    if page < 1:
        raise ValidationFailed("page must be >= 1.", details={"field": "page"})
    if limit < 1 or limit > MAX_PAGE_SIZE:
        raise ValidationFailed(f"limit must be between 1 and {MAX_PAGE_SIZE}.", details={"field": "limit"})
    return page, limit


def parse_date(value: Any, field: str) -> date | None:
    """ISO date (YYYY-MM-DD) or None."""
    if value is None or (isinstance(value, str) and value.strip() == ""):
        return None
    try:
        return date.fromisoformat(str(value).strip())
    except ValueError:
        raise ValidationFailed(f"{field} must be a date (YYYY-MM-DD).", details={"field": field})


def parse_datetime(value: Any, field: str) -> datetime | None:
    """ISO 8601 datetime; timezone-aware values are converted to naive UTC."""
    if value is None or (isinstance(value, str) and value.strip() == ""):
        return None
    try:
        parsed = datetime.fromisoformat(str(value).strip())
    except ValueError:
        raise ValidationFailed(f"{field} must be an ISO 8601 datetime.", details={"field": field})
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def parse_text(value: Any, field: str, *, max_length: int | None = None) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationFailed(f"{field} must be a string.", details={"field": field})
    text = value.strip() or None
    if text and max_length and len(text) > max_length:
        raise ValidationFailed(f"{field} is too long (max {max_length}).", details={"field": field})
    return text


def parse_line_items(raw: Any) -> list[dict]:
    """
    Normalize a JSON line item list.

    Each entry: {"description", "quantity", "unit_price", "item_type"?, "unit"?}.
    Business rules (quantity > 0, price >= 0) are enforced by the totals calculator.
    """
    if not isinstance(raw, list):
        raise ValidationFailed("line_items must be a list.", details={"field": "line_items"})

    items = []
    for index, entry in enumerate(raw):
        prefix = f"line_items[{index}]"
        if not isinstance(entry, dict):
            raise ValidationFailed(f"{prefix} must be an object.", details={"field": prefix})
        items.append(
            {
                "description": parse_text(entry.get("description"), f"{prefix}.description", max_length=500),
                "item_type": parse_text(entry.get("item_type"), f"{prefix}.item_type"),
                "unit": parse_text(entry.get("unit"), f"{prefix}.unit", max_length=20),
                "quantity": parse_decimal(entry.get("quantity"), f"{prefix}.quantity", required=True),
                "unit_price": parse_decimal(entry.get("unit_price"), f"{prefix}.unit_price", required=True),
            }
        )
    return items


_DECIMAL_FIELDS = ("vat_rate", "markup_amount", "discount_amount", "deposit_amount")
_DATE_FIELDS = ("due_date", "valid_until")
_TEXT_FIELDS = ("title", "notes", "terms")


def parse_document_fields(payload: dict) -> dict:
    """
    Convert the document fields present in payload to typed values.

    Keys that are not document inputs are passed through untouched so the lifecycle
    layer can reject them (derived totals, unknown fields).
    """
    parsed: dict = {}
    for key, value in payload.items():
        if key == "line_items":
            parsed[key] = parse_line_items(value)
        elif key in _DECIMAL_FIELDS:
            parsed[key] = parse_decimal(value, key)
        elif key in _DATE_FIELDS:
            parsed[key] = parse_date(value, key)
        elif key in _TEXT_FIELDS:
            parsed[key] = parse_text(value, key, max_length=255 if key == "title" else None)
        elif key == "client_id":
            parsed[key] = parse_optional_int(value, key)
        else:
            parsed[key] = value
    return parsed
