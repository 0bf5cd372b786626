"""
quoteledger/security.py

Access control for the lifecycle engine.

Key rules:
- UI is never trusted; all permission checks are server-side.
- Identity is checked before role: no/invalid identity -> UNAUTHORIZED.
- Staff actions (create, edit, send, revise, record payment, cancel, convert):
  staff of the document's business, or admin (any business).
- Client actions (accept, reject): only the client the document is addressed to.
- View: admin any; staff/accountant of the same business; the addressed client once sent.
- Everything else fails closed with FORBIDDEN.

The current user is turned into a closed set of actor types carrying only the proof
fields each check needs. authorize() dispatches on the actor type, never on raw role strings.

IMPORTANT:
- Decorators must preserve wrapped function metadata to avoid Flask endpoint collisions.
  We use functools.wraps everywhere.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import wraps
from typing import Any, Callable, Optional, Union

from flask import g
from flask_login import current_user

from .errors import Forbidden, Unauthorized
from .models import (
    ROLE_ACCOUNTANT,
    ROLE_ADMIN,
    ROLE_CLIENT,
    ROLE_STAFF,
    STATUS_DRAFT,
    Document,
)


# ---------------------------------------------------------------------
# Actors
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class AdminActor:
    user_id: int


@dataclass(frozen=True)
class StaffActor:
    user_id: int
    business_id: Optional[int]


@dataclass(frozen=True)
class AccountantActor:
    user_id: int
    business_id: Optional[int]


@dataclass(frozen=True)
class ClientActor:
    user_id: int
    client_id: Optional[int]


Actor = Union[AdminActor, StaffActor, AccountantActor, ClientActor]


# ---------------------------------------------------------------------
# Actions
# ---------------------------------------------------------------------
ACTION_VIEW = "view"
ACTION_CREATE = "create"
ACTION_EDIT = "edit"
ACTION_SEND = "send"
ACTION_ACCEPT = "accept"
ACTION_REJECT = "reject"
ACTION_CREATE_REVISION = "create_revision"
ACTION_RECORD_PAYMENT = "record_payment"
ACTION_CANCEL = "cancel"
ACTION_CONVERT = "convert"
ACTION_MANAGE_BUSINESS = "manage_business"
ACTION_VIEW_BUSINESS = "view_business"

STAFF_ACTIONS = frozenset(
    {
        ACTION_CREATE,
        ACTION_EDIT,
        ACTION_SEND,
        ACTION_CREATE_REVISION,
        ACTION_RECORD_PAYMENT,
        ACTION_CANCEL,
        ACTION_CONVERT,
        ACTION_MANAGE_BUSINESS,
    }
)
CLIENT_ACTIONS = frozenset({ACTION_ACCEPT, ACTION_REJECT})


def actor_from_user(user: Any) -> Actor:
    """Resolve a Flask-Login user (or None/anonymous) into an Actor."""
    if user is None or not getattr(user, "is_authenticated", False):
        raise Unauthorized()
    if not getattr(user, "is_active", False):
        raise Unauthorized("Account is inactive.")

    role = getattr(user, "role", None)
    if role == ROLE_ADMIN:
        return AdminActor(user_id=user.id)
    if role == ROLE_STAFF:
        return StaffActor(user_id=user.id, business_id=user.business_id)
    if role == ROLE_ACCOUNTANT:
        return AccountantActor(user_id=user.id, business_id=user.business_id)
    if role == ROLE_CLIENT:
        return ClientActor(user_id=user.id, client_id=user.client_id)

    raise Forbidden("Unknown role.")


def current_actor() -> Actor:
    return actor_from_user(current_user)


def _same(a: Optional[int], b: Optional[int]) -> bool:
    return a is not None and b is not None and a == b


def can_view(actor: Actor, document: Document) -> bool:
    if isinstance(actor, AdminActor):
        return True
    if isinstance(actor, (StaffActor, AccountantActor)):
        return _same(actor.business_id, document.business_id)
    if isinstance(actor, ClientActor):
        return _same(actor.client_id, document.client_id) and document.status != STATUS_DRAFT
    return False


def authorize(
    action: str,
    actor: Actor,
    document: Optional[Document] = None,
    *,
    business_id: Optional[int] = None,
) -> None:
    """
    Raise Forbidden unless actor may perform action.

    business_id is used for actions without a document yet (create, settings).
    """
    if document is not None:
        business_id = document.business_id

    if action in STAFF_ACTIONS:
        if isinstance(actor, AdminActor):
            return
        if isinstance(actor, StaffActor) and _same(actor.business_id, business_id):
            return
        raise Forbidden("Only staff of the issuing business can perform this action.")

    if action in CLIENT_ACTIONS:
        if isinstance(actor, ClientActor) and document is not None and _same(actor.client_id, document.client_id):
            return
        raise Forbidden("Only the client this quote is addressed to can respond to it.")

    if action == ACTION_VIEW_BUSINESS:
        if isinstance(actor, AdminActor):
            return
        if isinstance(actor, (StaffActor, AccountantActor)) and _same(actor.business_id, business_id):
            return
        raise Forbidden("You do not have access to this business.")

    if action == ACTION_VIEW:
        if document is not None and can_view(actor, document):
            return
        raise Forbidden("You do not have access to this document.")

    raise Forbidden(f"Unknown action: {action}")


def document_action_required(action: str, loader: Callable[..., Document]) -> Callable[..., Any]:
    """
    Decorator factory: resolve the actor, load the document and authorize the action.

    The loaded document and actor are exposed as g.document / g.actor.

    Usage:
        @document_action_required(ACTION_SEND, _load_document)
        def send(document_id): ...
    """
    def decorator(view_func: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(view_func)
        def wrapper(*args: Any, **kwargs: Any):
            actor = current_actor()
            document = loader(**kwargs)
            authorize(action, actor, document)
            g.actor = actor
            g.document = document
            return view_func(*args, **kwargs)

        return wrapper

    return decorator


def actor_required(view_func: Callable[..., Any]) -> Callable[..., Any]:
    """Decorator: any authenticated, active user. Exposes g.actor."""
    @wraps(view_func)
    def wrapper(*args: Any, **kwargs: Any):
        g.actor = current_actor()
        return view_func(*args, **kwargs)

    return wrapper
