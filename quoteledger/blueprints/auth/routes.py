"""
Authentication Routes

Provides:
- POST /auth/login
- POST /auth/logout
- GET  /auth/me
- GET  /auth/csrf-token

Rules:
- Only active users may log in.
- Credentials validated via password hash; failures never reveal which part was wrong.
"""

import logging

from flask import Blueprint, jsonify
from flask_login import current_user, login_required, login_user, logout_user
from flask_wtf.csrf import generate_csrf

from ...errors import Unauthorized, ValidationFailed
from ...models import User
from ...utils import get_json_payload

logger = logging.getLogger(__name__)

auth_bp = Blueprint("auth", __name__, url_prefix="/auth")


# ============================================================
# LOGIN
# ============================================================

@auth_bp.route("/login", methods=["POST"])
def login():
    """Authenticate a user and start a session."""
    payload = get_json_payload()
    username = str(payload.get("username") or "").strip()
    password = str(payload.get("password") or "")

    if not username or not password:
        raise ValidationFailed("username and password are required.")

    user = User.query.filter_by(username=username).first()
    if not user or not user.check_password(password):
        logger.warning("Failed login for %r", username)
        raise Unauthorized("Invalid username or password.")

    if not user.is_active:
        raise Unauthorized("Account is inactive.")

    login_user(user)
    logger.info("User %s logged in", user.username)
    return jsonify({"user": user.to_dict()})


# ============================================================
# LOGOUT
# ============================================================

@auth_bp.route("/logout", methods=["POST"])
@login_required
def logout():
    """Log out the current user."""
    logout_user()
    return jsonify({"ok": True})


@auth_bp.route("/me", methods=["GET"])
@login_required
def me():
    return jsonify({"user": current_user.to_dict()})


@auth_bp.route("/csrf-token", methods=["GET"])
def csrf_token():
    """Token for the X-CSRFToken header on cookie-authenticated writes."""
    return jsonify({"csrf_token": generate_csrf()})
