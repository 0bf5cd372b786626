"""
quoteledger/__init__.py

Flask application factory for the Quote Ledger back office.

Requirements:
- JSON API only; every error leaves as {"error": {"code", "message", "details"}}.
- PostgreSQL-ready (SQLAlchemy + migrations) but SQLite is used for dev and tests.
- Clients are never trusted; server-side access control is enforced on every route.
"""

from __future__ import annotations

import logging

import click
from flask import Flask, jsonify
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError
from werkzeug.exceptions import HTTPException

from .errors import Conflict, DomainError, Unauthorized
from .extensions import csrf, db, login_manager, migrate
from .models import User

logger = logging.getLogger(__name__)

# Blueprint imports kept inside create_app() to reduce import side effects.


def _configure_logging(app: Flask) -> None:
    level = getattr(logging, str(app.config.get("LOG_LEVEL", "INFO")).upper(), logging.INFO)
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    logging.getLogger("quoteledger").setLevel(level)
    app.logger.setLevel(level)


def _register_error_handlers(app: Flask) -> None:
    """
    Render failures as JSON.

    Every handler rolls the session back first so a failed request never leaves
    half-applied changes behind.
    """

    @app.errorhandler(DomainError)
    def handle_domain_error(exc: DomainError):
        db.session.rollback()
        logger.warning("%s: %s", exc.code, exc.message)
        return jsonify(exc.to_dict()), exc.status_code

    @app.errorhandler(StaleDataError)
    def handle_stale_data(exc: StaleDataError):
        db.session.rollback()
        logger.warning("Concurrent modification rejected: %s", exc)
        err = Conflict()
        return jsonify(err.to_dict()), err.status_code

    @app.errorhandler(IntegrityError)
    def handle_integrity_error(exc: IntegrityError):
        db.session.rollback()
        logger.warning("Integrity error: %s", exc.orig)
        err = Conflict("The request conflicts with existing data. Reload and retry.")
        return jsonify(err.to_dict()), err.status_code

    @app.errorhandler(HTTPException)
    def handle_http_error(exc: HTTPException):
        db.session.rollback()
        code = (exc.name or "HTTP_ERROR").upper().replace(" ", "_")
        body = {"error": {"code": code, "message": exc.description}}
        return jsonify(body), exc.code


def create_app(config_object: str | object = "config.Config") -> Flask:
    """Create and configure the Flask application."""
    app = Flask(__name__)
    app.config.from_object(config_object)

    _configure_logging(app)

    # Extensions
    db.init_app(app)
    migrate.init_app(app, db)
    csrf.init_app(app)
    login_manager.init_app(app)

    @login_manager.user_loader
    def load_user(user_id: str) -> User | None:
        """Load user for Flask-Login."""
        if not str(user_id).isdigit():
            return None
        return db.session.get(User, int(user_id))

    @login_manager.unauthorized_handler
    def unauthorized():
        err = Unauthorized()
        return jsonify(err.to_dict()), err.status_code

    _register_error_handlers(app)

    # ----------------------------------------------------------------------
    # Blueprints
    # ----------------------------------------------------------------------
    from .blueprints.auth import auth_bp
    from .blueprints.documents import documents_bp
    from .blueprints.settings import settings_bp

    app.register_blueprint(auth_bp)
    app.register_blueprint(documents_bp)
    app.register_blueprint(settings_bp)

    # ----------------------------------------------------------------------
    # CLI
    # ----------------------------------------------------------------------
    @app.cli.command("init-db")
    def init_db_command():
        """Create all tables (development shortcut for `flask db upgrade`)."""
        db.create_all()
        click.echo("Database tables created.")

    @app.cli.command("seed-demo")
    @click.option("--password", default="demo1234", show_default=True, help="Password for every demo user.")
    def seed_demo_command(password: str):
        """Seed a demo business, clients and one user per role."""
        from .seed import seed_demo

        business = seed_demo(password=password)
        click.echo(f"Demo data seeded for {business.name}.")

    @app.cli.command("mark-overdue")
    def mark_overdue_command():
        """Flag unpaid invoices past their due date as overdue."""
        from .lifecycle import mark_overdue

        documents = mark_overdue()
        db.session.commit()
        click.echo(f"{len(documents)} invoice(s) marked overdue.")

    @app.route("/")
    def index():
        return jsonify({"name": app.config.get("APP_NAME", "Quote Ledger"), "status": "ok"})

    return app
