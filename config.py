"""
Application configuration.
This module defines the configuration settings for the Flask application, including database connection, secret key,
numbering defaults and logging. It uses environment variables for sensitive information and defaults for development.
In production, make sure to set the appropriate environment variables and secure the secret key.
"""

import os
from decimal import Decimal
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent


class Config:
    """Base configuration shared by all environments."""

    # IMPORTANT: change this in production
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-change-me-please")

    # Database: SQLite for development (simple file in project folder)
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        f"sqlite:///{BASE_DIR / 'quoteledger.db'}"
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # CSRF protection for cookie-authenticated JSON requests (X-CSRFToken header)
    WTF_CSRF_ENABLED = True

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Defaults applied when a business does not override them
    DEFAULT_VAT_RATE = Decimal(os.environ.get("DEFAULT_VAT_RATE", "20"))
    DEFAULT_CURRENCY = os.environ.get("DEFAULT_CURRENCY", "GBP")
    INVOICE_PAYMENT_TERMS_DAYS = int(os.environ.get("INVOICE_PAYMENT_TERMS_DAYS", "30"))

    APP_NAME = "Quote Ledger"


class TestingConfig(Config):
    """In-memory database, CSRF off."""

    TESTING = True
    SECRET_KEY = "test-secret-key"
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    WTF_CSRF_ENABLED = False
    LOG_LEVEL = "WARNING"
