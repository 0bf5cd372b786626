"""
Documents blueprint package.

Exposes the Blueprint object; routes live in routes.py.
"""

from .routes import documents_bp  # noqa: F401
