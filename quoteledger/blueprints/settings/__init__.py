"""
Settings blueprint package.

Exposes the Blueprint object; routes live in routes.py.
"""

from .routes import settings_bp  # noqa: F401
