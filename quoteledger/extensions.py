"""
Flask extension instances for Quote Ledger.

Created unbound here and bound in create_app(), so models, services and blueprints
can import them without importing the app.

- db:            Flask-SQLAlchemy session/models
- migrate:       Alembic migrations via `flask db ...`
- login_manager: session-cookie identity; unauthenticated API calls get a JSON 401
- csrf:          X-CSRFToken check on cookie-authenticated writes
"""

from flask_login import LoginManager
from flask_migrate import Migrate
from flask_sqlalchemy import SQLAlchemy
from flask_wtf import CSRFProtect

db = SQLAlchemy()
migrate = Migrate()

login_manager = LoginManager()
login_manager.session_protection = "basic"

csrf = CSRFProtect()
