"""
Signposting Workflow Platform — shared SQLAlchemy handle.

Every model module imports ``db`` from here; ``create_app`` binds it with
``db.init_app(app)`` so the same handle works for the app, CLI and tests.
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
