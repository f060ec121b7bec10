"""
Core Bug Tracker: SQLAlchemy models package.

``db`` is the single Flask-SQLAlchemy instance shared by every model module.
Model modules import it from here; the application factory binds it with
``db.init_app(app)``.
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
