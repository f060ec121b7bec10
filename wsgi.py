"""
Flask-Migrate / Alembic entry point.

Usage:
    flask --app wsgi db upgrade
    flask --app wsgi seed-workflows
"""

from bugtracker import create_app

app = create_app()
