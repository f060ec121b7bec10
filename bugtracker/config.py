"""
Core Bug Tracker
Environment configuration.

Usage:
    config_name = os.getenv("APP_ENV", "development")
    app.config.from_object(config[config_name])

Workflow settings:
    WORKFLOW_NOTE_MIN_LENGTH     fallback min note length for steps that require a note
    WORKFLOW_NOTE_MAX_LENGTH     fallback max note length; unset means unbounded
    WORKFLOW_DEFINITIONS_DIR     directory of *.json workflow definitions to seed
    WORKFLOW_ACTION_RATE_LIMIT   per-IP limit on POST .../workflow/actions
"""

import os
import secrets

PROJECT_ROOT = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
PACKAGE_DIR = os.path.dirname(os.path.abspath(__file__))

DEFAULT_DEFINITIONS_DIR = os.path.join(PACKAGE_DIR, "data", "workflow_definitions")

# Pooled engines only; SQLite in-memory rejects pool sizing
_POOL_OPTIONS = {
    "pool_pre_ping": True,
    "pool_size": 5,
    "max_overflow": 10,
    "pool_recycle": 300,
    "pool_timeout": 20,
}


def _database_url(var: str, fallback: str | None) -> str | None:
    """Read a database URL; Heroku-style postgres:// is rewritten for SQLAlchemy 2."""
    raw = os.getenv(var, "")
    if not raw:
        return fallback
    return raw.replace("postgres://", "postgresql://", 1)


def _int_or_none(var: str):
    raw = os.getenv(var, "").strip()
    return int(raw) if raw else None


class Config:
    """Settings shared by every environment."""

    SECRET_KEY = os.getenv("SECRET_KEY") or secrets.token_hex(32)
    DEBUG = False
    TESTING = False

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = dict(_POOL_OPTIONS)

    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")

    RATELIMIT_ENABLED = True
    WORKFLOW_ACTION_RATE_LIMIT = os.getenv("WORKFLOW_ACTION_RATE_LIMIT", "120/minute")

    WORKFLOW_NOTE_MIN_LENGTH = int(os.getenv("WORKFLOW_NOTE_MIN_LENGTH", "1"))
    WORKFLOW_NOTE_MAX_LENGTH = _int_or_none("WORKFLOW_NOTE_MAX_LENGTH")
    WORKFLOW_DEFINITIONS_DIR = os.getenv("WORKFLOW_DEFINITIONS_DIR", DEFAULT_DEFINITIONS_DIR)


class DevelopmentConfig(Config):
    DEBUG = True
    SQLALCHEMY_DATABASE_URI = _database_url(
        "DATABASE_URL",
        "sqlite:///" + os.path.join(PROJECT_ROOT, "instance", "bugtracker_dev.db"),
    )


class TestingConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = _database_url("TEST_DATABASE_URL", "sqlite:///:memory:")
    SQLALCHEMY_ENGINE_OPTIONS = {}
    RATELIMIT_ENABLED = False


class ProductionConfig(Config):
    """Production settings; instantiating the class checks the environment."""

    SQLALCHEMY_DATABASE_URI = _database_url("DATABASE_URL", None)
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")
    SQLALCHEMY_ENGINE_OPTIONS = {
        **_POOL_OPTIONS,
        # abort runaway queries after 30s
        "connect_args": {"options": "-c statement_timeout=30000"},
    }

    def __init__(self):
        if not self.SQLALCHEMY_DATABASE_URI:
            raise RuntimeError("DATABASE_URL environment variable is required in production")
        if not os.getenv("SECRET_KEY"):
            raise RuntimeError("SECRET_KEY environment variable must be set in production")


config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}
