"""
Core Bug Tracker
Tracks core platform bugs and the per-study remediation tasks they spawn.

    from bugtracker import create_app
    app = create_app()           # APP_ENV, else "development"
    app = create_app("testing")
"""

import logging
import os

from flask import Flask, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from sqlalchemy import engine as _sa_engine, event as _sa_event

from bugtracker.config import config
from bugtracker.middleware.logging_config import configure_logging
from bugtracker.middleware.rate_limiter import init_rate_limits
from bugtracker.middleware.timing import init_request_timing
from bugtracker.models import db
from bugtracker.utils.errors import E, api_error

logger = logging.getLogger(__name__)

migrate = Migrate()
# Limits are attached per blueprint in init_rate_limits
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],
    storage_uri=os.getenv("RATELIMIT_STORAGE_URI", "memory://"),
)


@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _sqlite_foreign_keys(dbapi_conn, connection_record):
    """Task steps and notes cascade with their task; SQLite needs FKs switched on."""
    if "sqlite" not in type(dbapi_conn).__module__:
        return
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def _load_config(app, config_name):
    config_cls = config[config_name]
    # ProductionConfig checks DATABASE_URL / SECRET_KEY when instantiated
    app.config.from_object(config_cls() if config_name == "production" else config_cls)


def _init_extensions(app):
    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)

    origins = app.config.get("CORS_ORIGINS", "*")
    if origins and origins != "*":
        CORS(app, origins=[o.strip() for o in origins.split(",") if o.strip()])
    else:
        CORS(app)


def _init_schema(app, config_name):
    # Alembic needs every model imported to see its table
    from bugtracker.models import bug, product, task, workflow  # noqa: F401

    if config_name == "production":
        return
    with app.app_context():
        try:
            db.create_all()
        except Exception as e:
            app.logger.warning("Could not create tables: %s", e)


def _register_blueprints(app):
    from bugtracker.blueprints.task_bp import task_bp
    from bugtracker.blueprints.workflow_bp import workflow_bp

    app.register_blueprint(task_bp)
    app.register_blueprint(workflow_bp)

    @app.route("/api/v1/health")
    def health():
        return {"status": "ok", "app": "Core Bug Tracker"}


def _register_cli(app):
    @app.cli.command("seed-workflows")
    def seed_workflows_cmd():
        """Store the packaged workflow definitions that are not in the database yet."""
        from bugtracker.services.workflow.definitions import seed_definitions
        count = seed_definitions(app.config["WORKFLOW_DEFINITIONS_DIR"])
        logger.info("Seeded %s workflow definition(s).", count)


def _register_error_handlers(app):
    @app.errorhandler(404)
    def not_found(e):
        return {"error": "Not found", "path": request.path}, 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed", "method": request.method}, 405

    @app.errorhandler(429)
    def rate_limited(e):
        return {"error": "Too many requests", "retry_after": e.description}, 429

    @app.errorhandler(500)
    def server_error(e):
        logger.error("Unhandled error on %s: %s", request.path, e, exc_info=True)
        return api_error(E.INTERNAL, "Internal server error")


def create_app(config_name=None):
    """Build the Flask app for ``config_name`` ("development", "testing" or "production")."""
    config_name = config_name or os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    _load_config(app, config_name)
    configure_logging(app)

    _init_extensions(app)
    init_request_timing(app)
    _init_schema(app, config_name)

    _register_blueprints(app)
    _register_cli(app)
    _register_error_handlers(app)

    # Needs the blueprints' view functions in place
    init_rate_limits(app, limiter)
    return app
