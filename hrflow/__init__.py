"""
HR Process Engine
Flask Application Factory.

Usage:
    from hrflow import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import importlib
import logging
import os

import click
from flask import Flask, abort, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from sqlalchemy import engine as _sa_engine
from sqlalchemy import event as _sa_event

from hrflow.config import config
from hrflow.middleware.jwt_auth import init_jwt_middleware
from hrflow.middleware.logging_config import configure_logging
from hrflow.middleware.rate_limiter import init_rate_limits
from hrflow.middleware.timing import init_request_timing
from hrflow.models import db

logger = logging.getLogger(__name__)


# ── SQLite FK enforcement + explicit BEGIN (global engine events) ───────
@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    """Enable foreign key enforcement for SQLite connections.

    pysqlite's implicit transaction handling is switched off so that the
    ``begin`` hook below owns BEGIN; otherwise SAVEPOINTs (per-action
    isolation in the automation engine) do not nest inside the outer
    transaction.
    """
    if "sqlite" in type(dbapi_conn).__module__:
        dbapi_conn.isolation_level = None
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


@_sa_event.listens_for(_sa_engine.Engine, "begin")
def _sqlite_begin(conn):
    if conn.dialect.name == "sqlite":
        conn.exec_driver_sql("BEGIN")


migrate = Migrate()
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],                     # no global limit; applied per blueprint
    storage_uri=os.getenv("REDIS_URL", "memory://"),
)


def create_app(config_name=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: Configuration environment name.
                     One of: "development", "testing", "production".
                     Defaults to APP_ENV env var, or "development" if unset.

    Returns:
        Configured Flask application instance.
    """
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config[config_name])

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)
    cors_origins = app.config.get("CORS_ORIGINS", "*")
    if cors_origins and cors_origins != "*":
        CORS(app, origins=[o.strip() for o in cors_origins.split(",") if o.strip()])
    else:
        CORS(app)

    # ── Request timing + JWT viewer resolution ───────────────────────────
    init_request_timing(app)
    init_jwt_middleware(app)

    # ── Request guards (input length + Content-Type) ─────────────────────
    app.config.setdefault("MAX_CONTENT_LENGTH", 2 * 1024 * 1024)  # 2 MB

    @app.before_request
    def _guard_request():
        if request.method in ("POST", "PUT", "PATCH") and request.path.startswith("/api/"):
            ct = request.content_type or ""
            if request.data and "json" not in ct:
                abort(415, description="Content-Type must be application/json")

    # ── Import all models so Alembic can detect them ─────────────────────
    from hrflow.models import audit as _audit_models            # noqa: F401
    from hrflow.models import event as _event_models            # noqa: F401
    from hrflow.models import process as _process_models        # noqa: F401
    from hrflow.models import program as _program_models        # noqa: F401
    from hrflow.models import scheduling as _scheduling_models  # noqa: F401
    from hrflow.models import user as _user_models              # noqa: F401

    # ── Auto-create tables (CREATE IF NOT EXISTS) ────────────────────────
    if app.config.get("SQLALCHEMY_DATABASE_URI", "").startswith("sqlite:///") and \
            ":memory:" not in app.config["SQLALCHEMY_DATABASE_URI"]:
        os.makedirs(app.instance_path, exist_ok=True)
    with app.app_context():
        db.create_all()

    # ── Blueprints ───────────────────────────────────────────────────────
    from hrflow.blueprints.audit_bp import audit_bp
    from hrflow.blueprints.event_bp import event_bp
    from hrflow.blueprints.health_bp import health_bp
    from hrflow.blueprints.process_bp import process_bp
    from hrflow.blueprints.program_bp import program_bp

    app.register_blueprint(process_bp)
    app.register_blueprint(program_bp)
    app.register_blueprint(audit_bp)
    app.register_blueprint(event_bp)
    app.register_blueprint(health_bp)

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("recompute-role-levels")
    @click.option("--program-id", type=int, default=None, help="Limit to one program.")
    def recompute_role_levels_cmd(program_id):
        """Re-derive required_role_level on live processes from current view configs."""
        from hrflow.services.program_service import recompute_required_role_levels
        changed = recompute_required_role_levels(program_id)
        logger.info("Recomputed required_role_level on %s processes.", changed)
        click.echo(f"Updated {changed} processes.")

    # ── Error handlers ───────────────────────────────────────────────────
    @app.errorhandler(404)
    def not_found(e):
        return {"error": "Not found", "path": request.path}, 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed"}, 405

    @app.errorhandler(415)
    def unsupported_media_type(e):
        return {"error": e.description}, 415

    @app.errorhandler(429)
    def rate_limited(e):
        return {"error": "Too many requests", "retry_after": e.description}, 429

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        db.session.rollback()
        return {"error": "Internal server error"}, 500

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    # ── Scheduler initialization (import tasks to register them) ─────────
    importlib.import_module("hrflow.services.scheduled_tasks")  # registers @register_task handlers
    from hrflow.services.scheduler_service import SchedulerService
    SchedulerService.init_app(app)

    return app
