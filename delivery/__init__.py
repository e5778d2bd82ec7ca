"""
Delivery Console — Workflow & Approval Engine.
Flask Application Factory.

Usage:
    from delivery import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

import click
from flask import Flask
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate

# ── SQLite FK enforcement (global engine event) ─────────────────────────
from sqlalchemy import engine as _sa_engine
from sqlalchemy import event as _sa_event

from delivery.config import config
from delivery.middleware.jwt_auth import init_jwt_middleware
from delivery.middleware.logging_config import configure_logging
from delivery.middleware.rate_limiter import init_rate_limits
from delivery.middleware.security_headers import init_security_headers
from delivery.middleware.timing import init_request_timing
from delivery.models import db
from delivery.utils.errors import register_error_handlers

logger = logging.getLogger(__name__)


@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


migrate = Migrate()
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],                     # per-blueprint limits only
    storage_uri=os.getenv("REDIS_URL") or "memory://",  # Redis in production, memory for dev
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
    config_cls = config[config_name]
    # ProductionConfig validates required env vars on instantiation
    app.config.from_object(config_cls() if config_name == "production" else config_cls)

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

    # ── Middleware ───────────────────────────────────────────────────────
    init_security_headers(app)
    init_request_timing(app)
    init_jwt_middleware(app)

    # ── Request guards (input length + Content-Type) ─────────────────────
    app.config.setdefault("MAX_CONTENT_LENGTH", 1024 * 1024)  # 1 MB

    @app.before_request
    def _guard_request():
        from flask import abort, request as _req

        if _req.method in ("POST", "PUT", "PATCH", "DELETE") and _req.path.startswith("/api/"):
            ct = _req.content_type or ""
            if _req.content_length and "json" not in ct:
                abort(415, description="Content-Type must be application/json")

    register_error_handlers(app)

    # ── Import all models so Alembic can detect them ─────────────────────
    from delivery.models import audit as _audit_models                # noqa: F401
    from delivery.models import auth as _auth_models                  # noqa: F401
    from delivery.models import notification as _notification_models  # noqa: F401
    from delivery.models import project as _project_models            # noqa: F401
    from delivery.models import task as _task_models                  # noqa: F401
    from delivery.models import workflow as _workflow_models          # noqa: F401

    # ── Auto-create tables for SQLite dev/test; PostgreSQL uses migrations ──
    if app.config["SQLALCHEMY_DATABASE_URI"].startswith("sqlite"):
        if app.config["SQLALCHEMY_DATABASE_URI"] != "sqlite:///:memory:":
            os.makedirs(app.instance_path, exist_ok=True)
        with app.app_context():
            db.create_all()

    # ── Blueprints ───────────────────────────────────────────────────────
    from delivery.blueprints.audit_bp import audit_bp
    from delivery.blueprints.health_bp import health_bp
    from delivery.blueprints.notification_bp import notification_bp
    from delivery.blueprints.package_bp import package_bp
    from delivery.blueprints.workflow_bp import workflow_bp

    app.register_blueprint(workflow_bp)
    app.register_blueprint(package_bp)
    app.register_blueprint(audit_bp)
    app.register_blueprint(notification_bp)
    app.register_blueprint(health_bp)

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("seed-workflows")
    def seed_workflows_cmd():
        """Seed the default TASK approval definition when none exists."""
        from delivery.services.workflow_definition_service import seed_default_definition

        definition = seed_default_definition()
        if definition is None:
            click.echo("A TASK workflow definition already exists; nothing seeded.")
        else:
            click.echo(f"Seeded workflow definition {definition.id}: {definition.name}")

    @app.cli.command("issue-token")
    @click.argument("user_id", type=int)
    @click.option("--expires-in", type=int, default=None, help="Lifetime in seconds.")
    def issue_token_cmd(user_id, expires_in):
        """Print an access token for USER_ID (local tooling only)."""
        from delivery.models.auth import User
        from delivery.services.jwt_service import generate_access_token

        user = db.session.get(User, user_id)
        if user is None:
            raise click.ClickException(f"User id={user_id} not found")
        click.echo(generate_access_token(user.id, user.role, expires_in=expires_in))

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    return app
