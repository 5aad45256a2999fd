"""
CivicLens
Flask Application Factory.

Usage:
    from civiclens import create_app
    app = create_app()           # defaults to APP_ENV or "development"
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

from civiclens.config import config
from civiclens.models import db
from civiclens.middleware.logging_config import configure_logging
from civiclens.middleware.timing import init_request_timing
from civiclens.middleware.security_headers import init_security_headers
from civiclens.middleware.jwt_auth import init_jwt_middleware
from civiclens.middleware.rate_limiter import init_rate_limits
from civiclens.utils.errors import register_error_handlers

logger = logging.getLogger(__name__)

# ── SQLite FK enforcement (global engine event) ─────────────────────────
from sqlalchemy import event as _sa_event, engine as _sa_engine


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
    default_limits=[],                     # no global limit, applied per blueprint
    storage_uri=os.getenv("REDIS_URL", "memory://"),  # Redis in production, memory for dev
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
    cfg = config[config_name]
    # ProductionConfig validates its environment on instantiation
    app.config.from_object(cfg() if config_name == "production" else cfg)

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

    # ── Security headers (CSP, HSTS, X-Frame-Options, etc.) ─────────────
    init_security_headers(app)

    # ── Request timing middleware ────────────────────────────────────────
    init_request_timing(app)

    # ── JWT auth middleware (sets g.jwt_*) ───────────────────────────────
    init_jwt_middleware(app)

    # ── Request guards (input length + Content-Type) ─────────────────────
    @app.before_request
    def _guard_request():
        from flask import request as _req, abort
        max_len = app.config.get("MAX_CONTENT_LENGTH")
        if max_len and _req.content_length and _req.content_length > max_len:
            abort(413, description="Request body too large")
        if _req.method in ("POST", "PUT", "PATCH") and _req.path.startswith("/api/"):
            ct = _req.content_type or ""
            if _req.content_length and "json" not in ct and "multipart/form-data" not in ct:
                abort(415, description="Content-Type must be application/json or multipart/form-data")

    # ── Collaborators (object store, oracle, geocoder, triage worker) ────
    from civiclens.ai.gateway import init_oracle_gateway
    from civiclens.ai.task_runner import init_triage_queue
    from civiclens.services.geocoding import init_geocoder
    from civiclens.services.image_store import init_image_store

    init_image_store(app)
    init_oracle_gateway(app)
    init_geocoder(app)
    init_triage_queue(app)

    # ── Import all models so Alembic can detect them ─────────────────────
    from civiclens.models import profile as _profile_models  # noqa: F401
    from civiclens.models import issue as _issue_models      # noqa: F401
    from civiclens.models import audit as _audit_models      # noqa: F401
    from civiclens.models import ai as _ai_models            # noqa: F401

    # ── Auto-create tables (CREATE IF NOT EXISTS) ──
    with app.app_context():
        try:
            db.create_all()
            app.logger.info("db.create_all() completed successfully")
        except Exception as e:
            app.logger.warning("db.create_all() failed: %s", e)

    # ── Blueprints ───────────────────────────────────────────────────────
    from civiclens.blueprints.issue_bp import issue_bp
    from civiclens.blueprints.dashboard_bp import dashboard_bp
    from civiclens.blueprints.health_bp import health_bp
    from civiclens.blueprints.media_bp import media_bp

    app.register_blueprint(issue_bp)
    app.register_blueprint(dashboard_bp)
    app.register_blueprint(health_bp)
    app.register_blueprint(media_bp)

    # ── Error handlers ───────────────────────────────────────────────────
    register_error_handlers(app)

    @app.errorhandler(429)
    def rate_limited(e):
        return {"error": "Too many requests", "retry_after": e.description}, 429

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("triage-drain")
    @click.option("--limit", type=int, default=None, help="Process at most N pending jobs.")
    def triage_drain_cmd(limit):
        """Run pending triage jobs synchronously."""
        from civiclens.ai.task_runner import get_triage_queue
        results = get_triage_queue().drain(limit=limit)
        click.echo(f"Processed {len(results)} triage job(s).")
        for job in results:
            click.echo(f"  job {job['id']} issue {job['issue_id']}: {job['status']}")

    @app.cli.command("issue-token")
    @click.argument("user_id")
    @click.option("--role", type=click.Choice(["citizen", "officer", "system"]), default="citizen")
    @click.option("--username", default=None)
    @click.option("--expires", type=int, default=None, help="Lifetime in seconds.")
    def issue_token_cmd(user_id, role, username, expires):
        """Mint a development access token."""
        from civiclens.services.jwt_service import generate_access_token
        click.echo(generate_access_token(user_id, [role], username=username, expires_in=expires))

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    return app
