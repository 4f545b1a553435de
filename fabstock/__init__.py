"""
fabstock: shop-floor material management backend.
Flask Application Factory.

Usage:
    from fabstock import create_app
    app = create_app()           # defaults to APP_ENV or "development"
    app = create_app("testing")  # explicit config

Services are plain functions under ``fabstock.services`` and run inside an
application context; no HTTP surface is registered here.
"""

import json
import logging
import os

import click
from flask import Flask
from flask_migrate import Migrate

# ── SQLite FK enforcement (global engine event) ─────────────────────────
from sqlalchemy import engine as _sa_engine
from sqlalchemy import event as _sa_event

from fabstock.config import config
from fabstock.logging_config import configure_logging
from fabstock.models import db

logger = logging.getLogger(__name__)


@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


migrate = Migrate()


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
    if config_name not in config:
        raise ValueError(f"Unknown config name: {config_name!r}")

    app = Flask(__name__, instance_relative_config=True)
    # Instantiate so ProductionConfig can refuse to start without its env vars
    app.config.from_object(config[config_name]())

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)
    migrate.init_app(app, db)

    # ── Import all models so Alembic can detect them ─────────────────────
    from fabstock.models import audit as _audit_models                  # noqa: F401
    from fabstock.models import purchase_request as _pr_models          # noqa: F401
    from fabstock.models import reservation as _reservation_models      # noqa: F401
    from fabstock.models import stock as _stock_models                  # noqa: F401
    from fabstock.models import usage as _usage_models                  # noqa: F401
    from fabstock.models.immutability import register_immutability_listeners

    register_immutability_listeners()

    # ── Local dev convenience: create tables on the SQLite file ──────────
    if app.config.get("AUTO_CREATE_TABLES"):
        os.makedirs(app.instance_path, exist_ok=True)
        with app.app_context():
            db.create_all()
            app.logger.info("db.create_all() completed successfully")

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("audit-trail")
    @click.argument("entity_type")
    @click.argument("entity_id")
    @click.option("--tenant", "tenant_id", default=None,
                  help="Tenant to read (defaults to DEFAULT_TENANT_ID).")
    def audit_trail_cmd(entity_type, entity_id, tenant_id):
        """Print the audit trail of one entity, newest first, as JSON lines."""
        from fabstock.services.audit_service import get_entity_trail

        tenant_id = tenant_id or app.config["DEFAULT_TENANT_ID"]
        for entry in get_entity_trail(tenant_id, entity_type, entity_id):
            click.echo(json.dumps(entry.to_dict(), ensure_ascii=False))

    logger.info("fabstock app created config=%s", config_name)
    return app
