"""
TAPS — Transcript Automation and Processing Service
Flask Application Factory.

Usage:
    from taps import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import importlib
import logging
import os

from flask_migrate import Migrate
from flask import Flask

from taps.config import config
from taps.core.logging_config import configure_logging
from taps.models import db

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
    cfg_class = config[config_name]
    # ProductionConfig validates its environment on instantiation
    app.config.from_object(cfg_class() if config_name == "production" else cfg_class)

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)
    migrate.init_app(app, db)

    # ── Outbound mail (log-only until a transport is plugged in) ─────────
    from taps.services.notification_delivery import LoggingMailSender
    from taps.services.workflow import MAIL_SENDER_EXTENSION
    app.extensions.setdefault(MAIL_SENDER_EXTENSION, LoggingMailSender())

    # ── Import all models so SQLAlchemy knows about them ─────────────────
    from taps.models import request as _request_models  # noqa: F401
    from taps.models import audit as _audit_models      # noqa: F401
    from taps.models import sla as _sla_models          # noqa: F401

    # ── Auto-create tables (CREATE IF NOT EXISTS) ────────────────────────
    if config_name != "production":
        os.makedirs(app.instance_path, exist_ok=True)
    with app.app_context():
        try:
            db.create_all()
            app.logger.debug("db.create_all() completed successfully")
        except Exception as e:
            app.logger.warning("db.create_all() failed: %s", e)

    # ── Scheduler initialization (import jobs to register them) ──────────
    importlib.import_module("taps.services.scheduled_jobs")  # registers @register_job handlers
    from taps.services.scheduler_service import SchedulerService as _SchedulerSvc
    _SchedulerSvc.init_app(app)

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("sla-sweep")
    def sla_sweep_cmd():
        """Flag SLA timers that reached their warning threshold or target."""
        result = _SchedulerSvc.run_job("sla_sweep")
        logger.info("sla-sweep: %s", result)

    @app.cli.command("send-reminders")
    def send_reminders_cmd():
        """Remind departments about requests waiting on them."""
        result = _SchedulerSvc.run_job("reminder_scan")
        logger.info("send-reminders: %s", result)

    return app
