"""
QMS Change Governance Engine
Flask Application Factory.

Usage:
    from change_governance import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import importlib
import os

import click
from flask import Flask
from flask_migrate import Migrate
from sqlalchemy import engine as _sa_engine
from sqlalchemy import event as _sa_event

from change_governance.config import config
from change_governance.logging_config import configure_logging
from change_governance.models import db

# ── SQLite FK enforcement (global engine event) ─────────────────────────

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
    app.config.from_object(config[config_name])
    os.makedirs(app.instance_path, exist_ok=True)

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)
    migrate.init_app(app, db)

    # ── Import all models so Alembic can detect them ─────────────────────
    from change_governance.models import audit as _audit_models            # noqa: F401
    from change_governance.models import auth as _auth_models              # noqa: F401
    from change_governance.models import change as _change_models          # noqa: F401
    from change_governance.models import notification as _notification_models  # noqa: F401
    from change_governance.models import scheduling as _scheduling_models  # noqa: F401
    from change_governance.models import workflow as _workflow_models      # noqa: F401

    # ── Auto-create tables (CREATE IF NOT EXISTS) ────────────────────────
    with app.app_context():
        try:
            db.create_all()
            app.logger.info("db.create_all() completed successfully")
        except Exception as e:
            app.logger.warning("db.create_all() failed: %s", e)

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("sweep-overdue-approvals")
    def sweep_overdue_approvals_cmd():
        """Escalate PENDING approvals that are past their due date."""
        from change_governance.services.scheduler_service import SchedulerService
        SchedulerService.ensure_jobs_registered()
        result = SchedulerService.run_job("overdue_approval_sweep")
        click.echo(f"{result['status']}: {result.get('result') or result.get('error')}")

    @app.cli.command("run-job")
    @click.argument("job_name")
    def run_job_cmd(job_name):
        """Run one registered background job by name."""
        from change_governance.services.scheduler_service import SchedulerService
        SchedulerService.ensure_jobs_registered()
        result = SchedulerService.run_job(job_name)
        click.echo(f"{result['status']}: {result.get('result') or result.get('error')}")

    # ── Scheduler initialization (import jobs to register them) ──────────
    importlib.import_module("change_governance.services.scheduled_jobs")  # registers @register_job handlers
    from change_governance.services.scheduler_service import SchedulerService as _SchedulerSvc
    _SchedulerSvc.init_app(app)

    return app
