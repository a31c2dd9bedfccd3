"""
Test Hub
Flask Application Factory.

Usage:
    from testhub import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

import click
from flask import Flask
from flask_migrate import Migrate

from testhub.config import config
from testhub.core.exceptions import (
    ConflictError,
    InvalidStateTransition,
    NotFoundError,
    OwnershipMismatch,
    PersistenceError,
    ValidationError,
)
from testhub.middleware.logging_config import configure_logging
from testhub.models import db

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


def _register_error_handlers(app):
    """Map the domain exception hierarchy onto JSON responses."""

    @app.errorhandler(NotFoundError)
    def not_found(e):
        return {"error": str(e), "resource": e.resource}, 404

    @app.errorhandler(ValidationError)
    def validation_failed(e):
        return {"error": str(e), "details": e.details}, 422

    @app.errorhandler(OwnershipMismatch)
    def ownership_mismatch(e):
        return {"error": str(e), "child": e.child}, 422

    @app.errorhandler(InvalidStateTransition)
    def invalid_transition(e):
        return {"error": str(e), "current": e.current, "target": e.target}, 409

    @app.errorhandler(ConflictError)
    def conflict(e):
        return {"error": str(e), "resource": e.resource, "field": e.field}, 409

    @app.errorhandler(PersistenceError)
    def persistence_failed(e):
        logger.error("Persistence failure: %s", e, extra={"operation": e.operation})
        return {"error": "Internal server error", "operation": e.operation}, 500

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed"}, 405


def _register_cli(app):

    @app.cli.command("flaky-report")
    @click.argument("project_id")
    @click.option("--status", default="active", show_default=True,
                  help="active | resolved | ignored | all")
    def flaky_report_cmd(project_id, status):
        """Print the flaky tests of PROJECT_ID, worst flake rate first."""
        from testhub.services.flaky_detection_service import FlakyDetectionService

        service = FlakyDetectionService.from_config()
        tests = service.list_flaky_tests(project_id, status=None if status == "all" else status)
        if not tests:
            click.echo(f"No flaky tests for project {project_id}.")
            return
        for ft in tests:
            click.echo(
                f"{ft.flake_rate:6.2f}%  {ft.severity:<8}  {ft.status:<8}  "
                f"{ft.flaky_executions}/{ft.total_executions}  {ft.test_name}"
            )

    @app.cli.command("analyze-run")
    @click.argument("test_run_id", type=int)
    def analyze_run_cmd(test_run_id):
        """Run flaky detection over a completed test run not yet analyzed."""
        from testhub.services.flaky_detection_service import FlakyDetectionService

        analysis = FlakyDetectionService.from_config().analyze_test_run(test_run_id)
        if analysis.already_analyzed:
            click.echo(f"Test run {test_run_id} was already analyzed.")
            return
        click.echo(
            f"Judged {analysis.judged} specs: "
            f"{len(analysis.new_flaky)} new flaky, {len(analysis.still_flaky)} still flaky."
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

    # ── Import all models so Alembic can detect them ─────────────────────
    from testhub.models import testing as _testing_models  # noqa: F401

    # ── Auto-create tables (CREATE IF NOT EXISTS) ────────────────────────
    os.makedirs(app.instance_path, exist_ok=True)   # SQLite dev database lives here
    with app.app_context():
        db.create_all()
        app.logger.debug("db.create_all() completed")

    # ── Blueprints ───────────────────────────────────────────────────────
    from testhub.blueprints.health_bp import health_bp

    app.register_blueprint(health_bp)

    _register_error_handlers(app)
    _register_cli(app)

    return app
