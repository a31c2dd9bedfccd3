"""
Shared pytest fixtures for the Test Hub test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - repositories / detector / service: SQL-backed service wiring
"""

from types import SimpleNamespace

import pytest

from testhub import create_app
from testhub.models import db as _db
from testhub.repositories.sqlalchemy_repository import (
    SqlFlakyTestRepository,
    SqlSpecRunRepository,
    SqlSuiteRunRepository,
    SqlTestRunRepository,
)
from testhub.services.aggregation_service import TestRunAggregationService
from testhub.services.flaky_detection_service import FlakyDetectionService


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Service wiring ───────────────────────────────────────────────────────


@pytest.fixture()
def repositories():
    return SimpleNamespace(
        test_runs=SqlTestRunRepository(),
        suite_runs=SqlSuiteRunRepository(),
        spec_runs=SqlSpecRunRepository(),
        flaky_tests=SqlFlakyTestRepository(),
    )


@pytest.fixture()
def detector(repositories):
    return FlakyDetectionService(
        repositories.flaky_tests, repositories.spec_runs, repositories.test_runs,
    )


@pytest.fixture()
def service(repositories, detector):
    return TestRunAggregationService(
        repositories.test_runs,
        repositories.suite_runs,
        repositories.spec_runs,
        flaky_detector=detector,
    )
