"""
SQLAlchemy-backed repositories (Flask-SQLAlchemy session).

Transaction policy: repositories flush() for id generation and constraint
checks, never commit().  The calling service owns the unit of work.

Error translation:
    IntegrityError on run insert    → DuplicateKeyError (session rolled back)
    IntegrityError on flaky insert  → DuplicateKeyError (savepoint rolled back)
    StaleDataError on versioned row → ConcurrentUpdateError
    any other SQLAlchemyError       → PersistenceError(operation)
    missing row on get_*            → NotFoundError

Run versioning: ``update`` (completion) checks the version it read, while
``update_counters`` (suite appends) bumps it unchecked.  Parallel shards
therefore never fail each other, but a completion that raced an append is
rejected.
"""

import logging
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import selectinload
from sqlalchemy.orm.exc import StaleDataError

from testhub.core.exceptions import (
    CannotMutateCompleted,
    ConcurrentUpdateError,
    DuplicateKeyError,
    NotFoundError,
    PersistenceError,
)
from testhub.domain.flaky import FlakyTest
from testhub.domain.test_run import (
    STATUS_FAILED,
    STATUS_PASSED,
    STATUS_RUNNING,
    SpecRun,
    SuiteRun,
    TestRun,
)
from testhub.models import db
from testhub.models.testing import FlakyTestModel, SpecRunModel, SuiteRunModel, TestRunModel
from testhub.repositories.base import (
    FlakyTestRepository,
    SpecRunRepository,
    SuiteRunRepository,
    TestRunRepository,
    TestRunSummary,
)

logger = logging.getLogger(__name__)


@contextmanager
def _store_errors(operation):
    """Wrap driver/ORM failures with the name of the failing operation."""
    try:
        yield
    except SQLAlchemyError as exc:
        raise PersistenceError(operation, exc) from exc


def _aware(value):
    """SQLite drops tzinfo on DateTime(timezone=True) columns; treat naive as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ── Row ↔ domain conversion ──────────────────────────────────────────────────

def spec_from_row(row):
    return SpecRun.restore(
        id=row.id,
        suite_run_id=row.suite_run_id,
        name=row.name,
        status=row.status,
        start_time=_aware(row.start_time),
        end_time=_aware(row.end_time),
        duration_ms=row.duration_ms,
        error_message=row.error_message,
        stack_trace=row.stack_trace,
        retry_count=row.retry_count,
        is_flaky=row.is_flaky,
    )


def suite_from_row(row, include_specs=False):
    return SuiteRun.restore(
        id=row.id,
        test_run_id=row.test_run_id,
        name=row.name,
        status=row.status,
        start_time=_aware(row.start_time),
        end_time=_aware(row.end_time),
        total_tests=row.total_tests,
        passed_tests=row.passed_tests,
        failed_tests=row.failed_tests,
        skipped_tests=row.skipped_tests,
        duration_ms=row.duration_ms,
        specs=[spec_from_row(s) for s in row.spec_runs] if include_specs else None,
    )


def run_from_row(row, include_suites=False):
    return TestRun.restore(
        id=row.id,
        run_id=row.run_id,
        project_id=row.project_id,
        branch=row.branch,
        commit_sha=row.commit_sha,
        environment=row.environment,
        metadata=row.run_metadata or {},
        status=row.status,
        start_time=_aware(row.start_time),
        end_time=_aware(row.end_time),
        total_tests=row.total_tests,
        passed_tests=row.passed_tests,
        failed_tests=row.failed_tests,
        skipped_tests=row.skipped_tests,
        version=row.version,
        suites=(
            [suite_from_row(s, include_specs=True) for s in row.suite_runs]
            if include_suites else None
        ),
    )


def flaky_from_row(row):
    return FlakyTest.restore(
        id=row.id,
        project_id=row.project_id,
        test_name=row.test_name,
        suite_name=row.suite_name,
        flake_rate=row.flake_rate,
        total_executions=row.total_executions,
        flaky_executions=row.flaky_executions,
        first_seen_at=_aware(row.first_seen_at),
        last_seen_at=_aware(row.last_seen_at),
        status=row.status,
        severity=row.severity,
        last_error_message=row.last_error_message,
    )


# ═════════════════════════════════════════════════════════════════════════════
# TEST RUNS
# ═════════════════════════════════════════════════════════════════════════════

class SqlTestRunRepository(TestRunRepository):

    def _get_row(self, test_run_id):
        with _store_errors("get test run"):
            row = db.session.get(TestRunModel, test_run_id)
        if row is None:
            raise NotFoundError(resource="TestRun", resource_id=test_run_id)
        return row

    def create(self, test_run):
        row = TestRunModel(
            run_id=test_run.run_id,
            project_id=test_run.project_id,
            branch=test_run.branch,
            commit_sha=test_run.commit_sha,
            environment=test_run.environment,
            status=test_run.status,
            start_time=test_run.start_time,
            end_time=test_run.end_time,
            total_tests=test_run.total_tests,
            passed_tests=test_run.passed_tests,
            failed_tests=test_run.failed_tests,
            skipped_tests=test_run.skipped_tests,
            run_metadata=test_run.metadata,
        )
        db.session.add(row)
        try:
            db.session.flush()
        except IntegrityError as exc:
            db.session.rollback()
            logger.info(
                "Duplicate run_id on insert",
                extra={"run_id": test_run.run_id, "project_id": test_run.project_id},
            )
            raise DuplicateKeyError("TestRun", "run_id", test_run.run_id) from exc
        except SQLAlchemyError as exc:
            raise PersistenceError("create test run", exc) from exc
        test_run.assign_id(row.id)
        test_run.record_version(row.version)
        return test_run

    def update(self, test_run):
        row = self._get_row(test_run.id)
        if row.version != test_run.version:
            raise ConcurrentUpdateError("TestRun", test_run.id, test_run.version)
        row.status = test_run.status
        row.end_time = test_run.end_time
        row.duration_ms = test_run.duration_ms if test_run.end_time else None
        row.total_tests = test_run.total_tests
        row.passed_tests = test_run.passed_tests
        row.failed_tests = test_run.failed_tests
        row.skipped_tests = test_run.skipped_tests
        row.environment = test_run.environment
        row.run_metadata = test_run.metadata
        row.updated_at = datetime.now(timezone.utc)
        try:
            db.session.flush()
        except StaleDataError as exc:
            raise ConcurrentUpdateError("TestRun", test_run.id, test_run.version) from exc
        except SQLAlchemyError as exc:
            raise PersistenceError("update test run", exc) from exc
        test_run.record_version(row.version)
        return test_run

    def update_counters(self, test_run):
        now = datetime.now(timezone.utc)
        stmt = (
            update(TestRunModel)
            .where(TestRunModel.id == test_run.id, TestRunModel.status == STATUS_RUNNING)
            .values(
                total_tests=test_run.total_tests,
                passed_tests=test_run.passed_tests,
                failed_tests=test_run.failed_tests,
                skipped_tests=test_run.skipped_tests,
                version=TestRunModel.version + 1,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        with _store_errors("update test run counters"):
            result = db.session.execute(stmt)
            row = db.session.get(TestRunModel, test_run.id, populate_existing=True)
        if row is None:
            raise NotFoundError(resource="TestRun", resource_id=test_run.id)
        if result.rowcount == 0:
            raise CannotMutateCompleted("TestRun", row.status)
        test_run.record_version(row.version)
        return test_run

    def claim_flaky_analysis(self, test_run_id, now):
        stmt = (
            update(TestRunModel)
            .where(TestRunModel.id == test_run_id, TestRunModel.flaky_analyzed_at.is_(None))
            .values(flaky_analyzed_at=now)
            .execution_options(synchronize_session=False)
        )
        with _store_errors("claim flaky analysis"):
            result = db.session.execute(stmt)
        return result.rowcount == 1

    def get_by_id(self, test_run_id):
        return run_from_row(self._get_row(test_run_id))

    def get_by_run_id(self, run_id):
        with _store_errors("get test run by run_id"):
            row = TestRunModel.query.filter_by(run_id=run_id).first()
        if row is None:
            raise NotFoundError(resource="TestRun", resource_id=run_id)
        return run_from_row(row)

    def get_with_details(self, test_run_id):
        with _store_errors("get test run with details"):
            row = (
                TestRunModel.query
                .options(selectinload(TestRunModel.suite_runs).selectinload(SuiteRunModel.spec_runs))
                .populate_existing()
                .filter(TestRunModel.id == test_run_id)
                .first()
            )
        if row is None:
            raise NotFoundError(resource="TestRun", resource_id=test_run_id)
        return run_from_row(row, include_suites=True)

    def get_latest_by_project_id(self, project_id, limit=0, offset=0):
        q = (
            TestRunModel.query
            .filter_by(project_id=project_id)
            .order_by(TestRunModel.created_at.desc(), TestRunModel.id.desc())
        )
        if limit and limit > 0:
            q = q.limit(limit)
        if offset and offset > 0:
            q = q.offset(offset)
        with _store_errors("get latest test runs"):
            return [run_from_row(r) for r in q.all()]

    def get_test_run_summary(self, project_id):
        base = db.session.query(TestRunModel).filter(TestRunModel.project_id == project_id)
        with _store_errors("get test run summary"):
            total = base.count()
            passed = base.filter(TestRunModel.status == STATUS_PASSED).count()
            failed = base.filter(TestRunModel.status == STATUS_FAILED).count()
            avg_ms = (
                db.session.query(func.coalesce(func.avg(TestRunModel.duration_ms), 0))
                .filter(TestRunModel.project_id == project_id)
                .scalar()
            )
        return TestRunSummary(
            total_runs=total,
            passed_runs=passed,
            failed_runs=failed,
            average_run_time_ms=float(avg_ms or 0),
            success_rate=(passed / total) if total else 0.0,
        )

    def delete(self, test_run_id):
        row = self._get_row(test_run_id)
        with _store_errors("delete test run"):
            db.session.delete(row)
            db.session.flush()

    def count_by_project_id(self, project_id):
        with _store_errors("count test runs"):
            return TestRunModel.query.filter_by(project_id=project_id).count()

    def count(self):
        with _store_errors("count test runs"):
            return TestRunModel.query.count()

    def get_recent(self, limit=0, offset=0):
        q = TestRunModel.query.order_by(TestRunModel.created_at.desc(), TestRunModel.id.desc())
        if limit and limit > 0:
            q = q.limit(limit)
        if offset and offset > 0:
            q = q.offset(offset)
        with _store_errors("get recent test runs"):
            return [run_from_row(r) for r in q.all()]


# ═════════════════════════════════════════════════════════════════════════════
# SUITE RUNS
# ═════════════════════════════════════════════════════════════════════════════

class SqlSuiteRunRepository(SuiteRunRepository):

    @staticmethod
    def _new_row(suite_run):
        return SuiteRunModel(
            test_run_id=suite_run.test_run_id,
            name=suite_run.name,
            status=suite_run.status,
            start_time=suite_run.start_time,
            end_time=suite_run.end_time,
            total_tests=suite_run.total_tests,
            passed_tests=suite_run.passed_tests,
            failed_tests=suite_run.failed_tests,
            skipped_tests=suite_run.skipped_tests,
            duration_ms=suite_run.duration_ms,
        )

    def _get_row(self, suite_run_id):
        with _store_errors("get suite run"):
            row = db.session.get(SuiteRunModel, suite_run_id)
        if row is None:
            raise NotFoundError(resource="SuiteRun", resource_id=suite_run_id)
        return row

    def create(self, suite_run):
        row = self._new_row(suite_run)
        with _store_errors("create suite run"):
            db.session.add(row)
            db.session.flush()
        suite_run.assign_id(row.id)
        return suite_run

    def create_batch(self, suite_runs):
        rows = [self._new_row(s) for s in suite_runs]
        with _store_errors("create suite runs"):
            db.session.add_all(rows)
            db.session.flush()
        for suite_run, row in zip(suite_runs, rows):
            suite_run.assign_id(row.id)
        return list(suite_runs)

    def update(self, suite_run):
        row = self._get_row(suite_run.id)
        row.status = suite_run.status
        row.end_time = suite_run.end_time
        row.total_tests = suite_run.total_tests
        row.passed_tests = suite_run.passed_tests
        row.failed_tests = suite_run.failed_tests
        row.skipped_tests = suite_run.skipped_tests
        row.duration_ms = suite_run.duration_ms
        with _store_errors("update suite run"):
            db.session.flush()
        return suite_run

    def get_by_id(self, suite_run_id):
        return suite_from_row(self._get_row(suite_run_id))

    def find_by_test_run_id(self, test_run_id):
        with _store_errors("find suite runs"):
            rows = (
                SuiteRunModel.query
                .filter_by(test_run_id=test_run_id)
                .order_by(SuiteRunModel.id)
                .all()
            )
        return [suite_from_row(r) for r in rows]


# ═════════════════════════════════════════════════════════════════════════════
# SPEC RUNS
# ═════════════════════════════════════════════════════════════════════════════

class SqlSpecRunRepository(SpecRunRepository):

    @staticmethod
    def _new_row(spec_run):
        return SpecRunModel(
            suite_run_id=spec_run.suite_run_id,
            name=spec_run.name,
            status=spec_run.status,
            start_time=spec_run.start_time,
            end_time=spec_run.end_time,
            duration_ms=spec_run.duration_ms,
            error_message=spec_run.error_message,
            stack_trace=spec_run.stack_trace,
            retry_count=spec_run.retry_count,
            is_flaky=spec_run.is_flaky,
        )

    def _get_row(self, spec_run_id):
        with _store_errors("get spec run"):
            row = db.session.get(SpecRunModel, spec_run_id)
        if row is None:
            raise NotFoundError(resource="SpecRun", resource_id=spec_run_id)
        return row

    def create(self, spec_run):
        row = self._new_row(spec_run)
        with _store_errors("create spec run"):
            db.session.add(row)
            db.session.flush()
        spec_run.assign_id(row.id)
        return spec_run

    def create_batch(self, spec_runs):
        rows = [self._new_row(s) for s in spec_runs]
        with _store_errors("create spec runs"):
            db.session.add_all(rows)
            db.session.flush()
        for spec_run, row in zip(spec_runs, rows):
            spec_run.assign_id(row.id)
        return list(spec_runs)

    def update(self, spec_run):
        row = self._get_row(spec_run.id)
        row.status = spec_run.status
        row.end_time = spec_run.end_time
        row.duration_ms = spec_run.duration_ms
        row.error_message = spec_run.error_message
        row.stack_trace = spec_run.stack_trace
        row.retry_count = spec_run.retry_count
        row.is_flaky = spec_run.is_flaky
        with _store_errors("update spec run"):
            db.session.flush()
        return spec_run

    def get_by_id(self, spec_run_id):
        return spec_from_row(self._get_row(spec_run_id))

    def find_by_suite_run_id(self, suite_run_id):
        with _store_errors("find spec runs"):
            rows = (
                SpecRunModel.query
                .filter_by(suite_run_id=suite_run_id)
                .order_by(SpecRunModel.id)
                .all()
            )
        return [spec_from_row(r) for r in rows]

    def find_history(self, project_id, name, *, commit_sha=None, exclude_test_run_id=None, limit=50):
        q = (
            db.session.query(SpecRunModel)
            .join(SuiteRunModel, SpecRunModel.suite_run_id == SuiteRunModel.id)
            .join(TestRunModel, SuiteRunModel.test_run_id == TestRunModel.id)
            .filter(TestRunModel.project_id == project_id, SpecRunModel.name == name)
        )
        if commit_sha:
            q = q.filter(TestRunModel.commit_sha == commit_sha)
        if exclude_test_run_id is not None:
            q = q.filter(TestRunModel.id != exclude_test_run_id)
        q = q.order_by(SpecRunModel.id.desc())
        if limit and limit > 0:
            q = q.limit(limit)
        with _store_errors("find spec history"):
            return [spec_from_row(r) for r in q.all()]


# ═════════════════════════════════════════════════════════════════════════════
# FLAKY TESTS
# ═════════════════════════════════════════════════════════════════════════════

class SqlFlakyTestRepository(FlakyTestRepository):

    def save(self, flaky_test):
        row = FlakyTestModel(
            project_id=flaky_test.project_id,
            test_name=flaky_test.test_name,
            suite_name=flaky_test.suite_name,
            flake_rate=flaky_test.flake_rate,
            total_executions=flaky_test.total_executions,
            flaky_executions=flaky_test.flaky_executions,
            first_seen_at=flaky_test.first_seen_at,
            last_seen_at=flaky_test.last_seen_at,
            status=flaky_test.status,
            severity=flaky_test.severity,
            last_error_message=flaky_test.last_error_message,
        )
        # savepoint: a lost insert race must not undo the caller's earlier writes
        try:
            with db.session.begin_nested():
                db.session.add(row)
        except IntegrityError as exc:
            logger.info(
                "Flaky test inserted concurrently",
                extra={"project_id": flaky_test.project_id, "test_name": flaky_test.test_name},
            )
            raise DuplicateKeyError("FlakyTest", "test_name", flaky_test.test_name) from exc
        except SQLAlchemyError as exc:
            raise PersistenceError("save flaky test", exc) from exc
        flaky_test.assign_id(row.id)
        return flaky_test

    def find_by_project(self, project_id, status=None):
        q = FlakyTestModel.query.filter_by(project_id=project_id)
        if status:
            q = q.filter_by(status=status)
        q = q.order_by(FlakyTestModel.flake_rate.desc(), FlakyTestModel.test_name)
        with _store_errors("find flaky tests"):
            return [flaky_from_row(r) for r in q.all()]

    def find_by_test_name(self, project_id, test_name):
        with _store_errors("find flaky test"):
            row = FlakyTestModel.query.filter_by(project_id=project_id, test_name=test_name).first()
        return flaky_from_row(row) if row else None

    def update(self, flaky_test):
        with _store_errors("update flaky test"):
            row = db.session.get(FlakyTestModel, flaky_test.id)
        if row is None:
            raise NotFoundError(resource="FlakyTest", resource_id=flaky_test.id)
        row.suite_name = flaky_test.suite_name
        row.flake_rate = flaky_test.flake_rate
        row.total_executions = flaky_test.total_executions
        row.flaky_executions = flaky_test.flaky_executions
        row.last_seen_at = flaky_test.last_seen_at
        row.status = flaky_test.status
        row.severity = flaky_test.severity
        row.last_error_message = flaky_test.last_error_message
        with _store_errors("update flaky test"):
            db.session.flush()
        return flaky_test
