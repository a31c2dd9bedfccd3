"""
Test Hub: test-run aggregation service.

Ingestion and read side of the execution aggregate:
    create_test_run            → idempotent on run_id, returns (run, already_existed)
    add_suite_run              → suite + its specs, suite and run counters recomputed
    add_spec_run               → one spec, suite counters recomputed
    complete_suite_run         → suite leaves running
    complete_test_run          → run leaves running, flaky detection in the same commit
    create_test_run_with_suites→ whole tree in one unit of work

Counters are never incremented: every mutation re-reads the children from the
store and recomputes the parent, so concurrent writers converge on the stored
state.  Appends bump the run version without checking it; completion checks
it, so a completion that raced an append surfaces as ConcurrentUpdateError
and is rolled back.
"""
import logging
from datetime import datetime, timezone

from flask import current_app

from testhub.core.exceptions import (
    CannotMutateCompleted,
    DuplicateKeyError,
    NotFoundError,
    OwnershipMismatch,
    PersistenceError,
    ValidationError,
)
from testhub.domain.test_run import STATUS_RUNNING
from testhub.repositories.sqlalchemy_repository import (
    SqlSpecRunRepository,
    SqlSuiteRunRepository,
    SqlTestRunRepository,
)
from testhub.services.flaky_detection_service import FlakyDetectionService
from testhub.utils.helpers import clamp_limit, clamp_offset, unit_of_work

logger = logging.getLogger(__name__)


class TestRunAggregationService:

    def __init__(self, test_runs, suite_runs, spec_runs, flaky_detector=None, *, clock=None):
        self._test_runs = test_runs
        self._suite_runs = suite_runs
        self._spec_runs = spec_runs
        self._flaky_detector = flaky_detector
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @classmethod
    def from_config(cls, with_flaky_detection=None):
        """Service wired to the SQL repositories of the current app."""
        if with_flaky_detection is None:
            with_flaky_detection = current_app.config.get("FLAKY_DETECTION_ENABLED", True)
        detector = FlakyDetectionService.from_config() if with_flaky_detection else None
        return cls(
            SqlTestRunRepository(),
            SqlSuiteRunRepository(),
            SqlSpecRunRepository(),
            flaky_detector=detector,
        )

    # ═════════════════════════════════════════════════════════════════════
    # Internal helpers (no commit)
    # ═════════════════════════════════════════════════════════════════════

    def _create_or_fetch(self, test_run):
        """Insert the run; on a duplicate run_id return the stored one.

        Must be the first write of the unit of work: the duplicate path rolls
        the session back.
        """
        try:
            return self._test_runs.create(test_run), False
        except DuplicateKeyError as exc:
            try:
                existing = self._test_runs.get_by_run_id(test_run.run_id)
            except NotFoundError:
                # the insert failed on some other constraint
                raise PersistenceError("create test run", exc) from exc
            logger.info(
                "Test run already existed",
                extra={"run_id": existing.run_id, "test_run_id": existing.id},
            )
            return existing, True

    @staticmethod
    def _check_new_suite(suite, test_run_id=None):
        """Reject suites that are already stored or owned by another run."""
        if suite.id is not None:
            raise ValidationError(
                f"Suite run {suite.name!r} is already persisted (id={suite.id})",
                details={"suite_run_id": suite.id},
            )
        if test_run_id is not None and suite.test_run_id not in (None, test_run_id):
            raise OwnershipMismatch("SuiteRun", test_run_id, suite.test_run_id)
        for spec in suite.specs:
            if spec.id is not None or spec.suite_run_id is not None:
                raise OwnershipMismatch("SpecRun", suite.id, spec.suite_run_id)

    def _persist_suite(self, test_run_id, suite):
        """Insert suite and specs, then recompute the suite from stored specs."""
        suite.attach_to(test_run_id)
        specs = list(suite.specs)
        self._suite_runs.create(suite)
        if specs:
            self._spec_runs.create_batch(specs)
        suite.roll_up(self._spec_runs.find_by_suite_run_id(suite.id))
        self._suite_runs.update(suite)
        return suite

    def _refresh_run(self, run):
        """Recompute the run from its stored suites.

        Another shard may have written the run since it was read; the counter
        write is unversioned so both appends survive and the later one sees
        every suite.
        """
        run.roll_up(self._suite_runs.find_by_test_run_id(run.id))
        self._test_runs.update_counters(run)
        return run

    def _complete(self, test_run_id, status=None):
        now = self._clock()
        run = self._test_runs.get_by_id(test_run_id)
        if not run.is_running:
            # fail before touching the suites
            run.complete(status, now=now)

        suites = self._suite_runs.find_by_test_run_id(test_run_id)
        for suite in suites:
            if suite.status == STATUS_RUNNING:
                suite.complete(now=now)
                self._suite_runs.update(suite)
        run.roll_up(suites)
        run.complete(status, now=now)
        self._test_runs.update(run)

        analysis = None
        if self._flaky_detector is not None:
            analysis = self._flaky_detector.process_completed_run(
                self._test_runs.get_with_details(test_run_id)
            )
        return run, analysis

    # ═════════════════════════════════════════════════════════════════════
    # Write side
    # ═════════════════════════════════════════════════════════════════════

    def create_test_run(self, test_run):
        """Create the run, or return the stored run with the same run_id.

        Returns ``(run, already_existed)``.  Concurrent creates with the same
        run_id resolve through the unique constraint, so exactly one insert
        wins and every caller gets the same stored run.
        """
        test_run.validate()
        with unit_of_work("create_test_run"):
            run, already_existed = self._create_or_fetch(test_run)
        if not already_existed:
            logger.info(
                "Test run created",
                extra={"run_id": run.run_id, "project_id": run.project_id, "test_run_id": run.id},
            )
        return run, already_existed

    def add_suite_run(self, test_run_id, suite):
        """Append a suite (with any specs it carries) to a running test run."""
        self._check_new_suite(suite)
        with unit_of_work("add_suite_run"):
            run = self._test_runs.get_by_id(test_run_id)
            run.ensure_accepts(suite)
            self._persist_suite(run.id, suite)
            self._refresh_run(run)
        logger.info(
            "Suite run added",
            extra={"test_run_id": test_run_id, "suite_run_id": suite.id, "specs": suite.total_tests},
        )
        return suite

    def add_spec_run(self, suite_run_id, spec):
        """Append one spec to a running suite; returns the recomputed suite.

        Only the suite counters move here.  The run picks the new totals up on
        the next suite append or on completion.
        """
        if spec.id is not None:
            raise ValidationError(
                f"Spec run {spec.name!r} is already persisted (id={spec.id})",
                details={"spec_run_id": spec.id},
            )
        with unit_of_work("add_spec_run"):
            suite = self._suite_runs.get_by_id(suite_run_id)
            run = self._test_runs.get_by_id(suite.test_run_id)
            if not run.is_running:
                raise CannotMutateCompleted("TestRun", run.status)
            if suite.status != STATUS_RUNNING:
                raise CannotMutateCompleted("SuiteRun", suite.status)
            spec.attach_to(suite.id)
            self._spec_runs.create(spec)
            suite.roll_up(self._spec_runs.find_by_suite_run_id(suite.id))
            self._suite_runs.update(suite)
        logger.debug(
            "Spec run added",
            extra={"suite_run_id": suite_run_id, "spec_run_id": spec.id, "status": spec.status},
        )
        return suite

    def complete_suite_run(self, suite_run_id):
        with unit_of_work("complete_suite_run"):
            suite = self._suite_runs.get_by_id(suite_run_id)
            suite.roll_up(self._spec_runs.find_by_suite_run_id(suite_run_id))
            suite.complete(now=self._clock())
            self._suite_runs.update(suite)
        return suite

    def complete_test_run(self, test_run_id, status=None):
        """Move the run to its final status.

        Suites still running are completed first, the run counters are
        recomputed from them and flaky detection runs over the finished run.
        All of it commits together or not at all.
        """
        with unit_of_work("complete_test_run"):
            run, analysis = self._complete(test_run_id, status)
        logger.info(
            "Test run completed",
            extra={
                "test_run_id": run.id,
                "run_id": run.run_id,
                "status": run.status,
                "total": run.total_tests,
                "failed": run.failed_tests,
                "new_flaky": len(analysis.new_flaky) if analysis else 0,
            },
        )
        return run

    def create_test_run_with_suites(self, test_run, suites, complete=False):
        """Create (or reuse) a run and attach ``suites`` in one unit of work.

        If the run already existed and has completed, nothing is written and
        CannotMutateCompleted is raised.  With ``complete=True`` the run is
        completed in the same transaction.  Returns ``(run, already_existed)``.
        """
        test_run.validate()
        suites = list(suites)
        for suite in suites:
            self._check_new_suite(suite, test_run.id)

        with unit_of_work("create_test_run_with_suites"):
            run, already_existed = self._create_or_fetch(test_run)
            for suite in suites:
                run.ensure_accepts(suite)
            for suite in suites:
                self._persist_suite(run.id, suite)
            self._refresh_run(run)
            if complete:
                run, _ = self._complete(run.id)

        logger.info(
            "Test run ingested",
            extra={
                "run_id": run.run_id,
                "test_run_id": run.id,
                "suites": len(suites),
                "already_existed": already_existed,
                "status": run.status,
            },
        )
        return run, already_existed

    def delete_test_run(self, test_run_id):
        with unit_of_work("delete_test_run"):
            self._test_runs.delete(test_run_id)
        logger.info("Test run deleted", extra={"test_run_id": test_run_id})

    # ═════════════════════════════════════════════════════════════════════
    # Read side
    # ═════════════════════════════════════════════════════════════════════

    def get_test_run(self, test_run_id):
        return self._test_runs.get_by_id(test_run_id)

    def get_test_run_with_details(self, test_run_id):
        return self._test_runs.get_with_details(test_run_id)

    def get_test_run_by_run_id(self, run_id):
        return self._test_runs.get_by_run_id(run_id)

    def get_project_test_runs(self, project_id, limit=50):
        return self._test_runs.get_latest_by_project_id(project_id, clamp_limit(limit))

    def list_test_runs(self, project_id=None, limit=50, offset=0):
        """Return one page ``(runs, total)``, newest first.

        Without a project the page spans all runs.  ``total`` counts every
        matching run, not just the page.
        """
        limit = clamp_limit(limit)
        offset = clamp_offset(offset)
        if not project_id:
            return self._test_runs.get_recent(limit, offset), self._test_runs.count()
        runs = self._test_runs.get_latest_by_project_id(project_id, limit, offset)
        return runs, self._test_runs.count_by_project_id(project_id)

    def get_recent_test_runs(self, limit=10):
        return self._test_runs.get_recent(clamp_limit(limit, default=10))

    def get_test_run_summary(self, project_id):
        return self._test_runs.get_test_run_summary(project_id)

    def get_suite_runs(self, test_run_id):
        self._test_runs.get_by_id(test_run_id)
        return self._suite_runs.find_by_test_run_id(test_run_id)
