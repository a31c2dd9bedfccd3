"""Flaky-test detection service.

Consumes completed test runs, judges each pass/fail spec execution and folds
the verdict into the per-test FlakyTest record.  Also exposes the query and
triage operations (resolve / ignore / reactivate) used by dashboards.

Judgement rule (auditable, no scoring model):
- a spec that passed only after retries is flaky
- a spec whose outcome differs from another execution of the same test on
  the same commit (in another run of the project) is flaky
- a spec is only judged when there is history to judge it against: a retry,
  or at least one earlier pass/fail execution on the same commit

Transaction policy: public operations run in their own unit of work, except
``process_completed_run`` which joins the caller's (run completion).
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

from flask import current_app

from testhub.core.exceptions import (
    DuplicateKeyError,
    InvalidStateTransition,
    NotFoundError,
    ValidationError,
)
from testhub.domain.flaky import FLAKY_STATUSES, FlakyTest
from testhub.domain.test_run import STATUS_FAILED, STATUS_PASSED
from testhub.repositories.sqlalchemy_repository import (
    SqlFlakyTestRepository,
    SqlSpecRunRepository,
    SqlTestRunRepository,
)
from testhub.utils.helpers import unit_of_work

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 50

_JUDGED_STATUSES = (STATUS_PASSED, STATUS_FAILED)


@dataclass
class FlakyAnalysis:
    """Outcome of running flaky detection over one completed test run."""

    test_run_id: int
    project_id: str
    judged: int = 0
    new_flaky: list = field(default_factory=list)
    still_flaky: list = field(default_factory=list)
    already_analyzed: bool = False

    def to_dict(self):
        return {
            "test_run_id": self.test_run_id,
            "project_id": self.project_id,
            "already_analyzed": self.already_analyzed,
            "judged": self.judged,
            "new_flaky": list(self.new_flaky),
            "still_flaky": list(self.still_flaky),
        }


class FlakyDetectionService:

    def __init__(self, flaky_tests, spec_runs, test_runs=None, *,
                 history_limit=DEFAULT_HISTORY_LIMIT, clock=None):
        self._flaky_tests = flaky_tests
        self._spec_runs = spec_runs
        self._test_runs = test_runs
        self._history_limit = history_limit
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @classmethod
    def from_config(cls):
        """Build the service on the SQL repositories of the current app."""
        return cls(
            SqlFlakyTestRepository(),
            SqlSpecRunRepository(),
            SqlTestRunRepository(),
            history_limit=current_app.config.get("FLAKY_HISTORY_LIMIT", DEFAULT_HISTORY_LIMIT),
        )

    # ── Scoring ──────────────────────────────────────────────────────────

    def record_execution(self, project_id, test_name, suite_name, is_flaky, error_message=""):
        """Fold one judged execution into the test's record.

        Returns the FlakyTest, or None when the execution was not flaky and
        the test has no record yet (records start at the first flaky sighting).
        """
        with unit_of_work("record_flaky_execution"):
            flaky_test, _ = self._record(
                project_id, test_name, suite_name, is_flaky, error_message, self._clock(),
            )
        return flaky_test

    def _record(self, project_id, test_name, suite_name, is_flaky, error_message, now):
        existing = self._flaky_tests.find_by_test_name(project_id, test_name)
        if existing is None:
            if not is_flaky:
                return None, False
            flaky_test = FlakyTest(project_id, test_name, suite_name, now=now)
            flaky_test.record_execution(True, error_message, now=now)
            try:
                self._flaky_tests.save(flaky_test)
            except DuplicateKeyError:
                # another run recorded the first sighting meanwhile
                existing = self._flaky_tests.find_by_test_name(project_id, test_name)
                if existing is None:
                    raise
            else:
                logger.info(
                    "New flaky test detected",
                    extra={"project_id": project_id, "test_name": test_name},
                )
                return flaky_test, True
        existing.record_execution(is_flaky, error_message, now=now)
        self._flaky_tests.update(existing)
        return existing, False

    def _judge(self, run, spec):
        """Return (is_flaky, error_message), or None when there is no history."""
        if spec.status == STATUS_PASSED and spec.retry_count > 0:
            return True, spec.error_message
        if not run.commit_sha:
            return None

        history = self._spec_runs.find_history(
            run.project_id, spec.name,
            commit_sha=run.commit_sha,
            exclude_test_run_id=run.id,
            limit=self._history_limit,
        )
        outcomes = [h for h in history if h.status in _JUDGED_STATUSES]
        if not outcomes:
            return None
        opposite = [h for h in outcomes if h.status != spec.status]
        if not opposite:
            return False, ""
        failure = spec if spec.status == STATUS_FAILED else opposite[0]
        return True, failure.error_message

    def process_completed_run(self, run):
        """Judge every pass/fail spec of ``run`` (loaded with details).

        Joins the caller's unit of work; does not commit.  Each run is
        consumed once: a run already analyzed is skipped so its executions
        are not counted twice.
        """
        analysis = FlakyAnalysis(test_run_id=run.id, project_id=run.project_id)
        now = self._clock()
        if self._test_runs is not None and not self._test_runs.claim_flaky_analysis(run.id, now):
            analysis.already_analyzed = True
            logger.info(
                "Flaky analysis skipped, run already analyzed",
                extra={"test_run_id": run.id, "project_id": run.project_id},
            )
            return analysis
        for suite in run.suites:
            for spec in suite.specs:
                if spec.status not in _JUDGED_STATUSES:
                    continue
                verdict = self._judge(run, spec)
                if verdict is None:
                    continue
                is_flaky, error_message = verdict
                analysis.judged += 1
                _, created = self._record(
                    run.project_id, spec.name, suite.name, is_flaky, error_message, now,
                )
                if not is_flaky:
                    continue
                (analysis.new_flaky if created else analysis.still_flaky).append(spec.name)
                if not spec.is_flaky:
                    spec.mark_flaky()
                    self._spec_runs.update(spec)

        logger.info(
            "Flaky analysis finished",
            extra={
                "test_run_id": run.id,
                "project_id": run.project_id,
                "judged": analysis.judged,
                "flaky": len(analysis.new_flaky) + len(analysis.still_flaky),
            },
        )
        return analysis

    def analyze_test_run(self, test_run_id):
        """Standalone analysis of an already completed run."""
        if self._test_runs is None:
            raise ValidationError("analyze_test_run requires a test run repository")
        with unit_of_work("analyze_test_run"):
            run = self._test_runs.get_with_details(test_run_id)
            if run.is_running:
                raise InvalidStateTransition("TestRun", run.status, "analyze")
            analysis = self.process_completed_run(run)
        return analysis

    # ── Queries ──────────────────────────────────────────────────────────

    def list_flaky_tests(self, project_id, status=None):
        if status is not None and status not in FLAKY_STATUSES:
            raise ValidationError(
                f"Invalid flaky status: {status!r}",
                details={"status": f"must be one of {sorted(FLAKY_STATUSES)}"},
            )
        return self._flaky_tests.find_by_project(project_id, status=status)

    def get_flaky_test(self, project_id, test_name):
        flaky_test = self._flaky_tests.find_by_test_name(project_id, test_name)
        if flaky_test is None:
            raise NotFoundError(resource="FlakyTest", resource_id=f"{project_id}/{test_name}")
        return flaky_test

    # ── Triage lifecycle ─────────────────────────────────────────────────

    def _transition(self, operation, project_id, test_name, action):
        with unit_of_work(operation):
            flaky_test = self.get_flaky_test(project_id, test_name)
            action(flaky_test)
            self._flaky_tests.update(flaky_test)
        logger.info(
            "Flaky test status changed",
            extra={"project_id": project_id, "test_name": test_name, "status": flaky_test.status},
        )
        return flaky_test

    def resolve(self, project_id, test_name):
        return self._transition("resolve_flaky_test", project_id, test_name, FlakyTest.resolve)

    def ignore(self, project_id, test_name):
        return self._transition("ignore_flaky_test", project_id, test_name, FlakyTest.ignore)

    def reactivate(self, project_id, test_name):
        return self._transition("reactivate_flaky_test", project_id, test_name, FlakyTest.reactivate)
