"""
FlakyDetectionService tests: judgement over completed runs, scoring and triage.

Scenario used throughout: the same spec executed in several runs of one
project on the same commit.  Opposite outcomes on one commit (or a pass that
needed retries) count as a flaky execution.
"""

import pytest

from testhub.core.exceptions import (
    DuplicateKeyError,
    InvalidStateTransition,
    InvalidTransition,
    NotFoundError,
    ValidationError,
)
from testhub.models.testing import FlakyTestModel
from testhub.repositories.sqlalchemy_repository import SqlFlakyTestRepository
from testhub.services.aggregation_service import TestRunAggregationService
from testhub.services.flaky_detection_service import FlakyDetectionService

from factories import make_run, make_spec, make_suite


def _ingest(service, run_id, status, commit_sha="abc123", retries=0, name="checkout works"):
    run, _ = service.create_test_run_with_suites(
        make_run(run_id, commit_sha=commit_sha),
        [make_suite("cart", make_spec(name, status, retries=retries, error="timeout"))],
        complete=True,
    )
    return run


# ═════════════════════════════════════════════════════════════════════════════
#  1. JUDGEMENT ON RUN COMPLETION
# ═════════════════════════════════════════════════════════════════════════════


class TestRunCompletionDetection:

    def test_first_execution_is_not_judged(self, service, detector):
        _ingest(service, "ci-1", "passed")
        assert detector.list_flaky_tests("web-app") == []

    def test_opposite_outcome_on_same_commit(self, service, detector):
        _ingest(service, "ci-1", "passed")
        _ingest(service, "ci-2", "failed")

        ft = detector.get_flaky_test("web-app", "checkout works")
        assert ft.total_executions == 1
        assert ft.flaky_executions == 1
        assert ft.flake_rate == 100.0
        assert ft.severity == "critical"
        assert ft.suite_name == "cart"
        assert ft.last_error_message == "timeout"

    def test_flaky_spec_is_flagged(self, service):
        _ingest(service, "ci-1", "passed")
        run = _ingest(service, "ci-2", "failed")
        spec = service.get_test_run_with_details(run.id).suites[0].specs[0]
        assert spec.is_flaky is True

    def test_repeat_flake_updates_same_record(self, service, detector):
        _ingest(service, "ci-1", "passed")
        _ingest(service, "ci-2", "failed")
        _ingest(service, "ci-3", "passed")

        ft = detector.get_flaky_test("web-app", "checkout works")
        assert ft.total_executions == 2
        assert ft.flaky_executions == 2
        assert FlakyTestModel.query.count() == 1

    def test_consistent_outcome_lowers_rate(self, service, detector):
        _ingest(service, "ci-1", "passed")
        _ingest(service, "ci-2", "failed")
        _ingest(service, "ci-3", "failed", commit_sha="def456")
        _ingest(service, "ci-4", "failed", commit_sha="def456")

        ft = detector.get_flaky_test("web-app", "checkout works")
        assert ft.total_executions == 2
        assert ft.flaky_executions == 1
        assert ft.flake_rate == 50.0

    def test_other_commit_is_not_compared(self, service, detector):
        _ingest(service, "ci-1", "passed", commit_sha="abc")
        _ingest(service, "ci-2", "failed", commit_sha="def")
        assert detector.list_flaky_tests("web-app") == []

    def test_pass_after_retry_is_flaky(self, service, detector):
        _ingest(service, "ci-1", "passed", retries=2)
        ft = detector.get_flaky_test("web-app", "checkout works")
        assert ft.flaky_executions == 1

    def test_skipped_specs_are_ignored(self, service, detector):
        _ingest(service, "ci-1", "passed")
        _ingest(service, "ci-2", "skipped")
        assert detector.list_flaky_tests("web-app") == []

    def test_analysis_result(self, repositories, detector):
        svc = TestRunAggregationService(
            repositories.test_runs, repositories.suite_runs, repositories.spec_runs,
        )
        _ingest(svc, "ci-1", "passed")
        run = _ingest(svc, "ci-2", "failed")

        analysis = detector.analyze_test_run(run.id)
        assert analysis.judged == 1
        assert analysis.new_flaky == ["checkout works"]
        assert analysis.to_dict()["still_flaky"] == []
        assert analysis.already_analyzed is False

    def test_reanalysis_does_not_recount(self, service, detector):
        _ingest(service, "ci-1", "passed")
        run = _ingest(service, "ci-2", "failed")

        for _ in range(2):
            again = detector.analyze_test_run(run.id)
            assert again.already_analyzed is True
            assert again.judged == 0

        ft = detector.get_flaky_test("web-app", "checkout works")
        assert ft.total_executions == 1
        assert ft.flaky_executions == 1

    def test_run_completed_without_detection_is_analyzed_once(self, repositories, detector):
        svc = TestRunAggregationService(
            repositories.test_runs, repositories.suite_runs, repositories.spec_runs,
        )
        run = _ingest(svc, "ci-1", "passed", retries=1)

        assert detector.analyze_test_run(run.id).new_flaky == ["checkout works"]
        assert detector.analyze_test_run(run.id).already_analyzed is True
        assert detector.get_flaky_test("web-app", "checkout works").total_executions == 1

    def test_analyze_running_run_rejected(self, service, detector):
        run, _ = service.create_test_run(make_run())
        with pytest.raises(InvalidStateTransition):
            detector.analyze_test_run(run.id)

    def test_detection_failure_rolls_back_completion(self, repositories):
        class BrokenDetector:
            def process_completed_run(self, run):
                raise RuntimeError("history store unavailable")

        svc = TestRunAggregationService(
            repositories.test_runs, repositories.suite_runs, repositories.spec_runs,
            flaky_detector=BrokenDetector(),
        )
        run, _ = svc.create_test_run(make_run())
        with pytest.raises(RuntimeError):
            svc.complete_test_run(run.id)
        assert svc.get_test_run(run.id).status == "running"


class _LateFlakyTestRepository(SqlFlakyTestRepository):
    """Misses the first lookup, as if another run's insert were not yet visible."""

    def __init__(self, misses=1):
        self.misses = misses

    def find_by_test_name(self, project_id, test_name):
        if self.misses:
            self.misses -= 1
            return None
        return super().find_by_test_name(project_id, test_name)


class TestConcurrentFirstSighting:

    def test_lost_insert_race_updates_existing_record(self, service, detector, repositories):
        detector.record_execution("web-app", "checkout works", "cart", True, "earlier")
        _ingest(service, "ci-1", "passed")

        late = FlakyDetectionService(
            _LateFlakyTestRepository(), repositories.spec_runs, repositories.test_runs,
        )
        svc = TestRunAggregationService(
            repositories.test_runs, repositories.suite_runs, repositories.spec_runs,
            flaky_detector=late,
        )
        run = _ingest(svc, "ci-2", "failed")

        stored = svc.get_test_run_with_details(run.id)
        assert stored.status == "failed"
        assert stored.suites[0].status == "failed"
        assert stored.suites[0].specs[0].is_flaky is True

        ft = detector.get_flaky_test("web-app", "checkout works")
        assert ft.total_executions == 2
        assert ft.flaky_executions == 2
        assert FlakyTestModel.query.count() == 1

    def test_completion_fails_only_if_record_never_appears(self, service, detector, repositories):
        detector.record_execution("web-app", "checkout works", "cart", True)
        _ingest(service, "ci-1", "passed")

        blind = FlakyDetectionService(
            _LateFlakyTestRepository(misses=2), repositories.spec_runs, repositories.test_runs,
        )
        svc = TestRunAggregationService(
            repositories.test_runs, repositories.suite_runs, repositories.spec_runs,
            flaky_detector=blind,
        )
        with pytest.raises(DuplicateKeyError):
            _ingest(svc, "ci-2", "failed")
        with pytest.raises(NotFoundError):
            svc.get_test_run_by_run_id("ci-2")


# ═════════════════════════════════════════════════════════════════════════════
#  2. DIRECT SCORING
# ═════════════════════════════════════════════════════════════════════════════


class TestRecordExecution:

    def test_clean_execution_without_record(self, detector):
        assert detector.record_execution("web-app", "login", "auth", False) is None
        assert FlakyTestModel.query.count() == 0

    def test_first_flaky_execution_creates_record(self, detector):
        ft = detector.record_execution("web-app", "login", "auth", True, "timeout")
        assert ft.id is not None
        assert ft.flake_rate == 100.0

    def test_three_of_ten(self, detector):
        detector.record_execution("web-app", "login", "auth", True)
        detector.record_execution("web-app", "login", "auth", True)
        detector.record_execution("web-app", "login", "auth", True)
        for _ in range(7):
            ft = detector.record_execution("web-app", "login", "auth", False)
        assert ft.flake_rate == pytest.approx(30.0)
        assert ft.severity == "medium"


# ═════════════════════════════════════════════════════════════════════════════
#  3. TRIAGE
# ═════════════════════════════════════════════════════════════════════════════


class TestTriage:

    @pytest.fixture()
    def flaky(self, detector):
        return detector.record_execution("web-app", "login", "auth", True)

    def test_resolve_then_resolve(self, detector, flaky):
        assert detector.resolve("web-app", "login").status == "resolved"
        with pytest.raises(InvalidTransition):
            detector.resolve("web-app", "login")
        assert detector.get_flaky_test("web-app", "login").status == "resolved"

    def test_ignore_idempotent(self, detector, flaky):
        detector.ignore("web-app", "login")
        assert detector.ignore("web-app", "login").status == "ignored"

    def test_ignore_resolved(self, detector, flaky):
        detector.resolve("web-app", "login")
        with pytest.raises(InvalidTransition):
            detector.ignore("web-app", "login")

    def test_reactivate(self, detector, flaky):
        detector.resolve("web-app", "login")
        assert detector.reactivate("web-app", "login").status == "active"

    def test_list_by_status(self, detector, flaky):
        detector.record_execution("web-app", "logout", "auth", True)
        detector.ignore("web-app", "logout")
        assert [f.test_name for f in detector.list_flaky_tests("web-app", status="active")] == ["login"]
        assert len(detector.list_flaky_tests("web-app")) == 2

    def test_list_invalid_status(self, detector):
        with pytest.raises(ValidationError):
            detector.list_flaky_tests("web-app", status="broken")

    def test_missing(self, detector):
        with pytest.raises(NotFoundError):
            detector.resolve("web-app", "nope")
