"""Domain object builders shared by the test modules."""

from datetime import datetime, timedelta, timezone

from testhub.domain.test_run import SpecRun, SuiteRun, TestRun

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


def make_spec(name, status="passed", duration_s=1, retries=0, error=""):
    """Build a finished SpecRun that started at T0."""
    spec = SpecRun(name, start_time=T0)
    for _ in range(retries):
        spec.increment_retry()
    end = T0 + timedelta(seconds=duration_s)
    if status == "passed":
        spec.mark_passed(now=end)
    elif status == "failed":
        spec.mark_failed(error or "assertion failed", "trace", now=end)
    elif status == "skipped":
        spec.mark_skipped(now=end)
    elif status == "error":
        spec.mark_error(error or "setup crashed", now=end)
    return spec


def make_suite(name, *specs):
    suite = SuiteRun(name, start_time=T0)
    for spec in specs:
        suite.add_spec(spec)
    return suite


def make_run(run_id="ci-1001", project_id="web-app", commit_sha="abc123", **kwargs):
    return TestRun(run_id, project_id, "main", commit_sha=commit_sha, start_time=T0, **kwargs)
