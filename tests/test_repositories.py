"""
SQLAlchemy repository tests (in-memory SQLite).

Covers error translation (NotFound / DuplicateKey / ConcurrentUpdate),
row ↔ domain conversion, optimistic versioning, paging and cascade delete.
"""

import pytest

from testhub.core.exceptions import (
    CannotMutateCompleted,
    ConcurrentUpdateError,
    DuplicateKeyError,
    NotFoundError,
)
from testhub.domain.flaky import FlakyTest
from testhub.models import db
from testhub.models.testing import SpecRunModel, SuiteRunModel

from factories import T0, make_run, make_spec, make_suite


def _stored_run(repositories, run_id="ci-1001", **kwargs):
    run = repositories.test_runs.create(make_run(run_id, **kwargs))
    db.session.commit()
    return run


def _stored_suite(repositories, run, *specs):
    suite = make_suite("auth", *specs)
    suite.attach_to(run.id)
    repositories.suite_runs.create(suite)
    repositories.spec_runs.create_batch(list(suite.specs))
    db.session.commit()
    return suite


# ═════════════════════════════════════════════════════════════════════════════
#  1. TEST RUNS
# ═════════════════════════════════════════════════════════════════════════════


class TestTestRunRepository:

    def test_create_assigns_id_and_version(self, repositories):
        run = _stored_run(repositories)
        assert run.id is not None
        assert run.version == 1

    def test_round_trip_keeps_fields(self, repositories):
        created = _stored_run(repositories, metadata={"ci": "github", "shard": 2})
        loaded = repositories.test_runs.get_by_id(created.id)
        assert loaded.run_id == "ci-1001"
        assert loaded.project_id == "web-app"
        assert loaded.commit_sha == "abc123"
        assert loaded.metadata == {"ci": "github", "shard": 2}
        assert loaded.start_time == T0
        assert loaded.status == "running"

    def test_duplicate_run_id(self, repositories):
        _stored_run(repositories)
        with pytest.raises(DuplicateKeyError, match="run_id"):
            repositories.test_runs.create(make_run("ci-1001"))

    def test_get_missing(self, repositories):
        with pytest.raises(NotFoundError):
            repositories.test_runs.get_by_id(999)
        with pytest.raises(NotFoundError):
            repositories.test_runs.get_by_run_id("nope")

    def test_update_bumps_version(self, repositories):
        run = _stored_run(repositories)
        run.complete(now=T0)
        repositories.test_runs.update(run)
        db.session.commit()
        assert run.version == 2
        assert repositories.test_runs.get_by_id(run.id).status == "passed"

    def test_stale_copy_is_rejected(self, repositories):
        run = _stored_run(repositories)
        first = repositories.test_runs.get_by_id(run.id)
        second = repositories.test_runs.get_by_id(run.id)

        first.set_metadata("writer", "first")
        repositories.test_runs.update(first)
        db.session.commit()

        second.set_metadata("writer", "second")
        with pytest.raises(ConcurrentUpdateError):
            repositories.test_runs.update(second)

    def test_counter_write_ignores_stale_version(self, repositories):
        run = _stored_run(repositories)
        stale = repositories.test_runs.get_by_id(run.id)
        run.set_metadata("writer", "completion path")
        repositories.test_runs.update(run)
        db.session.commit()

        stale.add_suite(make_suite("auth", make_spec("a"), make_spec("b", "failed")))
        repositories.test_runs.update_counters(stale)
        db.session.commit()

        loaded = repositories.test_runs.get_by_id(run.id)
        assert loaded.total_tests == 2
        assert loaded.failed_tests == 1
        assert loaded.version == 3
        assert stale.version == 3

    def test_counter_write_refused_after_completion(self, repositories):
        run = _stored_run(repositories)
        stale = repositories.test_runs.get_by_id(run.id)
        run.complete(now=T0)
        repositories.test_runs.update(run)
        db.session.commit()

        with pytest.raises(CannotMutateCompleted):
            repositories.test_runs.update_counters(stale)

    def test_flaky_analysis_claimed_once(self, repositories):
        run = _stored_run(repositories)
        assert repositories.test_runs.claim_flaky_analysis(run.id, T0) is True
        assert repositories.test_runs.claim_flaky_analysis(run.id, T0) is False
        assert repositories.test_runs.get_by_id(run.id).version == run.version

    def test_get_with_details(self, repositories):
        run = _stored_run(repositories)
        _stored_suite(repositories, run, make_spec("a"), make_spec("b", "failed"))
        loaded = repositories.test_runs.get_with_details(run.id)
        assert len(loaded.suites) == 1
        assert [s.name for s in loaded.suites[0].specs] == ["a", "b"]

    def test_latest_by_project_newest_first(self, repositories):
        for i in range(3):
            _stored_run(repositories, f"ci-{i}")
        _stored_run(repositories, "other", project_id="api")
        runs = repositories.test_runs.get_latest_by_project_id("web-app", limit=2)
        assert [r.run_id for r in runs] == ["ci-2", "ci-1"]
        assert repositories.test_runs.count_by_project_id("web-app") == 3
        assert len(repositories.test_runs.get_recent()) == 4

    def test_offset_pages(self, repositories):
        for i in range(5):
            _stored_run(repositories, f"ci-{i}")
        page = repositories.test_runs.get_latest_by_project_id("web-app", limit=2, offset=2)
        assert [r.run_id for r in page] == ["ci-2", "ci-1"]
        assert [r.run_id for r in repositories.test_runs.get_recent(limit=2, offset=4)] == ["ci-0"]
        assert repositories.test_runs.count() == 5

    def test_delete_cascades(self, repositories):
        run = _stored_run(repositories)
        _stored_suite(repositories, run, make_spec("a"), make_spec("b"))
        repositories.test_runs.delete(run.id)
        db.session.commit()
        assert SuiteRunModel.query.count() == 0
        assert SpecRunModel.query.count() == 0

    def test_empty_summary(self, repositories):
        summary = repositories.test_runs.get_test_run_summary("nobody")
        assert summary.total_runs == 0
        assert summary.success_rate == 0.0
        assert summary.average_run_time_ms == 0.0


# ═════════════════════════════════════════════════════════════════════════════
#  2. SUITE / SPEC RUNS
# ═════════════════════════════════════════════════════════════════════════════


class TestSuiteAndSpecRepositories:

    def test_suites_ordered_by_id(self, repositories):
        run = _stored_run(repositories)
        for name in ("b", "a", "c"):
            suite = make_suite(name)
            suite.attach_to(run.id)
            repositories.suite_runs.create(suite)
        names = [s.name for s in repositories.suite_runs.find_by_test_run_id(run.id)]
        assert names == ["b", "a", "c"]

    def test_spec_update_persists_flags(self, repositories):
        run = _stored_run(repositories)
        suite = _stored_suite(repositories, run, make_spec("a"))
        spec = suite.specs[0]
        spec.mark_flaky()
        repositories.spec_runs.update(spec)
        assert repositories.spec_runs.get_by_id(spec.id).is_flaky is True

    def test_history_filters_commit_and_run(self, repositories):
        run1 = _stored_run(repositories, "ci-1", commit_sha="abc")
        run2 = _stored_run(repositories, "ci-2", commit_sha="abc")
        run3 = _stored_run(repositories, "ci-3", commit_sha="def")
        for run in (run1, run2, run3):
            _stored_suite(repositories, run, make_spec("login"))

        history = repositories.spec_runs.find_history(
            "web-app", "login", commit_sha="abc", exclude_test_run_id=run2.id,
        )
        assert len(history) == 1
        assert len(repositories.spec_runs.find_history("web-app", "login")) == 3
        assert repositories.spec_runs.find_history("api", "login") == []

    def test_missing_suite(self, repositories):
        with pytest.raises(NotFoundError):
            repositories.suite_runs.get_by_id(42)


# ═════════════════════════════════════════════════════════════════════════════
#  3. FLAKY TESTS
# ═════════════════════════════════════════════════════════════════════════════


class TestFlakyTestRepository:

    def _flaky(self, name, flaky, total):
        ft = FlakyTest("web-app", name, "suite", now=T0)
        for i in range(total):
            ft.record_execution(i < flaky, now=T0)
        return ft

    def test_find_missing_returns_none(self, repositories):
        assert repositories.flaky_tests.find_by_test_name("web-app", "nope") is None

    def test_duplicate_project_test(self, repositories):
        repositories.flaky_tests.save(self._flaky("login", 1, 1))
        db.session.commit()
        with pytest.raises(DuplicateKeyError):
            repositories.flaky_tests.save(self._flaky("login", 1, 1))

    def test_duplicate_keeps_earlier_writes(self, repositories):
        repositories.flaky_tests.save(self._flaky("login", 1, 1))
        db.session.commit()

        run = repositories.test_runs.create(make_run("ci-7"))
        with pytest.raises(DuplicateKeyError):
            repositories.flaky_tests.save(self._flaky("login", 1, 1))
        db.session.commit()

        assert repositories.test_runs.get_by_run_id("ci-7").id == run.id
        assert len(repositories.flaky_tests.find_by_project("web-app")) == 1

    def test_ordered_by_flake_rate(self, repositories):
        for name, flaky, total in (("a", 1, 4), ("b", 3, 4), ("c", 2, 4)):
            repositories.flaky_tests.save(self._flaky(name, flaky, total))
        names = [ft.test_name for ft in repositories.flaky_tests.find_by_project("web-app")]
        assert names == ["b", "c", "a"]

    def test_status_filter_and_update(self, repositories):
        ft = repositories.flaky_tests.save(self._flaky("a", 1, 2))
        ft.ignore()
        repositories.flaky_tests.update(ft)
        assert repositories.flaky_tests.find_by_project("web-app", status="active") == []
        loaded = repositories.flaky_tests.find_by_project("web-app", status="ignored")
        assert [f.test_name for f in loaded] == ["a"]
        assert loaded[0].flake_rate == 50.0
