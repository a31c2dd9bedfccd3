"""
Repository contracts for the test-execution aggregate and flaky tracking.

Services depend on these abstract classes only.  Implementations must:
  - raise ``NotFoundError`` from ``get_*`` lookups when the entity is absent
    (``find_*`` lookups return None / empty lists instead)
  - raise ``DuplicateKeyError`` on unique-key violations, never a driver error
  - wrap any other store failure in ``PersistenceError`` naming the operation
  - assign surrogate ids onto the domain entity on create
  - never commit: the calling service owns the unit of work
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime

from testhub.domain.flaky import FlakyTest
from testhub.domain.test_run import SpecRun, SuiteRun, TestRun


@dataclass(frozen=True)
class TestRunSummary:
    """Per-project run statistics for dashboards."""

    total_runs: int = 0
    passed_runs: int = 0
    failed_runs: int = 0
    average_run_time_ms: float = 0.0
    success_rate: float = 0.0

    def to_dict(self) -> dict:
        return {
            "total_runs": self.total_runs,
            "passed_runs": self.passed_runs,
            "failed_runs": self.failed_runs,
            "average_run_time_ms": round(self.average_run_time_ms, 1),
            "success_rate": round(self.success_rate, 4),
        }


class TestRunRepository(ABC):

    @abstractmethod
    def create(self, test_run: TestRun) -> TestRun:
        """Insert a new run. Raises DuplicateKeyError when ``run_id`` exists."""

    @abstractmethod
    def update(self, test_run: TestRun) -> TestRun:
        """Persist status/counters. Raises ConcurrentUpdateError on a stale version."""

    @abstractmethod
    def update_counters(self, test_run: TestRun) -> TestRun:
        """Write recomputed counters of a running run without a version check.

        Bumps the version so a racing completion notices.  Raises
        CannotMutateCompleted once the stored run has left ``running``.
        """

    @abstractmethod
    def claim_flaky_analysis(self, test_run_id: int, now: datetime) -> bool:
        """Mark the run as analyzed; False when it already was."""

    @abstractmethod
    def get_by_id(self, test_run_id: int) -> TestRun: ...

    @abstractmethod
    def get_by_run_id(self, run_id: str) -> TestRun: ...

    @abstractmethod
    def get_with_details(self, test_run_id: int) -> TestRun:
        """Load the run with its suite runs and their spec runs."""

    @abstractmethod
    def get_latest_by_project_id(
        self, project_id: str, limit: int = 0, offset: int = 0,
    ) -> list[TestRun]: ...

    @abstractmethod
    def get_test_run_summary(self, project_id: str) -> TestRunSummary: ...

    @abstractmethod
    def delete(self, test_run_id: int) -> None: ...

    @abstractmethod
    def count_by_project_id(self, project_id: str) -> int: ...

    @abstractmethod
    def count(self) -> int: ...

    @abstractmethod
    def get_recent(self, limit: int = 0, offset: int = 0) -> list[TestRun]: ...


class SuiteRunRepository(ABC):

    @abstractmethod
    def create(self, suite_run: SuiteRun) -> SuiteRun: ...

    @abstractmethod
    def create_batch(self, suite_runs: list[SuiteRun]) -> list[SuiteRun]: ...

    @abstractmethod
    def update(self, suite_run: SuiteRun) -> SuiteRun: ...

    @abstractmethod
    def get_by_id(self, suite_run_id: int) -> SuiteRun: ...

    @abstractmethod
    def find_by_test_run_id(self, test_run_id: int) -> list[SuiteRun]: ...


class SpecRunRepository(ABC):

    @abstractmethod
    def create(self, spec_run: SpecRun) -> SpecRun: ...

    @abstractmethod
    def create_batch(self, spec_runs: list[SpecRun]) -> list[SpecRun]: ...

    @abstractmethod
    def update(self, spec_run: SpecRun) -> SpecRun: ...

    @abstractmethod
    def get_by_id(self, spec_run_id: int) -> SpecRun: ...

    @abstractmethod
    def find_by_suite_run_id(self, suite_run_id: int) -> list[SpecRun]: ...

    @abstractmethod
    def find_history(
        self,
        project_id: str,
        name: str,
        *,
        commit_sha: str | None = None,
        exclude_test_run_id: int | None = None,
        limit: int = 50,
    ) -> list[SpecRun]:
        """Most recent executions of ``name`` across the project's runs."""


class FlakyTestRepository(ABC):

    @abstractmethod
    def save(self, flaky_test: FlakyTest) -> FlakyTest: ...

    @abstractmethod
    def find_by_project(self, project_id: str, status: str | None = None) -> list[FlakyTest]: ...

    @abstractmethod
    def find_by_test_name(self, project_id: str, test_name: str) -> FlakyTest | None: ...

    @abstractmethod
    def update(self, flaky_test: FlakyTest) -> FlakyTest: ...
