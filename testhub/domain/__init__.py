"""Domain entities of the test-execution aggregate and flaky-test tracking."""

from testhub.domain.flaky import FlakyTest
from testhub.domain.test_run import SpecRun, SuiteRun, TestRun

__all__ = ["FlakyTest", "SpecRun", "SuiteRun", "TestRun"]
