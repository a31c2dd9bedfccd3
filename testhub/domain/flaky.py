"""
FlakyTest: rolling flakiness record for one (project, test name) pair.

The record does not decide whether an execution was flaky; the caller passes
that judgement to ``record_execution`` and the record tracks consequences:
counters, flake rate (0–100) and a severity bucket.

Severity (evaluated top to bottom, first match wins, strict ``>``):
    critical  flake_rate > 50 and seen within the last 24h
    high      flake_rate > 30, or flake_rate > 20 and first seen > 7 days ago
    medium    flake_rate > 10
    low       otherwise

Status lifecycle is operator-driven and independent of the numbers:
    active → resolved | ignored,   any → active (reactivate)
"""

from datetime import datetime, timedelta, timezone

from testhub.core.exceptions import EmptyIdentityError, InvalidTransition


SEVERITY_LOW = "low"
SEVERITY_MEDIUM = "medium"
SEVERITY_HIGH = "high"
SEVERITY_CRITICAL = "critical"

FLAKY_SEVERITIES = (SEVERITY_LOW, SEVERITY_MEDIUM, SEVERITY_HIGH, SEVERITY_CRITICAL)

FLAKY_STATUS_ACTIVE = "active"
FLAKY_STATUS_RESOLVED = "resolved"
FLAKY_STATUS_IGNORED = "ignored"

FLAKY_STATUSES = {FLAKY_STATUS_ACTIVE, FLAKY_STATUS_RESOLVED, FLAKY_STATUS_IGNORED}

RECENT_ACTIVITY_WINDOW = timedelta(hours=24)
AGED_RECORD_DAYS = 7


def compute_flake_rate(flaky_executions, total_executions):
    if total_executions <= 0:
        return 0.0
    return flaky_executions / total_executions * 100


def classify_severity(flake_rate, first_seen_at, last_seen_at, now):
    """Map a flake rate plus recency onto a severity bucket."""
    recent_activity = (now - last_seen_at) < RECENT_ACTIVITY_WINDOW
    days_since_first = (now - first_seen_at).total_seconds() / 86400

    if flake_rate > 50 and recent_activity:
        return SEVERITY_CRITICAL
    if flake_rate > 30 or (flake_rate > 20 and days_since_first > AGED_RECORD_DAYS):
        return SEVERITY_HIGH
    if flake_rate > 10:
        return SEVERITY_MEDIUM
    return SEVERITY_LOW


class FlakyTest:
    """Flakiness statistics and triage status of a single test."""

    def __init__(self, project_id, test_name, suite_name="", *, now=None):
        if not project_id:
            raise EmptyIdentityError("project_id")
        if not test_name:
            raise EmptyIdentityError("test_name")
        now = now or datetime.now(timezone.utc)
        self._id = None
        self._project_id = project_id
        self._test_name = test_name
        self._suite_name = suite_name or ""
        self._flake_rate = 0.0
        self._total_executions = 0
        self._flaky_executions = 0
        self._first_seen_at = now
        self._last_seen_at = now
        self._status = FLAKY_STATUS_ACTIVE
        self._severity = SEVERITY_LOW
        self._last_error_message = ""

    @classmethod
    def restore(cls, *, id, project_id, test_name, suite_name, flake_rate,
                total_executions, flaky_executions, first_seen_at, last_seen_at,
                status, severity, last_error_message):
        ft = cls(project_id, test_name, suite_name, now=first_seen_at)
        ft._id = id
        ft._flake_rate = flake_rate or 0.0
        ft._total_executions = total_executions or 0
        ft._flaky_executions = flaky_executions or 0
        ft._last_seen_at = last_seen_at
        ft._status = status or FLAKY_STATUS_ACTIVE
        ft._severity = severity or SEVERITY_LOW
        ft._last_error_message = last_error_message or ""
        return ft

    @property
    def id(self):
        return self._id

    @property
    def project_id(self):
        return self._project_id

    @property
    def test_name(self):
        return self._test_name

    @property
    def suite_name(self):
        return self._suite_name

    @property
    def flake_rate(self):
        return self._flake_rate

    @property
    def total_executions(self):
        return self._total_executions

    @property
    def flaky_executions(self):
        return self._flaky_executions

    @property
    def first_seen_at(self):
        return self._first_seen_at

    @property
    def last_seen_at(self):
        return self._last_seen_at

    @property
    def status(self):
        return self._status

    @property
    def severity(self):
        return self._severity

    @property
    def last_error_message(self):
        return self._last_error_message

    def assign_id(self, flaky_test_id):
        self._id = flaky_test_id

    def record_execution(self, is_flaky, error_message="", now=None):
        """Fold one judged execution into the statistics."""
        now = now or datetime.now(timezone.utc)
        self._total_executions += 1
        if is_flaky:
            self._flaky_executions += 1
            self._last_error_message = error_message or ""
        self._last_seen_at = now
        self._flake_rate = compute_flake_rate(self._flaky_executions, self._total_executions)
        self._severity = classify_severity(
            self._flake_rate, self._first_seen_at, self._last_seen_at, now,
        )

    def resolve(self):
        if self._status != FLAKY_STATUS_ACTIVE:
            raise InvalidTransition("FlakyTest", self._status, FLAKY_STATUS_RESOLVED)
        self._status = FLAKY_STATUS_RESOLVED

    def ignore(self):
        """Ignore an active test. Repeated calls are a no-op; resolved tests refuse."""
        if self._status == FLAKY_STATUS_RESOLVED:
            raise InvalidTransition("FlakyTest", self._status, FLAKY_STATUS_IGNORED)
        self._status = FLAKY_STATUS_IGNORED

    def reactivate(self):
        self._status = FLAKY_STATUS_ACTIVE

    def to_dict(self):
        return {
            "id": self._id,
            "project_id": self._project_id,
            "test_name": self._test_name,
            "suite_name": self._suite_name,
            "flake_rate": round(self._flake_rate, 2),
            "total_executions": self._total_executions,
            "flaky_executions": self._flaky_executions,
            "first_seen_at": self._first_seen_at.isoformat() if self._first_seen_at else None,
            "last_seen_at": self._last_seen_at.isoformat() if self._last_seen_at else None,
            "status": self._status,
            "severity": self._severity,
            "last_error_message": self._last_error_message,
        }

    def __repr__(self):
        return f"<FlakyTest {self._project_id}/{self._test_name[:30]} {self._flake_rate:.1f}% {self._severity}>"
