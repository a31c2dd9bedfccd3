"""
Test Hub
Persisted representation of the test-execution aggregate and flaky tracking.

Models:
    - TestRunModel:    one CI invocation (run_id unique, optimistic version column)
    - SuiteRunModel:   suite executed within a run, roll-up counters
    - SpecRunModel:    single spec execution (timing, error detail, retry/flaky flags)
    - FlakyTestModel:  per (project_id, test_name) flakiness statistics

Architecture ref:
    TestRun ──1:N──▶ SuiteRun ──1:N──▶ SpecRun      (cascade delete)
    FlakyTest keyed by (project_id, test_name), not owned by any run

Durations are integer milliseconds.  These classes are storage rows only; the
state machines live in ``testhub.domain`` and the repositories convert
between the two.
"""

from datetime import datetime, timezone

from testhub.models import db


def _utcnow():
    return datetime.now(timezone.utc)


# ═════════════════════════════════════════════════════════════════════════════
# TEST RUN
# ═════════════════════════════════════════════════════════════════════════════

class TestRunModel(db.Model):
    """One CI invocation. ``run_id`` is the client-supplied identity."""

    __tablename__ = "test_runs"

    id = db.Column(db.Integer, primary_key=True)
    run_id = db.Column(
        db.String(255), nullable=False, unique=True,
        comment="Client-supplied run identity; a duplicate insert means the run already exists",
    )
    project_id = db.Column(db.String(255), nullable=False, index=True)
    branch = db.Column(db.String(255), default="")
    commit_sha = db.Column(db.String(64), default="", index=True)
    environment = db.Column(db.String(100), default="")
    status = db.Column(
        db.String(20), nullable=False, default="running", index=True,
        comment="running | passed | failed | error",
    )

    # ── Timing
    start_time = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    end_time = db.Column(db.DateTime(timezone=True), nullable=True)
    duration_ms = db.Column(db.BigInteger, nullable=True, comment="Set on completion")

    # ── Roll-up counters (sum over suite runs)
    total_tests = db.Column(db.Integer, nullable=False, default=0)
    passed_tests = db.Column(db.Integer, nullable=False, default=0)
    failed_tests = db.Column(db.Integer, nullable=False, default=0)
    skipped_tests = db.Column(db.Integer, nullable=False, default=0)

    run_metadata = db.Column("metadata", db.JSON, nullable=True, default=dict)
    version = db.Column(
        db.Integer, nullable=False,
        comment="Bumped by every write; completion checks it (version_id_col)",
    )
    flaky_analyzed_at = db.Column(
        db.DateTime(timezone=True), nullable=True,
        comment="Set once flaky detection has consumed this run",
    )

    # ── Audit
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow, index=True)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    suite_runs = db.relationship(
        "SuiteRunModel", backref="test_run",
        cascade="all, delete-orphan", passive_deletes=True,
        order_by="SuiteRunModel.id",
    )

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self):
        return f"<TestRunModel {self.id}: {self.run_id} → {self.status}>"


# ═════════════════════════════════════════════════════════════════════════════
# SUITE RUN
# ═════════════════════════════════════════════════════════════════════════════

class SuiteRunModel(db.Model):
    """Suite execution inside a test run. Counters are recomputed from spec runs."""

    __tablename__ = "suite_runs"

    id = db.Column(db.Integer, primary_key=True)
    test_run_id = db.Column(
        db.Integer, db.ForeignKey("test_runs.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    name = db.Column(db.String(500), nullable=False)
    status = db.Column(
        db.String(20), nullable=False, default="running",
        comment="running | passed | failed | error",
    )
    start_time = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    end_time = db.Column(db.DateTime(timezone=True), nullable=True)

    total_tests = db.Column(db.Integer, nullable=False, default=0)
    passed_tests = db.Column(db.Integer, nullable=False, default=0)
    failed_tests = db.Column(db.Integer, nullable=False, default=0)
    skipped_tests = db.Column(db.Integer, nullable=False, default=0)
    duration_ms = db.Column(db.BigInteger, nullable=False, default=0, comment="Sum of spec durations")

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    spec_runs = db.relationship(
        "SpecRunModel", backref="suite_run",
        cascade="all, delete-orphan", passive_deletes=True,
        order_by="SpecRunModel.id",
    )

    def __repr__(self):
        return f"<SuiteRunModel {self.id}: run#{self.test_run_id} {self.name[:30]}>"


# ═════════════════════════════════════════════════════════════════════════════
# SPEC RUN
# ═════════════════════════════════════════════════════════════════════════════

class SpecRunModel(db.Model):
    """Single spec execution."""

    __tablename__ = "spec_runs"

    id = db.Column(db.Integer, primary_key=True)
    suite_run_id = db.Column(
        db.Integer, db.ForeignKey("suite_runs.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    name = db.Column(db.String(500), nullable=False, index=True)
    status = db.Column(
        db.String(20), nullable=False, default="running",
        comment="running | passed | failed | skipped | error",
    )
    start_time = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    end_time = db.Column(db.DateTime(timezone=True), nullable=True)
    duration_ms = db.Column(db.BigInteger, nullable=False, default=0)
    error_message = db.Column(db.Text, default="")
    stack_trace = db.Column(db.Text, default="")
    retry_count = db.Column(db.Integer, nullable=False, default=0)
    is_flaky = db.Column(db.Boolean, nullable=False, default=False)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    def __repr__(self):
        return f"<SpecRunModel {self.id}: suite#{self.suite_run_id} {self.name[:30]} → {self.status}>"


# ═════════════════════════════════════════════════════════════════════════════
# FLAKY TEST
# ═════════════════════════════════════════════════════════════════════════════

class FlakyTestModel(db.Model):
    """Flakiness statistics for one test within a project."""

    __tablename__ = "flaky_tests"
    __table_args__ = (
        db.UniqueConstraint("project_id", "test_name", name="uq_flaky_tests_project_test"),
    )

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.String(255), nullable=False, index=True)
    test_name = db.Column(db.String(500), nullable=False, index=True)
    suite_name = db.Column(db.String(500), default="", index=True)
    flake_rate = db.Column(db.Float, nullable=False, default=0.0, comment="0–100")
    total_executions = db.Column(db.Integer, nullable=False, default=0)
    flaky_executions = db.Column(db.Integer, nullable=False, default=0)
    first_seen_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    last_seen_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    status = db.Column(
        db.String(20), nullable=False, default="active", index=True,
        comment="active | resolved | ignored",
    )
    severity = db.Column(
        db.String(20), nullable=False, default="low",
        comment="low | medium | high | critical",
    )
    last_error_message = db.Column(db.Text, default="")

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    def __repr__(self):
        return f"<FlakyTestModel {self.id}: {self.project_id}/{self.test_name[:30]} {self.severity}>"
