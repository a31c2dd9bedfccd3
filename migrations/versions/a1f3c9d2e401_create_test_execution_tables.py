"""create_test_execution_tables

Create `test_runs`, `suite_runs`, `spec_runs` and `flaky_tests`.

Revision ID: a1f3c9d2e401
Revises:
Create Date: 2026-10-17 09:30:00.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = "a1f3c9d2e401"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing_tables = set(inspector.get_table_names())

    if "test_runs" not in existing_tables:
        op.create_table(
            "test_runs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("run_id", sa.String(length=255), nullable=False),
            sa.Column("project_id", sa.String(length=255), nullable=False),
            sa.Column("branch", sa.String(length=255), nullable=True),
            sa.Column("commit_sha", sa.String(length=64), nullable=True),
            sa.Column("environment", sa.String(length=100), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="running",
                      comment="running | passed | failed | error"),
            sa.Column("start_time", sa.DateTime(timezone=True), nullable=False),
            sa.Column("end_time", sa.DateTime(timezone=True), nullable=True),
            sa.Column("duration_ms", sa.BigInteger(), nullable=True),
            sa.Column("total_tests", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("passed_tests", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("failed_tests", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("skipped_tests", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("metadata", sa.JSON(), nullable=True),
            sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("flaky_analyzed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("run_id", name="uq_test_runs_run_id"),
        )
        op.create_index("ix_test_runs_project_id", "test_runs", ["project_id"])
        op.create_index("ix_test_runs_commit_sha", "test_runs", ["commit_sha"])
        op.create_index("ix_test_runs_status", "test_runs", ["status"])
        op.create_index("ix_test_runs_created_at", "test_runs", ["created_at"])

    if "suite_runs" not in existing_tables:
        op.create_table(
            "suite_runs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("test_run_id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=500), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="running"),
            sa.Column("start_time", sa.DateTime(timezone=True), nullable=False),
            sa.Column("end_time", sa.DateTime(timezone=True), nullable=True),
            sa.Column("total_tests", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("passed_tests", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("failed_tests", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("skipped_tests", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("duration_ms", sa.BigInteger(), nullable=False, server_default="0"),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["test_run_id"], ["test_runs.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_suite_runs_test_run_id", "suite_runs", ["test_run_id"])

    if "spec_runs" not in existing_tables:
        op.create_table(
            "spec_runs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("suite_run_id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=500), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="running"),
            sa.Column("start_time", sa.DateTime(timezone=True), nullable=False),
            sa.Column("end_time", sa.DateTime(timezone=True), nullable=True),
            sa.Column("duration_ms", sa.BigInteger(), nullable=False, server_default="0"),
            sa.Column("error_message", sa.Text(), nullable=True),
            sa.Column("stack_trace", sa.Text(), nullable=True),
            sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("is_flaky", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["suite_run_id"], ["suite_runs.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_spec_runs_suite_run_id", "spec_runs", ["suite_run_id"])
        op.create_index("ix_spec_runs_name", "spec_runs", ["name"])

    if "flaky_tests" not in existing_tables:
        op.create_table(
            "flaky_tests",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("project_id", sa.String(length=255), nullable=False),
            sa.Column("test_name", sa.String(length=500), nullable=False),
            sa.Column("suite_name", sa.String(length=500), nullable=True),
            sa.Column("flake_rate", sa.Float(), nullable=False, server_default="0"),
            sa.Column("total_executions", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("flaky_executions", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("first_seen_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("last_seen_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="active",
                      comment="active | resolved | ignored"),
            sa.Column("severity", sa.String(length=20), nullable=False, server_default="low",
                      comment="low | medium | high | critical"),
            sa.Column("last_error_message", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("project_id", "test_name", name="uq_flaky_tests_project_test"),
        )
        op.create_index("ix_flaky_tests_project_id", "flaky_tests", ["project_id"])
        op.create_index("ix_flaky_tests_test_name", "flaky_tests", ["test_name"])
        op.create_index("ix_flaky_tests_suite_name", "flaky_tests", ["suite_name"])
        op.create_index("ix_flaky_tests_status", "flaky_tests", ["status"])


def downgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing_tables = set(inspector.get_table_names())

    if "flaky_tests" in existing_tables:
        op.drop_index("ix_flaky_tests_status", table_name="flaky_tests")
        op.drop_index("ix_flaky_tests_suite_name", table_name="flaky_tests")
        op.drop_index("ix_flaky_tests_test_name", table_name="flaky_tests")
        op.drop_index("ix_flaky_tests_project_id", table_name="flaky_tests")
        op.drop_table("flaky_tests")
    if "spec_runs" in existing_tables:
        op.drop_index("ix_spec_runs_name", table_name="spec_runs")
        op.drop_index("ix_spec_runs_suite_run_id", table_name="spec_runs")
        op.drop_table("spec_runs")
    if "suite_runs" in existing_tables:
        op.drop_index("ix_suite_runs_test_run_id", table_name="suite_runs")
        op.drop_table("suite_runs")
    if "test_runs" in existing_tables:
        op.drop_index("ix_test_runs_created_at", table_name="test_runs")
        op.drop_index("ix_test_runs_status", table_name="test_runs")
        op.drop_index("ix_test_runs_commit_sha", table_name="test_runs")
        op.drop_index("ix_test_runs_project_id", table_name="test_runs")
        op.drop_table("test_runs")
