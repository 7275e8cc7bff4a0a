"""Factory tasks, runs and transition ledger baseline."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "factory_tasks",
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("workflow_id", sa.String(), nullable=False),
        sa.Column("external_id", sa.String(), nullable=True),
        sa.Column("title", sa.String(), nullable=True),
        sa.Column("prompt", sa.Text(), nullable=True),
        sa.Column("context_text", sa.Text(), nullable=True),
        sa.Column("lifecycle", sa.String(), nullable=False),
        sa.Column("current_state_id", sa.String(), nullable=True),
        sa.Column("terminal_state_id", sa.String(), nullable=True),
        sa.Column("context_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("attempts_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("loop_iterations_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("waiting_since", sa.DateTime(timezone=True), nullable=True),
        sa.Column("transition_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("active_run_id", sa.String(), nullable=True),
        sa.Column("lease_owner", sa.String(), nullable=True),
        sa.Column("lease_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("lease_heartbeat_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("task_id"),
    )
    op.create_index("ix_factory_tasks_workflow_id", "factory_tasks", ["workflow_id"])
    op.create_index("ix_factory_tasks_external_id", "factory_tasks", ["external_id"])
    op.create_index("ix_factory_tasks_lifecycle", "factory_tasks", ["lifecycle"])
    op.create_index("ix_factory_tasks_lease_owner", "factory_tasks", ["lease_owner"])
    op.create_index("idx_factory_tasks_runnable", "factory_tasks", ["lifecycle", "updated_at"])

    op.create_table(
        "factory_runs",
        sa.Column("run_id", sa.String(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("ended_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["task_id"], ["factory_tasks.task_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("run_id"),
    )
    op.create_index("ix_factory_runs_status", "factory_runs", ["status"])
    op.create_index("idx_factory_runs_task_started", "factory_runs", ["task_id", "started_at"])

    op.create_table(
        "transition_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("event_id", sa.String(), nullable=False),
        sa.Column("run_id", sa.String(), nullable=False),
        sa.Column("tick_id", sa.String(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("from_state_id", sa.String(), nullable=False),
        sa.Column("to_state_id", sa.String(), nullable=False),
        sa.Column("event", sa.String(), nullable=False),
        sa.Column("reason_code", sa.String(), nullable=False),
        sa.Column("attempt", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("loop_iteration", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["run_id"], ["factory_runs.run_id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["task_id"], ["factory_tasks.task_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("event_id"),
    )
    op.create_index("idx_transition_events_task_seq", "transition_events", ["task_id", "id"])


def downgrade() -> None:
    op.drop_index("idx_transition_events_task_seq", table_name="transition_events")
    op.drop_table("transition_events")
    op.drop_index("idx_factory_runs_task_started", table_name="factory_runs")
    op.drop_index("ix_factory_runs_status", table_name="factory_runs")
    op.drop_table("factory_runs")
    op.drop_index("idx_factory_tasks_runnable", table_name="factory_tasks")
    op.drop_index("ix_factory_tasks_lease_owner", table_name="factory_tasks")
    op.drop_index("ix_factory_tasks_lifecycle", table_name="factory_tasks")
    op.drop_index("ix_factory_tasks_external_id", table_name="factory_tasks")
    op.drop_index("ix_factory_tasks_workflow_id", table_name="factory_tasks")
    op.drop_table("factory_tasks")
