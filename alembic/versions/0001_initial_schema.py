"""Initial schema - accounts, workspaces, tasks, workers and schedules.

Revision ID: 0001
Revises:
Create Date: 2026-10-18

"""
from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    # Accounts table
    op.create_table(
        "accounts",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("type", sa.String(), server_default="user"),
        sa.Column("auth_type", sa.String(), server_default="api"),
        sa.Column("api_key_hash", sa.String(), nullable=True, unique=True),
        sa.Column("max_concurrent_workers", sa.Integer(), server_default="3"),
        sa.Column("total_cost", sa.Numeric(10, 6), server_default="0"),
        sa.Column("max_cost_per_day", sa.Numeric(10, 6), nullable=True),
        sa.Column("active_sessions", sa.Integer(), server_default="0"),
        sa.Column("max_concurrent_sessions", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # Workspaces table
    op.create_table(
        "workspaces",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("access_mode", sa.String(), server_default="open"),
        sa.Column("git_config", postgresql.JSONB(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # Account <-> restricted workspace grants
    op.create_table(
        "account_workspaces",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("account_id", sa.String(36), sa.ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False),
        sa.Column("workspace_id", sa.String(36), sa.ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False),
        sa.Column("can_claim", sa.Boolean(), server_default="true"),
        sa.UniqueConstraint("account_id", "workspace_id"),
    )

    # Tasks table
    op.create_table(
        "tasks",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("workspace_id", sa.String(36), sa.ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("status", sa.String(), server_default="pending"),
        sa.Column("priority", sa.Integer(), server_default="0"),
        sa.Column("mode", sa.String(), server_default="execution"),
        sa.Column("required_capabilities", postgresql.JSONB(), server_default="[]"),
        sa.Column("runner_preference", sa.String(), server_default="any"),
        sa.Column("claimed_by", sa.String(36), nullable=True),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("external_id", sa.String(), nullable=True),
        sa.Column("creation_source", sa.String(), server_default="api"),
        sa.Column("context", postgresql.JSONB(), server_default="{}"),
        sa.Column("result", postgresql.JSONB(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("idx_tasks_workspace_external_id", "tasks", ["workspace_id", "external_id"])
    op.create_index("idx_tasks_claimable", "tasks", ["workspace_id", "status", "priority"])

    # Workers table
    op.create_table(
        "workers",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "task_id", sa.String(36), sa.ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False, unique=True
        ),
        sa.Column("workspace_id", sa.String(36), nullable=False),
        sa.Column("account_id", sa.String(36), sa.ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("runner", sa.String(), nullable=False),
        sa.Column("status", sa.String(), server_default="idle"),
        sa.Column("session_id", sa.String(), nullable=True),
        sa.Column("branch", sa.String(), nullable=False),
        sa.Column("milestones", postgresql.JSONB(), server_default="[]"),
        sa.Column("tool_calls", postgresql.JSONB(), server_default="[]"),
        sa.Column("messages", postgresql.JSONB(), server_default="[]"),
        sa.Column("current_action", sa.String(), nullable=True),
        sa.Column("waiting_for", postgresql.JSONB(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("idx_workers_account_status", "workers", ["account_id", "status"])

    # Task schedules table
    op.create_table(
        "task_schedules",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("workspace_id", sa.String(36), sa.ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("cron_expression", sa.String(), nullable=False),
        sa.Column("timezone", sa.String(), server_default="UTC"),
        sa.Column("enabled", sa.Boolean(), server_default="true"),
        sa.Column("next_run_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_run_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("total_runs", sa.Integer(), server_default="0"),
        sa.Column("consecutive_failures", sa.Integer(), server_default="0"),
        sa.Column("pause_after_failures", sa.Integer(), server_default="5"),
        sa.Column("max_concurrent_from_schedule", sa.Integer(), server_default="0"),
        sa.Column("task_template", postgresql.JSONB(), server_default="{}"),
        sa.Column("last_trigger_value", sa.Text(), nullable=True),
        sa.Column("total_checks", sa.Integer(), server_default="0"),
        sa.Column("last_checked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_task_id", sa.String(36), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("idx_task_schedules_due", "task_schedules", ["enabled", "next_run_at"])


def downgrade() -> None:
    op.drop_table("task_schedules")
    op.drop_table("workers")
    op.drop_table("tasks")
    op.drop_table("account_workspaces")
    op.drop_table("workspaces")
    op.drop_table("accounts")
