"""Create orchestration tables for schedules, jobs, execution logs, action policies and velocity cache.

Revision ID: 0001_orchestration_tables
Revises:
Create Date: 2026-10-19 00:00:00.000000
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

revision = "0001_orchestration_tables"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Create orchestration tables, constraints and indexes."""
    schedule_type_enum = sa.Enum(
        "hourly",
        "every_4h",
        "every_8h",
        "daily",
        "weekly",
        "custom",
        name="orchestration_schedule_type",
        native_enum=False,
    )
    job_type_enum = sa.Enum(
        "batch",
        "single_agent",
        "github_analysis",
        "task_assignment",
        "retry",
        "manual",
        name="orchestration_job_type",
        native_enum=False,
    )
    trigger_source_enum = sa.Enum(
        "cron",
        "webhook",
        "manual",
        "api",
        "system",
        "retry_scheduler",
        name="orchestration_trigger_source",
        native_enum=False,
    )
    job_status_enum = sa.Enum(
        "pending",
        "queued",
        "running",
        "completed",
        "failed",
        "cancelled",
        "timeout",
        name="orchestration_job_status",
        native_enum=False,
    )
    execution_phase_enum = sa.Enum(
        "analyze",
        "decide",
        "execute",
        "verify",
        "complete",
        name="orchestration_execution_phase",
        native_enum=False,
    )
    execution_status_enum = sa.Enum(
        "pending",
        "running",
        "completed",
        "failed",
        "skipped",
        "do_nothing",
        name="orchestration_execution_status",
        native_enum=False,
    )
    risk_level_enum = sa.Enum(
        "low", "medium", "high", "critical", name="action_risk_level", native_enum=False
    )
    action_category_enum = sa.Enum(
        "github",
        "content",
        "analysis",
        "notification",
        "task",
        "communication",
        name="action_category",
        native_enum=False,
    )
    period_type_enum = sa.Enum(
        "hourly", "daily", "weekly", "monthly", name="velocity_period_type", native_enum=False
    )
    velocity_trend_enum = sa.Enum(
        "increasing", "stable", "decreasing", name="velocity_trend", native_enum=False
    )

    op.create_table(
        "agent_orchestration_schedules",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("project_id", sa.String(length=64), nullable=False),
        sa.Column("agent_slug", sa.String(length=50), nullable=False),
        sa.Column("is_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("schedule_type", schedule_type_enum, nullable=False, server_default="daily"),
        sa.Column("cron_expression", sa.String(length=100), nullable=True),
        sa.Column("timezone", sa.String(length=50), nullable=False, server_default="UTC"),
        sa.Column("run_after_time", sa.Time(), nullable=True),
        sa.Column("run_before_time", sa.Time(), nullable=True),
        sa.Column("run_on_days", sa.JSON(), nullable=False),
        sa.Column("min_interval_minutes", sa.Integer(), nullable=False, server_default="60"),
        sa.Column("max_runs_per_day", sa.Integer(), nullable=False, server_default="24"),
        sa.Column(
            "cooldown_after_error_minutes", sa.Integer(), nullable=False, server_default="30"
        ),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="5"),
        sa.Column("allow_concurrent", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("last_run_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_success_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_failure_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("consecutive_failures", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_runs", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_successes", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("project_id", "agent_slug", name="uq_schedule_project_agent"),
        sa.CheckConstraint("priority BETWEEN 1 AND 10", name="ck_schedule_priority"),
    )
    op.create_index(
        "ix_schedule_enabled",
        "agent_orchestration_schedules",
        ["is_enabled", "project_id"],
    )

    op.create_table(
        "orchestration_jobs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("project_id", sa.String(length=64), nullable=True),
        sa.Column("job_type", job_type_enum, nullable=False),
        sa.Column("triggered_by", trigger_source_enum, nullable=False),
        sa.Column("triggered_by_user_id", sa.String(length=64), nullable=True),
        sa.Column("status", job_status_enum, nullable=False, server_default="pending"),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="5"),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("timeout_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("agents_executed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("agents_succeeded", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("agents_failed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("tasks_created", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("tasks_assigned", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("error_code", sa.String(length=50), nullable=True),
        sa.Column("attempt_number", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="3"),
        sa.Column(
            "parent_job_id",
            sa.Integer(),
            sa.ForeignKey("orchestration_jobs.id", name="fk_job_parent"),
            nullable=True,
        ),
        sa.Column("input_params", sa.JSON(), nullable=False),
        sa.Column("output_summary", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_job_status_scheduled", "orchestration_jobs", ["status", "scheduled_at"])
    op.create_index("ix_job_status_timeout", "orchestration_jobs", ["status", "timeout_at"])
    op.create_index("ix_job_project_created", "orchestration_jobs", ["project_id", "created_at"])

    op.create_table(
        "orchestration_job_targets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "job_id",
            sa.Integer(),
            sa.ForeignKey("orchestration_jobs.id", name="fk_job_target_job"),
            nullable=False,
        ),
        sa.Column(
            "schedule_id",
            sa.Integer(),
            sa.ForeignKey("agent_orchestration_schedules.id", name="fk_job_target_schedule"),
            nullable=True,
        ),
        sa.Column("agent_slug", sa.String(length=50), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        sa.UniqueConstraint("job_id", "agent_slug", name="uq_job_target_agent"),
    )
    op.create_index("ix_job_target_schedule", "orchestration_job_targets", ["schedule_id"])

    op.create_table(
        "orchestration_schedule_claims",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "schedule_id",
            sa.Integer(),
            sa.ForeignKey("agent_orchestration_schedules.id", name="fk_schedule_claim_schedule"),
            nullable=False,
            unique=True,
        ),
        sa.Column(
            "job_id",
            sa.Integer(),
            sa.ForeignKey("orchestration_jobs.id", name="fk_schedule_claim_job"),
            nullable=False,
        ),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "orchestration_execution_logs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "job_id",
            sa.Integer(),
            sa.ForeignKey("orchestration_jobs.id", name="fk_execution_log_job"),
            nullable=False,
        ),
        sa.Column("project_id", sa.String(length=64), nullable=False),
        sa.Column(
            "schedule_id",
            sa.Integer(),
            sa.ForeignKey("agent_orchestration_schedules.id", name="fk_execution_log_schedule"),
            nullable=True,
        ),
        sa.Column("agent_slug", sa.String(length=50), nullable=False),
        sa.Column("phase", execution_phase_enum, nullable=False, server_default="analyze"),
        sa.Column("status", execution_status_enum, nullable=False, server_default="pending"),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("should_act", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("do_nothing_reason", sa.Text(), nullable=True),
        sa.Column("confidence_score", sa.Float(), nullable=True),
        sa.Column("context_summary", sa.JSON(), nullable=True),
        sa.Column("github_data_used", sa.JSON(), nullable=True),
        sa.Column("actions_proposed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("actions_executed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("actions_approved", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("actions_rejected", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("output_data", sa.JSON(), nullable=False),
        sa.Column("suggestions_created", sa.JSON(), nullable=False),
        sa.Column("tasks_created", sa.JSON(), nullable=False),
        sa.Column("tasks_assigned", sa.JSON(), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("error_code", sa.String(length=50), nullable=True),
        sa.Column("tokens_used", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("estimated_cost_cents", sa.Float(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "confidence_score IS NULL OR (confidence_score >= 0 AND confidence_score <= 1)",
            name="ck_execution_confidence",
        ),
    )
    op.create_index("ix_execution_log_job", "orchestration_execution_logs", ["job_id"])
    op.create_index(
        "ix_execution_log_project_agent",
        "orchestration_execution_logs",
        ["project_id", "agent_slug"],
    )

    op.create_table(
        "autonomous_action_config",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("project_id", sa.String(length=64), nullable=False),
        sa.Column("action_key", sa.String(length=100), nullable=False),
        sa.Column("action_name", sa.String(length=255), nullable=False),
        sa.Column("action_category", action_category_enum, nullable=False),
        sa.Column("agent_slug", sa.String(length=50), nullable=True),
        sa.Column("is_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("requires_approval", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column(
            "auto_approve_low_risk", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("risk_level", risk_level_enum, nullable=False, server_default="medium"),
        sa.Column("max_per_day", sa.Integer(), nullable=True),
        sa.Column("max_per_hour", sa.Integer(), nullable=True),
        sa.Column("cooldown_minutes", sa.Integer(), nullable=False, server_default="15"),
        sa.Column("times_used_today", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("times_used_this_hour", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("times_used_total", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_reset_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("hour_window_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint(
            "project_id", "action_key", "agent_slug", name="uq_action_config_key"
        ),
    )
    op.create_index(
        "ix_action_config_lookup", "autonomous_action_config", ["project_id", "action_key"]
    )
    op.create_index(
        "uq_action_config_agnostic_key",
        "autonomous_action_config",
        ["project_id", "action_key"],
        unique=True,
        postgresql_where=sa.text("agent_slug IS NULL"),
        sqlite_where=sa.text("agent_slug IS NULL"),
    )

    op.create_table(
        "github_analysis_cache",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("project_id", sa.String(length=64), nullable=False),
        sa.Column("period_type", period_type_enum, nullable=False),
        sa.Column("period_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("period_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("revision", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("commits_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("commits_by_author", sa.JSON(), nullable=False),
        sa.Column("files_changed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("lines_added", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("lines_removed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("prs_opened", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("prs_merged", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("prs_closed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("avg_pr_merge_hours", sa.Float(), nullable=True),
        sa.Column("issues_opened", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("issues_closed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("avg_issue_resolution_hours", sa.Float(), nullable=True),
        sa.Column("issues_by_label", sa.JSON(), nullable=False),
        sa.Column("active_contributors", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("hot_spots", sa.JSON(), nullable=False),
        sa.Column("velocity_score", sa.Float(), nullable=True),
        sa.Column("velocity_trend", velocity_trend_enum, nullable=True),
        sa.Column("velocity_change_percent", sa.Float(), nullable=True),
        sa.Column("data_hash", sa.String(length=64), nullable=True),
        sa.Column("analyzed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("is_stale", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.UniqueConstraint(
            "project_id",
            "period_type",
            "period_start",
            "revision",
            name="uq_velocity_cache_revision",
        ),
    )
    op.create_index(
        "ix_velocity_cache_key",
        "github_analysis_cache",
        ["project_id", "period_type", "period_start"],
    )


def downgrade() -> None:
    """Drop orchestration tables."""
    op.drop_index("ix_velocity_cache_key", table_name="github_analysis_cache")
    op.drop_table("github_analysis_cache")
    op.drop_index("uq_action_config_agnostic_key", table_name="autonomous_action_config")
    op.drop_index("ix_action_config_lookup", table_name="autonomous_action_config")
    op.drop_table("autonomous_action_config")
    op.drop_index("ix_execution_log_project_agent", table_name="orchestration_execution_logs")
    op.drop_index("ix_execution_log_job", table_name="orchestration_execution_logs")
    op.drop_table("orchestration_execution_logs")
    op.drop_table("orchestration_schedule_claims")
    op.drop_index("ix_job_target_schedule", table_name="orchestration_job_targets")
    op.drop_table("orchestration_job_targets")
    op.drop_index("ix_job_project_created", table_name="orchestration_jobs")
    op.drop_index("ix_job_status_timeout", table_name="orchestration_jobs")
    op.drop_index("ix_job_status_scheduled", table_name="orchestration_jobs")
    op.drop_table("orchestration_jobs")
    op.drop_index("ix_schedule_enabled", table_name="agent_orchestration_schedules")
    op.drop_table("agent_orchestration_schedules")
