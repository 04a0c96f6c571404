"""Data models for the agent orchestration engine."""

from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Time,
    UniqueConstraint,
    event,
    inspect,
    text,
)
from sqlalchemy.orm import declarative_base
from sqlalchemy.types import TypeDecorator

# SQLAlchemy base
Base = declarative_base()


class UtcDateTime(TypeDecorator):
    """Timezone-aware timestamp stored and returned in UTC.

    SQLite drops tzinfo on round-trip, so naive values read back are tagged
    as UTC and every bound value is converted to UTC before it is written.
    """

    impl = DateTime
    cache_ok = True

    def __init__(self) -> None:
        super().__init__(timezone=True)

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Scheduler enums
ScheduleTypeEnum = Enum(
    "hourly",
    "every_4h",
    "every_8h",
    "daily",
    "weekly",
    "custom",
    name="orchestration_schedule_type",
    native_enum=False,
)

# Job enums
JobTypeEnum = Enum(
    "batch",
    "single_agent",
    "github_analysis",
    "task_assignment",
    "retry",
    "manual",
    name="orchestration_job_type",
    native_enum=False,
)
TriggerSourceEnum = Enum(
    "cron",
    "webhook",
    "manual",
    "api",
    "system",
    "retry_scheduler",
    name="orchestration_trigger_source",
    native_enum=False,
)
JobStatusEnum = Enum(
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

# Execution log enums
ExecutionPhaseEnum = Enum(
    "analyze",
    "decide",
    "execute",
    "verify",
    "complete",
    name="orchestration_execution_phase",
    native_enum=False,
)
ExecutionStatusEnum = Enum(
    "pending",
    "running",
    "completed",
    "failed",
    "skipped",
    "do_nothing",
    name="orchestration_execution_status",
    native_enum=False,
)

# Action policy enums
RiskLevelEnum = Enum(
    "low",
    "medium",
    "high",
    "critical",
    name="action_risk_level",
    native_enum=False,
)
ActionCategoryEnum = Enum(
    "github",
    "content",
    "analysis",
    "notification",
    "task",
    "communication",
    name="action_category",
    native_enum=False,
)

# Velocity cache enums
PeriodTypeEnum = Enum(
    "hourly",
    "daily",
    "weekly",
    "monthly",
    name="velocity_period_type",
    native_enum=False,
)
VelocityTrendEnum = Enum(
    "increasing",
    "stable",
    "decreasing",
    name="velocity_trend",
    native_enum=False,
)

JOB_ACTIVE_STATUSES = ("pending", "queued", "running")
JOB_TERMINAL_STATUSES = ("completed", "failed", "cancelled", "timeout")
JOB_RETRYABLE_STATUSES = ("failed", "timeout")
EXECUTION_TERMINAL_STATUSES = ("completed", "failed", "skipped", "do_nothing")
RISK_ORDER = {"low": 0, "medium": 1, "high": 2, "critical": 3}
ALL_DAYS = [0, 1, 2, 3, 4, 5, 6]


class Schedule(Base):
    """Run cadence and throttling policy for one agent on one project."""

    __tablename__ = "agent_orchestration_schedules"
    __table_args__ = (
        UniqueConstraint("project_id", "agent_slug", name="uq_schedule_project_agent"),
        CheckConstraint("priority BETWEEN 1 AND 10", name="ck_schedule_priority"),
        Index("ix_schedule_enabled", "is_enabled", "project_id"),
    )

    id = Column(Integer, primary_key=True)
    project_id = Column(String(64), nullable=False)
    agent_slug = Column(String(50), nullable=False)
    is_enabled = Column(Boolean, nullable=False, default=True)
    schedule_type = Column(ScheduleTypeEnum, nullable=False, default="daily")
    cron_expression = Column(String(100), nullable=True)
    timezone = Column(String(50), nullable=False, default="UTC")
    run_after_time = Column(Time, nullable=True)
    run_before_time = Column(Time, nullable=True)
    run_on_days = Column(JSON, nullable=False, default=lambda: list(ALL_DAYS))
    min_interval_minutes = Column(Integer, nullable=False, default=60)
    max_runs_per_day = Column(Integer, nullable=False, default=24)
    cooldown_after_error_minutes = Column(Integer, nullable=False, default=30)
    priority = Column(Integer, nullable=False, default=5)
    allow_concurrent = Column(Boolean, nullable=False, default=False)
    last_run_at = Column(UtcDateTime(), nullable=True)
    last_success_at = Column(UtcDateTime(), nullable=True)
    last_failure_at = Column(UtcDateTime(), nullable=True)
    consecutive_failures = Column(Integer, nullable=False, default=0)
    total_runs = Column(Integer, nullable=False, default=0)
    total_successes = Column(Integer, nullable=False, default=0)
    created_at = Column(UtcDateTime(), nullable=False, default=_utcnow)
    updated_at = Column(UtcDateTime(), nullable=False, default=_utcnow)


class Job(Base):
    """One orchestration run covering one or more agents of a project."""

    __tablename__ = "orchestration_jobs"
    __table_args__ = (
        Index("ix_job_status_scheduled", "status", "scheduled_at"),
        Index("ix_job_status_timeout", "status", "timeout_at"),
        Index("ix_job_project_created", "project_id", "created_at"),
    )

    id = Column(Integer, primary_key=True)
    project_id = Column(String(64), nullable=True)
    job_type = Column(JobTypeEnum, nullable=False)
    triggered_by = Column(TriggerSourceEnum, nullable=False)
    triggered_by_user_id = Column(String(64), nullable=True)
    status = Column(JobStatusEnum, nullable=False, default="pending")
    priority = Column(Integer, nullable=False, default=5)
    scheduled_at = Column(UtcDateTime(), nullable=True)
    started_at = Column(UtcDateTime(), nullable=True)
    completed_at = Column(UtcDateTime(), nullable=True)
    timeout_at = Column(UtcDateTime(), nullable=True)
    duration_ms = Column(Integer, nullable=True)
    agents_executed = Column(Integer, nullable=False, default=0)
    agents_succeeded = Column(Integer, nullable=False, default=0)
    agents_failed = Column(Integer, nullable=False, default=0)
    tasks_created = Column(Integer, nullable=False, default=0)
    tasks_assigned = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)
    error_code = Column(String(50), nullable=True)
    attempt_number = Column(Integer, nullable=False, default=1)
    max_attempts = Column(Integer, nullable=False, default=3)
    parent_job_id = Column(Integer, ForeignKey("orchestration_jobs.id"), nullable=True)
    input_params = Column(JSON, nullable=False, default=dict)
    output_summary = Column(JSON, nullable=True)
    created_at = Column(UtcDateTime(), nullable=False, default=_utcnow)
    updated_at = Column(UtcDateTime(), nullable=False, default=_utcnow)


class JobTarget(Base):
    """Agent in scope for a job, in execution order."""

    __tablename__ = "orchestration_job_targets"
    __table_args__ = (
        UniqueConstraint("job_id", "agent_slug", name="uq_job_target_agent"),
        Index("ix_job_target_schedule", "schedule_id"),
    )

    id = Column(Integer, primary_key=True)
    job_id = Column(Integer, ForeignKey("orchestration_jobs.id"), nullable=False)
    schedule_id = Column(
        Integer, ForeignKey("agent_orchestration_schedules.id"), nullable=True
    )
    agent_slug = Column(String(50), nullable=False)
    position = Column(Integer, nullable=False, default=0)


class ScheduleClaim(Base):
    """Exclusive run slot held by the active job of a non-concurrent schedule."""

    __tablename__ = "orchestration_schedule_claims"

    id = Column(Integer, primary_key=True)
    schedule_id = Column(
        Integer,
        ForeignKey("agent_orchestration_schedules.id"),
        nullable=False,
        unique=True,
    )
    job_id = Column(Integer, ForeignKey("orchestration_jobs.id"), nullable=False)
    claimed_at = Column(UtcDateTime(), nullable=False, default=_utcnow)


class ExecutionLog(Base):
    """Audit record of one agent run inside a job."""

    __tablename__ = "orchestration_execution_logs"
    __table_args__ = (
        CheckConstraint(
            "confidence_score IS NULL OR (confidence_score >= 0 AND confidence_score <= 1)",
            name="ck_execution_confidence",
        ),
        Index("ix_execution_log_job", "job_id"),
        Index("ix_execution_log_project_agent", "project_id", "agent_slug"),
    )

    id = Column(Integer, primary_key=True)
    job_id = Column(Integer, ForeignKey("orchestration_jobs.id"), nullable=False)
    project_id = Column(String(64), nullable=False)
    schedule_id = Column(
        Integer, ForeignKey("agent_orchestration_schedules.id"), nullable=True
    )
    agent_slug = Column(String(50), nullable=False)
    phase = Column(ExecutionPhaseEnum, nullable=False, default="analyze")
    status = Column(ExecutionStatusEnum, nullable=False, default="pending")
    started_at = Column(UtcDateTime(), nullable=True)
    completed_at = Column(UtcDateTime(), nullable=True)
    duration_ms = Column(Integer, nullable=True)
    should_act = Column(Boolean, nullable=False, default=True)
    do_nothing_reason = Column(Text, nullable=True)
    confidence_score = Column(Float, nullable=True)
    context_summary = Column(JSON, nullable=True)
    github_data_used = Column(JSON, nullable=True)
    actions_proposed = Column(Integer, nullable=False, default=0)
    actions_executed = Column(Integer, nullable=False, default=0)
    actions_approved = Column(Integer, nullable=False, default=0)
    actions_rejected = Column(Integer, nullable=False, default=0)
    output_data = Column(JSON, nullable=False, default=dict)
    suggestions_created = Column(JSON, nullable=False, default=list)
    tasks_created = Column(JSON, nullable=False, default=list)
    tasks_assigned = Column(JSON, nullable=False, default=list)
    error_message = Column(Text, nullable=True)
    error_code = Column(String(50), nullable=True)
    tokens_used = Column(Integer, nullable=False, default=0)
    estimated_cost_cents = Column(Float, nullable=False, default=0.0)
    created_at = Column(UtcDateTime(), nullable=False, default=_utcnow)


@event.listens_for(ExecutionLog, "before_update")
def _reject_sealed_execution_log_update(_mapper, _connection, target: ExecutionLog) -> None:
    """Refuse writes to an execution log that already completed."""
    history = inspect(target).attrs.completed_at.history
    previous = list(history.deleted) or list(history.unchanged)
    if previous and previous[0] is not None:
        raise ValueError(f"execution log {target.id} is completed and cannot be modified.")


class ActionConfig(Base):
    """Per-project policy and live usage counters for one autonomous action."""

    __tablename__ = "autonomous_action_config"
    __table_args__ = (
        UniqueConstraint(
            "project_id", "action_key", "agent_slug", name="uq_action_config_key"
        ),
        Index(
            "uq_action_config_agnostic_key",
            "project_id",
            "action_key",
            unique=True,
            postgresql_where=text("agent_slug IS NULL"),
            sqlite_where=text("agent_slug IS NULL"),
        ),
        Index("ix_action_config_lookup", "project_id", "action_key"),
    )

    id = Column(Integer, primary_key=True)
    project_id = Column(String(64), nullable=False)
    action_key = Column(String(100), nullable=False)
    action_name = Column(String(255), nullable=False)
    action_category = Column(ActionCategoryEnum, nullable=False)
    agent_slug = Column(String(50), nullable=True)
    is_enabled = Column(Boolean, nullable=False, default=False)
    requires_approval = Column(Boolean, nullable=False, default=True)
    auto_approve_low_risk = Column(Boolean, nullable=False, default=False)
    risk_level = Column(RiskLevelEnum, nullable=False, default="medium")
    max_per_day = Column(Integer, nullable=True)
    max_per_hour = Column(Integer, nullable=True)
    cooldown_minutes = Column(Integer, nullable=False, default=15)
    times_used_today = Column(Integer, nullable=False, default=0)
    times_used_this_hour = Column(Integer, nullable=False, default=0)
    times_used_total = Column(Integer, nullable=False, default=0)
    last_used_at = Column(UtcDateTime(), nullable=True)
    last_reset_at = Column(UtcDateTime(), nullable=True)
    hour_window_start = Column(UtcDateTime(), nullable=True)
    version = Column(Integer, nullable=False, default=0)
    created_at = Column(UtcDateTime(), nullable=False, default=_utcnow)
    updated_at = Column(UtcDateTime(), nullable=False, default=_utcnow)


class VelocityCacheEntry(Base):
    """Summarized repository activity for one project and period."""

    __tablename__ = "github_analysis_cache"
    __table_args__ = (
        UniqueConstraint(
            "project_id",
            "period_type",
            "period_start",
            "revision",
            name="uq_velocity_cache_revision",
        ),
        Index("ix_velocity_cache_key", "project_id", "period_type", "period_start"),
    )

    id = Column(Integer, primary_key=True)
    project_id = Column(String(64), nullable=False)
    period_type = Column(PeriodTypeEnum, nullable=False)
    period_start = Column(UtcDateTime(), nullable=False)
    period_end = Column(UtcDateTime(), nullable=False)
    revision = Column(Integer, nullable=False, default=1)
    commits_count = Column(Integer, nullable=False, default=0)
    commits_by_author = Column(JSON, nullable=False, default=dict)
    files_changed = Column(Integer, nullable=False, default=0)
    lines_added = Column(Integer, nullable=False, default=0)
    lines_removed = Column(Integer, nullable=False, default=0)
    prs_opened = Column(Integer, nullable=False, default=0)
    prs_merged = Column(Integer, nullable=False, default=0)
    prs_closed = Column(Integer, nullable=False, default=0)
    avg_pr_merge_hours = Column(Float, nullable=True)
    issues_opened = Column(Integer, nullable=False, default=0)
    issues_closed = Column(Integer, nullable=False, default=0)
    avg_issue_resolution_hours = Column(Float, nullable=True)
    issues_by_label = Column(JSON, nullable=False, default=dict)
    active_contributors = Column(Integer, nullable=False, default=0)
    hot_spots = Column(JSON, nullable=False, default=list)
    velocity_score = Column(Float, nullable=True)
    velocity_trend = Column(VelocityTrendEnum, nullable=True)
    velocity_change_percent = Column(Float, nullable=True)
    data_hash = Column(String(64), nullable=True)
    analyzed_at = Column(UtcDateTime(), nullable=False, default=_utcnow)
    expires_at = Column(UtcDateTime(), nullable=False)
    is_stale = Column(Boolean, nullable=False, default=False)
