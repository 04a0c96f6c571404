"""Data access layer for schedules, jobs, claims, execution logs, action policies and velocity entries.

State changes that other processes may race on (job transitions, schedule
claims, action usage counters) are single conditional statements whose
rowcount tells the caller whether it won.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, time, timezone
from typing import Any, Iterable, Sequence

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from models import (
    ALL_DAYS,
    JOB_ACTIVE_STATUSES,
    JOB_RETRYABLE_STATUSES,
    ActionCategoryEnum,
    ActionConfig,
    ExecutionLog,
    Job,
    JobStatusEnum,
    JobTarget,
    JobTypeEnum,
    RiskLevelEnum,
    Schedule,
    ScheduleClaim,
    TriggerSourceEnum,
    VelocityCacheEntry,
)
from orchestration.errors import ValidationError
from orchestration.schedule_evaluation import validate_schedule_fields
from time_utils import get_zone

logger = logging.getLogger(__name__)

_SKIP_SYNC = {"synchronize_session": False}


@dataclass(frozen=True)
class ScheduleCreateInput:
    """Input payload for creating an agent schedule."""

    project_id: str
    agent_slug: str
    schedule_type: str = "daily"
    cron_expression: str | None = None
    timezone: str | None = None
    run_after_time: time | None = None
    run_before_time: time | None = None
    run_on_days: tuple[int, ...] = tuple(ALL_DAYS)
    min_interval_minutes: int = 60
    max_runs_per_day: int = 24
    cooldown_after_error_minutes: int = 30
    priority: int = 5
    allow_concurrent: bool = False
    is_enabled: bool = True


@dataclass(frozen=True)
class JobTargetInput:
    """An agent in scope for a new job."""

    agent_slug: str
    schedule_id: int | None = None


@dataclass(frozen=True)
class JobCreateInput:
    """Input payload for creating a job with its targets."""

    job_type: str
    triggered_by: str
    targets: tuple[JobTargetInput, ...]
    project_id: str | None = None
    priority: int = 5
    scheduled_at: datetime | None = None
    attempt_number: int = 1
    max_attempts: int = 3
    parent_job_id: int | None = None
    triggered_by_user_id: str | None = None
    input_params: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ActionConfigInput:
    """Input payload for creating an action policy."""

    project_id: str
    action_key: str
    action_name: str
    action_category: str
    agent_slug: str | None = None
    is_enabled: bool = False
    requires_approval: bool = True
    auto_approve_low_risk: bool = False
    risk_level: str = "medium"
    max_per_day: int | None = 10
    max_per_hour: int | None = 3
    cooldown_minutes: int = 15


def _normalize_timestamp(value: datetime, label: str) -> datetime:
    """Ensure timestamps are timezone-aware, defaulting to UTC if naive."""
    if value.tzinfo is None:
        logger.warning("Naive timestamp provided for %s; assuming UTC.", label)
        return value.replace(tzinfo=timezone.utc)
    return value


def _insert_for(session: Session):
    """Return the dialect insert construct that supports ON CONFLICT."""
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql_insert
    if dialect == "sqlite":
        return sqlite_insert
    raise ValueError(f"Unsupported database dialect: {dialect}.")


# Schedules


def create_schedule(
    session: Session,
    schedule_input: ScheduleCreateInput,
    *,
    now: datetime | None = None,
) -> Schedule:
    """Create a schedule for one agent on one project."""
    timestamp = _normalize_timestamp(now or datetime.now(timezone.utc), "created_at")
    validate_schedule_fields(
        schedule_type=schedule_input.schedule_type,
        cron_expression=schedule_input.cron_expression,
        timezone_name=schedule_input.timezone,
        run_on_days=schedule_input.run_on_days,
        min_interval_minutes=schedule_input.min_interval_minutes,
        max_runs_per_day=schedule_input.max_runs_per_day,
        cooldown_after_error_minutes=schedule_input.cooldown_after_error_minutes,
        priority=schedule_input.priority,
    )
    if get_schedule_for_agent(session, schedule_input.project_id, schedule_input.agent_slug):
        raise ValidationError(
            "schedule_exists",
            "A schedule already exists for this project and agent.",
            {"project_id": schedule_input.project_id, "agent_slug": schedule_input.agent_slug},
        )

    schedule = Schedule(
        project_id=schedule_input.project_id,
        agent_slug=schedule_input.agent_slug,
        is_enabled=schedule_input.is_enabled,
        schedule_type=schedule_input.schedule_type,
        cron_expression=schedule_input.cron_expression,
        timezone=get_zone(schedule_input.timezone).key,
        run_after_time=schedule_input.run_after_time,
        run_before_time=schedule_input.run_before_time,
        run_on_days=sorted(set(schedule_input.run_on_days)),
        min_interval_minutes=schedule_input.min_interval_minutes,
        max_runs_per_day=schedule_input.max_runs_per_day,
        cooldown_after_error_minutes=schedule_input.cooldown_after_error_minutes,
        priority=schedule_input.priority,
        allow_concurrent=schedule_input.allow_concurrent,
        created_at=timestamp,
        updated_at=timestamp,
    )
    session.add(schedule)
    session.flush()
    return schedule


def get_schedule(session: Session, schedule_id: int) -> Schedule | None:
    return (
        session.query(Schedule)
        .populate_existing()
        .filter(Schedule.id == schedule_id)
        .first()
    )


def get_schedule_for_agent(session: Session, project_id: str, agent_slug: str) -> Schedule | None:
    return (
        session.query(Schedule)
        .filter(Schedule.project_id == project_id, Schedule.agent_slug == agent_slug)
        .first()
    )


def list_enabled_schedules(session: Session, project_id: str | None = None) -> list[Schedule]:
    """Return enabled schedules, optionally limited to one project."""
    query = session.query(Schedule).filter(Schedule.is_enabled.is_(True))
    if project_id is not None:
        query = query.filter(Schedule.project_id == project_id)
    return query.order_by(Schedule.project_id, Schedule.id).all()


def list_schedules_by_ids(session: Session, schedule_ids: Iterable[int]) -> list[Schedule]:
    ids = [schedule_id for schedule_id in schedule_ids if schedule_id is not None]
    if not ids:
        return []
    return session.query(Schedule).filter(Schedule.id.in_(ids)).all()


def count_schedule_runs_since(session: Session, schedule_id: int, since: datetime) -> int:
    """Count jobs that targeted the schedule and were created at or after since."""
    count = (
        session.query(func.count(JobTarget.id))
        .join(Job, Job.id == JobTarget.job_id)
        .filter(JobTarget.schedule_id == schedule_id, Job.created_at >= since)
        .scalar()
    )
    return int(count or 0)


def mark_schedule_enqueued(session: Session, schedule_id: int, now: datetime) -> None:
    """Stamp last_run_at at enqueue time so the next tick sees the run."""
    session.execute(
        update(Schedule)
        .where(Schedule.id == schedule_id)
        .values(last_run_at=now, updated_at=now)
        .execution_options(**_SKIP_SYNC)
    )


def record_schedule_outcome(
    session: Session,
    schedule_ids: Iterable[int],
    *,
    succeeded: bool,
    now: datetime,
) -> None:
    """Fold a finished run into the rolling counters of each schedule."""
    ids = sorted({schedule_id for schedule_id in schedule_ids if schedule_id is not None})
    if not ids:
        return
    if succeeded:
        values = {
            "last_success_at": now,
            "consecutive_failures": 0,
            "total_runs": Schedule.total_runs + 1,
            "total_successes": Schedule.total_successes + 1,
            "updated_at": now,
        }
    else:
        values = {
            "last_failure_at": now,
            "consecutive_failures": Schedule.consecutive_failures + 1,
            "total_runs": Schedule.total_runs + 1,
            "updated_at": now,
        }
    session.execute(
        update(Schedule).where(Schedule.id.in_(ids)).values(**values).execution_options(**_SKIP_SYNC)
    )


# Schedule claims


def try_claim_schedule(session: Session, schedule_id: int, job_id: int, now: datetime) -> bool:
    """Take the run slot of a schedule for a job; False when another job holds it."""
    insert = _insert_for(session)
    stmt = (
        insert(ScheduleClaim)
        .values(schedule_id=schedule_id, job_id=job_id, claimed_at=now)
        .on_conflict_do_nothing(index_elements=["schedule_id"])
    )
    result = session.execute(stmt)
    return int(result.rowcount or 0) == 1


def list_claimed_schedule_ids(session: Session, schedule_ids: Iterable[int]) -> set[int]:
    ids = [schedule_id for schedule_id in schedule_ids if schedule_id is not None]
    if not ids:
        return set()
    rows = session.execute(
        select(ScheduleClaim.schedule_id).where(ScheduleClaim.schedule_id.in_(ids))
    ).scalars()
    return set(rows)


def release_claims(session: Session, job_id: int) -> list[int]:
    """Delete the claims held by a job and return the freed schedule ids."""
    schedule_ids = list(
        session.execute(
            select(ScheduleClaim.schedule_id).where(ScheduleClaim.job_id == job_id)
        ).scalars()
    )
    if schedule_ids:
        session.execute(
            delete(ScheduleClaim)
            .where(ScheduleClaim.job_id == job_id)
            .execution_options(**_SKIP_SYNC)
        )
    return schedule_ids


def transfer_claims(session: Session, from_job_id: int, to_job_id: int) -> int:
    """Hand every claim of one job to another (used when a retry is chained)."""
    result = session.execute(
        update(ScheduleClaim)
        .where(ScheduleClaim.job_id == from_job_id)
        .values(job_id=to_job_id)
        .execution_options(**_SKIP_SYNC)
    )
    return int(result.rowcount or 0)


# Jobs


def _validate_job_status(status: str) -> None:
    if status not in JobStatusEnum.enums:
        raise ValueError(f"Invalid job status: {status}.")


def create_job(
    session: Session,
    job_input: JobCreateInput,
    *,
    now: datetime | None = None,
) -> Job:
    """Create a pending job and its ordered targets."""
    timestamp = _normalize_timestamp(now or datetime.now(timezone.utc), "created_at")
    if job_input.job_type not in JobTypeEnum.enums:
        raise ValueError(f"Invalid job_type: {job_input.job_type}.")
    if job_input.triggered_by not in TriggerSourceEnum.enums:
        raise ValueError(f"Invalid triggered_by: {job_input.triggered_by}.")
    if not 1 <= job_input.priority <= 10:
        raise ValueError("priority must be between 1 and 10.")
    if job_input.max_attempts < 1:
        raise ValueError("max_attempts must be >= 1.")
    if not 1 <= job_input.attempt_number <= job_input.max_attempts:
        raise ValueError("attempt_number must be between 1 and max_attempts.")

    scheduled_at = job_input.scheduled_at
    job = Job(
        project_id=job_input.project_id,
        job_type=job_input.job_type,
        triggered_by=job_input.triggered_by,
        triggered_by_user_id=job_input.triggered_by_user_id,
        status="pending",
        priority=job_input.priority,
        scheduled_at=_normalize_timestamp(scheduled_at, "scheduled_at") if scheduled_at else timestamp,
        attempt_number=job_input.attempt_number,
        max_attempts=job_input.max_attempts,
        parent_job_id=job_input.parent_job_id,
        input_params=dict(job_input.input_params),
        created_at=timestamp,
        updated_at=timestamp,
    )
    session.add(job)
    session.flush()
    add_job_targets(session, job.id, job_input.targets)
    return job


def add_job_targets(
    session: Session,
    job_id: int,
    targets: Sequence[JobTargetInput],
) -> list[JobTarget]:
    """Append agents to a job's scope after any it already has."""
    existing = list_job_targets(session, job_id)
    taken = {target.agent_slug for target in existing}
    position = len(existing)
    rows: list[JobTarget] = []
    for target in targets:
        if target.agent_slug in taken:
            raise ValueError(f"agent {target.agent_slug} is already a target of job {job_id}.")
        taken.add(target.agent_slug)
        row = JobTarget(
            job_id=job_id,
            schedule_id=target.schedule_id,
            agent_slug=target.agent_slug,
            position=position,
        )
        session.add(row)
        rows.append(row)
        position += 1
    session.flush()
    return rows


def get_job(session: Session, job_id: int) -> Job | None:
    """Load a job, refreshing any stale copy held by the session."""
    return session.query(Job).populate_existing().filter(Job.id == job_id).first()


def list_job_targets(session: Session, job_id: int) -> list[JobTarget]:
    return (
        session.query(JobTarget)
        .filter(JobTarget.job_id == job_id)
        .order_by(JobTarget.position, JobTarget.id)
        .all()
    )


def transition_job(
    session: Session,
    job_id: int,
    *,
    from_statuses: Sequence[str],
    to_status: str,
    now: datetime,
    values: dict[str, Any] | None = None,
    conditions: Sequence[Any] = (),
) -> bool:
    """Move a job to to_status only if it is currently in one of from_statuses.

    ``conditions`` are extra WHERE clauses that must also hold.
    """
    _validate_job_status(to_status)
    for status in from_statuses:
        _validate_job_status(status)
    stmt = (
        update(Job)
        .where(Job.id == job_id, Job.status.in_(tuple(from_statuses)), *conditions)
        .values(status=to_status, updated_at=now, **(values or {}))
        .execution_options(**_SKIP_SYNC)
    )
    result = session.execute(stmt)
    return int(result.rowcount or 0) == 1


def list_timed_out_jobs(session: Session, now: datetime, limit: int = 100) -> list[Job]:
    """Return non-terminal jobs whose timeout has passed."""
    return (
        session.query(Job)
        .filter(
            Job.status.in_(JOB_ACTIVE_STATUSES),
            Job.timeout_at.is_not(None),
            Job.timeout_at < now,
        )
        .order_by(Job.timeout_at, Job.id)
        .limit(limit)
        .all()
    )


def list_due_retry_jobs(session: Session, now: datetime, limit: int = 100) -> list[Job]:
    """Return pending retry jobs whose backoff has elapsed."""
    return (
        session.query(Job)
        .filter(
            Job.status == "pending",
            Job.job_type == "retry",
            Job.scheduled_at <= now,
        )
        .order_by(Job.priority.desc(), Job.scheduled_at, Job.id)
        .limit(limit)
        .all()
    )


def has_follow_up_attempt(session: Session, job_id: int) -> bool:
    """Return whether any job already continues this one's retry chain."""
    return session.query(Job.id).filter(Job.parent_job_id == job_id).first() is not None


def list_unretried_failed_jobs(
    session: Session,
    project_id: str | None = None,
    limit: int = 100,
) -> list[Job]:
    """Return failed or timed-out jobs that nothing has retried yet, oldest first."""
    follow_up = select(Job.parent_job_id).where(Job.parent_job_id.is_not(None))
    query = session.query(Job).filter(
        Job.status.in_(JOB_RETRYABLE_STATUSES),
        Job.id.not_in(follow_up),
    )
    if project_id is not None:
        query = query.filter(Job.project_id == project_id)
    return query.order_by(Job.completed_at, Job.id).limit(limit).all()


# Execution logs


def create_execution_log(
    session: Session,
    *,
    job_id: int,
    project_id: str,
    agent_slug: str,
    schedule_id: int | None,
    now: datetime,
) -> ExecutionLog:
    """Open the audit record for one agent run."""
    log = ExecutionLog(
        job_id=job_id,
        project_id=project_id,
        schedule_id=schedule_id,
        agent_slug=agent_slug,
        phase="analyze",
        status="running",
        started_at=now,
        created_at=now,
        output_data={},
        suggestions_created=[],
        tasks_created=[],
        tasks_assigned=[],
    )
    session.add(log)
    session.flush()
    return log


def list_execution_logs_for_job(session: Session, job_id: int) -> list[ExecutionLog]:
    return (
        session.query(ExecutionLog)
        .filter(ExecutionLog.job_id == job_id)
        .order_by(ExecutionLog.id)
        .all()
    )


# Action policies


def create_action_config(
    session: Session,
    config_input: ActionConfigInput,
    *,
    now: datetime | None = None,
) -> ActionConfig:
    """Create an action policy for a project, optionally scoped to one agent."""
    timestamp = _normalize_timestamp(now or datetime.now(timezone.utc), "created_at")
    if config_input.action_category not in ActionCategoryEnum.enums:
        raise ValueError(f"Invalid action_category: {config_input.action_category}.")
    if config_input.risk_level not in RiskLevelEnum.enums:
        raise ValueError(f"Invalid risk_level: {config_input.risk_level}.")
    for label, limit in (
        ("max_per_day", config_input.max_per_day),
        ("max_per_hour", config_input.max_per_hour),
    ):
        if limit is not None and limit < 0:
            raise ValueError(f"{label} must be >= 0.")
    if config_input.cooldown_minutes < 0:
        raise ValueError("cooldown_minutes must be >= 0.")
    if get_action_config(
        session, config_input.project_id, config_input.action_key, config_input.agent_slug
    ):
        raise ValueError("action config already exists for project, action and agent.")

    config = ActionConfig(
        project_id=config_input.project_id,
        action_key=config_input.action_key,
        action_name=config_input.action_name,
        action_category=config_input.action_category,
        agent_slug=config_input.agent_slug,
        is_enabled=config_input.is_enabled,
        requires_approval=config_input.requires_approval,
        auto_approve_low_risk=config_input.auto_approve_low_risk,
        risk_level=config_input.risk_level,
        max_per_day=config_input.max_per_day,
        max_per_hour=config_input.max_per_hour,
        cooldown_minutes=config_input.cooldown_minutes,
        created_at=timestamp,
        updated_at=timestamp,
    )
    session.add(config)
    session.flush()
    return config


def get_action_config(
    session: Session,
    project_id: str,
    action_key: str,
    agent_slug: str | None,
) -> ActionConfig | None:
    """Return the policy stored for exactly this agent (or the agent-agnostic row)."""
    query = (
        session.query(ActionConfig)
        .populate_existing()
        .filter(ActionConfig.project_id == project_id, ActionConfig.action_key == action_key)
    )
    if agent_slug is None:
        query = query.filter(ActionConfig.agent_slug.is_(None))
    else:
        query = query.filter(ActionConfig.agent_slug == agent_slug)
    return query.first()


def find_action_config(
    session: Session,
    project_id: str,
    action_key: str,
    agent_slug: str | None,
) -> ActionConfig | None:
    """Resolve the policy for an agent, falling back to the agent-agnostic row."""
    if agent_slug is not None:
        config = get_action_config(session, project_id, action_key, agent_slug)
        if config is not None:
            return config
    return get_action_config(session, project_id, action_key, None)


def get_action_config_by_id(session: Session, config_id: int) -> ActionConfig | None:
    return (
        session.query(ActionConfig)
        .populate_existing()
        .filter(ActionConfig.id == config_id)
        .first()
    )


def list_action_configs_for_agent(
    session: Session,
    project_id: str,
    agent_slug: str,
) -> list[ActionConfig]:
    """Return the policies visible to an agent; its own rows shadow agnostic ones."""
    rows = (
        session.query(ActionConfig)
        .filter(
            ActionConfig.project_id == project_id,
            or_(ActionConfig.agent_slug == agent_slug, ActionConfig.agent_slug.is_(None)),
        )
        .all()
    )
    resolved: dict[str, ActionConfig] = {}
    for row in rows:
        existing = resolved.get(row.action_key)
        if existing is None or (existing.agent_slug is None and row.agent_slug is not None):
            resolved[row.action_key] = row
    return [resolved[key] for key in sorted(resolved)]


def reset_daily_usage(session: Session, config_id: int, *, day_start: datetime) -> bool:
    """Zero the daily counter once per UTC day; only the first caller wins."""
    result = session.execute(
        update(ActionConfig)
        .where(
            ActionConfig.id == config_id,
            or_(ActionConfig.last_reset_at.is_(None), ActionConfig.last_reset_at < day_start),
        )
        .values(
            times_used_today=0,
            last_reset_at=day_start,
            version=ActionConfig.version + 1,
        )
        .execution_options(**_SKIP_SYNC)
    )
    return int(result.rowcount or 0) == 1


def reset_hourly_usage(session: Session, config_id: int, *, hour_start: datetime) -> bool:
    """Zero the hourly counter once per clock hour; only the first caller wins."""
    result = session.execute(
        update(ActionConfig)
        .where(
            ActionConfig.id == config_id,
            or_(
                ActionConfig.hour_window_start.is_(None),
                ActionConfig.hour_window_start < hour_start,
            ),
        )
        .values(
            times_used_this_hour=0,
            hour_window_start=hour_start,
            version=ActionConfig.version + 1,
        )
        .execution_options(**_SKIP_SYNC)
    )
    return int(result.rowcount or 0) == 1


def consume_action_slot(
    session: Session,
    config_id: int,
    *,
    now: datetime,
    day_start: datetime,
    hour_start: datetime,
    cooldown_bound: datetime,
) -> bool:
    """Atomically spend one use of an action if every limit still allows it.

    ``cooldown_bound`` is ``now - cooldown_minutes``; a previous use at or
    before it no longer blocks.
    """
    result = session.execute(
        update(ActionConfig)
        .where(
            ActionConfig.id == config_id,
            ActionConfig.is_enabled.is_(True),
            ActionConfig.last_reset_at >= day_start,
            ActionConfig.hour_window_start >= hour_start,
            or_(
                ActionConfig.max_per_day.is_(None),
                ActionConfig.times_used_today < ActionConfig.max_per_day,
            ),
            or_(
                ActionConfig.max_per_hour.is_(None),
                ActionConfig.times_used_this_hour < ActionConfig.max_per_hour,
            ),
            or_(
                ActionConfig.last_used_at.is_(None),
                ActionConfig.last_used_at <= cooldown_bound,
            ),
        )
        .values(
            times_used_today=ActionConfig.times_used_today + 1,
            times_used_this_hour=ActionConfig.times_used_this_hour + 1,
            times_used_total=ActionConfig.times_used_total + 1,
            version=ActionConfig.version + 1,
            last_used_at=now,
            updated_at=now,
        )
        .execution_options(**_SKIP_SYNC)
    )
    return int(result.rowcount or 0) == 1


# Velocity cache entries


def get_current_velocity_entry(
    session: Session,
    project_id: str,
    period_type: str,
    period_start: datetime,
) -> VelocityCacheEntry | None:
    """Return the highest revision stored for a cache key."""
    return (
        session.query(VelocityCacheEntry)
        .populate_existing()
        .filter(
            VelocityCacheEntry.project_id == project_id,
            VelocityCacheEntry.period_type == period_type,
            VelocityCacheEntry.period_start == period_start,
        )
        .order_by(VelocityCacheEntry.revision.desc())
        .first()
    )


def get_velocity_entry_revision(
    session: Session,
    project_id: str,
    period_type: str,
    period_start: datetime,
    revision: int,
) -> VelocityCacheEntry | None:
    return (
        session.query(VelocityCacheEntry)
        .filter(
            VelocityCacheEntry.project_id == project_id,
            VelocityCacheEntry.period_type == period_type,
            VelocityCacheEntry.period_start == period_start,
            VelocityCacheEntry.revision == revision,
        )
        .first()
    )


def mark_velocity_stale(session: Session, project_id: str) -> int:
    """Flag every fresh cache entry of a project as stale."""
    result = session.execute(
        update(VelocityCacheEntry)
        .where(
            VelocityCacheEntry.project_id == project_id,
            VelocityCacheEntry.is_stale.is_(False),
        )
        .values(is_stale=True)
        .execution_options(**_SKIP_SYNC)
    )
    return int(result.rowcount or 0)
