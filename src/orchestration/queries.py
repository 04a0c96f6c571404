"""Read-only queries over orchestration state for callers outside the engine."""

from __future__ import annotations

from sqlalchemy import and_, func
from sqlalchemy.orm import Session

from models import ActionConfig, ExecutionLog, Job, JobStatusEnum, Schedule, VelocityCacheEntry
from orchestration import data_access


def get_job(session: Session, job_id: int) -> Job | None:
    return data_access.get_job(session, job_id)


def list_jobs(
    session: Session,
    project_id: str | None = None,
    status: str | None = None,
    limit: int = 50,
) -> list[Job]:
    """Return the most recent jobs, optionally filtered by project and status."""
    if status is not None and status not in JobStatusEnum.enums:
        raise ValueError(f"Invalid job status: {status}.")
    query = session.query(Job)
    if project_id is not None:
        query = query.filter(Job.project_id == project_id)
    if status is not None:
        query = query.filter(Job.status == status)
    return query.order_by(Job.created_at.desc(), Job.id.desc()).limit(limit).all()


def job_stats(session: Session, project_id: str | None = None) -> dict[str, int]:
    """Count jobs per status, with every status present, plus a total."""
    query = session.query(Job.status, func.count(Job.id))
    if project_id is not None:
        query = query.filter(Job.project_id == project_id)
    stats = {status: 0 for status in JobStatusEnum.enums}
    for status, count in query.group_by(Job.status).all():
        stats[status] = int(count)
    stats["total"] = sum(stats.values())
    return stats


def list_execution_logs(session: Session, job_id: int) -> list[ExecutionLog]:
    return data_access.list_execution_logs_for_job(session, job_id)


def get_retry_chain(session: Session, job_id: int) -> list[Job]:
    """Return the retry chain containing a job, from the root attempt to the newest."""
    job = session.get(Job, job_id)
    if job is None:
        return []
    while job.parent_job_id is not None:
        parent = session.get(Job, job.parent_job_id)
        if parent is None:
            break
        job = parent

    chain = [job]
    while True:
        child = (
            session.query(Job)
            .filter(Job.parent_job_id == chain[-1].id)
            .order_by(Job.attempt_number, Job.id)
            .first()
        )
        if child is None:
            return chain
        chain.append(child)


def list_schedules(session: Session, project_id: str) -> list[Schedule]:
    return (
        session.query(Schedule)
        .filter(Schedule.project_id == project_id)
        .order_by(Schedule.priority.desc(), Schedule.agent_slug)
        .all()
    )


def list_action_configs(session: Session, project_id: str) -> list[ActionConfig]:
    return (
        session.query(ActionConfig)
        .filter(ActionConfig.project_id == project_id)
        .order_by(ActionConfig.action_key, ActionConfig.agent_slug)
        .all()
    )


def list_velocity_history(
    session: Session,
    project_id: str,
    period_type: str = "daily",
    limit: int = 30,
) -> list[VelocityCacheEntry]:
    """Return the current entry of each recent period, newest period first."""
    latest = (
        session.query(
            VelocityCacheEntry.period_start.label("period_start"),
            func.max(VelocityCacheEntry.revision).label("revision"),
        )
        .filter(
            VelocityCacheEntry.project_id == project_id,
            VelocityCacheEntry.period_type == period_type,
        )
        .group_by(VelocityCacheEntry.period_start)
        .subquery()
    )
    return (
        session.query(VelocityCacheEntry)
        .join(
            latest,
            and_(
                VelocityCacheEntry.period_start == latest.c.period_start,
                VelocityCacheEntry.revision == latest.c.revision,
            ),
        )
        .filter(
            VelocityCacheEntry.project_id == project_id,
            VelocityCacheEntry.period_type == period_type,
        )
        .order_by(VelocityCacheEntry.period_start.desc())
        .limit(limit)
        .all()
    )
