"""Job orchestrator: claims jobs, fans out to the execution pipeline and closes them.

Job state machine::

    pending -> queued -> running -> completed | failed | cancelled | timeout

Every transition is a conditional UPDATE on the expected source status. A
worker whose job was cancelled or timed out while it ran finds the job no
longer ``running`` at close time and discards its result.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from contextlib import closing
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Iterable, Sequence

from sqlalchemy.orm import Session

from config import settings
from models import JOB_ACTIVE_STATUSES, JOB_RETRYABLE_STATUSES, Job, Schedule
from observability import log_context
from orchestration.data_access import (
    JobCreateInput,
    JobTargetInput,
    add_job_targets,
    create_job,
    get_job,
    has_follow_up_attempt,
    list_due_retry_jobs,
    list_enabled_schedules,
    list_job_targets,
    list_schedules_by_ids,
    list_timed_out_jobs,
    list_unretried_failed_jobs,
    record_schedule_outcome,
    release_claims,
    transfer_claims,
    transition_job,
    try_claim_schedule,
)
from orchestration.errors import (
    ALL_AGENTS_FAILED,
    JOB_CANCELLED,
    JOB_TIMEOUT,
    ORCHESTRATION_FAILED,
)
from orchestration.pipeline import ExecutionOutcome, ExecutionPipeline
from orchestration.retry_policy import RetryPolicy, has_attempts_left, next_attempt_at
from time_utils import ensure_utc, utc_now

logger = logging.getLogger(__name__)

Dispatcher = Callable[[int], None]


@dataclass(frozen=True)
class AgentPlan:
    """One agent to run for a job, in position order."""

    agent_slug: str
    schedule_id: int | None
    allow_concurrent: bool


@dataclass(frozen=True)
class JobRunResult:
    """Outcome of one worker's attempt to run a job."""

    job_id: int
    status: str | None
    discarded: bool = False
    agents_executed: int = 0
    agents_succeeded: int = 0
    agents_failed: int = 0
    tasks_created: int = 0
    tasks_assigned: int = 0
    error_code: str | None = None
    retry_job_id: int | None = None
    outcomes: tuple[ExecutionOutcome, ...] = field(default_factory=tuple)


def accept_job(session: Session, job_id: int, *, now: datetime, timeout_seconds: int) -> bool:
    """Move a pending job to queued with a provisional timeout."""
    return transition_job(
        session,
        job_id,
        from_statuses=("pending",),
        to_status="queued",
        now=now,
        values={"timeout_at": now + timedelta(seconds=timeout_seconds)},
    )


def claim_job(session: Session, job_id: int, *, now: datetime, timeout_seconds: int) -> bool:
    """Move a queued job to running; exactly one worker wins."""
    return transition_job(
        session,
        job_id,
        from_statuses=("queued",),
        to_status="running",
        now=now,
        values={
            "started_at": now,
            "timeout_at": now + timedelta(seconds=timeout_seconds),
        },
    )


def _noop_dispatcher(job_id: int) -> None:
    logger.warning("No dispatcher configured; job %s stays queued.", job_id)


class JobOrchestrator:
    """Drive jobs through their lifecycle."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        pipeline: ExecutionPipeline,
        *,
        dispatcher: Dispatcher | None = None,
        now_provider: Callable[[], datetime] | None = None,
        retry_policy: RetryPolicy | None = None,
        timeout_seconds: int | None = None,
        max_parallel_agents: int | None = None,
        manual_priority: int | None = None,
    ) -> None:
        job_config = settings.jobs
        self._session_factory = session_factory
        self._pipeline = pipeline
        self._dispatcher = dispatcher or _noop_dispatcher
        self._now_provider = now_provider or utc_now
        self._retry_policy = retry_policy or RetryPolicy.from_settings()
        self._timeout_seconds = int(timeout_seconds or job_config.timeout_seconds)
        self._max_parallel_agents = int(max_parallel_agents or job_config.max_parallel_agents)
        self._manual_priority = int(manual_priority or job_config.manual_priority)

    def _now(self) -> datetime:
        return ensure_utc(self._now_provider())

    def accept(self, job_id: int) -> bool:
        """Accept a pending job into the queue."""
        with closing(self._session_factory()) as session:
            accepted = accept_job(
                session, job_id, now=self._now(), timeout_seconds=self._timeout_seconds
            )
            session.commit()
        return accepted

    def run_job(self, job_id: int) -> JobRunResult:
        """Claim a queued job, run every target agent and close the job."""
        with log_context({"job_id": job_id}):
            with closing(self._session_factory()) as session:
                claimed = claim_job(
                    session, job_id, now=self._now(), timeout_seconds=self._timeout_seconds
                )
                if not claimed:
                    session.rollback()
                    job = get_job(session, job_id)
                    status = job.status if job is not None else None
                    logger.info("Job not claimable: job_id=%s status=%s", job_id, status)
                    return JobRunResult(job_id=job_id, status=status, discarded=True)
                session.commit()
                logger.info("Job claimed: job_id=%s", job_id)

            schedule_ids: list[int] = []
            try:
                project_id, plans = self._load_plan(job_id)
                schedule_ids = [plan.schedule_id for plan in plans if plan.schedule_id is not None]
                outcomes = self._fan_out(job_id, project_id, plans)
            except Exception as exc:
                logger.exception("Job orchestration failed: job_id=%s", job_id)
                return self._close(
                    job_id,
                    (),
                    schedule_ids,
                    status="failed",
                    error_code=ORCHESTRATION_FAILED,
                    error_message=str(exc) or exc.__class__.__name__,
                )
            return self._finalize(job_id, outcomes, schedule_ids)

    def cancel(self, job_id: int, reason: str | None = None) -> bool:
        """Cancel a pending, queued or running job and free its schedule slots."""
        now = self._now()
        with closing(self._session_factory()) as session:
            cancelled = transition_job(
                session,
                job_id,
                from_statuses=JOB_ACTIVE_STATUSES,
                to_status="cancelled",
                now=now,
                values={
                    "completed_at": now,
                    "error_code": JOB_CANCELLED,
                    "error_message": reason or "Job cancelled.",
                },
            )
            if not cancelled:
                session.rollback()
                logger.info("Cancel ignored; job is not active: job_id=%s", job_id)
                return False
            freed = release_claims(session, job_id)
            session.commit()
        logger.info("Job cancelled: job_id=%s freed_schedules=%s", job_id, freed)
        return True

    def sweep_timeouts(self, limit: int = 100) -> list[int]:
        """Time out active jobs past their deadline and free their slots."""
        now = self._now()
        timed_out: list[int] = []
        with closing(self._session_factory()) as session:
            for job in list_timed_out_jobs(session, now, limit=limit):
                deadline = job.timeout_at
                applied = transition_job(
                    session,
                    job.id,
                    from_statuses=JOB_ACTIVE_STATUSES,
                    to_status="timeout",
                    now=now,
                    values={
                        "completed_at": now,
                        "error_code": JOB_TIMEOUT,
                        "error_message": f"Job exceeded its deadline of {deadline.isoformat()}.",
                    },
                    conditions=(Job.timeout_at < now,),
                )
                if not applied:
                    continue
                release_claims(session, job.id)
                record_schedule_outcome(
                    session,
                    [target.schedule_id for target in list_job_targets(session, job.id)],
                    succeeded=False,
                    now=now,
                )
                timed_out.append(job.id)
            session.commit()
        if timed_out:
            logger.warning("Jobs timed out: %s", timed_out)
        return timed_out

    def promote_due_retries(self, limit: int = 100) -> list[int]:
        """Queue pending retries whose backoff has elapsed and dispatch them."""
        now = self._now()
        promoted: list[int] = []
        with closing(self._session_factory()) as session:
            for job in list_due_retry_jobs(session, now, limit=limit):
                if accept_job(session, job.id, now=now, timeout_seconds=self._timeout_seconds):
                    promoted.append(job.id)
            session.commit()
        for job_id in promoted:
            self._dispatch(job_id)
        if promoted:
            logger.info("Retry jobs promoted: %s", promoted)
        return promoted

    def enqueue_job(
        self,
        project_id: str,
        agent_slugs: Sequence[str] | None = None,
        triggered_by: str = "manual",
        user_id: str | None = None,
    ) -> int | None:
        """Create and dispatch a high-priority job for chosen agents of a project.

        Agents without an enabled schedule, or whose schedule is busy, are
        skipped. Returns None when no agent remains.
        """
        now = self._now()
        with closing(self._session_factory()) as session:
            schedules = self._select_schedules(session, project_id, agent_slugs)
            if not schedules:
                logger.info("Manual enqueue skipped; no schedulable agents: project_id=%s", project_id)
                return None
            job = create_job(
                session,
                JobCreateInput(
                    job_type="manual",
                    triggered_by=triggered_by,
                    targets=(),
                    project_id=project_id,
                    priority=self._manual_priority,
                    max_attempts=self._retry_policy.max_attempts,
                    triggered_by_user_id=user_id,
                    input_params={"agent_slugs": [schedule.agent_slug for schedule in schedules]},
                ),
                now=now,
            )
            kept = claim_schedules(session, schedules, job.id, now)
            if not kept:
                session.rollback()
                logger.info("Manual enqueue skipped; all agents busy: project_id=%s", project_id)
                return None
            add_job_targets(
                session,
                job.id,
                [JobTargetInput(agent_slug=s.agent_slug, schedule_id=s.id) for s in kept],
            )
            accept_job(session, job.id, now=now, timeout_seconds=self._timeout_seconds)
            session.commit()
            job_id = job.id
        logger.info(
            "Manual job enqueued: job_id=%s project_id=%s agents=%s",
            job_id,
            project_id,
            [schedule.agent_slug for schedule in kept],
        )
        self._dispatch(job_id)
        return job_id

    def retry_failed_job(self, job_id: int, user_id: str | None = None) -> int | None:
        """Start a new attempt of a failed or timed-out job on request.

        The attempt runs now at manual priority and gets a fresh attempt
        budget, so it works on exhausted chains too. Only the newest job of a
        chain can be retried. Busy schedules are skipped as in enqueue_job;
        returns None when nothing is left to run.
        """
        now = self._now()
        with closing(self._session_factory()) as session:
            job = get_job(session, job_id)
            if job is None or job.status not in JOB_RETRYABLE_STATUSES:
                logger.info("Retry refused; job is not failed: job_id=%s", job_id)
                return None
            if has_follow_up_attempt(session, job_id):
                logger.info("Retry refused; job was already retried: job_id=%s", job_id)
                return None
            targets = list_job_targets(session, job_id)
            schedules = {
                schedule.id: schedule
                for schedule in list_schedules_by_ids(
                    session, [target.schedule_id for target in targets]
                )
            }
            retry = create_job(
                session,
                JobCreateInput(
                    job_type="retry",
                    triggered_by="manual",
                    targets=(),
                    project_id=job.project_id,
                    priority=self._manual_priority,
                    attempt_number=job.attempt_number + 1,
                    max_attempts=job.attempt_number + self._retry_policy.max_attempts,
                    parent_job_id=job.id,
                    triggered_by_user_id=user_id,
                    input_params=dict(job.input_params or {}),
                ),
                now=now,
            )
            kept: list[JobTargetInput] = []
            for target in targets:
                schedule = schedules.get(target.schedule_id)
                if schedule is not None and not claim_schedules(session, [schedule], retry.id, now):
                    continue
                kept.append(
                    JobTargetInput(agent_slug=target.agent_slug, schedule_id=target.schedule_id)
                )
            if not kept:
                session.rollback()
                logger.info("Retry skipped; all agents busy: job_id=%s", job_id)
                return None
            add_job_targets(session, retry.id, kept)
            accept_job(session, retry.id, now=now, timeout_seconds=self._timeout_seconds)
            session.commit()
            retry_id = retry.id
        logger.info(
            "Manual retry enqueued: job_id=%s retry_job_id=%s agents=%s",
            job_id,
            retry_id,
            [target.agent_slug for target in kept],
        )
        self._dispatch(retry_id)
        return retry_id

    def retry_all_failed(
        self,
        project_id: str | None = None,
        user_id: str | None = None,
        limit: int = 100,
    ) -> list[int]:
        """Retry every failed or timed-out job that has no follow-up attempt yet."""
        with closing(self._session_factory()) as session:
            job_ids = [job.id for job in list_unretried_failed_jobs(session, project_id, limit)]
        retried = [
            retry_id
            for retry_id in (self.retry_failed_job(job_id, user_id) for job_id in job_ids)
            if retry_id is not None
        ]
        logger.info("Retried failed jobs: requested=%s retried=%s", len(job_ids), len(retried))
        return retried

    def _select_schedules(
        self,
        session: Session,
        project_id: str,
        agent_slugs: Sequence[str] | None,
    ) -> list[Schedule]:
        schedules = list_enabled_schedules(session, project_id)
        if agent_slugs is None:
            return schedules
        by_slug = {schedule.agent_slug: schedule for schedule in schedules}
        selected: list[Schedule] = []
        for slug in dict.fromkeys(agent_slugs):
            schedule = by_slug.get(slug)
            if schedule is None:
                logger.info("Skipping agent without enabled schedule: agent_slug=%s", slug)
                continue
            selected.append(schedule)
        return selected

    def _dispatch(self, job_id: int) -> None:
        try:
            self._dispatcher(job_id)
        except Exception:
            logger.exception("Failed to dispatch job: job_id=%s", job_id)

    def _load_plan(self, job_id: int) -> tuple[str, list[AgentPlan]]:
        with closing(self._session_factory()) as session:
            job = get_job(session, job_id)
            if job is None or not job.project_id:
                raise ValueError(f"job {job_id} has no project in scope.")
            targets = list_job_targets(session, job_id)
            schedules = {
                schedule.id: schedule
                for schedule in list_schedules_by_ids(
                    session, [target.schedule_id for target in targets]
                )
            }
            plans = []
            for target in targets:
                schedule = schedules.get(target.schedule_id)
                plans.append(
                    AgentPlan(
                        agent_slug=target.agent_slug,
                        schedule_id=target.schedule_id,
                        allow_concurrent=bool(schedule.allow_concurrent) if schedule else False,
                    )
                )
            return job.project_id, plans

    def _fan_out(
        self,
        job_id: int,
        project_id: str,
        plans: list[AgentPlan],
    ) -> list[ExecutionOutcome]:
        """Run concurrent-safe agents in a pool and the rest one at a time."""

        def run(plan: AgentPlan) -> ExecutionOutcome:
            return self._pipeline.execute(
                job_id=job_id,
                project_id=project_id,
                agent_slug=plan.agent_slug,
                schedule_id=plan.schedule_id,
            )

        results: dict[int, ExecutionOutcome] = {}
        parallel = [(index, plan) for index, plan in enumerate(plans) if plan.allow_concurrent]
        sequential = [(index, plan) for index, plan in enumerate(plans) if not plan.allow_concurrent]
        if parallel:
            workers = min(self._max_parallel_agents, len(parallel))
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="agent") as pool:
                futures = {index: pool.submit(run, plan) for index, plan in parallel}
                for index, plan in sequential:
                    results[index] = run(plan)
                for index, future in futures.items():
                    results[index] = future.result()
        else:
            for index, plan in sequential:
                results[index] = run(plan)
        return [results[index] for index in sorted(results)]

    def _finalize(
        self,
        job_id: int,
        outcomes: list[ExecutionOutcome],
        schedule_ids: list[int],
    ) -> JobRunResult:
        succeeded = sum(1 for outcome in outcomes if outcome.succeeded)
        if outcomes and succeeded == 0:
            return self._close(
                job_id,
                outcomes,
                schedule_ids,
                status="failed",
                error_code=ALL_AGENTS_FAILED,
                error_message=f"All {len(outcomes)} agent executions failed.",
            )
        return self._close(job_id, outcomes, schedule_ids, status="completed")

    def _close(
        self,
        job_id: int,
        outcomes: Iterable[ExecutionOutcome],
        schedule_ids: list[int],
        *,
        status: str,
        error_code: str | None = None,
        error_message: str | None = None,
    ) -> JobRunResult:
        """Write the terminal transition, aggregates, claims and schedule counters."""
        outcomes = tuple(outcomes)
        now = self._now()
        aggregates = {
            "agents_executed": len(outcomes),
            "agents_succeeded": sum(1 for outcome in outcomes if outcome.succeeded),
            "agents_failed": sum(1 for outcome in outcomes if outcome.status == "failed"),
            "tasks_created": sum(outcome.tasks_created for outcome in outcomes),
            "tasks_assigned": sum(outcome.tasks_assigned for outcome in outcomes),
        }
        with closing(self._session_factory()) as session:
            job = get_job(session, job_id)
            started_at = job.started_at if job is not None else None
            values = {
                **aggregates,
                "completed_at": now,
                "error_code": error_code,
                "error_message": error_message,
                "output_summary": {
                    "agents": [
                        {
                            "agent_slug": outcome.agent_slug,
                            "status": outcome.status,
                            "log_id": outcome.log_id,
                            "error_code": outcome.error_code,
                        }
                        for outcome in outcomes
                    ]
                },
            }
            if started_at is not None:
                values["duration_ms"] = int((now - ensure_utc(started_at)).total_seconds() * 1000)
            applied = transition_job(
                session,
                job_id,
                from_statuses=("running",),
                to_status=status,
                now=now,
                values=values,
            )
            if not applied:
                session.rollback()
                job = get_job(session, job_id)
                current = job.status if job is not None else None
                logger.warning(
                    "Discarding job result; job is no longer running: job_id=%s status=%s",
                    job_id,
                    current,
                )
                return JobRunResult(
                    job_id=job_id, status=current, discarded=True, outcomes=outcomes
                )

            retry_job_id = None
            if status == "failed":
                retry_job_id = self._chain_retry(session, job_id, now)
            if retry_job_id is None:
                release_claims(session, job_id)
            record_schedule_outcome(
                session, schedule_ids, succeeded=status == "completed", now=now
            )
            session.commit()

        logger.info(
            "Job closed: job_id=%s status=%s executed=%s succeeded=%s failed=%s retry_job_id=%s",
            job_id,
            status,
            aggregates["agents_executed"],
            aggregates["agents_succeeded"],
            aggregates["agents_failed"],
            retry_job_id,
        )
        return JobRunResult(
            job_id=job_id,
            status=status,
            error_code=error_code,
            retry_job_id=retry_job_id,
            outcomes=outcomes,
            **aggregates,
        )

    def _chain_retry(self, session: Session, job_id: int, now: datetime) -> int | None:
        """Create the next attempt of a failed job and hand it the schedule claims."""
        job = get_job(session, job_id)
        if job is None or not has_attempts_left(job.attempt_number, job.max_attempts):
            return None
        targets = list_job_targets(session, job_id)
        schedules = list_schedules_by_ids(session, [target.schedule_id for target in targets])
        cooldown = self._retry_policy.cooldown_minutes(
            schedule.cooldown_after_error_minutes for schedule in schedules
        )
        retry_at = next_attempt_at(now, job.attempt_number, cooldown)
        retry = create_job(
            session,
            JobCreateInput(
                job_type="retry",
                triggered_by="retry_scheduler",
                targets=tuple(
                    JobTargetInput(agent_slug=target.agent_slug, schedule_id=target.schedule_id)
                    for target in targets
                ),
                project_id=job.project_id,
                priority=job.priority,
                scheduled_at=retry_at,
                attempt_number=job.attempt_number + 1,
                max_attempts=job.max_attempts,
                parent_job_id=job.id,
                triggered_by_user_id=job.triggered_by_user_id,
                input_params=dict(job.input_params or {}),
            ),
            now=now,
        )
        transfer_claims(session, job.id, retry.id)
        logger.info(
            "Retry chained: job_id=%s retry_job_id=%s attempt=%s/%s retry_at=%s",
            job.id,
            retry.id,
            retry.attempt_number,
            retry.max_attempts,
            retry_at.isoformat(),
        )
        return retry.id


def claim_schedules(
    session: Session,
    schedules: Sequence[Schedule],
    job_id: int,
    now: datetime,
) -> list[Schedule]:
    """Claim each non-concurrent schedule for a job; return the ones it may run."""
    kept: list[Schedule] = []
    for schedule in schedules:
        if schedule.allow_concurrent or try_claim_schedule(session, schedule.id, job_id, now):
            kept.append(schedule)
            continue
        logger.info(
            "Skipping busy schedule: schedule_id=%s agent_slug=%s",
            schedule.id,
            schedule.agent_slug,
        )
    return kept
