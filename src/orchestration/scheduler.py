"""Scheduler tick: find due agent schedules and enqueue jobs for them."""

from __future__ import annotations

import logging
from contextlib import closing
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Iterable, Mapping

from sqlalchemy.orm import Session

from config import settings
from models import Schedule
from orchestration.data_access import (
    JobCreateInput,
    JobTargetInput,
    add_job_targets,
    count_schedule_runs_since,
    create_job,
    list_enabled_schedules,
    mark_schedule_enqueued,
)
from orchestration.job_orchestrator import Dispatcher, accept_job, claim_schedules
from orchestration.schedule_evaluation import evaluate_schedule
from time_utils import ensure_utc, local_day_start, utc_now

logger = logging.getLogger(__name__)

_NEVER = datetime.min


@dataclass(frozen=True)
class TickResult:
    """What one scheduler tick did."""

    evaluated: int
    job_ids: tuple[int, ...] = ()
    skipped: Mapping[int, str] = field(default_factory=dict)


def _sort_key(schedule: Schedule) -> tuple:
    last_run = schedule.last_run_at
    created = schedule.created_at
    return (
        -int(schedule.priority),
        last_run is not None,
        ensure_utc(last_run).replace(tzinfo=None) if last_run else _NEVER,
        ensure_utc(created).replace(tzinfo=None) if created else _NEVER,
        schedule.id,
    )


def order_schedules(schedules: Iterable[Schedule]) -> list[Schedule]:
    """Order by priority, then never-run first, then oldest last run, then age."""
    return sorted(schedules, key=_sort_key)


class Scheduler:
    """Evaluate enabled schedules on each tick and enqueue due ones.

    Due schedules of one project are grouped into a single job. The tick
    commits each project's job before dispatching it and never waits on
    agent work.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        dispatcher: Dispatcher,
        *,
        now_provider: Callable[[], datetime] | None = None,
        timeout_seconds: int | None = None,
        max_attempts: int | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._dispatcher = dispatcher
        self._now_provider = now_provider or utc_now
        self._timeout_seconds = int(timeout_seconds or settings.jobs.timeout_seconds)
        self._max_attempts = int(max_attempts or settings.jobs.default_max_attempts)

    def tick(self) -> TickResult:
        now = ensure_utc(self._now_provider())
        skipped: dict[int, str] = {}
        due_by_project: dict[str, list[Schedule]] = {}

        with closing(self._session_factory()) as session:
            schedules = list_enabled_schedules(session)
            for schedule in schedules:
                runs_today = count_schedule_runs_since(
                    session, schedule.id, local_day_start(now, schedule.timezone)
                )
                decision = evaluate_schedule(schedule, now, runs_today=runs_today)
                if not decision.due:
                    skipped[schedule.id] = decision.reason
                    logger.debug(
                        "Schedule not due: schedule_id=%s agent_slug=%s reason=%s",
                        schedule.id,
                        schedule.agent_slug,
                        decision.reason,
                    )
                    continue
                due_by_project.setdefault(schedule.project_id, []).append(schedule)

        job_ids: list[int] = []
        for project_id in sorted(due_by_project):
            job_id = self._enqueue_project(project_id, due_by_project[project_id], now, skipped)
            if job_id is None:
                continue
            job_ids.append(job_id)
            try:
                self._dispatcher(job_id)
            except Exception:
                logger.exception("Failed to dispatch job: job_id=%s", job_id)

        logger.info(
            "Scheduler tick finished: evaluated=%s enqueued=%s skipped=%s",
            len(schedules),
            len(job_ids),
            len(skipped),
        )
        return TickResult(evaluated=len(schedules), job_ids=tuple(job_ids), skipped=skipped)

    def _enqueue_project(
        self,
        project_id: str,
        schedules: list[Schedule],
        now: datetime,
        skipped: dict[int, str],
    ) -> int | None:
        ordered = order_schedules(schedules)
        with closing(self._session_factory()) as session:
            job = create_job(
                session,
                JobCreateInput(
                    job_type="single_agent",
                    triggered_by="cron",
                    targets=(),
                    project_id=project_id,
                    priority=max(int(schedule.priority) for schedule in ordered),
                    max_attempts=self._max_attempts,
                ),
                now=now,
            )
            kept = claim_schedules(session, ordered, job.id, now)
            kept_ids = {schedule.id for schedule in kept}
            for schedule in ordered:
                if schedule.id not in kept_ids:
                    skipped[schedule.id] = "claimed"
            if not kept:
                session.rollback()
                return None

            job.job_type = "batch" if len(kept) > 1 else "single_agent"
            job.priority = max(int(schedule.priority) for schedule in kept)
            job.input_params = {"schedule_ids": [schedule.id for schedule in kept]}
            add_job_targets(
                session,
                job.id,
                [JobTargetInput(agent_slug=s.agent_slug, schedule_id=s.id) for s in kept],
            )
            for schedule in kept:
                mark_schedule_enqueued(session, schedule.id, now)
            accept_job(session, job.id, now=now, timeout_seconds=self._timeout_seconds)
            session.commit()
            job_id = job.id

        logger.info(
            "Job enqueued: job_id=%s project_id=%s agents=%s",
            job_id,
            project_id,
            [schedule.agent_slug for schedule in kept],
        )
        return job_id
