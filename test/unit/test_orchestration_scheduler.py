"""Unit tests for the scheduler tick."""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from contextlib import closing
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

from sqlalchemy.orm import sessionmaker

from models import ExecutionLog, Job, Schedule, ScheduleClaim
from orchestration.agents import AgentRegistry
from orchestration.data_access import ScheduleCreateInput, create_schedule, list_job_targets
from orchestration.gatekeeper import ActionGatekeeper
from orchestration.job_orchestrator import JobOrchestrator
from orchestration.pipeline import ExecutionPipeline
from orchestration.scheduler import Scheduler, order_schedules

T0 = datetime(2025, 1, 15, 9, 0, tzinfo=timezone.utc)


class _RecordingDispatcher:
    def __init__(self, error: Exception | None = None) -> None:
        self.job_ids: list[int] = []
        self.error = error

    def __call__(self, job_id: int) -> None:
        self.job_ids.append(job_id)
        if self.error is not None:
            raise self.error


class _UnusedEffector:
    def perform(self, action, context):
        raise AssertionError("no action should be performed")

    def verify(self, action, result):
        raise AssertionError("no action should be verified")


def _schedule(session_factory: sessionmaker, agent_slug: str, **overrides) -> int:
    values = {
        "project_id": "proj-1",
        "agent_slug": agent_slug,
        "schedule_type": "hourly",
        "min_interval_minutes": 0,
    }
    values.update(overrides)
    with closing(session_factory()) as session:
        schedule = create_schedule(session, ScheduleCreateInput(**values), now=T0 - timedelta(days=1))
        session.commit()
        return schedule.id


def _scheduler(session_factory: sessionmaker, clock, dispatcher=None, **overrides) -> Scheduler:
    options = {"timeout_seconds": 600, "max_attempts": 3}
    options.update(overrides)
    return Scheduler(
        session_factory,
        dispatcher or _RecordingDispatcher(),
        now_provider=clock,
        **options,
    )


def _jobs(session_factory: sessionmaker) -> list[Job]:
    with closing(session_factory()) as session:
        return session.query(Job).order_by(Job.id).all()


def test_order_schedules_prefers_priority_then_staleness() -> None:
    """Ensure due schedules are ordered by priority, then least recently run."""
    schedules = [
        SimpleNamespace(id=1, priority=5, last_run_at=T0, created_at=T0),
        SimpleNamespace(id=2, priority=5, last_run_at=None, created_at=T0),
        SimpleNamespace(id=3, priority=9, last_run_at=T0, created_at=T0),
        SimpleNamespace(id=4, priority=5, last_run_at=T0 - timedelta(hours=2), created_at=T0),
        SimpleNamespace(id=5, priority=5, last_run_at=T0, created_at=T0 - timedelta(days=1)),
    ]
    assert [schedule.id for schedule in order_schedules(schedules)] == [3, 2, 4, 5, 1]


def test_tick_enqueues_due_schedule(sqlite_session_factory: sessionmaker, clock) -> None:
    """Ensure a due schedule gets a queued job and is stamped as run."""
    schedule_id = _schedule(sqlite_session_factory, "developer", priority=7)
    dispatcher = _RecordingDispatcher()

    result = _scheduler(sqlite_session_factory, clock, dispatcher).tick()

    assert result.evaluated == 1
    assert len(result.job_ids) == 1
    assert dispatcher.job_ids == list(result.job_ids)
    job = _jobs(sqlite_session_factory)[0]
    assert (job.status, job.job_type, job.triggered_by) == ("queued", "single_agent", "cron")
    assert job.priority == 7
    assert job.input_params == {"schedule_ids": [schedule_id]}
    assert job.timeout_at == clock() + timedelta(seconds=600)
    with closing(sqlite_session_factory()) as session:
        assert session.get(Schedule, schedule_id).last_run_at == clock()


def test_daily_limit_caps_runs(sqlite_session_factory: sessionmaker, clock) -> None:
    """Ensure a schedule with one run per day is enqueued once across ticks."""
    schedule_id = _schedule(
        sqlite_session_factory,
        "developer",
        schedule_type="custom",
        cron_expression="*/5 * * * *",
        allow_concurrent=True,
        max_runs_per_day=1,
    )
    scheduler = _scheduler(sqlite_session_factory, clock)

    first = scheduler.tick()
    clock.advance(minutes=5)
    second = scheduler.tick()

    assert len(first.job_ids) == 1
    assert second.job_ids == ()
    assert second.skipped[schedule_id] == "daily_limit"
    assert len(_jobs(sqlite_session_factory)) == 1


def test_custom_schedule_fires_on_exact_boundary(sqlite_session_factory: sessionmaker, clock) -> None:
    """Ensure a tick landing exactly on a cron fire enqueues the schedule."""
    _schedule(
        sqlite_session_factory,
        "developer",
        schedule_type="custom",
        cron_expression="*/5 * * * *",
        allow_concurrent=True,
    )
    scheduler = _scheduler(sqlite_session_factory, clock)

    scheduler.tick()
    clock.advance(minutes=2)
    assert scheduler.tick().job_ids == ()
    clock.advance(minutes=3)
    assert len(scheduler.tick().job_ids) == 1


def test_claimed_schedule_is_not_enqueued_twice(sqlite_session_factory: sessionmaker, clock) -> None:
    """Ensure a non-concurrent schedule with an active job is skipped."""
    schedule_id = _schedule(sqlite_session_factory, "developer")
    scheduler = _scheduler(sqlite_session_factory, clock)

    scheduler.tick()
    clock.advance(hours=1)
    result = scheduler.tick()

    assert result.job_ids == ()
    assert result.skipped[schedule_id] == "claimed"
    assert len(_jobs(sqlite_session_factory)) == 1


def test_due_schedules_of_a_project_share_a_batch_job(
    sqlite_session_factory: sessionmaker,
    clock,
) -> None:
    """Ensure due schedules are grouped per project in priority order."""
    low = _schedule(sqlite_session_factory, "marketer", priority=3)
    high = _schedule(sqlite_session_factory, "developer", priority=8)
    other = _schedule(sqlite_session_factory, "general", project_id="proj-2")
    _schedule(sqlite_session_factory, "designer", is_enabled=False)
    dispatcher = _RecordingDispatcher()

    result = _scheduler(sqlite_session_factory, clock, dispatcher).tick()

    assert result.evaluated == 3
    assert len(result.job_ids) == 2
    batch, single = _jobs(sqlite_session_factory)
    assert (batch.project_id, batch.job_type, batch.priority) == ("proj-1", "batch", 8)
    assert batch.input_params == {"schedule_ids": [high, low]}
    assert (single.project_id, single.job_type) == ("proj-2", "single_agent")
    with closing(sqlite_session_factory()) as session:
        targets = list_job_targets(session, batch.id)
        assert [(target.agent_slug, target.position) for target in targets] == [
            ("developer", 0),
            ("marketer", 1),
        ]
        assert [target.schedule_id for target in list_job_targets(session, single.id)] == [other]


def test_schedules_outside_window_are_skipped(sqlite_session_factory: sessionmaker, clock) -> None:
    """Ensure the tick reports why a schedule was not enqueued."""
    schedule_id = _schedule(sqlite_session_factory, "developer", run_on_days=(0, 6))

    result = _scheduler(sqlite_session_factory, clock).tick()

    assert result.job_ids == ()
    assert result.skipped == {schedule_id: "not_run_day"}


def test_dispatch_failure_leaves_job_queued(sqlite_session_factory: sessionmaker, clock) -> None:
    """Ensure a broker failure does not lose the committed job."""
    _schedule(sqlite_session_factory, "developer")
    dispatcher = _RecordingDispatcher(error=ConnectionError("broker down"))

    result = _scheduler(sqlite_session_factory, clock, dispatcher).tick()

    assert len(result.job_ids) == 1
    assert _jobs(sqlite_session_factory)[0].status == "queued"


def test_timed_out_job_frees_schedule_for_next_tick(
    sqlite_session_factory: sessionmaker,
    clock,
) -> None:
    """Ensure the sweeper frees a stuck job's slot so the next due tick runs."""
    schedule_id = _schedule(sqlite_session_factory, "developer", cooldown_after_error_minutes=0)
    scheduler = _scheduler(sqlite_session_factory, clock, timeout_seconds=60)
    orchestrator = JobOrchestrator(
        sqlite_session_factory,
        pipeline=None,
        now_provider=clock,
        timeout_seconds=60,
    )

    first = scheduler.tick().job_ids[0]
    clock.advance(hours=1)
    assert scheduler.tick().skipped[schedule_id] == "claimed"

    assert orchestrator.sweep_timeouts() == [first]
    second = scheduler.tick()

    assert len(second.job_ids) == 1
    assert second.job_ids[0] != first


def test_tick_then_run_completes_job(sqlite_session_factory: sessionmaker, clock) -> None:
    """Ensure a scheduled job runs through the real pipeline to completion."""
    schedule_id = _schedule(sqlite_session_factory, "developer")
    pipeline = ExecutionPipeline(
        sqlite_session_factory,
        AgentRegistry(),
        ActionGatekeeper(sqlite_session_factory, now_provider=clock),
        _UnusedEffector(),
        now_provider=clock,
    )
    orchestrator = JobOrchestrator(
        sqlite_session_factory, pipeline, now_provider=clock, timeout_seconds=600
    )
    job_id = _scheduler(sqlite_session_factory, clock).tick().job_ids[0]

    result = orchestrator.run_job(job_id)

    assert result.status == "completed"
    assert result.agents_succeeded == 1
    with closing(sqlite_session_factory()) as session:
        log = session.query(ExecutionLog).filter(ExecutionLog.job_id == job_id).one()
        assert log.status == "do_nothing"
        assert log.schedule_id == schedule_id
        schedule = session.get(Schedule, schedule_id)
        assert (schedule.total_runs, schedule.total_successes) == (1, 1)


def test_overlapping_ticks_enqueue_one_job_per_schedule(
    sqlite_file_session_factory: sessionmaker,
    clock,
) -> None:
    """Ensure ticks racing in parallel leave a non-concurrent schedule with one active job."""
    schedule_id = _schedule(sqlite_file_session_factory, "developer")
    barrier = threading.Barrier(4)

    def _tick(_: int):
        scheduler = _scheduler(sqlite_file_session_factory, clock)
        barrier.wait()
        return scheduler.tick()

    with ThreadPoolExecutor(max_workers=4) as pool:
        results = list(pool.map(_tick, range(4)))

    job_ids = [job_id for result in results for job_id in result.job_ids]
    assert len(job_ids) == 1
    jobs = _jobs(sqlite_file_session_factory)
    assert [(job.id, job.status) for job in jobs] == [(job_ids[0], "queued")]
    with closing(sqlite_file_session_factory()) as session:
        claims = session.query(ScheduleClaim).all()
        assert [(claim.schedule_id, claim.job_id) for claim in claims] == [
            (schedule_id, job_ids[0])
        ]
