"""Celery entry point for the orchestration engine.

Beat drives the scheduler tick, the timeout sweeper and retry promotion;
workers run jobs. The task bodies delegate to plain functions that take
their collaborators as arguments so they can be exercised without a broker.
"""

from __future__ import annotations

import logging
from typing import Any, Callable

from sqlalchemy.orm import Session

from celery import Celery
from celery.signals import setup_logging

from config import settings
from observability import configure_logging
from orchestration.agent_interface import (
    ActionEffector,
    AgentContext,
    EffectResult,
    GitHubMetricsClient,
    ProposedAction,
    RepositoryActivity,
)
from orchestration.agents import AgentRegistry
from orchestration.errors import ConfigurationError
from orchestration.gatekeeper import ActionGatekeeper
from orchestration.job_orchestrator import JobOrchestrator
from orchestration.pipeline import ExecutionPipeline
from orchestration.scheduler import Scheduler
from orchestration.velocity_cache import VelocityCache
from services.database import get_sync_session

LOGGER = logging.getLogger(__name__)

celery_app = Celery("orchestration")
celery_app.conf.broker_url = settings.celery.broker_url
celery_app.conf.result_backend = settings.celery.result_backend
celery_app.conf.task_default_queue = settings.celery.queue_name
celery_app.conf.task_serializer = "json"
celery_app.conf.result_serializer = "json"
celery_app.conf.accept_content = ["json"]
celery_app.conf.enable_utc = True
celery_app.conf.timezone = "UTC"

beat_schedule = celery_app.conf.get("beat_schedule")
if beat_schedule is None:
    beat_schedule = {}
beat_schedule["orchestration.tick"] = {
    "task": "orchestration.tick",
    "schedule": float(settings.scheduler.tick_seconds),
}
beat_schedule["orchestration.sweep_timeouts"] = {
    "task": "orchestration.sweep_timeouts",
    "schedule": float(settings.scheduler.sweep_interval_seconds),
}
beat_schedule["orchestration.promote_retries"] = {
    "task": "orchestration.promote_retries",
    "schedule": float(settings.scheduler.retry_scan_interval_seconds),
}
celery_app.conf.beat_schedule = beat_schedule


def _session_factory() -> Session:
    """Return a new synchronous SQLAlchemy session for orchestration tasks."""
    return get_sync_session()


class _UnconfiguredGitHubClient(GitHubMetricsClient):
    """Placeholder client used until a GitHub integration is wired in."""

    def fetch_metrics(self, project_id: str, period_start, period_end) -> RepositoryActivity:
        raise ConfigurationError(
            "github_client_not_configured",
            "No GitHub metrics client is configured.",
            {"project_id": project_id},
        )


class _UnconfiguredEffector(ActionEffector):
    """Placeholder effector that refuses every action."""

    def perform(self, action: ProposedAction, context: AgentContext) -> EffectResult:
        raise ConfigurationError(
            "effector_not_configured",
            f"No effector is configured for action '{action.action_key}'.",
            {"action_key": action.action_key},
        )

    def verify(self, action: ProposedAction, result: EffectResult) -> bool:
        return False


def _default_github_client() -> GitHubMetricsClient:
    return _UnconfiguredGitHubClient()


def _default_effector() -> ActionEffector:
    return _UnconfiguredEffector()


_github_client_factory: Callable[[], GitHubMetricsClient] = _default_github_client
_effector_factory: Callable[[], ActionEffector] = _default_effector


def _dispatch_job(job_id: int) -> None:
    """Hand a queued job to a worker."""
    run_job.apply_async(args=(job_id,))


def _default_pipeline_factory() -> ExecutionPipeline:
    """Build the production execution pipeline."""
    return ExecutionPipeline(
        session_factory=_session_factory,
        executor=AgentRegistry(),
        gatekeeper=ActionGatekeeper(_session_factory),
        effector=_effector_factory(),
        velocity_cache=VelocityCache(_session_factory, _github_client_factory()),
    )


def _default_orchestrator_factory() -> JobOrchestrator:
    """Build the production job orchestrator."""
    return JobOrchestrator(
        _session_factory,
        _default_pipeline_factory(),
        dispatcher=_dispatch_job,
    )


def _default_scheduler_factory() -> Scheduler:
    """Build the production scheduler."""
    return Scheduler(_session_factory, _dispatch_job)


_orchestrator_factory: Callable[[], JobOrchestrator] = _default_orchestrator_factory
_scheduler_factory: Callable[[], Scheduler] = _default_scheduler_factory


def run_scheduler_tick(
    *,
    scheduler_factory: Callable[[], Scheduler] | None = None,
) -> dict[str, Any]:
    """Run one scheduler tick and summarize it."""
    scheduler = (scheduler_factory or _scheduler_factory)()
    result = scheduler.tick()
    return {
        "evaluated": result.evaluated,
        "enqueued": len(result.job_ids),
        "job_ids": list(result.job_ids),
    }


def process_timeouts(
    *,
    orchestrator_factory: Callable[[], JobOrchestrator] | None = None,
    batch_size: int | None = None,
) -> dict[str, Any]:
    """Time out jobs past their deadline."""
    orchestrator = (orchestrator_factory or _orchestrator_factory)()
    timed_out = orchestrator.sweep_timeouts(batch_size or settings.scheduler.retry_scan_batch_size)
    return {"timed_out": len(timed_out), "job_ids": timed_out}


def process_due_retries(
    *,
    orchestrator_factory: Callable[[], JobOrchestrator] | None = None,
    batch_size: int | None = None,
) -> dict[str, Any]:
    """Queue and dispatch retry jobs whose backoff has elapsed."""
    orchestrator = (orchestrator_factory or _orchestrator_factory)()
    promoted = orchestrator.promote_due_retries(
        batch_size or settings.scheduler.retry_scan_batch_size
    )
    return {"promoted": len(promoted), "job_ids": promoted}


def execute_job(
    job_id: int,
    *,
    orchestrator_factory: Callable[[], JobOrchestrator] | None = None,
) -> dict[str, Any]:
    """Run one job to completion on this worker."""
    orchestrator = (orchestrator_factory or _orchestrator_factory)()
    result = orchestrator.run_job(job_id)
    return {
        "job_id": result.job_id,
        "status": result.status,
        "discarded": result.discarded,
        "agents_executed": result.agents_executed,
        "agents_succeeded": result.agents_succeeded,
        "agents_failed": result.agents_failed,
        "retry_job_id": result.retry_job_id,
        "error_code": result.error_code,
    }


def enqueue_manual_job(
    project_id: str,
    agent_slugs: list[str] | None = None,
    user_id: str | None = None,
    *,
    orchestrator_factory: Callable[[], JobOrchestrator] | None = None,
) -> int | None:
    """Create and dispatch a manual job for a project."""
    orchestrator = (orchestrator_factory or _orchestrator_factory)()
    return orchestrator.enqueue_job(project_id, agent_slugs, "manual", user_id)


def retry_failed_jobs(
    job_id: int | None = None,
    project_id: str | None = None,
    user_id: str | None = None,
    *,
    orchestrator_factory: Callable[[], JobOrchestrator] | None = None,
) -> list[int]:
    """Retry one failed job, or every unretried failed job of a project."""
    orchestrator = (orchestrator_factory or _orchestrator_factory)()
    if job_id is not None:
        retry_id = orchestrator.retry_failed_job(job_id, user_id)
        return [retry_id] if retry_id is not None else []
    return orchestrator.retry_all_failed(project_id, user_id)


@celery_app.task(name="orchestration.tick")
def tick() -> dict[str, Any]:
    """Celery beat job that enqueues due agent schedules."""
    return run_scheduler_tick()


@celery_app.task(name="orchestration.sweep_timeouts")
def sweep_timeouts() -> dict[str, Any]:
    """Celery beat job that times out overdue jobs."""
    return process_timeouts()


@celery_app.task(name="orchestration.promote_retries")
def promote_retries() -> dict[str, Any]:
    """Celery beat job that promotes due retry jobs."""
    return process_due_retries()


@celery_app.task(
    bind=True,
    name="orchestration.run_job",
    acks_late=True,
    reject_on_worker_lost=True,
)
def run_job(self, job_id: int) -> dict[str, Any]:
    """Run a queued job on a worker."""
    LOGGER.info("Worker picked up job: job_id=%s task_id=%s", job_id, getattr(self.request, "id", None))
    return execute_job(job_id)


@setup_logging.connect
def _configure_worker_logging(**kwargs: Any) -> None:
    """Replace Celery's logging setup with the orchestration formatter."""
    configure_logging(level=settings.log_level, json_output=settings.log_json)
