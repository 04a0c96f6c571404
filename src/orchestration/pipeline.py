"""Execution pipeline: one agent, one run, one audit record.

Phases run strictly in order (analyze, decide, execute, verify, complete) and
each writes its results to the execution log before the next begins. The log
is committed before every call out to a collaborator so a crashed run still
leaves its trail behind.
"""

from __future__ import annotations

import logging
from contextlib import closing
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

from sqlalchemy.orm import Session

from models import ExecutionLog
from observability import log_context
from orchestration.agent_interface import (
    ActionEffector,
    ActionPolicyView,
    AgentContext,
    AgentDecision,
    AgentExecutor,
    EffectResult,
    ProjectContextProvider,
    ProposedAction,
)
from orchestration.data_access import create_execution_log, list_action_configs_for_agent
from orchestration.errors import (
    AGENT_ERROR,
    EFFECTOR_ERROR,
    EXECUTION_ERROR,
    VERIFICATION_FAILED,
    AgentError,
)
from orchestration.gatekeeper import ALLOW, DENY, ActionGatekeeper
from orchestration.velocity_cache import VelocityCache
from time_utils import ensure_utc, utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExecutionOutcome:
    """Summary of a finished execution log, as the job orchestrator needs it."""

    log_id: int
    agent_slug: str
    status: str
    tasks_created: int = 0
    tasks_assigned: int = 0
    error_code: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status in {"completed", "do_nothing"}


def clamp_confidence(value: float | None) -> float | None:
    """Clamp a confidence score into [0, 1]."""
    if value is None:
        return None
    return max(0.0, min(1.0, float(value)))


class ExecutionPipeline:
    """Run a single agent for a job and record every phase."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        executor: AgentExecutor,
        gatekeeper: ActionGatekeeper,
        effector: ActionEffector,
        *,
        velocity_cache: VelocityCache | None = None,
        context_provider: ProjectContextProvider | None = None,
        now_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._executor = executor
        self._gatekeeper = gatekeeper
        self._effector = effector
        self._velocity_cache = velocity_cache
        self._context_provider = context_provider
        self._now_provider = now_provider or utc_now

    def _now(self) -> datetime:
        return ensure_utc(self._now_provider())

    def execute(
        self,
        *,
        job_id: int,
        project_id: str,
        agent_slug: str,
        schedule_id: int | None = None,
    ) -> ExecutionOutcome:
        """Run every phase for one agent and return the sealed log's summary."""
        with log_context({"job_id": job_id, "project_id": project_id, "agent_slug": agent_slug}):
            with closing(self._session_factory()) as session:
                log = create_execution_log(
                    session,
                    job_id=job_id,
                    project_id=project_id,
                    agent_slug=agent_slug,
                    schedule_id=schedule_id,
                    now=self._now(),
                )
                session.commit()
                logger.info("Execution started: log_id=%s", log.id)
                try:
                    self._run_phases(session, log, job_id, project_id, agent_slug)
                finally:
                    self._complete(session, log)
                logger.info(
                    "Execution finished: log_id=%s status=%s duration_ms=%s",
                    log.id,
                    log.status,
                    log.duration_ms,
                )
                return ExecutionOutcome(
                    log_id=log.id,
                    agent_slug=agent_slug,
                    status=log.status,
                    tasks_created=len(log.tasks_created or []),
                    tasks_assigned=len(log.tasks_assigned or []),
                    error_code=log.error_code,
                )

    def _run_phases(
        self,
        session: Session,
        log: ExecutionLog,
        job_id: int,
        project_id: str,
        agent_slug: str,
    ) -> None:
        try:
            context = self._analyze(session, log, job_id, project_id, agent_slug)
            log.phase = "decide"
            session.commit()
            run = self._executor.run(agent_slug, context)
        except Exception as exc:
            self._record_agent_failure(session, log, exc)
            return

        decision = run.decision
        try:
            self._record_decision(session, log, run.observations, decision)
            if not decision.should_act:
                return
            performed = self._execute(session, log, context, decision)
            self._verify(session, log, performed)
        except Exception as exc:
            self._record_phase_failure(session, log, exc)

    def _analyze(
        self,
        session: Session,
        log: ExecutionLog,
        job_id: int,
        project_id: str,
        agent_slug: str,
    ) -> AgentContext:
        velocity = None
        if self._velocity_cache is not None:
            velocity = self._velocity_cache.get_or_compute(project_id)
        policies = tuple(
            ActionPolicyView(
                action_key=config.action_key,
                action_name=config.action_name,
                action_category=config.action_category,
                risk_level=config.risk_level,
                is_enabled=bool(config.is_enabled),
                requires_approval=bool(config.requires_approval),
            )
            for config in list_action_configs_for_agent(session, project_id, agent_slug)
        )
        recent_activity: dict[str, Any] = {}
        if self._context_provider is not None:
            recent_activity = dict(self._context_provider.recent_activity(project_id))

        log.context_summary = {
            "velocity_known": velocity is not None,
            "enabled_actions": [policy.action_key for policy in policies if policy.is_enabled],
            "recent_activity": sorted(recent_activity),
        }
        log.github_data_used = velocity.summary() if velocity is not None else None
        session.commit()
        return AgentContext(
            job_id=job_id,
            project_id=project_id,
            agent_slug=agent_slug,
            now=self._now(),
            velocity=velocity,
            policies=policies,
            recent_activity=recent_activity,
        )

    def _record_agent_failure(self, session: Session, log: ExecutionLog, exc: Exception) -> None:
        session.rollback()
        logger.exception("Agent failed during %s: log_id=%s", log.phase, log.id)
        if isinstance(exc, AgentError):
            phase = exc.details.get("phase")
            if phase in {"analyze", "decide"}:
                log.phase = phase
            log.error_message = exc.message
        else:
            log.error_message = str(exc) or exc.__class__.__name__
        log.status = "failed"
        log.error_code = AGENT_ERROR
        session.commit()

    def _record_phase_failure(self, session: Session, log: ExecutionLog, exc: Exception) -> None:
        # Uncommitted phase state is discarded; the log keeps its last committed phase.
        session.rollback()
        logger.exception("Execution failed during %s: log_id=%s", log.phase, log.id)
        log.status = "failed"
        log.error_code = EXECUTION_ERROR
        log.error_message = str(exc) or exc.__class__.__name__
        session.commit()

    def _record_decision(
        self,
        session: Session,
        log: ExecutionLog,
        observations: Any,
        decision: AgentDecision,
    ) -> None:
        log.context_summary = {
            **(log.context_summary or {}),
            "observations": dict(observations or {}),
        }
        log.should_act = bool(decision.should_act)
        log.confidence_score = clamp_confidence(decision.confidence_score)
        log.tokens_used = int(decision.tokens_used)
        log.estimated_cost_cents = float(decision.estimated_cost_cents)
        log.suggestions_created = list(decision.suggestion_ids)
        log.output_data = {
            "reason": decision.reason,
            "decision": dict(decision.output),
        }
        if not decision.should_act:
            log.status = "do_nothing"
            log.do_nothing_reason = decision.reason or "No action warranted"
            logger.info(
                "Agent chose to do nothing: log_id=%s confidence=%s reason=%s",
                log.id,
                log.confidence_score,
                log.do_nothing_reason,
            )
        session.commit()

    def _execute(
        self,
        session: Session,
        log: ExecutionLog,
        context: AgentContext,
        decision: AgentDecision,
    ) -> list[tuple[ProposedAction, EffectResult]]:
        log.phase = "execute"
        log.actions_proposed = len(decision.actions)
        session.commit()

        rejections: list[dict[str, Any]] = []
        pending_approval: list[dict[str, Any]] = []
        failures: list[dict[str, Any]] = []
        performed: list[tuple[ProposedAction, EffectResult]] = []
        approved = 0
        executed = 0
        tasks_created: list[str] = []
        tasks_assigned: list[str] = []
        suggestions: list[str] = list(log.suggestions_created or [])

        for action in decision.actions:
            gate = self._gatekeeper.evaluate(
                context.project_id,
                action.action_key,
                context.agent_slug,
                action.risk_level,
            )
            if gate.outcome == DENY:
                rejections.append({"action_key": action.action_key, "reason": gate.reason})
                continue
            if gate.outcome != ALLOW:
                pending_approval.append(
                    {
                        "action_key": action.action_key,
                        "risk_level": gate.effective_risk,
                        "payload": dict(action.payload),
                        "reason": action.reason,
                    }
                )
                continue
            approved += 1
            try:
                result = self._effector.perform(action, context)
            except Exception as exc:
                logger.exception(
                    "Effector failed: log_id=%s action=%s", log.id, action.action_key
                )
                failures.append(
                    {"action_key": action.action_key, "code": EFFECTOR_ERROR, "error": str(exc)}
                )
                continue
            if not result.success:
                failures.append(
                    {
                        "action_key": action.action_key,
                        "code": EFFECTOR_ERROR,
                        "error": result.message or "Action reported failure.",
                    }
                )
                continue
            executed += 1
            performed.append((action, result))
            tasks_created.extend(result.task_ids)
            tasks_assigned.extend(result.assigned_task_ids)
            suggestions.extend(result.suggestion_ids)

        log.actions_approved = approved
        log.actions_executed = executed
        log.actions_rejected = len(rejections)
        log.tasks_created = tasks_created
        log.tasks_assigned = tasks_assigned
        log.suggestions_created = suggestions
        log.output_data = {
            **(log.output_data or {}),
            "rejections": rejections,
            "pending_approval": pending_approval,
            "failures": failures,
        }
        session.commit()
        return performed

    def _verify(
        self,
        session: Session,
        log: ExecutionLog,
        performed: list[tuple[ProposedAction, EffectResult]],
    ) -> None:
        log.phase = "verify"
        failures = list((log.output_data or {}).get("failures", []))
        for action, result in performed:
            try:
                verified = self._effector.verify(action, result)
            except Exception as exc:
                logger.exception(
                    "Verification raised: log_id=%s action=%s", log.id, action.action_key
                )
                failures.append(
                    {"action_key": action.action_key, "code": VERIFICATION_FAILED, "error": str(exc)}
                )
                continue
            if not verified:
                failures.append(
                    {
                        "action_key": action.action_key,
                        "code": VERIFICATION_FAILED,
                        "error": "Post-condition check failed.",
                    }
                )
        if failures:
            log.status = "failed"
            codes = {failure["code"] for failure in failures}
            log.error_code = EFFECTOR_ERROR if EFFECTOR_ERROR in codes else VERIFICATION_FAILED
            log.error_message = "; ".join(
                f"{failure['action_key']}: {failure['error']}" for failure in failures
            )
            logger.warning("Execution actions failed: log_id=%s failures=%s", log.id, len(failures))
        log.output_data = {**(log.output_data or {}), "failures": failures}
        session.commit()

    def _complete(self, session: Session, log: ExecutionLog) -> None:
        completed_at = self._now()
        if log.status not in {"failed", "do_nothing"}:
            log.status = "completed"
        log.phase = "complete"
        log.duration_ms = int((completed_at - ensure_utc(log.started_at)).total_seconds() * 1000)
        log.completed_at = completed_at
        session.commit()
