"""Collaborator interfaces and payload types consumed by the orchestration engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Mapping, Protocol

if TYPE_CHECKING:
    from orchestration.velocity_cache import VelocitySnapshot


@dataclass(frozen=True)
class ActionPolicyView:
    """Read-only view of an action policy as an agent sees it."""

    action_key: str
    action_name: str
    action_category: str
    risk_level: str
    is_enabled: bool
    requires_approval: bool


@dataclass(frozen=True)
class AgentContext:
    """Everything an agent is given to decide on one run."""

    job_id: int
    project_id: str
    agent_slug: str
    now: datetime
    velocity: VelocitySnapshot | None = None
    policies: tuple[ActionPolicyView, ...] = ()
    recent_activity: Mapping[str, Any] = field(default_factory=dict)

    @property
    def enabled_action_keys(self) -> tuple[str, ...]:
        """Return the keys of the actions the agent may propose."""
        return tuple(policy.action_key for policy in self.policies if policy.is_enabled)


@dataclass(frozen=True)
class ProposedAction:
    """An action an agent wants taken."""

    action_key: str
    payload: Mapping[str, Any] = field(default_factory=dict)
    risk_level: str | None = None
    reason: str | None = None


@dataclass(frozen=True)
class AgentDecision:
    """What an agent decided after analyzing its context."""

    should_act: bool
    confidence_score: float
    reason: str | None = None
    actions: tuple[ProposedAction, ...] = ()
    output: Mapping[str, Any] = field(default_factory=dict)
    suggestion_ids: tuple[str, ...] = ()
    tokens_used: int = 0
    estimated_cost_cents: float = 0.0

    @staticmethod
    def do_nothing(reason: str, confidence_score: float = 1.0) -> "AgentDecision":
        """Build a decision that no action is warranted."""
        return AgentDecision(should_act=False, confidence_score=confidence_score, reason=reason)


@dataclass(frozen=True)
class AgentRun:
    """Observations and decision produced by one agent invocation."""

    observations: Mapping[str, Any]
    decision: AgentDecision


@dataclass(frozen=True)
class PullRequestRecord:
    """Pull request fields used for velocity metrics."""

    number: int
    author: str | None
    created_at: datetime
    merged_at: datetime | None = None
    closed_at: datetime | None = None
    additions: int = 0
    deletions: int = 0
    changed_files: int = 0
    labels: tuple[str, ...] = ()


@dataclass(frozen=True)
class IssueRecord:
    """Issue fields used for velocity metrics."""

    number: int
    author: str | None
    created_at: datetime
    closed_at: datetime | None = None
    labels: tuple[str, ...] = ()


@dataclass(frozen=True)
class RepositoryActivity:
    """Raw repository activity for one period."""

    pull_requests: tuple[PullRequestRecord, ...] = ()
    issues: tuple[IssueRecord, ...] = ()
    commits_count: int | None = None
    hot_spots: tuple[Mapping[str, Any], ...] = ()


@dataclass(frozen=True)
class EffectResult:
    """Outcome reported by the effector for one performed action."""

    success: bool
    message: str | None = None
    task_ids: tuple[str, ...] = ()
    assigned_task_ids: tuple[str, ...] = ()
    suggestion_ids: tuple[str, ...] = ()
    output: Mapping[str, Any] = field(default_factory=dict)


class AgentCapability(Protocol):
    """Protocol for one agent variant."""

    def analyze(self, context: AgentContext) -> Mapping[str, Any]:
        """Return observations about the context."""
        ...

    def decide(self, context: AgentContext, observations: Mapping[str, Any]) -> AgentDecision:
        """Decide whether and how to act on the observations."""
        ...


class AgentExecutor(Protocol):
    """Protocol for running an agent by slug."""

    def run(self, agent_slug: str, context: AgentContext) -> AgentRun:
        """Run the agent's analyze and decide steps."""
        ...


class GitHubMetricsClient(Protocol):
    """Protocol for fetching raw repository activity."""

    def fetch_metrics(
        self,
        project_id: str,
        period_start: datetime,
        period_end: datetime,
    ) -> RepositoryActivity:
        """Return repository activity between period_start and period_end."""
        ...


class ActionEffector(Protocol):
    """Protocol for performing approved actions."""

    def perform(self, action: ProposedAction, context: AgentContext) -> EffectResult:
        """Perform an action and report what happened."""
        ...

    def verify(self, action: ProposedAction, result: EffectResult) -> bool:
        """Return whether the action's post-conditions hold."""
        ...


class ProjectContextProvider(Protocol):
    """Protocol for recent project activity supplied to agents."""

    def recent_activity(self, project_id: str) -> Mapping[str, Any]:
        """Return a summary of recent project activity."""
        ...
