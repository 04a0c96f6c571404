"""Built-in rule-based agent capabilities and the registry that runs them by slug.

Each variant reads the velocity snapshot and recent activity from its context,
proposes the enabled actions its heuristics call for, and otherwise chooses to
do nothing. Confidence starts at a base of 0.5 and grows with each signal.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Iterable, Mapping

from orchestration.agent_interface import (
    AgentCapability,
    AgentContext,
    AgentDecision,
    AgentRun,
    ProposedAction,
)
from orchestration.errors import AGENT_ERROR, AgentError
from time_utils import ensure_utc

logger = logging.getLogger(__name__)

BASE_CONFIDENCE = 0.5
RESEARCH_LABELS = ("research", "spike", "investigation", "exploration")
DOC_LABELS = ("docs", "documentation", "readme")
UI_LABELS = ("ui", "ux", "design", "frontend", "css", "styling")
COMPETITOR_ANALYSIS_INTERVAL = timedelta(days=7)


def _has_label(labels: Iterable[str], needles: Iterable[str]) -> bool:
    lowered = [label.lower() for label in labels]
    return any(needle in label for label in lowered for needle in needles)


class RuleBasedAgent:
    """Shared analyze step and decision assembly for the built-in agents."""

    slug = "general"
    no_action_reason = "No tasks requiring attention"

    def analyze(self, context: AgentContext) -> Mapping[str, Any]:
        velocity = context.velocity
        if velocity is None:
            return {"velocity_known": False}
        return {
            "velocity_known": True,
            "prs_opened": velocity.prs_opened,
            "prs_merged": velocity.prs_merged,
            "issues_opened": velocity.issues_opened,
            "hot_spots": len(velocity.hot_spots),
            "labels": sorted(velocity.issues_by_label),
            "velocity_score": velocity.velocity_score,
        }

    def decide(self, context: AgentContext, observations: Mapping[str, Any]) -> AgentDecision:
        raise NotImplementedError

    def _decision(
        self,
        context: AgentContext,
        action_keys: list[str],
        confidence: float,
        *,
        acting_reason: str,
        output: Mapping[str, Any] | None = None,
    ) -> AgentDecision:
        if not action_keys:
            return AgentDecision(
                should_act=False,
                confidence_score=min(1.0, confidence),
                reason=self.no_action_reason,
                output=dict(output or {}),
            )
        risk_by_key = {policy.action_key: policy.risk_level for policy in context.policies}
        actions = tuple(
            ProposedAction(
                action_key=key,
                payload={"project_id": context.project_id, "agent_slug": context.agent_slug},
                risk_level=risk_by_key.get(key),
                reason=acting_reason,
            )
            for key in action_keys
        )
        return AgentDecision(
            should_act=True,
            confidence_score=min(1.0, confidence),
            reason=acting_reason,
            actions=actions,
            output=dict(output or {}),
        )


class DeveloperAgent(RuleBasedAgent):
    slug = "developer"
    no_action_reason = "No significant activity requiring developer attention"

    def decide(self, context: AgentContext, observations: Mapping[str, Any]) -> AgentDecision:
        if not observations.get("velocity_known"):
            return AgentDecision.do_nothing("No GitHub data available for analysis", 0.9)
        enabled = set(context.enabled_action_keys)
        keys: list[str] = []
        confidence = BASE_CONFIDENCE
        if observations["prs_opened"] > 3 and "analyze_code" in enabled:
            keys.append("analyze_code")
            confidence += 0.2
        if observations["issues_opened"] > 5 and "create_issue" in enabled:
            keys.append("create_issue")
            confidence += 0.1
        if observations["hot_spots"] > 0 and "analyze_code" in enabled:
            if "analyze_code" not in keys:
                keys.append("analyze_code")
            confidence += 0.15
        return self._decision(
            context,
            keys,
            confidence,
            acting_reason=f"Found {len(keys)} actionable items based on GitHub activity",
            output={
                "prs_opened": observations["prs_opened"],
                "issues_opened": observations["issues_opened"],
                "hot_spots": observations["hot_spots"],
            },
        )


class ResearcherAgent(RuleBasedAgent):
    slug = "researcher"
    no_action_reason = "No research tasks identified at this time"

    def decide(self, context: AgentContext, observations: Mapping[str, Any]) -> AgentDecision:
        enabled = set(context.enabled_action_keys)
        keys: list[str] = []
        confidence = BASE_CONFIDENCE
        if observations.get("velocity_known"):
            if _has_label(observations["labels"], RESEARCH_LABELS) and "market_research" in enabled:
                keys.append("market_research")
                confidence += 0.3
        if "competitor_analysis" in enabled and self._competitor_analysis_due(context):
            keys.append("competitor_analysis")
            confidence += 0.2
        return self._decision(
            context,
            keys,
            confidence,
            acting_reason=f"Found {len(keys)} research opportunities",
        )

    @staticmethod
    def _competitor_analysis_due(context: AgentContext) -> bool:
        last = context.recent_activity.get("last_competitor_analysis")
        if last is None:
            return True
        if isinstance(last, str):
            last = datetime.fromisoformat(last)
        return ensure_utc(context.now) - ensure_utc(last) > COMPETITOR_ANALYSIS_INTERVAL


class MarketerAgent(RuleBasedAgent):
    slug = "marketer"
    no_action_reason = "No significant activity warranting marketing content"

    def decide(self, context: AgentContext, observations: Mapping[str, Any]) -> AgentDecision:
        enabled = set(context.enabled_action_keys)
        keys: list[str] = []
        confidence = BASE_CONFIDENCE
        prs_merged = observations.get("prs_merged", 0) if observations.get("velocity_known") else 0
        if prs_merged >= 5 and "draft_blog_post" in enabled:
            keys.append("draft_blog_post")
            confidence += 0.3
        if prs_merged >= 2 and "draft_social_post" in enabled:
            keys.append("draft_social_post")
            confidence += 0.2
        return self._decision(
            context,
            keys,
            confidence,
            acting_reason=(
                f"Found {len(keys)} marketing opportunities based on development activity"
            ),
            output={"prs_merged": prs_merged},
        )


class SeoWriterAgent(RuleBasedAgent):
    slug = "seo_writer"
    no_action_reason = "No content changes requiring SEO attention"

    def decide(self, context: AgentContext, observations: Mapping[str, Any]) -> AgentDecision:
        enabled = set(context.enabled_action_keys)
        keys: list[str] = []
        confidence = BASE_CONFIDENCE
        if observations.get("velocity_known") and _has_label(observations["labels"], DOC_LABELS):
            if "meta_suggestions" in enabled:
                keys.append("meta_suggestions")
                confidence += 0.25
            if "keyword_research" in enabled:
                keys.append("keyword_research")
                confidence += 0.2
        return self._decision(
            context,
            keys,
            confidence,
            acting_reason=f"Found {len(keys)} SEO optimization opportunities",
        )


class DesignerAgent(RuleBasedAgent):
    slug = "designer"
    no_action_reason = "No UI/UX changes requiring design review"

    def decide(self, context: AgentContext, observations: Mapping[str, Any]) -> AgentDecision:
        enabled = set(context.enabled_action_keys)
        keys: list[str] = []
        confidence = BASE_CONFIDENCE
        if observations.get("velocity_known") and _has_label(observations["labels"], UI_LABELS):
            if "analyze_visual" in enabled:
                keys.append("analyze_visual")
                confidence += 0.3
            if "responsive_audit" in enabled:
                keys.append("responsive_audit")
                confidence += 0.2
        return self._decision(
            context,
            keys,
            confidence,
            acting_reason=f"Found {len(keys)} design review opportunities",
        )


class GeneralAgent(RuleBasedAgent):
    slug = "general"
    no_action_reason = "No general tasks requiring attention"

    def decide(self, context: AgentContext, observations: Mapping[str, Any]) -> AgentDecision:
        keys: list[str] = []
        confidence = BASE_CONFIDENCE
        if "update_status" in context.enabled_action_keys:
            keys.append("update_status")
            confidence += 0.1
        return self._decision(
            context,
            keys,
            confidence,
            acting_reason=f"Found {len(keys)} general tasks to process",
        )


def default_capabilities() -> dict[str, AgentCapability]:
    """Return the built-in capability for each known agent slug."""
    agents: list[RuleBasedAgent] = [
        DeveloperAgent(),
        ResearcherAgent(),
        MarketerAgent(),
        SeoWriterAgent(),
        DesignerAgent(),
        GeneralAgent(),
    ]
    return {agent.slug: agent for agent in agents}


class AgentRegistry:
    """Run agent capabilities by slug."""

    def __init__(self, capabilities: Mapping[str, AgentCapability] | None = None) -> None:
        self._capabilities = dict(
            default_capabilities() if capabilities is None else capabilities
        )

    def register(self, agent_slug: str, capability: AgentCapability) -> None:
        """Register or replace the capability for a slug."""
        self._capabilities[agent_slug] = capability

    def get(self, agent_slug: str) -> AgentCapability | None:
        return self._capabilities.get(agent_slug)

    def run(self, agent_slug: str, context: AgentContext) -> AgentRun:
        """Run analyze then decide for an agent.

        Raises:
            AgentError: If the capability raises; ``details["phase"]`` names
                the step that failed.
        """
        if not context.enabled_action_keys:
            return AgentRun(
                observations={},
                decision=AgentDecision.do_nothing("No actions are enabled for this agent"),
            )
        capability = self._capabilities.get(agent_slug)
        if capability is None:
            logger.info("No capability registered for agent %s.", agent_slug)
            return AgentRun(
                observations={},
                decision=AgentDecision.do_nothing(f"Unknown agent type: {agent_slug}"),
            )
        try:
            observations = capability.analyze(context)
        except Exception as exc:
            raise AgentError(AGENT_ERROR, str(exc), {"phase": "analyze"}) from exc
        try:
            decision = capability.decide(context, observations)
        except Exception as exc:
            raise AgentError(
                AGENT_ERROR,
                str(exc),
                {"phase": "decide", "observations": dict(observations)},
            ) from exc
        return AgentRun(observations=observations, decision=decision)
