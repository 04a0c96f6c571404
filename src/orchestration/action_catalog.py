"""Default action policies seeded for every project."""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy.orm import Session

from orchestration.data_access import ActionConfigInput, create_action_config, get_action_config
from time_utils import utc_now

logger = logging.getLogger(__name__)

DEFAULT_COOLDOWN_MINUTES = 15

# (action_key, action_name, category, agent_slug, enabled, requires_approval, risk, per_day, per_hour)
DEFAULT_ACTIONS: tuple[tuple, ...] = (
    ("create_pr_draft", "Create Draft PR", "github", "developer", False, True, "high", 5, 2),
    ("add_pr_comment", "Comment on PR", "github", "developer", False, True, "medium", 20, 5),
    ("create_issue", "Create GitHub Issue", "github", "developer", False, True, "medium", 10, 3),
    ("analyze_code", "Analyze Code Changes", "analysis", "developer", True, False, "low", 50, 10),
    ("market_research", "Conduct Market Research", "analysis", "researcher", True, False, "low", 10, 3),
    ("competitor_analysis", "Analyze Competitors", "analysis", "researcher", True, False, "low", 5, 2),
    ("create_research_note", "Create Research Note", "content", "researcher", True, True, "low", 20, 5),
    ("draft_blog_post", "Draft Blog Post", "content", "marketer", False, True, "medium", 3, 1),
    ("draft_social_post", "Draft Social Media Post", "content", "marketer", False, True, "low", 10, 3),
    ("analyze_campaign", "Analyze Campaign Performance", "analysis", "marketer", True, False, "low", 10, 3),
    ("keyword_research", "Keyword Research", "analysis", "seo_writer", True, False, "low", 20, 5),
    ("draft_seo_content", "Draft SEO Content", "content", "seo_writer", False, True, "medium", 5, 2),
    ("meta_suggestions", "Suggest Meta Tags", "content", "seo_writer", True, True, "low", 30, 10),
    ("analyze_visual", "Analyze Visual Design", "analysis", "designer", True, False, "low", 20, 5),
    ("responsive_audit", "Responsive Design Audit", "analysis", "designer", True, False, "low", 10, 3),
    ("create_task", "Create Task", "task", None, True, True, "low", 50, 15),
    ("send_notification", "Send Notification", "notification", None, True, False, "low", 100, 20),
    ("update_status", "Update Status", "task", None, True, False, "low", 100, 30),
)


def default_action_inputs(project_id: str) -> list[ActionConfigInput]:
    """Build the default policy inputs for a project."""
    return [
        ActionConfigInput(
            project_id=project_id,
            action_key=key,
            action_name=name,
            action_category=category,
            agent_slug=agent_slug,
            is_enabled=enabled,
            requires_approval=approval,
            risk_level=risk,
            max_per_day=per_day,
            max_per_hour=per_hour,
            cooldown_minutes=DEFAULT_COOLDOWN_MINUTES,
        )
        for key, name, category, agent_slug, enabled, approval, risk, per_day, per_hour in DEFAULT_ACTIONS
    ]


def seed_default_action_configs(
    session: Session,
    project_id: str,
    *,
    now: datetime | None = None,
) -> int:
    """Insert any missing default policies for a project; return how many were added.

    Existing rows are left untouched, so re-running is safe. The caller commits.
    """
    timestamp = now or utc_now()
    created = 0
    for config_input in default_action_inputs(project_id):
        if get_action_config(
            session, project_id, config_input.action_key, config_input.agent_slug
        ):
            continue
        create_action_config(session, config_input, now=timestamp)
        created += 1
    if created:
        logger.info("Seeded default action policies: project_id=%s created=%s", project_id, created)
    return created
