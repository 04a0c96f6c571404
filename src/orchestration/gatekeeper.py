"""Action gatekeeper: per-action policy evaluation with atomic usage counters."""

from __future__ import annotations

import logging
from contextlib import closing
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy.orm import Session

from models import RISK_ORDER, ActionConfig
from orchestration.data_access import (
    consume_action_slot,
    find_action_config,
    get_action_config_by_id,
    reset_daily_usage,
    reset_hourly_usage,
)
from orchestration.errors import ValidationError
from time_utils import ensure_utc, minutes_between, utc_day_start, utc_hour_start, utc_now

logger = logging.getLogger(__name__)

ALLOW = "allow"
DENY = "deny"
REQUIRE_APPROVAL = "require_approval"

NOT_CONFIGURED = "not_configured"
DISABLED = "disabled"
RATE_LIMITED = "rate_limited"
COOLDOWN = "cooldown"
INVALID_RISK_LEVEL = "invalid_risk_level"


@dataclass(frozen=True)
class GateDecision:
    """Outcome of evaluating one proposed action."""

    outcome: str
    action_key: str
    reason: str | None = None
    config_id: int | None = None
    effective_risk: str | None = None

    @property
    def allowed(self) -> bool:
        return self.outcome == ALLOW


def effective_risk_level(configured: str, proposed: str | None) -> str:
    """Return the higher of the configured and proposed risk levels."""
    if proposed is None:
        return configured
    if proposed not in RISK_ORDER:
        raise ValidationError(
            "invalid_risk_level",
            f"Invalid proposed risk level: {proposed}.",
            {"risk_level": proposed},
        )
    return proposed if RISK_ORDER[proposed] > RISK_ORDER[configured] else configured


class ActionGatekeeper:
    """Decide whether a proposed action may run now and spend its budget if so.

    Limits are re-checked inside a single conditional UPDATE, so concurrent
    callers can never push a counter past its limit; a caller whose UPDATE
    matches no row lost the race and is denied.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        now_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._now_provider = now_provider or utc_now

    def evaluate(
        self,
        project_id: str,
        action_key: str,
        agent_slug: str | None,
        proposed_risk: str | None = None,
    ) -> GateDecision:
        now = ensure_utc(self._now_provider())
        day_start = utc_day_start(now)
        hour_start = utc_hour_start(now)
        if proposed_risk is not None and proposed_risk not in RISK_ORDER:
            logger.warning(
                "Rejected proposal with unknown risk level: project_id=%s action=%s risk=%s",
                project_id,
                action_key,
                proposed_risk,
            )
            return GateDecision(DENY, action_key, reason=INVALID_RISK_LEVEL)

        with closing(self._session_factory()) as session:
            config = find_action_config(session, project_id, action_key, agent_slug)
            if config is None:
                logger.info(
                    "Action not configured: project_id=%s action=%s agent=%s",
                    project_id,
                    action_key,
                    agent_slug,
                )
                return GateDecision(DENY, action_key, reason=NOT_CONFIGURED)
            if not config.is_enabled:
                logger.info(
                    "Action disabled: project_id=%s action=%s agent=%s",
                    project_id,
                    action_key,
                    agent_slug,
                )
                return GateDecision(DENY, action_key, reason=DISABLED, config_id=config.id)

            self._roll_windows(session, config, day_start, hour_start)
            config = get_action_config_by_id(session, config.id)

            if _limit_reached(config.times_used_today, config.max_per_day) or _limit_reached(
                config.times_used_this_hour, config.max_per_hour
            ):
                return GateDecision(DENY, action_key, reason=RATE_LIMITED, config_id=config.id)
            if (
                config.last_used_at is not None
                and minutes_between(config.last_used_at, now) < config.cooldown_minutes
            ):
                return GateDecision(DENY, action_key, reason=COOLDOWN, config_id=config.id)

            risk = effective_risk_level(config.risk_level, proposed_risk)
            if config.requires_approval and not (config.auto_approve_low_risk and risk == "low"):
                return GateDecision(
                    REQUIRE_APPROVAL, action_key, config_id=config.id, effective_risk=risk
                )

            consumed = consume_action_slot(
                session,
                config.id,
                now=now,
                day_start=day_start,
                hour_start=hour_start,
                cooldown_bound=now - timedelta(minutes=config.cooldown_minutes),
            )
            if not consumed:
                session.rollback()
                logger.info(
                    "Lost action slot race: project_id=%s action=%s config_id=%s",
                    project_id,
                    action_key,
                    config.id,
                )
                return GateDecision(DENY, action_key, reason=RATE_LIMITED, config_id=config.id)
            session.commit()
            return GateDecision(ALLOW, action_key, config_id=config.id, effective_risk=risk)

    @staticmethod
    def _roll_windows(
        session: Session,
        config: ActionConfig,
        day_start: datetime,
        hour_start: datetime,
    ) -> None:
        """Reset the daily and hourly counters when their window has rolled over."""
        config_id = config.id
        reset = False
        if config.last_reset_at is None or config.last_reset_at < day_start:
            if reset_daily_usage(session, config_id, day_start=day_start):
                logger.info("Daily action usage reset: config_id=%s", config_id)
                reset = True
        if config.hour_window_start is None or config.hour_window_start < hour_start:
            reset = reset_hourly_usage(session, config_id, hour_start=hour_start) or reset
        if reset:
            session.commit()


def _limit_reached(used: int, limit: int | None) -> bool:
    return limit is not None and used >= limit
