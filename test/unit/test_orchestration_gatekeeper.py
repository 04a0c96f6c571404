"""Unit tests for the action gatekeeper."""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from contextlib import closing
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.orm import sessionmaker

from models import ActionConfig
from orchestration.data_access import ActionConfigInput, create_action_config, reset_daily_usage
from orchestration.errors import ValidationError
from orchestration.gatekeeper import (
    ALLOW,
    COOLDOWN,
    DENY,
    DISABLED,
    INVALID_RISK_LEVEL,
    NOT_CONFIGURED,
    RATE_LIMITED,
    REQUIRE_APPROVAL,
    ActionGatekeeper,
    effective_risk_level,
)


def _seed_config(session_factory: sessionmaker, **overrides) -> int:
    """Insert an enabled, auto-approved action policy and return its id."""
    values = {
        "project_id": "proj-1",
        "action_key": "analyze_code",
        "action_name": "Analyze Code",
        "action_category": "analysis",
        "agent_slug": "developer",
        "is_enabled": True,
        "requires_approval": False,
        "risk_level": "low",
        "max_per_day": 10,
        "max_per_hour": 3,
        "cooldown_minutes": 0,
    }
    values.update(overrides)
    with closing(session_factory()) as session:
        config = create_action_config(session, ActionConfigInput(**values))
        session.commit()
        return config.id


def _load(session_factory: sessionmaker, config_id: int) -> ActionConfig:
    with closing(session_factory()) as session:
        return session.get(ActionConfig, config_id)


def test_effective_risk_is_the_higher_level() -> None:
    """Ensure a proposal can raise but never lower the configured risk."""
    assert effective_risk_level("low", None) == "low"
    assert effective_risk_level("low", "high") == "high"
    assert effective_risk_level("high", "low") == "high"
    with pytest.raises(ValidationError):
        effective_risk_level("low", "extreme")


def test_missing_config_is_denied(sqlite_session_factory: sessionmaker, clock) -> None:
    """Ensure an unconfigured action is denied as not configured."""
    gatekeeper = ActionGatekeeper(sqlite_session_factory, now_provider=clock)

    decision = gatekeeper.evaluate("proj-1", "create_pr_draft", "developer")

    assert decision.outcome == DENY
    assert decision.reason == NOT_CONFIGURED
    assert decision.allowed is False


def test_disabled_config_is_denied(sqlite_session_factory: sessionmaker, clock) -> None:
    """Ensure a disabled action is denied without touching its counters."""
    config_id = _seed_config(sqlite_session_factory, is_enabled=False)
    gatekeeper = ActionGatekeeper(sqlite_session_factory, now_provider=clock)

    decision = gatekeeper.evaluate("proj-1", "analyze_code", "developer")

    assert (decision.outcome, decision.reason) == (DENY, DISABLED)
    assert _load(sqlite_session_factory, config_id).times_used_total == 0


def test_agent_agnostic_policy_applies_to_any_agent(
    sqlite_session_factory: sessionmaker,
    clock,
) -> None:
    """Ensure agents fall back to the agent-agnostic policy."""
    _seed_config(sqlite_session_factory, action_key="update_status", action_category="task", agent_slug=None)
    gatekeeper = ActionGatekeeper(sqlite_session_factory, now_provider=clock)

    assert gatekeeper.evaluate("proj-1", "update_status", "marketer").outcome == ALLOW


def test_hourly_limit_allows_three_of_five(sqlite_session_factory: sessionmaker, clock) -> None:
    """Ensure five proposals within an hour under a limit of three yield three allows."""
    config_id = _seed_config(sqlite_session_factory, max_per_hour=3)
    gatekeeper = ActionGatekeeper(sqlite_session_factory, now_provider=clock)

    decisions = []
    for _ in range(5):
        decisions.append(gatekeeper.evaluate("proj-1", "analyze_code", "developer"))
        clock.advance(minutes=5)

    assert [decision.outcome for decision in decisions] == [ALLOW, ALLOW, ALLOW, DENY, DENY]
    assert {decision.reason for decision in decisions[3:]} == {RATE_LIMITED}
    config = _load(sqlite_session_factory, config_id)
    assert config.times_used_this_hour == 3
    assert config.times_used_today == 3


def test_hourly_bucket_resets_on_next_clock_hour(sqlite_session_factory: sessionmaker, clock) -> None:
    """Ensure the hourly counter starts over at the next clock hour."""
    _seed_config(sqlite_session_factory, max_per_hour=1)
    gatekeeper = ActionGatekeeper(sqlite_session_factory, now_provider=clock)

    assert gatekeeper.evaluate("proj-1", "analyze_code", "developer").outcome == ALLOW
    clock.advance(minutes=30)
    assert gatekeeper.evaluate("proj-1", "analyze_code", "developer").reason == RATE_LIMITED
    clock.advance(minutes=31)
    assert gatekeeper.evaluate("proj-1", "analyze_code", "developer").outcome == ALLOW


def test_daily_limit_resets_at_utc_midnight(sqlite_session_factory: sessionmaker, clock) -> None:
    """Ensure the daily counter caps usage and resets once the UTC day rolls over."""
    config_id = _seed_config(sqlite_session_factory, max_per_day=2, max_per_hour=None)
    gatekeeper = ActionGatekeeper(sqlite_session_factory, now_provider=clock)

    outcomes = []
    for _ in range(3):
        outcomes.append(gatekeeper.evaluate("proj-1", "analyze_code", "developer").outcome)
        clock.advance(hours=2)
    assert outcomes == [ALLOW, ALLOW, DENY]

    clock.now = datetime(2025, 1, 16, 0, 5, tzinfo=timezone.utc)
    assert gatekeeper.evaluate("proj-1", "analyze_code", "developer").outcome == ALLOW
    config = _load(sqlite_session_factory, config_id)
    assert config.times_used_today == 1
    assert config.times_used_total == 3
    assert config.last_reset_at == datetime(2025, 1, 16, tzinfo=timezone.utc)


def test_cooldown_blocks_until_elapsed(sqlite_session_factory: sessionmaker, clock) -> None:
    """Ensure a recently used action is denied until its cooldown passes."""
    _seed_config(sqlite_session_factory, cooldown_minutes=15, max_per_hour=None)
    gatekeeper = ActionGatekeeper(sqlite_session_factory, now_provider=clock)

    assert gatekeeper.evaluate("proj-1", "analyze_code", "developer").outcome == ALLOW
    clock.advance(minutes=10)
    decision = gatekeeper.evaluate("proj-1", "analyze_code", "developer")
    assert (decision.outcome, decision.reason) == (DENY, COOLDOWN)
    clock.advance(minutes=5)
    assert gatekeeper.evaluate("proj-1", "analyze_code", "developer").outcome == ALLOW


def test_approval_required_consumes_no_quota(sqlite_session_factory: sessionmaker, clock) -> None:
    """Ensure actions needing approval are held back without spending budget."""
    config_id = _seed_config(
        sqlite_session_factory,
        requires_approval=True,
        risk_level="medium",
    )
    gatekeeper = ActionGatekeeper(sqlite_session_factory, now_provider=clock)

    decision = gatekeeper.evaluate("proj-1", "analyze_code", "developer")

    assert decision.outcome == REQUIRE_APPROVAL
    assert decision.effective_risk == "medium"
    assert _load(sqlite_session_factory, config_id).times_used_total == 0


def test_auto_approve_low_risk_respects_proposed_risk(
    sqlite_session_factory: sessionmaker,
    clock,
) -> None:
    """Ensure low-risk auto approval stops applying when the proposal raises the risk."""
    _seed_config(
        sqlite_session_factory,
        requires_approval=True,
        auto_approve_low_risk=True,
        risk_level="low",
    )
    gatekeeper = ActionGatekeeper(sqlite_session_factory, now_provider=clock)

    assert gatekeeper.evaluate("proj-1", "analyze_code", "developer", "low").outcome == ALLOW
    escalated = gatekeeper.evaluate("proj-1", "analyze_code", "developer", "high")
    assert escalated.outcome == REQUIRE_APPROVAL
    assert escalated.effective_risk == "high"


def test_concurrent_callers_never_exceed_remaining_quota(
    sqlite_file_session_factory: sessionmaker,
) -> None:
    """Ensure N parallel callers with Q units left produce exactly Q allows."""
    now = datetime(2025, 1, 15, 9, 0, tzinfo=timezone.utc)
    config_id = _seed_config(
        sqlite_file_session_factory,
        max_per_day=4,
        max_per_hour=None,
        cooldown_minutes=0,
    )
    gatekeeper = ActionGatekeeper(sqlite_file_session_factory, now_provider=lambda: now)

    with ThreadPoolExecutor(max_workers=8) as pool:
        decisions = list(
            pool.map(
                lambda _: gatekeeper.evaluate("proj-1", "analyze_code", "developer"),
                range(12),
            )
        )

    allowed = [decision for decision in decisions if decision.outcome == ALLOW]
    assert len(allowed) == 4
    assert all(decision.reason == RATE_LIMITED for decision in decisions if decision.outcome == DENY)
    config = _load(sqlite_file_session_factory, config_id)
    assert config.times_used_today == 4
    assert config.last_reset_at == datetime(2025, 1, 15, tzinfo=timezone.utc)


def test_unlimited_limits_are_stored_as_null_and_never_enforced(
    sqlite_session_factory: sessionmaker,
    clock,
) -> None:
    """Ensure a missing daily or hourly limit stays unlimited."""
    config_id = _seed_config(sqlite_session_factory, max_per_day=None, max_per_hour=None)
    gatekeeper = ActionGatekeeper(sqlite_session_factory, now_provider=clock)

    config = _load(sqlite_session_factory, config_id)
    assert (config.max_per_day, config.max_per_hour) == (None, None)

    outcomes = []
    for _ in range(12):
        outcomes.append(gatekeeper.evaluate("proj-1", "analyze_code", "developer").outcome)
        clock.advance(minutes=1)

    assert outcomes == [ALLOW] * 12
    config = _load(sqlite_session_factory, config_id)
    assert config.times_used_today == 12
    assert config.times_used_this_hour == 12


def test_unknown_proposed_risk_is_denied(sqlite_session_factory: sessionmaker, clock) -> None:
    """Ensure a proposal with an unknown risk level is rejected without spending quota."""
    config_id = _seed_config(sqlite_session_factory)
    gatekeeper = ActionGatekeeper(sqlite_session_factory, now_provider=clock)

    decision = gatekeeper.evaluate("proj-1", "analyze_code", "developer", "urgent")

    assert (decision.outcome, decision.reason) == (DENY, INVALID_RISK_LEVEL)
    assert _load(sqlite_session_factory, config_id).times_used_total == 0


def test_daily_reset_wins_once_under_concurrent_callers(
    sqlite_file_session_factory: sessionmaker,
) -> None:
    """Ensure concurrent resetters across the UTC day boundary reset exactly once."""
    config_id = _seed_config(sqlite_file_session_factory, max_per_day=10, max_per_hour=None)
    with closing(sqlite_file_session_factory()) as session:
        config = session.get(ActionConfig, config_id)
        config.times_used_today = 7
        config.last_reset_at = datetime(2025, 1, 14, tzinfo=timezone.utc)
        session.commit()
    starting_version = _load(sqlite_file_session_factory, config_id).version
    day_start = datetime(2025, 1, 15, tzinfo=timezone.utc)
    barrier = threading.Barrier(6)

    def _reset(_: int) -> bool:
        with closing(sqlite_file_session_factory()) as session:
            barrier.wait()
            won = reset_daily_usage(session, config_id, day_start=day_start)
            session.commit()
            return won

    with ThreadPoolExecutor(max_workers=6) as pool:
        results = list(pool.map(_reset, range(6)))

    assert results.count(True) == 1
    config = _load(sqlite_file_session_factory, config_id)
    assert config.times_used_today == 0
    assert config.last_reset_at == day_start
    assert config.version == starting_version + 1


def test_concurrent_evaluations_across_midnight_reset_once(
    sqlite_file_session_factory: sessionmaker,
) -> None:
    """Ensure parallel callers on a new day share a single counter reset."""
    now = datetime(2025, 1, 15, 0, 1, tzinfo=timezone.utc)
    config_id = _seed_config(sqlite_file_session_factory, max_per_day=3, max_per_hour=None)
    with closing(sqlite_file_session_factory()) as session:
        config = session.get(ActionConfig, config_id)
        config.times_used_today = 3
        config.last_reset_at = datetime(2025, 1, 14, tzinfo=timezone.utc)
        config.hour_window_start = datetime(2025, 1, 15, tzinfo=timezone.utc)
        session.commit()
    gatekeeper = ActionGatekeeper(sqlite_file_session_factory, now_provider=lambda: now)

    with ThreadPoolExecutor(max_workers=6) as pool:
        decisions = list(
            pool.map(
                lambda _: gatekeeper.evaluate("proj-1", "analyze_code", "developer"),
                range(10),
            )
        )

    assert sum(1 for decision in decisions if decision.outcome == ALLOW) == 3
    config = _load(sqlite_file_session_factory, config_id)
    assert config.times_used_today == 3
    assert config.last_reset_at == datetime(2025, 1, 15, tzinfo=timezone.utc)
