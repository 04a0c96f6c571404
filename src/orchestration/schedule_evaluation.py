"""Due, throttle and cooldown checks for agent schedules.

Every check is evaluated against the schedule's own timezone: run windows and
run days are local wall-clock concepts, while stored timestamps are UTC.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, time, timedelta
from typing import Iterable, Protocol

from croniter import croniter

from models import ScheduleTypeEnum
from orchestration.errors import ValidationError
from time_utils import ensure_utc, get_zone, minutes_between, to_zone

CADENCE_MINUTES: dict[str, int] = {
    "hourly": 60,
    "every_4h": 4 * 60,
    "every_8h": 8 * 60,
    "daily": 24 * 60,
    "weekly": 7 * 24 * 60,
}


class ScheduleLike(Protocol):
    """Fields of a schedule consulted by the due evaluation."""

    is_enabled: bool
    schedule_type: str
    cron_expression: str | None
    timezone: str | None
    run_after_time: time | None
    run_before_time: time | None
    run_on_days: list[int] | None
    min_interval_minutes: int
    max_runs_per_day: int
    cooldown_after_error_minutes: int
    last_run_at: datetime | None
    last_failure_at: datetime | None
    consecutive_failures: int


@dataclass(frozen=True)
class DueDecision:
    """Outcome of evaluating one schedule at one instant."""

    due: bool
    reason: str


def _invalid(message: str, field: str) -> ValidationError:
    return ValidationError("invalid_schedule", message, {"field": field})


def validate_schedule_fields(
    *,
    schedule_type: str,
    cron_expression: str | None,
    timezone_name: str | None,
    run_on_days: Iterable[int],
    min_interval_minutes: int,
    max_runs_per_day: int,
    cooldown_after_error_minutes: int,
    priority: int,
) -> None:
    """Validate schedule definition fields before they are persisted."""
    if schedule_type not in ScheduleTypeEnum.enums:
        raise _invalid(f"Invalid schedule_type: {schedule_type}.", "schedule_type")
    if schedule_type == "custom":
        if not cron_expression or not cron_expression.strip():
            raise _invalid("cron_expression is required for custom schedules.", "cron_expression")
        if not croniter.is_valid(cron_expression):
            raise _invalid(f"Invalid cron_expression: {cron_expression}.", "cron_expression")
    try:
        get_zone(timezone_name)
    except ValueError as exc:
        raise _invalid(str(exc), "timezone") from exc
    days = list(run_on_days)
    if not days:
        raise _invalid("run_on_days must contain at least one day.", "run_on_days")
    for day in days:
        if not isinstance(day, int) or not 0 <= day <= 6:
            raise _invalid("run_on_days entries must be integers 0-6 (0=Sunday).", "run_on_days")
    if min_interval_minutes < 0:
        raise _invalid("min_interval_minutes must be >= 0.", "min_interval_minutes")
    if max_runs_per_day < 1:
        raise _invalid("max_runs_per_day must be >= 1.", "max_runs_per_day")
    if cooldown_after_error_minutes < 0:
        raise _invalid(
            "cooldown_after_error_minutes must be >= 0.", "cooldown_after_error_minutes"
        )
    if not 1 <= priority <= 10:
        raise _invalid("priority must be between 1 and 10.", "priority")


def weekday_index(local_value: datetime) -> int:
    """Return the weekday with 0=Sunday through 6=Saturday."""
    return (local_value.weekday() + 1) % 7


def is_within_run_window(
    local_time: time,
    run_after: time | None,
    run_before: time | None,
) -> bool:
    """Return whether a local wall-clock time falls inside the run window.

    Bounds are inclusive. A window whose start is later than its end wraps
    past midnight; a single bound applies on its own.
    """
    if run_after is None and run_before is None:
        return True
    if run_after is None:
        return local_time <= run_before
    if run_before is None:
        return local_time >= run_after
    if run_after <= run_before:
        return run_after <= local_time <= run_before
    return local_time >= run_after or local_time <= run_before


def is_run_day(local_value: datetime, run_on_days: Iterable[int] | None) -> bool:
    """Return whether the local weekday is an allowed run day."""
    if run_on_days is None:
        return True
    return weekday_index(local_value) in set(run_on_days)


def is_cadence_elapsed(
    schedule_type: str,
    cron_expression: str | None,
    last_run_at: datetime | None,
    now: datetime,
    timezone_name: str | None,
) -> bool:
    """Return whether the schedule's cadence has elapsed since its last run."""
    if last_run_at is None:
        return True
    if schedule_type == "custom":
        if not cron_expression:
            return False
        local_now = to_zone(now, timezone_name)
        # get_prev excludes its start, so step past now to count a fire landing exactly on it.
        previous_fire = croniter(cron_expression, local_now + timedelta(seconds=1)).get_prev(datetime)
        return ensure_utc(previous_fire) > ensure_utc(last_run_at)
    cadence = CADENCE_MINUTES.get(schedule_type)
    if cadence is None:
        return False
    return minutes_between(last_run_at, now) >= cadence


def is_interval_throttled(
    last_run_at: datetime | None,
    min_interval_minutes: int,
    now: datetime,
) -> bool:
    """Return whether the minimum interval since the last run has not passed."""
    if last_run_at is None:
        return False
    return minutes_between(last_run_at, now) < min_interval_minutes


def is_in_error_cooldown(
    consecutive_failures: int,
    last_failure_at: datetime | None,
    cooldown_minutes: int,
    now: datetime,
) -> bool:
    """Return whether a failing schedule is still cooling down."""
    if consecutive_failures <= 0 or last_failure_at is None:
        return False
    return minutes_between(last_failure_at, now) < cooldown_minutes


def evaluate_schedule(schedule: ScheduleLike, now: datetime, *, runs_today: int) -> DueDecision:
    """Decide whether a schedule should be enqueued at now.

    ``runs_today`` is the number of jobs already enqueued for the schedule
    since local midnight. Claim availability is checked by the caller.
    """
    if not schedule.is_enabled:
        return DueDecision(False, "disabled")
    local_now = to_zone(now, schedule.timezone)
    if not is_within_run_window(
        local_now.time().replace(tzinfo=None),
        schedule.run_after_time,
        schedule.run_before_time,
    ):
        return DueDecision(False, "outside_window")
    if not is_run_day(local_now, schedule.run_on_days):
        return DueDecision(False, "not_run_day")
    if not is_cadence_elapsed(
        schedule.schedule_type,
        schedule.cron_expression,
        schedule.last_run_at,
        now,
        schedule.timezone,
    ):
        return DueDecision(False, "cadence_not_elapsed")
    if is_interval_throttled(schedule.last_run_at, schedule.min_interval_minutes, now):
        return DueDecision(False, "min_interval")
    if runs_today >= schedule.max_runs_per_day:
        return DueDecision(False, "daily_limit")
    if is_in_error_cooldown(
        schedule.consecutive_failures,
        schedule.last_failure_at,
        schedule.cooldown_after_error_minutes,
        now,
    ):
        return DueDecision(False, "error_cooldown")
    return DueDecision(True, "due")
