"""Retry chaining rules for failed jobs.

A failed job gets another attempt while its chain has attempts left. The
delay starts from the longest error cooldown among the schedules the job ran
for and doubles with every attempt, so a retry never lands inside a cooldown
the scheduler itself would still be honoring.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta

from config import settings


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt budget for new job chains and the cooldown used without a schedule."""

    max_attempts: int
    default_cooldown_minutes: int

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1.")
        if self.default_cooldown_minutes < 0:
            raise ValueError("default_cooldown_minutes must be >= 0.")

    @classmethod
    def from_settings(cls) -> RetryPolicy:
        return cls(
            max_attempts=int(settings.jobs.default_max_attempts),
            default_cooldown_minutes=int(settings.jobs.retry_cooldown_minutes),
        )

    def cooldown_minutes(self, schedule_cooldowns: Iterable[int | None]) -> int:
        """Return the cooldown a retry starts from: the longest among the job's schedules."""
        known = [int(value) for value in schedule_cooldowns if value is not None]
        return max(known) if known else self.default_cooldown_minutes


def has_attempts_left(attempt_number: int, max_attempts: int) -> bool:
    """Return whether a chain may run another attempt after attempt_number."""
    return int(attempt_number) < int(max_attempts)


def retry_delay(cooldown_minutes: int, attempt_number: int) -> timedelta:
    """Delay before the attempt that follows attempt_number (1-based)."""
    if attempt_number < 1:
        raise ValueError("attempt_number must be >= 1.")
    if cooldown_minutes < 0:
        raise ValueError("cooldown_minutes must be >= 0.")
    return timedelta(minutes=cooldown_minutes * 2 ** (attempt_number - 1))


def next_attempt_at(failed_at: datetime, attempt_number: int, cooldown_minutes: int) -> datetime:
    return failed_at + retry_delay(cooldown_minutes, attempt_number)
