"""Time-bucketed cache of GitHub velocity metrics.

Entries are append-only: each recompute writes a new revision for its
(project, period_type, period_start) key and the highest revision is current.
Two workers recomputing the same key race on the revision's unique constraint
and the loser returns the winner's row.
"""

from __future__ import annotations

import hashlib
import json
import logging
from contextlib import closing
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Mapping

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import PERIOD_TYPES, settings
from models import VelocityCacheEntry
from orchestration.agent_interface import GitHubMetricsClient, RepositoryActivity
from orchestration.data_access import (
    get_current_velocity_entry,
    get_velocity_entry_revision,
    mark_velocity_stale,
)
from time_utils import ensure_utc, utc_day_start, utc_hour_start, utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VelocityMetrics:
    """Metrics summarized from one period of repository activity."""

    commits_count: int = 0
    commits_by_author: dict[str, int] = field(default_factory=dict)
    files_changed: int = 0
    lines_added: int = 0
    lines_removed: int = 0
    prs_opened: int = 0
    prs_merged: int = 0
    prs_closed: int = 0
    avg_pr_merge_hours: float | None = None
    issues_opened: int = 0
    issues_closed: int = 0
    avg_issue_resolution_hours: float | None = None
    issues_by_label: dict[str, int] = field(default_factory=dict)
    active_contributors: int = 0
    hot_spots: list[dict[str, Any]] = field(default_factory=list)
    velocity_score: float = 0.0

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class VelocitySnapshot:
    """Detached, read-only copy of a cache entry."""

    id: int
    project_id: str
    period_type: str
    period_start: datetime
    period_end: datetime
    revision: int
    commits_count: int
    commits_by_author: Mapping[str, int]
    files_changed: int
    lines_added: int
    lines_removed: int
    prs_opened: int
    prs_merged: int
    prs_closed: int
    avg_pr_merge_hours: float | None
    issues_opened: int
    issues_closed: int
    avg_issue_resolution_hours: float | None
    issues_by_label: Mapping[str, int]
    active_contributors: int
    hot_spots: tuple[Mapping[str, Any], ...]
    velocity_score: float | None
    velocity_trend: str | None
    velocity_change_percent: float | None
    data_hash: str | None
    analyzed_at: datetime
    expires_at: datetime
    is_stale: bool

    @staticmethod
    def from_entry(entry: VelocityCacheEntry) -> "VelocitySnapshot":
        return VelocitySnapshot(
            id=entry.id,
            project_id=entry.project_id,
            period_type=entry.period_type,
            period_start=entry.period_start,
            period_end=entry.period_end,
            revision=entry.revision,
            commits_count=entry.commits_count,
            commits_by_author=dict(entry.commits_by_author or {}),
            files_changed=entry.files_changed,
            lines_added=entry.lines_added,
            lines_removed=entry.lines_removed,
            prs_opened=entry.prs_opened,
            prs_merged=entry.prs_merged,
            prs_closed=entry.prs_closed,
            avg_pr_merge_hours=entry.avg_pr_merge_hours,
            issues_opened=entry.issues_opened,
            issues_closed=entry.issues_closed,
            avg_issue_resolution_hours=entry.avg_issue_resolution_hours,
            issues_by_label=dict(entry.issues_by_label or {}),
            active_contributors=entry.active_contributors,
            hot_spots=tuple(entry.hot_spots or ()),
            velocity_score=entry.velocity_score,
            velocity_trend=entry.velocity_trend,
            velocity_change_percent=entry.velocity_change_percent,
            data_hash=entry.data_hash,
            analyzed_at=entry.analyzed_at,
            expires_at=entry.expires_at,
            is_stale=bool(entry.is_stale),
        )

    def summary(self) -> dict[str, Any]:
        """Return the provenance fields recorded on execution logs."""
        return {
            "cache_entry_id": self.id,
            "period_type": self.period_type,
            "period_start": self.period_start.isoformat(),
            "revision": self.revision,
            "velocity_score": self.velocity_score,
            "velocity_trend": self.velocity_trend,
            "data_hash": self.data_hash,
            "analyzed_at": self.analyzed_at.isoformat(),
            "is_stale": self.is_stale,
        }


def _validate_period_type(period_type: str) -> None:
    if period_type not in PERIOD_TYPES:
        raise ValueError(f"Invalid period_type: {period_type}.")


def period_bounds(period_type: str, reference: datetime) -> tuple[datetime, datetime]:
    """Return the UTC [start, end) bucket of the given period type containing reference."""
    _validate_period_type(period_type)
    if period_type == "hourly":
        start = utc_hour_start(reference)
        return start, start + timedelta(hours=1)
    day = utc_day_start(reference)
    if period_type == "daily":
        return day, day + timedelta(days=1)
    if period_type == "weekly":
        start = day - timedelta(days=day.weekday())
        return start, start + timedelta(days=7)
    start = day.replace(day=1)
    if start.month == 12:
        end = start.replace(year=start.year + 1, month=1)
    else:
        end = start.replace(month=start.month + 1)
    return start, end


def previous_period_start(period_type: str, period_start: datetime) -> datetime:
    """Return the start of the bucket immediately before period_start."""
    return period_bounds(period_type, ensure_utc(period_start) - timedelta(microseconds=1))[0]


def compute_velocity_score(prs_merged: int, issues_closed: int, prs_opened: int) -> float:
    """Score activity on a 0-100 scale."""
    return float(min(100, prs_merged * 10 + issues_closed * 5 + prs_opened * 3))


def compute_trend(
    current_score: float | None,
    previous_score: float | None,
    threshold_percent: float,
) -> tuple[str | None, float | None]:
    """Compare a score with the previous period's and classify the change."""
    if current_score is None or previous_score is None:
        return None, None
    if previous_score == 0:
        if current_score == 0:
            return "stable", 0.0
        return "increasing", 100.0
    change = (current_score - previous_score) / previous_score * 100.0
    change = round(change, 2)
    if change > threshold_percent:
        return "increasing", change
    if change < -threshold_percent:
        return "decreasing", change
    return "stable", change


def compute_data_hash(metrics: VelocityMetrics) -> str:
    """Return the SHA-256 of the canonical JSON form of the metrics."""
    canonical = json.dumps(metrics.as_dict(), sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _in_period(value: datetime | None, start: datetime, end: datetime) -> bool:
    if value is None:
        return False
    value = ensure_utc(value)
    return start <= value < end


def _average_hours(durations: list[timedelta]) -> float | None:
    if not durations:
        return None
    total = sum(duration.total_seconds() for duration in durations)
    return round(total / len(durations) / 3600.0, 2)


def summarize_activity(
    activity: RepositoryActivity,
    period_start: datetime,
    period_end: datetime,
) -> VelocityMetrics:
    """Summarize raw pull requests and issues into period metrics.

    Commit counts come from the client when it reports them; otherwise pull
    requests stand in for commits, attributed to their authors.
    """
    start = ensure_utc(period_start)
    end = ensure_utc(period_end)
    pull_requests = activity.pull_requests
    issues = activity.issues

    prs_opened = sum(1 for pr in pull_requests if _in_period(pr.created_at, start, end))
    prs_merged = sum(1 for pr in pull_requests if _in_period(pr.merged_at, start, end))
    prs_closed = sum(
        1
        for pr in pull_requests
        if pr.merged_at is None and _in_period(pr.closed_at, start, end)
    )
    merge_durations = [
        ensure_utc(pr.merged_at) - ensure_utc(pr.created_at)
        for pr in pull_requests
        if pr.merged_at is not None
    ]

    issues_opened = sum(1 for issue in issues if _in_period(issue.created_at, start, end))
    issues_closed = sum(1 for issue in issues if _in_period(issue.closed_at, start, end))
    resolution_durations = [
        ensure_utc(issue.closed_at) - ensure_utc(issue.created_at)
        for issue in issues
        if issue.closed_at is not None
    ]

    issues_by_label: dict[str, int] = {}
    for issue in issues:
        for label in issue.labels:
            issues_by_label[label] = issues_by_label.get(label, 0) + 1

    commits_by_author: dict[str, int] = {}
    lines_added = 0
    lines_removed = 0
    files_changed = 0
    contributors: set[str] = set()
    for pr in pull_requests:
        if pr.author:
            commits_by_author[pr.author] = commits_by_author.get(pr.author, 0) + 1
            contributors.add(pr.author)
        lines_added += pr.additions
        lines_removed += pr.deletions
        files_changed += pr.changed_files
    for issue in issues:
        if issue.author:
            contributors.add(issue.author)

    commits_count = activity.commits_count
    if commits_count is None:
        commits_count = sum(commits_by_author.values())

    return VelocityMetrics(
        commits_count=commits_count,
        commits_by_author=commits_by_author,
        files_changed=files_changed,
        lines_added=lines_added,
        lines_removed=lines_removed,
        prs_opened=prs_opened,
        prs_merged=prs_merged,
        prs_closed=prs_closed,
        avg_pr_merge_hours=_average_hours(merge_durations),
        issues_opened=issues_opened,
        issues_closed=issues_closed,
        avg_issue_resolution_hours=_average_hours(resolution_durations),
        issues_by_label=issues_by_label,
        active_contributors=len(contributors),
        hot_spots=[dict(spot) for spot in activity.hot_spots],
        velocity_score=compute_velocity_score(prs_merged, issues_closed, prs_opened),
    )


class VelocityCache:
    """Serve velocity metrics from the cache, recomputing when expired or stale."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        client: GitHubMetricsClient,
        *,
        now_provider: Callable[[], datetime] | None = None,
        expiry_hours: Mapping[str, int] | None = None,
        trend_threshold_percent: float | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._client = client
        self._now_provider = now_provider or utc_now
        self._expiry_hours = dict(expiry_hours or settings.velocity.expiry_hours)
        if trend_threshold_percent is None:
            trend_threshold_percent = settings.velocity.trend_threshold_percent
        self._trend_threshold_percent = float(trend_threshold_percent)

    def expiry_for(self, period_type: str) -> timedelta:
        _validate_period_type(period_type)
        return timedelta(hours=int(self._expiry_hours[period_type]))

    def get_or_compute(
        self,
        project_id: str,
        period_type: str | None = None,
        period_start: datetime | None = None,
    ) -> VelocitySnapshot | None:
        """Return velocity metrics for a period, or None when unknown.

        When recomputation fails the latest entry for the key is returned
        even if expired; None means nothing is known.
        """
        now = ensure_utc(self._now_provider())
        period_type = period_type or settings.velocity.default_period_type
        start, end = period_bounds(period_type, period_start or now)

        with closing(self._session_factory()) as session:
            current = get_current_velocity_entry(session, project_id, period_type, start)
            if current is not None and not current.is_stale and current.expires_at > now:
                return VelocitySnapshot.from_entry(current)
            fallback = VelocitySnapshot.from_entry(current) if current is not None else None
            next_revision = current.revision + 1 if current is not None else 1
            previous = get_current_velocity_entry(
                session, project_id, period_type, previous_period_start(period_type, start)
            )
            previous_score = previous.velocity_score if previous is not None else None

        try:
            activity = self._client.fetch_metrics(project_id, start, end)
            metrics = summarize_activity(activity, start, end)
        except Exception:
            logger.exception(
                "Velocity computation failed: project_id=%s period_type=%s period_start=%s",
                project_id,
                period_type,
                start.isoformat(),
            )
            if fallback is not None:
                logger.warning(
                    "Serving stale velocity entry: project_id=%s revision=%s",
                    project_id,
                    fallback.revision,
                )
            return fallback

        trend, change_percent = compute_trend(
            metrics.velocity_score, previous_score, self._trend_threshold_percent
        )
        return self._store(
            project_id,
            period_type,
            start,
            end,
            next_revision,
            metrics,
            trend=trend,
            change_percent=change_percent,
            now=now,
        )

    def mark_stale(self, project_id: str) -> int:
        """Flag a project's cached entries for recompute on next read."""
        with closing(self._session_factory()) as session:
            count = mark_velocity_stale(session, project_id)
            session.commit()
        logger.info("Marked %s velocity entries stale: project_id=%s", count, project_id)
        return count

    def _store(
        self,
        project_id: str,
        period_type: str,
        start: datetime,
        end: datetime,
        revision: int,
        metrics: VelocityMetrics,
        *,
        trend: str | None,
        change_percent: float | None,
        now: datetime,
    ) -> VelocitySnapshot:
        with closing(self._session_factory()) as session:
            entry = VelocityCacheEntry(
                project_id=project_id,
                period_type=period_type,
                period_start=start,
                period_end=end,
                revision=revision,
                commits_count=metrics.commits_count,
                commits_by_author=metrics.commits_by_author,
                files_changed=metrics.files_changed,
                lines_added=metrics.lines_added,
                lines_removed=metrics.lines_removed,
                prs_opened=metrics.prs_opened,
                prs_merged=metrics.prs_merged,
                prs_closed=metrics.prs_closed,
                avg_pr_merge_hours=metrics.avg_pr_merge_hours,
                issues_opened=metrics.issues_opened,
                issues_closed=metrics.issues_closed,
                avg_issue_resolution_hours=metrics.avg_issue_resolution_hours,
                issues_by_label=metrics.issues_by_label,
                active_contributors=metrics.active_contributors,
                hot_spots=metrics.hot_spots,
                velocity_score=metrics.velocity_score,
                velocity_trend=trend,
                velocity_change_percent=change_percent,
                data_hash=compute_data_hash(metrics),
                analyzed_at=now,
                expires_at=now + self.expiry_for(period_type),
                is_stale=False,
            )
            session.add(entry)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                winner = get_velocity_entry_revision(
                    session, project_id, period_type, start, revision
                )
                if winner is None:
                    raise
                logger.info(
                    "Velocity entry already written by another worker: project_id=%s revision=%s",
                    project_id,
                    revision,
                )
                return VelocitySnapshot.from_entry(winner)
            return VelocitySnapshot.from_entry(entry)
