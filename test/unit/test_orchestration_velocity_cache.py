"""Unit tests for the GitHub velocity cache."""

from __future__ import annotations

from contextlib import closing
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.orm import sessionmaker

from models import VelocityCacheEntry
from orchestration.agent_interface import IssueRecord, PullRequestRecord, RepositoryActivity
from orchestration.velocity_cache import (
    VelocityCache,
    VelocityMetrics,
    compute_data_hash,
    compute_trend,
    compute_velocity_score,
    period_bounds,
    previous_period_start,
    summarize_activity,
)

DAY_START = datetime(2025, 1, 15, tzinfo=timezone.utc)


class _StubGitHubClient:
    """GitHub client stub returning canned activity and recording calls."""

    def __init__(self, activity: RepositoryActivity | None = None, error: Exception | None = None) -> None:
        self.activity = activity or RepositoryActivity()
        self.error = error
        self.calls: list[tuple[str, datetime, datetime]] = []

    def fetch_metrics(self, project_id: str, period_start: datetime, period_end: datetime) -> RepositoryActivity:
        self.calls.append((project_id, period_start, period_end))
        if self.error is not None:
            raise self.error
        return self.activity


def _activity() -> RepositoryActivity:
    at = DAY_START + timedelta(hours=2)
    return RepositoryActivity(
        pull_requests=(
            PullRequestRecord(
                number=1,
                author="ada",
                created_at=at,
                merged_at=at + timedelta(hours=4),
                additions=120,
                deletions=30,
                changed_files=4,
            ),
            PullRequestRecord(
                number=2,
                author="ada",
                created_at=at,
                closed_at=at + timedelta(hours=1),
                additions=10,
                deletions=2,
                changed_files=1,
            ),
            PullRequestRecord(number=3, author="grace", created_at=at),
        ),
        issues=(
            IssueRecord(
                number=10,
                author="linus",
                created_at=at,
                closed_at=at + timedelta(hours=6),
                labels=("bug",),
            ),
            IssueRecord(number=11, author="ada", created_at=at, labels=("bug", "ui")),
        ),
    )


def _seed_entry(session_factory: sessionmaker, **overrides) -> None:
    values = {
        "project_id": "proj-1",
        "period_type": "daily",
        "period_start": DAY_START,
        "period_end": DAY_START + timedelta(days=1),
        "revision": 1,
        "velocity_score": 40.0,
        "analyzed_at": DAY_START,
        "expires_at": DAY_START + timedelta(hours=4),
    }
    values.update(overrides)
    with closing(session_factory()) as session:
        session.add(VelocityCacheEntry(**values))
        session.commit()


def _cache(session_factory: sessionmaker, client: _StubGitHubClient, now: datetime) -> VelocityCache:
    return VelocityCache(
        session_factory,
        client,
        now_provider=lambda: now,
        expiry_hours={"hourly": 1, "daily": 4, "weekly": 24, "monthly": 24},
        trend_threshold_percent=10.0,
    )


def test_period_bounds_cover_each_period_type() -> None:
    """Ensure buckets start on the expected UTC boundaries."""
    at = datetime(2025, 1, 15, 13, 45, tzinfo=timezone.utc)  # Wednesday
    assert period_bounds("hourly", at) == (at.replace(minute=0), at.replace(hour=14, minute=0))
    assert period_bounds("daily", at) == (DAY_START, DAY_START + timedelta(days=1))
    assert period_bounds("weekly", at)[0] == datetime(2025, 1, 13, tzinfo=timezone.utc)
    assert period_bounds("monthly", datetime(2025, 12, 5, tzinfo=timezone.utc)) == (
        datetime(2025, 12, 1, tzinfo=timezone.utc),
        datetime(2026, 1, 1, tzinfo=timezone.utc),
    )
    assert previous_period_start("daily", DAY_START) == DAY_START - timedelta(days=1)
    with pytest.raises(ValueError):
        period_bounds("yearly", at)


def test_summarize_activity_builds_metrics() -> None:
    """Ensure raw pull requests and issues are summarized per the period."""
    metrics = summarize_activity(_activity(), DAY_START, DAY_START + timedelta(days=1))

    assert metrics.prs_opened == 3
    assert metrics.prs_merged == 1
    assert metrics.prs_closed == 1
    assert metrics.avg_pr_merge_hours == 4.0
    assert metrics.issues_opened == 2
    assert metrics.issues_closed == 1
    assert metrics.avg_issue_resolution_hours == 6.0
    assert metrics.issues_by_label == {"bug": 2, "ui": 1}
    assert metrics.commits_by_author == {"ada": 2, "grace": 1}
    assert metrics.commits_count == 3
    assert (metrics.lines_added, metrics.lines_removed, metrics.files_changed) == (130, 32, 5)
    assert metrics.active_contributors == 3
    assert metrics.velocity_score == 1 * 10 + 1 * 5 + 3 * 3


def test_velocity_score_is_capped() -> None:
    """Ensure the velocity score never exceeds 100."""
    assert compute_velocity_score(prs_merged=9, issues_closed=3, prs_opened=5) == 100.0


@pytest.mark.parametrize(
    ("current", "previous", "expected"),
    [
        (50.0, None, (None, None)),
        (55.0, 50.0, ("stable", 10.0)),
        (56.0, 50.0, ("increasing", 12.0)),
        (40.0, 50.0, ("decreasing", -20.0)),
        (0.0, 0.0, ("stable", 0.0)),
        (10.0, 0.0, ("increasing", 100.0)),
    ],
)
def test_compute_trend(current, previous, expected) -> None:
    """Ensure the trend compares against the threshold in percent."""
    assert compute_trend(current, previous, 10.0) == expected


def test_data_hash_is_stable_for_equal_metrics() -> None:
    """Ensure equal metrics hash identically regardless of dict ordering."""
    first = VelocityMetrics(commits_by_author={"a": 1, "b": 2})
    second = VelocityMetrics(commits_by_author={"b": 2, "a": 1})
    assert compute_data_hash(first) == compute_data_hash(second)
    assert len(compute_data_hash(first)) == 64


def test_fresh_entry_is_served_without_recompute(sqlite_session_factory: sessionmaker) -> None:
    """Ensure a fresh entry is returned as-is."""
    _seed_entry(sqlite_session_factory)
    client = _StubGitHubClient(_activity())
    cache = _cache(sqlite_session_factory, client, DAY_START + timedelta(hours=1))

    snapshot = cache.get_or_compute("proj-1", "daily")

    assert snapshot is not None
    assert snapshot.revision == 1
    assert client.calls == []


def test_expired_entry_is_recomputed_as_new_revision(sqlite_session_factory: sessionmaker) -> None:
    """Ensure an expired entry triggers a recompute stored as the next revision."""
    _seed_entry(sqlite_session_factory)
    client = _StubGitHubClient(_activity())
    now = DAY_START + timedelta(hours=5)
    cache = _cache(sqlite_session_factory, client, now)

    snapshot = cache.get_or_compute("proj-1", "daily")

    assert client.calls == [("proj-1", DAY_START, DAY_START + timedelta(days=1))]
    assert snapshot.revision == 2
    assert snapshot.prs_opened == 3
    assert snapshot.analyzed_at == now
    assert snapshot.expires_at == now + timedelta(hours=4)
    assert snapshot.data_hash is not None
    with closing(sqlite_session_factory()) as session:
        assert session.query(VelocityCacheEntry).count() == 2


def test_stale_entry_is_recomputed(sqlite_session_factory: sessionmaker) -> None:
    """Ensure mark_stale forces the next read to recompute."""
    _seed_entry(sqlite_session_factory)
    client = _StubGitHubClient(_activity())
    cache = _cache(sqlite_session_factory, client, DAY_START + timedelta(hours=1))

    assert cache.mark_stale("proj-1") == 1
    snapshot = cache.get_or_compute("proj-1", "daily")

    assert len(client.calls) == 1
    assert snapshot.revision == 2
    assert snapshot.is_stale is False


def test_failed_recompute_serves_stale_entry(sqlite_session_factory: sessionmaker) -> None:
    """Ensure an expired entry is served when the analyzer fails."""
    _seed_entry(sqlite_session_factory)
    client = _StubGitHubClient(error=RuntimeError("github unavailable"))
    cache = _cache(sqlite_session_factory, client, DAY_START + timedelta(hours=8))

    snapshot = cache.get_or_compute("proj-1", "daily")

    assert snapshot is not None
    assert snapshot.revision == 1
    assert snapshot.velocity_score == 40.0


def test_failed_compute_without_history_returns_none(sqlite_session_factory: sessionmaker) -> None:
    """Ensure unknown velocity is reported as None, never as zero."""
    client = _StubGitHubClient(error=RuntimeError("github unavailable"))
    cache = _cache(sqlite_session_factory, client, DAY_START + timedelta(hours=1))

    assert cache.get_or_compute("proj-1", "daily") is None


def test_trend_uses_previous_period(sqlite_session_factory: sessionmaker) -> None:
    """Ensure the trend is computed against the previous period's current entry."""
    _seed_entry(
        sqlite_session_factory,
        period_start=DAY_START - timedelta(days=1),
        period_end=DAY_START,
        velocity_score=20.0,
    )
    client = _StubGitHubClient(_activity())
    cache = _cache(sqlite_session_factory, client, DAY_START + timedelta(hours=1))

    snapshot = cache.get_or_compute("proj-1", "daily")

    assert snapshot.velocity_score == 24.0
    assert snapshot.velocity_trend == "increasing"
    assert snapshot.velocity_change_percent == 20.0


def test_concurrent_writer_wins_revision(sqlite_session_factory: sessionmaker) -> None:
    """Ensure a duplicate revision resolves to the first committed entry."""

    class _RacingClient(_StubGitHubClient):
        def fetch_metrics(self, project_id, period_start, period_end):
            _seed_entry(sqlite_session_factory, revision=1, velocity_score=77.0)
            return super().fetch_metrics(project_id, period_start, period_end)

    client = _RacingClient(_activity())
    cache = _cache(sqlite_session_factory, client, DAY_START + timedelta(hours=1))

    snapshot = cache.get_or_compute("proj-1", "daily")

    assert snapshot.revision == 1
    assert snapshot.velocity_score == 77.0
    with closing(sqlite_session_factory()) as session:
        assert session.query(VelocityCacheEntry).count() == 1
