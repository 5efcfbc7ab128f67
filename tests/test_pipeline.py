"""Tests for the fetch/enrichment pipeline with a mocked client."""

import sys
import threading
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import Mock

import pytest

# Add src directory to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from prstats.cache import load_cache, save_cache
from prstats.config import Config
from prstats.errors import ApiError
from prstats.models import BuildRun, PrStatus, PullRequest
from prstats.pipeline import PullRequestPipeline, filter_pull_requests, partition

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _raw_pr(pr_id: int, status: str = "completed", repo: str = "repo", author: str = "Alice",
            author_id: str = "a1") -> dict:
    closed = None if status == "active" else "2026-02-27T12:00:00Z"
    return {
        "pullRequestId": pr_id,
        "title": f"PR {pr_id}",
        "status": status,
        "creationDate": "2026-02-25T12:00:00Z",
        "closedDate": closed,
        "createdBy": {"displayName": author, "id": author_id},
        "repository": {"id": f"{repo}-id", "name": repo},
        "reviewers": [],
    }


def _cached_pr(pr_id: int, title: str = "cached", days_ago: int = 5) -> PullRequest:
    created = NOW - timedelta(days=days_ago)
    return PullRequest(
        pull_request_id=pr_id,
        title=title,
        repository_name="repo",
        status=PrStatus.COMPLETED,
        is_draft=False,
        creation_date=created,
        closed_date=created + timedelta(days=1),
        author_display_name="Alice",
        author_id="a1",
    )


def _config(tmp_path, **overrides) -> Config:
    values = {"organization": "org", "project": "proj", "pat": "pat", "days": 30, "cache_dir": str(tmp_path)}
    values.update(overrides)
    return Config(**values)


def _client(completed=(), abandoned=(), active=()) -> Mock:
    client = Mock()
    pages = {
        PrStatus.COMPLETED: list(completed),
        PrStatus.ABANDONED: list(abandoned),
        PrStatus.ACTIVE: list(active),
    }
    client.list_pull_requests.side_effect = lambda status, min_time=None: list(pages[status])
    client.list_threads.return_value = []
    client.list_iterations.return_value = [
        {"id": 1, "createdDate": "2026-02-25T12:00:00Z", "reason": "create",
         "commits": [{"commitId": "AAA"}, {"commitId": "bbb"}]},
        {"id": 2, "createdDate": "2026-02-26T12:00:00Z", "reason": "push",
         "commits": [{"commitId": "aaa"}]},
    ]
    client.count_iteration_changes.return_value = 6
    client.list_builds.return_value = []
    return client


def test_fetch_candidates_runs_three_passes_in_order(tmp_path):
    """Verify completed and abandoned passes use the window and active does not."""
    client = _client(completed=[_raw_pr(1)], abandoned=[_raw_pr(2, "abandoned")], active=[_raw_pr(3, "active")])
    pipeline = PullRequestPipeline(_config(tmp_path), client, now=NOW)

    candidates = pipeline.fetch_candidates()

    assert [pr["pullRequestId"] for pr in candidates] == [1, 2, 3]
    calls = client.list_pull_requests.call_args_list
    assert [call.args[0] for call in calls] == [PrStatus.COMPLETED, PrStatus.ABANDONED, PrStatus.ACTIVE]
    assert calls[0].kwargs["min_time"] == NOW - timedelta(days=30)
    assert calls[1].kwargs["min_time"] == NOW - timedelta(days=30)
    assert calls[2].kwargs["min_time"] is None


def test_fetch_candidates_caps_in_fetch_order(tmp_path):
    """Verify the record cap keeps the first N records."""
    client = _client(completed=[_raw_pr(i) for i in range(1, 6)], active=[_raw_pr(9, "active")])
    pipeline = PullRequestPipeline(_config(tmp_path, max_prs=3), client, now=NOW)

    assert [pr["pullRequestId"] for pr in pipeline.fetch_candidates()] == [1, 2, 3]


def test_filter_pull_requests_by_repository_and_author(caplog):
    """Verify repository and author filters are case-insensitive and warn on unknown repositories."""
    raw = [
        _raw_pr(1, repo="Web"),
        _raw_pr(2, repo="api", author="Bob", author_id="b1"),
        _raw_pr(3, repo="web", author="Carol", author_id="c1"),
    ]

    by_repo = filter_pull_requests(raw, repositories=["WEB", "missing"])
    by_author = filter_pull_requests(raw, authors=["bob"], author_ids=["C1"])

    assert [pr["pullRequestId"] for pr in by_repo] == [1, 3]
    assert "missing" in caplog.text
    assert [pr["pullRequestId"] for pr in by_author] == [2, 3]


def test_partition_serves_only_cached_terminal_records():
    """Verify active records and cache misses always go to enrichment."""
    candidates = [_raw_pr(1), _raw_pr(2, "abandoned"), _raw_pr(3, "active"), _raw_pr(4)]
    cached = {1: _cached_pr(1), 2: _cached_pr(2), 3: _cached_pr(3)}

    from_cache, to_enrich = partition(candidates, cached)

    assert [pr.pull_request_id for pr in from_cache] == [1, 2]
    assert [pr["pullRequestId"] for pr in to_enrich] == [3, 4]


def test_partition_re_enriches_records_cached_while_active():
    """Verify a record cached while active is re-enriched once it completes."""
    stale = _cached_pr(1)
    stale.status = PrStatus.ACTIVE
    stale.closed_date = None

    from_cache, to_enrich = partition([_raw_pr(1)], {1: stale})

    assert from_cache == []
    assert [pr["pullRequestId"] for pr in to_enrich] == [1]


def test_partition_with_cache_disabled_enriches_everything():
    """Verify a forced refresh ignores cached entries."""
    from_cache, to_enrich = partition([_raw_pr(1)], {1: _cached_pr(1)}, use_cache=False)

    assert from_cache == []
    assert len(to_enrich) == 1


def test_enrich_builds_records_with_commit_and_file_counts(tmp_path):
    """Verify detail calls are combined into an enriched record."""
    client = _client()
    pipeline = PullRequestPipeline(_config(tmp_path), client, now=NOW)

    [pr] = pipeline.enrich([_raw_pr(1)])

    assert pr.pull_request_id == 1
    assert pr.commit_count == 2
    assert pr.files_changed == 6
    assert len(pr.iterations) == 2
    client.list_threads.assert_called_once_with("repo-id", 1)
    client.list_iterations.assert_called_once_with("repo-id", 1)
    client.count_iteration_changes.assert_called_once_with("repo-id", 1, 2)


def test_enrich_defaults_files_changed_when_diff_fails(tmp_path):
    """Verify a failing diff call falls back to zero files changed."""
    client = _client()
    client.count_iteration_changes.side_effect = ApiError("not available")
    pipeline = PullRequestPipeline(_config(tmp_path), client, now=NOW)

    [pr] = pipeline.enrich([_raw_pr(1)])

    assert pr.files_changed == 0


def test_enrich_skips_diff_without_iterations(tmp_path):
    """Verify records with no iterations never request a diff."""
    client = _client()
    client.list_iterations.return_value = []
    pipeline = PullRequestPipeline(_config(tmp_path), client, now=NOW)

    [pr] = pipeline.enrich([_raw_pr(1)])

    assert pr.files_changed == 0
    client.count_iteration_changes.assert_not_called()


def test_enrich_failure_aborts_batch(tmp_path):
    """Verify an unrecovered detail failure on one record fails the whole batch."""
    client = _client()

    def _threads(repo_id, pr_id):
        if pr_id == 2:
            raise ApiError("boom")
        return []

    client.list_threads.side_effect = _threads
    pipeline = PullRequestPipeline(_config(tmp_path), client, now=NOW)

    with pytest.raises(ApiError, match="boom"):
        pipeline.enrich([_raw_pr(1), _raw_pr(2), _raw_pr(3)])


def test_enrich_bounds_records_in_flight(tmp_path):
    """Verify no more than the concurrency bound of records are enriched at once."""
    client = _client()
    lock = threading.Lock()
    state = {"in_flight": 0, "max": 0}

    def _threads(repo_id, pr_id):
        with lock:
            state["in_flight"] += 1
            state["max"] = max(state["max"], state["in_flight"])
        time.sleep(0.02)
        with lock:
            state["in_flight"] -= 1
        return []

    client.list_threads.side_effect = _threads
    pipeline = PullRequestPipeline(_config(tmp_path), client, concurrency=2, now=NOW)

    enriched = pipeline.enrich([_raw_pr(i) for i in range(1, 7)])

    assert sorted(pr.pull_request_id for pr in enriched) == [1, 2, 3, 4, 5, 6]
    assert state["max"] <= 2


def test_enrich_reports_progress_events(tmp_path):
    """Verify a progress event is emitted per enriched record."""
    events = []
    pipeline = PullRequestPipeline(_config(tmp_path), _client(), progress=events.append, now=NOW)

    pipeline.enrich([_raw_pr(1), _raw_pr(2)])

    enrich_events = [event for event in events if event.phase == "enrich"]
    assert sorted(event.completed for event in enrich_events) == [1, 2]
    assert all(event.total == 2 for event in enrich_events)


def test_run_merges_cache_hits_and_overlays_previous_cache(tmp_path):
    """Verify cache hits skip enrichment and records outside the window stay cached."""
    save_cache(
        "org",
        "proj",
        {1: _cached_pr(1, title="from cache"), 99: _cached_pr(99, title="outside window")},
        base_dir=str(tmp_path),
        now=NOW,
    )
    client = _client(completed=[_raw_pr(1)], active=[_raw_pr(2, "active")])
    pipeline = PullRequestPipeline(_config(tmp_path), client, now=NOW)

    result = pipeline.run()

    assert result.cache_hits == 1
    assert result.enriched == 1
    titles = {pr.pull_request_id: pr.title for pr in result.pull_requests}
    assert titles == {1: "from cache", 2: "PR 2"}
    client.list_threads.assert_called_once_with("repo-id", 2)

    saved = load_cache("org", "proj", base_dir=str(tmp_path))
    assert set(saved) == {1, 2, 99}


def test_run_with_no_cache_re_enriches_and_rewrites(tmp_path):
    """Verify a forced refresh bypasses cache reads but still saves this run."""
    save_cache("org", "proj", {1: _cached_pr(1, title="stale")}, base_dir=str(tmp_path), now=NOW)
    client = _client(completed=[_raw_pr(1)])
    pipeline = PullRequestPipeline(_config(tmp_path, no_cache=True), client, now=NOW)

    result = pipeline.run()

    assert result.cache_hits == 0
    assert result.pull_requests[0].title == "PR 1"
    assert load_cache("org", "proj", base_dir=str(tmp_path))[1].title == "PR 1"


def test_fetch_builds_omits_records_without_builds(tmp_path):
    """Verify only records with build runs appear in the result."""
    client = _client()
    build = BuildRun(
        build_id=1,
        definition_name="CI",
        definition_id=1,
        status="completed",
        queue_time=NOW,
    )
    client.list_builds.side_effect = lambda pr_id: [build] if pr_id == 1 else []
    pipeline = PullRequestPipeline(_config(tmp_path), client, now=NOW)

    builds = pipeline.fetch_builds([_cached_pr(1), _cached_pr(2)])

    assert builds == {1: [build]}


def test_run_replaces_snapshot_cached_while_active(tmp_path):
    """Verify a record that completed since the last run gets fresh detail and cache entry."""
    stale = _cached_pr(1, title="stale")
    stale.status = PrStatus.ACTIVE
    stale.closed_date = None
    save_cache("org", "proj", {1: stale}, base_dir=str(tmp_path), now=NOW)
    client = _client(completed=[_raw_pr(1)])
    pipeline = PullRequestPipeline(_config(tmp_path), client, now=NOW)

    result = pipeline.run()

    assert result.cache_hits == 0
    assert result.enriched == 1
    [pr] = result.pull_requests
    assert pr.status is PrStatus.COMPLETED
    assert pr.closed_date is not None
    assert load_cache("org", "proj", base_dir=str(tmp_path))[1].status is PrStatus.COMPLETED
